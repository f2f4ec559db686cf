"""
Page/Chunk Extractor: Pass 2.

One model call per PDF page (or per CSV chunk). For PDFs the prompt is
seeded with what the context pass saw on this page so that transactions
split across a page break are captured rather than dropped.
"""
import logging
from typing import Optional

from agents.base import BaseAgent, parse_llm_json
from schemas import DocumentContext, PageExtractionResult

logger = logging.getLogger("Ledgerline.Agent.Page")


# ─── LLM Prompts ──────────────────────────────────────────────────────────────

PAGE_PROMPT = """You are extracting transactions from {unit_label} of a bank statement.

Bank Context: {bank_context}
{page_context}
For EACH transaction in THIS {unit_name}, extract:
1. date: Transaction date (YYYY-MM-DD format)
2. description: FULL transaction description - ALL text associated with this transaction
3. amount: Amount as positive number
4. type: "credit" for money in, "debit" for money out
5. balance: Running balance after transaction
6. reference: Transaction reference/ID
7. category: "Transfer", "Income", "Bills", "Bank Fees", etc.
8. confidence: 0.0 to 1.0

Also extract if visible: openingBalance, closingBalance, periodStart, periodEnd

CRITICAL RULES:

1. EXTRACT ALL TRANSACTIONS - even if the description is incomplete!
   - If amount and date are visible, INCLUDE IT
   - Note in warnings if a description continues to the next page

2. CONTINUATION TEXT AT TOP OF PAGE:
   - If the page starts with text that continues a transaction from the previous page,
     create an entry with date=null, amount=0, type="continuation", continuedFrom="previous_page"
   - Include ALL the continuation text in description

3. One entry per line item. Multi-line descriptions (addresses, wire details) belong to ONE entry.

4. DO NOT SKIP ANY TRANSACTION BECAUSE:
   - The description is long or continues to the next page
   - It spans multiple lines
   - You think it was already seen on another page

Return valid JSON:
{{
  "page": {page},
  "transactions": [
    {{
      "date": "YYYY-MM-DD or null for continuations",
      "description": "Full description text including ALL lines",
      "amount": 123.45,
      "type": "debit|credit|continuation",
      "balance": 1000.00,
      "reference": "string or null",
      "category": "string",
      "confidence": 0.95,
      "continuedFrom": "previous_page or null"
    }}
  ],
  "openingBalance": null,
  "closingBalance": null,
  "periodStart": null,
  "periodEnd": null,
  "confidence": 0.9,
  "warnings": []
}}
"""

REPAIR_PROMPT = "Fix this malformed JSON and return ONLY valid JSON:\n\n"


def build_page_context(context: Optional[DocumentContext], page: int) -> str:
    """Context-pass hints for one page: known transactions, spill-over, multi-page items."""
    if context is None or not context.transaction_summary:
        return ""

    sections = []
    on_page = context.transactions_on_page(page)
    if on_page:
        lines = "\n".join(
            f"- {t.date or 'unknown'}: {t.type} {t.amount} - \"{t.description_preview or ''}\""
            for t in on_page
        )
        sections.append(f"KNOWN TRANSACTIONS ON THIS PAGE (from initial scan):\n{lines}\n")

    carried = context.continuation_into(page)
    if carried:
        sections.append(
            f"⚠️ CONTINUATION FROM PAGE {page - 1}:\n"
            f"The transaction \"{carried.description_preview or ''}\" ({carried.amount}) continues from the previous page.\n"
            f"Text at the TOP of this page is part of that transaction's description - capture it!\n"
        )

    spanning = context.multi_page_spanning(page)
    if spanning:
        lines = "\n".join(
            f"- {m.date or 'unknown'}: {m.amount} {m.type} (pages {m.start_page}-{m.end_page}) "
            f"\"{m.description_start or ''}\""
            for m in spanning
        )
        sections.append(
            f"⚠️ MULTI-PAGE TRANSACTIONS INVOLVING THIS PAGE:\n{lines}\n"
            f"Make sure to capture ALL text for these transactions!\n"
        )

    return "\n" + "\n".join(sections)


class PageExtractorAgent(BaseAgent):
    temperature = 0.1
    max_tokens = 16384

    def run(
        self,
        page: int,
        total_pages: int,
        bank_context: str,
        image: Optional[str] = None,
        page_text: Optional[str] = None,
        csv_content: Optional[str] = None,
        context: Optional[DocumentContext] = None,
    ) -> PageExtractionResult:
        """Extract one unit. ``csv_content`` selects chunk mode; otherwise ``image`` is the page."""
        if csv_content is not None:
            prompt = PAGE_PROMPT.format(
                unit_label=f"CHUNK {page} of {total_pages}",
                unit_name="chunk",
                bank_context=bank_context,
                page_context="",
                page=page,
            )
            prompt += f"\n\nHere is the CSV content:\n\n```\n{csv_content}\n```"
            images = None
        else:
            prompt = PAGE_PROMPT.format(
                unit_label=f"PAGE {page} of {total_pages}",
                unit_name="page",
                bank_context=bank_context,
                page_context=build_page_context(context, page),
                page=page,
            )
            if page_text and page_text.strip():
                prompt += f"\n\nText layer of page {page} (may be incomplete):\n{page_text}"
            prompt += f"\n\nFocus ONLY on page {page}. The page image is attached."
            images = [image] if image else None

        logger.info(f"  🤖 Extracting {'chunk' if csv_content is not None else 'page'} {page}/{total_pages}...")
        response = self._generate(prompt, images=images)
        input_tokens, output_tokens = response.input_tokens, response.output_tokens

        try:
            parsed = parse_llm_json(response.text)
        except ValueError:
            logger.warning(f"  🔧 Page {page}: malformed JSON, asking the model to repair it")
            fixed = self._generate(REPAIR_PROMPT + response.text, temperature=0)
            input_tokens += fixed.input_tokens
            output_tokens += fixed.output_tokens
            parsed = parse_llm_json(fixed.text)

        if isinstance(parsed, list):
            logger.info(f"  Model returned an array with {len(parsed)} item(s) for page {page}, using the first")
            first = parsed[0] if parsed else None
            parsed = first if isinstance(first, dict) else {
                "transactions": [], "confidence": 0.3, "warnings": ["AI returned array"],
            }
        if not isinstance(parsed, dict):
            raise ValueError(f"Unexpected model output for page {page}: {type(parsed).__name__}")

        parsed["transactions"] = [t for t in parsed.get("transactions") or [] if isinstance(t, dict)]
        if parsed.get("confidence") is None:
            parsed["confidence"] = 0.8
        parsed["page"] = page

        result = PageExtractionResult.model_validate(parsed)
        result.input_tokens = input_tokens
        result.output_tokens = output_tokens
        logger.info(f"  ✅ Page {page}: {len(result.transactions)} transactions (confidence {result.confidence:.2f})")
        return result
