"""
Document Context Scanner: Pass 1 over a multi-page PDF.

Looks at every page at once and builds a cross-page summary: period,
balances, a flat list of visible transactions tagged by page, and the
transactions known to straddle a page break. The per-page extractor uses it
to capture description text that spills over page boundaries.
"""
import logging
from typing import Optional

from pydantic import ValidationError

from agents.base import BaseAgent, parse_llm_json
from schemas import DocumentContext

logger = logging.getLogger("Ledgerline.Agent.Context")


# ─── LLM Prompts ──────────────────────────────────────────────────────────────

CONTEXT_PROMPT = """You are analyzing a bank statement. Scan ALL pages and create a complete overview.

Bank Context: {bank_context}

TASK: Look at the ENTIRE document and extract:

1. DOCUMENT INFO:
   - totalPages: How many pages
   - periodStart/periodEnd: Statement dates (YYYY-MM-DD)
   - openingBalance/closingBalance: Balances
   - currency: Currency code (USD, EUR, ANG, etc.)
   - bankName: Bank name if visible
   - accountNumber: Account number (can be partial)

2. TRANSACTION SUMMARY - List EVERY transaction visible:
   For each transaction:
   - page: Which page number
   - date: Date (YYYY-MM-DD)
   - amount: Amount as positive number
   - type: "credit" or "debit"
   - descriptionPreview: First 80 chars of description
   - continuesOnNextPage: true/false
   - continuedFromPrevPage: true/false

3. MULTI-PAGE TRANSACTIONS - CRITICAL!
   If ANY transaction spans multiple pages, list it separately:
   - startPage, endPage, date, amount, type, descriptionStart

   WATCH FOR:
   - Outward SWIFT payments and wire transfers, which often carry 2-3 lines of addresses
   - Any transaction where text flows to the next page

Return JSON (extra fields are allowed):
{{
  "totalPages": 3,
  "periodStart": "2025-06-01",
  "periodEnd": "2025-06-30",
  "openingBalance": 13521.09,
  "closingBalance": 9649.19,
  "currency": "USD",
  "transactionSummary": [
    {{"page": 1, "date": "2025-06-15", "amount": 10135.22, "type": "debit", "descriptionPreview": "Outward SWIFT Payment ...", "continuesOnNextPage": true}}
  ],
  "multiPageTransactions": [
    {{"startPage": 2, "endPage": 3, "date": "2025-06-27", "amount": 10135.22, "type": "debit", "descriptionStart": "Wire transfer ..."}}
  ]
}}
"""


class ContextScannerAgent(BaseAgent):
    temperature = 0.1
    max_tokens = 8192

    def run(self, page_images: list[str], bank_context: str,
            page_texts: Optional[list[str]] = None) -> DocumentContext:
        """
        Scan the whole document once.

        Malformed model output degrades to an empty context. Transport errors
        propagate; the orchestrator treats them as "no context".
        """
        prompt = CONTEXT_PROMPT.format(bank_context=bank_context)
        if page_texts and any(t.strip() for t in page_texts):
            text_layer = "\n\n".join(
                f"--- PAGE {i} ---\n{t}" for i, t in enumerate(page_texts, start=1)
            )
            prompt += f"\nText layer of the PDF (may be incomplete):\n{text_layer}\n"
        prompt += f"\nThe {len(page_images)} page image(s) are attached in order."

        response = self._generate(prompt, images=page_images)

        try:
            parsed = parse_llm_json(response.text)
            if not isinstance(parsed, dict):
                raise ValueError(f"expected an object, got {type(parsed).__name__}")
            context = DocumentContext.model_validate(parsed)
        except (ValueError, ValidationError) as e:
            logger.error(f"  ⚠️  Failed to parse context response ({e}): {response.text[:500]}")
            context = DocumentContext(transaction_summary=[])

        context.input_tokens = response.input_tokens
        context.output_tokens = response.output_tokens

        logger.info(
            f"  🗺️  Context: {context.total_pages} pages, "
            f"{len(context.transaction_summary)} transactions, "
            f"{len(context.multi_page_transactions)} multi-page, "
            f"period {context.period_start} to {context.period_end}"
        )
        for mpt in context.multi_page_transactions:
            logger.info(f"     - Pages {mpt.start_page}-{mpt.end_page}: {mpt.amount} {mpt.type} "
                        f"\"{(mpt.description_start or '')[:50]}\"")
        return context
