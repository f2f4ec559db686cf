"""
Statement Scanner: first look at an uploaded CSV/spreadsheet.

Reads the filename and the first rows, identifies the bank and account,
and proposes a parsing rule. A confirmed rule for the bank is reused;
otherwise the proposal is saved unconfirmed for the user to review.
"""
import logging

from sqlalchemy.orm import Session

from agents.base import BaseAgent, parse_llm_json
from config import settings
from schemas import ParsingRuleSpec, ScanResult, coerce_float
from services.bank_names import get_bank_identifier, normalize_bank_name
from services.csv_parser import split_csv_line
from services.rule_store import find_parsing_rule, save_parsing_rule

logger = logging.getLogger("Ledgerline.Agent.Scanner")


# ─── LLM Prompts ──────────────────────────────────────────────────────────────

SCAN_PROMPT = """Analyze this CSV bank statement sample and extract account details PLUS generate parsing rules.

FILENAME: {file_name}

ACCOUNT DETAILS (extract from content OR infer from patterns):
- bankName: Bank name. Use explicit names in the data, filename hints, transaction code patterns
  or account number formats. Provide the full proper bank name if you can reasonably identify it.
- accountNumber: From a dedicated account number column, not from description text. Full number.
- accountType: checking/savings/credit/investment/other
- currency: Currency code from the data (USD/EUR/GBP/ANG/AWG etc)
- periodStart / periodEnd: YYYY-MM-DD (earliest / latest date in the data)
- openingBalance / closingBalance: numbers or null
- transactionCount: {data_rows} (total data rows)

CSV PARSING RULES (analyze the structure):
- csvParsingRules: {{
    "headerRow": number (0-indexed row containing column headers),
    "dataStartRow": number (0-indexed row where data begins),
    "dateColumn": string (column header name for date),
    "dateFormat": string - MUST match the data exactly: "YYYY-MM-DD", "DD/MM/YYYY", "MM/DD/YYYY", "DD-MMM-YY", "DD-MMM-YYYY",
    "descriptionColumn": string,
    "amountColumn": string or null (single amount column with +/-),
    "debitColumn": string or null,
    "creditColumn": string or null,
    "balanceColumn": string or null,
    "referenceColumn": string or null,
    "amountFormat": "sign" or "absolute",
    "typeDetection": "sign" or "column",
    "thousandsSeparator": "," or "." or null,
    "decimalSeparator": "." or ","
  }}

TRANSACTION PREVIEW:
- sampleTransactions: up to 5 transactions with date (YYYY-MM-DD), description (max 50 chars), amount (positive), type

QUALITY:
- confidence: 0.0-1.0
- warnings: []

Return valid JSON only.

Here are the first {sample_size} rows of the CSV:

```
{sample}
```"""

REPAIR_PROMPT = "Fix this malformed JSON and return ONLY valid JSON:\n\n"


class StatementScannerAgent(BaseAgent):
    temperature = 0.1
    max_tokens = 4096

    def run(self, db: Session, user_id: str, file_name: str, content: str) -> ScanResult:
        lines = content.split("\n")
        sample_size = settings.SELF_HEAL_SAMPLE_LINES
        prompt = SCAN_PROMPT.format(
            file_name=file_name or "unknown",
            data_rows=max(len([l for l in lines if l.strip()]) - 1, 0),
            sample_size=sample_size,
            sample="\n".join(lines[:sample_size]),
        )

        response = self._generate(prompt)
        input_tokens, output_tokens = response.input_tokens, response.output_tokens
        try:
            parsed = parse_llm_json(response.text)
        except ValueError:
            logger.warning("  🔧 Scan response was malformed JSON, asking the model to repair it")
            fixed = self._generate(REPAIR_PROMPT + response.text, temperature=0)
            input_tokens += fixed.input_tokens
            output_tokens += fixed.output_tokens
            parsed = parse_llm_json(fixed.text)
        if isinstance(parsed, list):
            parsed = parsed[0] if parsed else {}
        if not isinstance(parsed, dict):
            parsed = {}

        raw_bank_name = (parsed.get("bankName") or "").strip()
        bank_name = normalize_bank_name(raw_bank_name) if raw_bank_name else None
        warnings = [str(w) for w in parsed.get("warnings") or []]
        if not bank_name:
            warnings.append("Bank name not found in CSV - please specify the bank")

        result = ScanResult(
            bank_name=bank_name or "Unknown Bank",
            bank_name_raw=raw_bank_name or None,
            bank_identifier=get_bank_identifier(bank_name) if bank_name else "unknown",
            needs_bank_identification=not bank_name,
            account_number=parsed.get("accountNumber"),
            account_type=parsed.get("accountType") or "other",
            currency=parsed.get("currency") or "USD",
            period_start=parsed.get("periodStart"),
            period_end=parsed.get("periodEnd"),
            opening_balance=coerce_float(parsed.get("openingBalance")),
            closing_balance=coerce_float(parsed.get("closingBalance")),
            transaction_count=parsed.get("transactionCount") or 0,
            sample_transactions=[t for t in parsed.get("sampleTransactions") or [] if isinstance(t, dict)],
            confidence=parsed.get("confidence") or 0.8,
            warnings=warnings,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

        existing = find_parsing_rule(db, user_id, bank_name) if bank_name else None
        if existing:
            logger.info(f"  📐 Reusing confirmed parsing rule {existing.id} for {bank_name}")
            result.csv_parsing_rules_id = existing.id
            result.csv_parsing_rules_status = "existing"
        elif isinstance(parsed.get("csvParsingRules"), dict):
            proposal = ParsingRuleSpec.model_validate(parsed["csvParsingRules"])
            header_idx = proposal.header_row or 0
            sample_idx = proposal.data_start_row or header_idx + 1
            fields = proposal.model_dump(exclude_none=True)
            fields.setdefault("date_format", "YYYY-MM-DD")
            fields.setdefault("decimal_separator", ".")
            fields["header_row"] = header_idx
            fields["data_start_row"] = sample_idx
            if header_idx < len(lines):
                fields["sample_headers"] = split_csv_line(lines[header_idx].strip())
            if sample_idx < len(lines):
                fields["sample_row"] = split_csv_line(lines[sample_idx].strip())

            rule = save_parsing_rule(db, user_id, bank_name or "Unknown Bank", fields)
            result.csv_parsing_rules_id = rule.id
            result.csv_parsing_rules_status = "new"

        logger.info(f"  🔍 Scanned {file_name}: bank={result.bank_name}, "
                    f"rules={result.csv_parsing_rules_status}")
        return result
