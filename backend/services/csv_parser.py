"""
Programmatic CSV parsing driven by a per-bank ParsingRule.

``parse_csv_with_rules`` is pure and never raises: row-level problems become
warnings and the row is skipped.
"""
import logging
import math
import re
from typing import Optional, Union

from schemas import ParsedTransaction, ParsingRuleSpec, parse_number_text

logger = logging.getLogger("Ledgerline.CSV")

MONTHS = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

CURRENCY_GLYPHS = re.compile(r"[$€£¥₹₽]|ANG")

_LEADING_INT = re.compile(r"^\s*[+-]?\d+")


# ─── Line Splitting ───────────────────────────────────────────────────────────

def split_csv_line(line: str, delimiter: str = ",") -> list[str]:
    """Quote-aware field split. ``""`` inside quotes is a literal quote."""
    fields = []
    current = []
    in_quotes = False
    i = 0
    while i < len(line):
        ch = line[i]
        if ch == '"':
            if in_quotes and i + 1 < len(line) and line[i + 1] == '"':
                current.append('"')
                i += 1
            else:
                in_quotes = not in_quotes
        elif ch == delimiter and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        i += 1
    fields.append("".join(current).strip())
    return fields


def resolve_column_index(binding: Union[int, str, None], headers: list[str]) -> int:
    """Resolve a name-or-index binding to a concrete index, -1 when absent."""
    if binding is None or binding == "":
        return -1
    if isinstance(binding, int):
        return binding

    wanted = binding.lower().strip()
    lowered = [h.lower().strip() for h in headers]
    for idx, header in enumerate(lowered):
        if header == wanted:
            return idx
    for idx, header in enumerate(lowered):
        if header and (wanted in header or header in wanted):
            return idx
    return -1


def _cell(values: list[str], idx: int) -> str:
    if idx < 0 or idx >= len(values):
        return ""
    return values[idx]


# ─── Dates ────────────────────────────────────────────────────────────────────

def _leading_int(token: str) -> Optional[int]:
    m = _LEADING_INT.match(token)
    return int(m.group()) if m else None


def parse_date(value: str, date_format: Optional[str] = None) -> Optional[str]:
    """Parse a statement date to ``YYYY-MM-DD``. Returns None when unparsable."""
    if not value:
        return None
    cleaned = re.sub(r"['\"]", "", value.strip())
    if not cleaned:
        return None

    if re.match(r"^\d{4}-\d{2}-\d{2}", cleaned):
        return cleaned[:10]

    parts = [p for p in re.split(r"[-/.\s]+", cleaned) if p]
    if len(parts) < 3:
        return None

    fmt = (date_format or "").upper()
    if fmt.startswith("YYYY"):
        year, month, day = parts[:3]
    elif fmt.startswith("DD"):
        day, month, year = parts[:3]
    elif fmt.startswith("MM"):
        month, day, year = parts[:3]
    elif len(parts[0]) == 4:
        year, month, day = parts[:3]
    else:
        day, month, year = parts[:3]

    m = _leading_int(month)
    if m is None:
        m = MONTHS.get(month.lower())

    if len(year) == 2 and year.isdigit():
        year = ("19" if int(year) > 50 else "20") + year

    y = _leading_int(year)
    d = _leading_int(day)
    if y is None or m is None or d is None:
        return None
    if not 1 <= m <= 12 or not 1 <= d <= 31:
        return None
    return f"{y}-{m:02d}-{d:02d}"


# ─── Amounts ──────────────────────────────────────────────────────────────────

def parse_amount(value: str, rule: ParsingRuleSpec) -> float:
    """Parse a signed amount. Parentheses, a leading or a trailing ``-`` mean negative; junk is 0.0."""
    if not value:
        return 0.0

    cleaned = value.strip()
    if rule.currency_symbol:
        cleaned = cleaned.replace(rule.currency_symbol, "")
    cleaned = CURRENCY_GLYPHS.sub("", cleaned).strip()

    number = parse_number_text(cleaned, rule.thousands_separator, rule.decimal_separator)
    return 0.0 if number is None else number


# ─── Parsing ──────────────────────────────────────────────────────────────────

def _detect_type(amount: float, description: str, rule: ParsingRuleSpec) -> str:
    if (rule.type_detection or "sign") == "keyword":
        text = description.lower()
        if any(k.lower() in text for k in rule.debit_keywords or []):
            return "debit"
        if any(k.lower() in text for k in rule.credit_keywords or []):
            return "credit"
    return "debit" if amount < 0 else "credit"


def parse_csv_with_rules(content: str, rule: ParsingRuleSpec) -> tuple[list[ParsedTransaction], list[str]]:
    """Convert delimited text into transactions using ``rule``."""
    transactions: list[ParsedTransaction] = []
    warnings: list[str] = []

    lines = [line.strip() for line in (content or "").splitlines()]
    lines = [line for line in lines if line]
    if not lines:
        warnings.append("CSV content is empty")
        return transactions, warnings

    delimiter = rule.delimiter or ","
    header_row = rule.header_row or 0
    header_line = lines[header_row] if 0 <= header_row < len(lines) else lines[0]
    headers = split_csv_line(header_line, delimiter)

    date_idx = resolve_column_index(rule.date_column, headers)
    desc_idx = resolve_column_index(rule.description_column, headers)
    amount_idx = resolve_column_index(rule.amount_column, headers)
    debit_idx = resolve_column_index(rule.debit_column, headers)
    credit_idx = resolve_column_index(rule.credit_column, headers)
    balance_idx = resolve_column_index(rule.balance_column, headers)
    ref_idx = resolve_column_index(rule.reference_column, headers)
    category_idx = resolve_column_index(rule.category_column, headers)

    if date_idx < 0:
        warnings.append(f"Date column not found: {rule.date_column}")
    if desc_idx < 0:
        warnings.append(f"Description column not found: {rule.description_column}")
    if amount_idx < 0 and debit_idx < 0 and credit_idx < 0:
        warnings.append("No amount column found")

    data_start = rule.data_start_row if rule.data_start_row is not None else header_row + 1
    data_end = len(lines) - (rule.skip_footer_rows or 0)
    min_columns = max(date_idx, desc_idx, amount_idx, debit_idx, credit_idx) + 1

    for i in range(max(data_start, 0), data_end):
        try:
            values = split_csv_line(lines[i], delimiter)
            if len(values) < min_columns:
                continue

            raw_date = _cell(values, date_idx)
            date = parse_date(raw_date, rule.date_format)
            if not date:
                warnings.append(f'Row {i + 1}: Invalid date "{raw_date}"')
                continue

            description = _cell(values, desc_idx).strip()
            if not description:
                continue

            if debit_idx >= 0 or credit_idx >= 0:
                debit = abs(parse_amount(_cell(values, debit_idx), rule))
                credit = abs(parse_amount(_cell(values, credit_idx), rule))
                if debit > 0:
                    amount, tx_type = debit, "debit"
                elif credit > 0:
                    amount, tx_type = credit, "credit"
                else:
                    continue
            else:
                signed = parse_amount(_cell(values, amount_idx), rule)
                tx_type = _detect_type(signed, description, rule)
                amount = abs(signed)

            if amount == 0:
                continue

            balance = None
            if balance_idx >= 0 and _cell(values, balance_idx):
                balance = parse_amount(_cell(values, balance_idx), rule)

            transactions.append(ParsedTransaction(
                date=date,
                description=description,
                amount=amount,
                type=tx_type,
                balance=balance,
                reference=_cell(values, ref_idx) or None,
                category=_cell(values, category_idx) or None,
            ))
        except Exception as e:
            warnings.append(f"Row {i + 1}: Parse error - {e}")

    logger.info(f"  📑 Parsed {len(transactions)} transactions ({len(warnings)} warnings) "
                f"for {rule.bank_display_name or rule.bank_identifier or 'unknown bank'}")
    return transactions, warnings


# ─── Chunking ─────────────────────────────────────────────────────────────────

def chunk_csv(content: str, max_chars: int = 50000) -> list[str]:
    """Split large CSV text into near-equal row groups, each keeping the header line."""
    if len(content) <= max_chars:
        return [content]

    lines = content.split("\n")
    header, data_lines = lines[0], lines[1:]
    groups = math.ceil(len(content) / max_chars)
    chunk_size = max(1, math.ceil(len(data_lines) / groups))

    return [
        "\n".join([header, *data_lines[start:start + chunk_size]])
        for start in range(0, len(data_lines), chunk_size)
    ]
