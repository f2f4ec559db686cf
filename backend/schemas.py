import logging
import re
from datetime import date, datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger("Ledgerline.Schemas")

# A column binding is either a header name or a zero-based column index.
ColumnBinding = Optional[Union[int, str]]

_NUMBER_PREFIX = re.compile(r"\d+(?:\.\d+)?|\.\d+")


def parse_number_text(text: str, thousands: Optional[str] = None,
                      decimal: Optional[str] = None) -> Optional[float]:
    """
    Parse a human-formatted number such as "1.234,56", "(12.00)" or "45.00-".

    Parentheses, a leading or a trailing ``-`` mean negative. Without explicit
    separators the last of ``,``/``.`` is the decimal point, a separator that
    repeats groups thousands, and a lone comma followed by exactly three digits
    groups thousands too. Trailing junk after the number is ignored.
    Returns None when there is no number at all.
    """
    cleaned = re.sub(r"\s+", "", text or "")
    if not cleaned:
        return None

    negative = "(" in cleaned or cleaned.startswith("-") or cleaned.endswith("-")
    cleaned = re.sub(r"[^\d.,]", "", cleaned).rstrip(".,").lstrip(",")

    if decimal == "," or thousands == ".":
        european = True
    elif decimal == "." or thousands == ",":
        european = False
    else:
        last_comma, last_dot = cleaned.rfind(","), cleaned.rfind(".")
        if last_comma >= 0 and last_dot >= 0:
            european = last_comma > last_dot
        elif last_comma >= 0:
            tail = re.match(r"\d*", cleaned[last_comma + 1:]).group()
            european = cleaned.count(",") == 1 and len(tail) != 3
        else:
            european = False
            if cleaned.count(".") > 1:
                cleaned = cleaned.replace(".", "")

    if european:
        cleaned = cleaned.replace(".", "").replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")

    match = _NUMBER_PREFIX.match(cleaned)
    if not match:
        return None
    number = float(match.group())
    return -number if negative else number


def coerce_float(value: Any) -> Optional[float]:
    """Lenient number coercion for model output ("1,234.50", "1.234,56", "(12.00)", 7)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return parse_number_text(value)
    return None


def coerce_int(value: Any) -> Optional[int]:
    number = coerce_float(value)
    return int(number) if number is not None else None


def _valid_items(model: type[BaseModel], items: Any, label: str) -> list:
    """Validate list items one by one so a single bad item cannot sink the rest."""
    if not items:
        return []
    if not isinstance(items, list):
        items = [items]
    valid = []
    for item in items:
        try:
            valid.append(model.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Dropping malformed {label} item {str(item)[:120]}: {e.error_count()} error(s)")
    return valid


# ─── Parsing Rules ────────────────────────────────────────────────────────────

class ParsingRuleSpec(BaseModel):
    """The parser's view of a rule. Accepts ORM rows and camelCase model output."""
    id: Optional[str] = None
    bank_identifier: Optional[str] = None
    bank_display_name: Optional[str] = None

    header_row: Optional[int] = 0
    data_start_row: Optional[int] = None
    skip_footer_rows: Optional[int] = 0
    delimiter: Optional[str] = ","

    date_column: ColumnBinding = None
    description_column: ColumnBinding = None
    amount_column: ColumnBinding = None
    debit_column: ColumnBinding = None
    credit_column: ColumnBinding = None
    balance_column: ColumnBinding = None
    reference_column: ColumnBinding = None
    category_column: ColumnBinding = None

    date_format: Optional[str] = None
    amount_format: Optional[str] = "sign"
    thousands_separator: Optional[str] = None
    decimal_separator: Optional[str] = None
    currency_symbol: Optional[str] = None
    type_detection: Optional[str] = "sign"
    debit_keywords: Optional[list[str]] = None
    credit_keywords: Optional[list[str]] = None

    created_by: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    usage_count: Optional[int] = 0

    class Config:
        from_attributes = True
        alias_generator = to_camel
        populate_by_name = True


class ParsingRuleCreate(BaseModel):
    bank_name: str
    header_row: int = 0
    data_start_row: Optional[int] = None
    skip_footer_rows: int = 0
    delimiter: str = ","
    date_column: ColumnBinding = None
    date_format: Optional[str] = None
    description_column: ColumnBinding = None
    amount_column: ColumnBinding = None
    debit_column: ColumnBinding = None
    credit_column: ColumnBinding = None
    balance_column: ColumnBinding = None
    reference_column: ColumnBinding = None
    category_column: ColumnBinding = None
    amount_format: str = "sign"
    type_detection: str = "sign"
    thousands_separator: Optional[str] = None
    decimal_separator: Optional[str] = None
    currency_symbol: Optional[str] = None
    debit_keywords: Optional[list[str]] = None
    credit_keywords: Optional[list[str]] = None
    sample_headers: Optional[list[str]] = None
    sample_row: Optional[list[str]] = None


class ParsingRuleResponse(BaseModel):
    id: str
    bank_identifier: str
    bank_display_name: str
    header_row: int
    data_start_row: Optional[int] = None
    skip_footer_rows: Optional[int] = 0
    delimiter: Optional[str] = ","
    date_column: ColumnBinding = None
    date_format: Optional[str] = None
    description_column: ColumnBinding = None
    amount_column: ColumnBinding = None
    debit_column: ColumnBinding = None
    credit_column: ColumnBinding = None
    balance_column: ColumnBinding = None
    reference_column: ColumnBinding = None
    amount_format: Optional[str] = None
    type_detection: Optional[str] = None
    thousands_separator: Optional[str] = None
    decimal_separator: Optional[str] = None
    created_by: str
    created_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    self_healed_at: Optional[datetime] = None
    usage_count: int = 0
    last_used_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ─── Transactions ─────────────────────────────────────────────────────────────

class ParsedTransaction(BaseModel):
    """Output of the programmatic CSV parser."""
    date: str
    description: str
    amount: float
    type: str
    balance: Optional[float] = None
    reference: Optional[str] = None
    category: Optional[str] = None
    confidence: Optional[float] = None


class ExtractedTransaction(BaseModel):
    """One line item as the model emitted it. May still be a continuation fragment."""
    date: Optional[str] = None
    description: Optional[str] = ""
    amount: Optional[float] = None
    type: Optional[str] = None
    balance: Optional[float] = None
    reference: Optional[str] = None
    category: Optional[str] = None
    confidence: Optional[float] = None
    continued_from: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "allow"

    @field_validator("amount", "balance", "confidence", mode="before")
    @classmethod
    def _coerce_number(cls, v):
        return coerce_float(v)

    @field_validator("date", "reference", "category", "type", "continued_from", mode="before")
    @classmethod
    def _coerce_text(cls, v):
        if v is None:
            return None
        text = str(v).strip()
        return text if text and text.lower() != "null" else None

    @field_validator("description", mode="before")
    @classmethod
    def _coerce_description(cls, v):
        return "" if v is None else str(v).strip()


class PageExtractionResult(BaseModel):
    page: int = 1
    transactions: list[ExtractedTransaction] = Field(default_factory=list)
    opening_balance: Optional[float] = None
    closing_balance: Optional[float] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    confidence: float = 0.8
    warnings: list[str] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "allow"

    @field_validator("opening_balance", "closing_balance", mode="before")
    @classmethod
    def _coerce_balance(cls, v):
        return coerce_float(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, v):
        number = coerce_float(v)
        return 0.8 if number is None else number

    @field_validator("transactions", mode="before")
    @classmethod
    def _coerce_transactions(cls, v):
        return _valid_items(ExtractedTransaction, v, "transaction")

    @field_validator("period_start", "period_end", mode="before")
    @classmethod
    def _coerce_period(cls, v):
        return str(v)[:10] if v else None

    @field_validator("warnings", mode="before")
    @classmethod
    def _coerce_warnings(cls, v):
        if not v:
            return []
        if isinstance(v, str):
            return [v]
        return [str(w) for w in v]


# ─── Document Context (Pass 1) ────────────────────────────────────────────────

class TransactionSummaryItem(BaseModel):
    page: Optional[int] = None
    date: Optional[str] = None
    amount: Optional[float] = None
    type: Optional[str] = None
    description_preview: Optional[str] = None
    continues_on_next_page: bool = False
    continued_from_prev_page: bool = False

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "allow"

    @field_validator("page", mode="before")
    @classmethod
    def _coerce_page(cls, v):
        return coerce_int(v)

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, v):
        return coerce_float(v)

    @field_validator("continues_on_next_page", "continued_from_prev_page", mode="before")
    @classmethod
    def _coerce_flag(cls, v):
        return bool(v) if not isinstance(v, str) else v.strip().lower() == "true"

    @property
    def extras(self) -> dict:
        return dict(self.model_extra or {})


class MultiPageTransaction(BaseModel):
    # Either bound may be missing; multi_page_spanning falls back to the other one.
    start_page: Optional[int] = None
    end_page: Optional[int] = None
    date: Optional[str] = None
    amount: Optional[float] = None
    type: Optional[str] = None
    description_start: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "allow"

    @field_validator("start_page", "end_page", mode="before")
    @classmethod
    def _coerce_page(cls, v):
        return coerce_int(v)

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, v):
        return coerce_float(v)


class DocumentContext(BaseModel):
    """Cross-page summary from Pass 1. Unknown keys land in ``model_extra``."""
    total_pages: int = 1
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    opening_balance: Optional[float] = None
    closing_balance: Optional[float] = None
    currency: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    transaction_summary: list[TransactionSummaryItem] = Field(default_factory=list)
    multi_page_transactions: list[MultiPageTransaction] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "allow"

    @field_validator("opening_balance", "closing_balance", mode="before")
    @classmethod
    def _coerce_balance(cls, v):
        return coerce_float(v)

    @field_validator("period_start", "period_end", "currency", "bank_name", "account_number", mode="before")
    @classmethod
    def _coerce_text(cls, v):
        return None if v is None else str(v)

    @field_validator("total_pages", mode="before")
    @classmethod
    def _coerce_pages(cls, v):
        return coerce_int(v) or 1

    @field_validator("transaction_summary", mode="before")
    @classmethod
    def _coerce_summary(cls, v):
        return _valid_items(TransactionSummaryItem, v, "transaction summary")

    @field_validator("multi_page_transactions", mode="before")
    @classmethod
    def _coerce_multi_page(cls, v):
        return _valid_items(MultiPageTransaction, v, "multi-page transaction")

    @property
    def extras(self) -> dict:
        return dict(self.model_extra or {})

    def transactions_on_page(self, page: int) -> list[TransactionSummaryItem]:
        return [t for t in self.transaction_summary if t.page == page]

    def continuation_into(self, page: int) -> Optional[TransactionSummaryItem]:
        """The previous page's transaction flagged as continuing onto ``page``."""
        for t in self.transaction_summary:
            if t.page == page - 1 and t.continues_on_next_page:
                return t
        return None

    def multi_page_spanning(self, page: int) -> list[MultiPageTransaction]:
        spanning = []
        for m in self.multi_page_transactions:
            start = m.start_page if m.start_page is not None else m.end_page
            end = m.end_page if m.end_page is not None else m.start_page
            if start is not None and start <= page <= end:
                spanning.append(m)
        return spanning


# ─── Scan ─────────────────────────────────────────────────────────────────────

class ScanResult(BaseModel):
    bank_name: str = "Unknown Bank"
    bank_name_raw: Optional[str] = None
    bank_identifier: str = "unknown"
    needs_bank_identification: bool = False
    account_number: Optional[str] = None
    account_type: Optional[str] = None
    currency: Optional[str] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    opening_balance: Optional[float] = None
    closing_balance: Optional[float] = None
    transaction_count: int = 0
    sample_transactions: list[dict] = Field(default_factory=list)
    csv_parsing_rules_id: Optional[str] = None
    csv_parsing_rules_status: str = "none"  # existing / new / none
    confidence: float = 0.8
    warnings: list[str] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0


# ─── Accounts ─────────────────────────────────────────────────────────────────

class AccountCreate(BaseModel):
    bank_name: str
    account_number: Optional[str] = None
    currency: str = "USD"
    account_type: str = "checking"


class AccountResponse(BaseModel):
    id: str
    bank_name: str
    bank_identifier: Optional[str] = None
    account_number: Optional[str] = None
    account_type: Optional[str] = None
    currency: Optional[str] = None
    balance: Optional[float] = None
    transaction_count: int = 0
    statement_count: int = 0
    latest_period_end: Optional[date] = None
    created_at: datetime

    class Config:
        from_attributes = True


# ─── Statements ───────────────────────────────────────────────────────────────

class StatementResponse(BaseModel):
    id: str
    account_id: Optional[str] = None
    original_file_name: Optional[str] = None
    file_type: Optional[str] = None
    page_count: Optional[int] = None
    status: str
    extraction_progress: Optional[int] = 0
    pages_total: Optional[int] = None
    pages_completed: Optional[int] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    opening_balance: Optional[float] = None
    closing_balance: Optional[float] = None
    confidence: Optional[float] = None
    transaction_count: Optional[int] = 0
    duplicates_skipped: Optional[int] = 0
    warnings: Optional[list[str]] = None
    error_message: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TransactionResponse(BaseModel):
    id: str
    date: date
    description: Optional[str] = None
    amount: float
    type: str
    balance: Optional[float] = None
    reference: Optional[str] = None
    category: Optional[str] = None
    currency: Optional[str] = None
    month: Optional[str] = None
    confidence: Optional[float] = None
    needs_review: bool = False

    class Config:
        from_attributes = True
