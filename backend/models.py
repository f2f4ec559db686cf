import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Float, Integer, Text, Date, DateTime, ForeignKey,
    JSON, Boolean,
)
from sqlalchemy.orm import relationship
from database import Base
import enum


# ─── Enums ────────────────────────────────────────────────────────────────────

class StatementStatus(str, enum.Enum):
    UPLOADED = "uploaded"
    SCANNING = "scanning"
    PENDING_EXTRACTION = "pending_extraction"
    EXTRACTING = "extracting"
    SELF_HEALING = "self_healing"
    NEEDS_RULES_CONFIRMATION = "needs_rules_confirmation"
    NEEDS_REVIEW = "needs_review"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {
    StatementStatus.COMPLETED.value,
    StatementStatus.NEEDS_REVIEW.value,
    StatementStatus.NEEDS_RULES_CONFIRMATION.value,
    StatementStatus.FAILED.value,
}


class TransactionType(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    CONTINUATION = "continuation"  # only ever seen before merging


# ─── Helper ───────────────────────────────────────────────────────────────────

def generate_uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


# ─── Models ───────────────────────────────────────────────────────────────────

class Account(Base):
    """A bank account that statements are uploaded against."""
    __tablename__ = "accounts"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, nullable=False, index=True)
    bank_name = Column(String, nullable=False)
    bank_identifier = Column(String, index=True)
    account_number = Column(String)
    account_type = Column(String, default="checking")
    currency = Column(String, default="USD")

    # Running aggregates, mutated by the reconciler and cascade delete
    balance = Column(Float)
    transaction_count = Column(Integer, default=0, nullable=False)
    statement_count = Column(Integer, default=0, nullable=False)
    latest_period_end = Column(Date)
    last_statement_date = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    statements = relationship("Statement", back_populates="account")


class Statement(Base):
    """Uploaded statement file plus its extraction status record."""
    __tablename__ = "statements"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), index=True)

    # Source file
    file_url = Column(String)  # local path under UPLOAD_DIR
    original_file_name = Column(String)
    mime_type = Column(String)
    file_type = Column(String)  # csv, excel, pdf, image
    file_size = Column(Integer)  # bytes
    page_count = Column(Integer)

    # Status
    status = Column(String, default=StatementStatus.UPLOADED.value, index=True)
    extraction_progress = Column(Integer, default=0)
    pages_total = Column(Integer)
    pages_completed = Column(Integer)
    actual_pdf_pages = Column(Integer)
    error_message = Column(Text)
    warnings = Column(JSON, default=list)

    # Results
    period_start = Column(Date)
    period_end = Column(Date)
    opening_balance = Column(Float)
    closing_balance = Column(Float)
    confidence = Column(Float)
    transaction_count = Column(Integer, default=0)
    duplicates_skipped = Column(Integer, default=0)
    transactions_extracted = Column(Integer, default=0)
    extraction_model = Column(String)
    usage_record_id = Column(String)
    parsing_rule_id = Column(String)
    scan_result = Column(JSON)  # account details + proposed rules from the scanner
    processed_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    account = relationship("Account", back_populates="statements")


class ParsingRule(Base):
    """Per-bank CSV parsing rule. Column bindings hold a header name or a zero-based index."""
    __tablename__ = "parsing_rules"

    id = Column(String, primary_key=True, default=generate_uuid)
    bank_identifier = Column(String, nullable=False, index=True)
    bank_display_name = Column(String, nullable=False)

    # Geometry
    header_row = Column(Integer, default=0, nullable=False)
    data_start_row = Column(Integer)
    skip_footer_rows = Column(Integer, default=0)
    delimiter = Column(String, default=",")

    # Column bindings (str | int)
    date_column = Column(JSON)
    description_column = Column(JSON)
    amount_column = Column(JSON)
    debit_column = Column(JSON)
    credit_column = Column(JSON)
    balance_column = Column(JSON)
    reference_column = Column(JSON)
    category_column = Column(JSON)

    # Formatting
    date_format = Column(String)
    amount_format = Column(String, default="sign")  # sign / absolute
    thousands_separator = Column(String)
    decimal_separator = Column(String)
    currency_symbol = Column(String)
    type_detection = Column(String, default="sign")  # sign / keyword / column
    debit_keywords = Column(JSON)
    credit_keywords = Column(JSON)

    # Samples captured when the rule was proposed
    sample_headers = Column(JSON)
    sample_row = Column(JSON)

    # Lifecycle
    created_by = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime)
    confirmed_at = Column(DateTime)
    self_healed_at = Column(DateTime)
    usage_count = Column(Integer, default=0, nullable=False)
    last_used_at = Column(DateTime)


class Transaction(Base):
    """One stored, non-duplicate ledger row."""
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    statement_id = Column(String, ForeignKey("statements.id"), nullable=False, index=True)

    date = Column(Date, nullable=False)
    description = Column(Text)
    description_original = Column(Text)
    amount = Column(Float, nullable=False)  # always a non-negative magnitude
    type = Column(String, nullable=False)  # credit / debit
    balance = Column(Float)  # running balance after transaction
    reference = Column(String)
    category = Column(String)
    currency = Column(String, default="USD")

    # Denormalized for querying
    search_text = Column(Text)
    month = Column(String, index=True)  # YYYY-MM
    confidence = Column(Float)
    needs_review = Column(Boolean, default=False)

    created_at = Column(DateTime, default=utcnow)


class UsageRecord(Base):
    """Model usage for one extraction run."""
    __tablename__ = "usage_records"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, index=True)
    statement_id = Column(String, index=True)
    account_id = Column(String)
    type = Column(String, default="extraction")
    ai_model = Column(String)
    input_tokens = Column(Integer, default=0)
    output_tokens = Column(Integer, default=0)
    pages_processed = Column(Integer, default=0)
    transactions_extracted = Column(Integer, default=0)
    confidence = Column(Float)
    status = Column(String)  # success / needs_review
    processing_time_ms = Column(Integer)
    estimated_cost = Column(Float, default=0.0)
    created_at = Column(DateTime, default=utcnow)
