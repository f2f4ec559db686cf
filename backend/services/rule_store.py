"""Persistence and lifecycle for per-bank CSV parsing rules."""
import logging
from typing import Optional

from pydantic import ValidationError
from pydantic.alias_generators import to_snake
from sqlalchemy.orm import Session

from models import ParsingRule, utcnow
from schemas import ParsingRuleSpec
from services.bank_names import get_bank_identifier, normalize_bank_name

logger = logging.getLogger("Ledgerline.Rules")

# Fields a user may edit on an unconfirmed rule
UPDATABLE_FIELDS = frozenset({
    "header_row", "data_start_row", "skip_footer_rows", "delimiter",
    "date_column", "date_format", "description_column",
    "amount_column", "debit_column", "credit_column", "balance_column", "reference_column",
    "amount_format", "type_detection", "thousands_separator", "decimal_separator",
})

IDENTITY_FIELDS = frozenset({"id", "bank_identifier", "bank_display_name"})

# Never taken from a self-healing correction
_PROTECTED_ON_CORRECTION = IDENTITY_FIELDS | {
    "created_by", "created_at", "confirmed_at", "usage_count", "last_used_at",
}

_SPEC_FIELDS = frozenset(ParsingRuleSpec.model_fields)


# ─── Errors ───────────────────────────────────────────────────────────────────

class RuleStoreError(Exception):
    """Base class for parsing-rule lifecycle errors."""


class RuleNotFoundError(RuleStoreError):
    pass


class RulePermissionError(RuleStoreError):
    pass


class RulePreconditionError(RuleStoreError):
    pass


class RuleValidationError(RuleStoreError):
    pass


# ─── Queries ──────────────────────────────────────────────────────────────────

def get_rule(db: Session, rule_id: str) -> ParsingRule:
    rule = db.query(ParsingRule).filter(ParsingRule.id == rule_id).first()
    if not rule:
        raise RuleNotFoundError("Parsing rules not found")
    return rule


def find_parsing_rule(db: Session, user_id: str, bank_name: str) -> Optional[ParsingRule]:
    """
    Best confirmed rule for a bank.

    The user's own confirmed rule wins; otherwise the most-used confirmed rule
    from any user for the same bank identifier.
    """
    bank_id = get_bank_identifier(bank_name)
    confirmed = db.query(ParsingRule).filter(
        ParsingRule.bank_identifier == bank_id,
        ParsingRule.confirmed_at.isnot(None),
    )

    own = (
        confirmed.filter(ParsingRule.created_by == user_id)
        .order_by(ParsingRule.usage_count.desc())
        .first()
    )
    if own:
        return own

    return confirmed.order_by(ParsingRule.usage_count.desc(), ParsingRule.created_at).first()


# ─── Mutations ────────────────────────────────────────────────────────────────

def save_parsing_rule(db: Session, user_id: str, bank_name: str, fields: dict) -> ParsingRule:
    """Create an unconfirmed rule with usage count zero."""
    display_name = normalize_bank_name(bank_name)
    values = {
        k: v for k, v in fields.items()
        if hasattr(ParsingRule, k) and k not in _PROTECTED_ON_CORRECTION
    }
    rule = ParsingRule(
        bank_identifier=get_bank_identifier(display_name),
        bank_display_name=display_name,
        created_by=user_id,
        usage_count=0,
        **values,
    )
    db.add(rule)
    db.commit()
    db.refresh(rule)
    logger.info(f"📝 Saved unconfirmed parsing rule {rule.id} for {display_name}")
    return rule


def confirm_parsing_rule(db: Session, rule_id: str, user_id: str) -> ParsingRule:
    rule = get_rule(db, rule_id)
    if rule.created_by != user_id:
        raise RulePermissionError("You can only confirm your own parsing rules")
    if rule.confirmed_at is None:
        rule.confirmed_at = utcnow()
        db.commit()
        logger.info(f"✅ Parsing rule {rule.id} confirmed for {rule.bank_display_name}")
    return rule


def increment_rule_usage(db: Session, rule_id: str) -> None:
    db.query(ParsingRule).filter(ParsingRule.id == rule_id).update(
        {
            ParsingRule.usage_count: ParsingRule.usage_count + 1,
            ParsingRule.last_used_at: utcnow(),
        },
        synchronize_session=False,
    )
    db.commit()


def update_parsing_rule(db: Session, rule_id: str, user_id: str, updates: dict) -> ParsingRule:
    """Edit an unconfirmed rule. Keys may be snake_case or camelCase."""
    normalized = {to_snake(k): v for k, v in (updates or {}).items()}
    rejected = sorted(k for k in normalized if k not in UPDATABLE_FIELDS)
    if rejected:
        raise RuleValidationError(f"Fields cannot be updated: {', '.join(rejected)}")

    rule = get_rule(db, rule_id)
    if rule.created_by != user_id:
        raise RulePermissionError("You can only update your own parsing rules")
    if rule.confirmed_at is not None:
        raise RulePreconditionError("Cannot update confirmed rules")

    try:
        checked = ParsingRuleSpec.model_validate(normalized)
    except ValidationError as e:
        fields = sorted({to_snake(str(err["loc"][0])) for err in e.errors() if err["loc"]})
        raise RuleValidationError(f"Invalid values for: {', '.join(fields)}") from e
    if "header_row" in normalized and checked.header_row is None:
        raise RuleValidationError("Invalid values for: header_row")

    for key in normalized:
        setattr(rule, key, getattr(checked, key))
    rule.updated_at = utcnow()
    db.commit()
    db.refresh(rule)
    logger.info(f"✏️  Parsing rule {rule.id} updated: {', '.join(sorted(normalized))}")
    return rule


def merge_rule_correction(rule: ParsingRuleSpec, correction: dict) -> ParsingRuleSpec:
    """Overlay a model-proposed correction, keeping identity and lifecycle fields."""
    proposed = ParsingRuleSpec.model_validate(correction or {})
    overrides = {
        name: getattr(proposed, name)
        for name in proposed.model_fields_set
        if name not in _PROTECTED_ON_CORRECTION
    }
    return rule.model_copy(update=overrides)


def apply_rule_correction(db: Session, rule_id: str, corrected: ParsingRuleSpec) -> ParsingRule:
    """Persist a self-healed rule. Bypasses the confirmation lock; identity is untouched."""
    rule = get_rule(db, rule_id)
    for name in _SPEC_FIELDS - _PROTECTED_ON_CORRECTION:
        value = getattr(corrected, name)
        if name == "header_row" and value is None:
            value = 0
        setattr(rule, name, value)
    now = utcnow()
    rule.updated_at = now
    rule.self_healed_at = now
    db.commit()
    db.refresh(rule)
    logger.info(f"🩹 Self-healed parsing rule {rule.id} saved for {rule.bank_display_name}")
    return rule
