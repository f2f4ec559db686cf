"""Model usage accounting for extraction runs."""
import logging

from sqlalchemy.orm import Session

from config import settings
from models import UsageRecord

logger = logging.getLogger("Ledgerline.Usage")


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """USD cost from the per-million-token pricing table. Unknown models fall back to gpt-4o."""
    pricing = settings.MODEL_PRICING.get(model) or settings.MODEL_PRICING["gpt-4o"]
    return (input_tokens / 1_000_000) * pricing["input"] + (output_tokens / 1_000_000) * pricing["output"]


def record_usage(db: Session, **fields) -> str:
    fields.setdefault(
        "estimated_cost",
        calculate_cost(fields.get("ai_model", ""), fields.get("input_tokens", 0), fields.get("output_tokens", 0)),
    )
    record = UsageRecord(**fields)
    db.add(record)
    db.commit()
    logger.info(f"  💰 Usage recorded: {record.input_tokens}+{record.output_tokens} tokens, "
                f"${record.estimated_cost:.4f}")
    return record.id
