"""
Self-Healing Rule Corrector.

When a confirmed rule parses nothing out of a file that clearly has rows,
the rule is the likely culprit (wrong date format, renamed header). Ask the
model for a corrected rule, re-parse exactly once, and persist the fix if it
works. There is no second round: a correction that still parses nothing
ends in a warning.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from agents.base import BaseAgent, parse_llm_json
from config import settings
from schemas import ParsedTransaction, ParsingRuleSpec
from services.csv_parser import parse_csv_with_rules
from services.rule_store import apply_rule_correction, merge_rule_correction

logger = logging.getLogger("Ledgerline.Agent.RuleFix")

HEAL_FAILED_WARNING = "Self-healing attempted but failed. Manual rule correction needed."


# ─── LLM Prompts ──────────────────────────────────────────────────────────────

FIX_PROMPT = """The CSV parsing rules below FAILED to extract any transactions.
Analyze the CSV sample and FIX the parsing rules.

CURRENT RULES (that failed):
{rules}

PARSING ERRORS/WARNINGS:
{warnings}

CSV SAMPLE (first {sample_size} rows):
```
{sample}
```

ANALYZE what's wrong and return CORRECTED parsing rules as JSON ONLY, using the same keys:
- Check if dateFormat matches actual dates in the data (e.g., "28-Nov-25" = "DD-MMM-YY")
- Check if column names exactly match the CSV headers
- Check if headerRow and dataStartRow are correct

Return ONLY the corrected rules as a valid JSON object (no explanation):"""


def needs_self_healing(content: str, rule: ParsingRuleSpec, parsed_count: int) -> bool:
    """Zero transactions from a file with more than a handful of candidate rows."""
    if parsed_count > 0:
        return False
    expected_rows = len(content.split("\n")) - (rule.data_start_row or 1)
    return expected_rows > settings.SELF_HEAL_MIN_ROWS


@dataclass
class HealingOutcome:
    healed: bool
    transactions: list[ParsedTransaction]
    warnings: list[str] = field(default_factory=list)
    rule: Optional[ParsingRuleSpec] = None
    input_tokens: int = 0
    output_tokens: int = 0


class RuleCorrectorAgent(BaseAgent):
    temperature = 0
    max_tokens = 4096

    def run(self, db: Session, content: str, rule: ParsingRuleSpec, warnings: list[str]) -> HealingOutcome:
        sample_size = settings.SELF_HEAL_SAMPLE_LINES
        sample = "\n".join(content.split("\n")[:sample_size])
        prompt = FIX_PROMPT.format(
            rules=json.dumps(rule.model_dump(mode="json", by_alias=True, exclude_none=True), indent=2),
            warnings="\n".join(warnings) or "No specific errors - likely date format or column mismatch",
            sample_size=sample_size,
            sample=sample,
        )

        outcome = HealingOutcome(healed=False, transactions=[], warnings=list(warnings))
        try:
            response = self._generate(prompt)
            outcome.input_tokens = response.input_tokens
            outcome.output_tokens = response.output_tokens

            correction = parse_llm_json(response.text)
            if not isinstance(correction, dict):
                raise ValueError("correction is not a JSON object")
            # some responses wrap the rule
            correction = correction.get("csvParsingRules", correction)
            logger.info(f"  🩺 Model suggested: {json.dumps(correction)[:500]}")

            updated = merge_rule_correction(rule, correction)
            retry, retry_warnings = parse_csv_with_rules(content, updated)
            logger.info(f"  🩺 Retry extracted {len(retry)} transactions")

            if retry:
                if rule.id:
                    apply_rule_correction(db, rule.id, updated)
                outcome.healed = True
                outcome.transactions = retry
                outcome.warnings = retry_warnings
                outcome.rule = updated
            else:
                logger.error("  ❌ Self-healing retry still parsed nothing. Manual intervention needed.")
                outcome.warnings.append(HEAL_FAILED_WARNING)
        except Exception as e:
            logger.error(f"  ❌ Self-healing request failed: {e}")
            outcome.warnings.append(f"Self-healing failed: {e}")

        return outcome
