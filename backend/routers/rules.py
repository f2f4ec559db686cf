import logging
from typing import Any
from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.orm import Session
from database import get_db
from schemas import ParsingRuleCreate, ParsingRuleResponse
from routers.auth import get_current_user_dep
from services.rule_store import (
    RuleNotFoundError, RulePermissionError, RulePreconditionError, RuleStoreError,
    RuleValidationError, confirm_parsing_rule, find_parsing_rule, save_parsing_rule,
    update_parsing_rule,
)

logger = logging.getLogger("Ledgerline.Rules")

router = APIRouter()


def _http_error(e: RuleStoreError) -> HTTPException:
    if isinstance(e, RuleNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, RulePermissionError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, RulePreconditionError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, RuleValidationError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


@router.get("/rules")
def get_rules(
    bank_name: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_dep),
):
    """Best confirmed rule for a bank, or ``found: false``."""
    if not bank_name.strip():
        raise HTTPException(status_code=400, detail="Bank name required")
    rule = find_parsing_rule(db, user_id, bank_name)
    if not rule:
        return {"found": False}
    return {"found": True, "rules": ParsingRuleResponse.model_validate(rule)}


@router.post("/rules", response_model=ParsingRuleResponse, status_code=201)
def create_rules(
    body: ParsingRuleCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_dep),
):
    """Save a new, unconfirmed rule for the given bank."""
    fields = body.model_dump(exclude={"bank_name"}, exclude_none=True)
    rule = save_parsing_rule(db, user_id, body.bank_name, fields)
    return ParsingRuleResponse.model_validate(rule)


@router.post("/rules/{rule_id}/confirm")
def confirm_rules(
    rule_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_dep),
):
    try:
        rule = confirm_parsing_rule(db, rule_id, user_id)
    except RuleStoreError as e:
        raise _http_error(e)
    return {
        "success": True,
        "message": f"Parsing rules confirmed for {rule.bank_display_name}",
        "rules": ParsingRuleResponse.model_validate(rule),
    }


@router.patch("/rules/{rule_id}", response_model=ParsingRuleResponse)
def update_rules(
    rule_id: str,
    updates: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_dep),
):
    """Edit geometry/format fields of an unconfirmed rule you created."""
    try:
        rule = update_parsing_rule(db, rule_id, user_id, updates)
    except RuleStoreError as e:
        raise _http_error(e)
    return ParsingRuleResponse.model_validate(rule)
