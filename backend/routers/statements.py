import os
import uuid
import logging
from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.orm import Session
from database import get_db
from models import Account, Statement, StatementStatus, Transaction
from schemas import ScanResult, StatementResponse, TransactionResponse
from config import settings
from routers.auth import get_current_user_dep
from orchestrator import handle_statement_created, handle_status_change
from services import file_loader
from services.ledger import delete_statement_cascade
from services.pdf_processor import get_page_count

logger = logging.getLogger("Ledgerline.Statements")

router = APIRouter()

_IN_FLIGHT = {
    StatementStatus.PENDING_EXTRACTION.value,
    StatementStatus.EXTRACTING.value,
    StatementStatus.SELF_HEALING.value,
}


def _get_owned_statement(db: Session, statement_id: str, user_id: str) -> Statement:
    statement = db.query(Statement).filter(Statement.id == statement_id, Statement.user_id == user_id).first()
    if not statement:
        raise HTTPException(status_code=404, detail="Statement not found")
    return statement


@router.post("/statements", response_model=StatementResponse, status_code=201)
async def upload_statement(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    account_id: str = Form(...),
    extract: bool = Form(False),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_dep),
):
    """Upload a statement file (PDF, image, CSV or spreadsheet) for an account."""
    account = db.query(Account).filter(Account.id == account_id, Account.user_id == user_id).first()
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")

    content = await file.read()
    if len(content) > settings.MAX_FILE_SIZE_MB * 1024 * 1024:
        raise HTTPException(
            status_code=400,
            detail=f"File {file.filename} exceeds {settings.MAX_FILE_SIZE_MB}MB limit",
        )

    kind = file_loader.detect_file_kind(file.filename, file.content_type)
    statement_id = str(uuid.uuid4())
    ext = os.path.splitext(file.filename or "")[1].lower()
    file_path = os.path.join(settings.UPLOAD_DIR, f"{statement_id}{ext}")
    with open(file_path, "wb") as f:
        f.write(content)

    page_count = 1
    if kind == file_loader.PDF:
        try:
            page_count = get_page_count(content)
        except Exception as e:
            logger.warning(f"Could not read page count for {file.filename}: {e}")
            page_count = None

    statement = Statement(
        id=statement_id,
        user_id=user_id,
        account_id=account.id,
        file_url=file_path,
        original_file_name=file.filename,
        mime_type=file.content_type,
        file_type=kind,
        file_size=len(content),
        page_count=page_count,
        status=(StatementStatus.PENDING_EXTRACTION if extract else StatementStatus.UPLOADED).value,
        warnings=[],
    )
    db.add(statement)
    db.commit()
    db.refresh(statement)
    logger.info(f"Uploaded {file.filename} as statement {statement.id} ({kind})")

    if extract:
        background_tasks.add_task(handle_statement_created, statement.id, statement.status)

    return StatementResponse.model_validate(statement)


@router.get("/statements/{statement_id}", response_model=StatementResponse)
def get_statement(
    statement_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_dep),
):
    return StatementResponse.model_validate(_get_owned_statement(db, statement_id, user_id))


@router.get("/statements/{statement_id}/transactions", response_model=list[TransactionResponse])
def list_statement_transactions(
    statement_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_dep),
):
    _get_owned_statement(db, statement_id, user_id)
    rows = (
        db.query(Transaction)
        .filter(Transaction.statement_id == statement_id)
        .order_by(Transaction.date, Transaction.created_at)
        .all()
    )
    return [TransactionResponse.model_validate(r) for r in rows]


@router.post("/statements/{statement_id}/scan", response_model=ScanResult)
def scan_statement(
    statement_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_dep),
):
    """Identify the bank and propose a parsing rule for a CSV or spreadsheet upload."""
    from agents.statement_scanner import StatementScannerAgent

    statement = _get_owned_statement(db, statement_id, user_id)
    kind = file_loader.detect_file_kind(statement.original_file_name, statement.mime_type, statement.file_type)
    if kind not in (file_loader.CSV, file_loader.SPREADSHEET):
        raise HTTPException(status_code=400, detail="Only CSV and spreadsheet statements can be scanned")

    previous_status = statement.status
    statement.status = StatementStatus.SCANNING.value
    db.commit()

    try:
        data = file_loader.load_file_bytes(statement.file_url)
        if kind == file_loader.SPREADSHEET:
            content = file_loader.spreadsheet_to_csv(data, statement.original_file_name or "")
        else:
            content = file_loader.decode_text(data)
        result = StatementScannerAgent().run(db, user_id, statement.original_file_name, content)
    except Exception as e:
        logger.error(f"Scan failed for {statement_id}: {e}")
        statement.status = previous_status
        db.commit()
        raise HTTPException(status_code=502, detail=f"Failed to scan document: {e}")

    statement.status = StatementStatus.UPLOADED.value
    statement.scan_result = result.model_dump(mode="json")
    statement.parsing_rule_id = result.csv_parsing_rules_id
    db.commit()
    return result


@router.post("/statements/{statement_id}/extract", response_model=StatementResponse, status_code=202)
def start_extraction(
    statement_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_dep),
):
    """Move the statement to pending_extraction and run the pipeline in the background."""
    statement = _get_owned_statement(db, statement_id, user_id)
    before = statement.status
    if before in _IN_FLIGHT:
        raise HTTPException(status_code=409, detail="Extraction already in progress")

    statement.status = StatementStatus.PENDING_EXTRACTION.value
    statement.extraction_progress = 0
    statement.error_message = None
    db.commit()
    db.refresh(statement)

    background_tasks.add_task(handle_status_change, statement.id, before, statement.status)
    logger.info(f"Queued extraction for statement {statement.id} ({before} -> {statement.status})")
    return StatementResponse.model_validate(statement)


@router.delete("/statements/{statement_id}")
def delete_statement(
    statement_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_dep),
):
    """Delete a statement, its transactions and the stored file."""
    statement = _get_owned_statement(db, statement_id, user_id)
    file_path = statement.file_url
    deleted = delete_statement_cascade(db, statement_id)

    if file_path and os.path.exists(file_path):
        os.remove(file_path)

    return {"message": "Statement deleted successfully", "transactions_deleted": deleted}
