import logging
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session
from config import settings
from database import get_db, init_db
from routers import accounts, auth, rules, statements

# ─── Logging ──────────────────────────────────────────────────────────────────

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
# per-request lines from the model client drown out pipeline progress
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger("Ledgerline")

# ─── App ──────────────────────────────────────────────────────────────────────

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="Bank statement ingestion: CSV, spreadsheet, PDF and image statements to a deduplicated ledger",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ─── Routers ──────────────────────────────────────────────────────────────────

app.include_router(auth.router, prefix=f"{settings.API_PREFIX}/auth", tags=["Authentication"])
app.include_router(accounts.router, prefix=settings.API_PREFIX, tags=["Accounts"])
app.include_router(statements.router, prefix=settings.API_PREFIX, tags=["Statements"])
app.include_router(rules.router, prefix=settings.API_PREFIX, tags=["Parsing Rules"])

# ─── Events ───────────────────────────────────────────────────────────────────

@app.on_event("startup")
def startup():
    logger.info("📒 Ledgerline starting up...")
    init_db()
    logger.info(f"📂 Upload directory: {settings.UPLOAD_DIR}")
    logger.info(
        f"⚙️  Extraction: model={settings.AZURE_OPENAI_DEPLOYMENT}, "
        f"page batch={settings.PAGE_BATCH_SIZE}, store batch={settings.STORE_BATCH_SIZE}, "
        f"AI spreadsheet fallback={'on' if settings.AI_SPREADSHEET_FALLBACK else 'off'}"
    )


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "healthy", "service": settings.PROJECT_NAME, "version": settings.VERSION}
