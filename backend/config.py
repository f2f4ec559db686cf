import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    PROJECT_NAME: str = "Ledgerline"
    VERSION: str = "1.0.0"
    API_PREFIX: str = "/api"

    # Database: use /app/data for persistence with Docker volumes
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL",
        "sqlite:////app/data/ledgerline.db",
    )

    # Azure OpenAI
    AZURE_OPENAI_API_KEY: str = os.getenv("AZURE_OPENAI_API_KEY", "")
    AZURE_OPENAI_ENDPOINT: str = os.getenv("AZURE_OPENAI_ENDPOINT", "")
    AZURE_OPENAI_API_VERSION: str = os.getenv("AZURE_OPENAI_API_VERSION", "2024-12-01-preview")
    AZURE_OPENAI_DEPLOYMENT: str = os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o")
    AZURE_OPENAI_VISION_DEPLOYMENT: str = os.getenv("AZURE_OPENAI_VISION_DEPLOYMENT", "gpt-4o")
    LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "120"))

    # File upload
    UPLOAD_DIR: str = os.getenv(
        "UPLOAD_DIR",
        os.path.join(os.path.dirname(os.path.abspath(__file__)), "uploads"),
    )
    MAX_FILE_SIZE_MB: int = 50

    # JWT Authentication
    JWT_SECRET: str = os.getenv("JWT_SECRET", "ledgerline-dev-secret-change-in-production")
    JWT_EXPIRY_HOURS: int = int(os.getenv("JWT_EXPIRY_HOURS", "72"))

    # PDF Processing
    PDF_TO_IMAGE_DPI: int = 150

    # Extraction pipeline
    PAGE_BATCH_SIZE: int = int(os.getenv("PAGE_BATCH_SIZE", "5"))
    STORE_BATCH_SIZE: int = 500
    CSV_CHUNK_MAX_CHARS: int = 50000
    SELF_HEAL_MIN_ROWS: int = 10
    SELF_HEAL_SAMPLE_LINES: int = 15
    REVIEW_AVG_CONFIDENCE: float = 0.85
    REVIEW_TX_CONFIDENCE: float = 0.8
    MAX_STATEMENT_WARNINGS: int = 20
    # Spreadsheets without a confirmed rule go to the model instead of
    # stopping at needs_rules_confirmation
    AI_SPREADSHEET_FALLBACK: bool = os.getenv("AI_SPREADSHEET_FALLBACK", "false").lower() in ("1", "true", "yes")

    # USD per million tokens
    MODEL_PRICING: dict = {
        "gpt-4o": {"input": 2.50, "output": 10.00},
        "gpt-4o-mini": {"input": 0.15, "output": 0.60},
        "gpt-4.1": {"input": 2.00, "output": 8.00},
        "gpt-4.1-mini": {"input": 0.40, "output": 1.60},
    }

    # CORS: set ALLOWED_ORIGINS env var as comma-separated URLs for production
    ALLOWED_ORIGINS: list = [
        x.strip()
        for x in os.getenv(
            "ALLOWED_ORIGINS",
            "http://localhost:3000,http://127.0.0.1:3000",
        ).split(",")
    ]


settings = Settings()

# Ensure upload directory exists
os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
