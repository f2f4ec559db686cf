"""Statement file loading and kind detection (CSV / spreadsheet / PDF / image)."""
import io
import logging
import os

import pandas as pd

logger = logging.getLogger("Ledgerline.Files")

CSV = "csv"
SPREADSHEET = "spreadsheet"
PDF = "pdf"
IMAGE = "image"

_SPREADSHEET_MIME_HINTS = ("spreadsheetml", "vnd.ms-excel", "vnd.openxmlformats")


def detect_file_kind(original_file_name: str = None, mime_type: str = None, file_type: str = None) -> str:
    name = (original_file_name or "").lower()
    mime = (mime_type or "").lower()
    ftype = (file_type or "").lower()

    if name.endswith((".xlsx", ".xls", ".xlsm")) or ftype in ("excel", "xlsx", "xls") \
            or any(h in mime for h in _SPREADSHEET_MIME_HINTS):
        return SPREADSHEET
    if name.endswith(".csv") or ftype == "csv" or "csv" in mime or mime.startswith("text/"):
        return CSV
    if name.endswith(".pdf") or ftype == "pdf" or mime == "application/pdf":
        return PDF
    return IMAGE


def load_file_bytes(file_url: str) -> bytes:
    """Read a stored upload. ``file_url`` is a path under UPLOAD_DIR."""
    path = file_url[len("file://"):] if file_url.startswith("file://") else file_url
    with open(path, "rb") as f:
        data = f.read()
    logger.info(f"  📥 Loaded {os.path.basename(path)} ({len(data)} bytes)")
    return data


def decode_text(data: bytes) -> str:
    """Decode CSV bytes, tolerating a BOM and legacy encodings."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def spreadsheet_to_csv(data: bytes, file_name: str = "") -> str:
    """Convert the first sheet of a workbook to comma-delimited text, header row included."""
    ext = file_name.lower().rsplit(".", 1)[-1] if "." in file_name else ""
    engine = "openpyxl" if ext in {"xlsx", "xlsm", ""} else None
    df = pd.read_excel(io.BytesIO(data), sheet_name=0, header=None, dtype=str, engine=engine)
    df = df.dropna(how="all").fillna("")
    csv_text = df.to_csv(index=False, header=False)
    logger.info(f"  📊 Converted spreadsheet to CSV: {len(df)} rows, {len(csv_text)} chars")
    return csv_text
