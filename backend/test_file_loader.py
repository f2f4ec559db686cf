import base64
import io

import fitz
import pandas as pd
import pytest
from PIL import Image

from services import file_loader
from services.pdf_processor import (
    extract_page_texts, get_page_count, image_bytes_to_base64, pdf_pages_to_base64,
)


@pytest.mark.parametrize("name, mime, file_type, expected", [
    ("jan.csv", None, None, file_loader.CSV),
    ("export", "text/plain", None, file_loader.CSV),
    ("jan.xlsx", "application/octet-stream", None, file_loader.SPREADSHEET),
    ("jan", None, "excel", file_loader.SPREADSHEET),
    ("jan.pdf", None, None, file_loader.PDF),
    ("upload", "application/pdf", None, file_loader.PDF),
    ("scan.jpg", "image/jpeg", None, file_loader.IMAGE),
])
def test_detect_file_kind(name, mime, file_type, expected):
    assert file_loader.detect_file_kind(name, mime, file_type) == expected


def test_decode_text_handles_bom_and_latin1():
    assert file_loader.decode_text("\ufeffDate,Desc".encode("utf-8")) == "Date,Desc"
    assert file_loader.decode_text("Caf\xe9".encode("latin-1")) == "Café"


def test_load_file_bytes(tmp_path):
    path = tmp_path / "jan.csv"
    path.write_bytes(b"a,b")
    assert file_loader.load_file_bytes(str(path)) == b"a,b"
    assert file_loader.load_file_bytes(f"file://{path}") == b"a,b"


def test_spreadsheet_to_csv_keeps_header_and_drops_blank_rows():
    buffer = io.BytesIO()
    pd.DataFrame([
        ["Date", "Desc", "Amount"],
        ["2024-01-05", "Coffee", "-4.50"],
        [None, None, None],
        ["2024-01-06", "Salary", "2000.00"],
    ]).to_excel(buffer, index=False, header=False)

    csv_text = file_loader.spreadsheet_to_csv(buffer.getvalue(), "jan.xlsx")
    assert csv_text.splitlines() == [
        "Date,Desc,Amount",
        "2024-01-05,Coffee,-4.50",
        "2024-01-06,Salary,2000.00",
    ]


def _pdf(pages):
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


def test_pdf_pages():
    data = _pdf(["Opening balance 1000.00", "Closing balance 900.00"])

    assert get_page_count(data) == 2
    texts = extract_page_texts(data)
    assert len(texts) == 2
    assert "Opening balance" in texts[0]

    images = pdf_pages_to_base64(data, dpi=36)
    assert len(images) == 2
    assert base64.b64decode(images[0]).startswith(b"\x89PNG")


def test_image_is_normalized_to_png():
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), "white").save(buffer, format="JPEG")
    encoded = image_bytes_to_base64(buffer.getvalue())
    assert base64.b64decode(encoded).startswith(b"\x89PNG")
