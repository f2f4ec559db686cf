"""PDF and image processing utilities."""
import io
import base64
import logging
import fitz  # PyMuPDF
import pdfplumber
from PIL import Image
from config import settings

logger = logging.getLogger("Ledgerline.PDF")


def get_page_count(data: bytes) -> int:
    """Number of pages in a PDF held in memory."""
    with fitz.open(stream=data, filetype="pdf") as doc:
        return doc.page_count


def extract_page_texts(data: bytes) -> list[str]:
    """Text layer of each page via pdfplumber. Scanned pages come back empty."""
    texts = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for page in pdf.pages:
            texts.append(page.extract_text() or "")
    return texts


def image_to_base64(image: Image.Image, format: str = "PNG") -> str:
    """Convert a PIL Image to base64 string."""
    buffered = io.BytesIO()
    image.save(buffered, format=format)
    return base64.b64encode(buffered.getvalue()).decode("utf-8")


def pdf_pages_to_base64(data: bytes, dpi: int = None) -> list[str]:
    """Render every PDF page to a base64 PNG."""
    dpi = dpi or settings.PDF_TO_IMAGE_DPI
    zoom = dpi / 72.0
    images = []
    with fitz.open(stream=data, filetype="pdf") as doc:
        for page_num in range(len(doc)):
            page = doc.load_page(page_num)
            pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom))
            img = Image.frombytes("RGB", [pix.width, pix.height], pix.samples)
            images.append(image_to_base64(img))
    logger.info(f"  🖼️  Rendered {len(images)} page(s) at {dpi} DPI")
    return images


def image_bytes_to_base64(data: bytes) -> str:
    """Normalize an uploaded image (JPEG, PNG, TIFF...) to a base64 PNG."""
    with Image.open(io.BytesIO(data)) as img:
        return image_to_base64(img.convert("RGB"))
