from __future__ import annotations

from dataclasses import dataclass
import io
import logging
import re

from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from policytracker.core.config import get_settings
from policytracker.core.errors import CompressionError


logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
JPEG_CONTENT_TYPE = "image/jpeg"

_EXTENSION_RE = re.compile(r"\.[^/.]+$")


@dataclass(frozen=True)
class Document:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class CompressionResult:
    document: Document
    original_size: int

    @property
    def compressed_size(self) -> int:
        return self.document.size

    @property
    def compressed(self) -> bool:
        return self.compressed_size < self.original_size


def jpeg_filename(filename: str) -> str:
    # Swap the trailing extension; names without one are left alone.
    return _EXTENSION_RE.sub(".jpg", filename)


def scaled_dimensions(width: int, height: int, max_dimension: int) -> tuple[int, int]:
    # Never upscale; the longest side ends at or below max_dimension.
    scale = min(1.0, max_dimension / max(width, height))
    return max(1, round(width * scale)), max(1, round(height * scale))


def _flatten_to_rgb(image: Image.Image) -> Image.Image:
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def compress_image_bytes(data: bytes, *, max_dimension: int, quality: int) -> bytes:
    """Resize an image so it fits ``max_dimension`` and re-encode it as JPEG.

    Raises ``CompressionError`` when the bytes cannot be decoded.
    """
    try:
        with Image.open(io.BytesIO(data)) as source:
            source.load()
            image = _flatten_to_rgb(source)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise CompressionError("image could not be decoded") from exc

    target = scaled_dimensions(image.width, image.height, max_dimension)
    if target != image.size:
        image = image.resize(target, Image.Resampling.LANCZOS)
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality, optimize=True)
    return buffer.getvalue()


def compress_pdf_bytes(data: bytes, *, quality: int) -> bytes:
    """Rewrite a PDF with compressed content streams and deduplicated objects.

    Embedded raster images are re-encoded at ``quality``. Raises
    ``CompressionError`` when the PDF cannot be parsed.
    """
    try:
        reader = PdfReader(io.BytesIO(data))
        writer = PdfWriter(clone_from=reader)
    except (PdfReadError, OSError, ValueError) as exc:
        raise CompressionError("pdf could not be parsed") from exc

    for page in writer.pages:
        for embedded in page.images:
            try:
                embedded.replace(embedded.image, quality=quality)
            except Exception as exc:  # noqa: BLE001 - keep the original image when re-encoding fails
                logger.debug("pdf_image_reencode_skipped name=%s error=%s", embedded.name, type(exc).__name__)
        page.compress_content_streams()
    writer.compress_identical_objects(remove_identicals=True, remove_orphans=True)

    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def compress_document(
    document: Document,
    *,
    max_dimension: int | None = None,
    quality: int | None = None,
    pdf_min_bytes: int | None = None,
) -> CompressionResult:
    """Shrink an uploaded document before storage.

    Images are resized and re-encoded as JPEG; large PDFs are rewritten. The
    original is returned whenever the rewrite would not be strictly smaller or
    the payload cannot be decoded. Other content types pass through.
    """
    settings = get_settings()
    max_dimension = max_dimension or settings.compression_max_image_dimension
    quality = quality or settings.compression_jpeg_quality
    pdf_min_bytes = pdf_min_bytes if pdf_min_bytes is not None else settings.compression_pdf_min_bytes
    content_type = (document.content_type or "").split(";")[0].strip().lower()

    if content_type.startswith("image/"):
        try:
            data = compress_image_bytes(document.data, max_dimension=max_dimension, quality=quality)
        except CompressionError:
            logger.warning("image_compression_failed filename=%s", document.filename)
            return CompressionResult(document=document, original_size=document.size)
        if len(data) >= document.size:
            return CompressionResult(document=document, original_size=document.size)
        compressed = Document(
            filename=jpeg_filename(document.filename),
            content_type=JPEG_CONTENT_TYPE,
            data=data,
        )
        logger.info(
            "image_compressed filename=%s original_bytes=%s compressed_bytes=%s",
            document.filename,
            document.size,
            len(data),
        )
        return CompressionResult(document=compressed, original_size=document.size)

    if content_type == PDF_CONTENT_TYPE:
        if document.size < pdf_min_bytes:
            return CompressionResult(document=document, original_size=document.size)
        try:
            data = compress_pdf_bytes(document.data, quality=quality)
        except CompressionError:
            logger.warning("pdf_compression_failed filename=%s", document.filename)
            return CompressionResult(document=document, original_size=document.size)
        if len(data) >= document.size:
            return CompressionResult(document=document, original_size=document.size)
        logger.info(
            "pdf_compressed filename=%s original_bytes=%s compressed_bytes=%s",
            document.filename,
            document.size,
            len(data),
        )
        compressed = Document(filename=document.filename, content_type=PDF_CONTENT_TYPE, data=data)
        return CompressionResult(document=compressed, original_size=document.size)

    return CompressionResult(document=document, original_size=document.size)
