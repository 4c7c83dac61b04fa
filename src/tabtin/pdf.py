"""PDF page rasterization for batches that upload PDFs instead of images."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import fitz  # PyMuPDF

from tabtin.records.models import PdfOptions

logger = logging.getLogger(__name__)

POINTS_PER_INCH = 72.0


@dataclass(slots=True)
class PdfPage:
    """One rendered page with its text layer."""

    page_number: int
    image_bytes: bytes
    mime_type: str
    extracted_text: str | None
    width: int
    height: int


class PdfConverter(Protocol):
    def convert(self, pdf_bytes: bytes, options: PdfOptions) -> list[PdfPage]: ...


class PyMuPdfConverter:
    """Render every page at the requested DPI, downscaled to fit the size limits."""

    def convert(self, pdf_bytes: bytes, options: PdfOptions) -> list[PdfPage]:
        pages: list[PdfPage] = []
        image_format = "jpeg" if options.image_format.lower() in {"jpg", "jpeg"} else "png"
        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
            for number, page in enumerate(doc, start=1):
                zoom = page_scale(
                    page.rect.width,
                    page.rect.height,
                    dpi=options.dpi,
                    max_width=options.max_width,
                    max_height=options.max_height,
                )
                pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
                if image_format == "jpeg":
                    image_bytes = pix.tobytes(output="jpeg", jpg_quality=options.quality)
                else:
                    image_bytes = pix.tobytes(output="png")
                text = page.get_text().strip()
                pages.append(
                    PdfPage(
                        page_number=number,
                        image_bytes=image_bytes,
                        mime_type=f"image/{image_format}",
                        extracted_text=text or None,
                        width=pix.width,
                        height=pix.height,
                    ),
                )
        logger.debug("Rendered %s PDF page(s) at %s dpi", len(pages), options.dpi)
        return pages


def page_scale(
    width_points: float,
    height_points: float,
    *,
    dpi: int,
    max_width: int,
    max_height: int,
) -> float:
    """Zoom factor for `dpi`, reduced so the rendered page fits within the pixel limits."""

    scale = dpi / POINTS_PER_INCH
    if width_points > 0 and max_width > 0:
        scale = min(scale, max_width / width_points)
    if height_points > 0 and max_height > 0:
        scale = min(scale, max_height / height_points)
    return scale
