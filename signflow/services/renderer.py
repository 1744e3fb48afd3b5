from __future__ import annotations

import base64
import binascii
import hashlib
import io
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Protocol, Sequence
from uuid import UUID

from pypdf import PdfReader, PdfWriter
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen import canvas

from signflow.core.logging_setup import logger
from signflow.models.signing import FieldType
from signflow.services.storage import StorageBackend


def decode_image_data(value: str) -> bytes:
    """Decode a base64 image, with or without a ``data:image/...;base64,`` prefix."""
    payload = value.strip()
    if payload.startswith("data:"):
        _, _, payload = payload.partition(",")
    try:
        decoded = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("image data is not valid base64") from exc
    if not decoded:
        raise ValueError("image data is empty")
    return decoded


@dataclass(frozen=True)
class ResolvedField:
    name: str
    field_type: FieldType
    signer_id: UUID
    page: int
    x: float
    y: float
    width: float
    height: float
    value: Any
    is_image: bool = False


@dataclass(frozen=True)
class RenderedArtifact:
    ref: str
    sha256: str
    size: int


class ArtifactRenderer(Protocol):
    def render(
        self,
        field_values: Sequence[ResolvedField],
        source_document_ref: str,
        *,
        request_id: UUID,
    ) -> RenderedArtifact:
        ...


class PdfArtifactRenderer:
    """Draws resolved field values onto the source PDF.

    Output is content-addressed (``artifacts/<request>/<sha256>.pdf``). When the
    source document is not in storage the fields are drawn on blank A4 pages.
    Canvases run in reportlab's invariant mode so the same input always yields
    the same bytes.
    """

    def __init__(self, storage: StorageBackend) -> None:
        self.storage = storage

    def render(
        self,
        field_values: Sequence[ResolvedField],
        source_document_ref: str,
        *,
        request_id: UUID,
    ) -> RenderedArtifact:
        data = self.build_pdf(field_values, source_document_ref)
        digest = hashlib.sha256(data).hexdigest()
        ref = self.storage.save_bytes(root=f"artifacts/{request_id}", name=f"{digest}.pdf", data=data)
        logger.info("Rendered artifact for request %s (%s bytes, sha256=%s)", request_id, len(data), digest)
        return RenderedArtifact(ref=ref, sha256=digest, size=len(data))

    def build_pdf(self, field_values: Sequence[ResolvedField], source_document_ref: str) -> bytes:
        by_page: dict[int, list[ResolvedField]] = defaultdict(list)
        for field in sorted(field_values, key=lambda item: (item.page, item.name)):
            by_page[field.page].append(field)

        source = self._load_source(source_document_ref)
        if source is None:
            return self._render_blank(by_page)
        return self._render_over_source(source, by_page)

    def _load_source(self, ref: str) -> bytes | None:
        if not ref or not self.storage.exists(ref):
            logger.info("Source document %r not in storage, rendering on blank pages", ref)
            return None
        return self.storage.load_bytes(ref)

    def _render_blank(self, by_page: dict[int, list[ResolvedField]]) -> bytes:
        stream = io.BytesIO()
        width, height = A4
        c = canvas.Canvas(stream, pagesize=A4, invariant=1)
        last_page = max(by_page, default=1)
        for page_number in range(1, last_page + 1):
            for field in by_page.get(page_number, []):
                self._draw_field(c, page_width=width, page_height=height, field=field)
            c.showPage()
        c.save()
        return stream.getvalue()

    def _render_over_source(self, source: bytes, by_page: dict[int, list[ResolvedField]]) -> bytes:
        reader = PdfReader(io.BytesIO(source))
        writer = PdfWriter()
        page_count = len(reader.pages)
        for page_number, page in enumerate(reader.pages, start=1):
            entries = by_page.get(page_number, [])
            if entries:
                width = float(page.mediabox.width)
                height = float(page.mediabox.height)
                overlay_stream = io.BytesIO()
                c = canvas.Canvas(overlay_stream, pagesize=(width, height), invariant=1)
                for field in entries:
                    self._draw_field(c, page_width=width, page_height=height, field=field)
                c.save()
                overlay_stream.seek(0)
                page.merge_page(PdfReader(overlay_stream).pages[0])
            writer.add_page(page)

        overflow = {number: entries for number, entries in by_page.items() if number > page_count}
        if overflow:
            logger.warning("Fields placed beyond the last source page (%s), appending pages", page_count)
            blank = PdfReader(io.BytesIO(self._render_blank(overflow)))
            for page in blank.pages[page_count:]:
                writer.add_page(page)

        output = io.BytesIO()
        writer.write(output)
        return output.getvalue()

    def _draw_field(
        self,
        overlay: canvas.Canvas,
        *,
        page_width: float,
        page_height: float,
        field: ResolvedField,
    ) -> None:
        width = max(float(field.width or 0.01), 0.01) * page_width
        height = max(float(field.height or 0.01), 0.01) * page_height
        x = max(float(field.x or 0.0), 0.0) * page_width
        x = min(max(0.0, x), max(0.0, page_width - width))
        # Field y is measured from the top of the page, reportlab from the bottom.
        top_offset = float(field.y or 0.0) * page_height
        y = page_height - top_offset - height
        y = min(max(0.0, y), max(0.0, page_height - height))

        if field.field_type == FieldType.CHECKBOX:
            side = min(width, height)
            overlay.setStrokeColor(colors.HexColor("#111827"))
            overlay.rect(x, y, side, side)
            if field.value:
                overlay.line(x, y, x + side, y + side)
                overlay.line(x, y + side, x + side, y)
            return

        if field.is_image and field.value:
            reader = ImageReader(io.BytesIO(decode_image_data(str(field.value))))
            overlay.drawImage(reader, x, y, width=width, height=height, preserveAspectRatio=True, mask="auto")
            return

        text = str(field.value or "").strip()
        if not text:
            return
        font_name = "Times-Roman" if field.field_type in (FieldType.SIGNATURE, FieldType.INITIALS) else "Helvetica"
        font_size = max(8, min(24, height * 0.4))
        text_width = pdfmetrics.stringWidth(text, font_name, font_size)
        while text_width > width and font_size > 6:
            font_size -= 1
            text_width = pdfmetrics.stringWidth(text, font_name, font_size)
        overlay.setFont(font_name, font_size)
        overlay.setFillColor(colors.HexColor("#111827"))
        overlay.drawCentredString(x + width / 2, y + height / 2 - font_size / 3, text)
