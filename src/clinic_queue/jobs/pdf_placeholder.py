"""
Plain-text budget PDF. Stands in for the HTML template engine, which lives
outside this service.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from clinic_queue.utils.log import logger

if TYPE_CHECKING:
    from .orcamento import BudgetDocument


def format_currency(value: Any) -> str:
    try:
        amount = float(value or 0)
    except (TypeError, ValueError):
        amount = 0.0
    return f"R$ {amount:.2f}".replace(".", ",")


def _pdf_escape(s: str) -> str:
    return s.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def render_text_pdf(lines: list[str]) -> bytes:
    """Single-page PDF with one Helvetica text line per entry (latin-1)."""
    ops = ["BT", "/F1 11 Tf", "50 800 Td", "14 TL"]
    for line in lines:
        safe = _pdf_escape(line.encode("latin-1", "replace").decode("latin-1"))
        ops.append(f"({safe}) '")
    ops.append("ET")
    stream = "\n".join(ops).encode("latin-1", "replace")

    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 595 842] "
        b"/Resources << /Font << /F1 4 0 R >> >> /Contents 5 0 R >>",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
        b"<< /Length " + str(len(stream)).encode() + b" >>\nstream\n" + stream + b"\nendstream",
    ]
    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for i, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += f"{i} 0 obj\n".encode() + body + b"\nendobj\n"
    xref = len(out)
    out += f"xref\n0 {len(objects) + 1}\n0000000000 65535 f \n".encode()
    for off in offsets:
        out += f"{off:010d} 00000 n \n".encode()
    out += f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref}\n%%EOF\n".encode()
    return bytes(out)


def budget_lines(document: BudgetDocument) -> list[str]:
    o, p = document.orcamento, document.paciente
    lines = [
        f"Orcamento {document.numero}",
        f"Paciente: {p.get('full_name') or '-'}",
        "",
    ]
    for item in document.itens:
        qtd = float(item.get("qtd") or item.get("quantidade") or 1)
        unit = float(item.get("valor_unitario") or 0)
        lines.append(
            f"{item.get('descricao') or '-'}  x{qtd:g}  {format_currency(unit)}  {format_currency(qtd * unit)}"
        )
    lines += [
        "",
        f"Total: {format_currency(o.get('valor_total'))}",
        f"Desconto: {format_currency(o.get('desconto'))}",
        f"Valor final: {format_currency(o.get('valor_final'))}",
    ]
    return lines


class _PlaceholderSession:
    async def render(self, document: BudgetDocument) -> bytes:
        return render_text_pdf(budget_lines(document))


class PlaceholderPdfRenderer:
    @asynccontextmanager
    async def session(self) -> AsyncIterator[_PlaceholderSession]:
        logger.debug("pdf_renderer_session_opened")
        try:
            yield _PlaceholderSession()
        finally:
            logger.debug("pdf_renderer_session_closed")
