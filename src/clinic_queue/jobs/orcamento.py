"""
Budget (orçamento) PDF job.

`generate-pdf` on queue `orcamento`: load the budget, render it to PDF, store the
file, point the budget row at it and, best-effort, notify. Every collaborator is
injected so the handler itself only sequences the steps.
"""

from __future__ import annotations

import asyncio
import json
import re
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from clinic_queue.notify.base import Notification
from clinic_queue.notify.ntfy import NtfyNotifier
from clinic_queue.queue.errors import NonRetryableJobError
from clinic_queue.queue.manager import QueueManager
from clinic_queue.queue.models import AddJobResult
from clinic_queue.utils.log import logger

from .pdf_placeholder import PlaceholderPdfRenderer, format_currency
from .registry import HandlerRegistry

ORCAMENTO_QUEUE = "orcamento"
GENERATE_PDF = "generate-pdf"
PDF_JOB_ATTEMPTS = 3

_ID_KEYS = ("orcamento_id", "orcamentoId", "target_id", "targetId")


class BudgetNotFoundError(NonRetryableJobError):
    def __init__(self, budget_id: Any) -> None:
        super().__init__(f"Orcamento {budget_id} not found")
        self.budget_id = budget_id


@dataclass(frozen=True, slots=True)
class BudgetDocument:
    orcamento: dict[str, Any]
    paciente: dict[str, Any]
    itens: list[dict[str, Any]] = field(default_factory=list)

    @property
    def numero(self) -> str:
        return str(self.orcamento.get("numero_orcamento") or self.orcamento.get("id") or "")


class BudgetRepository(Protocol):
    async def fetch(self, budget_id: Any) -> BudgetDocument | None: ...
    async def set_pdf_url(self, budget_id: Any, pdf_url: str) -> None: ...
    async def mark_pdf_failed(self, budget_id: Any) -> None: ...
    async def mark_notification_sent(self, budget_id: Any) -> None: ...


class RenderSession(Protocol):
    async def render(self, document: BudgetDocument) -> bytes: ...


class PdfRenderer(Protocol):
    def session(self) -> AbstractAsyncContextManager[RenderSession]:
        """A rendering engine instance, released when the block exits."""
        ...


class ArtifactStorage(Protocol):
    async def store(self, file_name: str, content: bytes) -> str:
        """Persist `content` and return its public URL."""
        ...


class BudgetNotifier(Protocol):
    @property
    def available(self) -> bool: ...

    async def notify_budget_ready(self, document: BudgetDocument, pdf_url: str) -> bool: ...


def budget_id_from_payload(payload: Any) -> Any:
    if isinstance(payload, dict):
        for key in _ID_KEYS:
            v = payload.get(key)
            if v is not None and str(v).strip():
                return int(v) if isinstance(v, str) and v.strip().isdigit() else v
    raise NonRetryableJobError(f"{GENERATE_PDF} payload carries no orcamento id")


def pdf_file_name(document: BudgetDocument) -> str:
    safe = re.sub(r"[^A-Za-z0-9_.-]+", "_", document.numero).strip("._") or "sem_numero"
    return f"orcamento_{safe}.pdf"


class GeneratePdfHandler:
    def __init__(
        self,
        *,
        repository: BudgetRepository,
        renderer: PdfRenderer,
        storage: ArtifactStorage,
        notifier: BudgetNotifier | None = None,
    ) -> None:
        self._repo = repository
        self._renderer = renderer
        self._storage = storage
        self._notifier = notifier

    async def __call__(self, payload: Any) -> dict[str, Any]:
        budget_id = budget_id_from_payload(payload)
        logger.info("orcamento_pdf_started", orcamento_id=str(budget_id))

        document = await self._repo.fetch(budget_id)
        if document is None:
            raise BudgetNotFoundError(budget_id)

        try:
            async with self._renderer.session() as session:
                pdf = await session.render(document)

            pdf_url = await self._storage.store(pdf_file_name(document), pdf)
            await self._repo.set_pdf_url(budget_id, pdf_url)
        except Exception:
            await self._mark_failed(budget_id)
            raise
        logger.info("orcamento_pdf_stored", orcamento_id=str(budget_id), pdf_url=pdf_url, size=len(pdf))

        notification_sent = await self._notify(budget_id, document, pdf_url)
        return {
            "success": True,
            "orcamento_id": budget_id,
            "pdf_url": pdf_url,
            "notification_sent": notification_sent,
        }

    async def _mark_failed(self, budget_id: Any) -> None:
        # Best-effort: the render or store error is what the queue records.
        try:
            await self._repo.mark_pdf_failed(budget_id)
        except Exception as ex:
            logger.warning("orcamento_pdf_status_update_failed", orcamento_id=str(budget_id), error=str(ex))

    async def _notify(self, budget_id: Any, document: BudgetDocument, pdf_url: str) -> bool:
        # A notification problem never fails the job.
        if self._notifier is None or not self._notifier.available:
            return False
        try:
            sent = await self._notifier.notify_budget_ready(document, pdf_url)
            if sent:
                await self._repo.mark_notification_sent(budget_id)
        except Exception as ex:
            logger.warning("orcamento_notification_failed", orcamento_id=str(budget_id), error=str(ex))
            return False
        if not sent:
            logger.warning("orcamento_notification_not_delivered", orcamento_id=str(budget_id))
        return bool(sent)


class SqlBudgetRepository:
    """Reads budgets from the clinic's `orcamentos`/`usuarios` tables."""

    _FETCH = text(
        """
        SELECT
          o.*,
          p.full_name AS paciente_nome,
          p.email AS paciente_email,
          p.phone AS paciente_telefone,
          p.birth_date AS paciente_nascimento
        FROM orcamentos o
        LEFT JOIN usuarios p ON o.paciente_id = p.id
        WHERE o.id = :id
        """
    )
    _SET_PDF = text(
        "UPDATE orcamentos SET pdf_url = :pdf_url, pdf_status = 'ready', updated_at = CURRENT_TIMESTAMP "
        "WHERE id = :id"
    )
    _SET_FAILED = text(
        "UPDATE orcamentos SET pdf_status = 'failed', updated_at = CURRENT_TIMESTAMP WHERE id = :id"
    )
    _MARK_SENT = text(
        "UPDATE orcamentos SET notification_sent = :sent, notification_sent_at = CURRENT_TIMESTAMP "
        "WHERE id = :id"
    )

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def fetch(self, budget_id: Any) -> BudgetDocument | None:
        async with self._engine.connect() as conn:
            row = (await conn.execute(self._FETCH, {"id": budget_id})).mappings().first()
        if row is None:
            return None
        itens = row.get("itens")
        if isinstance(itens, (str, bytes)):
            itens = json.loads(itens or "[]")
        return BudgetDocument(
            orcamento={
                "id": row.get("id"),
                "numero_orcamento": row.get("numero_orcamento"),
                "valor_total": row.get("valor_total"),
                "desconto": row.get("desconto"),
                "valor_final": row.get("valor_final"),
                "validade": row.get("validade"),
                "observacoes": row.get("observacoes"),
                "status": row.get("status"),
                "link_aceite": row.get("link_aceite"),
                "created_at": row.get("created_at") or row.get("criado_em"),
            },
            paciente={
                "id": row.get("paciente_id"),
                "full_name": row.get("paciente_nome"),
                "email": row.get("paciente_email"),
                "phone": row.get("paciente_telefone"),
                "birth_date": row.get("paciente_nascimento"),
            },
            itens=list(itens or []),
        )

    async def set_pdf_url(self, budget_id: Any, pdf_url: str) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(self._SET_PDF, {"id": budget_id, "pdf_url": pdf_url})

    async def mark_pdf_failed(self, budget_id: Any) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(self._SET_FAILED, {"id": budget_id})

    async def mark_notification_sent(self, budget_id: Any) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(self._MARK_SENT, {"id": budget_id, "sent": True})


class LocalArtifactStorage:
    def __init__(self, root: Path, base_url: str) -> None:
        self._root = Path(root)
        self._base_url = str(base_url or "").rstrip("/")

    def _write(self, file_name: str, content: bytes) -> Path:
        self._root.mkdir(parents=True, exist_ok=True)
        path = self._root / file_name
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(content)
        tmp.replace(path)
        return path

    async def store(self, file_name: str, content: bytes) -> str:
        path = await asyncio.to_thread(self._write, file_name, content)
        logger.info("pdf_stored_locally", path=str(path))
        return f"{self._base_url}/uploads/orcamentos/{file_name}"


class NtfyBudgetNotifier:
    def __init__(self, ntfy: NtfyNotifier) -> None:
        self._ntfy = ntfy

    @property
    def available(self) -> bool:
        return self._ntfy.available

    async def notify_budget_ready(self, document: BudgetDocument, pdf_url: str) -> bool:
        paciente = str(document.paciente.get("full_name") or "paciente")
        return await self._ntfy.asend(
            Notification(
                event="orcamento.pdf_ready",
                title=f"Orcamento {document.numero}",
                message=(
                    f"Orcamento {document.numero} de {paciente} pronto: "
                    f"{format_currency(document.orcamento.get('valor_final'))}"
                ),
                url=pdf_url,
                tags=["orcamento", "pdf"],
            )
        )


def build_orcamento_registry(
    *,
    repository: BudgetRepository,
    storage: ArtifactStorage,
    renderer: PdfRenderer | None = None,
    notifier: BudgetNotifier | None = None,
    registry: HandlerRegistry | None = None,
) -> HandlerRegistry:
    reg = registry or HandlerRegistry(ORCAMENTO_QUEUE)
    reg.register(
        GENERATE_PDF,
        GeneratePdfHandler(
            repository=repository,
            renderer=renderer or PlaceholderPdfRenderer(),
            storage=storage,
            notifier=notifier,
        ),
    )
    return reg


async def enqueue_pdf_generation(manager: QueueManager, budget_id: Any) -> AddJobResult:
    """Idempotent per budget: resubmitting while the job exists is a no-op."""
    res = await manager.add_job(
        ORCAMENTO_QUEUE,
        GENERATE_PDF,
        {"orcamento_id": budget_id},
        {"job_id": f"orcamento-pdf-{budget_id}", "attempts": PDF_JOB_ATTEMPTS},
    )
    logger.info("orcamento_pdf_enqueued", orcamento_id=str(budget_id), job_id=res.job_id)
    return res
