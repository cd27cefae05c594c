"""arq tasks for extraction operator tooling.

Submission schedules extraction in-process (services.queue.background); these
jobs exist so operators can re-run extraction from outside the service, for
one invoice or for every invoice whose extraction FAILED or stalled.

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from arq.connections import RedisSettings
from pydantic import BaseModel

from services.extraction.factory import create_extraction_service
from services.shared.config import Settings, get_settings
from services.shared.errors import NotFoundError
from services.storage.database import Database
from services.storage.service import create_document_storage
from services.workflow import metrics
from services.workflow.engine import InvoiceWorkflowEngine

logger = logging.getLogger(__name__)


class ReprocessResult(BaseModel):
    """Result of a reprocess job.

    Attributes:
        invoice_id: Invoice that was reprocessed
        extraction_status: Extraction status after the attempt
        error: Error message if the job could not run
        completed_at: Job completion timestamp
    """

    invoice_id: str
    extraction_status: str | None = None
    error: str | None = None
    completed_at: str


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def reprocess_invoice(ctx: dict[str, Any], invoice_id: str) -> dict[str, Any]:
    """Re-run extraction for a single invoice.

    The engine blocks on the gateway and the database, so it runs in a
    worker thread to keep the event loop serving other jobs.

    Args:
        ctx: arq context (holds the engine built at startup)
        invoice_id: Invoice to reprocess

    Returns:
        ReprocessResult as dict
    """
    engine: InvoiceWorkflowEngine = ctx["engine"]
    logger.info(f"Reprocessing extraction for invoice {invoice_id}")

    try:
        status = await asyncio.to_thread(engine.reprocess_extraction, invoice_id)
    except NotFoundError as e:
        logger.warning(f"Reprocess of invoice {invoice_id} refused: {e.message}")
        return ReprocessResult(
            invoice_id=invoice_id, error=e.message, completed_at=_now()
        ).model_dump()

    return ReprocessResult(
        invoice_id=invoice_id, extraction_status=status.value, completed_at=_now()
    ).model_dump()


async def retry_failed_extractions(ctx: dict[str, Any]) -> dict[str, str]:
    """Reprocess every invoice whose extraction FAILED or stalled.

    Returns:
        Mapping of invoice id to extraction status after the retry
    """
    engine: InvoiceWorkflowEngine = ctx["engine"]
    outcomes = await asyncio.to_thread(engine.retry_failed_extractions)
    logger.info(f"Retried {len(outcomes)} failed or stalled extractions")
    return {invoice_id: status.value for invoice_id, status in outcomes.items()}


def build_engine(settings: Settings) -> InvoiceWorkflowEngine:
    """Wire an engine without a background queue; jobs run extraction inline."""
    metrics.record_service_info(settings)
    db = Database.from_settings(settings)
    db.create_schema()
    return InvoiceWorkflowEngine(
        db=db,
        extractor=create_extraction_service(settings),
        storage=create_document_storage(settings),
        settings=settings,
    )


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook - build the engine once for all jobs."""
    logger.info("Initializing worker services...")
    settings = get_settings()
    ctx["settings"] = settings
    ctx["engine"] = await asyncio.to_thread(build_engine, settings)
    logger.info("Worker services initialized")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook - release database connections."""
    logger.info("Worker shutting down...")
    engine: InvoiceWorkflowEngine | None = ctx.get("engine")
    if engine is not None:
        engine.db.dispose()


class WorkerSettings:
    """arq worker settings; services.queue.worker fills in the queue options."""

    functions = [reprocess_invoice, retry_failed_extractions]
    on_startup = startup
    on_shutdown = shutdown

    redis_settings: RedisSettings | None = None
    max_jobs = 10
    job_timeout = 300
