#!/usr/bin/env python3
"""Re-run extraction for invoices whose extraction FAILED or stalled.

Runs inline against the configured database and extraction provider, so it
needs neither Redis nor a running worker.

Usage:
    python scripts/retry_failed.py                 # every FAILED or stalled invoice
    python scripts/retry_failed.py --invoice ID    # one PENDING, FAILED or PROCESSING invoice
    python scripts/retry_failed.py --dry-run       # list those invoices only

COMPLETED invoices are never re-extracted.

Requirements:
    - OPENAI_API_KEY environment variable set for the OpenAI provider
    - APP_DATABASE_URL / APP_UPLOAD_DIR pointing at the service's data
"""

import argparse
import logging
from collections.abc import Sequence

from services.queue.tasks import build_engine
from services.shared.config import get_settings
from services.shared.errors import NotFoundError
from services.shared.logging import configure_logging
from services.workflow.schema import ExtractionStatus

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Retry failed invoice extractions")
    parser.add_argument(
        "--invoice",
        action="append",
        default=[],
        help="Invoice id to reprocess (repeatable); defaults to every FAILED or stalled invoice",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only list invoices whose extraction FAILED or stalled",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the retry sweep.

    Returns:
        Process exit code: 0 if every retried invoice completed, 1 otherwise
    """
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings)
    engine = build_engine(settings)

    try:
        if args.dry_run:
            failed = engine.find_failed_extractions()
            for invoice_id in failed:
                print(invoice_id)
            logger.info(f"{len(failed)} invoices with failed or stalled extraction")
            return 0

        if args.invoice:
            outcomes = {}
            for invoice_id in args.invoice:
                try:
                    outcomes[invoice_id] = engine.reprocess_extraction(invoice_id)
                except NotFoundError:
                    logger.error(f"Invoice {invoice_id} not found")
                    outcomes[invoice_id] = ExtractionStatus.FAILED
        else:
            outcomes = engine.retry_failed_extractions()
    finally:
        engine.db.dispose()

    for invoice_id, status in outcomes.items():
        print(f"{invoice_id}\t{status.value}")

    completed = sum(1 for status in outcomes.values() if status == ExtractionStatus.COMPLETED)
    logger.info(f"{completed} of {len(outcomes)} extractions completed")
    return 0 if completed == len(outcomes) else 1


if __name__ == "__main__":
    raise SystemExit(main())
