"""
Background job tasks: document reconciliation.
Run worker from backend dir: celery -A jobs.tasks worker -l info
Requires: REDIS_URL, DATABASE_URL; for model-based extraction: OPENAI_API_KEY.
"""
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

# Ensure backend root is on path for DB imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from celery import Celery  # noqa: E402

from errors import ReconciliationError  # noqa: E402

logger = logging.getLogger(__name__)

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
celery_app = Celery("reconciliation", broker=REDIS_URL, backend=REDIS_URL)
celery_app.conf.task_routes = {"jobs.tasks.*": {"queue": "reconciliation"}}


def _run_reconciliation_job(document_id: str) -> tuple[bool, str | None]:
    from gateway import SqlPersistenceGateway
    from services.pipeline import ReconciliationPipeline

    try:
        result = ReconciliationPipeline(SqlPersistenceGateway()).run(document_id)
    except ReconciliationError as e:
        # The pipeline has already recorded the failure on the document
        logger.warning("[job] reconciliation failed document=%s error=%s", document_id, e)
        return False, str(e)
    logger.info(
        "[job] reconciliation done document=%s analyzed=%d/%d",
        document_id, result.analysis.positions_analyzed, result.analysis.total_positions,
    )
    return True, None


@celery_app.task(bind=True)
def analyze_document_task(self, document_id: str):
    ok, err = _run_reconciliation_job(document_id)
    return {"ok": ok, "document_id": document_id, "error": err}
