"""
Scheduled worker trigger.

The hosting platform has no long-lived background processes, so an external
scheduler calls this endpoint (about every 2 minutes) and each call runs one
time-boxed transcription runner.
"""

import logging
import secrets
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from config import settings
from routers.rate_limit import rate_limit
from services.transcription_worker import RunSummary, run_transcription_worker

logger = logging.getLogger(__name__)

router = APIRouter()

WorkerRun = Callable[[], Awaitable[RunSummary]]


def get_worker_run() -> WorkerRun:
    """Dependency returning the runner entrypoint (overridable in tests)."""
    return run_transcription_worker


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def _is_authorized(request: Request) -> bool:
    token = _bearer_token(request)
    expected = (settings.CRON_SECRET or "development-secret").strip()
    return token is not None and secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))


async def _trigger(request: Request, run_worker: WorkerRun):
    if not _is_authorized(request):
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    logger.info("Transcription worker triggered")
    try:
        summary = await run_worker()
    except Exception as exc:
        logger.exception("Transcription worker run failed")
        return JSONResponse(
            status_code=500,
            content={"error": "Worker failed", "message": str(exc) or "Unknown error"},
        )

    return {
        "success": True,
        "message": f"Processed {summary.processed_count} transcription job(s)",
        "processedCount": summary.processed_count,
        "failedCount": summary.failed_count,
        "reclaimedCount": summary.reclaimed_count,
        "drained": summary.drained,
        "timedOut": summary.timed_out,
    }


@router.get("/transcription", dependencies=[Depends(rate_limit("worker_trigger", limit=30, window_seconds=60))])
async def trigger_transcription_worker(request: Request, run_worker: WorkerRun = Depends(get_worker_run)):
    """Run one transcription worker invocation (scheduler entrypoint)."""
    return await _trigger(request, run_worker)


@router.post("/transcription", dependencies=[Depends(rate_limit("worker_trigger", limit=30, window_seconds=60))])
async def trigger_transcription_worker_post(request: Request, run_worker: WorkerRun = Depends(get_worker_run)):
    """Same as GET, for schedulers that only issue POST requests."""
    return await _trigger(request, run_worker)
