"""
Scheduler API Routes

Internal endpoint for the custody reconciliation sweeps.
Called by an external timer (cron, cloud scheduler) on a fixed cadence.
Safe to call more often than necessary: every sweep is idempotent.
"""
import os
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Header, Query
from fastapi.responses import JSONResponse

from ..config import get_settings
from ..database import SessionLocal
from ..services.custody import (
    CustodyReconciliationScheduler, CustodyService, SqlAlchemyCustodyRepository, SWEEP_ORDER,
)


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

INTERNAL_API_KEY = os.getenv("SCHEDULER_INTERNAL_KEY", "scheduler-internal-key-change-in-production")


async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


# =============================================================================
# SCHEDULER INSTANCE
# =============================================================================

def _session_service() -> CustodyService:
    """One session per sweep; sweeps run on separate threads."""
    return CustodyService(SqlAlchemyCustodyRepository(SessionLocal()), get_settings())


_scheduler: Optional[CustodyReconciliationScheduler] = None


def get_scheduler() -> CustodyReconciliationScheduler:
    """Process-wide scheduler so single-flight holds across requests."""
    global _scheduler
    if _scheduler is None:
        _scheduler = CustodyReconciliationScheduler(_session_service, get_settings())
    return _scheduler


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/custody-scheduler/run")
def run_custody_scheduler(
    tasks: Optional[List[str]] = Query(None, description=f"Subset of: {', '.join(SWEEP_ORDER)}"),
    scheduler: CustodyReconciliationScheduler = Depends(get_scheduler),
    _: bool = Depends(verify_internal_key),
):
    """
    Run the custody reconciliation sweeps.

    System-automatic - no user confirmation required.
    Returns 200 when every sweep succeeded, 207 when any failed.
    """
    unknown = [t for t in (tasks or []) if t not in SWEEP_ORDER]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown task(s): {', '.join(unknown)}")

    report = scheduler.run(tasks)

    return JSONResponse(status_code=200 if report["success"] else 207, content=report)
