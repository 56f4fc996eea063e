from fastapi import APIRouter, Depends

from src.handoff.security import get_api_key
from src.handoff.services.janitor.service import SweepReport, janitor

router = APIRouter(prefix="", tags=["system"])


@router.get("/health")
async def health_check_v1() -> dict:
    """API v1 health endpoint."""
    return {"status": "ok", "version": "v1"}


@router.post("/system/janitor/sweep", response_model=SweepReport, dependencies=[Depends(get_api_key)])
async def janitor_sweep_v1() -> SweepReport:
    """Run one retention sweep now.

    Purges expired vault records and audit logs across every scope and
    evaluates all live views. Safe to call repeatedly.
    """

    return janitor.sweep()
