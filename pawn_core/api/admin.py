"""
Admin endpoints (due-date sweep, audit, migrations)
"""

from datetime import date
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends

from .dependencies import PawnShopSystem, get_system


router = APIRouter()


@router.post("/sweep")
def run_sweep(
    as_of: Optional[date] = None,
    system: PawnShopSystem = Depends(get_system)
) -> Dict[str, Any]:
    """Run the due-date sweep now"""
    result = system.scheduler.run_sweep(as_of)
    return result.to_dict()


@router.get("/scheduler")
def get_scheduler_status(system: PawnShopSystem = Depends(get_system)) -> Dict[str, Any]:
    """Scheduler state and the outcome of its last sweep"""
    last = system.scheduler.last_result
    return {
        "running": system.scheduler.is_running,
        "interval_seconds": system.scheduler.interval_seconds,
        "last_sweep": last.to_dict() if last else None
    }


@router.get("/audit/verify")
def verify_audit_trail(system: PawnShopSystem = Depends(get_system)) -> Dict[str, Any]:
    """Verify the audit hash chain"""
    return system.audit_trail.verify_integrity()


@router.get("/migrations")
def get_migration_status(system: PawnShopSystem = Depends(get_system)) -> Dict[str, Any]:
    """Applied and pending data migrations"""
    return system.migration_manager.get_migration_status()
