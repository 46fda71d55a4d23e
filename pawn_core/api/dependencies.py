"""
System container and request dependencies
"""

from typing import Optional

from fastapi import Depends, Header, Request

from ..audit import AuditTrail
from ..config import PawnConfig, get_config
from ..currency import currency_from_code
from ..loans import LoanManager, Operator
from ..migrations import MigrationManager
from ..reporting import ReportingEngine
from ..scheduler import DueDateScheduler
from ..shifts import ShiftManager
from ..storage import StorageInterface, create_storage


class PawnShopSystem:
    """Pawn ledger with all components initialized"""
    
    def __init__(self, config: Optional[PawnConfig] = None, storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        
        self.storage = storage or create_storage(
            self.config.database_url, lock_timeout=self.config.database_lock_timeout
        )
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        
        self.migration_manager = MigrationManager(self.storage, self.audit_trail)
        if self.config.auto_migrate:
            self.migration_manager.migrate_up()
        
        self.loan_manager = LoanManager(
            self.storage,
            self.audit_trail,
            currency=currency_from_code(self.config.currency),
            extension_days=self.config.due_date_extension_days,
            transaction_number_attempts=self.config.transaction_number_attempts,
            transaction_number_digits=self.config.transaction_number_digits
        )
        self.shift_manager = ShiftManager(self.storage, self.loan_manager, self.audit_trail)
        self.reporting_engine = ReportingEngine(self.loan_manager, self.shift_manager)
        self.scheduler = DueDateScheduler(
            self.loan_manager, self.audit_trail,
            interval_seconds=self.config.sweep_interval_seconds
        )
    
    def close(self) -> None:
        self.scheduler.stop()
        self.storage.close()


def get_system(request: Request) -> PawnShopSystem:
    return request.app.state.system


def get_operator(
    x_user_id: str = Header(..., description="Operator user id"),
    x_username: Optional[str] = Header(None, description="Operator username")
) -> Operator:
    """Operator identity supplied by the upstream identity layer"""
    return Operator(user_id=x_user_id, username=x_username or x_user_id)


def require_active_shift(
    request: Request,
    operator: Operator = Depends(get_operator)
) -> Operator:
    """Operator identity, rejected when the operator has no open shift"""
    system = get_system(request)
    if system.config.require_active_shift:
        system.shift_manager.require_open_shift(operator)
    return operator
