"""
Due-Date Scheduler Module

Daily sweep over active loans whose due date has been reached. Loans whose
payments cover the interest get another term; the rest are marked overdue.
Each loan is handled on its own, so one bad record cannot stop the sweep.
"""

from datetime import date, datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging
import threading

from .audit import AuditTrail, AuditEventType
from .loans import LoanManager


logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome of one sweep"""
    as_of: date
    started_at: datetime
    finished_at: Optional[datetime] = None
    examined: int = 0
    extended: List[str] = field(default_factory=list)
    marked_overdue: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "examined": self.examined,
            "extended": list(self.extended),
            "marked_overdue": list(self.marked_overdue),
            "failed": dict(self.failed),
            "skipped": self.skipped
        }


class DueDateScheduler:
    """
    Runs the due-date sweep, either on demand or on a background thread.

    Only one sweep runs at a time per scheduler; an overlapping call returns
    a skipped result instead of waiting.
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        interval_seconds: int = 86400
    ):
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.interval_seconds = interval_seconds
        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_result: Optional[SweepResult] = None

    def run_sweep(self, as_of: Optional[date] = None) -> SweepResult:
        """
        Sweep all active loans due on or before ``as_of`` (default: today).

        Failure to load the candidate loans propagates; per-loan failures are
        logged, recorded in the result and skipped.
        """
        as_of = as_of or self.loan_manager.today()
        result = SweepResult(as_of=as_of, started_at=self.loan_manager.now())

        if not self._run_lock.acquire(blocking=False):
            logger.warning(f"Sweep for {as_of.isoformat()} skipped: another sweep is running")
            result.skipped = True
            result.finished_at = self.loan_manager.now()
            return result

        try:
            candidates = self.loan_manager.find_due_loans(as_of)
            result.examined = len(candidates)
            logger.info(f"Due-date sweep for {as_of.isoformat()}: {len(candidates)} candidate loans")

            for loan in candidates:
                try:
                    outcome = self.loan_manager.advance_due_loan(loan.id, as_of)
                except Exception as e:
                    logger.exception(f"Due-date sweep failed for loan {loan.id}")
                    result.failed[loan.id] = str(e)
                    self._record_failure(loan.id, e)
                    continue

                if outcome == "extended":
                    result.extended.append(loan.id)
                elif outcome == "overdue":
                    result.marked_overdue.append(loan.id)

            result.finished_at = self.loan_manager.now()
            self.last_result = result
        finally:
            self._run_lock.release()

        self.audit_trail.log_event(
            event_type=AuditEventType.SWEEP_COMPLETED,
            entity_type="scheduler",
            entity_id=as_of.isoformat(),
            metadata={
                "examined": result.examined,
                "extended": len(result.extended),
                "marked_overdue": len(result.marked_overdue),
                "failed": len(result.failed)
            }
        )
        logger.info(
            f"Due-date sweep for {as_of.isoformat()} finished: "
            f"{len(result.extended)} extended, {len(result.marked_overdue)} overdue, "
            f"{len(result.failed)} failed"
        )
        return result

    def _record_failure(self, loan_id: str, error: Exception) -> None:
        try:
            self.audit_trail.log_event(
                event_type=AuditEventType.SWEEP_LOAN_FAILED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={"error": type(error).__name__, "message": str(error)}
            )
        except Exception:
            logger.exception(f"Could not audit sweep failure for loan {loan_id}")

    # ------------------------------------------------------------------
    # Background thread
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start sweeping every interval_seconds on a daemon thread"""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="due-date-scheduler",
            daemon=True
        )
        self._thread.start()
        logger.info(f"Due-date scheduler started, interval {self.interval_seconds}s")

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for an in-flight sweep to finish"""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Due-date scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_sweep()
            except Exception:
                # Store unavailable at sweep start; the next interval retries
                logger.exception("Due-date sweep aborted")
            if self._stop_event.wait(self.interval_seconds):
                break
