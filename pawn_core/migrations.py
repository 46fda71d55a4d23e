"""
Data Migration System

Versioned data migrations over the document store. Tables are created by the
storage backend on first use, so migrations here reshape stored records
rather than DDL.
"""

from typing import Callable, List, Optional, Dict, Any
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
import hashlib
import logging

from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType


logger = logging.getLogger(__name__)


MigrationStep = Callable[[StorageInterface], int]


class Migration:
    """Represents a single data migration"""

    def __init__(self, version: int, name: str, up: MigrationStep, down: Optional[MigrationStep] = None):
        self.version = version
        self.name = name
        self.up = up
        self.down = down
        self.applied_at: Optional[datetime] = None

    @property
    def checksum(self) -> str:
        signature = f"{self.version}:{self.name}:{self.up.__module__}.{self.up.__qualname__}"
        return hashlib.md5(signature.encode()).hexdigest()

    def __str__(self) -> str:
        return f"Migration v{self.version:03d}: {self.name}"

    def __repr__(self) -> str:
        return f"Migration(version={self.version}, name='{self.name}')"


def _is_missing_amount(value: Any) -> bool:
    if value is None or value == "":
        return True
    try:
        return Decimal(str(value)) == Decimal('0')
    except InvalidOperation:
        return True


def backfill_initial_loan_amount(storage: StorageInterface) -> int:
    """Set initial_loan_amount from loan_amount where it is missing or zero"""
    updated = 0
    for loan in storage.load_all("loans"):
        if _is_missing_amount(loan.get("initial_loan_amount")):
            loan["initial_loan_amount"] = loan["loan_amount"]
            storage.save("loans", loan["id"], loan)
            updated += 1
    return updated


def index_transaction_numbers(storage: StorageInterface) -> int:
    """Build the transaction number index for loans that predate it"""
    indexed = 0
    for loan in storage.load_all("loans"):
        number = loan.get("transaction_number")
        if number and not storage.exists("loan_transaction_numbers", number):
            storage.save("loan_transaction_numbers", number, {
                "transaction_number": number,
                "loan_id": loan["id"]
            })
            indexed += 1
    return indexed


def drop_transaction_number_index(storage: StorageInterface) -> int:
    count = storage.count("loan_transaction_numbers")
    storage.clear_table("loan_transaction_numbers")
    return count


class MigrationManager:
    """Manages data migrations"""

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.migrations: List[Migration] = []
        self._migration_table = "schema_migrations"
        self._init_migrations()

    def _init_migrations(self) -> None:
        """Register built-in migrations"""
        # Loans issued before initial_loan_amount existed
        self.add_migration(1, "Backfill initial loan amount", backfill_initial_loan_amount)
        self.add_migration(2, "Index transaction numbers",
                           index_transaction_numbers, drop_transaction_number_index)

    def add_migration(self, version: int, name: str, up: MigrationStep,
                      down: Optional[MigrationStep] = None) -> None:
        """Add a migration to the manager"""
        if any(m.version == version for m in self.migrations):
            raise ValueError(f"Duplicate migration version {version}")
        self.migrations.append(Migration(version, name, up, down))
        self.migrations.sort(key=lambda m: m.version)

    def get_current_version(self) -> int:
        """Get the highest applied version"""
        applied = self.get_applied_migrations()
        versions = [m["version"] for m in applied if isinstance(m.get("version"), int)]
        return max(versions) if versions else 0

    def get_pending_migrations(self, target_version: Optional[int] = None) -> List[Migration]:
        current_version = self.get_current_version()
        max_version = target_version or max((m.version for m in self.migrations), default=0)
        return [m for m in self.migrations if current_version < m.version <= max_version]

    def get_applied_migrations(self) -> List[Dict[str, Any]]:
        return self.storage.load_all(self._migration_table)

    def migrate_up(self, target_version: Optional[int] = None) -> List[Migration]:
        """Apply pending migrations up to target version"""
        pending = self.get_pending_migrations(target_version)
        applied = []

        if not pending:
            logger.info("No pending migrations to apply")
            return applied

        logger.info(f"Applying {len(pending)} pending migrations")

        for migration in pending:
            try:
                logger.info(f"Applying {migration}")

                with self.storage.atomic():
                    affected = migration.up(self.storage)
                    self.storage.save(
                        self._migration_table,
                        f"v{migration.version:03d}",
                        {
                            "version": migration.version,
                            "name": migration.name,
                            "applied_at": datetime.now(timezone.utc).isoformat(),
                            "checksum": migration.checksum,
                            "records_affected": affected
                        }
                    )

                migration.applied_at = datetime.now(timezone.utc)
                applied.append(migration)
                logger.info(f"Successfully applied {migration} ({affected} records)")

                if self.audit_trail:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.MIGRATION_APPLIED,
                        entity_type="migration",
                        entity_id=f"v{migration.version:03d}",
                        metadata={"name": migration.name, "records_affected": affected}
                    )

            except Exception as e:
                logger.error(f"Failed to apply {migration}: {e}")
                raise RuntimeError(f"Migration failed: {migration}") from e

        return applied

    def migrate_down(self, target_version: int) -> List[Migration]:
        """Roll back migrations above target version"""
        current_version = self.get_current_version()

        if target_version >= current_version:
            logger.info("Target version is not lower than current version")
            return []

        rolledback = []
        for migration in reversed(self.migrations):
            if not (target_version < migration.version <= current_version):
                continue
            if not migration.down:
                logger.warning(f"No rollback step for {migration}, skipping")
                continue

            try:
                logger.info(f"Rolling back {migration}")
                with self.storage.atomic():
                    migration.down(self.storage)
                    self.storage.delete(self._migration_table, f"v{migration.version:03d}")
                rolledback.append(migration)
            except Exception as e:
                logger.error(f"Failed to rollback {migration}: {e}")
                raise RuntimeError(f"Rollback failed: {migration}") from e

        return rolledback

    def validate_migrations(self) -> bool:
        """Validate that applied migrations match expected checksums"""
        for applied in self.get_applied_migrations():
            version = applied["version"]
            migration = next((m for m in self.migrations if m.version == version), None)
            if not migration:
                logger.warning(f"Applied migration v{version} not found in definitions")
                continue
            if applied.get("checksum") != migration.checksum:
                logger.error(f"Checksum mismatch for v{version}")
                return False
        return True

    def get_migration_status(self) -> Dict[str, Any]:
        current_version = self.get_current_version()
        pending = self.get_pending_migrations()

        return {
            "current_version": current_version,
            "latest_version": max((m.version for m in self.migrations), default=0),
            "pending_count": len(pending),
            "applied_count": len(self.get_applied_migrations()),
            "pending_migrations": [
                {"version": m.version, "name": m.name} for m in pending
            ],
            "needs_migration": len(pending) > 0
        }
