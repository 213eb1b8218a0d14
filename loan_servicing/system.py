"""
Servicing System Module

Wires storage, audit trail, loan store, scheduling policy, holiday calendar,
lifecycle manager and settlement processor together from configuration.
"""

from datetime import date
from typing import Callable, Optional

from .audit import AuditTrail
from .calendars import HolidayCalendar
from .config import LoanServicingConfig, SchedulingPolicy, get_config
from .lifecycle import LifecycleManager
from .logging_config import setup_logging
from .settlement import SettlementProcessor
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface
from .store import LoanStore


class ServicingSystem:
    """Loan servicing engine with all components initialized"""

    def __init__(
        self,
        config: Optional[LoanServicingConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Callable[[], date]] = None,
        configure_logging: bool = False
    ):
        self.config = config or get_config()
        if configure_logging:
            setup_logging(self.config.log_level, log_format=self.config.log_format)

        self.storage = storage or self._create_storage()
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.store = LoanStore(self.storage)
        self.policy = SchedulingPolicy.from_config(self.config)
        self.holiday_calendar = HolidayCalendar.for_region(self.config.holiday_region)

        self.lifecycle = LifecycleManager(
            self.store, self.audit_trail, self.policy,
            holiday_calendar=self.holiday_calendar, clock=clock
        )
        self.settlement = SettlementProcessor(self.store, self.audit_trail, clock=clock)

    def _create_storage(self) -> StorageInterface:
        """Create storage backend based on configuration"""
        backend = self.config.storage_backend.lower()
        if backend == "sqlite":
            return SQLiteStorage(self.config.sqlite_path)
        if backend == "memory":
            return InMemoryStorage()
        raise ValueError(f"Unknown storage backend: {self.config.storage_backend}")

    def close(self) -> None:
        self.storage.close()


def build_system(config: Optional[LoanServicingConfig] = None,
                 clock: Optional[Callable[[], date]] = None) -> ServicingSystem:
    """Build a servicing system from configuration (environment by default)"""
    return ServicingSystem(config=config, clock=clock)
