"""
Engine wiring shared by the API routers
"""

from datetime import date
from typing import Callable, Optional

from fastapi import Request

from ..audit import AuditTrail
from ..cache import TTLCache
from ..config import LendingConfig, get_config
from ..income import IncomeLedger
from ..loans import LoanManager
from ..reconciliation import PaymentReconciler
from ..reporting import PortfolioReporter
from ..schedule import PaymentScheduleGenerator
from ..storage import StorageInterface, create_storage


class LendingSystem:
    """Lending engine with all components initialized"""

    def __init__(
        self,
        config: Optional[LendingConfig] = None,
        storage: Optional[StorageInterface] = None,
        today: Optional[Callable[[], date]] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.today = today or date.today

        self.audit_trail = AuditTrail(self.storage)
        self.income_ledger = IncomeLedger(self.storage, self.audit_trail, self.config)
        self.schedule_generator = PaymentScheduleGenerator(
            self.storage, self.audit_trail, self.config, today=self.today
        )
        self.loan_manager = LoanManager(
            self.storage, self.audit_trail, self.schedule_generator,
            self.income_ledger, self.config, today=self.today
        )
        self.reconciler = PaymentReconciler(
            self.schedule_generator, self.income_ledger, self.audit_trail,
            loan_manager=self.loan_manager, config=self.config, today=self.today
        )
        self.cache = TTLCache(default_ttl_seconds=self.config.cache_ttl_seconds)
        self.reporter = PortfolioReporter(
            self.schedule_generator, self.loan_manager, self.income_ledger,
            cache=self.cache, today=self.today
        )

    @property
    def currency(self) -> str:
        return self.config.currency

    def changed(self) -> None:
        """Called by writers so cached reports are rebuilt"""
        self.reporter.invalidate()

    def close(self) -> None:
        self.storage.close()


def get_lending_system(request: Request) -> LendingSystem:
    return request.app.state.lending_system
