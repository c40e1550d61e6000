"""
Reporting Module

Portfolio and collections reports built from loans, schedules and the income
ledger: payment-status aging, portfolio summary and a customer's upcoming
installments. Results can be cached in an injected TTLCache; writers call
invalidate() after changing state.
"""

from decimal import Decimal
from datetime import date
from typing import Callable, Dict, List, Optional, Any
from enum import Enum

from .cache import TTLCache
from .currency import quantize_amount
from .income import IncomeLedger
from .loans import LoanManager, LoanStatus
from .logging_config import get_logger
from .schedule import PaymentScheduleGenerator, ScheduleStatus


logger = get_logger("lending.reporting")

CACHE_PREFIX = "reports:"


class AgingBucket(Enum):
    """Days-past-due buckets for unpaid installments"""
    ON_TIME = "on_time"                    # not yet due
    OVERDUE_7_DAYS = "overdue_7_days"      # 1-7 days late
    OVERDUE_30_DAYS = "overdue_30_days"    # 8-30 days late
    OVERDUE_OVER_30_DAYS = "overdue_over_30_days"


def aging_bucket(due_date: date, as_of: date) -> AgingBucket:
    """Bucket of an unpaid installment on the given date"""
    days_late = (as_of - due_date).days
    if days_late <= 0:
        return AgingBucket.ON_TIME
    if days_late <= 7:
        return AgingBucket.OVERDUE_7_DAYS
    if days_late <= 30:
        return AgingBucket.OVERDUE_30_DAYS
    return AgingBucket.OVERDUE_OVER_30_DAYS


class PortfolioReporter:
    """
    Read-only reports over the loan book
    """

    def __init__(
        self,
        schedule_generator: PaymentScheduleGenerator,
        loan_manager: LoanManager,
        income_ledger: IncomeLedger,
        cache: Optional[TTLCache] = None,
        today: Optional[Callable[[], date]] = None
    ):
        self.schedule_generator = schedule_generator
        self.loan_manager = loan_manager
        self.income_ledger = income_ledger
        self.cache = cache
        self.today = today or date.today

    def _cached(self, key: str, compute: Callable[[], Any]) -> Any:
        if self.cache is None:
            return compute()
        return self.cache.get_or_compute(CACHE_PREFIX + key, compute)

    def invalidate(self) -> None:
        """Drop cached reports after a write"""
        if self.cache is not None:
            dropped = self.cache.invalidate_prefix(CACHE_PREFIX)
            if dropped:
                logger.debug(f"Invalidated {dropped} cached reports")

    def payment_status(self, as_of: Optional[date] = None) -> Dict[str, Any]:
        """
        Aging of unpaid installments

        Every installment that is not paid counts towards total_pending and
        exactly one aging bucket; total_overdue is the sum of the late buckets.
        """
        as_of = as_of or self.today()
        return self._cached(f"payment_status:{as_of.isoformat()}", lambda: self._payment_status(as_of))

    def _payment_status(self, as_of: date) -> Dict[str, Any]:
        counts = {bucket.value: 0 for bucket in AgingBucket}
        overdue_amount = Decimal('0')
        total_pending = 0

        for entry in self.schedule_generator.find_entries():
            if entry.status == ScheduleStatus.PAID:
                continue
            total_pending += 1
            bucket = aging_bucket(entry.due_date, as_of)
            counts[bucket.value] += 1
            if bucket != AgingBucket.ON_TIME:
                overdue_amount += entry.balance_due

        report = dict(counts)
        report.update({
            "as_of": as_of.isoformat(),
            "total_pending": total_pending,
            "total_overdue": total_pending - counts[AgingBucket.ON_TIME.value],
            "overdue_amount": str(quantize_amount(overdue_amount))
        })
        return report

    def portfolio_summary(self) -> Dict[str, Any]:
        """Loan counts by status, money lent and collected, approval rate"""
        return self._cached("portfolio_summary", self._portfolio_summary)

    def _portfolio_summary(self) -> Dict[str, Any]:
        loans = self.loan_manager.list_loans()
        by_status = {status.value: 0 for status in LoanStatus}
        disbursed_principal = Decimal('0')
        outstanding = Decimal('0')

        for loan in loans:
            by_status[loan.status.value] += 1
            if loan.status in (LoanStatus.DISBURSED, LoanStatus.CLOSED):
                disbursed_principal += loan.principal
            if loan.status == LoanStatus.DISBURSED:
                outstanding += loan.outstanding_balance

        collected = sum(
            (entry.amount_paid for entry in self.schedule_generator.find_entries()),
            Decimal('0')
        )

        # Pending applications count in the denominator
        approved = by_status["approved"] + by_status["disbursed"] + by_status["closed"]
        applications = approved + by_status["rejected"] + by_status["pending"]
        approval_rate = round(approved * 100 / applications) if applications else 0

        return {
            "total_loans": len(loans),
            "loans_by_status": by_status,
            "approval_rate": approval_rate,
            "total_disbursed": str(quantize_amount(disbursed_principal)),
            "outstanding_balance": str(quantize_amount(outstanding)),
            "total_collected": str(quantize_amount(collected)),
            "interest_income": str(quantize_amount(self.income_ledger.total_income(
                category=self.income_ledger.config.interest_income_category
            )))
        }

    def upcoming_payments(self, customer_id: str, limit: Optional[int] = None,
                          as_of: Optional[date] = None) -> List[Dict[str, Any]]:
        """Unpaid installments of a customer's active loans, earliest due first"""
        as_of = as_of or self.today()
        rows = []
        for loan in self.loan_manager.list_loans(customer_id=customer_id, status=LoanStatus.DISBURSED):
            for entry in self.schedule_generator.get_schedule(loan.id):
                if entry.is_paid:
                    continue
                rows.append({
                    "schedule_id": entry.id,
                    "loan_id": loan.id,
                    "installment_number": entry.installment_number,
                    "due_date": entry.due_date.isoformat(),
                    "amount": str(entry.amount),
                    "balance_due": str(quantize_amount(entry.balance_due)),
                    "status": self.schedule_generator.effective_status(entry, as_of).value
                })

        rows.sort(key=lambda r: (r["due_date"], r["loan_id"]))
        if limit is not None:
            rows = rows[:limit]
        return rows
