"""
Payment Schedule Module

Turns an amortization table into persisted installments, one per calendar
month, and answers questions about a loan's schedule. This is the single
place schedule rows are created; every path that activates a loan goes
through PaymentScheduleGenerator.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Any
from enum import Enum
import calendar

from .amortization import compute_schedule
from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .currency import quantize_amount
from .exceptions import NotFoundError, StateError, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("lending.schedule")


class ScheduleStatus(Enum):
    """Status of one installment"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


def status_after_payment(amount_due: Decimal, paid_amount: Decimal) -> ScheduleStatus:
    """Status of an installment once paid_amount has been applied in total"""
    if paid_amount >= amount_due:
        return ScheduleStatus.PAID
    if paid_amount > Decimal('0'):
        return ScheduleStatus.PARTIAL
    return ScheduleStatus.PENDING


def status_as_of(status: ScheduleStatus, due_date: date, as_of: date) -> ScheduleStatus:
    """Unpaid installments whose due date has passed read as overdue"""
    if status != ScheduleStatus.PAID and due_date < as_of:
        return ScheduleStatus.OVERDUE
    return status


class DueDatePolicy(Enum):
    """How installment due dates are derived from the start date"""
    FIRST_OF_MONTH = "first_of_month"  # always the 1st of the month
    ANNIVERSARY = "anniversary"        # same day as start, clamped to month end

    def due_date(self, start_date: date, installment: int) -> date:
        """Due date of the given 1-indexed installment"""
        shifted = add_months(start_date, installment)
        if self == DueDatePolicy.FIRST_OF_MONTH:
            return shifted.replace(day=1)
        return shifted


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass
class PaymentScheduleEntry(StorageRecord):
    """One expected installment of a loan"""
    loan_id: str
    installment_number: int
    due_date: date
    amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    remaining_balance: Decimal
    status: ScheduleStatus = ScheduleStatus.PENDING
    paid_date: Optional[date] = None
    paid_amount: Optional[Decimal] = None

    @property
    def amount_paid(self) -> Decimal:
        return self.paid_amount if self.paid_amount is not None else Decimal('0')

    @property
    def balance_due(self) -> Decimal:
        return max(self.amount - self.amount_paid, Decimal('0'))

    @property
    def is_paid(self) -> bool:
        return self.status == ScheduleStatus.PAID

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentScheduleEntry':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            amount=Decimal(data['amount']),
            principal_amount=Decimal(data['principal_amount']),
            interest_amount=Decimal(data['interest_amount']),
            remaining_balance=Decimal(data['remaining_balance']),
            status=ScheduleStatus(data['status']),
            paid_date=date.fromisoformat(data['paid_date']) if data.get('paid_date') else None,
            paid_amount=Decimal(data['paid_amount']) if data.get('paid_amount') is not None else None
        )


def schedule_entry_id(loan_id: str, installment_number: int) -> str:
    return f"{loan_id}_{installment_number}"


class PaymentScheduleGenerator:
    """
    Generates, stores and reads payment schedules
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        config: Optional[LendingConfig] = None,
        today: Optional[Callable[[], date]] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.today = today or date.today
        self.schedule_table = "payment_schedules"

        try:
            self.due_date_policy = DueDatePolicy(self.config.due_date_policy)
        except ValueError:
            raise ValidationError(f"Unknown due date policy: {self.config.due_date_policy}")

    def build_entries(
        self,
        loan_id: str,
        principal: Decimal,
        annual_interest_rate: Decimal,
        term_months: int,
        start_date: date
    ) -> List[PaymentScheduleEntry]:
        """
        Build schedule entries without persisting them

        Monetary values are rounded to 2 decimal places here, at the point
        they become rows, not during the amortization itself.
        """
        result = compute_schedule(principal, annual_interest_rate, term_months)
        amount = quantize_amount(result.monthly_payment)
        now = datetime.now(timezone.utc)

        entries = []
        for installment in result.installments:
            entries.append(PaymentScheduleEntry(
                id=schedule_entry_id(loan_id, installment.index),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                installment_number=installment.index,
                due_date=self.due_date_policy.due_date(start_date, installment.index),
                amount=amount,
                principal_amount=quantize_amount(installment.principal_portion),
                interest_amount=quantize_amount(installment.interest_portion),
                remaining_balance=quantize_amount(installment.remaining_balance)
            ))
        return entries

    def generate_schedule(self, loan) -> List[PaymentScheduleEntry]:
        """
        Generate and persist the schedule of a loan being activated

        Installments start one month after the disbursement date (today when
        the loan has none).

        Args:
            loan: Loan with principal, annual_interest_rate, term_months and
                disbursement_date

        Returns:
            The persisted entries, in installment order

        Raises:
            ValidationError: If the loan terms are invalid
            StateError: If the loan already has a schedule
            PersistenceError: If storage fails; nothing is written
        """
        start_date = loan.disbursement_date or self.today()
        entries = self.build_entries(
            loan_id=loan.id,
            principal=loan.principal,
            annual_interest_rate=loan.annual_interest_rate,
            term_months=loan.term_months,
            start_date=start_date
        )
        return self.create_schedules(loan.id, entries)

    def create_schedules(self, loan_id: str, entries: List[PaymentScheduleEntry]) -> List[PaymentScheduleEntry]:
        """Persist a full schedule set for a loan, all or nothing"""
        with self.storage.atomic():
            if self.has_schedule(loan_id):
                log_action(logger, "warning", "Refused to generate a second schedule",
                           action="generate_schedule", loan_id=loan_id)
                raise StateError(f"Loan {loan_id} already has a payment schedule")

            for entry in entries:
                self.storage.save(self.schedule_table, entry.id, entry.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.SCHEDULE_GENERATED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={
                    "installments": len(entries),
                    "monthly_payment": entries[0].amount if entries else None,
                    "first_due_date": entries[0].due_date if entries else None,
                    "last_due_date": entries[-1].due_date if entries else None
                }
            )

        log_action(logger, "info", f"Generated {len(entries)} installments",
                   action="generate_schedule", loan_id=loan_id)
        return entries

    def has_schedule(self, loan_id: str) -> bool:
        return bool(self.storage.find(self.schedule_table, {"loan_id": loan_id}))

    def get_schedule(self, loan_id: str) -> List[PaymentScheduleEntry]:
        """Get a loan's installments ordered by due date"""
        entries = [
            PaymentScheduleEntry.from_dict(data)
            for data in self.storage.find(self.schedule_table, {"loan_id": loan_id})
        ]
        entries.sort(key=lambda e: e.installment_number)
        return entries

    def get_entry(self, entry_id: str) -> PaymentScheduleEntry:
        data = self.storage.load(self.schedule_table, entry_id)
        if not data:
            raise NotFoundError("schedule entry", entry_id)
        return PaymentScheduleEntry.from_dict(data)

    def save_entry(self, entry: PaymentScheduleEntry) -> None:
        entry.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.schedule_table, entry.id, entry.to_dict())

    def find_entries(self, status: Optional[ScheduleStatus] = None) -> List[PaymentScheduleEntry]:
        filters = {"status": status.value} if status else {}
        entries = [PaymentScheduleEntry.from_dict(data) for data in self.storage.find(self.schedule_table, filters)]
        entries.sort(key=lambda e: (e.due_date, e.loan_id, e.installment_number))
        return entries

    def delete_schedule(self, loan_id: str) -> int:
        """Delete every installment of a loan (only as part of deleting the loan)"""
        return self.storage.delete_where(self.schedule_table, {"loan_id": loan_id})

    def effective_status(self, entry: PaymentScheduleEntry, as_of: Optional[date] = None) -> ScheduleStatus:
        return status_as_of(entry.status, entry.due_date, as_of or self.today())

    def mark_overdue(self, as_of: Optional[date] = None) -> int:
        """
        Persist the overdue status on unpaid installments past their due date

        Returns:
            Number of entries moved to overdue
        """
        as_of = as_of or self.today()
        marked = 0
        for status in (ScheduleStatus.PENDING, ScheduleStatus.PARTIAL):
            for entry in self.find_entries(status):
                if status_as_of(entry.status, entry.due_date, as_of) != ScheduleStatus.OVERDUE:
                    continue
                with self.storage.record_lock(self.schedule_table, entry.id):
                    entry = self.get_entry(entry.id)
                    if entry.status not in (ScheduleStatus.PENDING, ScheduleStatus.PARTIAL):
                        continue
                    entry.status = ScheduleStatus.OVERDUE
                    self.save_entry(entry)
                self.audit_trail.log_event(
                    event_type=AuditEventType.SCHEDULE_OVERDUE,
                    entity_type="schedule_entry",
                    entity_id=entry.id,
                    metadata={"due_date": entry.due_date, "as_of": as_of}
                )
                marked += 1

        if marked:
            logger.info(f"Marked {marked} installments overdue as of {as_of.isoformat()}")
        return marked
