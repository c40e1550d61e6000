"""
Payment Reconciliation Module

Applies customer payments to schedule entries. The transition of an entry
into paid and the interest income it produces are written together in one
atomic block, so an entry is never paid without its income record or
vice versa.

Lock order is always record lock first, then the storage transaction.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Callable, Optional, Union

from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .currency import Currency, Money, quantize_amount, to_decimal
from .exceptions import StateError, ValidationError
from .income import IncomeLedger, IncomeRecord
from .logging_config import get_logger, log_action
from .schedule import (
    PaymentScheduleEntry, PaymentScheduleGenerator, ScheduleStatus, status_after_payment
)


logger = get_logger("lending.reconciliation")


class OverpaymentPolicy:
    RECORD = "record"
    REJECT = "reject"


@dataclass
class ReconciliationResult:
    """Outcome of applying a payment to one schedule entry"""
    entry: PaymentScheduleEntry
    previous_status: ScheduleStatus
    income_record: Optional[IncomeRecord] = None

    @property
    def income_recognized(self) -> bool:
        return self.income_record is not None

    @property
    def became_paid(self) -> bool:
        return self.previous_status != ScheduleStatus.PAID and self.entry.status == ScheduleStatus.PAID


class PaymentReconciler:
    """
    Reconciles payments against the payment schedule
    """

    def __init__(
        self,
        schedule_generator: PaymentScheduleGenerator,
        income_ledger: IncomeLedger,
        audit_trail: AuditTrail,
        loan_manager=None,
        config: Optional[LendingConfig] = None,
        today: Optional[Callable[[], date]] = None
    ):
        self.schedule_generator = schedule_generator
        self.storage = schedule_generator.storage
        self.income_ledger = income_ledger
        self.audit_trail = audit_trail
        self.loan_manager = loan_manager
        self.config = config or get_config()
        self.today = today or date.today

        if self.config.overpayment_policy not in (OverpaymentPolicy.RECORD, OverpaymentPolicy.REJECT):
            raise ValidationError(f"Unknown overpayment policy: {self.config.overpayment_policy}")

    def apply_payment(
        self,
        entry_id: str,
        amount: Union[Decimal, int, float, str],
        payment_date: Optional[date] = None,
        user_id: Optional[str] = None
    ) -> ReconciliationResult:
        """
        Apply a payment to a schedule entry

        Payments accumulate in paid_amount. The entry becomes partial while
        the total is below the amount due and paid once it reaches it. On
        the transition into paid, the entry's interest portion is recognised
        as income in the same atomic block.

        Args:
            entry_id: Schedule entry receiving the payment
            amount: Amount received, must be positive
            payment_date: Defaults to today
            user_id: Staff member recording the payment

        Returns:
            ReconciliationResult with the updated entry and any income record

        Raises:
            ValidationError: Non-positive amount, or overpayment under the reject policy
            NotFoundError: Unknown schedule entry
            StateError: Entry is already paid
            PersistenceError: Storage failure, nothing written
        """
        amount = quantize_amount(to_decimal(amount))
        if amount <= Decimal('0'):
            raise ValidationError(f"Payment amount must be positive, got {amount}")
        payment_date = payment_date or self.today()

        with self.storage.record_lock(self.schedule_generator.schedule_table, entry_id):
            with self.storage.atomic():
                entry = self.schedule_generator.get_entry(entry_id)
                if entry.status == ScheduleStatus.PAID:
                    raise StateError(f"Schedule entry {entry_id} is already paid")

                if amount > entry.balance_due and self.config.overpayment_policy == OverpaymentPolicy.REJECT:
                    raise ValidationError(
                        f"Payment {amount} exceeds balance due {entry.balance_due} on schedule entry {entry_id}"
                    )

                result = self._apply(entry, entry.amount_paid + amount, payment_date, user_id)

        log_action(
            logger, "info",
            f"Applied {self._format(amount)} to installment {entry.installment_number}",
            user_id=user_id, action="apply_payment", loan_id=entry.loan_id, schedule_id=entry_id,
            details={"status": result.entry.status.value, "income_recognized": result.income_recognized}
        )
        return result

    def mark_paid(
        self,
        entry_id: str,
        payment_date: Optional[date] = None,
        user_id: Optional[str] = None
    ) -> ReconciliationResult:
        """
        Settle the remaining balance of an entry in full

        Marking an entry that is already paid changes nothing and records
        no income.
        """
        payment_date = payment_date or self.today()

        with self.storage.record_lock(self.schedule_generator.schedule_table, entry_id):
            with self.storage.atomic():
                entry = self.schedule_generator.get_entry(entry_id)
                if entry.status == ScheduleStatus.PAID:
                    logger.info(f"Schedule entry {entry_id} already paid, nothing to do")
                    return ReconciliationResult(entry=entry, previous_status=entry.status)

                result = self._apply(entry, max(entry.amount, entry.amount_paid), payment_date, user_id)

        log_action(logger, "info", f"Installment {entry.installment_number} marked paid",
                   user_id=user_id, action="mark_paid", loan_id=entry.loan_id, schedule_id=entry_id)
        return result

    def reverse_payment(self, entry_id: str, user_id: Optional[str] = None) -> PaymentScheduleEntry:
        """
        Undo all payments on an entry, returning it to pending

        Interest income recognised for the entry is removed and the loan's
        outstanding balance restored.

        Raises:
            NotFoundError: Unknown schedule entry
            StateError: Nothing has been paid on the entry
        """
        with self.storage.record_lock(self.schedule_generator.schedule_table, entry_id):
            with self.storage.atomic():
                entry = self.schedule_generator.get_entry(entry_id)
                if entry.amount_paid <= Decimal('0') and entry.status != ScheduleStatus.PAID:
                    raise StateError(f"Schedule entry {entry_id} has no payment to reverse")

                previous_status = entry.status
                reversed_amount = entry.amount_paid
                entry.status = ScheduleStatus.PENDING
                entry.paid_amount = None
                entry.paid_date = None
                self.schedule_generator.save_entry(entry)

                income_removed = False
                if previous_status == ScheduleStatus.PAID:
                    income_removed = self.income_ledger.remove_interest(entry.id)
                    self._adjust_loan_balance(entry.loan_id, entry.principal_amount)

                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_REVERSED,
                    entity_type="schedule_entry",
                    entity_id=entry.id,
                    user_id=user_id,
                    metadata={
                        "loan_id": entry.loan_id,
                        "previous_status": previous_status,
                        "reversed_amount": reversed_amount,
                        "income_removed": income_removed
                    }
                )

        log_action(logger, "info", f"Reversed {self._format(reversed_amount)} on installment {entry.installment_number}",
                   user_id=user_id, action="reverse_payment", loan_id=entry.loan_id, schedule_id=entry_id)
        return entry

    def _apply(
        self,
        entry: PaymentScheduleEntry,
        total_paid: Decimal,
        payment_date: date,
        user_id: Optional[str]
    ) -> ReconciliationResult:
        # Caller holds the record lock and an open transaction
        previous_status = entry.status
        entry.paid_amount = total_paid
        entry.status = status_after_payment(entry.amount, total_paid)
        if entry.status == ScheduleStatus.PAID:
            entry.paid_date = payment_date
        self.schedule_generator.save_entry(entry)

        income_record = None
        if entry.status == ScheduleStatus.PAID:
            if entry.interest_amount > Decimal('0'):
                income_record = self.income_ledger.record_interest(entry.id, entry.interest_amount, payment_date)
            self._adjust_loan_balance(entry.loan_id, -entry.principal_amount)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_APPLIED,
            entity_type="schedule_entry",
            entity_id=entry.id,
            user_id=user_id,
            metadata={
                "loan_id": entry.loan_id,
                "paid_amount": total_paid,
                "payment_date": payment_date,
                "previous_status": previous_status,
                "status": entry.status,
                "income_id": income_record.id if income_record else None
            }
        )
        return ReconciliationResult(entry=entry, previous_status=previous_status, income_record=income_record)

    def _adjust_loan_balance(self, loan_id: str, delta: Decimal) -> None:
        if self.loan_manager is not None:
            self.loan_manager.adjust_outstanding_balance(loan_id, delta)

    def _format(self, amount: Decimal) -> str:
        try:
            return Money(amount, Currency[self.config.currency]).to_string()
        except KeyError:
            return str(amount)
