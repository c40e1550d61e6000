"""
Test suite for payment reconciliation

Tests payment application, status transitions, exactly-once interest income,
overpayment policy, reversal and atomicity of the entry/income pair.
"""

import pytest
import threading
from decimal import Decimal
from datetime import date

from lending_core.api.system import LendingSystem
from lending_core.audit import AuditEventType
from lending_core.config import LendingConfig
from lending_core.exceptions import NotFoundError, PersistenceError, StateError, ValidationError
from lending_core.income import interest_description
from lending_core.schedule import ScheduleStatus
from lending_core.storage import InMemoryStorage, SQLiteStorage


TODAY = date(2024, 1, 15)


def build_system(**overrides):
    config = LendingConfig(database_url="memory://", **overrides)
    return LendingSystem(config=config, storage=InMemoryStorage(), today=lambda: TODAY)


def disbursed_loan(system, principal="1200.00", rate="12", term=12):
    loan = system.loan_manager.create_loan("CUST001", Decimal(principal), Decimal(rate), term)
    system.loan_manager.approve_loan(loan.id, approver_id="OFFICER1")
    return system.loan_manager.disburse_loan(loan.id)


class TestApplyPayment:
    """Test applying payments to installments"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = build_system()
        self.reconciler = self.system.reconciler
        self.ledger = self.system.income_ledger
        self.loan = disbursed_loan(self.system)
        self.entry_id = f"{self.loan.id}_1"

    def test_full_payment_marks_paid_and_recognises_interest(self):
        """Paying the amount due settles the entry and books its interest"""
        result = self.reconciler.apply_payment(self.entry_id, "106.62", date(2024, 2, 1))

        assert result.entry.status == ScheduleStatus.PAID
        assert result.entry.paid_amount == Decimal('106.62')
        assert result.entry.paid_date == date(2024, 2, 1)
        assert result.income_recognized
        assert result.became_paid

        records = self.ledger.list_income()
        assert len(records) == 1
        assert records[0].amount == Decimal('12.00')
        assert records[0].income_date == date(2024, 2, 1)
        assert records[0].reference == self.entry_id
        assert records[0].source == "Interest Payment"
        assert records[0].category == "Loan Interest"
        assert records[0].description == interest_description(self.entry_id)

    def test_payment_date_defaults_to_today(self):
        result = self.reconciler.apply_payment(self.entry_id, Decimal('106.62'))
        assert result.entry.paid_date == TODAY

    def test_partial_then_full(self):
        """Partial payments accumulate; income is booked once on completion"""
        first = self.reconciler.apply_payment(self.entry_id, "50.00")
        assert first.entry.status == ScheduleStatus.PARTIAL
        assert first.entry.paid_amount == Decimal('50.00')
        assert first.entry.paid_date is None
        assert not first.income_recognized
        assert self.ledger.list_income() == []

        second = self.reconciler.apply_payment(self.entry_id, "56.62")
        assert second.entry.status == ScheduleStatus.PAID
        assert second.entry.paid_amount == Decimal('106.62')
        assert second.entry.paid_date == TODAY
        assert second.income_recognized
        assert len(self.ledger.list_income()) == 1

    def test_payment_on_paid_entry_rejected(self):
        """A settled entry accepts no further payments"""
        self.reconciler.apply_payment(self.entry_id, "106.62")

        with pytest.raises(StateError):
            self.reconciler.apply_payment(self.entry_id, "10.00")

        entry = self.system.schedule_generator.get_entry(self.entry_id)
        assert entry.paid_amount == Decimal('106.62')
        assert len(self.ledger.list_income()) == 1

    def test_mark_paid_twice_is_noop(self):
        """Marking an already-paid entry changes nothing"""
        first = self.reconciler.mark_paid(self.entry_id)
        second = self.reconciler.mark_paid(self.entry_id)

        assert first.income_recognized
        assert not second.income_recognized
        assert not second.became_paid
        assert second.entry.paid_amount == Decimal('106.62')
        assert len(self.ledger.list_income()) == 1

    def test_mark_paid_after_partial(self):
        self.reconciler.apply_payment(self.entry_id, "6.62")
        result = self.reconciler.mark_paid(self.entry_id, date(2024, 2, 3))

        assert result.entry.status == ScheduleStatus.PAID
        assert result.entry.paid_amount == Decimal('106.62')
        assert result.entry.paid_date == date(2024, 2, 3)

    def test_overpayment_recorded(self):
        """Paying more than due is kept as a larger paid amount"""
        result = self.reconciler.apply_payment(self.entry_id, "200.00")

        assert result.entry.status == ScheduleStatus.PAID
        assert result.entry.paid_amount == Decimal('200.00')
        assert result.entry.balance_due == Decimal('0')
        assert self.ledger.list_income()[0].amount == Decimal('12.00')

    def test_overpayment_rejected_by_policy(self):
        system = build_system(overpayment_policy="reject")
        loan = disbursed_loan(system)

        with pytest.raises(ValidationError):
            system.reconciler.apply_payment(f"{loan.id}_1", "200.00")
        assert system.schedule_generator.get_entry(f"{loan.id}_1").status == ScheduleStatus.PENDING

    def test_unknown_overpayment_policy(self):
        with pytest.raises(ValidationError):
            build_system(overpayment_policy="refund")

    @pytest.mark.parametrize("amount", ["0", "-5.00", Decimal('0.001')])
    def test_non_positive_amount(self, amount):
        with pytest.raises(ValidationError):
            self.reconciler.apply_payment(self.entry_id, amount)

    def test_unknown_entry(self):
        with pytest.raises(NotFoundError):
            self.reconciler.apply_payment("nope_1", "10.00")

    def test_outstanding_balance_reduced_by_principal(self):
        """Settling an entry repays its principal component"""
        result = self.reconciler.apply_payment(self.entry_id, "106.62")

        loan = self.system.loan_manager.get_loan(self.loan.id)
        assert loan.outstanding_balance == Decimal('1200.00') - result.entry.principal_amount

    def test_partial_payment_leaves_balance(self):
        self.reconciler.apply_payment(self.entry_id, "50.00")
        assert self.system.loan_manager.get_loan(self.loan.id).outstanding_balance == Decimal('1200.00')

    def test_payment_audited(self):
        self.reconciler.apply_payment(self.entry_id, "106.62", user_id="TELLER1")

        events = self.system.audit_trail.get_events_for_entity("schedule_entry", self.entry_id)
        applied = [e for e in events if e.event_type == AuditEventType.PAYMENT_APPLIED]
        assert len(applied) == 1
        assert applied[0].user_id == "TELLER1"
        assert applied[0].metadata["status"] == "paid"


class TestZeroInterest:
    """Test loans that carry no interest"""

    def test_no_income_for_zero_interest(self):
        system = build_system()
        loan = disbursed_loan(system, principal="1200.00", rate="0")

        result = system.reconciler.apply_payment(f"{loan.id}_1", "100.00")

        assert result.entry.status == ScheduleStatus.PAID
        assert not result.income_recognized
        assert system.income_ledger.list_income() == []


class TestReversal:
    """Test reversing payments"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = build_system()
        self.loan = disbursed_loan(self.system)
        self.entry_id = f"{self.loan.id}_1"

    def test_reverse_paid_entry(self):
        """Reversal returns the entry to pending and removes its income"""
        self.system.reconciler.apply_payment(self.entry_id, "106.62")

        entry = self.system.reconciler.reverse_payment(self.entry_id)

        assert entry.status == ScheduleStatus.PENDING
        assert entry.paid_amount is None
        assert entry.paid_date is None
        assert self.system.income_ledger.list_income() == []
        assert self.system.loan_manager.get_loan(self.loan.id).outstanding_balance == Decimal('1200.00')

    def test_pay_again_after_reversal(self):
        """A reversed entry can be paid again and books income once more"""
        self.system.reconciler.apply_payment(self.entry_id, "106.62")
        self.system.reconciler.reverse_payment(self.entry_id)

        result = self.system.reconciler.apply_payment(self.entry_id, "106.62")
        assert result.income_recognized
        assert len(self.system.income_ledger.list_income()) == 1

    def test_reverse_partial_entry(self):
        self.system.reconciler.apply_payment(self.entry_id, "20.00")

        entry = self.system.reconciler.reverse_payment(self.entry_id)
        assert entry.status == ScheduleStatus.PENDING
        assert entry.amount_paid == Decimal('0')

    def test_reverse_unpaid_entry_rejected(self):
        with pytest.raises(StateError):
            self.system.reconciler.reverse_payment(self.entry_id)

    def test_reversal_audited(self):
        self.system.reconciler.apply_payment(self.entry_id, "106.62")
        self.system.reconciler.reverse_payment(self.entry_id, user_id="SUPERVISOR")

        events = self.system.audit_trail.get_events_by_type(AuditEventType.PAYMENT_REVERSED)
        assert len(events) == 1
        assert events[0].metadata["income_removed"] is True


class TestAtomicity:
    """Test that an entry and its income are written together"""

    def test_income_failure_rolls_back_entry(self):
        system = build_system()
        loan = disbursed_loan(system)
        entry_id = f"{loan.id}_1"

        def failing_record_interest(*args, **kwargs):
            raise PersistenceError("ledger unavailable")

        system.income_ledger.record_interest = failing_record_interest

        with pytest.raises(PersistenceError):
            system.reconciler.apply_payment(entry_id, "106.62")

        entry = system.schedule_generator.get_entry(entry_id)
        assert entry.status == ScheduleStatus.PENDING
        assert entry.paid_amount is None
        assert system.loan_manager.get_loan(loan.id).outstanding_balance == Decimal('1200.00')
        assert not system.storage.in_transaction

    def test_income_never_duplicated(self):
        """The ledger refuses a second interest record for the same entry"""
        system = build_system()
        loan = disbursed_loan(system)
        entry_id = f"{loan.id}_1"

        system.reconciler.apply_payment(entry_id, "106.62")
        assert system.income_ledger.record_interest(entry_id, Decimal('12.00'), TODAY) is None
        assert len(system.income_ledger.list_income()) == 1

    @pytest.mark.parametrize("storage_factory", [InMemoryStorage, SQLiteStorage], ids=["memory", "sqlite"])
    def test_simultaneous_payments_settle_once(self, storage_factory):
        """Concurrent full payments on one entry: one wins, the rest see it paid"""
        system = LendingSystem(
            config=LendingConfig(database_url="memory://"),
            storage=storage_factory(),
            today=lambda: TODAY
        )
        loan = disbursed_loan(system)
        entry = system.schedule_generator.get_entry(f"{loan.id}_1")

        start = threading.Barrier(8)
        results, errors = [], []

        def pay():
            start.wait()
            try:
                results.append(system.reconciler.apply_payment(entry.id, entry.amount))
            except StateError as e:
                errors.append(e)

        threads = [threading.Thread(target=pay) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(results) == 1
        assert len(errors) == 7
        assert results[0].income_recognized

        stored = system.schedule_generator.get_entry(entry.id)
        assert stored.status == ScheduleStatus.PAID
        assert stored.paid_amount == entry.amount
        assert len(system.income_ledger.list_income()) == 1
        assert system.loan_manager.get_loan(loan.id).outstanding_balance == Decimal('1105.38')
        assert system.storage._record_locks == {}
        system.close()
