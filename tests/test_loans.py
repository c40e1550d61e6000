"""
Test suite for loans module

Tests loan applications, the lifecycle state machine, schedule generation on
disbursement, processing fee income and cascading deletes.
"""

import pytest
from decimal import Decimal
from datetime import date

from lending_core.api.system import LendingSystem
from lending_core.audit import AuditEventType
from lending_core.config import LendingConfig
from lending_core.exceptions import NotFoundError, StateError, ValidationError
from lending_core.loans import Loan, LoanStatus, allowed_transitions
from lending_core.schedule import ScheduleStatus
from lending_core.storage import InMemoryStorage


TODAY = date(2024, 1, 15)


def build_system(**overrides):
    config = LendingConfig(database_url="memory://", **overrides)
    return LendingSystem(config=config, storage=InMemoryStorage(), today=lambda: TODAY)


class TestTransitions:
    """Test the transition table"""

    def test_allowed_transitions(self):
        assert allowed_transitions(LoanStatus.PENDING) == {LoanStatus.APPROVED, LoanStatus.REJECTED}
        assert allowed_transitions(LoanStatus.APPROVED) == {LoanStatus.DISBURSED, LoanStatus.REJECTED}
        assert allowed_transitions(LoanStatus.DISBURSED) == {LoanStatus.CLOSED}
        assert allowed_transitions(LoanStatus.REJECTED) == set()
        assert allowed_transitions(LoanStatus.CLOSED) == set()

    def test_direct_disbursement_without_approval(self):
        allowed = allowed_transitions(LoanStatus.PENDING, require_approval=False)
        assert LoanStatus.DISBURSED in allowed


class TestLoanApplication:
    """Test creating and reading loans"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = build_system()
        self.manager = self.system.loan_manager

    def test_create_loan(self):
        loan = self.manager.create_loan(
            customer_id="CUST001",
            principal=Decimal('25000'),
            annual_interest_rate=Decimal('18.5'),
            term_months=12,
            purpose="Shop inventory",
            user_id="OFFICER1"
        )

        assert loan.status == LoanStatus.PENDING
        assert loan.principal == Decimal('25000.00')
        assert loan.annual_interest_rate == Decimal('18.50')
        assert loan.outstanding_balance == Decimal('25000.00')
        assert loan.application_date == TODAY
        assert not self.system.schedule_generator.has_schedule(loan.id)

    def test_round_trip_through_storage(self):
        loan = self.manager.create_loan("CUST001", Decimal('5000'), Decimal('10'), 6, processing_fee="50")

        loaded = self.manager.get_loan(loan.id)
        assert isinstance(loaded, Loan)
        assert loaded.principal == loan.principal
        assert loaded.processing_fee == Decimal('50.00')
        assert loaded.status == LoanStatus.PENDING

    @pytest.mark.parametrize("principal,rate,term", [
        (Decimal('0'), Decimal('10'), 12),
        (Decimal('-100'), Decimal('10'), 12),
        (Decimal('1000'), Decimal('-0.5'), 12),
        (Decimal('1000'), Decimal('10'), 0),
    ])
    def test_invalid_terms(self, principal, rate, term):
        with pytest.raises(ValidationError):
            self.manager.create_loan("CUST001", principal, rate, term)
        assert self.manager.list_loans() == []

    def test_sub_cent_principal_rejected(self):
        """A principal that rounds to 0.00 is refused before anything is saved"""
        with pytest.raises(ValidationError):
            self.manager.create_loan("CUST001", Decimal('0.004'), Decimal('10'), 12)
        assert self.manager.list_loans() == []

    def test_principal_stored_in_cents(self):
        loan = self.manager.create_loan("CUST001", Decimal('1000.005'), Decimal('10'), 12)
        assert loan.principal == Decimal('1000.01')

    def test_customer_required(self):
        with pytest.raises(ValidationError):
            self.manager.create_loan("", Decimal('1000'), Decimal('10'), 12)

    def test_negative_processing_fee(self):
        with pytest.raises(ValidationError):
            self.manager.create_loan("CUST001", Decimal('1000'), Decimal('10'), 12, processing_fee="-1")

    def test_get_missing_loan(self):
        with pytest.raises(NotFoundError):
            self.manager.get_loan("LOAN404")

    def test_list_loans_filters(self):
        a = self.manager.create_loan("CUST001", Decimal('1000'), Decimal('10'), 12)
        self.manager.create_loan("CUST002", Decimal('2000'), Decimal('10'), 12)
        self.manager.approve_loan(a.id)

        assert len(self.manager.list_loans()) == 2
        assert [l.id for l in self.manager.list_loans(customer_id="CUST001")] == [a.id]
        assert [l.id for l in self.manager.list_loans(status=LoanStatus.APPROVED)] == [a.id]


class TestLifecycle:
    """Test moving loans through their lifecycle"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = build_system()
        self.manager = self.system.loan_manager
        self.generator = self.system.schedule_generator
        self.loan = self.manager.create_loan("CUST001", Decimal('25000'), Decimal('18.5'), 12)

    def test_approve(self):
        loan = self.manager.approve_loan(self.loan.id, approver_id="MANAGER1")

        assert loan.status == LoanStatus.APPROVED
        assert loan.approved_by == "MANAGER1"
        assert loan.approval_date == TODAY

        events = self.system.audit_trail.get_events_by_type(AuditEventType.LOAN_APPROVED)
        assert len(events) == 1
        assert events[0].user_id == "MANAGER1"

    def test_disburse_generates_schedule(self):
        """Disbursement creates exactly one full schedule"""
        self.manager.approve_loan(self.loan.id)
        loan = self.manager.disburse_loan(self.loan.id, disbursement_date=date(2024, 1, 20))

        assert loan.status == LoanStatus.DISBURSED
        assert loan.disbursement_date == date(2024, 1, 20)

        schedule = self.generator.get_schedule(loan.id)
        assert len(schedule) == 12
        assert schedule[0].due_date == date(2024, 2, 1)
        assert schedule[0].interest_amount == Decimal('385.42')

    def test_disburse_twice_rejected(self):
        self.manager.approve_loan(self.loan.id)
        self.manager.disburse_loan(self.loan.id)

        with pytest.raises(StateError):
            self.manager.disburse_loan(self.loan.id)
        assert len(self.generator.get_schedule(self.loan.id)) == 12

    def test_pending_to_disbursed_needs_approval(self):
        with pytest.raises(StateError):
            self.manager.disburse_loan(self.loan.id)

        assert self.manager.get_loan(self.loan.id).status == LoanStatus.PENDING
        assert not self.generator.has_schedule(self.loan.id)

    def test_pending_to_disbursed_when_approval_not_required(self):
        system = build_system(require_approval=False)
        loan = system.loan_manager.create_loan("CUST001", Decimal('1200'), Decimal('12'), 12)

        loan = system.loan_manager.disburse_loan(loan.id)

        assert loan.status == LoanStatus.DISBURSED
        assert len(system.schedule_generator.get_schedule(loan.id)) == 12

    def test_rejected_cannot_be_disbursed(self):
        self.manager.reject_loan(self.loan.id, reason="Insufficient income")

        with pytest.raises(StateError):
            self.manager.disburse_loan(self.loan.id)
        with pytest.raises(StateError):
            self.manager.approve_loan(self.loan.id)

        loan = self.manager.get_loan(self.loan.id)
        assert loan.status == LoanStatus.REJECTED
        assert loan.rejection_reason == "Insufficient income"
        assert not self.generator.has_schedule(self.loan.id)

    def test_reject_approved_loan(self):
        self.manager.approve_loan(self.loan.id)
        assert self.manager.reject_loan(self.loan.id).status == LoanStatus.REJECTED

    def test_disbursed_cannot_be_rejected(self):
        self.manager.approve_loan(self.loan.id)
        self.manager.disburse_loan(self.loan.id)

        with pytest.raises(StateError):
            self.manager.reject_loan(self.loan.id)

    def test_close_requires_all_installments_paid(self):
        self.manager.approve_loan(self.loan.id)
        self.manager.disburse_loan(self.loan.id)

        with pytest.raises(StateError):
            self.manager.close_loan(self.loan.id)

        for entry in self.generator.get_schedule(self.loan.id):
            self.system.reconciler.mark_paid(entry.id)

        loan = self.manager.close_loan(self.loan.id)
        assert loan.status == LoanStatus.CLOSED
        assert loan.outstanding_balance == Decimal('0.00')
        assert loan.closed_date == TODAY

    def test_close_pending_loan_rejected(self):
        with pytest.raises(StateError):
            self.manager.close_loan(self.loan.id)

    def test_update_loan_status_routes_through_state_machine(self):
        loan = self.manager.update_loan_status(self.loan.id, LoanStatus.APPROVED, user_id="MANAGER1")
        assert loan.status == LoanStatus.APPROVED
        assert loan.approved_by == "MANAGER1"

        loan = self.manager.update_loan_status(self.loan.id, LoanStatus.DISBURSED)
        assert loan.status == LoanStatus.DISBURSED
        assert self.generator.has_schedule(self.loan.id)

    def test_update_loan_status_to_pending_rejected(self):
        with pytest.raises(StateError):
            self.manager.update_loan_status(self.loan.id, LoanStatus.PENDING)

    def test_failed_schedule_keeps_loan_status(self):
        """If the schedule cannot be written the disbursement does not happen"""
        self.manager.approve_loan(self.loan.id)
        # A stray row makes the generator refuse
        self.system.storage.save("payment_schedules", "stray", {"id": "stray", "loan_id": self.loan.id})

        with pytest.raises(StateError):
            self.manager.disburse_loan(self.loan.id)

        loan = self.manager.get_loan(self.loan.id)
        assert loan.status == LoanStatus.APPROVED
        assert loan.disbursement_date is None
        assert self.system.audit_trail.get_events_by_type(AuditEventType.LOAN_DISBURSED) == []


class TestProcessingFee:
    """Test processing fee income"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = build_system()
        self.manager = self.system.loan_manager
        self.ledger = self.system.income_ledger

    def test_fee_recognised_once(self):
        """Approve then disburse books the fee a single time"""
        loan = self.manager.create_loan("CUST001", Decimal('5000'), Decimal('10'), 6, processing_fee="75.00")

        self.manager.approve_loan(loan.id)
        self.manager.disburse_loan(loan.id)

        fees = self.ledger.list_income(category="Loan Fees")
        assert len(fees) == 1
        assert fees[0].amount == Decimal('75.00')
        assert fees[0].reference == loan.id
        assert fees[0].source == "Loan Processing Fee"

    def test_fee_on_direct_disbursement(self):
        system = build_system(require_approval=False)
        loan = system.loan_manager.create_loan("CUST001", Decimal('5000'), Decimal('10'), 6, processing_fee="75")

        system.loan_manager.disburse_loan(loan.id)
        assert len(system.income_ledger.list_income(category="Loan Fees")) == 1

    def test_no_fee_no_income(self):
        loan = self.manager.create_loan("CUST001", Decimal('5000'), Decimal('10'), 6)
        self.manager.approve_loan(loan.id)
        assert self.ledger.list_income() == []

    def test_rejection_books_no_fee(self):
        loan = self.manager.create_loan("CUST001", Decimal('5000'), Decimal('10'), 6, processing_fee="75")
        self.manager.reject_loan(loan.id)
        assert self.ledger.list_income() == []


class TestEditAndDelete:
    """Test editing and deleting loans"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = build_system()
        self.manager = self.system.loan_manager
        self.generator = self.system.schedule_generator
        self.loan = self.manager.create_loan("CUST001", Decimal('1200'), Decimal('12'), 12)

    def test_update_pending_loan(self):
        loan = self.manager.update_loan(self.loan.id, principal=Decimal('1500'), purpose="Tools")

        assert loan.principal == Decimal('1500.00')
        assert loan.outstanding_balance == Decimal('1500.00')
        assert loan.purpose == "Tools"
        assert len(self.system.audit_trail.get_events_by_type(AuditEventType.LOAN_UPDATED)) == 1

    def test_update_after_disbursement_keeps_schedule(self):
        """Editing terms later never regenerates the schedule"""
        self.manager.approve_loan(self.loan.id)
        self.manager.disburse_loan(self.loan.id)
        before = [(e.id, e.amount) for e in self.generator.get_schedule(self.loan.id)]

        loan = self.manager.update_loan(self.loan.id, annual_interest_rate=Decimal('24'), term_months=6)

        assert loan.annual_interest_rate == Decimal('24.00')
        assert loan.term_months == 6
        assert [(e.id, e.amount) for e in self.generator.get_schedule(self.loan.id)] == before

    def test_update_with_invalid_terms(self):
        with pytest.raises(ValidationError):
            self.manager.update_loan(self.loan.id, term_months=0)
        assert self.manager.get_loan(self.loan.id).term_months == 12

    def test_update_to_sub_cent_principal(self):
        with pytest.raises(ValidationError):
            self.manager.update_loan(self.loan.id, principal=Decimal('0.004'))
        assert self.manager.get_loan(self.loan.id).principal > Decimal('0')

    def test_update_rejected_loan(self):
        self.manager.reject_loan(self.loan.id)
        with pytest.raises(StateError):
            self.manager.update_loan(self.loan.id, purpose="Retry")

    def test_delete_cascades_to_schedule(self):
        self.manager.approve_loan(self.loan.id)
        self.manager.disburse_loan(self.loan.id)
        self.system.reconciler.mark_paid(f"{self.loan.id}_1")

        deleted = self.manager.delete_loan(self.loan.id)

        assert deleted == 12
        assert self.generator.get_schedule(self.loan.id) == []
        with pytest.raises(NotFoundError):
            self.manager.get_loan(self.loan.id)
        # Income already recognised stays in the ledger
        assert len(self.system.income_ledger.list_income()) == 1

    def test_delete_missing_loan(self):
        with pytest.raises(NotFoundError):
            self.manager.delete_loan("LOAN404")
