"""
Loan Module

Handles loan applications and the loan lifecycle state machine:
approval, rejection, disbursement and closure. Disbursement is the single
moment a loan's payment schedule is generated.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, Any
from enum import Enum
import uuid

from .amortization import validate_terms
from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .currency import quantize_amount, to_decimal
from .exceptions import NotFoundError, StateError, ValidationError
from .income import IncomeLedger
from .logging_config import get_logger, log_action
from .schedule import PaymentScheduleGenerator, ScheduleStatus
from .storage import StorageInterface, StorageRecord


logger = get_logger("lending.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Application received
    APPROVED = "approved"      # Approved, funds not yet released
    REJECTED = "rejected"      # Terminal
    DISBURSED = "disbursed"    # Funds released, schedule running
    CLOSED = "closed"          # Fully repaid and closed, terminal


TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.PENDING: frozenset({LoanStatus.APPROVED, LoanStatus.REJECTED}),
    LoanStatus.APPROVED: frozenset({LoanStatus.DISBURSED, LoanStatus.REJECTED}),
    LoanStatus.DISBURSED: frozenset({LoanStatus.CLOSED}),
    LoanStatus.REJECTED: frozenset(),
    LoanStatus.CLOSED: frozenset(),
}


def allowed_transitions(current: LoanStatus, require_approval: bool = True) -> FrozenSet[LoanStatus]:
    """Statuses reachable from current in one step"""
    allowed = TRANSITIONS[current]
    if current == LoanStatus.PENDING and not require_approval:
        allowed = allowed | {LoanStatus.DISBURSED}
    return allowed


@dataclass
class Loan(StorageRecord):
    """Credit extended to one customer"""
    customer_id: str
    principal: Decimal
    annual_interest_rate: Decimal    # percentage, e.g. 18.50
    term_months: int
    status: LoanStatus = LoanStatus.PENDING
    purpose: Optional[str] = None
    application_date: Optional[date] = None
    disbursement_date: Optional[date] = None
    outstanding_balance: Optional[Decimal] = None
    processing_fee: Optional[Decimal] = None

    # Workflow metadata
    approved_by: Optional[str] = None
    approval_date: Optional[date] = None
    rejection_reason: Optional[str] = None
    closed_date: Optional[date] = None

    def __post_init__(self):
        if self.outstanding_balance is None:
            self.outstanding_balance = self.principal

    @property
    def is_active(self) -> bool:
        """Check if loan is in repayment"""
        return self.status == LoanStatus.DISBURSED

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        def get_date(field_name: str) -> Optional[date]:
            if data.get(field_name):
                return date.fromisoformat(data[field_name])
            return None

        def get_decimal(field_name: str) -> Optional[Decimal]:
            if data.get(field_name) is not None:
                return Decimal(data[field_name])
            return None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            customer_id=data['customer_id'],
            principal=Decimal(data['principal']),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            term_months=data['term_months'],
            status=LoanStatus(data['status']),
            purpose=data.get('purpose'),
            application_date=get_date('application_date'),
            disbursement_date=get_date('disbursement_date'),
            outstanding_balance=get_decimal('outstanding_balance'),
            processing_fee=get_decimal('processing_fee'),
            approved_by=data.get('approved_by'),
            approval_date=get_date('approval_date'),
            rejection_reason=data.get('rejection_reason'),
            closed_date=get_date('closed_date')
        )


class LoanManager:
    """
    Manages loan lifecycle from application through closure
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        schedule_generator: PaymentScheduleGenerator,
        income_ledger: IncomeLedger,
        config: Optional[LendingConfig] = None,
        today: Optional[Callable[[], date]] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.schedule_generator = schedule_generator
        self.income_ledger = income_ledger
        self.config = config or get_config()
        self.today = today or date.today

        self.loans_table = "loans"

    def create_loan(
        self,
        customer_id: str,
        principal: Decimal,
        annual_interest_rate: Decimal,
        term_months: int,
        purpose: Optional[str] = None,
        application_date: Optional[date] = None,
        processing_fee: Optional[Decimal] = None,
        user_id: Optional[str] = None
    ) -> Loan:
        """
        Record a new loan application in pending status

        Args:
            customer_id: Borrower
            principal: Amount requested
            annual_interest_rate: Annual rate as a percentage (18.50 = 18.5%)
            term_months: Number of monthly installments
            purpose: Free-text purpose
            application_date: Defaults to today
            processing_fee: Fee recognised as income when the loan is approved
            user_id: Staff member recording the application

        Returns:
            Created Loan

        Raises:
            ValidationError: If the terms are invalid
        """
        if not customer_id:
            raise ValidationError("Customer is required")
        # Principal is validated as stored, after rounding to cents
        principal, rate, term_months = validate_terms(
            quantize_amount(to_decimal(principal)), annual_interest_rate, term_months
        )

        fee = None
        if processing_fee is not None:
            fee = quantize_amount(to_decimal(processing_fee))
            if fee < Decimal('0'):
                raise ValidationError(f"Processing fee cannot be negative, got {fee}")

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            principal=principal,
            annual_interest_rate=quantize_amount(rate),
            term_months=term_months,
            status=LoanStatus.PENDING,
            purpose=purpose,
            application_date=application_date or self.today(),
            processing_fee=fee
        )
        self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=user_id,
            metadata={
                "customer_id": customer_id,
                "principal": loan.principal,
                "annual_interest_rate": loan.annual_interest_rate,
                "term_months": term_months
            }
        )
        log_action(logger, "info", "Loan application created", user_id=user_id,
                   action="create_loan", loan_id=loan.id)
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError("loan", loan_id)
        return Loan.from_dict(data)

    def list_loans(self, customer_id: Optional[str] = None, status: Optional[LoanStatus] = None) -> List[Loan]:
        """List loans, newest application first"""
        filters = {}
        if customer_id:
            filters["customer_id"] = customer_id
        if status:
            filters["status"] = status.value
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda l: l.created_at, reverse=True)
        return loans

    def approve_loan(self, loan_id: str, approver_id: Optional[str] = None,
                     approval_date: Optional[date] = None) -> Loan:
        """Approve a pending loan"""
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            self._check_transition(loan, LoanStatus.APPROVED)

            loan.status = LoanStatus.APPROVED
            loan.approved_by = approver_id
            loan.approval_date = approval_date or self.today()
            self._save_loan(loan)
            self._recognise_processing_fee(loan, loan.approval_date)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPROVED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=approver_id,
                metadata={"approval_date": loan.approval_date}
            )

        log_action(logger, "info", "Loan approved", user_id=approver_id,
                   action="approve_loan", loan_id=loan.id)
        return loan

    def reject_loan(self, loan_id: str, reason: Optional[str] = None,
                    user_id: Optional[str] = None) -> Loan:
        """Reject a pending or approved loan"""
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            self._check_transition(loan, LoanStatus.REJECTED)

            loan.status = LoanStatus.REJECTED
            loan.rejection_reason = reason
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REJECTED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=user_id,
                metadata={"reason": reason}
            )

        log_action(logger, "info", "Loan rejected", user_id=user_id,
                   action="reject_loan", loan_id=loan.id)
        return loan

    def disburse_loan(self, loan_id: str, disbursement_date: Optional[date] = None,
                      user_id: Optional[str] = None) -> Loan:
        """
        Release funds and start repayment

        The status change and the full payment schedule are written in one
        atomic block; if schedule generation fails the loan stays in its
        previous status.

        Raises:
            NotFoundError: Unknown loan
            StateError: Loan cannot be disbursed from its current status
            PersistenceError: Storage failure, nothing written
        """
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            self._check_transition(loan, LoanStatus.DISBURSED)

            loan.status = LoanStatus.DISBURSED
            loan.disbursement_date = disbursement_date or self.today()
            loan.outstanding_balance = loan.principal
            self._save_loan(loan)

            entries = self.schedule_generator.generate_schedule(loan)
            self._recognise_processing_fee(loan, loan.disbursement_date)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DISBURSED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=user_id,
                metadata={
                    "amount": loan.principal,
                    "disbursement_date": loan.disbursement_date,
                    "installments": len(entries)
                }
            )

        log_action(logger, "info", "Loan disbursed", user_id=user_id,
                   action="disburse_loan", loan_id=loan.id)
        return loan

    def close_loan(self, loan_id: str, user_id: Optional[str] = None) -> Loan:
        """Close a disbursed loan whose installments are all paid"""
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            self._check_transition(loan, LoanStatus.CLOSED)

            unpaid = [e for e in self.schedule_generator.get_schedule(loan_id)
                      if e.status != ScheduleStatus.PAID]
            if unpaid:
                raise StateError(f"Loan {loan_id} has {len(unpaid)} unpaid installments")

            loan.status = LoanStatus.CLOSED
            loan.closed_date = self.today()
            loan.outstanding_balance = Decimal('0.00')
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CLOSED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=user_id,
                metadata={"closed_date": loan.closed_date}
            )

        log_action(logger, "info", "Loan closed", user_id=user_id,
                   action="close_loan", loan_id=loan.id)
        return loan

    def update_loan_status(self, loan_id: str, status: LoanStatus,
                           user_id: Optional[str] = None) -> Loan:
        """Move a loan to a new status through the matching lifecycle action"""
        actions = {
            LoanStatus.APPROVED: lambda: self.approve_loan(loan_id, approver_id=user_id),
            LoanStatus.REJECTED: lambda: self.reject_loan(loan_id, user_id=user_id),
            LoanStatus.DISBURSED: lambda: self.disburse_loan(loan_id, user_id=user_id),
            LoanStatus.CLOSED: lambda: self.close_loan(loan_id, user_id=user_id),
        }
        if status not in actions:
            loan = self.get_loan(loan_id)
            raise StateError(f"Cannot move loan {loan_id} from {loan.status.value} to {status.value}")
        return actions[status]()

    def update_loan(
        self,
        loan_id: str,
        purpose: Optional[str] = None,
        principal: Optional[Decimal] = None,
        annual_interest_rate: Optional[Decimal] = None,
        term_months: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> Loan:
        """
        Edit a loan's details

        Terms can change until the loan is rejected or closed. A schedule
        already generated at disbursement is never regenerated.
        """
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            if loan.status in (LoanStatus.REJECTED, LoanStatus.CLOSED):
                raise StateError(f"Loan {loan_id} is {loan.status.value} and cannot be edited")

            new_principal, new_rate, new_term = validate_terms(
                quantize_amount(to_decimal(principal)) if principal is not None else loan.principal,
                annual_interest_rate if annual_interest_rate is not None else loan.annual_interest_rate,
                term_months if term_months is not None else loan.term_months
            )
            changes = {}
            if purpose is not None and purpose != loan.purpose:
                changes["purpose"] = purpose
                loan.purpose = purpose
            if quantize_amount(new_principal) != loan.principal:
                changes["principal"] = quantize_amount(new_principal)
                loan.principal = quantize_amount(new_principal)
                if loan.status in (LoanStatus.PENDING, LoanStatus.APPROVED):
                    loan.outstanding_balance = loan.principal
            if quantize_amount(new_rate) != loan.annual_interest_rate:
                changes["annual_interest_rate"] = quantize_amount(new_rate)
                loan.annual_interest_rate = quantize_amount(new_rate)
            if new_term != loan.term_months:
                changes["term_months"] = new_term
                loan.term_months = new_term

            if changes:
                self._save_loan(loan)
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_UPDATED,
                    entity_type="loan",
                    entity_id=loan.id,
                    user_id=user_id,
                    metadata=changes
                )

        if changes and loan.status == LoanStatus.DISBURSED:
            logger.warning(f"Loan {loan_id} terms edited after disbursement; schedule left unchanged")
        return loan

    def delete_loan(self, loan_id: str, user_id: Optional[str] = None) -> int:
        """
        Delete a loan together with its schedule

        Income already recognised stays in the ledger.

        Returns:
            Number of schedule entries deleted
        """
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            deleted = self.schedule_generator.delete_schedule(loan.id)
            self.storage.delete(self.loans_table, loan.id)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DELETED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=user_id,
                metadata={"schedule_entries_deleted": deleted}
            )

        log_action(logger, "info", f"Loan deleted with {deleted} installments", user_id=user_id,
                   action="delete_loan", loan_id=loan_id)
        return deleted

    def adjust_outstanding_balance(self, loan_id: str, delta: Decimal) -> Loan:
        """Add delta (negative for repayments) to a loan's outstanding balance"""
        loan = self.get_loan(loan_id)
        balance = loan.outstanding_balance + delta
        loan.outstanding_balance = min(max(balance, Decimal('0.00')), loan.principal)
        self._save_loan(loan)
        return loan

    def _check_transition(self, loan: Loan, target: LoanStatus) -> None:
        allowed = allowed_transitions(loan.status, self.config.require_approval)
        if target not in allowed:
            log_action(logger, "warning", f"Rejected transition {loan.status.value} -> {target.value}",
                       action="transition", loan_id=loan.id)
            raise StateError(f"Cannot move loan {loan.id} from {loan.status.value} to {target.value}")

    def _recognise_processing_fee(self, loan: Loan, fee_date: date) -> None:
        # record_processing_fee is keyed by loan id, so approve-then-disburse recognises it once
        if loan.processing_fee and loan.processing_fee > Decimal('0'):
            self.income_ledger.record_processing_fee(loan.id, loan.processing_fee, fee_date)

    def _save_loan(self, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
