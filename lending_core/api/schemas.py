"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import date
from typing import Dict, Optional, Any
from pydantic import BaseModel, Field

from ..currency import Money, Currency
from ..exceptions import ValidationError
from ..income import IncomeRecord
from ..loans import Loan
from ..schedule import PaymentScheduleEntry


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (GHS, KES, etc.)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)

    @classmethod
    def from_amount(cls, amount: Optional[Decimal], currency_code: str) -> Optional['MoneyModel']:
        if amount is None:
            return None
        return cls.from_money(Money(amount, Currency[currency_code]))


def parse_date(value: Optional[str], field_name: str = "date") -> Optional[date]:
    """Parse an optional ISO date string from a request"""
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value!r}, expected YYYY-MM-DD")


# Loan schemas
class CreateLoanRequest(BaseModel):
    customer_id: str
    principal: str = Field(..., description="Decimal amount as string")
    annual_interest_rate: str = Field(..., description="Annual rate as a percentage, e.g. 18.50")
    term_months: int = Field(..., description="Number of monthly installments")
    purpose: Optional[str] = None
    application_date: Optional[str] = None  # ISO date string
    processing_fee: Optional[str] = None
    user_id: Optional[str] = None


class UpdateLoanRequest(BaseModel):
    purpose: Optional[str] = None
    principal: Optional[str] = None
    annual_interest_rate: Optional[str] = None
    term_months: Optional[int] = None
    user_id: Optional[str] = None


class ApproveLoanRequest(BaseModel):
    approver_id: Optional[str] = None
    approval_date: Optional[str] = None


class RejectLoanRequest(BaseModel):
    reason: Optional[str] = None
    user_id: Optional[str] = None


class DisburseLoanRequest(BaseModel):
    disbursement_date: Optional[str] = None
    user_id: Optional[str] = None


class UpdateLoanStatusRequest(BaseModel):
    status: str = Field(..., description="Target status (approved, rejected, disbursed, closed)")
    user_id: Optional[str] = None


class UserActionRequest(BaseModel):
    user_id: Optional[str] = None


# Schedule schemas
class PaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    payment_date: Optional[str] = None
    user_id: Optional[str] = None


class MarkPaidRequest(BaseModel):
    payment_date: Optional[str] = None
    user_id: Optional[str] = None


class MarkOverdueRequest(BaseModel):
    as_of: Optional[str] = None


def loan_response(loan: Loan, currency: str) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "customer_id": loan.customer_id,
        "status": loan.status.value,
        "principal": MoneyModel.from_amount(loan.principal, currency).dict(),
        "outstanding_balance": MoneyModel.from_amount(loan.outstanding_balance, currency).dict(),
        "annual_interest_rate": str(loan.annual_interest_rate),
        "term_months": loan.term_months,
        "purpose": loan.purpose,
        "processing_fee": str(loan.processing_fee) if loan.processing_fee is not None else None,
        "application_date": loan.application_date.isoformat() if loan.application_date else None,
        "disbursement_date": loan.disbursement_date.isoformat() if loan.disbursement_date else None,
        "approved_by": loan.approved_by,
        "approval_date": loan.approval_date.isoformat() if loan.approval_date else None,
        "rejection_reason": loan.rejection_reason,
        "closed_date": loan.closed_date.isoformat() if loan.closed_date else None
    }


def schedule_entry_response(entry: PaymentScheduleEntry, currency: str,
                            effective_status: Optional[str] = None) -> Dict[str, Any]:
    paid_amount = MoneyModel.from_amount(entry.paid_amount, currency)
    return {
        "id": entry.id,
        "loan_id": entry.loan_id,
        "installment_number": entry.installment_number,
        "due_date": entry.due_date.isoformat(),
        "amount": MoneyModel.from_amount(entry.amount, currency).dict(),
        "principal_amount": MoneyModel.from_amount(entry.principal_amount, currency).dict(),
        "interest_amount": MoneyModel.from_amount(entry.interest_amount, currency).dict(),
        "remaining_balance": MoneyModel.from_amount(entry.remaining_balance, currency).dict(),
        "status": entry.status.value,
        "effective_status": effective_status or entry.status.value,
        "paid_date": entry.paid_date.isoformat() if entry.paid_date else None,
        "paid_amount": paid_amount.dict() if paid_amount else None
    }


def income_response(record: IncomeRecord, currency: str) -> Dict[str, Any]:
    return {
        "id": record.id,
        "source": record.source,
        "category": record.category,
        "amount": MoneyModel.from_amount(record.amount, currency).dict(),
        "date": record.income_date.isoformat(),
        "description": record.description,
        "reference": record.reference
    }
