"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .system import LendingSystem, get_lending_system
from .schemas import (
    ApproveLoanRequest, CreateLoanRequest, DisburseLoanRequest, RejectLoanRequest,
    UpdateLoanRequest, UpdateLoanStatusRequest, UserActionRequest,
    loan_response, parse_date, schedule_entry_response
)
from ..currency import to_decimal
from ..exceptions import ValidationError
from ..loans import LoanStatus


router = APIRouter()


def _parse_status(value: str) -> LoanStatus:
    try:
        return LoanStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown loan status: {value}")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a loan application"""
    loan = system.loan_manager.create_loan(
        customer_id=request.customer_id,
        principal=to_decimal(request.principal),
        annual_interest_rate=to_decimal(request.annual_interest_rate),
        term_months=request.term_months,
        purpose=request.purpose,
        application_date=parse_date(request.application_date, "application_date"),
        processing_fee=to_decimal(request.processing_fee) if request.processing_fee is not None else None,
        user_id=request.user_id
    )
    system.changed()
    return loan_response(loan, system.currency)


@router.get("")
async def list_loans(
    customer_id: Optional[str] = None,
    status: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """List loans, optionally by customer and status"""
    loan_status = _parse_status(status) if status else None
    loans = system.loan_manager.list_loans(customer_id=customer_id, status=loan_status)
    return {"loans": [loan_response(loan, system.currency) for loan in loans]}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan details"""
    return loan_response(system.loan_manager.get_loan(loan_id), system.currency)


@router.patch("/{loan_id}")
async def update_loan(
    loan_id: str,
    request: UpdateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Edit loan details; an existing schedule is left as generated"""
    loan = system.loan_manager.update_loan(
        loan_id,
        purpose=request.purpose,
        principal=to_decimal(request.principal) if request.principal is not None else None,
        annual_interest_rate=(
            to_decimal(request.annual_interest_rate) if request.annual_interest_rate is not None else None
        ),
        term_months=request.term_months,
        user_id=request.user_id
    )
    system.changed()
    return loan_response(loan, system.currency)


@router.delete("/{loan_id}")
async def delete_loan(
    loan_id: str,
    user_id: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Delete a loan and its payment schedule"""
    deleted = system.loan_manager.delete_loan(loan_id, user_id=user_id)
    system.changed()
    return {"loan_id": loan_id, "schedule_entries_deleted": deleted}


@router.post("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Approve a pending loan"""
    loan = system.loan_manager.approve_loan(
        loan_id,
        approver_id=request.approver_id,
        approval_date=parse_date(request.approval_date, "approval_date")
    )
    system.changed()
    return loan_response(loan, system.currency)


@router.post("/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Reject a loan application"""
    loan = system.loan_manager.reject_loan(loan_id, reason=request.reason, user_id=request.user_id)
    system.changed()
    return loan_response(loan, system.currency)


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: DisburseLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Disburse loan funds and generate the payment schedule"""
    loan = system.loan_manager.disburse_loan(
        loan_id,
        disbursement_date=parse_date(request.disbursement_date, "disbursement_date"),
        user_id=request.user_id
    )
    system.changed()
    schedule = system.schedule_generator.get_schedule(loan.id)
    return {
        "loan": loan_response(loan, system.currency),
        "installments": len(schedule),
        "monthly_payment": str(schedule[0].amount) if schedule else None
    }


@router.post("/{loan_id}/close")
async def close_loan(
    loan_id: str,
    request: UserActionRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Close a fully repaid loan"""
    loan = system.loan_manager.close_loan(loan_id, user_id=request.user_id)
    system.changed()
    return loan_response(loan, system.currency)


@router.put("/{loan_id}/status")
async def update_loan_status(
    loan_id: str,
    request: UpdateLoanStatusRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Move a loan to a new status"""
    loan = system.loan_manager.update_loan_status(
        loan_id, _parse_status(request.status), user_id=request.user_id
    )
    system.changed()
    return loan_response(loan, system.currency)


@router.get("/{loan_id}/schedule")
async def get_loan_schedule(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get the loan's payment schedule"""
    system.loan_manager.get_loan(loan_id)
    schedule = system.schedule_generator.get_schedule(loan_id)
    today = system.today()

    return {
        "loan_id": loan_id,
        "schedule": [
            schedule_entry_response(
                entry, system.currency,
                system.schedule_generator.effective_status(entry, today).value
            )
            for entry in schedule
        ]
    }
