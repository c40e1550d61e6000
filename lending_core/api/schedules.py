"""
Payment schedule endpoints
"""

from fastapi import APIRouter, Depends

from .system import LendingSystem, get_lending_system
from .schemas import (
    MarkOverdueRequest, MarkPaidRequest, PaymentRequest, UserActionRequest,
    income_response, parse_date, schedule_entry_response
)
from ..reconciliation import ReconciliationResult


router = APIRouter()


def _result_response(result: ReconciliationResult, system: LendingSystem):
    return {
        "entry": schedule_entry_response(result.entry, system.currency),
        "income_recognized": result.income_recognized,
        "income": income_response(result.income_record, system.currency) if result.income_record else None
    }


@router.post("/mark-overdue")
async def mark_overdue(
    request: MarkOverdueRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Flag unpaid installments past their due date as overdue"""
    marked = system.schedule_generator.mark_overdue(parse_date(request.as_of, "as_of"))
    system.changed()
    return {"marked_overdue": marked}


@router.get("/{entry_id}")
async def get_schedule_entry(
    entry_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get one installment"""
    entry = system.schedule_generator.get_entry(entry_id)
    return schedule_entry_response(
        entry, system.currency,
        system.schedule_generator.effective_status(entry).value
    )


@router.post("/{entry_id}/payments")
async def apply_payment(
    entry_id: str,
    request: PaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a payment against an installment"""
    result = system.reconciler.apply_payment(
        entry_id,
        request.amount,
        payment_date=parse_date(request.payment_date, "payment_date"),
        user_id=request.user_id
    )
    system.changed()
    return _result_response(result, system)


@router.post("/{entry_id}/mark-paid")
async def mark_paid(
    entry_id: str,
    request: MarkPaidRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Settle an installment in full"""
    result = system.reconciler.mark_paid(
        entry_id,
        payment_date=parse_date(request.payment_date, "payment_date"),
        user_id=request.user_id
    )
    system.changed()
    return _result_response(result, system)


@router.post("/{entry_id}/reverse")
async def reverse_payment(
    entry_id: str,
    request: UserActionRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Reverse the payments on an installment"""
    entry = system.reconciler.reverse_payment(entry_id, user_id=request.user_id)
    system.changed()
    return {"entry": schedule_entry_response(entry, system.currency)}
