"""
Reporting, income and calculator endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .system import LendingSystem, get_lending_system
from .schemas import MoneyModel, income_response, parse_date
from ..amortization import compute_schedule
from ..currency import quantize_amount, to_decimal
from ..schedule import ScheduleStatus


router = APIRouter()


@router.get("/reports/payment-status")
async def payment_status_report(
    as_of: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Aging of unpaid installments"""
    return system.reporter.payment_status(parse_date(as_of, "as_of"))


@router.get("/reports/portfolio")
async def portfolio_report(system: LendingSystem = Depends(get_lending_system)):
    """Portfolio summary"""
    return system.reporter.portfolio_summary()


@router.get("/customers/{customer_id}/upcoming-payments")
async def upcoming_payments(
    customer_id: str,
    limit: Optional[int] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Unpaid installments of a customer's active loans"""
    return {
        "customer_id": customer_id,
        "payments": system.reporter.upcoming_payments(customer_id, limit=limit)
    }


@router.get("/income")
async def list_income(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    category: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Income ledger entries, newest first"""
    start = parse_date(start_date, "start_date")
    end = parse_date(end_date, "end_date")
    records = system.income_ledger.list_income(start, end, category)
    total = system.income_ledger.total_income(start, end, category)
    return {
        "records": [income_response(record, system.currency) for record in records],
        "total": MoneyModel.from_amount(total, system.currency).dict()
    }


@router.post("/income/backfill")
async def backfill_income(system: LendingSystem = Depends(get_lending_system)):
    """Create interest income missing for installments already paid"""
    paid = system.schedule_generator.find_entries(ScheduleStatus.PAID)
    created = system.income_ledger.backfill_interest(paid, today=system.today())
    system.changed()
    return {"created": created, "paid_installments": len(paid)}


@router.get("/calculator")
async def loan_calculator(
    principal: str,
    annual_interest_rate: str,
    term_months: int,
    system: LendingSystem = Depends(get_lending_system)
):
    """Simulate a loan without saving anything"""
    result = compute_schedule(to_decimal(principal), to_decimal(annual_interest_rate), term_months)
    return {
        "monthly_payment": MoneyModel.from_amount(result.monthly_payment, system.currency).dict(),
        "total_interest": MoneyModel.from_amount(result.total_interest, system.currency).dict(),
        "total_payment": MoneyModel.from_amount(result.total_payment, system.currency).dict(),
        "schedule": [
            {
                "installment_number": installment.index,
                "principal_amount": str(quantize_amount(installment.principal_portion)),
                "interest_amount": str(quantize_amount(installment.interest_portion)),
                "remaining_balance": str(quantize_amount(installment.remaining_balance))
            }
            for installment in result.installments
        ]
    }
