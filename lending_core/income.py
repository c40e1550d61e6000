"""
Income Ledger Module

Append-only income records for interest earned on paid installments and for
loan processing fees. Records are keyed by (source, reference) so the same
schedule entry or loan can never be recognised twice.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
import uuid

from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .currency import quantize_amount, to_decimal
from .exceptions import ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("lending.income")


def interest_description(schedule_entry_id: str) -> str:
    return f"Interest payment from loan payment schedule #{schedule_entry_id}"


def fee_description(loan_id: str) -> str:
    return f"Processing fee for loan #{loan_id}"


@dataclass
class IncomeRecord(StorageRecord):
    """One line of the income ledger"""
    source: str
    category: str
    amount: Decimal
    income_date: date
    description: str
    reference: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IncomeRecord':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            source=data['source'],
            category=data['category'],
            amount=Decimal(data['amount']),
            income_date=date.fromisoformat(data['income_date']),
            description=data['description'],
            reference=data['reference']
        )


class IncomeLedger:
    """
    Writes and queries income records
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.income_table = "income_records"

    def record_income(
        self,
        amount: Decimal,
        income_date: date,
        description: str,
        reference: str,
        source: str,
        category: str
    ) -> Optional[IncomeRecord]:
        """
        Append an income record unless one already exists for (source, reference)

        Returns:
            The new IncomeRecord, or None if the reference was already recognised
        """
        amount = quantize_amount(to_decimal(amount))
        if amount <= Decimal('0'):
            raise ValidationError(f"Income amount must be positive, got {amount}")

        existing = self.find_by_reference(reference, source)
        if existing:
            logger.warning(f"Income for {source} reference {reference} already recorded as {existing.id}")
            return None

        now = datetime.now(timezone.utc)
        record = IncomeRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            source=source,
            category=category,
            amount=amount,
            income_date=income_date,
            description=description,
            reference=reference
        )
        self.storage.save(self.income_table, record.id, record.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.INCOME_RECORDED,
            entity_type="income",
            entity_id=record.id,
            metadata={
                "source": source,
                "amount": amount,
                "date": income_date,
                "reference": reference
            }
        )
        log_action(logger, "info", f"Recorded {source} income of {amount}",
                   action="income_recorded", details={"reference": reference, "income_id": record.id})
        return record

    def record_interest(self, schedule_entry_id: str, amount: Decimal, paid_date: date) -> Optional[IncomeRecord]:
        """Recognise interest earned on one paid schedule entry"""
        return self.record_income(
            amount=amount,
            income_date=paid_date,
            description=interest_description(schedule_entry_id),
            reference=schedule_entry_id,
            source=self.config.interest_income_source,
            category=self.config.interest_income_category
        )

    def record_processing_fee(self, loan_id: str, amount: Decimal, fee_date: date) -> Optional[IncomeRecord]:
        """Recognise a loan's processing fee"""
        return self.record_income(
            amount=amount,
            income_date=fee_date,
            description=fee_description(loan_id),
            reference=loan_id,
            source=self.config.fee_income_source,
            category=self.config.fee_income_category
        )

    def find_by_reference(self, reference: str, source: Optional[str] = None) -> Optional[IncomeRecord]:
        filters = {"reference": reference}
        if source:
            filters["source"] = source
        records = self.storage.find(self.income_table, filters)
        if records:
            return IncomeRecord.from_dict(records[0])
        return None

    def remove_interest(self, schedule_entry_id: str) -> bool:
        """Remove the interest income of a schedule entry whose payment was reversed"""
        record = self.find_by_reference(schedule_entry_id, self.config.interest_income_source)
        if not record:
            return False

        self.storage.delete(self.income_table, record.id)
        self.audit_trail.log_event(
            event_type=AuditEventType.INCOME_REMOVED,
            entity_type="income",
            entity_id=record.id,
            metadata={"reference": schedule_entry_id, "amount": record.amount}
        )
        log_action(logger, "info", f"Removed interest income {record.id}",
                   action="income_removed", schedule_id=schedule_entry_id)
        return True

    def list_income(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        category: Optional[str] = None
    ) -> List[IncomeRecord]:
        """List income records in a date range, newest first"""
        records = [IncomeRecord.from_dict(data) for data in self.storage.load_all(self.income_table)]
        if start_date:
            records = [r for r in records if r.income_date >= start_date]
        if end_date:
            records = [r for r in records if r.income_date <= end_date]
        if category:
            records = [r for r in records if r.category == category]
        records.sort(key=lambda r: r.income_date, reverse=True)
        return records

    def total_income(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        category: Optional[str] = None
    ) -> Decimal:
        return sum((r.amount for r in self.list_income(start_date, end_date, category)), Decimal('0'))

    def backfill_interest(self, paid_entries: List[Any], today: Optional[date] = None) -> int:
        """
        Create missing interest income for entries already marked paid

        Used once after importing historical schedules; entries that already
        have income are skipped, so running it twice is harmless.

        Args:
            paid_entries: PaymentScheduleEntry objects with status paid
            today: Fallback date for entries with no paid_date

        Returns:
            Number of income records created
        """
        created = 0
        fallback = today or date.today()
        for entry in paid_entries:
            if entry.interest_amount <= Decimal('0'):
                continue
            record = self.record_interest(entry.id, entry.interest_amount, entry.paid_date or fallback)
            if record:
                created += 1
        logger.info(f"Interest income backfill created {created} records")
        return created
