"""
Aging Classification Module

Classifies unpaid charges into overdue buckets by days past due and
aggregates totals per bucket. Everything here is read-only and derived
from the charges as of a given date.
"""

from datetime import date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .currency import Money, Currency
from .charges import Charge, ChargeGenerator, ChargeStatus, OUTSTANDING_STATUSES, charge_sort_key
from .clock import Clock
from .logging_config import get_logger


logger = get_logger("lease_ledger.aging")


class AgingBucket(Enum):
    """Overdue ranges, inclusive on both ends"""
    CURRENT = "current"
    OVERDUE_1_30 = "overdue_1_30"
    OVERDUE_31_60 = "overdue_31_60"
    OVERDUE_61_90 = "overdue_61_90"
    OVERDUE_90_PLUS = "overdue_90_plus"


def days_overdue(charge: Charge, as_of: date) -> int:
    return max(0, (as_of - charge.due_date).days)


def bucket_for_days(days: int) -> AgingBucket:
    """Bucket for a number of days overdue"""
    if days <= 0:
        return AgingBucket.CURRENT
    if days <= 30:
        return AgingBucket.OVERDUE_1_30
    if days <= 60:
        return AgingBucket.OVERDUE_31_60
    if days <= 90:
        return AgingBucket.OVERDUE_61_90
    return AgingBucket.OVERDUE_90_PLUS


@dataclass
class AgingEntry:
    """One unpaid charge as of a date"""
    charge_id: str
    contract_id: str
    company_id: str
    due_date: date
    pending: Money
    days_overdue: int
    bucket: AgingBucket
    status: ChargeStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            'charge_id': self.charge_id,
            'contract_id': self.contract_id,
            'company_id': self.company_id,
            'due_date': self.due_date.isoformat(),
            'pending': self.pending.to_dict(),
            'days_overdue': self.days_overdue,
            'bucket': self.bucket.value,
            'status': self.status.value,
        }


@dataclass
class BucketTotal:
    amount: Money
    count: int = 0


@dataclass
class AgingSummary:
    """Per-bucket totals; every bucket is present even when empty"""
    as_of: date
    currency: Currency
    buckets: Dict[AgingBucket, BucketTotal] = field(default_factory=dict)

    @property
    def total_pending(self) -> Money:
        total = Money.zero(self.currency)
        for bucket_total in self.buckets.values():
            total = total + bucket_total.amount
        return total

    @property
    def total_count(self) -> int:
        return sum(bucket_total.count for bucket_total in self.buckets.values())

    @property
    def overdue_pending(self) -> Money:
        total = Money.zero(self.currency)
        for bucket, bucket_total in self.buckets.items():
            if bucket != AgingBucket.CURRENT:
                total = total + bucket_total.amount
        return total

    def to_dict(self) -> Dict[str, Any]:
        return {
            'as_of': self.as_of.isoformat(),
            'currency': self.currency.code,
            'buckets': {
                bucket.value: {'amount': total.amount.to_dict(), 'count': total.count}
                for bucket, total in self.buckets.items()
            },
            'total_pending': self.total_pending.to_dict(),
            'total_count': self.total_count,
        }


class AgingClassifier:
    """
    Read-only aging view over the charge ledger
    """

    def __init__(self, charges: ChargeGenerator, clock: Clock,
                 default_currency: Currency = Currency.MXN):
        self.charges = charges
        self.clock = clock
        self.default_currency = default_currency

    def days_overdue(self, charge: Charge, as_of: Optional[date] = None) -> int:
        return days_overdue(charge, as_of or self.clock.today())

    def bucket(self, days: int) -> AgingBucket:
        return bucket_for_days(days)

    def classify(self, as_of: Optional[date] = None, company_id: Optional[str] = None,
                 contract_id: Optional[str] = None) -> List[AgingEntry]:
        """
        Aging entries for every unpaid, uncancelled charge

        Args:
            as_of: Classification date (defaults to today)
            company_id: Restrict to one company
            contract_id: Restrict to one contract

        Returns:
            Entries ordered by due date, then charge id
        """
        as_of = as_of or self.clock.today()
        entries = []
        for charge in sorted(self.charges.find_charges(company_id, contract_id=contract_id), key=charge_sort_key):
            status = charge.display_status(as_of)
            if status not in OUTSTANDING_STATUSES or not charge.pending_amount.is_positive():
                continue
            days = days_overdue(charge, as_of)
            entries.append(AgingEntry(
                charge_id=charge.id,
                contract_id=charge.contract_id,
                company_id=charge.company_id,
                due_date=charge.due_date,
                pending=charge.pending_amount,
                days_overdue=days,
                bucket=bucket_for_days(days),
                status=status,
            ))
        return entries

    def summarize(self, as_of: Optional[date] = None, company_id: Optional[str] = None,
                  currency: Optional[Currency] = None) -> AgingSummary:
        """
        Pending totals and charge counts per bucket

        Charges in a currency other than ``currency`` are left out.
        """
        as_of = as_of or self.clock.today()
        currency = currency or self.default_currency
        summary = AgingSummary(
            as_of=as_of,
            currency=currency,
            buckets={bucket: BucketTotal(amount=Money.zero(currency)) for bucket in AgingBucket}
        )

        skipped = 0
        for entry in self.classify(as_of, company_id):
            if entry.pending.currency != currency:
                skipped += 1
                continue
            total = summary.buckets[entry.bucket]
            total.amount = total.amount + entry.pending
            total.count += 1

        if skipped:
            logger.debug(f"Aging summary in {currency.code} skipped {skipped} charges in other currencies")
        return summary
