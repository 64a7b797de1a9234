"""
Reporting Data Module

Read-only report data over the contract, charge, payment and collections
ledgers: aging, account statements, termination settlements and monthly
payment statistics. Rendering and export are left to callers.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
import calendar

from .currency import Money, Currency
from .clock import Clock
from .contracts import ContractLifecycle
from .charges import ChargeGenerator, ChargeStatus, ChargeType, charge_sort_key
from .payments import PaymentAllocator, PaymentStatus
from .aging import AgingClassifier
from .collections_ledger import CollectionsLedger
from .exceptions import ValidationError


_EXCLUDED_PAYMENT_STATUSES = (PaymentStatus.CANCELLED, PaymentStatus.REJECTED)


def _percentage(part: Decimal, whole: Decimal) -> Decimal:
    if not whole:
        return Decimal("0.00")
    return (part / whole * Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    period_start: date
    period_end: date
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.metadata.setdefault('row_count', len(self.data))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'report_id': self.report_id,
            'generated_at': self.generated_at.isoformat(),
            'period_start': self.period_start.isoformat(),
            'period_end': self.period_end.isoformat(),
            'data': self.data,
            'totals': self.totals,
            'metadata': self.metadata,
        }


class ReportingEngine:
    """
    Report data for a single company
    """

    def __init__(
        self,
        contracts: ContractLifecycle,
        charges: ChargeGenerator,
        payments: PaymentAllocator,
        aging: AgingClassifier,
        collections: CollectionsLedger,
        clock: Clock
    ):
        self.contracts = contracts
        self.charges = charges
        self.payments = payments
        self.aging = aging
        self.collections = collections
        self.clock = clock

    def aging_report(self, company_id: str, as_of: Optional[date] = None,
                     currency: Optional[Currency] = None) -> ReportResult:
        """One row per bucket with amount, count and share of the total pending"""
        as_of = as_of or self.clock.today()
        summary = self.aging.summarize(as_of, company_id, currency)
        total = summary.total_pending

        data = []
        for bucket, bucket_total in summary.buckets.items():
            data.append({
                'bucket': bucket.value,
                'amount': str(bucket_total.amount.amount),
                'count': bucket_total.count,
                'percentage': str(_percentage(bucket_total.amount.amount, total.amount)),
            })

        return ReportResult(
            report_id="aging",
            generated_at=self.clock.now(),
            period_start=as_of,
            period_end=as_of,
            data=data,
            totals={
                'total_pending': str(total.amount),
                'overdue_pending': str(summary.overdue_pending.amount),
                'total_count': summary.total_count,
            },
            metadata={'company_id': company_id, 'currency': summary.currency.code}
        )

    def account_statement(self, company_id: str, contract_id: str,
                          as_of: Optional[date] = None) -> ReportResult:
        """
        Charges (debits) and received payments (credits) of a contract in
        date order with a running balance
        """
        as_of = as_of or self.clock.today()
        contract = self.contracts.get_contract(company_id, contract_id)
        currency = contract.currency

        entries = []
        for charge in self.charges.find_charges(company_id, contract_id=contract_id):
            if charge.is_cancelled or charge.charge_date > as_of:
                continue
            entries.append((charge.charge_date, 0, charge.id, {
                'type': 'charge',
                'reference': charge.id,
                'concept': charge.concept,
                'due_date': charge.due_date.isoformat(),
                'status': charge.display_status(as_of).value,
                'debit': charge.amount_original,
                'credit': Money.zero(currency),
            }))
        for payment in self.payments.find_payments(company_id, contract_id=contract_id):
            if payment.status in _EXCLUDED_PAYMENT_STATUSES or payment.payment_date > as_of:
                continue
            entries.append((payment.payment_date, 1, payment.receipt_number, {
                'type': 'payment',
                'reference': payment.receipt_number,
                'concept': f"Payment {payment.payment_type.value}",
                'status': payment.status.value,
                'debit': Money.zero(currency),
                'credit': payment.amount,
            }))
        entries.sort(key=lambda e: e[:3])

        balance = Money.zero(currency)
        charged = Money.zero(currency)
        paid = Money.zero(currency)
        data = []
        for entry_date, _, _, row in entries:
            charged = charged + row['debit']
            paid = paid + row['credit']
            balance = balance + row['debit'] - row['credit']
            row.update({
                'date': entry_date.isoformat(),
                'debit': str(row['debit'].amount),
                'credit': str(row['credit'].amount),
                'balance': str(balance.amount),
            })
            data.append(row)

        return ReportResult(
            report_id="account_statement",
            generated_at=self.clock.now(),
            period_start=contract.start_date,
            period_end=as_of,
            data=data,
            totals={
                'charged': str(charged.amount),
                'paid': str(paid.amount),
                'balance': str(balance.amount),
                'outstanding': str(self.charges.get_contract_balance(company_id, contract_id).amount),
            },
            metadata={
                'company_id': company_id,
                'contract_id': contract.id,
                'contract_number': contract.contract_number,
                'tenant_id': contract.tenant_id,
                'currency': currency.code,
            }
        )

    def termination_settlement(self, company_id: str, contract_id: str,
                               as_of: Optional[date] = None) -> ReportResult:
        """
        Settlement figures for closing a contract

        net due = outstanding charges + penalties - deposit held. Penalties
        count on open records and on records closed as paid. The
        deposit held is what was actually paid on DEPOSIT charges; unpaid
        deposit charges are not counted as owed.
        """
        as_of = as_of or self.clock.today()
        contract = self.contracts.get_contract(company_id, contract_id)
        zero = Money.zero(contract.currency)

        outstanding = zero
        deposit_held = zero
        data = []
        for charge in sorted(self.charges.find_charges(company_id, contract_id=contract_id), key=charge_sort_key):
            if charge.is_cancelled:
                continue
            if charge.charge_type == ChargeType.DEPOSIT:
                deposit_held = deposit_held + charge.amount_paid
                continue
            if not charge.pending_amount.is_positive():
                continue
            outstanding = outstanding + charge.pending_amount
            data.append({
                'charge_id': charge.id,
                'concept': charge.concept,
                'charge_type': charge.charge_type.value,
                'due_date': charge.due_date.isoformat(),
                'status': charge.display_status(as_of).value,
                'pending': str(charge.pending_amount.amount),
            })

        # Penalties stay owed after the charge itself is paid off
        penalties = zero
        for record in self.collections.find_records(company_id, contract_id=contract_id, open_only=False):
            if record.active:
                penalties = penalties + record.penalty_amount

        net_due = outstanding + penalties - deposit_held
        return ReportResult(
            report_id="termination_settlement",
            generated_at=self.clock.now(),
            period_start=contract.start_date,
            period_end=as_of,
            data=data,
            totals={
                'outstanding': str(outstanding.amount),
                'penalties': str(penalties.amount),
                'deposit_held': str(deposit_held.amount),
                'net_due': str(net_due.amount),
            },
            metadata={
                'company_id': company_id,
                'contract_id': contract.id,
                'contract_number': contract.contract_number,
                'currency': contract.currency.code,
                'refund_due': net_due.is_negative(),
            }
        )

    def payment_statistics(self, company_id: str, month: int, year: int,
                           currency: Optional[Currency] = None) -> ReportResult:
        """Payments received in a month by type, plus the company's pending and overdue position"""
        if not 1 <= month <= 12:
            raise ValidationError("Month must be between 1 and 12", {"month": month})
        currency = currency or self.aging.default_currency
        period_start = date(year, month, 1)
        period_end = date(year, month, calendar.monthrange(year, month)[1])
        zero = Money.zero(currency)

        received = zero
        count = 0
        by_type: Dict[str, Dict[str, Any]] = {}
        for payment in self.payments.find_payments(company_id):
            if payment.status in _EXCLUDED_PAYMENT_STATUSES or payment.amount.currency != currency:
                continue
            if not period_start <= payment.payment_date <= period_end:
                continue
            received = received + payment.amount
            count += 1
            group = by_type.setdefault(payment.payment_type.value, {'amount': zero, 'count': 0})
            group['amount'] = group['amount'] + payment.amount
            group['count'] += 1

        today = self.clock.today()
        pending = zero
        overdue_count = 0
        for charge in self.charges.find_charges(company_id):
            if charge.is_cancelled or charge.amount_original.currency != currency:
                continue
            pending = pending + charge.pending_amount
            if charge.display_status(today) == ChargeStatus.OVERDUE:
                overdue_count += 1

        data = [
            {'payment_type': payment_type, 'amount': str(group['amount'].amount), 'count': group['count']}
            for payment_type, group in sorted(by_type.items())
        ]
        return ReportResult(
            report_id="payment_statistics",
            generated_at=self.clock.now(),
            period_start=period_start,
            period_end=period_end,
            data=data,
            totals={
                'received': str(received.amount),
                'payment_count': count,
                'pending': str(pending.amount),
                'overdue_count': overdue_count,
            },
            metadata={'company_id': company_id, 'currency': currency.code}
        )
