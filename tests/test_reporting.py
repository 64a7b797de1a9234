"""
Test suite for reporting data module
"""

import pytest
from decimal import Decimal
from datetime import date

from lease_ledger.config import LeaseLedgerConfig
from lease_ledger.currency import Money, Currency
from lease_ledger.storage import InMemoryStorage
from lease_ledger.clock import FixedClock
from lease_ledger.registry import InMemoryPartyRegistry
from lease_ledger.system import LeaseLedgerSystem
from lease_ledger.contracts import CreateContractRequest
from lease_ledger.charges import ChargeType
from lease_ledger.payments import CreatePaymentRequest, PaymentType
from lease_ledger.exceptions import ValidationError


COMPANY = "acme"


def mxn(amount):
    return Money(Decimal(amount), Currency.MXN)


class TestReportingEngine:
    """Test report data over a contract with a paid deposit and part-paid rent"""

    def setup_method(self):
        self.clock = FixedClock(date(2025, 1, 10))
        registry = InMemoryPartyRegistry()
        registry.register_property(COMPANY, "prop-1")
        registry.register_person(COMPANY, "tenant-1")
        self.system = LeaseLedgerSystem(
            config=LeaseLedgerConfig(database_url="memory://"),
            storage=InMemoryStorage(),
            clock=self.clock,
            registry=registry
        )
        self.reporting = self.system.reporting

        contract = self.system.contracts.create_contract(COMPANY, CreateContractRequest(
            property_id="prop-1",
            tenant_id="tenant-1",
            start_date=date(2025, 1, 1),
            end_date=date(2025, 12, 31),
            monthly_rent=mxn("1000.00"),
            payment_day=5,
            grace_days=3,
            deposit_amount=mxn("2000.00"),
            daily_penalty=mxn("50.00"),
        ))
        self.contract = self.system.contracts.activate(COMPANY, contract.id)
        self.deposit = self.system.charges.create_ad_hoc_charge(
            COMPANY, self.contract.id, ChargeType.DEPOSIT, "Security deposit",
            mxn("2000.00"), date(2025, 1, 1), date(2025, 1, 1)
        )
        self.system.charges.generate_fixed_charges(COMPANY, 1, 2025)
        self.system.charges.generate_fixed_charges(COMPANY, 2, 2025)

        # Deposit is due first and takes 2000; January rent gets the other 500
        self.payment = self.system.payments.create_payment(COMPANY, CreatePaymentRequest(
            contract_id=self.contract.id, person_id="tenant-1", amount=mxn("2500.00"),
            payment_type=PaymentType.TRANSFER, payment_date=date(2025, 1, 10),
            reference="SPEI-001"
        ), auto_apply=True)
        self.clock.set(date(2025, 1, 20))

    def test_aging_report(self):
        report = self.reporting.aging_report(COMPANY)

        rows = {row['bucket']: row for row in report.data}
        assert len(rows) == 5
        assert rows['current'] == {'bucket': 'current', 'amount': '1000.00', 'count': 1, 'percentage': '66.67'}
        assert rows['overdue_1_30']['amount'] == '500.00'
        assert rows['overdue_1_30']['percentage'] == '33.33'
        assert rows['overdue_90_plus']['percentage'] == '0.00'
        assert report.totals == {'total_pending': '1500.00', 'overdue_pending': '500.00', 'total_count': 2}
        assert report.metadata['currency'] == 'MXN'

    def test_aging_report_empty_company(self):
        report = self.reporting.aging_report("globex")
        assert all(row['percentage'] == '0.00' for row in report.data)
        assert report.totals['total_count'] == 0

    def test_account_statement(self):
        report = self.reporting.account_statement(COMPANY, self.contract.id)

        assert [row['type'] for row in report.data] == ['charge', 'charge', 'payment']
        assert [row['balance'] for row in report.data] == ['2000.00', '3000.00', '500.00']
        assert report.data[2]['reference'] == self.payment.receipt_number
        assert report.data[2]['credit'] == '2500.00'
        assert report.totals == {
            'charged': '3000.00', 'paid': '2500.00', 'balance': '500.00', 'outstanding': '1500.00'
        }
        assert report.metadata['contract_number'] == self.contract.contract_number

    def test_account_statement_leaves_out_cancelled_payments(self):
        self.system.payments.cancel_payment(COMPANY, self.payment.id, "Bounced transfer")
        report = self.reporting.account_statement(COMPANY, self.contract.id)

        assert [row['type'] for row in report.data] == ['charge', 'charge']
        assert report.totals['balance'] == '3000.00'

    def test_termination_settlement_refund(self):
        report = self.reporting.termination_settlement(COMPANY, self.contract.id)

        assert report.totals == {
            'outstanding': '1500.00', 'penalties': '0.00', 'deposit_held': '2000.00', 'net_due': '-500.00'
        }
        assert report.metadata['refund_due'] is True
        assert len(report.data) == 2

    def test_termination_settlement_with_penalties(self):
        self.system.collections.sync_from_aging(COMPANY)
        record = self.system.collections.find_records(COMPANY)[0]
        self.system.collections.accrue_penalty(COMPANY, record.id)

        report = self.reporting.termination_settlement(COMPANY, self.contract.id)
        assert report.totals['penalties'] == '600.00'
        assert report.totals['net_due'] == '100.00'
        assert report.metadata['refund_due'] is False

    def test_termination_settlement_keeps_penalty_of_paid_charge(self):
        self.system.collections.sync_from_aging(COMPANY)
        record = self.system.collections.find_records(COMPANY)[0]
        self.system.collections.accrue_penalty(COMPANY, record.id)
        self.system.payments.create_payment(COMPANY, CreatePaymentRequest(
            contract_id=self.contract.id, person_id="tenant-1", amount=mxn("500.00"),
            payment_type=PaymentType.CASH, payment_date=date(2025, 1, 20)
        ), auto_apply=True)
        assert self.system.collections.find_records(COMPANY) == []

        report = self.reporting.termination_settlement(COMPANY, self.contract.id)
        assert report.totals == {
            'outstanding': '1000.00', 'penalties': '600.00', 'deposit_held': '2000.00', 'net_due': '-400.00'
        }

    def test_termination_settlement_skips_penalty_of_deactivated_record(self):
        self.system.collections.sync_from_aging(COMPANY)
        record = self.system.collections.find_records(COMPANY)[0]
        self.system.collections.accrue_penalty(COMPANY, record.id)
        self.system.collections.deactivate_record(COMPANY, record.id, "Penalty forgiven by owner")

        report = self.reporting.termination_settlement(COMPANY, self.contract.id)
        assert report.totals['penalties'] == '0.00'

    def test_payment_statistics(self):
        report = self.reporting.payment_statistics(COMPANY, 1, 2025)

        assert report.data == [{'payment_type': 'transfer', 'amount': '2500.00', 'count': 1}]
        assert report.totals == {
            'received': '2500.00', 'payment_count': 1, 'pending': '1500.00', 'overdue_count': 1
        }
        assert report.period_end == date(2025, 1, 31)

    def test_payment_statistics_other_month(self):
        report = self.reporting.payment_statistics(COMPANY, 2, 2025)
        assert report.data == []
        assert report.totals['received'] == '0.00'

    def test_payment_statistics_rejects_bad_month(self):
        with pytest.raises(ValidationError, match="Month must be between 1 and 12"):
            self.reporting.payment_statistics(COMPANY, 13, 2025)

    def test_report_to_dict(self):
        data = self.reporting.aging_report(COMPANY).to_dict()
        assert data['report_id'] == 'aging'
        assert data['period_start'] == '2025-01-20'
        assert data['metadata']['row_count'] == 5
