"""
Test suite for the schedule lifecycle manager

Tests generate, regenerate, modify, defer and stop end to end against an
in-memory store: persisted rows, loan balances, contract versions, audit
events and all-or-nothing writes.
"""

import logging
import threading
import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.audit import AuditEventType, AuditTrail
from loan_servicing.calendars import HolidayCalendar
from loan_servicing.config import SchedulingPolicy
from loan_servicing.currency import Money, Currency, sum_money
from loan_servicing.exceptions import (
    ContractAlreadyFinalized, InvalidScheduleParameters, InvalidStartDate,
    LifecycleTransitionError, LoanAlreadySettled, PaymentNotFound
)
from loan_servicing.fees import DeferralFeeMode
from loan_servicing.lifecycle import LifecycleManager, ModificationRequest, ScheduleRequest
from loan_servicing.loans import ApplicationStatus, ContractStatus, LoanStatus
from loan_servicing.payments import PaymentStatus
from loan_servicing.settlement import SettlementProcessor, parse_settlement_event
from loan_servicing.storage import InMemoryStorage
from loan_servicing.store import LoanStore


def cad(value) -> Money:
    return Money(Decimal(str(value)), Currency.CAD)


class FailingLoanStore(LoanStore):
    """Loan store whose loan write can be made to fail on demand"""

    def __init__(self, storage):
        super().__init__(storage)
        self.fail_loan_writes = False

    def update_loan(self, loan, expected_version):
        if self.fail_loan_writes:
            raise RuntimeError("loan write failed")
        return super().update_loan(loan, expected_version)


class LifecycleTestBase:
    """Shared fixture: a monthly loan with six pending payments"""

    def setup_method(self):
        self.today = date(2025, 1, 6)  # Monday
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.store = FailingLoanStore(self.storage)
        self.manager = LifecycleManager(
            self.store, self.audit, SchedulingPolicy(),
            holiday_calendar=HolidayCalendar.canadian(),
            clock=lambda: self.today
        )
        self.settlement = SettlementProcessor(self.store, self.audit, clock=lambda: self.today)

        self.loan = self.manager.create_loan(cad('500.00'), "monthly", term_months=6, loan_id="loan-1")
        self.request = ScheduleRequest(
            loan_amount=cad('500.00'),
            first_payment_date=date(2025, 1, 10),
            brokerage_fee=cad('50.00'),
        )

    def generate(self):
        return self.manager.generate_schedule(self.loan.id, self.request)

    def payment(self, sequence_number):
        return self.store.get_payment(self.loan.id, sequence_number)

    def settle(self, sequence_number, status="AA"):
        payment = self.payment(sequence_number)
        return self.settlement.apply(
            parse_settlement_event({"payment_id": payment.id, "status": status})
        )

    def rows(self):
        return [p.to_dict() for p in self.store.list_payments(self.loan.id)]


class TestGenerateSchedule(LifecycleTestBase):
    """Test first schedule generation"""

    def test_generate(self):
        result = self.generate()

        assert result.created_count == 6
        assert result.contract_version == 1
        assert result.remaining_balance == cad('550.00')
        assert [p.sequence_number for p in result.payments] == [1, 2, 3, 4, 5, 6]
        assert all(p.status == PaymentStatus.PENDING for p in result.payments)
        assert sum_money((p.principal for p in result.payments), Currency.CAD) == cad('550.00')
        assert result.payments[-1].remaining_balance.is_zero()

    def test_due_dates_skip_weekends(self):
        result = self.generate()
        # May 10, 2025 is a Saturday
        assert [p.due_date for p in result.payments] == [
            date(2025, 1, 10), date(2025, 2, 10), date(2025, 3, 10),
            date(2025, 4, 10), date(2025, 5, 12), date(2025, 6, 10),
        ]

    def test_persisted_state(self):
        self.generate()

        loan = self.store.get_loan(self.loan.id)
        assert loan.principal_amount == cad('550.00')
        assert loan.remaining_balance == cad('550.00')
        assert loan.application_status == ApplicationStatus.CONTRACT_PENDING
        assert loan.version == 1

        contract = self.store.get_contract(self.loan.id)
        assert contract.version == 1
        assert contract.status == ContractStatus.GENERATED
        assert contract.terms.financed_amount == cad('550.00')
        assert contract.terms.origination_fee == cad('55.00')
        assert contract.terms.number_of_payments == 6
        assert len(self.store.list_payments(self.loan.id)) == 6

    def test_origination_fee_not_financed(self):
        self.request.origination_fee = cad('75.00')
        result = self.generate()
        assert result.remaining_balance == cad('550.00')
        assert self.store.get_contract(self.loan.id).terms.origination_fee == cad('75.00')

    def test_schedule_shape(self):
        row = self.generate().schedule()[0]
        assert row == {
            'sequence_number': 1,
            'due_date': '2025-01-10',
            'amount': row['amount'],
            'principal': row['principal'],
            'interest': row['interest'],
            'remaining_balance': row['remaining_balance'],
            'status': 'pending',
        }

    def test_generate_twice_rejected(self):
        self.generate()
        with pytest.raises(LifecycleTransitionError, match="regenerate"):
            self.generate()

    def test_start_date_must_be_after_today(self):
        self.request.first_payment_date = self.today
        with pytest.raises(InvalidStartDate):
            self.generate()
        assert self.store.list_payments(self.loan.id) == []
        assert self.store.get_contract(self.loan.id) is None

    def test_invalid_payment_count(self):
        self.request.number_of_payments = 0
        with pytest.raises(InvalidScheduleParameters):
            self.generate()

    def test_audit_event(self):
        self.generate()
        events = self.audit.get_events_for_entity("loan", self.loan.id)
        assert [e.event_type for e in events] == [AuditEventType.SCHEDULE_GENERATED]
        assert events[0].metadata["contract_version"] == 1


class TestRegenerateSchedule(LifecycleTestBase):
    """Test full schedule replacement before signature"""

    def test_regenerate_is_idempotent(self):
        first = self.generate()
        second = self.manager.regenerate_schedule(self.loan.id, self.request)
        third = self.manager.regenerate_schedule(self.loan.id, self.request)

        assert third.contract_version == 3
        assert third.deleted_count == 6
        assert third.created_count == 6
        strip = lambda result: [
            (p.sequence_number, p.due_date, p.amount, p.principal, p.interest, p.remaining_balance)
            for p in result.payments
        ]
        assert strip(first) == strip(second) == strip(third)
        assert len(self.store.list_payments(self.loan.id)) == 6
        assert self.store.get_contract(self.loan.id).version == 3

    def test_regenerate_replaces_rows(self):
        first_ids = {p.id for p in self.generate().payments}
        self.request.loan_amount = cad('800.00')
        self.request.number_of_payments = 3

        result = self.manager.regenerate_schedule(self.loan.id, self.request)

        stored = self.store.list_payments(self.loan.id)
        assert len(stored) == 3
        assert not first_ids & {p.id for p in stored}
        assert result.remaining_balance == cad('850.00')
        assert self.store.get_loan(self.loan.id).remaining_balance == cad('850.00')

    def test_signed_contract_rejected(self):
        self.generate()
        contract = self.store.get_contract(self.loan.id)
        contract.status = ContractStatus.SIGNED
        self.store.save_contract(contract)
        before = self.rows()

        with pytest.raises(ContractAlreadyFinalized, match="already signed"):
            self.manager.regenerate_schedule(self.loan.id, self.request)

        assert self.rows() == before
        assert self.store.get_contract(self.loan.id).version == 1

    def test_regenerate_without_contract(self):
        with pytest.raises(LifecycleTransitionError):
            self.manager.regenerate_schedule(self.loan.id, self.request)


class TestSettledLoan(LifecycleTestBase):
    """Test that closed loans reject every operation"""

    def setup_method(self):
        super().setup_method()
        self.generate()
        loan = self.store.get_loan(self.loan.id)
        loan.status = LoanStatus.CANCELLED
        self.store.update_loan(loan, loan.version)

    def test_all_operations_rejected(self):
        modification = ModificationRequest(start_date=date(2025, 3, 10))
        operations = [
            lambda: self.manager.regenerate_schedule(self.loan.id, self.request),
            lambda: self.manager.modify_schedule(self.loan.id, modification),
            lambda: self.manager.preview_modification(self.loan.id, modification),
            lambda: self.manager.defer_payment(self.loan.id, 2),
            lambda: self.manager.stop_remaining_payments(self.loan.id),
        ]
        before = self.rows()
        for operation in operations:
            with pytest.raises(LoanAlreadySettled):
                operation()
        assert self.rows() == before


class TestModifySchedule(LifecycleTestBase):
    """Test mid-term re-amortization"""

    def setup_method(self):
        super().setup_method()
        self.generate()
        self.settle(1)
        self.settle(2, status="904")
        self.today = date(2025, 2, 24)
        self.modification = ModificationRequest(start_date=date(2025, 3, 10), number_of_payments=4)

    def test_failed_payment_rebilled_with_origination_fee(self):
        loan = self.store.get_loan(self.loan.id)
        failed = self.payment(2)
        expected_balance = loan.remaining_balance + failed.amount + cad('55.00')
        open_ids = [self.payment(n).id for n in (3, 4, 5, 6)]

        result = self.manager.modify_schedule(self.loan.id, self.modification)

        assert result.updated_count == 4
        assert result.created_count == 0
        assert result.deleted_count == 0
        assert result.remaining_balance == expected_balance
        assert [p.id for p in result.payments if p.sequence_number > 2] == open_ids
        assert [p.due_date for p in result.payments if p.sequence_number > 2] == [
            date(2025, 3, 10), date(2025, 4, 10), date(2025, 5, 12), date(2025, 6, 10),
        ]

        stored = self.store.get_loan(self.loan.id)
        assert stored.rebilled_failed_sequences == [2]
        assert stored.principal_amount == cad('550.00') + failed.amount + cad('55.00')

    def test_retained_rows_untouched(self):
        confirmed, failed = self.payment(1).to_dict(), self.payment(2).to_dict()
        self.manager.modify_schedule(self.loan.id, self.modification)
        assert self.payment(1).to_dict() == confirmed
        assert self.payment(2).to_dict() == failed

    def test_new_rows_conserve_balance(self):
        result = self.manager.modify_schedule(self.loan.id, self.modification)
        new_rows = [p for p in result.payments if p.sequence_number > 2]
        assert sum_money((p.principal for p in new_rows), Currency.CAD) == result.remaining_balance
        assert new_rows[-1].remaining_balance.is_zero()
        assert all(p.status == PaymentStatus.PENDING for p in new_rows)

    def test_failure_not_rebilled_twice(self):
        first = self.manager.modify_schedule(self.loan.id, self.modification)
        second = self.manager.modify_schedule(self.loan.id, self.modification)
        assert second.remaining_balance == first.remaining_balance
        assert second.updated_count == 4

    def test_shorter_schedule_deletes_rows(self):
        self.modification.number_of_payments = 2
        result = self.manager.modify_schedule(self.loan.id, self.modification)

        assert result.updated_count == 2
        assert result.deleted_count == 2
        assert [p.sequence_number for p in self.store.list_payments(self.loan.id)] == [1, 2, 3, 4]

    def test_longer_schedule_creates_rows(self):
        self.modification.number_of_payments = 6
        result = self.manager.modify_schedule(self.loan.id, self.modification)

        assert result.updated_count == 4
        assert result.created_count == 2
        assert [p.sequence_number for p in result.payments] == [1, 2, 3, 4, 5, 6, 7, 8]

    def test_payment_amount_mismatch(self):
        preview = self.manager.preview_modification(self.loan.id, self.modification)
        self.modification.expected_payment_amount = preview.periodic_payment + cad('0.02')
        before = self.rows()

        with pytest.raises(InvalidScheduleParameters, match="Payment amount mismatch") as exc_info:
            self.manager.modify_schedule(self.loan.id, self.modification)

        assert exc_info.value.field == "payment_amount"
        assert self.rows() == before

    def test_payment_amount_within_tolerance(self):
        preview = self.manager.preview_modification(self.loan.id, self.modification)
        self.modification.expected_payment_amount = preview.periodic_payment + cad('0.01')
        result = self.manager.modify_schedule(self.loan.id, self.modification)
        assert result.periodic_payment == preview.periodic_payment

    def test_preview_writes_nothing(self):
        before_rows = self.rows()
        before_version = self.store.get_loan(self.loan.id).version
        before_events = len(self.audit.get_all_events())

        preview = self.manager.preview_modification(self.loan.id, self.modification)

        assert preview.to_update_count == 4
        assert preview.to_create_count == 0
        assert preview.to_delete_count == 0
        assert self.rows() == before_rows
        assert self.store.get_loan(self.loan.id).version == before_version
        assert len(self.audit.get_all_events()) == before_events

    def test_start_date_in_past(self):
        self.modification.start_date = date(2025, 2, 20)
        with pytest.raises(InvalidStartDate):
            self.manager.modify_schedule(self.loan.id, self.modification)

    def test_audit_metadata(self):
        self.manager.modify_schedule(self.loan.id, self.modification)
        event = self.audit.get_events_for_entity("loan", self.loan.id)[-1]
        assert event.event_type == AuditEventType.SCHEDULE_MODIFIED
        assert event.metadata["rebilled_sequence_numbers"] == [2]
        assert event.metadata["anchor_sequence_number"] == 2
        assert event.metadata["updated"] == 4


class TestDeferPayment(LifecycleTestBase):
    """Test moving one payment to the end of the schedule"""

    def setup_method(self):
        super().setup_method()
        self.generate()
        self.original = {p.sequence_number: p for p in self.store.list_payments(self.loan.id)}

    def test_defer_with_fee_on_appended_payment(self):
        target = self.original[3]
        result = self.manager.defer_payment(
            self.loan.id, 3, fee_mode=DeferralFeeMode.END, fee_amount=cad('25.00')
        )

        deferred = self.payment(3)
        assert deferred.status == PaymentStatus.DEFERRED
        assert deferred.amount.is_zero()
        assert deferred.principal.is_zero()
        assert deferred.notes[-1].startswith("Payment deferred. Original amount:")

        appended = self.payment(7)
        assert appended.id == result.appended_payment.id
        assert appended.status == PaymentStatus.PENDING
        assert appended.due_date == date(2025, 7, 10)
        assert appended.amount == target.amount + cad('25.00')
        assert appended.principal == target.principal
        assert appended.interest == target.interest
        assert appended.fee_amount == cad('25.00')
        assert appended.notes == ["Deferred from payment 3"]

        assert self.store.get_loan(self.loan.id).remaining_balance == cad('575.00')

    def test_defer_fee_on_balance_only(self):
        target = self.original[3]
        self.manager.defer_payment(self.loan.id, 3, fee_mode="balance", fee_amount=cad('25.00'))

        appended = self.payment(7)
        assert appended.amount == target.amount
        assert appended.fee_amount.is_zero()
        assert self.store.get_loan(self.loan.id).remaining_balance == cad('575.00')

    def test_defer_without_fee(self):
        target = self.original[3]
        result = self.manager.defer_payment(self.loan.id, 3)

        assert result.appended_payment.amount == target.amount
        assert result.charge.fee_amount.is_zero()
        assert self.store.get_loan(self.loan.id).remaining_balance == cad('550.00')

    def test_later_rows_carry_deferred_principal(self):
        carried = self.original[3].principal
        self.manager.defer_payment(self.loan.id, 3)

        for n in (4, 5, 6):
            assert self.payment(n).remaining_balance == self.original[n].remaining_balance + carried
        assert self.payment(2).to_dict() == self.original[2].to_dict()

    def test_principal_still_conserved(self):
        self.manager.defer_payment(self.loan.id, 3)
        rows = self.store.list_payments(self.loan.id)
        assert len(rows) == 7
        assert sum_money((p.principal for p in rows), Currency.CAD) == cad('550.00')

    def test_defer_last_payment(self):
        result = self.manager.defer_payment(self.loan.id, 6)
        assert result.appended_payment.sequence_number == 7
        assert result.appended_payment.due_date == date(2025, 7, 10)

    def test_only_pending_payments(self):
        self.settle(1)
        with pytest.raises(LifecycleTransitionError, match="Only pending payments"):
            self.manager.defer_payment(self.loan.id, 1)

    def test_defer_twice_rejected(self):
        self.manager.defer_payment(self.loan.id, 3)
        with pytest.raises(LifecycleTransitionError):
            self.manager.defer_payment(self.loan.id, 3)

    def test_unknown_payment(self):
        with pytest.raises(PaymentNotFound):
            self.manager.defer_payment(self.loan.id, 42)

    def test_modify_after_deferring_with_earlier_rows_pending(self):
        self.manager.defer_payment(self.loan.id, 2)
        deferred_id = self.payment(2).id

        result = self.manager.modify_schedule(
            self.loan.id, ModificationRequest(start_date=date(2025, 2, 3), number_of_payments=4)
        )

        assert result.updated_count == 4
        assert result.created_count == 0
        assert result.deleted_count == 3
        rows = self.store.list_payments(self.loan.id)
        assert [p.sequence_number for p in rows] == [1, 2, 3, 4]
        assert rows[1].id == deferred_id
        assert all(p.status == PaymentStatus.PENDING for p in rows)
        assert rows[0].due_date == date(2025, 2, 3)
        assert result.remaining_balance == cad('550.00')
        assert sum_money((p.principal for p in rows), Currency.CAD) == result.remaining_balance
        assert rows[-1].remaining_balance.is_zero()

    def test_appended_payment_keeps_month_end_anchor(self):
        self.request.first_payment_date = date(2025, 1, 31)
        self.manager.regenerate_schedule(self.loan.id, self.request)
        assert self.store.get_loan(self.loan.id).anchor_day == 31
        # May 31, 2025 is a Saturday, the last payment is June 30
        assert self.payment(5).due_date == date(2025, 6, 2)
        assert self.payment(6).due_date == date(2025, 6, 30)

        result = self.manager.defer_payment(self.loan.id, 6)

        assert result.appended_payment.due_date == date(2025, 7, 31)

    def test_audit_event(self):
        self.manager.defer_payment(self.loan.id, 3, fee_mode=DeferralFeeMode.END, fee_amount=cad('25.00'))
        event = self.audit.get_events_for_entity("loan", self.loan.id)[-1]
        assert event.event_type == AuditEventType.PAYMENT_DEFERRED
        assert event.metadata["fee_mode"] == "end"
        assert event.metadata["appended_sequence_number"] == 7


class TestStopRemainingPayments(LifecycleTestBase):
    """Test cancelling all future payments"""

    def setup_method(self):
        super().setup_method()
        self.generate()
        self.settle(1)
        self.settle(2, status="R01")
        self.settle(3, status="R01")
        self.today = date(2025, 2, 24)

    def test_stop(self):
        result = self.manager.stop_remaining_payments(self.loan.id)

        assert result.cancelled_count == 4
        assert [p.sequence_number for p in result.cancelled_payments] == [3, 4, 5, 6]
        for n in (3, 4, 5, 6):
            payment = self.payment(n)
            assert payment.status == PaymentStatus.CANCELLED
            assert payment.notes[-1] == "Payment stopped on 2025-02-24"

    def test_past_and_settled_rows_untouched(self):
        self.manager.stop_remaining_payments(self.loan.id)
        assert self.payment(1).status == PaymentStatus.CONFIRMED
        assert self.payment(2).status == PaymentStatus.FAILED

    def test_nothing_left_to_stop(self):
        self.manager.stop_remaining_payments(self.loan.id)
        with pytest.raises(LifecycleTransitionError, match="No future payments"):
            self.manager.stop_remaining_payments(self.loan.id)

    def test_stop_advances_loan_version(self):
        before = self.store.get_loan(self.loan.id).version
        self.manager.stop_remaining_payments(self.loan.id)
        assert self.store.get_loan(self.loan.id).version == before + 1


class TestConcurrentOperations(LifecycleTestBase):
    """Test that calls on one loan are serialized"""

    def setup_method(self):
        super().setup_method()
        self.generate()
        self.settle(1)
        self.settle(2, status="904")
        self.today = date(2025, 2, 24)

    def test_parallel_modifications(self):
        before = self.store.get_loan(self.loan.id).version
        barrier = threading.Barrier(4)
        errors = []

        def modify(count):
            barrier.wait()
            try:
                self.manager.modify_schedule(
                    self.loan.id,
                    ModificationRequest(start_date=date(2025, 3, 10), number_of_payments=count)
                )
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=modify, args=(count,)) for count in (3, 5, 4, 6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        loan = self.store.get_loan(self.loan.id)
        assert loan.version == before + 4
        assert loan.rebilled_failed_sequences == [2]

        rows = self.store.list_payments(self.loan.id)
        assert [p.sequence_number for p in rows] == list(range(1, len(rows) + 1))
        pending = [p for p in rows if p.status == PaymentStatus.PENDING]
        assert len(pending) == len(rows) - 2
        assert sum_money((p.principal for p in pending), Currency.CAD) == loan.remaining_balance

    def test_locks_released(self):
        self.manager.stop_remaining_payments(self.loan.id)
        with pytest.raises(LifecycleTransitionError):
            self.manager.stop_remaining_payments(self.loan.id)
        assert self.manager._locks == {}


class TestAtomicity(LifecycleTestBase):
    """Test that a failed write leaves no partial changes"""

    def test_generate_rolls_back(self):
        self.store.fail_loan_writes = True

        with pytest.raises(RuntimeError):
            self.generate()

        assert self.store.list_payments(self.loan.id) == []
        assert self.store.get_contract(self.loan.id) is None
        assert self.audit.get_all_events() == []
        loan = self.store.get_loan(self.loan.id)
        assert loan.application_status == ApplicationStatus.PRE_APPROVED
        assert loan.version == 0

    def test_modify_rolls_back(self):
        self.generate()
        self.today = date(2025, 1, 20)
        before = self.rows()
        before_events = len(self.audit.get_all_events())
        self.store.fail_loan_writes = True

        with pytest.raises(RuntimeError):
            self.manager.modify_schedule(
                self.loan.id, ModificationRequest(start_date=date(2025, 2, 3), number_of_payments=3)
            )

        assert self.rows() == before
        assert len(self.audit.get_all_events()) == before_events

    def test_defer_rolls_back(self):
        self.generate()
        before = self.rows()
        self.store.fail_loan_writes = True

        with pytest.raises(RuntimeError):
            self.manager.defer_payment(self.loan.id, 3)

        assert self.rows() == before


class TestLifecycleAudit(LifecycleTestBase):
    """Test the audit chain across a full lifecycle"""

    def test_chain_integrity(self):
        self.generate()
        self.manager.regenerate_schedule(self.loan.id, self.request)
        self.settle(1)
        self.settle(2)
        self.manager.defer_payment(self.loan.id, 3)
        self.today = date(2025, 2, 24)
        modified = self.manager.modify_schedule(
            self.loan.id, ModificationRequest(start_date=date(2025, 3, 10))
        )
        self.manager.stop_remaining_payments(self.loan.id)

        # Deferred row 3 and rows 4-7 are rewritten, row 8 is appended
        assert modified.updated_count == 5
        assert modified.created_count == 1

        loan_events = [e.event_type for e in self.audit.get_events_for_entity("loan", self.loan.id)]
        assert loan_events == [
            AuditEventType.SCHEDULE_GENERATED,
            AuditEventType.SCHEDULE_REGENERATED,
            AuditEventType.PAYMENT_DEFERRED,
            AuditEventType.SCHEDULE_MODIFIED,
            AuditEventType.PAYMENTS_STOPPED,
        ]
        integrity = self.audit.verify_integrity()
        assert integrity['valid'] is True
        assert integrity['total_events'] == 7


class TestRejectionLogging(LifecycleTestBase):
    """Test that rejected operations are logged with the loan id"""

    def test_rejection_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="loan_servicing.lifecycle"):
            with pytest.raises(LifecycleTransitionError):
                self.manager.regenerate_schedule(self.loan.id, self.request)

        records = [r for r in caplog.records if r.name == "loan_servicing.lifecycle"]
        assert records
        assert records[-1].loan_id == self.loan.id
        assert records[-1].operation == "regenerate"
        assert records[-1].extra["error"] == "lifecycle_transition_not_allowed"
