"""
Schedule Lifecycle Module

Entry point for every schedule change on a loan: generate, regenerate,
modify, defer one payment and stop remaining payments.

Each operation validates and computes first, then writes rows, loan, contract
and audit event in one atomic unit. Calls on the same loan are serialized by
a per-loan lock, and every loan write is checked against the version that
was read, so a concurrent writer surfaces as ConcurrentModificationError
rather than a lost update.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
import uuid

from .amortization import AmortizationSchedule, ScheduleOverride, ScheduleParams, build_schedule
from .audit import AuditEventType, AuditTrail
from .calendars import HolidayCalendar, PaymentFrequency, default_payment_count, next_due_date
from .config import SchedulingPolicy
from .currency import Money
from .exceptions import (
    ContractAlreadyFinalized, InvalidScheduleParameters, LifecycleTransitionError,
    LoanAlreadySettled, PaymentNotFound, ScheduleEngineError
)
from .fees import DeferralCharge, DeferralFeeMode, FeeSet, resolve_deferral_fee, resolve_financed_amount
from .loans import ApplicationStatus, Contract, ContractStatus, ContractTerms, Loan
from .logging_config import log_action
from .modification import ModificationBalance, calculate_modification_balance
from .payments import PaymentStatus, ScheduledPayment
from .reconciliation import ReconciliationPlan, SchedulePreview, ScheduleReconciler
from .store import LoanStore

logger = logging.getLogger("loan_servicing.lifecycle")

PAYMENT_AMOUNT_TOLERANCE = Decimal('0.01')


@dataclass
class ScheduleRequest:
    """Parameters for generating or regenerating a contract schedule"""
    loan_amount: Money
    first_payment_date: date
    frequency: Optional[Any] = None                  # Defaults to the loan frequency
    number_of_payments: Optional[int] = None         # Defaults from the loan term
    annual_interest_rate: Optional[Decimal] = None   # Defaults to the loan rate
    brokerage_fee: Optional[Money] = None
    origination_fee: Optional[Money] = None
    deferral_fee: Optional[Money] = None
    preferred_pay_dates: Optional[List[date]] = None
    schedule_override: Optional[List[ScheduleOverride]] = None


@dataclass
class ModificationRequest:
    """Mid-term modification; never persisted, only its rows are"""
    start_date: date
    frequency: Optional[Any] = None
    number_of_payments: Optional[int] = None
    schedule_override: Optional[List[ScheduleOverride]] = None
    expected_payment_amount: Optional[Money] = None
    preferred_pay_dates: Optional[List[date]] = None


@dataclass
class ScheduleResult:
    """Persisted outcome of a schedule change"""
    loan: Loan
    payments: List[ScheduledPayment]
    created_count: int
    updated_count: int = 0
    deleted_count: int = 0
    periodic_payment: Optional[Money] = None
    contract_version: Optional[int] = None

    @property
    def remaining_balance(self) -> Money:
        return self.loan.remaining_balance

    def schedule(self) -> List[Dict[str, Any]]:
        """Rows in the exposed schedule shape"""
        return [
            {
                'sequence_number': p.sequence_number,
                'due_date': p.due_date.isoformat(),
                'amount': str(p.amount.amount),
                'principal': str(p.principal.amount),
                'interest': str(p.interest.amount),
                'remaining_balance': str(p.remaining_balance.amount),
                'status': p.status.value,
            }
            for p in self.payments
        ]


@dataclass
class DeferralResult:
    loan: Loan
    deferred_payment: ScheduledPayment
    appended_payment: ScheduledPayment
    charge: DeferralCharge


@dataclass
class StopResult:
    loan: Loan
    cancelled_payments: List[ScheduledPayment] = field(default_factory=list)

    @property
    def cancelled_count(self) -> int:
        return len(self.cancelled_payments)


class LifecycleManager:
    """
    Orchestrates schedule lifecycle operations for loans
    """

    def __init__(
        self,
        store: LoanStore,
        audit_trail: AuditTrail,
        policy: Optional[SchedulingPolicy] = None,
        holiday_calendar: Optional[HolidayCalendar] = None,
        clock: Optional[Callable[[], date]] = None
    ):
        self.store = store
        self.audit_trail = audit_trail
        self.policy = policy or SchedulingPolicy()
        self.holidays = holiday_calendar or HolidayCalendar()
        self.clock = clock or date.today

        # loan id -> [lock, number of callers holding or waiting on it]
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _loan_lock(self, loan_id: str):
        """Per-loan mutual exclusion; the entry is dropped by its last user"""
        with self._locks_guard:
            entry = self._locks.setdefault(loan_id, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[loan_id]

    @contextmanager
    def _operation(self, loan_id: str, operation: str):
        """Serialize calls on one loan; rejected operations are logged"""
        with self._loan_lock(loan_id):
            try:
                yield
            except ScheduleEngineError as e:
                log_action(logger, "warning", f"{operation} rejected: {e}",
                           loan_id=loan_id, operation=operation, extra=e.to_dict())
                raise

    def _load_open_loan(self, loan_id: str) -> Loan:
        loan = self.store.require_loan(loan_id)
        if loan.is_closed:
            raise LoanAlreadySettled(
                f"Loan {loan_id} is {loan.status.value}",
                field="status", rule="loan must not be completed or cancelled"
            )
        return loan

    def create_loan(
        self,
        loan_amount: Money,
        frequency,
        term_months: Optional[int] = None,
        annual_interest_rate: Optional[Decimal] = None,
        loan_id: Optional[str] = None
    ) -> Loan:
        """
        Register a pre-approved loan awaiting its first schedule.

        Rate and term default to the scheduling policy.
        """
        if not loan_amount.is_positive():
            raise InvalidScheduleParameters(
                "Loan amount must be greater than 0",
                field="loan_amount", rule="must be greater than 0"
            )
        if loan_amount.currency != self.policy.currency:
            raise InvalidScheduleParameters(
                f"Loan currency must be {self.policy.currency.code}",
                field="loan_amount", rule="currency must match policy currency"
            )
        rate = self.policy.default_interest_rate if annual_interest_rate is None else annual_interest_rate
        loan = Loan.new(
            principal_amount=loan_amount,
            annual_interest_rate=rate,
            term_months=term_months or self.policy.default_term_months,
            frequency=PaymentFrequency.parse(frequency),
            loan_id=loan_id,
        )
        return self.store.create_loan(loan)

    # Generate / regenerate

    def _build_terms(self, loan: Loan, request: ScheduleRequest, today: date) -> ContractTerms:
        fees = FeeSet(
            brokerage_fee=request.brokerage_fee or self.policy.default_brokerage_fee,
            origination_fee=request.origination_fee or self.policy.default_origination_fee,
            deferral_fee=request.deferral_fee or self.policy.default_deferral_fee,
        )
        financed = resolve_financed_amount(request.loan_amount, fees.brokerage_fee)
        frequency = PaymentFrequency.parse(request.frequency or loan.frequency)
        count = request.number_of_payments
        if count is None:
            count = default_payment_count(frequency, loan.term_months, self.policy.payments_per_month)
        rate = loan.annual_interest_rate if request.annual_interest_rate is None else request.annual_interest_rate

        schedule = build_schedule(
            ScheduleParams(financed, rate, frequency, count, request.schedule_override),
            request.first_payment_date,
            holidays=self.holidays,
            preferred_pay_dates=request.preferred_pay_dates,
            today=today
        )
        return ContractTerms(
            loan_amount=request.loan_amount,
            brokerage_fee=fees.brokerage_fee,
            origination_fee=fees.origination_fee,
            deferral_fee=fees.deferral_fee,
            financed_amount=financed,
            annual_interest_rate=Decimal(str(rate)),
            frequency=frequency,
            number_of_payments=count,
            first_payment_date=schedule.first_payment_date,
            periodic_payment=schedule.periodic_payment,
            schedule=schedule.lines,
        )

    @staticmethod
    def _apply_terms(loan: Loan, terms: ContractTerms, start_date: date) -> None:
        loan.principal_amount = terms.financed_amount
        loan.remaining_balance = terms.financed_amount
        loan.annual_interest_rate = terms.annual_interest_rate
        loan.frequency = terms.frequency
        loan.rebilled_failed_sequences = []
        loan.anchor_day = start_date.day

    def generate_schedule(self, loan_id: str, request: ScheduleRequest) -> ScheduleResult:
        """
        Produce the version 1 contract and schedule for a pre-approved loan.

        Args:
            loan_id: Loan to schedule
            request: Amount, fees, frequency, count and first payment date

        Returns:
            ScheduleResult with all rows pending

        Raises:
            LifecycleTransitionError: If a contract exists or the loan is not pre-approved
            InvalidScheduleParameters / InvalidStartDate: On invalid inputs
        """
        with self._operation(loan_id, "generate"):
            today = self.clock()
            loan = self._load_open_loan(loan_id)
            if self.store.get_contract(loan_id) is not None:
                raise LifecycleTransitionError(
                    "A contract already exists for this loan; regenerate it instead",
                    field="contract", rule="generate requires no existing contract"
                )
            if loan.application_status != ApplicationStatus.PRE_APPROVED:
                raise LifecycleTransitionError(
                    f"Application must be pre-approved, not {loan.application_status.value}",
                    field="application_status", rule="must be pre_approved"
                )

            terms = self._build_terms(loan, request, today)
            payments = [ScheduledPayment.from_line(loan.id, line) for line in terms.schedule]
            contract = Contract.generated(loan.id, terms, self.policy.contract_expiry_days)

            expected_version = loan.version
            self._apply_terms(loan, terms, request.first_payment_date)
            loan.application_status = ApplicationStatus.CONTRACT_PENDING

            with self.store.atomic():
                self.store.bulk_replace_payments(loan.id, payments)
                self.store.save_contract(contract)
                self.store.update_loan(loan, expected_version)
                self.audit_trail.log_event(
                    AuditEventType.SCHEDULE_GENERATED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "contract_version": contract.version,
                        "financed_amount": terms.financed_amount,
                        "periodic_payment": terms.periodic_payment,
                        "number_of_payments": terms.number_of_payments,
                        "frequency": terms.frequency,
                        "first_payment_date": terms.first_payment_date,
                    }
                )

            log_action(logger, "info", f"Generated {len(payments)} payments",
                       loan_id=loan.id, operation="generate")
            return ScheduleResult(
                loan=loan,
                payments=payments,
                created_count=len(payments),
                periodic_payment=terms.periodic_payment,
                contract_version=contract.version,
            )

    def regenerate_schedule(self, loan_id: str, request: ScheduleRequest) -> ScheduleResult:
        """
        Replace the whole schedule of an unsigned contract.

        Deletes every row and recreates it from scratch; the contract version
        goes up by one.

        Raises:
            ContractAlreadyFinalized: If the contract is signed
            LifecycleTransitionError: If there is no contract yet
        """
        with self._operation(loan_id, "regenerate"):
            today = self.clock()
            loan = self._load_open_loan(loan_id)
            contract = self.store.get_contract(loan_id)
            if contract is None:
                raise LifecycleTransitionError(
                    "No contract to regenerate; generate the schedule first",
                    field="contract", rule="regenerate requires an existing contract"
                )
            if contract.is_signed:
                raise ContractAlreadyFinalized(
                    "Contract already signed; regeneration is not allowed",
                    field="contract_status", rule="contract must not be signed",
                    details={"contract_version": contract.version}
                )

            terms = self._build_terms(loan, request, today)
            payments = [ScheduledPayment.from_line(loan.id, line) for line in terms.schedule]
            existing_count = len(self.store.list_payments(loan.id))

            now = datetime.now(timezone.utc)
            contract.version += 1
            contract.status = ContractStatus.GENERATED
            contract.terms = terms
            contract.updated_at = now
            contract.expires_at = now + timedelta(days=self.policy.contract_expiry_days)

            expected_version = loan.version
            self._apply_terms(loan, terms, request.first_payment_date)

            with self.store.atomic():
                self.store.bulk_replace_payments(loan.id, payments)
                self.store.save_contract(contract)
                self.store.update_loan(loan, expected_version)
                self.audit_trail.log_event(
                    AuditEventType.SCHEDULE_REGENERATED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "contract_version": contract.version,
                        "financed_amount": terms.financed_amount,
                        "periodic_payment": terms.periodic_payment,
                        "replaced_payments": existing_count,
                    }
                )

            log_action(logger, "info", f"Regenerated schedule as contract version {contract.version}",
                       loan_id=loan.id, operation="regenerate")
            return ScheduleResult(
                loan=loan,
                payments=payments,
                created_count=len(payments),
                deleted_count=existing_count,
                periodic_payment=terms.periodic_payment,
                contract_version=contract.version,
            )

    # Modify

    def _plan_modification(self, loan: Loan, request: ModificationRequest, today: date):
        payments = self.store.list_payments(loan.id)
        contract = self.store.get_contract(loan.id)
        origination_fee = (contract.terms.origination_fee if contract
                           else self.policy.default_origination_fee)

        balance = calculate_modification_balance(
            loan.remaining_balance, payments, origination_fee,
            today=today, already_rebilled=loan.rebilled_failed_sequences
        )
        if not balance.outstanding_balance.is_positive():
            raise InvalidScheduleParameters(
                "Loan has no outstanding balance to re-amortize",
                field="remaining_balance", rule="must be greater than 0"
            )

        frequency = PaymentFrequency.parse(request.frequency or loan.frequency)
        count = request.number_of_payments
        if count is None:
            count = default_payment_count(frequency, loan.term_months, self.policy.payments_per_month)

        schedule = build_schedule(
            ScheduleParams(balance.outstanding_balance, loan.annual_interest_rate,
                           frequency, count, request.schedule_override),
            request.start_date,
            holidays=self.holidays,
            preferred_pay_dates=request.preferred_pay_dates,
            today=today
        )

        expected = request.expected_payment_amount
        if expected is not None and abs(expected.amount - schedule.periodic_payment.amount) > PAYMENT_AMOUNT_TOLERANCE:
            raise InvalidScheduleParameters(
                "Payment amount mismatch",
                field="payment_amount", rule="must match the computed payment within 0.01",
                details={"expected": expected.amount, "computed": schedule.periodic_payment.amount}
            )

        plan = ScheduleReconciler(today).reconcile(loan.id, schedule.lines, payments)
        return plan, schedule, balance

    def preview_modification(self, loan_id: str, request: ModificationRequest) -> SchedulePreview:
        """Counts and resulting balance of a modification, without writing anything"""
        with self._operation(loan_id, "modify_preview"):
            loan = self._load_open_loan(loan_id)
            plan, schedule, _ = self._plan_modification(loan, request, self.clock())
            return plan.preview(schedule.periodic_payment)

    def modify_schedule(self, loan_id: str, request: ModificationRequest) -> ScheduleResult:
        """
        Re-amortize the outstanding balance over a new schedule.

        Settled and other retained rows are preserved; open rows are updated,
        created or deleted according to the reconciliation plan.

        Args:
            loan_id: Loan to modify
            request: Target frequency, count, start date and optional override

        Returns:
            ScheduleResult with create/update/delete counts
        """
        with self._operation(loan_id, "modify"):
            today = self.clock()
            loan = self._load_open_loan(loan_id)
            plan, schedule, balance = self._plan_modification(loan, request, today)

            expected_version = loan.version
            rebilled = balance.failed_payment_fees.total_fee_amount
            loan.principal_amount = loan.principal_amount + rebilled
            loan.remaining_balance = plan.updated_remaining_balance
            loan.frequency = PaymentFrequency.parse(request.frequency or loan.frequency)
            loan.anchor_day = request.start_date.day
            loan.rebilled_failed_sequences = sorted(
                set(loan.rebilled_failed_sequences) | set(balance.rebilled_sequence_numbers)
            )

            with self.store.atomic():
                self.store.bulk_upsert_payments(loan.id, plan.to_create, plan.to_update, plan.to_delete_ids)
                self.store.update_loan(loan, expected_version)
                self.audit_trail.log_event(
                    AuditEventType.SCHEDULE_MODIFIED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata=self._modification_metadata(plan, schedule, balance)
                )

            log_action(logger, "info",
                       f"Modified schedule: {len(plan.to_create)} created, "
                       f"{len(plan.to_update)} updated, {len(plan.to_delete)} deleted",
                       loan_id=loan.id, operation="modify")
            return ScheduleResult(
                loan=loan,
                payments=self.store.list_payments(loan.id),
                created_count=len(plan.to_create),
                updated_count=len(plan.to_update),
                deleted_count=len(plan.to_delete),
                periodic_payment=schedule.periodic_payment,
            )

    @staticmethod
    def _modification_metadata(plan: ReconciliationPlan, schedule: AmortizationSchedule,
                               balance: ModificationBalance) -> Dict[str, Any]:
        return {
            "previous_remaining_balance": balance.current_remaining_balance,
            "failed_payment_charges": balance.failed_payment_fees.total_fee_amount,
            "rebilled_sequence_numbers": balance.rebilled_sequence_numbers,
            "new_remaining_balance": plan.updated_remaining_balance,
            "periodic_payment": schedule.periodic_payment,
            "anchor_sequence_number": plan.anchor_sequence_number,
            "created": len(plan.to_create),
            "updated": len(plan.to_update),
            "deleted": len(plan.to_delete),
        }

    # Defer

    def defer_payment(
        self,
        loan_id: str,
        sequence_number: int,
        fee_mode: DeferralFeeMode = DeferralFeeMode.NONE,
        fee_amount: Optional[Money] = None
    ) -> DeferralResult:
        """
        Move one pending payment to the end of the schedule.

        The original row is zeroed and marked deferred; a new pending row is
        appended after the last payment carrying the original principal and
        interest, plus the fee when ``fee_mode`` is END.

        Args:
            loan_id: Loan owning the payment
            sequence_number: Payment to defer
            fee_mode: Where the deferral fee is charged
            fee_amount: Fee to charge, defaults to the contract or policy deferral fee

        Returns:
            DeferralResult

        Raises:
            PaymentNotFound: If the loan has no such payment
            LifecycleTransitionError: If the payment is not pending
        """
        with self._operation(loan_id, "defer"):
            today = self.clock()
            fee_mode = DeferralFeeMode(fee_mode)
            loan = self._load_open_loan(loan_id)
            payments = self.store.list_payments(loan.id)

            target = next((p for p in payments if p.sequence_number == sequence_number), None)
            if target is None:
                raise PaymentNotFound(f"Payment {sequence_number} of loan {loan_id} not found")
            if target.status != PaymentStatus.PENDING:
                raise LifecycleTransitionError(
                    "Only pending payments can be deferred",
                    field="status", rule="payment must be pending",
                    details={"sequence_number": sequence_number, "status": target.status.value}
                )

            if fee_amount is None and fee_mode != DeferralFeeMode.NONE:
                contract = self.store.get_contract(loan.id)
                fee_amount = contract.terms.deferral_fee if contract else self.policy.default_deferral_fee
            charge = resolve_deferral_fee(target.amount, fee_amount, fee_mode)

            now = datetime.now(timezone.utc)
            zero = Money.zero(loan.currency)
            carried = target.principal

            deferred = replace(
                target,
                amount=zero,
                principal=zero,
                interest=zero,
                remaining_balance=target.remaining_balance + carried,
                status=PaymentStatus.DEFERRED,
                notes=target.notes + [
                    f"Payment deferred. Original amount: {target.amount.amount}, "
                    f"deferral fee: {charge.fee_amount.amount}."
                ],
                updated_at=now,
            )
            shifted = [
                replace(p, remaining_balance=p.remaining_balance + carried, updated_at=now)
                for p in payments
                if p.sequence_number > sequence_number and p.is_engine_writable
            ]
            appended = ScheduledPayment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                sequence_number=payments[-1].sequence_number + 1,
                due_date=next_due_date(
                    loan.frequency, max(p.due_date for p in payments), self.holidays, today,
                    anchor_day=loan.anchor_day
                ),
                amount=charge.payment_amount,
                principal=target.principal,
                interest=target.interest,
                remaining_balance=zero,
                fee_amount=charge.fee_amount if fee_mode == DeferralFeeMode.END else zero,
                notes=[f"Deferred from payment {sequence_number}"],
            )

            expected_version = loan.version
            loan.remaining_balance = loan.remaining_balance + charge.balance_increase

            with self.store.atomic():
                self.store.bulk_upsert_payments(loan.id, [appended], [deferred] + shifted, [])
                self.store.update_loan(loan, expected_version)
                self.audit_trail.log_event(
                    AuditEventType.PAYMENT_DEFERRED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "sequence_number": sequence_number,
                        "appended_sequence_number": appended.sequence_number,
                        "original_amount": target.amount,
                        "fee_mode": fee_mode,
                        "fee_amount": charge.fee_amount,
                        "appended_due_date": appended.due_date,
                    }
                )

            log_action(logger, "info",
                       f"Deferred payment {sequence_number} to {appended.sequence_number}",
                       loan_id=loan.id, operation="defer")
            return DeferralResult(loan=loan, deferred_payment=deferred,
                                  appended_payment=appended, charge=charge)

    # Stop

    def stop_remaining_payments(self, loan_id: str) -> StopResult:
        """
        Cancel every future pending, scheduled or failed payment.

        Past and settled rows are left untouched.

        Raises:
            LifecycleTransitionError: If there is nothing left to stop
        """
        with self._operation(loan_id, "stop"):
            today = self.clock()
            loan = self._load_open_loan(loan_id)
            stoppable = {PaymentStatus.PENDING, PaymentStatus.SCHEDULED, PaymentStatus.FAILED}
            targets = [
                p for p in self.store.list_payments(loan.id)
                if p.status in stoppable and p.due_date >= today
            ]
            if not targets:
                raise LifecycleTransitionError(
                    "No future payments to stop",
                    field="payments", rule="loan must have future open payments"
                )

            now = datetime.now(timezone.utc)
            cancelled = [
                replace(p, status=PaymentStatus.CANCELLED,
                        notes=p.notes + [f"Payment stopped on {today.isoformat()}"],
                        updated_at=now)
                for p in targets
            ]

            with self.store.atomic():
                self.store.bulk_upsert_payments(loan.id, [], cancelled, [])
                # Row changes still advance the loan version
                self.store.update_loan(loan, loan.version)
                self.audit_trail.log_event(
                    AuditEventType.PAYMENTS_STOPPED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"sequence_numbers": [p.sequence_number for p in cancelled]}
                )

            log_action(logger, "info", f"Stopped {len(cancelled)} payments",
                       loan_id=loan.id, operation="stop")
            return StopResult(loan=loan, cancelled_payments=cancelled)

    def get_schedule(self, loan_id: str) -> List[ScheduledPayment]:
        """Persisted rows of a loan ordered by sequence number"""
        self.store.require_loan(loan_id)
        return self.store.list_payments(loan_id)
