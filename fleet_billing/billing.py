"""
Billing Cycle Orchestrator Module

Drives the ledger over time: the generation pass that materializes the next
quota of every active financing, the overdue pass that moves unpaid past-due
quotas into penalty state, and the payment event. Configuration is read once
per operation and handed to the pure calculators as explicit parameters.

Every read-compute-write cycle on a financing runs under the repository's
per-financing lock and ends in a version-checked financing update; a
conflicting cycle is retried once with fresh state.
"""

import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from .allocation import allocate
from .audit import AuditEventType, AuditTrail
from .config import BillingConfig, get_config
from .currency import ZERO, AmountLike, Currency, round_money, to_decimal
from .exceptions import (
    BillingError, ConcurrencyConflictError, FinancingNotFoundError,
    InvalidFinancingStatus, QuotaNotFoundError, ValidationError
)
from .financing import Financing, FinancingStatus
from .logging_config import get_logger, log_action
from .quotas import (
    OPEN_STATUSES, QuotaMaterialized, QuotaRecord, QuotaStatus, Reconciliation,
    check_transition, covered_quota_numbers, fee_due_on, mark_overdue,
    next_quota_number, reconcile
)
from .repository import BillingRepository
from . import schedule

logger = get_logger("billing")

T = TypeVar("T")


@dataclass
class GenerationItem:
    """Outcome of the generation pass for one financing"""
    financing_id: str
    outcome: str  # created, covered, exists, schedule_complete, not_started, inactive, failed
    quota_number: Optional[int] = None
    quota_id: Optional[str] = None
    credit_applied: Decimal = ZERO
    error: Optional[str] = None


@dataclass
class GenerationReport:
    simulation_date: date
    processed: int = 0
    created: int = 0
    covered: int = 0
    skipped: int = 0
    failed: int = 0
    items: List[GenerationItem] = field(default_factory=list)


@dataclass
class OverdueItem:
    """A quota moved into (or refreshed in) overdue state"""
    financing_id: str
    quota_id: str
    quota_number: int
    days_late: int
    late_fee: Decimal


@dataclass
class OverdueReport:
    reference_date: date
    mode: str
    dry_run: bool = False
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    total_penalty: Decimal = ZERO
    items: List[OverdueItem] = field(default_factory=list)


@dataclass
class PaymentResult:
    financing_id: str
    quota_number: int
    receipt_number: str
    amount: Decimal
    late_fee: Decimal
    days_late: int
    quotas_covered: int
    new_credit: Decimal
    quota_status: QuotaStatus
    financing_status: FinancingStatus
    paid_quotas: int
    current_balance: Decimal


OVERDUE_MODES = ("normal", "update_existing")


class BillingCycleOrchestrator:
    """
    Billing cycle orchestration over a BillingRepository
    """

    def __init__(self, repository: BillingRepository, config: Optional[BillingConfig] = None,
                 audit_trail: Optional[AuditTrail] = None):
        self.repository = repository
        self.config = config or get_config()
        self.audit_trail = audit_trail

    # Financing lifecycle

    def create_financing(
        self,
        total_amount: AmountLike,
        payment_frequency: Any,
        start_date: date,
        financing_months: Optional[int] = None,
        total_quotas: Optional[int] = None,
        late_fee_percentage: Optional[AmountLike] = None,
        max_late_quotas_allowed: Optional[int] = None,
        currency: Optional[Currency] = None,
        vehicle_id: Optional[str] = None,
        client_id: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Financing:
        """
        Sign a financing contract and derive its schedule

        Args:
            total_amount: Principal financed
            payment_frequency: weekly, biweekly or monthly
            start_date: Contract start; quota 1 falls one interval later
            financing_months: Term in months (configured default when omitted)
            total_quotas: Explicit quota count overriding the derived one
            late_fee_percentage: Percent per day late (configured default when omitted)
            max_late_quotas_allowed: Overdue quotas tolerated before delinquency
            currency: Contract currency (configured default when omitted)

        Returns:
            Created Financing

        Raises:
            ValidationError: If any term is invalid
        """
        frequency = schedule.PaymentFrequency.parse(payment_frequency)
        currency = currency or Currency[self.config.currency]
        months = financing_months if financing_months is not None else self.config.default_financing_months

        amount = round_money(to_decimal(total_amount), currency)
        if amount <= ZERO:
            raise ValidationError(f"Total amount must be positive, got {amount}")

        if total_quotas is None:
            count = schedule.total_quotas(months, frequency)
        elif isinstance(total_quotas, bool) or not isinstance(total_quotas, int) or total_quotas < 0:
            raise ValidationError(f"Total quotas must be a non-negative integer, got {total_quotas!r}")
        else:
            count = total_quotas

        percentage = (to_decimal(late_fee_percentage) if late_fee_percentage is not None
                      else self.config.late_fee_percentage)
        if percentage < ZERO:
            raise ValidationError(f"Late fee percentage cannot be negative: {percentage}")

        max_late = (max_late_quotas_allowed if max_late_quotas_allowed is not None
                    else self.config.default_max_late_quotas)
        if max_late < 0:
            raise ValidationError(f"Max late quotas cannot be negative: {max_late}")

        now = datetime.now(timezone.utc)
        prefix = f"FIN-{start_date:%Y%m}"
        financing = Financing(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            financing_number=f"{prefix}-{self.repository.next_receipt_sequence(prefix):05d}",
            total_amount=amount,
            financing_months=months,
            payment_frequency=frequency,
            start_date=start_date,
            total_quotas=count,
            quota_amount=schedule.quota_amount(amount, count, currency),
            late_fee_percentage=percentage,
            max_late_quotas_allowed=max_late,
            currency=currency,
            next_due_date=schedule.next_due_date(start_date, frequency, 1) if count else None,
            vehicle_id=vehicle_id,
            client_id=client_id,
            notes=notes
        )
        self.repository.create_financing(financing)

        self._audit(AuditEventType.FINANCING_CREATED, "financing", financing.id, {
            "financing_number": financing.financing_number,
            "total_amount": financing.total_amount,
            "total_quotas": financing.total_quotas,
            "quota_amount": financing.quota_amount,
            "payment_frequency": financing.payment_frequency
        })
        log_action(logger, "info", "Financing created", action="create_financing",
                   financing_id=financing.id,
                   extra={"total_quotas": count, "quota_amount": str(financing.quota_amount)})
        return financing

    def get_financing(self, financing_id: str) -> Financing:
        return self._require_financing(financing_id)

    def list_quotas(self, financing_id: str) -> List[QuotaRecord]:
        self._require_financing(financing_id)
        return self.repository.list_quotas(financing_id)

    def set_financing_status(self, financing_id: str, status: Any) -> Financing:
        """
        Admin override of a financing's status (close, reopen).

        Raises:
            InvalidFinancingStatus: If the status is unknown, or if it would
                break "completed exactly when the balance is settled"
        """
        try:
            target = status if isinstance(status, FinancingStatus) else FinancingStatus(status)
        except ValueError:
            raise InvalidFinancingStatus(f"Unknown financing status: {status!r}")

        def unit_of_work() -> Financing:
            financing = self._require_financing(financing_id)
            settled = financing.current_balance <= ZERO
            if target == FinancingStatus.COMPLETED and not settled:
                raise InvalidFinancingStatus(
                    f"Financing {financing_id} still owes {financing.current_balance}"
                )
            if target != FinancingStatus.COMPLETED and settled:
                raise InvalidFinancingStatus(f"Financing {financing_id} is fully paid")

            updated = self.repository.update_financing(
                financing_id, {"status": target}, expected_version=financing.version
            )
            self._audit(AuditEventType.FINANCING_STATUS_CHANGED, "financing", financing_id, {
                "old_status": financing.status, "new_status": target
            })
            return updated

        return self._serialized(financing_id, unit_of_work)

    def delete_quota(self, quota_id: str) -> Financing:
        """
        Delete a quota record and reverse its contribution to the financing

        Returns:
            The updated Financing
        """
        record = self.repository.get_quota(quota_id)
        if record is None:
            raise QuotaNotFoundError(f"Quota record {quota_id} not found")

        def unit_of_work() -> Financing:
            current = self.repository.get_quota(quota_id)
            if current is None:
                raise QuotaNotFoundError(f"Quota record {quota_id} not found")
            financing = self._require_financing(current.financing_id)

            total_paid = max(ZERO, financing.total_paid - current.amount_paid)
            total_late_fees = max(ZERO, financing.total_late_fees - current.fees_capitalized)
            balance = financing.outstanding_balance(total_paid, total_late_fees)
            status = financing.status
            if status == FinancingStatus.COMPLETED and balance > ZERO:
                status = FinancingStatus.ACTIVE

            remaining = [r for r in self.repository.list_quotas(financing.id) if r.id != quota_id]
            fields = {
                "paid_quotas": max(0, financing.paid_quotas - current.counted_quotas),
                "total_paid": total_paid,
                "total_late_fees": total_late_fees,
                "current_balance": balance,
                "carried_credit": max(ZERO, financing.carried_credit - current.carried_credit),
                "status": status,
                "next_due_date": self._next_due(financing, remaining),
            }
            with self.repository.atomic():
                updated = self.repository.update_financing(
                    financing.id, fields, expected_version=financing.version
                )
                self.repository.delete_quota(quota_id)

            self._audit(AuditEventType.QUOTA_DELETED, "quota", quota_id, {
                "financing_id": financing.id,
                "quota_number": current.quota_number,
                "status": current.status,
                "amount_paid": current.amount_paid
            })
            log_action(logger, "info", "Quota deleted", action="delete_quota",
                       financing_id=financing.id, quota_number=current.quota_number)
            return updated

        return self._serialized(record.financing_id, unit_of_work)

    def verify_payment(self, quota_id: str, verified_by: Optional[str] = None,
                       confirmation_number: Optional[str] = None,
                       comments: Optional[str] = None,
                       verified_at: Optional[datetime] = None) -> QuotaRecord:
        """
        Confirm a quota's payment against the bank statement.

        Verifying an already verified quota returns it unchanged.

        Raises:
            QuotaNotFoundError: If the quota record does not exist
            ValidationError: If no payment has been applied to the quota
        """
        record = self.repository.get_quota(quota_id)
        if record is None:
            raise QuotaNotFoundError(f"Quota record {quota_id} not found")

        with self.repository.financing_lock(record.financing_id):
            record = self.repository.get_quota(quota_id)
            if record is None:
                raise QuotaNotFoundError(f"Quota record {quota_id} not found")
            if record.verified_in_bank:
                return record
            if record.payment_date is None:
                raise ValidationError(f"Quota {record.quota_number} has no payment to verify")

            fields: Dict[str, Any] = {
                "verified_in_bank": True,
                "verified_by": verified_by,
                "verified_at": verified_at or datetime.now(timezone.utc),
            }
            if confirmation_number is not None:
                fields["confirmation_number"] = confirmation_number
            if comments is not None:
                fields["comments"] = comments
            updated = self.repository.update_quota(quota_id, fields)

        self._audit(AuditEventType.PAYMENT_VERIFIED, "quota", quota_id, {
            "financing_id": updated.financing_id,
            "quota_number": updated.quota_number,
            "receipt_number": updated.receipt_number,
            "confirmation_number": updated.confirmation_number,
            "verified_by": verified_by
        })
        log_action(logger, "info", "Payment verified", action="verify_payment",
                   financing_id=updated.financing_id, quota_number=updated.quota_number,
                   extra={"verified_by": verified_by})
        return updated

    # Generation pass

    def run_generation_pass(self, simulation_date: date,
                            period: Optional[int] = None) -> GenerationReport:
        """
        Materialize the current period's quota for every active financing

        Args:
            simulation_date: The simulated "today"
            period: Quota number to generate; derived per financing from the
                simulation date when omitted

        Returns:
            GenerationReport with per-financing outcomes
        """
        if period is not None and (isinstance(period, bool) or not isinstance(period, int) or period < 1):
            raise ValidationError(f"Period must be a positive quota number, got {period!r}")

        report = GenerationReport(simulation_date=simulation_date)
        financing_ids = [f.id for f in self.repository.list_active_financings()]

        def generate(financing_id: str) -> GenerationItem:
            try:
                return self._serialized(
                    financing_id,
                    lambda: self._generate_for(financing_id, simulation_date, period)
                )
            except Exception as e:
                logger.exception("Generation failed for financing %s", financing_id)
                return GenerationItem(financing_id=financing_id, outcome="failed",
                                      quota_number=period, error=str(e))

        for item in self._fan_out(financing_ids, generate):
            report.items.append(item)
            if item.outcome == "failed":
                report.failed += 1
                continue
            report.processed += 1
            if item.outcome == "created":
                report.created += 1
            elif item.outcome == "covered":
                report.covered += 1
            else:
                report.skipped += 1

        self._audit(AuditEventType.GENERATION_PASS_COMPLETED, "batch", simulation_date.isoformat(), {
            "processed": report.processed, "created": report.created,
            "covered": report.covered, "failed": report.failed
        })
        log_action(logger, "info", "Generation pass completed", action="generation_pass",
                   extra={"simulation_date": simulation_date.isoformat(),
                          "processed": report.processed, "created": report.created,
                          "covered": report.covered, "skipped": report.skipped,
                          "failed": report.failed})
        return report

    def _generate_for(self, financing_id: str, simulation_date: date,
                      period: Optional[int]) -> GenerationItem:
        financing = self._require_financing(financing_id)
        if not financing.is_active:
            return GenerationItem(financing_id=financing_id, outcome="inactive")

        number = period if period is not None else self._period_for(financing, simulation_date)
        item = GenerationItem(financing_id=financing_id, outcome="exists", quota_number=number)
        if number < 1:
            item.outcome = "not_started"
            return item
        if number > financing.total_quotas:
            item.outcome = "schedule_complete"
            return item

        records = self.repository.list_quotas(financing_id)
        if any(r.quota_number == number for r in records):
            return item

        record, recon = self._materialize(financing, number, records, simulation_date, simulated=True)
        item.outcome = "covered" if record is None else "created"
        item.quota_id = record.id if record else None
        item.credit_applied = recon.credit_applied
        return item

    def _period_for(self, financing: Financing, on_date: date) -> int:
        elapsed = (on_date - financing.start_date).days
        if elapsed < 0:
            return 0
        return elapsed // schedule.days_interval(financing.payment_frequency) + 1

    def _materialize(self, financing: Financing, number: int, records: List[QuotaRecord],
                     on_date: date, simulated: bool):
        """
        Create quota ``number`` (unless an advance range covers it) and apply
        reconciliation. Returns (new record or None, Reconciliation).
        """
        face = financing.quota_face(number)
        event = QuotaMaterialized(financing.id, number, face)
        try:
            recon = reconcile(event, records, financing.carried_credit)
        except BillingError:
            # Left unconverted; a later pass reconciles it
            logger.exception("Reconciliation failed for financing %s quota %s",
                             financing.id, number)
            recon = Reconciliation(covered=False, remaining_balance=face)

        updates = dict(recon.record_updates)
        record = None
        settled = recon.settled
        if not recon.covered:
            now = datetime.now(timezone.utc)
            record = QuotaRecord(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                financing_id=financing.id,
                quota_number=number,
                amount=face,
                due_date=schedule.next_due_date(financing.start_date, financing.payment_frequency, number),
                status=recon.status,
                remaining_balance=recon.remaining_balance,
                counted_quotas=1 if settled else 0,
                receipt_number=(f"SIM-{on_date:%Y%m%d}-{financing.financing_number}-{number}"
                                if simulated else None),
                is_simulated=simulated
            )

        projected = [replace(r, **updates[r.id]) if r.id in updates else r for r in records]
        if record:
            projected.append(record)

        fields: Dict[str, Any] = {
            "last_quota_number": max(financing.last_quota_number, number),
            "next_due_date": self._next_due(financing, projected),
        }
        if recon.credit_applied > ZERO:
            fields["carried_credit"] = financing.carried_credit - recon.credit_applied
        if settled:
            fields["paid_quotas"] = min(financing.total_quotas, financing.paid_quotas + 1)

        with self.repository.atomic():
            self.repository.update_financing(financing.id, fields, expected_version=financing.version)
            if record:
                self.repository.create_quota(record)

        for record_id, changes in updates.items():
            try:
                self.repository.update_quota(record_id, changes)
            except Exception:
                logger.exception("Could not reconcile quota record %s", record_id)

        if record:
            self._audit(AuditEventType.QUOTA_GENERATED, "quota", record.id, {
                "financing_id": financing.id, "quota_number": number,
                "due_date": record.due_date, "status": record.status,
                "simulated": simulated
            })
        if updates:
            self._audit(AuditEventType.ADVANCE_RECONCILED, "financing", financing.id, {
                "quota_number": number,
                "covered": recon.covered,
                "credit_applied": recon.credit_applied,
                "records": sorted(updates)
            })
        log_action(logger, "debug", "Quota materialized", action="materialize_quota",
                   financing_id=financing.id, quota_number=number,
                   extra={"covered": recon.covered, "credit_applied": str(recon.credit_applied)})
        return record, recon

    # Overdue pass

    def run_overdue_pass(self, reference_date: date, mode: str = "normal",
                         dry_run: bool = False) -> OverdueReport:
        """
        Move unpaid quotas due on or before ``reference_date`` into overdue
        and recompute their fee from the due date.

        Args:
            reference_date: The simulated "today"
            mode: "normal" handles pending and overdue quotas,
                "update_existing" only refreshes quotas already overdue
            dry_run: Compute the report without writing

        Returns:
            OverdueReport; financing aggregates are never changed here
        """
        if mode not in OVERDUE_MODES:
            raise ValidationError(f"Unknown overdue mode: {mode!r}")

        statuses = OPEN_STATUSES if mode == "normal" else (QuotaStatus.OVERDUE,)
        due = self.repository.list_quotas_due(statuses, reference_date)

        by_financing: Dict[str, List[QuotaRecord]] = {}
        for record in due:
            by_financing.setdefault(record.financing_id, []).append(record)

        default_percentage = self.config.late_fee_percentage

        def process(financing_id: str) -> OverdueReport:
            partial = OverdueReport(reference_date=reference_date, mode=mode, dry_run=dry_run)
            try:
                with self.repository.financing_lock(financing_id):
                    self._mark_financing_overdue(financing_id, by_financing[financing_id],
                                                 reference_date, default_percentage,
                                                 dry_run, partial)
            except Exception:
                logger.exception("Overdue processing failed for financing %s", financing_id)
                handled = partial.processed + partial.skipped + partial.failed
                partial.failed += len(by_financing[financing_id]) - handled
            return partial

        report = OverdueReport(reference_date=reference_date, mode=mode, dry_run=dry_run)
        for partial in self._fan_out(list(by_financing), process):
            report.processed += partial.processed
            report.skipped += partial.skipped
            report.failed += partial.failed
            report.total_penalty += partial.total_penalty
            report.items.extend(partial.items)

        if not dry_run:
            self._audit(AuditEventType.OVERDUE_PASS_COMPLETED, "batch", reference_date.isoformat(), {
                "mode": mode, "processed": report.processed,
                "failed": report.failed, "total_penalty": report.total_penalty
            })
        log_action(logger, "info", "Overdue pass completed", action="overdue_pass",
                   extra={"reference_date": reference_date.isoformat(), "mode": mode,
                          "dry_run": dry_run, "processed": report.processed,
                          "skipped": report.skipped, "failed": report.failed,
                          "total_penalty": str(report.total_penalty)})
        return report

    def _mark_financing_overdue(self, financing_id: str, candidates: List[QuotaRecord],
                                reference_date: date, default_percentage: Decimal,
                                dry_run: bool, report: OverdueReport) -> None:
        financing = self._require_financing(financing_id)
        percentage = financing.late_fee_percentage
        if percentage is None:
            percentage = default_percentage

        covering = [r for r in self.repository.list_quotas(financing_id) if r.quotas_covered > 1]
        covered = covered_quota_numbers(covering)

        for candidate in candidates:
            try:
                # Re-read: a payment may have settled it since the pass started
                record = self.repository.get_quota(candidate.id)
                if record is None or record.status not in OPEN_STATUSES or record.quota_number in covered:
                    report.skipped += 1
                    continue

                updated = mark_overdue(record, reference_date, percentage)
                if not dry_run:
                    self.repository.update_quota(record.id, {
                        "status": updated.status,
                        "days_late": updated.days_late,
                        "late_fee_amount": updated.late_fee_amount,
                    })
                    self._audit(AuditEventType.QUOTA_OVERDUE, "quota", record.id, {
                        "financing_id": financing_id,
                        "quota_number": record.quota_number,
                        "days_late": updated.days_late,
                        "late_fee_amount": updated.late_fee_amount
                    })

                report.processed += 1
                report.total_penalty += updated.late_fee_amount
                report.items.append(OverdueItem(
                    financing_id=financing_id,
                    quota_id=record.id,
                    quota_number=record.quota_number,
                    days_late=updated.days_late,
                    late_fee=updated.late_fee_amount
                ))
            except Exception:
                logger.exception("Could not mark quota %s overdue", candidate.id)
                report.failed += 1

    # Payment event

    def apply_payment(self, financing_id: str, quota_number: int, amount: AmountLike,
                      payment_date: date) -> PaymentResult:
        """
        Apply a real payment against a quota

        The quota's amount due is its remaining face plus the late fee accrued
        up to ``payment_date``. Money beyond the amount due pays the following
        quotas in order, each with its own late fee; what is left stays as
        carried credit on the quota.

        Args:
            financing_id: Financing being paid
            quota_number: Quota the payment targets (materialized if needed)
            amount: Payment amount
            payment_date: Date the money was received

        Returns:
            PaymentResult

        Raises:
            ValidationError: If the amount is not positive or the quota is already settled
            FinancingNotFoundError: If the financing does not exist
            ConcurrencyConflictError: If the financing keeps changing underneath
        """
        payment = to_decimal(amount)
        if payment <= ZERO:
            raise ValidationError(f"Payment amount must be positive, got {payment}")

        return self._serialized(
            financing_id,
            lambda: self._apply_payment(financing_id, quota_number, payment, payment_date)
        )

    def _apply_payment(self, financing_id: str, quota_number: int, payment: Decimal,
                       payment_date: date) -> PaymentResult:
        financing = self._require_financing(financing_id)
        if financing.is_completed:
            raise ValidationError(f"Financing {financing_id} is already completed")
        if not 1 <= quota_number <= financing.total_quotas:
            raise ValidationError(
                f"Quota {quota_number} is outside the schedule (1..{financing.total_quotas})"
            )

        records = self.repository.list_quotas(financing_id)
        quota = next((r for r in records if r.quota_number == quota_number), None)
        if quota is None:
            quota = self._materialize_for_payment(financing, quota_number, records, payment_date)
            financing = self._require_financing(financing_id)
            records = self.repository.list_quotas(financing_id)
        if quota.is_fully_allocated:
            raise ValidationError(f"Quota {quota_number} is already {quota.status.value}")

        percentage = financing.late_fee_percentage
        fee, late_days = fee_due_on(quota, payment_date, percentage)
        amount_due = quota.remaining_balance + fee
        pool = payment + financing.carried_credit

        fees_charged = fee
        range_updates: Dict[str, Dict[str, Any]] = {}
        if allocate(payment, amount_due, financing.carried_credit).is_partial:
            covered = 0
            new_credit = ZERO
            remaining = amount_due - pool
            target = QuotaStatus.PARTIALLY_PAID
        else:
            extra, new_credit, range_updates, range_fees = self._cover_following(
                financing, quota_number, records, pool - amount_due, payment_date
            )
            fees_charged += range_fees
            covered = 1 + extra
            remaining = ZERO
            target = QuotaStatus.ADVANCE_PAID if extra > 0 or new_credit > ZERO else QuotaStatus.PAID
        check_transition(quota.status, target)

        capitalized = quota.fees_capitalized + fee
        updates: Dict[str, Dict[str, Any]] = {
            quota.id: {
                "status": target,
                "remaining_balance": remaining,
                "late_fee_amount": capitalized,
                "fees_capitalized": capitalized,
                "days_late": late_days if late_days else quota.days_late,
                "quotas_covered": covered if covered else quota.quotas_covered,
                "carried_credit": new_credit,
                "counted_quotas": quota.counted_quotas + covered,
                "amount_paid": quota.amount_paid + payment,
                "payment_date": payment_date,
            }
        }
        updates.update(range_updates)
        receipted = set(updates)

        for record in records:
            if record.id in updates:
                continue
            if record.carried_credit > ZERO:
                # The pool already drew on this credit
                drained: Dict[str, Any] = {"carried_credit": ZERO}
                if record.status == QuotaStatus.PARTIALLY_PAID or record.quotas_covered == 1:
                    drained["status"] = check_transition(record.status, QuotaStatus.PAID)
                updates[record.id] = drained

        projected = [replace(r, **updates[r.id]) if r.id in updates else r for r in records]
        overdue_count = sum(1 for r in projected if r.status == QuotaStatus.OVERDUE)

        total_paid = financing.total_paid + payment
        total_late_fees = financing.total_late_fees + fees_charged
        balance = financing.outstanding_balance(total_paid, total_late_fees)
        paid_quotas = min(financing.total_quotas, financing.paid_quotas + covered)
        status = self._status_after_payment(financing, balance, overdue_count)

        with self.repository.atomic():
            updated = self.repository.update_financing(financing_id, {
                "paid_quotas": paid_quotas,
                "total_paid": total_paid,
                "total_late_fees": total_late_fees,
                "current_balance": balance,
                "carried_credit": new_credit,
                "status": status,
                "next_due_date": self._next_due(financing, projected),
            }, expected_version=financing.version)
            # Numbered only once the version check passed
            receipt_prefix = f"REC-{payment_date:%Y%m}"
            receipt_number = f"{receipt_prefix}-{self.repository.next_receipt_sequence(receipt_prefix):05d}"
            for record_id, changes in updates.items():
                if record_id in receipted:
                    changes = dict(changes, receipt_number=receipt_number)
                self.repository.update_quota(record_id, changes)

        self._audit(AuditEventType.PAYMENT_APPLIED, "financing", financing_id, {
            "quota_number": quota_number,
            "receipt_number": receipt_number,
            "amount": payment,
            "late_fee": fees_charged,
            "quotas_covered": covered,
            "new_credit": new_credit,
            "current_balance": balance
        })
        if status != financing.status:
            self._audit(AuditEventType.FINANCING_STATUS_CHANGED, "financing", financing_id, {
                "old_status": financing.status, "new_status": status
            })
        log_action(logger, "info", "Payment applied", action="apply_payment",
                   financing_id=financing_id, quota_number=quota_number,
                   extra={"amount": str(payment), "late_fee": str(fees_charged),
                          "quotas_covered": covered, "new_credit": str(new_credit),
                          "status": status.value})

        return PaymentResult(
            financing_id=financing_id,
            quota_number=quota_number,
            receipt_number=receipt_number,
            amount=payment,
            late_fee=fees_charged,
            days_late=late_days,
            quotas_covered=covered,
            new_credit=new_credit,
            quota_status=target,
            financing_status=updated.status,
            paid_quotas=updated.paid_quotas,
            current_balance=updated.current_balance
        )

    def _cover_following(self, financing: Financing, quota_number: int,
                         records: List[QuotaRecord], leftover: Decimal,
                         payment_date: date):
        """
        Spend the leftover of a settling payment on the quotas after
        ``quota_number``, in order.

        A materialized quota costs its remaining balance plus any late fee
        due on ``payment_date``; one the leftover cannot fully fund is left
        partially paid with that fee capitalized. Quotas not yet generated
        cost their face amount. Stops at the first quota already settled.

        Returns:
            (quotas fully covered, unspent credit, quota updates, fees charged)
        """
        by_number = {r.quota_number: r for r in records}
        percentage = financing.late_fee_percentage
        updates: Dict[str, Dict[str, Any]] = {}
        fees = ZERO
        extra = 0

        for number in range(quota_number + 1, financing.total_quotas + 1):
            record = by_number.get(number)
            if record is None:
                face = financing.quota_face(number)
                if leftover < face:
                    break
                leftover -= face
                extra += 1
                continue
            if record.is_fully_allocated or leftover <= ZERO:
                break

            fee, late_days = fee_due_on(record, payment_date, percentage)
            due = record.remaining_balance + fee
            funded = min(leftover, due)
            capitalized = record.fees_capitalized + fee
            changes: Dict[str, Any] = {
                "remaining_balance": due - funded,
                "late_fee_amount": capitalized,
                "fees_capitalized": capitalized,
                "payment_date": payment_date,
            }
            if late_days:
                changes["days_late"] = late_days
            fees += fee
            leftover -= funded

            if funded < due:
                changes["status"] = check_transition(record.status, QuotaStatus.PARTIALLY_PAID)
                updates[record.id] = changes
                break
            changes["status"] = check_transition(record.status, QuotaStatus.PAID)
            updates[record.id] = changes
            extra += 1

        return extra, leftover, updates, fees

    def _materialize_for_payment(self, financing: Financing, number: int,
                                 records: List[QuotaRecord], payment_date: date) -> QuotaRecord:
        if number in covered_quota_numbers(records):
            raise ValidationError(f"Quota {number} is already covered by an earlier payment")
        record, _ = self._materialize(financing, number, records, payment_date, simulated=False)
        if record is None:
            raise ValidationError(f"Quota {number} is already covered by an advance payment")
        return record

    def _status_after_payment(self, financing: Financing, balance: Decimal,
                              overdue_count: int) -> FinancingStatus:
        if balance <= ZERO:
            return FinancingStatus.COMPLETED
        if financing.status not in (FinancingStatus.ACTIVE, FinancingStatus.DELINQUENT):
            return financing.status
        if overdue_count > financing.max_late_quotas_allowed:
            return FinancingStatus.DELINQUENT
        return FinancingStatus.ACTIVE

    # Reporting

    def summary(self) -> Dict[str, Any]:
        """Portfolio totals across all financings"""
        financings = self.repository.list_financings()
        by_status = {status.value: 0 for status in FinancingStatus}
        quotas_by_status = {status.value: 0 for status in QuotaStatus}
        outstanding = total_paid = total_late_fees = ZERO

        for financing in financings:
            by_status[financing.status.value] += 1
            outstanding += financing.current_balance
            total_paid += financing.total_paid
            total_late_fees += financing.total_late_fees
            for record in self.repository.list_quotas(financing.id):
                quotas_by_status[record.status.value] += 1

        return {
            "financings": len(financings),
            "financings_by_status": by_status,
            "quotas_by_status": quotas_by_status,
            "outstanding_balance": outstanding,
            "total_paid": total_paid,
            "total_late_fees": total_late_fees,
        }

    # Helpers

    def _require_financing(self, financing_id: str) -> Financing:
        financing = self.repository.get_financing(financing_id)
        if financing is None:
            raise FinancingNotFoundError(f"Financing {financing_id} not found")
        return financing

    def _next_due(self, financing: Financing, records: Sequence[QuotaRecord]) -> Optional[date]:
        number = next_quota_number(records)
        if number > financing.total_quotas:
            return None
        return schedule.next_due_date(financing.start_date, financing.payment_frequency, number)

    def _serialized(self, financing_id: str, unit_of_work: Callable[[], T]) -> T:
        """Run under the financing lock; a version conflict is retried once"""
        with self.repository.financing_lock(financing_id):
            try:
                return unit_of_work()
            except ConcurrencyConflictError as e:
                log_action(logger, "warning", "Concurrent update, retrying with fresh state",
                           action="retry", financing_id=financing_id,
                           extra={"expected_version": e.expected_version,
                                  "actual_version": e.actual_version})
                return unit_of_work()

    def _fan_out(self, keys: List[str], work: Callable[[str], T]) -> List[T]:
        workers = self.config.batch_workers
        if workers <= 1 or len(keys) <= 1:
            return [work(key) for key in keys]
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(work, keys))

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               metadata: Dict[str, Any]) -> None:
        if self.audit_trail is None or not self.config.enable_audit_logging:
            return
        self.audit_trail.log_event(event_type, entity_type, entity_id, metadata)
