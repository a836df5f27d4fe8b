"""
InvoiceGenerationService -- build and persist one Draft invoice for one lease.

Responsibility:
    Resolves the lines a lease owes for a period key and run type, computes
    tax and totals, and persists the result as a Draft invoice carrying its
    idempotency key.

Architecture position:
    Kernel > Services.  Called by the invoice run (one call per lease, each
    in its own transaction) and by the BillingEngine facade.

Invariants enforced:
    - sub_total = sum(line.amount); total = sub_total + tax;
      paid = credited = 0; balance = total; status Draft.
    - Tax is computed per taxable line, and only when the lease's settings
      make tax applicable.  Each line's tax is rounded once.
    - The proration method used is snapshotted on the invoice.
    - Utility statements billed by the invoice are marked billed so a
      later run cannot bill them twice.

Failure modes:
    - LeaseNotFoundError, BillingSettingsNotFoundError.
    - InvalidPeriodKeyError for a malformed key or a rent run on a week key.
    - InvoiceAlreadyExistsError when the idempotency key is taken.
    - "Nothing to bill" is NOT an error: it is a result status.
"""

from dataclasses import dataclass
from datetime import date, timedelta

from billing_kernel.domain.money import ZERO, round_money
from billing_kernel.domain.periods import BillingPeriod, PeriodKind, resolve_period
from billing_kernel.domain.resolvers import covered_period, resolve_lines
from billing_kernel.domain.types import (
    BillingSettings,
    ChargeKind,
    GenerationStatus,
    InvoiceDraft,
    InvoiceStatus,
    RentTiming,
    RunType,
    parse_enum,
)
from billing_kernel.exceptions import InvalidPeriodKeyError, InvoiceAlreadyExistsError
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.invoice import InvoiceLineModel, InvoiceModel
from billing_kernel.services.base import BaseService

logger = get_logger("services.invoice_generation")


@dataclass(frozen=True)
class InvoiceGenerationResult:
    status: GenerationStatus
    invoice: InvoiceModel | None = None
    draft: InvoiceDraft | None = None
    reason: str | None = None

    @property
    def generated(self) -> bool:
        return self.status is GenerationStatus.GENERATED


class InvoiceGenerationService(BaseService):
    """
    Contract:
        ``build_invoice`` returns an unsaved ``InvoiceDraft``.
        ``generate_invoice`` persists it (add + flush) in the caller's
        session and returns an ``InvoiceGenerationResult``.

    Non-goals:
        - Does NOT issue the invoice; see InvoiceLifecycleManager.
        - Does NOT commit.
    """

    def _resolve_window(
        self, lease_id, period_key: str, run_type: RunType
    ) -> tuple[BillingPeriod, BillingPeriod, BillingSettings]:
        """Return ``(invoice period, covered window, settings)``.

        Settings are those in force at the start of the covered window.
        The billing day itself comes from settings, so the lookup is done
        on the calendar period first and repeated once if the window moves.
        """
        calendar = resolve_period(period_key)
        if run_type is RunType.RENT and calendar.kind is not PeriodKind.MONTH:
            raise InvalidPeriodKeyError(period_key, "rent runs require a YYYY-MM period key")

        settings = self._repo.get_lease_billing_settings(lease_id, calendar.start).to_dto()
        period = resolve_period(period_key, settings.billing_day)
        covered = covered_period(settings, period) if run_type is RunType.RENT else period

        if covered.start != calendar.start:
            refreshed = self._repo.get_lease_billing_settings(lease_id, covered.start).to_dto()
            if refreshed != settings:
                settings = refreshed
                period = resolve_period(period_key, settings.billing_day)
                covered = covered_period(settings, period) if run_type is RunType.RENT else period

        return period, covered, settings

    def build_invoice(
        self,
        lease_id,
        period_key: str,
        run_type: RunType = RunType.RENT,
        as_of: date | None = None,
    ) -> InvoiceDraft:
        run_type = parse_enum(RunType, run_type, "run_type")
        lease = self._repo.get_lease(lease_id)
        period, covered, settings = self._resolve_window(lease.id, period_key, run_type)

        if run_type is RunType.UTILITY and as_of is None:
            as_of = self._clock.today()

        charges = [
            c.to_dto() for c in self._repo.get_active_charges(lease.id, covered.start, covered.end)
        ]
        lines = resolve_lines(run_type, lease.to_dto(), settings, charges, period, as_of)

        line_taxes = tuple(
            round_money(line.amount * settings.tax_rate)
            if settings.tax_applicable and line.taxable
            else ZERO
            for line in lines
        )
        sub_total = round_money(sum((line.amount for line in lines), ZERO))
        tax_amount = round_money(sum(line_taxes, ZERO))

        if run_type is RunType.RENT and settings.rent_timing is RentTiming.ADVANCE:
            invoice_date = covered.start
        else:
            invoice_date = covered.end

        return InvoiceDraft(
            lease_id=lease.id,
            org_id=lease.org_id,
            period_key=period.key,
            run_type=run_type,
            period_start=covered.start,
            period_end=covered.end,
            invoice_date=invoice_date,
            due_date=invoice_date + timedelta(days=settings.payment_term_days),
            proration_method=settings.proration_method,
            lines=lines,
            line_taxes=line_taxes,
            sub_total=sub_total,
            tax_amount=tax_amount,
            total_amount=sub_total + tax_amount,
        )

    def generate_invoice(
        self,
        lease_id,
        period_key: str,
        run_type: RunType = RunType.RENT,
        as_of: date | None = None,
    ) -> InvoiceGenerationResult:
        run_type = parse_enum(RunType, run_type, "run_type")
        lease = self._repo.get_lease(lease_id)

        with LogContext.bind(org_id=str(lease.org_id), lease_id=str(lease.id)):
            existing = self._repo.find_invoice_by_key(lease.org_id, period_key, run_type, lease.id)
            if existing is not None:
                raise InvoiceAlreadyExistsError(existing.idempotency_key, existing.id)

            draft = self.build_invoice(lease.id, period_key, run_type, as_of)
            if not draft.lines:
                logger.info(
                    "invoice_nothing_to_bill",
                    extra={"period_key": period_key, "run_type": run_type.value},
                )
                return InvoiceGenerationResult(
                    status=GenerationStatus.NOTHING_TO_BILL,
                    draft=draft,
                    reason=f"No billable {run_type.value} charges for {period_key}",
                )

            invoice = InvoiceModel(
                org_id=draft.org_id,
                lease_id=draft.lease_id,
                period_key=draft.period_key,
                run_type=draft.run_type.value,
                period_start=draft.period_start,
                period_end=draft.period_end,
                invoice_date=draft.invoice_date,
                due_date=draft.due_date,
                proration_method=draft.proration_method.value,
                status=InvoiceStatus.DRAFT.value,
                sub_total=draft.sub_total,
                tax_amount=draft.tax_amount,
                total_amount=draft.total_amount,
                paid_amount=ZERO,
                credited_amount=ZERO,
                balance_amount=draft.total_amount,
                created_by_id=self._actor_id,
            )
            for number, (line, tax) in enumerate(zip(draft.lines, draft.line_taxes), start=1):
                invoice.lines.append(
                    InvoiceLineModel.from_dto(line, number, tax, self._actor_id)
                )
            self._repo.save_invoice(invoice)

            billed = [
                line.source_charge_id
                for line in draft.lines
                if line.charge_kind is ChargeKind.UTILITY and line.source_charge_id is not None
            ]
            if billed:
                self._repo.mark_charges_billed(billed, invoice.id)

            logger.info(
                "invoice_generated",
                extra={
                    "invoice_id": str(invoice.id),
                    "period_key": draft.period_key,
                    "run_type": run_type.value,
                    "line_count": len(draft.lines),
                    "total_amount": str(draft.total_amount),
                },
            )
            return InvoiceGenerationResult(
                status=GenerationStatus.GENERATED, invoice=invoice, draft=draft
            )
