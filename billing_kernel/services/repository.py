"""
BillingRepository -- the storage port of the billing core, and its SQL adapter.

Responsibility:
    Every read and write the services perform against lease, charge,
    invoice and payment storage goes through this interface.  The protocol
    is what the core depends on; ``SqlBillingRepository`` is the
    SQLAlchemy implementation used in production and tests.

Architecture position:
    Kernel > Services.  Imports models; imported by every service.

Contract:
    - Writes ``add`` + ``flush`` only.  The caller owns the transaction.
    - ``get_invoice`` returns the row with its ``version_id`` loaded; any
      later UPDATE of that row is compare-and-swapped on that version.
    - Lookups that miss raise the matching NotFoundError subclass.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Iterable, Protocol, Sequence
from uuid import UUID

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from billing_kernel.domain.types import (
    ChargeKind,
    InvoiceStatus,
    LeaseStatus,
    PaymentStatus,
    RunType,
)
from billing_kernel.exceptions import (
    BillingSettingsNotFoundError,
    ConfirmationRequestNotFoundError,
    InvoiceNotFoundError,
    LeaseNotFoundError,
    PaymentNotFoundError,
)
from billing_kernel.models.charge import ChargeDefinitionModel
from billing_kernel.models.credit_note import CreditNoteModel
from billing_kernel.models.invoice import InvoiceModel
from billing_kernel.models.lease import LeaseBillingSettingsModel, LeaseModel
from billing_kernel.models.payment import (
    PaymentConfirmationRequestModel,
    PaymentModel,
    PaymentStatusHistoryModel,
)


BILLABLE_LEASE_STATUSES = (LeaseStatus.ACTIVE.value, LeaseStatus.ENDED.value)


class BillingRepository(Protocol):
    """Storage operations the billing core consumes."""

    def get_lease(self, lease_id: UUID) -> LeaseModel: ...

    def get_lease_billing_settings(
        self, lease_id: UUID, on_date: date
    ) -> LeaseBillingSettingsModel: ...

    def get_active_charges(
        self, lease_id: UUID, start: date, end: date
    ) -> Sequence[ChargeDefinitionModel]: ...

    def list_billable_leases(
        self, org_id: UUID, start: date, end: date
    ) -> Sequence[LeaseModel]: ...

    def find_invoice_by_key(
        self, org_id: UUID, period_key: str, run_type: RunType, lease_id: UUID
    ) -> InvoiceModel | None: ...

    def save_invoice(self, invoice: InvoiceModel) -> InvoiceModel: ...

    def get_invoice(self, invoice_id: UUID, refresh: bool = False) -> InvoiceModel: ...

    def save_payment(self, payment: PaymentModel) -> PaymentModel: ...

    def get_payment(self, payment_id: UUID) -> PaymentModel: ...

    def append_status_history(
        self,
        payment: PaymentModel,
        from_status: PaymentStatus | None,
        to_status: PaymentStatus,
        changed_by: UUID,
        changed_at: datetime,
        reason: str | None = None,
    ) -> PaymentStatusHistoryModel: ...


class SqlBillingRepository:
    """SQLAlchemy implementation of BillingRepository."""

    def __init__(self, session: Session):
        self.session = session

    # -------------------------------------------------------------------------
    # Leases and settings
    # -------------------------------------------------------------------------

    def get_lease(self, lease_id: UUID) -> LeaseModel:
        lease = self.session.get(LeaseModel, lease_id)
        if lease is None:
            raise LeaseNotFoundError(lease_id)
        return lease

    def get_lease_billing_settings(
        self, lease_id: UUID, on_date: date
    ) -> LeaseBillingSettingsModel:
        """The settings version in force on ``on_date``.

        When the lease starts before its first version, the earliest
        version governs.
        """
        stmt = (
            select(LeaseBillingSettingsModel)
            .where(
                LeaseBillingSettingsModel.lease_id == lease_id,
                LeaseBillingSettingsModel.effective_from <= on_date,
            )
            .order_by(LeaseBillingSettingsModel.effective_from.desc())
            .limit(1)
        )
        settings = self.session.execute(stmt).scalar_one_or_none()
        if settings is None:
            settings = self.session.execute(
                select(LeaseBillingSettingsModel)
                .where(LeaseBillingSettingsModel.lease_id == lease_id)
                .order_by(LeaseBillingSettingsModel.effective_from.asc())
                .limit(1)
            ).scalar_one_or_none()
        if settings is None:
            raise BillingSettingsNotFoundError(lease_id, on_date)
        return settings

    def list_settings_versions(self, lease_id: UUID) -> Sequence[LeaseBillingSettingsModel]:
        return self.session.execute(
            select(LeaseBillingSettingsModel)
            .where(LeaseBillingSettingsModel.lease_id == lease_id)
            .order_by(LeaseBillingSettingsModel.effective_from)
        ).scalars().all()

    def get_active_charges(
        self, lease_id: UUID, start: date, end: date
    ) -> Sequence[ChargeDefinitionModel]:
        """Active charges that can contribute lines to ``[start, end]``.

        Rent and recurring charges must overlap the window.  Unbilled
        utility statements that started on or before ``end`` are all
        returned; the utility resolver decides which have ended.
        """
        overlaps = and_(
            ChargeDefinitionModel.kind != ChargeKind.UTILITY.value,
            or_(
                ChargeDefinitionModel.effective_to.is_(None),
                ChargeDefinitionModel.effective_to >= start,
            ),
        )
        unbilled_utility = and_(
            ChargeDefinitionModel.kind == ChargeKind.UTILITY.value,
            ChargeDefinitionModel.billed_invoice_id.is_(None),
        )
        stmt = (
            select(ChargeDefinitionModel)
            .where(
                ChargeDefinitionModel.lease_id == lease_id,
                ChargeDefinitionModel.is_active.is_(True),
                ChargeDefinitionModel.effective_from <= end,
                or_(overlaps, unbilled_utility),
            )
            .order_by(ChargeDefinitionModel.kind, ChargeDefinitionModel.effective_from)
        )
        return self.session.execute(stmt).scalars().all()

    def mark_charges_billed(self, charge_ids: Iterable[UUID], invoice_id: UUID) -> None:
        for charge_id in charge_ids:
            charge = self.session.get(ChargeDefinitionModel, charge_id)
            if charge is not None:
                charge.billed_invoice_id = invoice_id
        self.session.flush()

    def list_billable_leases(
        self, org_id: UUID, start: date, end: date
    ) -> Sequence[LeaseModel]:
        """Active or ended leases whose term overlaps ``[start, end]``."""
        stmt = (
            select(LeaseModel)
            .where(
                LeaseModel.org_id == org_id,
                LeaseModel.status.in_(BILLABLE_LEASE_STATUSES),
                LeaseModel.start_date <= end,
                or_(LeaseModel.end_date.is_(None), LeaseModel.end_date >= start),
            )
            .order_by(LeaseModel.lease_number)
        )
        return self.session.execute(stmt).scalars().all()

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    def find_invoice_by_key(
        self, org_id: UUID, period_key: str, run_type: RunType, lease_id: UUID
    ) -> InvoiceModel | None:
        return self.session.execute(
            select(InvoiceModel).where(
                InvoiceModel.org_id == org_id,
                InvoiceModel.period_key == period_key,
                InvoiceModel.run_type == RunType(run_type).value,
                InvoiceModel.lease_id == lease_id,
            )
        ).scalar_one_or_none()

    def save_invoice(self, invoice: InvoiceModel) -> InvoiceModel:
        self.session.add(invoice)
        self.session.flush()
        return invoice

    def get_invoice(self, invoice_id: UUID, refresh: bool = False) -> InvoiceModel:
        """Load an invoice.  ``refresh`` re-reads it (and its version) from storage."""
        stmt = select(InvoiceModel).where(InvoiceModel.id == invoice_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        invoice = self.session.execute(stmt).scalar_one_or_none()
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    def list_overdue_candidates(self, org_id: UUID | None, today: date) -> Sequence[InvoiceModel]:
        stmt = select(InvoiceModel).where(
            InvoiceModel.status.in_(
                (InvoiceStatus.ISSUED.value, InvoiceStatus.PARTIALLY_PAID.value)
            ),
            InvoiceModel.due_date < today,
            InvoiceModel.balance_amount > 0,
        )
        if org_id is not None:
            stmt = stmt.where(InvoiceModel.org_id == org_id)
        return self.session.execute(stmt.order_by(InvoiceModel.due_date)).scalars().all()

    def latest_invoiced_period_end(self, lease_id: UUID) -> date | None:
        """End of the latest period billed by a live (not Voided/Cancelled) invoice."""
        return self.session.execute(
            select(func.max(InvoiceModel.period_end)).where(
                InvoiceModel.lease_id == lease_id,
                InvoiceModel.status.not_in(
                    (InvoiceStatus.VOIDED.value, InvoiceStatus.CANCELLED.value)
                ),
            )
        ).scalar_one_or_none()

    def list_credit_notes(self, invoice_id: UUID) -> Sequence[CreditNoteModel]:
        return self.session.execute(
            select(CreditNoteModel)
            .where(CreditNoteModel.invoice_id == invoice_id)
            .order_by(CreditNoteModel.issued_at)
        ).scalars().all()

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    def save_payment(self, payment: PaymentModel) -> PaymentModel:
        self.session.add(payment)
        self.session.flush()
        return payment

    def get_payment(self, payment_id: UUID) -> PaymentModel:
        payment = self.session.get(PaymentModel, payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        return payment

    def list_payments(self, invoice_id: UUID) -> Sequence[PaymentModel]:
        return self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.invoice_id == invoice_id)
            .order_by(PaymentModel.payment_date, PaymentModel.created_at)
        ).scalars().all()

    def append_status_history(
        self,
        payment: PaymentModel,
        from_status: PaymentStatus | None,
        to_status: PaymentStatus,
        changed_by: UUID,
        changed_at: datetime,
        reason: str | None = None,
    ) -> PaymentStatusHistoryModel:
        sequence = self.session.execute(
            select(func.count(PaymentStatusHistoryModel.id)).where(
                PaymentStatusHistoryModel.payment_id == payment.id
            )
        ).scalar_one() + 1
        row = PaymentStatusHistoryModel(
            payment_id=payment.id,
            sequence=sequence,
            from_status=PaymentStatus(from_status).value if from_status else None,
            to_status=PaymentStatus(to_status).value,
            changed_by=changed_by,
            changed_at=changed_at,
            reason=reason,
            created_by_id=changed_by,
        )
        self.session.add(row)
        self.session.flush()
        return row

    def get_status_history(self, payment_id: UUID) -> Sequence[PaymentStatusHistoryModel]:
        return self.session.execute(
            select(PaymentStatusHistoryModel)
            .where(PaymentStatusHistoryModel.payment_id == payment_id)
            .order_by(PaymentStatusHistoryModel.sequence)
        ).scalars().all()

    # -------------------------------------------------------------------------
    # Confirmation requests
    # -------------------------------------------------------------------------

    def save_confirmation_request(
        self, request: PaymentConfirmationRequestModel
    ) -> PaymentConfirmationRequestModel:
        self.session.add(request)
        self.session.flush()
        return request

    def get_confirmation_request(
        self, request_id: UUID, refresh: bool = False
    ) -> PaymentConfirmationRequestModel:
        stmt = select(PaymentConfirmationRequestModel).where(
            PaymentConfirmationRequestModel.id == request_id
        )
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        request = self.session.execute(stmt).scalar_one_or_none()
        if request is None:
            raise ConfirmationRequestNotFoundError(request_id)
        return request

    # -------------------------------------------------------------------------
    # Organizations
    # -------------------------------------------------------------------------

    def list_org_ids(self) -> list[UUID]:
        """Organizations with at least one lease ``list_billable_leases`` can bill."""
        return list(
            self.session.execute(
                select(LeaseModel.org_id)
                .where(LeaseModel.status.in_(BILLABLE_LEASE_STATUSES))
                .distinct()
                .order_by(LeaseModel.org_id)
            ).scalars()
        )
