"""ORM models for the billing kernel."""

from billing_kernel.models.charge import ChargeDefinitionModel
from billing_kernel.models.credit_note import CreditNoteModel
from billing_kernel.models.invoice import InvoiceLineModel, InvoiceModel
from billing_kernel.models.lease import LeaseBillingSettingsModel, LeaseModel
from billing_kernel.models.payment import (
    PaymentConfirmationRequestModel,
    PaymentModel,
    PaymentStatusHistoryModel,
)
from billing_kernel.services.sequence_service import SequenceCounter

__all__ = [
    "ChargeDefinitionModel",
    "CreditNoteModel",
    "InvoiceLineModel",
    "InvoiceModel",
    "LeaseBillingSettingsModel",
    "LeaseModel",
    "PaymentConfirmationRequestModel",
    "PaymentModel",
    "PaymentStatusHistoryModel",
    "SequenceCounter",
]
