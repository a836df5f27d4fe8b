"""
billing_batch.models -- ORM models for invoice run persistence.

Architecture: billing_batch/models.  Imports from billing_kernel.db.base only.
"""

from billing_batch.models.invoice_run import InvoiceRunItemModel, InvoiceRunModel

__all__ = [
    "InvoiceRunItemModel",
    "InvoiceRunModel",
]
