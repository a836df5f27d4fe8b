"""
billing_services -- Package init and public API.

Responsibility:
    Composes the billing kernel, the batch runner and configuration into
    ``BillingEngine``, the single entry point external callers use.

Architecture position:
    Services -- top of the stack.

    Dependency direction (enforced by tests/architecture/test_layer_boundaries.py):
        billing_services/ -> billing_batch/, billing_kernel/, billing_config/  (allowed)
        billing_batch/    -> billing_kernel/                                   (allowed)
        billing_kernel/   -> billing_batch/, billing_services/, billing_config/ (FORBIDDEN)
"""

from billing_services.engine import BillingEngine
from billing_services.orm_registry import create_all_tables, import_all_orm_models

__all__ = [
    "BillingEngine",
    "create_all_tables",
    "import_all_orm_models",
]
