"""
Billing Kernel - tenancy billing and invoice lifecycle core.

Recurring rent and utility invoicing with:
- Deterministic proration of partial periods
- Idempotent invoice generation per lease and period
- Explicit invoice and payment state machines
- Optimistic-concurrency payment application
- Cash payment confirmation workflow and credit notes
"""

__version__ = "0.1.0"
