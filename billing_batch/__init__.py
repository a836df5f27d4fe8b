"""
billing_batch -- Invoice runs and their calendar scheduler.

Provides the per-organization invoice run (one Draft invoice per eligible
lease per period, each lease in its own transaction, results persisted in
one InvoiceRun row per (org, period_key, run_type)) and an in-process
cron-like scheduler that triggers runs and the overdue sweep.

Architecture:
    billing_batch/ is a top-level package.  It imports billing_kernel;
    nothing in billing_kernel imports billing_batch.

Invariants:
    - Run idempotency: UNIQUE (org_id, period_key, run_type) on runs and
      UNIQUE (org_id, period_key, run_type, lease_id) on invoices.
    - Failure isolation: one lease never aborts a run.
    - Clock injection: no datetime.now() calls.
    - Schedule evaluation is pure.
"""
