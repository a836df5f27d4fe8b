"""
Configuration schema (``billing_config.schema``).

Frozen dataclasses for the engine's runtime configuration.  Parsed from
YAML by ``billing_config.loader``; consumed by ``BillingEngine`` which
passes plain values down to kernel and batch services.  The kernel never
imports this package.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ScheduleDef:
    """One calendar trigger.

    ``job`` is ``rent_run``, ``utility_run`` or ``overdue_sweep``.
    ``period_offset`` shifts the period key computed from the fire time:
    rent runs on the 26th bill next month, so they use ``1``.
    """

    name: str
    job: str
    cron: str
    period_offset: int = 0
    is_active: bool = True


@dataclass(frozen=True)
class BillingConfig:
    """Engine-wide settings.

    Lease-level choices (billing day, timing, proration, tax) live on
    LeaseBillingSettings, not here.
    """

    config_id: str = "default"
    version: int = 1
    max_concurrency_retries: int = 3
    run_max_workers: int = 4
    auto_issue_generated_invoices: bool = False
    invoice_prefix: str = "INV"
    credit_note_prefix: str = "CN"
    default_payment_term_days: int = 0
    proof_link_ttl_seconds: int = 900
    scheduler_tick_seconds: int = 60
    schedules: tuple[ScheduleDef, ...] = field(default_factory=tuple)
    checksum: str = ""
