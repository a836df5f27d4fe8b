"""
Configuration Loader (``billing_config.loader``).

Responsibility
--------------
Reads a YAML configuration file and parses it into a frozen
``BillingConfig``.  Runtime callers use ``billing_config.get_active_config()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Out-of-range or mistyped values  -> ``ValueError`` naming the key.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import BillingConfig, ScheduleDef

KNOWN_JOBS = frozenset({"rent_run", "utility_run", "overdue_sweep"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file; an empty file yields ``{}``."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _int(data: dict[str, Any], key: str, default: int, minimum: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' must be an integer, got {value!r}")
    if value < minimum:
        raise ValueError(f"'{key}' must be >= {minimum}, got {value}")
    return value


def _bool(data: dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' must be true or false, got {value!r}")
    return value


def _prefix(data: dict[str, Any], key: str, default: str) -> str:
    value = str(data.get(key, default)).strip()
    if not value or not value.replace("_", "").isalnum() or len(value) > 10:
        raise ValueError(f"'{key}' must be 1-10 alphanumeric characters, got {value!r}")
    return value


def parse_schedule(data: dict[str, Any]) -> ScheduleDef:
    from billing_batch.domain.schedule import parse_cron

    job = data["job"]
    if job not in KNOWN_JOBS:
        raise ValueError(f"Unknown schedule job '{job}'; expected one of {sorted(KNOWN_JOBS)}")
    cron = data["cron"]
    parse_cron(cron)
    return ScheduleDef(
        name=data.get("name", job),
        job=job,
        cron=cron,
        period_offset=int(data.get("period_offset", 0)),
        is_active=bool(data.get("is_active", True)),
    )


def parse_config(data: dict[str, Any]) -> BillingConfig:
    """Build a BillingConfig from a parsed YAML mapping."""
    billing = data.get("billing", {})
    runs = data.get("runs", {})
    payments = data.get("payments", {})

    return BillingConfig(
        config_id=str(data.get("config_id", "default")),
        version=_int(data, "version", 1, 1),
        max_concurrency_retries=_int(payments, "max_concurrency_retries", 3, 0),
        proof_link_ttl_seconds=_int(payments, "proof_link_ttl_seconds", 900, 1),
        run_max_workers=_int(runs, "max_workers", 4, 1),
        auto_issue_generated_invoices=_bool(runs, "auto_issue_generated_invoices", False),
        scheduler_tick_seconds=_int(runs, "scheduler_tick_seconds", 60, 1),
        invoice_prefix=_prefix(billing, "invoice_prefix", "INV"),
        credit_note_prefix=_prefix(billing, "credit_note_prefix", "CN"),
        default_payment_term_days=_int(billing, "default_payment_term_days", 0, 0),
        schedules=tuple(parse_schedule(s) for s in data.get("schedules", [])),
        checksum=compute_checksum(data),
    )


def load_config(path: Path | str) -> BillingConfig:
    return parse_config(load_yaml_file(Path(path)))
