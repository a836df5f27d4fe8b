"""
billing_config -- single public entrypoint for billing engine configuration.

Responsibility:
    ``get_active_config()`` is the only way runtime code obtains a
    ``BillingConfig``.  It reads, in order of precedence, an explicit
    path, the ``BILLING_CONFIG_PATH`` environment variable, or the
    packaged ``sets/default.yaml``.

Audit relevance:
    Every load emits a ``billing_config_loaded`` log entry with the
    config_id, version and checksum.
"""

from __future__ import annotations

import os
from pathlib import Path

from billing_config.loader import load_config
from billing_config.schema import BillingConfig, ScheduleDef
from billing_kernel.logging_config import get_logger

logger = get_logger("config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"
ENV_VAR = "BILLING_CONFIG_PATH"

__all__ = [
    "BillingConfig",
    "ScheduleDef",
    "config_checksum",
    "get_active_config",
    "load_config",
]


def get_active_config(path: Path | str | None = None) -> BillingConfig:
    """Load and validate the active configuration.

    Raises:
        FileNotFoundError: If the resolved file does not exist.
        ValueError: If a value is out of range or mistyped.
    """
    resolved = Path(path or os.environ.get(ENV_VAR) or _DEFAULT_CONFIG_PATH)
    config = load_config(resolved)
    logger.info(
        "billing_config_loaded",
        extra={
            "config_id": config.config_id,
            "version": config.version,
            "checksum": config.checksum,
            "path": str(resolved),
        },
    )
    return config


def config_checksum(config: BillingConfig | None = None) -> str:
    """SHA-256 of the canonical form of ``config`` (or the active one)."""
    return (config or get_active_config()).checksum
