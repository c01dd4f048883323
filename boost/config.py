"""
boost.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for **infrastructure-only** settings (cache TTL,
webhook client tuning, event bus selection, logging).  Rules themselves
(streaks, progression, rewards) live in the database.

Usage::

    from boost.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.rule_cache_ttl_seconds)  # 5.0
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

VALID_EVENT_BUSES = ("outbox", "memory")


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class BoostConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    service_name: str

    # Streak rule lookup cache
    rule_cache_ttl_seconds: float = 5.0

    # Webhook fulfillment
    webhook_timeout_seconds: float = 10.0
    webhook_max_attempts: int = 3
    webhook_signature_header: str = "X-Signature"

    # Fulfillment claims; the lease must outlive one webhook attempt
    fulfillment_lease_seconds: float = 60.0
    fulfillment_grace_seconds: float = 300.0

    # Output
    event_bus: str = "outbox"  # "outbox" | "memory"

    # Worker
    sweep_interval_seconds: float = 60.0
    log_level: str = "INFO"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> BoostConfig:
    """Read *path* and return a :class:`BoostConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If ``event_bus`` names an unknown backend.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    event_bus = str(raw.get("event_bus", "outbox")).lower()
    if event_bus not in VALID_EVENT_BUSES:
        raise ValueError(
            f"Unknown event_bus '{event_bus}'. Expected one of {VALID_EVENT_BUSES}"
        )

    return BoostConfig(
        service_name=raw["service_name"],
        rule_cache_ttl_seconds=float(raw.get("rule_cache_ttl_seconds", 5.0)),
        webhook_timeout_seconds=float(raw.get("webhook_timeout_seconds", 10.0)),
        webhook_max_attempts=int(raw.get("webhook_max_attempts", 3)),
        webhook_signature_header=raw.get("webhook_signature_header", "X-Signature"),
        fulfillment_lease_seconds=float(raw.get("fulfillment_lease_seconds", 60.0)),
        fulfillment_grace_seconds=float(raw.get("fulfillment_grace_seconds", 300.0)),
        event_bus=event_bus,
        sweep_interval_seconds=float(raw.get("sweep_interval_seconds", 60.0)),
        log_level=str(raw.get("log_level", "INFO")).upper(),
    )
