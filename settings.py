"""
Application settings.

All recognized options live in one frozen Settings structure that is built
once at startup from the environment (after loading `.env`) and validated
once. Nothing else in the codebase reads environment variables.

Recognized options:
- STORAGE_BACKEND: "memory" or "supabase" (default "memory")
- SUPABASE_URL, SUPABASE_KEY: required when STORAGE_BACKEND=supabase
- RESTOCK_CHECK_INTERVAL_SECONDS: restock tick interval (default 900, clamped to [60, 86400])
- COOLDOWN_HOURS / HIGH_DEMAND_COOLDOWN_HOURS: cooldown per item (default 24 / 48)
- STALE_TICKET_MINUTES: idle threshold for the auto-close sweep (default 30)
- AUTO_CLOSE_CHECK_INTERVAL_SECONDS: auto-close sweep interval (default 60)
- RATE_LIMIT_SWEEP_SECONDS: rate limiter / housekeeping interval (default 60)
- RESTOCK_RETENTION_HOURS: horizon for orphaned restock rows (default 1)
- NOTIFY_TIMEOUT_SECONDS: per-recipient notification timeout (default 10)
- NOTIFY_WEBHOOK_URL: optional webhook for notifications (logging notifier otherwise)
- STORE_RETRY_ATTEMPTS / STORE_RETRY_BASE_DELAY_SECONDS: transient failure retries (3 / 0.2)
- RATE_LIMIT_<ACTION>: "max_attempts/window_seconds", e.g. RATE_LIMIT_REQUEST=5/60
- LOG_LEVEL: logging level name (default INFO)
- CATALOG_PATH: optional JSON file with the item catalog (list of {item_id, name, high_demand})
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

MIN_RESTOCK_INTERVAL_SECONDS: int = 60
MAX_RESTOCK_INTERVAL_SECONDS: int = 86_400

_BACKENDS = ("memory", "supabase")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    max_attempts: int
    window_ms: int

    @staticmethod
    def parse(name: str, raw: str) -> "RateLimitRule":
        """Parse 'max_attempts/window_seconds'."""

        try:
            attempts_text, window_text = raw.split("/", 1)
            rule = RateLimitRule(max_attempts=int(attempts_text), window_ms=int(window_text) * 1000)
        except ValueError:
            raise ValueError(f"{name} must look like '5/60' (max_attempts/window_seconds), got {raw!r}") from None
        if rule.max_attempts < 1 or rule.window_ms < 1000:
            raise ValueError(f"{name} must allow at least 1 attempt per 1 second window")
        return rule


DEFAULT_RATE_LIMITS: Mapping[str, RateLimitRule] = {
    "request": RateLimitRule(5, 60_000),
    "panel_request": RateLimitRule(5, 60_000),
    "stock": RateLimitRule(20, 60_000),
    "add": RateLimitRule(20, 60_000),
    "remove": RateLimitRule(20, 60_000),
    "waitlist": RateLimitRule(10, 60_000),
}


def clamp_restock_interval(seconds: int) -> int:
    return max(MIN_RESTOCK_INTERVAL_SECONDS, min(MAX_RESTOCK_INTERVAL_SECONDS, seconds))


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True, slots=True)
class Settings:
    storage_backend: str = "memory"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    restock_check_interval_seconds: int = 900
    cooldown_hours: int = 24
    high_demand_cooldown_hours: int = 48
    stale_ticket_minutes: int = 30
    auto_close_check_interval_seconds: int = 60
    rate_limit_sweep_seconds: int = 60
    restock_retention_hours: int = 1
    notify_timeout_seconds: float = 10.0
    notify_webhook_url: Optional[str] = None
    store_retry_attempts: int = 3
    store_retry_base_delay_seconds: float = 0.2
    log_level: str = "INFO"
    catalog_path: Optional[str] = None
    rate_limits: Mapping[str, RateLimitRule] = field(default_factory=lambda: dict(DEFAULT_RATE_LIMITS))

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None, *, dotenv_path: Optional[Path] = None) -> "Settings":
        """
        Build and validate settings.

        When env is None, `.env` (next to this file unless dotenv_path is given)
        is loaded into os.environ first.
        """

        if env is None:
            load_dotenv(dotenv_path=dotenv_path or Path(__file__).parent / ".env")
            env = os.environ

        rate_limits = dict(DEFAULT_RATE_LIMITS)
        for name, raw in env.items():
            if name.startswith("RATE_LIMIT_") and name != "RATE_LIMIT_SWEEP_SECONDS":
                action = name[len("RATE_LIMIT_"):].lower()
                rate_limits[action] = RateLimitRule.parse(name, raw)

        settings = Settings(
            storage_backend=(env.get("STORAGE_BACKEND") or "memory").strip().lower(),
            supabase_url=env.get("SUPABASE_URL") or None,
            supabase_key=env.get("SUPABASE_KEY") or None,
            restock_check_interval_seconds=clamp_restock_interval(
                _int_env(env, "RESTOCK_CHECK_INTERVAL_SECONDS", 900)
            ),
            cooldown_hours=_int_env(env, "COOLDOWN_HOURS", 24),
            high_demand_cooldown_hours=_int_env(env, "HIGH_DEMAND_COOLDOWN_HOURS", 48),
            stale_ticket_minutes=_int_env(env, "STALE_TICKET_MINUTES", 30),
            auto_close_check_interval_seconds=_int_env(env, "AUTO_CLOSE_CHECK_INTERVAL_SECONDS", 60),
            rate_limit_sweep_seconds=_int_env(env, "RATE_LIMIT_SWEEP_SECONDS", 60),
            restock_retention_hours=_int_env(env, "RESTOCK_RETENTION_HOURS", 1),
            notify_timeout_seconds=_float_env(env, "NOTIFY_TIMEOUT_SECONDS", 10.0),
            notify_webhook_url=env.get("NOTIFY_WEBHOOK_URL") or None,
            store_retry_attempts=_int_env(env, "STORE_RETRY_ATTEMPTS", 3),
            store_retry_base_delay_seconds=_float_env(env, "STORE_RETRY_BASE_DELAY_SECONDS", 0.2),
            log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
            catalog_path=env.get("CATALOG_PATH") or None,
            rate_limits=rate_limits,
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.storage_backend not in _BACKENDS:
            raise ValueError(f"STORAGE_BACKEND must be one of {', '.join(_BACKENDS)}")
        if self.storage_backend == "supabase" and not (self.supabase_url and self.supabase_key):
            raise ValueError("SUPABASE_URL and SUPABASE_KEY are required when STORAGE_BACKEND=supabase")
        if self.supabase_url and not self.supabase_url.startswith("https://"):
            raise ValueError("SUPABASE_URL should start with https://")
        if not MIN_RESTOCK_INTERVAL_SECONDS <= self.restock_check_interval_seconds <= MAX_RESTOCK_INTERVAL_SECONDS:
            raise ValueError("RESTOCK_CHECK_INTERVAL_SECONDS must be within 60..86400")
        if not 1 <= self.cooldown_hours <= 8760:
            raise ValueError("COOLDOWN_HOURS must be 1-8760")
        if not self.cooldown_hours <= self.high_demand_cooldown_hours <= 8760:
            raise ValueError("HIGH_DEMAND_COOLDOWN_HOURS must be >= COOLDOWN_HOURS and <= 8760")
        if self.stale_ticket_minutes < 1:
            raise ValueError("STALE_TICKET_MINUTES must be >= 1")
        if self.auto_close_check_interval_seconds < 1 or self.rate_limit_sweep_seconds < 1:
            raise ValueError("Sweep intervals must be >= 1 second")
        if self.restock_retention_hours < 0:
            raise ValueError("RESTOCK_RETENTION_HOURS must be >= 0")
        if self.notify_timeout_seconds <= 0:
            raise ValueError("NOTIFY_TIMEOUT_SECONDS must be > 0")
        if not 1 <= self.store_retry_attempts <= 10:
            raise ValueError("STORE_RETRY_ATTEMPTS must be 1-10")
        if self.store_retry_base_delay_seconds < 0:
            raise ValueError("STORE_RETRY_BASE_DELAY_SECONDS must be >= 0")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}")

    def rate_limit_for(self, action: str) -> RateLimitRule:
        return self.rate_limits.get(action, RateLimitRule(5, 60_000))


__all__ = ["RateLimitRule", "Settings", "clamp_restock_interval"]
