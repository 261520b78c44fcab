"""
Tests for `settings.py`.

Covers contract rules:
- Defaults apply when variables are unset.
- The restock interval is clamped to [60, 86400] seconds.
- RATE_LIMIT_<ACTION> overrides one action's limit.
- Invalid values fail at startup with a message naming the variable.
"""

from __future__ import annotations

import pytest

from settings import RateLimitRule, Settings


def test_defaults() -> None:
    settings = Settings.from_env({})

    assert settings.storage_backend == "memory"
    assert settings.restock_check_interval_seconds == 900
    assert settings.cooldown_hours == 24
    assert settings.high_demand_cooldown_hours == 48
    assert settings.stale_ticket_minutes == 30
    assert settings.rate_limit_for("request") == RateLimitRule(5, 60_000)
    assert settings.rate_limit_for("stock") == RateLimitRule(20, 60_000)
    assert settings.rate_limit_for("unknown") == RateLimitRule(5, 60_000)


def test_restock_interval_is_clamped() -> None:
    assert Settings.from_env({"RESTOCK_CHECK_INTERVAL_SECONDS": "5"}).restock_check_interval_seconds == 60
    assert (
        Settings.from_env({"RESTOCK_CHECK_INTERVAL_SECONDS": "999999"}).restock_check_interval_seconds
        == 86_400
    )


def test_rate_limit_override() -> None:
    settings = Settings.from_env({"RATE_LIMIT_REQUEST": "2/30", "RATE_LIMIT_SWEEP_SECONDS": "15"})

    assert settings.rate_limit_for("request") == RateLimitRule(2, 30_000)
    assert settings.rate_limit_for("add") == RateLimitRule(20, 60_000)
    assert settings.rate_limit_sweep_seconds == 15


@pytest.mark.parametrize(
    "env, variable",
    [
        ({"STORAGE_BACKEND": "redis"}, "STORAGE_BACKEND"),
        ({"STORAGE_BACKEND": "supabase"}, "SUPABASE_URL"),
        ({"COOLDOWN_HOURS": "soon"}, "COOLDOWN_HOURS"),
        ({"COOLDOWN_HOURS": "72"}, "HIGH_DEMAND_COOLDOWN_HOURS"),
        ({"RATE_LIMIT_REQUEST": "five"}, "RATE_LIMIT_REQUEST"),
        ({"LOG_LEVEL": "chatty"}, "LOG_LEVEL"),
        ({"NOTIFY_TIMEOUT_SECONDS": "0"}, "NOTIFY_TIMEOUT_SECONDS"),
    ],
)
def test_invalid_values_name_the_variable(env: dict, variable: str) -> None:
    with pytest.raises(ValueError, match=variable):
        Settings.from_env(env)


def test_supabase_backend_requires_https_url() -> None:
    with pytest.raises(ValueError, match="https://"):
        Settings.from_env(
            {"STORAGE_BACKEND": "supabase", "SUPABASE_URL": "http://db.local", "SUPABASE_KEY": "k"}
        )

    settings = Settings.from_env(
        {"STORAGE_BACKEND": "supabase", "SUPABASE_URL": "https://x.supabase.co", "SUPABASE_KEY": "k"}
    )
    assert settings.storage_backend == "supabase"
