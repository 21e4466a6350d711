from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class PortalConfig:
    echo_window_ms: int = 5000
    max_reconnect_attempts: int = 3
    reconnect_backoff_ms: int = 500
    history_limit: int = 0
    default_duration_minutes: int = 30
    request_timeout_s: int = 10

    @property
    def reconnect_backoff_s(self) -> float:
        return max(self.reconnect_backoff_ms, 0) / 1000

    @property
    def history_limit_or_none(self) -> int | None:
        return self.history_limit if self.history_limit > 0 else None


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def load_config_from_env() -> PortalConfig:
    default_duration = _parse_non_negative_int("CAREPORTAL_DEFAULT_DURATION_MIN", 30)
    if default_duration == 0:
        raise ValueError("CAREPORTAL_DEFAULT_DURATION_MIN must be positive")
    return PortalConfig(
        echo_window_ms=_parse_non_negative_int("CAREPORTAL_ECHO_WINDOW_MS", 5000),
        max_reconnect_attempts=_parse_non_negative_int("CAREPORTAL_MAX_RECONNECT_ATTEMPTS", 3),
        reconnect_backoff_ms=_parse_non_negative_int("CAREPORTAL_RECONNECT_BACKOFF_MS", 500),
        history_limit=_parse_non_negative_int("CAREPORTAL_HISTORY_LIMIT", 0),
        default_duration_minutes=default_duration,
        request_timeout_s=max(1, _parse_non_negative_int("CAREPORTAL_REQUEST_TIMEOUT_S", 10)),
    )
