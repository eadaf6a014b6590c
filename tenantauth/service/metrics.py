from __future__ import annotations

import threading
from typing import Dict, List, Tuple

_LabelKey = Tuple[Tuple[str, str], ...]

_HELP = {
    "auth_registrations_total": ("counter", "Completed registrations by method"),
    "auth_logins_total": ("counter", "Login attempts by method and outcome"),
    "auth_failed_logins_total": ("counter", "Failed logins by reason"),
    "auth_password_resets_total": ("counter", "Completed password resets"),
    "auth_sessions_created_total": ("counter", "Sessions created"),
    "auth_sessions_revoked_total": ("counter", "Sessions revoked by reason"),
}


def _label_key(labels: Dict[str, str]) -> _LabelKey:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


def _format_labels(key: _LabelKey) -> str:
    if not key:
        return ""
    inner = ",".join(f'{name}="{value}"' for name, value in key)
    return "{" + inner + "}"


class AuthMetrics:
    """Process-wide authentication counters rendered as Prometheus text."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, Dict[_LabelKey, float]] = {name: {} for name in _HELP}
        self._login_duration_count = 0
        self._login_duration_sum = 0.0

    def _inc(self, name: str, amount: float = 1.0, **labels: str) -> None:
        key = _label_key(labels)
        with self._lock:
            series = self._counters[name]
            series[key] = series.get(key, 0.0) + amount

    def record_registration(self, method: str) -> None:
        self._inc("auth_registrations_total", method=method)

    def record_login(self, method: str, success: bool) -> None:
        self._inc("auth_logins_total", method=method, status="success" if success else "failure")

    def record_failed_login(self, reason: str) -> None:
        self._inc("auth_failed_logins_total", reason=reason)

    def record_password_reset(self) -> None:
        self._inc("auth_password_resets_total")

    def record_session_created(self) -> None:
        self._inc("auth_sessions_created_total")

    def record_sessions_revoked(self, reason: str, count: int = 1) -> None:
        if count > 0:
            self._inc("auth_sessions_revoked_total", float(count), reason=reason)

    def observe_login_duration(self, seconds: float) -> None:
        with self._lock:
            self._login_duration_count += 1
            self._login_duration_sum += seconds

    def value(self, name: str, **labels: str) -> float:
        with self._lock:
            return self._counters[name].get(_label_key(labels), 0.0)

    def render(self) -> List[str]:
        lines: List[str] = []
        with self._lock:
            for name, (kind, help_text) in _HELP.items():
                lines.append(f"# HELP {name} {help_text}")
                lines.append(f"# TYPE {name} {kind}")
                series = self._counters[name]
                if not series:
                    lines.append(f"{name} 0")
                for key, value in sorted(series.items()):
                    lines.append(f"{name}{_format_labels(key)} {value:g}")
            count, total = self._login_duration_count, self._login_duration_sum
        lines.append("# HELP auth_login_duration_seconds Login duration in seconds")
        lines.append("# TYPE auth_login_duration_seconds summary")
        lines.append(f"auth_login_duration_seconds_count {count}")
        lines.append(f"auth_login_duration_seconds_sum {total:.6f}")
        return lines
