from __future__ import annotations

from threading import Lock
from typing import Dict, Optional, Tuple

LabelKey = Tuple[Tuple[str, str], ...]

HTTP_REQUESTS = "http_requests_total"
STK_PUSH = "mpesa_stk_push_total"
STK_QUERY = "mpesa_stk_query_total"
CALLBACKS = "mpesa_callbacks_total"
PAYMENT_ANOMALIES = "payment_anomalies_total"

_HELP: Dict[str, str] = {
    HTTP_REQUESTS: "HTTP requests served, by route template and status code.",
    STK_PUSH: "STK push initiations, by outcome.",
    STK_QUERY: "STK status queries, by outcome.",
    CALLBACKS: "M-Pesa callbacks received, by validity and whether they changed a payment.",
    PAYMENT_ANOMALIES: "Conflicting payment outcomes recorded for review, by source.",
}

_lock = Lock()
_series: Dict[str, Dict[LabelKey, int]] = {}


def _key(labels: Optional[Dict[str, str]]) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


def _inc(name: str, labels: Optional[Dict[str, str]] = None) -> None:
    key = _key(labels)
    with _lock:
        counts = _series.setdefault(name, {})
        counts[key] = counts.get(key, 0) + 1


def get_counter(name: str, labels: Optional[Dict[str, str]] = None) -> int:
    with _lock:
        return _series.get(name, {}).get(_key(labels), 0)


def reset_counters() -> None:
    with _lock:
        _series.clear()


def increment_http_requests(route: str, status: int) -> None:
    _inc(HTTP_REQUESTS, {"route": route, "status": str(status)})


def increment_stk_push(result: str) -> None:
    _inc(STK_PUSH, {"result": result})


def increment_stk_query(result: str) -> None:
    _inc(STK_QUERY, {"result": result})


def increment_callback(valid: bool, applied: bool) -> None:
    _inc(CALLBACKS, {"valid": "true" if valid else "false", "applied": "true" if applied else "false"})


def increment_payment_anomaly(source: str) -> None:
    _inc(PAYMENT_ANOMALIES, {"source": source})


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def render_prometheus() -> str:
    """Text exposition format; only counters that have been touched are emitted."""
    out: list[str] = []
    with _lock:
        snapshot = {name: dict(counts) for name, counts in _series.items()}

    for name in sorted(snapshot):
        if name in _HELP:
            out.append(f"# HELP {name} {_HELP[name]}")
        out.append(f"# TYPE {name} counter")
        for key, value in sorted(snapshot[name].items()):
            labels = ",".join(f'{k}="{_escape(v)}"' for k, v in key)
            out.append(f"{name}{{{labels}}} {value}" if labels else f"{name} {value}")
    return "\n".join(out) + "\n" if out else ""
