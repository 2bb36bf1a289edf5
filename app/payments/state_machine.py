# app/payments/state_machine.py
from __future__ import annotations

from typing import Literal

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED)
TERMINAL = frozenset({COMPLETED, FAILED})


class InvalidTransition(Exception):
    pass


ALLOWED = {
    PENDING: {PROCESSING, FAILED},  # push accepted / push failed to initiate
    PROCESSING: {COMPLETED, FAILED},
    COMPLETED: set(),
    FAILED: set(),
}

Decision = Literal["apply", "duplicate", "conflict", "invalid"]


def assert_transition(old: str, new: str) -> None:
    if new not in ALLOWED.get(old, set()):
        raise InvalidTransition(f"Illegal payment transition: {old} -> {new}")


def is_terminal(status: str) -> bool:
    return status in TERMINAL


def status_for_result_code(result_code: int) -> str:
    return COMPLETED if result_code == 0 else FAILED


def classify_outcome(current: str, target: str) -> Decision:
    """
    How a reported terminal outcome relates to the stored status.

    Terminal states are sinks: the same outcome again is a duplicate,
    a different one is a conflict that must never overwrite the record.
    """
    if current == target and is_terminal(current):
        return "duplicate"
    if is_terminal(current):
        return "conflict"
    if target in ALLOWED.get(current, set()):
        return "apply"
    return "invalid"


def assert_processing_invariant(new_status: str, checkout_request_id: str | None) -> None:
    """
    Invariant: a payment in processing MUST carry the provider's checkout id,
    otherwise neither callback nor query can ever find it.
    """
    if new_status == PROCESSING and not checkout_request_id:
        raise ValueError("Invariant violation: status=processing requires checkout_request_id")
