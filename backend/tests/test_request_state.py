# ruff: noqa: INP001
"""State machine rules for approval requests."""

from __future__ import annotations

import pytest

from approval_gate.core.errors import InvalidTransition
from approval_gate.services.request_state import (
    ALL_STATUSES,
    can_transition,
    ensure_transition_allowed,
)


@pytest.mark.parametrize(
    ("from_status", "to_status"),
    [
        ("pending", "approved"),
        ("pending", "rejected"),
        ("pending", "cancelled"),
        ("approved", "executed"),
        ("approved", "execution_error"),
    ],
)
def test_allowed_transitions(from_status: str, to_status: str) -> None:
    assert can_transition(from_status, to_status)
    ensure_transition_allowed(from_status, to_status)


@pytest.mark.parametrize("terminal", ["rejected", "cancelled", "executed", "execution_error"])
def test_terminal_states_are_immutable(terminal: str) -> None:
    for target in ALL_STATUSES:
        assert not can_transition(terminal, target)


@pytest.mark.parametrize(
    ("from_status", "to_status"),
    [
        ("pending", "executed"),
        ("pending", "execution_error"),
        ("approved", "rejected"),
        ("approved", "pending"),
        ("rejected", "approved"),
    ],
)
def test_invalid_transition_raises(from_status: str, to_status: str) -> None:
    with pytest.raises(InvalidTransition) as exc_info:
        ensure_transition_allowed(from_status, to_status)

    assert exc_info.value.context == {"from_status": from_status, "to_status": to_status}
