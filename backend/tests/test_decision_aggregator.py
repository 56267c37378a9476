# ruff: noqa: INP001
"""Pure aggregation tests over in-memory vote slots."""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from approval_gate.core.errors import SelfApprovalNotAllowed, ValidationError
from approval_gate.models.action_types import ActionType
from approval_gate.models.approval_requests import ApprovalRequest
from approval_gate.models.approvers import Approver
from approval_gate.services.decision_aggregator import (
    STRATEGY_MAJORITY,
    STRATEGY_SIMPLE,
    compute_tally,
    ensure_not_self_vote,
    evaluate,
    is_auto_approved,
    voting_slots,
)

_T0 = datetime(2025, 1, 1, 9, 0, 0)


def _action_type(strategy: str = STRATEGY_SIMPLE, min_approvers: int = 1, **kwargs) -> ActionType:
    return ActionType(
        code="suspensao_beneficio",
        name="Suspend benefit",
        strategy=strategy,
        min_approvers=min_approvers,
        execution_method="suspender_beneficio",
        **kwargs,
    )


def _slot(
    decision: str | None = None,
    *,
    minute: int = 0,
    active: bool = True,
    source: str = "standing",
    late: bool = False,
) -> Approver:
    return Approver(
        user_id=uuid4(),
        request_id=uuid4(),
        decision=decision,
        decided_at=_T0 + timedelta(minutes=minute) if decision else None,
        active=active,
        source=source,
        late=late,
    )


def test_majority_benefit_suspension_needs_two_of_three() -> None:
    policy = _action_type(STRATEGY_MAJORITY, 3)
    a = _slot("approved", minute=1)
    b = _slot("rejected", minute=2)
    c = _slot()

    pending = evaluate(policy, [a, b, c])
    assert pending.status is None
    assert pending.tally.approvals == 1
    assert pending.tally.rejections == 1
    assert pending.tally.pending == 1

    c.decision = "approved"
    c.decided_at = _T0 + timedelta(minutes=3)
    outcome = evaluate(policy, [a, b, c])
    assert outcome.status == "approved"
    assert outcome.tally.approvals == 2


@pytest.mark.parametrize(
    ("quorum", "rejections", "expected"),
    [
        (3, 1, None),
        (3, 2, "rejected"),
        (4, 1, None),
        (4, 2, "rejected"),
        (5, 2, None),
        (5, 3, "rejected"),
    ],
)
def test_majority_rejects_once_approval_cannot_win(
    quorum: int,
    rejections: int,
    expected: str | None,
) -> None:
    policy = _action_type(STRATEGY_MAJORITY, quorum)
    slots = [_slot("rejected", minute=i) for i in range(rejections)]
    slots += [_slot() for _ in range(quorum - rejections)]

    assert evaluate(policy, slots).status == expected


def test_majority_even_quorum_requires_strict_majority() -> None:
    policy = _action_type(STRATEGY_MAJORITY, 4)
    slots = [_slot("approved", minute=1), _slot("approved", minute=2), _slot(), _slot()]

    assert evaluate(policy, slots).status is None

    slots[2].decision = "approved"
    slots[2].decided_at = _T0 + timedelta(minutes=3)
    assert evaluate(policy, slots).status == "approved"


def test_simple_strategy_earliest_decision_wins() -> None:
    policy = _action_type(STRATEGY_SIMPLE, 1)
    later_approval = _slot("approved", minute=5)
    earlier_rejection = _slot("rejected", minute=2)

    outcome = evaluate(policy, [later_approval, earlier_rejection])

    assert outcome.status == "rejected"
    assert outcome.reason == "simple:first_rejected"


def test_simple_strategy_waits_without_decisions() -> None:
    assert evaluate(_action_type(), [_slot(), _slot()]).status is None


def test_quorum_unreachable_keeps_request_pending() -> None:
    policy = _action_type(STRATEGY_MAJORITY, 3)
    slots = [_slot("approved", minute=1), _slot("approved", minute=2)]

    outcome = evaluate(policy, slots)

    assert outcome.status is None
    assert outcome.reason == "quorum_unreachable"
    assert not outcome.tally.quorum_reachable


def test_inactive_system_and_late_slots_do_not_count() -> None:
    policy = _action_type(STRATEGY_MAJORITY, 1)
    slots = [
        _slot("approved", minute=1, active=False),
        _slot("approved", minute=1, source="system"),
        _slot("approved", minute=1, late=True),
        _slot(),
    ]

    tally = compute_tally(policy, slots)

    assert len(voting_slots(slots)) == 2
    assert tally.eligible == 2
    assert tally.approvals == 0
    assert evaluate(policy, slots).status is None


def test_unknown_strategy_is_rejected() -> None:
    with pytest.raises(ValidationError):
        evaluate(_action_type("unanimous", 1), [_slot("approved", minute=1)])


def test_auto_approval_matches_role_tags_case_insensitively() -> None:
    policy = _action_type(auto_approval_profiles=["super_admin", "gestor"])

    assert is_auto_approved(policy, "SUPER_ADMIN")
    assert is_auto_approved(policy, " gestor ")
    assert not is_auto_approved(policy, "tecnico")
    assert not is_auto_approved(policy, None)


def test_self_vote_is_refused_unless_allowed() -> None:
    requester_id = uuid4()
    request = ApprovalRequest(
        code="SOL-X",
        action_type_id=uuid4(),
        requester_id=requester_id,
        justification="j",
        action_payload="{}",
        execution_method="suspender_beneficio",
    )

    with pytest.raises(SelfApprovalNotAllowed):
        ensure_not_self_vote(_action_type(), request, requester_id)

    ensure_not_self_vote(_action_type(allow_self_approval=True), request, requester_id)
    ensure_not_self_vote(_action_type(), request, uuid4())
