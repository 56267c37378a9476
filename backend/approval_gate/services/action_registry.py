"""Action registry: approval policies and their standing approvers.

Policies are read on every submission and vote, so reads go through a small
in-process TTL cache of detached snapshots. Every policy write drops the
cached entry for that action type.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from threading import Lock
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import col

from approval_gate.core.config import settings
from approval_gate.core.errors import NotFoundError, PolicyLocked, ValidationError
from approval_gate.core.logging import get_logger
from approval_gate.core.time import utcnow
from approval_gate.models.action_types import ActionType
from approval_gate.models.approval_requests import ApprovalRequest
from approval_gate.models.approvers import Approver
from approval_gate.services.action_executor import get_action_executor
from approval_gate.services.decision_aggregator import VALID_STRATEGIES
from approval_gate.services.request_state import SOURCE_STANDING

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from approval_gate.services.action_executor import ActionExecutor

logger = get_logger(__name__)

_CODE_PATTERN = re.compile(r"^[a-z][a-z0-9_]{1,63}$")
_ROLE_TAG_PATTERN = re.compile(r"^[a-z][a-z0-9_.:-]{0,63}$")
# Fields frozen once any request references the action type.
POLICY_FIELDS = frozenset(
    {
        "strategy",
        "min_approvers",
        "allow_self_approval",
        "auto_approval_profiles",
        "execution_method",
        "deadline_hours",
        "escalation_policy",
    },
)
DESCRIPTIVE_FIELDS = frozenset({"name", "description"})


@dataclass(frozen=True)
class EscalationPolicy:
    """Parsed `ActionType.escalation_policy`."""

    approver_ids: tuple[UUID, ...]
    supervisor_id: UUID | None
    max_escalations: int
    extension_hours: float


class PolicyCache:
    """TTL cache of detached ActionType snapshots keyed by id."""

    def __init__(self, ttl_seconds: float) -> None:
        self.ttl_seconds = ttl_seconds
        self._entries: dict[UUID, tuple[float, ActionType]] = {}
        self._lock = Lock()

    def get(self, action_type_id: UUID) -> ActionType | None:
        with self._lock:
            entry = self._entries.get(action_type_id)
            if entry is None:
                return None
            stored_at, snapshot = entry
            if time.monotonic() - stored_at > self.ttl_seconds:
                del self._entries[action_type_id]
                return None
        return ActionType.model_validate(snapshot.model_dump())

    def put(self, action_type: ActionType) -> None:
        if self.ttl_seconds <= 0:
            return
        snapshot = ActionType.model_validate(action_type.model_dump())
        with self._lock:
            self._entries[action_type.id] = (time.monotonic(), snapshot)

    def invalidate(self, action_type_id: UUID | None = None) -> None:
        with self._lock:
            if action_type_id is None:
                self._entries.clear()
            else:
                self._entries.pop(action_type_id, None)


policy_cache = PolicyCache(settings.policy_cache_ttl_seconds)


def _normalize_role_tags(tags: list[str] | None) -> list[str]:
    normalized: list[str] = []
    for raw in tags or []:
        tag = raw.strip().lower()
        if not _ROLE_TAG_PATTERN.match(tag):
            raise ValidationError(f"Invalid role tag {raw!r}", field="auto_approval_profiles")
        if tag not in normalized:
            normalized.append(tag)
    return normalized


def _coerce_uuid(value: object, *, field: str) -> UUID:
    try:
        return value if isinstance(value, UUID) else UUID(str(value))
    except ValueError as exc:
        raise ValidationError(f"Invalid UUID in {field}: {value!r}", field=field) from exc


def parse_escalation_policy(raw: dict[str, Any] | None) -> EscalationPolicy | None:
    """Validate and parse an escalation policy document; None means no policy."""
    if not raw:
        return None
    approver_ids = tuple(
        _coerce_uuid(value, field="escalation_policy.approver_ids")
        for value in raw.get("approver_ids") or []
    )
    supervisor_raw = raw.get("supervisor_id")
    supervisor_id = (
        _coerce_uuid(supervisor_raw, field="escalation_policy.supervisor_id")
        if supervisor_raw
        else None
    )
    if not approver_ids and supervisor_id is None:
        raise ValidationError(
            "Escalation policy needs approver_ids or a supervisor_id",
            field="escalation_policy",
        )
    try:
        max_escalations = int(raw.get("max_escalations") or settings.default_max_escalations)
        extension_hours = float(
            raw.get("extension_hours") or settings.default_escalation_extension_hours,
        )
    except (TypeError, ValueError) as exc:
        raise ValidationError("Malformed escalation policy", field="escalation_policy") from exc
    if max_escalations < 1:
        raise ValidationError("max_escalations must be at least 1", field="escalation_policy")
    if extension_hours <= 0:
        raise ValidationError("extension_hours must be positive", field="escalation_policy")
    return EscalationPolicy(
        approver_ids=approver_ids,
        supervisor_id=supervisor_id,
        max_escalations=max_escalations,
        extension_hours=extension_hours,
    )


def _serialize_escalation_policy(policy: EscalationPolicy | None) -> dict[str, object] | None:
    if policy is None:
        return None
    return {
        "approver_ids": [str(value) for value in policy.approver_ids],
        "supervisor_id": str(policy.supervisor_id) if policy.supervisor_id else None,
        "max_escalations": policy.max_escalations,
        "extension_hours": policy.extension_hours,
    }


def _validate_policy(
    values: dict[str, Any],
    *,
    executor: ActionExecutor,
) -> dict[str, Any]:
    strategy = values.get("strategy", "simple")
    if strategy not in VALID_STRATEGIES:
        raise ValidationError(
            f"strategy must be one of: {', '.join(sorted(VALID_STRATEGIES))}",
            field="strategy",
        )
    min_approvers = int(values.get("min_approvers", 1))
    if min_approvers < 1:
        raise ValidationError("min_approvers must be at least 1", field="min_approvers")
    execution_method = str(values.get("execution_method") or "").strip()
    if execution_method and not executor.is_registered(execution_method):
        raise ValidationError(
            f"Unknown execution method {execution_method!r}",
            field="execution_method",
        )
    deadline_hours = values.get("deadline_hours")
    if deadline_hours is not None and float(deadline_hours) <= 0:
        raise ValidationError("deadline_hours must be positive", field="deadline_hours")
    return {
        **values,
        "strategy": strategy,
        "min_approvers": min_approvers,
        "execution_method": execution_method,
        "auto_approval_profiles": _normalize_role_tags(values.get("auto_approval_profiles")),
        "escalation_policy": _serialize_escalation_policy(
            parse_escalation_policy(values.get("escalation_policy")),
        ),
    }


async def _load_action_type(session: AsyncSession, action_type_id: UUID) -> ActionType:
    action_type = await ActionType.objects.by_id(action_type_id).fresh().first(session)
    if action_type is None:
        raise NotFoundError("Action type not found", action_type_id=str(action_type_id))
    return action_type


async def get_policy(session: AsyncSession, action_type_id: UUID) -> ActionType:
    """Return a detached snapshot of the policy, served from cache when fresh."""
    cached = policy_cache.get(action_type_id)
    if cached is not None:
        return cached
    action_type = await _load_action_type(session, action_type_id)
    policy_cache.put(action_type)
    return ActionType.model_validate(action_type.model_dump())


async def get_policy_by_code(session: AsyncSession, code: str) -> ActionType:
    action_type = await ActionType.objects.filter_by(code=code).first(session)
    if action_type is None:
        raise NotFoundError("Action type not found", code=code)
    return action_type


async def list_action_types(
    session: AsyncSession,
    *,
    active: bool | None = None,
) -> list[ActionType]:
    queryset = ActionType.objects.all().order_by(col(ActionType.code).asc())
    if active is not None:
        queryset = queryset.filter(col(ActionType.active) == active)
    return await queryset.all(session)


async def register_action_type(
    session: AsyncSession,
    *,
    code: str,
    name: str,
    description: str = "",
    strategy: str = "simple",
    min_approvers: int = 1,
    allow_self_approval: bool = False,
    auto_approval_profiles: list[str] | None = None,
    execution_method: str = "",
    deadline_hours: float | None = None,
    escalation_policy: dict[str, Any] | None = None,
    executor: ActionExecutor | None = None,
) -> ActionType:
    """Create a new action type after validating its policy."""
    code = code.strip().lower()
    if not _CODE_PATTERN.match(code):
        raise ValidationError(
            "code must be a lowercase slug (letters, digits, underscores)",
            field="code",
        )
    if not name.strip():
        raise ValidationError("name is required", field="name")
    if await ActionType.objects.filter_by(code=code).exists(session):
        raise ValidationError(f"Action type {code!r} already exists", field="code")

    executor = executor or get_action_executor()
    if not execution_method and executor.is_registered(code):
        execution_method = code
    policy = _validate_policy(
        {
            "strategy": strategy,
            "min_approvers": min_approvers,
            "execution_method": execution_method,
            "auto_approval_profiles": auto_approval_profiles,
            "deadline_hours": deadline_hours,
            "escalation_policy": escalation_policy,
        },
        executor=executor,
    )
    now = utcnow()
    action_type = ActionType(
        code=code,
        name=name.strip(),
        description=description,
        allow_self_approval=allow_self_approval,
        created_at=now,
        updated_at=now,
        **policy,
    )
    session.add(action_type)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ValidationError(f"Action type {code!r} already exists", field="code") from exc
    await session.refresh(action_type)
    logger.info(
        "approval.action_type.registered",
        extra={
            "action_type_id": str(action_type.id),
            "code": action_type.code,
            "strategy": action_type.strategy,
            "min_approvers": action_type.min_approvers,
        },
    )
    return action_type


async def is_policy_locked(session: AsyncSession, action_type_id: UUID) -> bool:
    """Whether any request already references the action type."""
    return await ApprovalRequest.objects.filter_by(action_type_id=action_type_id).exists(session)


async def update_policy(
    session: AsyncSession,
    *,
    action_type_id: UUID,
    changes: dict[str, Any],
    executor: ActionExecutor | None = None,
) -> ActionType:
    """Apply descriptive and policy changes; policy fields freeze once referenced."""
    unknown = set(changes) - POLICY_FIELDS - DESCRIPTIVE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
    action_type = await _load_action_type(session, action_type_id)
    policy_changes = {key: value for key, value in changes.items() if key in POLICY_FIELDS}
    if policy_changes and await is_policy_locked(session, action_type_id):
        raise PolicyLocked(
            "Policy fields cannot change once requests reference this action type",
            action_type_id=str(action_type_id),
        )

    if policy_changes:
        current = {field: getattr(action_type, field) for field in POLICY_FIELDS}
        validated = _validate_policy(
            {**current, **policy_changes},
            executor=executor or get_action_executor(),
        )
        for field in policy_changes:
            setattr(action_type, field, validated[field])
        action_type.policy_version += 1
    if "name" in changes:
        if not str(changes["name"]).strip():
            raise ValidationError("name is required", field="name")
        action_type.name = str(changes["name"]).strip()
    if "description" in changes:
        action_type.description = str(changes["description"] or "")

    action_type.updated_at = utcnow()
    session.add(action_type)
    await session.commit()
    await session.refresh(action_type)
    policy_cache.invalidate(action_type.id)
    logger.info(
        "approval.action_type.updated",
        extra={
            "action_type_id": str(action_type.id),
            "fields": sorted(changes),
            "policy_version": action_type.policy_version,
        },
    )
    return action_type


async def _set_active(session: AsyncSession, action_type_id: UUID, *, active: bool) -> ActionType:
    action_type = await _load_action_type(session, action_type_id)
    if action_type.active != active:
        action_type.active = active
        action_type.policy_version += 1
        action_type.updated_at = utcnow()
        session.add(action_type)
        await session.commit()
        await session.refresh(action_type)
    policy_cache.invalidate(action_type.id)
    logger.info(
        "approval.action_type.activation_changed",
        extra={"action_type_id": str(action_type.id), "active": active},
    )
    return action_type


async def activate(session: AsyncSession, action_type_id: UUID) -> ActionType:
    return await _set_active(session, action_type_id, active=True)


async def deactivate(session: AsyncSession, action_type_id: UUID) -> ActionType:
    """Block new submissions; pending requests of this type keep running."""
    return await _set_active(session, action_type_id, active=False)


async def list_standing_approvers(
    session: AsyncSession,
    action_type_id: UUID,
    *,
    include_inactive: bool = False,
) -> list[Approver]:
    queryset = Approver.objects.filter(
        col(Approver.action_type_id) == action_type_id,
        col(Approver.request_id).is_(None),
    )
    if not include_inactive:
        queryset = queryset.filter(col(Approver.active).is_(True))
    return await queryset.order_by(col(Approver.created_at).asc()).all(session)


async def add_standing_approver(
    session: AsyncSession,
    *,
    action_type_id: UUID,
    user_id: UUID,
) -> Approver:
    """Assign a user to decide on every future request of this action type."""
    await _load_action_type(session, action_type_id)
    existing = await Approver.objects.filter(
        col(Approver.action_type_id) == action_type_id,
        col(Approver.request_id).is_(None),
        col(Approver.user_id) == user_id,
    ).first(session)
    if existing is not None and existing.active:
        raise ValidationError(
            "User is already a standing approver for this action type",
            user_id=str(user_id),
        )
    now = utcnow()
    if existing is not None:
        existing.active = True
        existing.updated_at = now
        approver = existing
    else:
        approver = Approver(
            user_id=user_id,
            action_type_id=action_type_id,
            source=SOURCE_STANDING,
            created_at=now,
            updated_at=now,
        )
    session.add(approver)
    await session.commit()
    await session.refresh(approver)
    logger.info(
        "approval.standing_approver.added",
        extra={"action_type_id": str(action_type_id), "user_id": str(user_id)},
    )
    return approver


async def deactivate_standing_approver(
    session: AsyncSession,
    *,
    action_type_id: UUID,
    approver_id: UUID,
) -> Approver:
    """Stop seeding this user into new requests; existing slots and votes stay."""
    approver = await Approver.objects.by_id(approver_id).first(session)
    if (
        approver is None
        or approver.action_type_id != action_type_id
        or approver.request_id is not None
    ):
        raise NotFoundError("Standing approver not found", approver_id=str(approver_id))
    if approver.active:
        approver.active = False
        approver.updated_at = utcnow()
        session.add(approver)
        await session.commit()
        await session.refresh(approver)
    logger.info(
        "approval.standing_approver.deactivated",
        extra={"action_type_id": str(action_type_id), "approver_id": str(approver_id)},
    )
    return approver
