# ruff: noqa: INP001
"""Pytest configuration shared across backend tests."""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from typing import Any

import pytest
import redis

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Deterministic settings for import-time initialization, regardless of shell env.
os.environ["ENVIRONMENT"] = "test"
os.environ["SERVICE_TOKEN"] = "test-service-token-0123456789-0123456789-0123456789x"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DB_AUTO_MIGRATE"] = "false"
os.environ["ESCALATION_SWEEP_ENABLED"] = "false"
os.environ["RQ_DISPATCH_THROTTLE_SECONDS"] = "0"

SERVICE_TOKEN = os.environ["SERVICE_TOKEN"]


class FakeRedis:
    """Just enough of redis-py for the list + delayed-zset queue."""

    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise redis.ConnectionError("redis unavailable")

    def lpush(self, key: str, *values: str | bytes) -> int:
        self._check()
        bucket = self.lists.setdefault(key, [])
        for value in values:
            bucket.insert(0, value.decode() if isinstance(value, bytes) else value)
        return len(bucket)

    def rpop(self, key: str) -> str | None:
        self._check()
        bucket = self.lists.get(key) or []
        return bucket.pop() if bucket else None

    def brpop(self, keys: list[str], timeout: float = 0) -> tuple[str, str] | None:
        del timeout
        for key in keys:
            value = self.rpop(key)
            if value is not None:
                return key, value
        return None

    def zadd(self, key: str, mapping: dict[str, float]) -> int:
        self._check()
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def zrem(self, key: str, *members: str) -> int:
        bucket = self.zsets.get(key, {})
        return sum(1 for member in members if bucket.pop(member, None) is not None)

    def zrangebyscore(
        self,
        key: str,
        low: float | str,
        high: float | str,
        *,
        start: int | None = None,
        num: int | None = None,
        withscores: bool = False,
    ) -> list[Any]:
        lo = float("-inf") if low == "-inf" else float(low)
        hi = float("inf") if high == "+inf" else float(high)
        items = sorted(
            (score, member)
            for member, score in self.zsets.get(key, {}).items()
            if lo <= score <= hi
        )
        if start is not None and num is not None:
            items = items[start : start + num]
        if withscores:
            return [(member, score) for score, member in items]
        return [member for _, member in items]

    def queued(self, key: str) -> list[str]:
        return list(reversed(self.lists.get(key, [])))


class RecordingInvoker:
    """Domain collaborator double that records every replayed action."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.result: dict[str, Any] = {"ok": True}
        self.error: Exception | None = None
        self.delay: float = 0

    async def invoke(self, method_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((method_id, payload))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return dict(self.result)


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch: pytest.MonkeyPatch) -> FakeRedis:
    fake = FakeRedis()

    def _fake_client(redis_url: str | None = None) -> FakeRedis:
        del redis_url
        return fake

    monkeypatch.setattr("approval_gate.services.queue._redis_client", _fake_client)
    return fake


@pytest.fixture(autouse=True)
def invoker(monkeypatch: pytest.MonkeyPatch) -> RecordingInvoker:
    from approval_gate.services.action_executor import ActionExecutor

    recording = RecordingInvoker()
    executor = ActionExecutor(invoker=recording, timeout_seconds=1.0)
    for module in (
        "approval_gate.services.action_registry",
        "approval_gate.services.approval_requests",
        "approval_gate.services.approver_assignment",
        "approval_gate.services.escalation_scheduler",
    ):
        monkeypatch.setattr(f"{module}.get_action_executor", lambda: executor)
    return recording


@pytest.fixture(autouse=True)
def _clear_policy_cache() -> None:
    from approval_gate.services.action_registry import policy_cache

    policy_cache.invalidate()
