"""Action executor: replay an approved request against the domain API.

The executor runs once per transition into `approved`, called by whichever
writer committed that transition. The outcome (`executed` with a result or
`execution_error` with the failure detail) is written with the same guarded
update used by votes. Failed executions are never retried automatically.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from approval_gate.core.config import settings
from approval_gate.core.errors import ExecutionError, InvalidState, ValidationError
from approval_gate.core.logging import get_logger
from approval_gate.core.time import utcnow
from approval_gate.services.action_catalog import ACTION_HANDLERS, ActionHandler, ActionPayload
from approval_gate.services.notifications.queue import (
    TEMPLATE_EXECUTED,
    TEMPLATE_EXECUTION_FAILED,
    ApprovalNotification,
    enqueue_notification,
)
from approval_gate.services.request_state import (
    STATUS_APPROVED,
    STATUS_EXECUTED,
    STATUS_EXECUTION_ERROR,
    SYSTEM_ACTOR_ID,
    guarded_update,
    load_request,
)
from approval_gate.services.transitions import ACTOR_SYSTEM

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sqlmodel.ext.asyncio.session import AsyncSession

    from approval_gate.models.approval_requests import ApprovalRequest

logger = get_logger(__name__)


class DomainInvoker(Protocol):
    """Collaborator that performs the real mutation in the domain system."""

    async def invoke(self, method_id: str, payload: dict[str, Any]) -> dict[str, Any]: ...


class HttpDomainInvoker:
    """Replays approved actions as HTTP calls against the domain API."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str = "",
        handlers: Mapping[str, ActionHandler] = ACTION_HANDLERS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._handlers = handlers
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"X-Approval-Executed": "true"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def invoke(self, method_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        handler = self._handlers.get(method_id)
        if handler is None:
            raise ExecutionError(f"No route registered for {method_id!r}")
        async with httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers(),
            transport=self._transport,
        ) as client:
            response = await client.request(
                handler.http_method,
                handler.render_path(payload),
                json=payload,
            )
        if response.is_error:
            raise ExecutionError(
                f"Domain API answered {response.status_code} for {method_id}",
                status_code=response.status_code,
                body=response.text[:500],
            )
        if not response.content:
            return {}
        body = response.json()
        return body if isinstance(body, dict) else {"data": body}


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    result: dict[str, Any] | None = None
    error: str | None = None


@dataclass
class ActionExecutor:
    """Looks up the handler for a request's method and invokes the collaborator."""

    invoker: DomainInvoker
    handlers: Mapping[str, ActionHandler] = field(default_factory=lambda: ACTION_HANDLERS)
    timeout_seconds: float = field(default_factory=lambda: settings.execution_timeout_seconds)

    def is_registered(self, method_id: str) -> bool:
        return method_id in self.handlers

    def validate_payload(self, method_id: str, raw_payload: str) -> ActionPayload:
        """Parse a submitted payload so bad requests fail before anyone votes."""
        handler = self.handlers.get(method_id)
        if handler is None:
            raise ValidationError(
                f"Unknown execution method {method_id!r}",
                execution_method=method_id,
            )
        try:
            return handler.parse(raw_payload)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Payload does not match execution method {method_id!r}",
                errors=exc.errors(include_url=False),
            ) from exc

    async def _run(self, request: ApprovalRequest) -> dict[str, Any]:
        handler = self.handlers.get(request.execution_method)
        if handler is None:
            raise ExecutionError(f"No handler registered for {request.execution_method!r}")
        payload = handler.parse(request.action_payload)
        return await asyncio.wait_for(
            self.invoker.invoke(
                handler.method_id,
                payload.model_dump(mode="json", exclude_unset=True),
            ),
            timeout=self.timeout_seconds,
        )

    async def execute(self, session: AsyncSession, request: ApprovalRequest) -> ExecutionResult:
        """Run the deferred action of an approved request and record the outcome."""
        if request.status != STATUS_APPROVED:
            raise InvalidState(
                f"Only approved requests can be executed (status={request.status!r})",
                request_id=str(request.id),
            )
        try:
            result = await self._run(request)
            outcome = ExecutionResult(success=True, result=result)
        except TimeoutError:
            outcome = ExecutionResult(
                success=False,
                error=f"Execution timed out after {self.timeout_seconds:g}s",
            )
        except (ExecutionError, PydanticValidationError, httpx.HTTPError) as exc:
            outcome = ExecutionResult(success=False, error=str(exc) or type(exc).__name__)
        except Exception as exc:
            logger.exception(
                "approval.execution.unexpected_error",
                extra={"request_id": str(request.id), "method": request.execution_method},
            )
            outcome = ExecutionResult(success=False, error=f"{type(exc).__name__}: {exc}")

        await self._record(session, request, outcome)
        return outcome

    async def _record(
        self,
        session: AsyncSession,
        request: ApprovalRequest,
        outcome: ExecutionResult,
    ) -> None:
        now = utcnow()
        if outcome.success:
            to_status = STATUS_EXECUTED
            values: dict[str, Any] = {"executed_at": now, "execution_result": outcome.result}
        else:
            to_status = STATUS_EXECUTION_ERROR
            values = {"executed_at": now, "execution_error": outcome.error}

        swapped = await guarded_update(
            session,
            request=request,
            to_status=to_status,
            actor_id=SYSTEM_ACTOR_ID,
            actor_type=ACTOR_SYSTEM,
            reason=outcome.error or "executed",
            values=values,
        )
        if not swapped:
            # Only the committer of `approved` executes, so a lost race here
            # means the row changed underneath us; surface the stored state.
            await session.rollback()
            current = await load_request(session, request.id)
            logger.error(
                "approval.execution.record_conflict",
                extra={"request_id": str(request.id), "status": current.status},
            )
            return
        await session.commit()

        log = logger.info if outcome.success else logger.warning
        log(
            "approval.execution.finished",
            extra={
                "request_id": str(request.id),
                "code": request.code,
                "method": request.execution_method,
                "status": to_status,
                "error": outcome.error,
            },
        )
        enqueue_notification(
            ApprovalNotification(
                template=TEMPLATE_EXECUTED if outcome.success else TEMPLATE_EXECUTION_FAILED,
                request_id=request.id,
                request_code=request.code,
                target_ids=[request.requester_id],
                context={"status": to_status, "error": outcome.error},
            ),
        )


@lru_cache
def get_action_executor() -> ActionExecutor:
    """Process-wide executor wired to the configured domain API."""
    return ActionExecutor(
        invoker=HttpDomainInvoker(
            settings.domain_api_base_url,
            token=settings.domain_api_token,
        ),
    )
