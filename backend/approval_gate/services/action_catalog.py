"""Catalog of critical actions the executor knows how to replay.

Each entry binds an execution method id to the typed payload it accepts and
to the route on the domain API that performs it. The set is closed: a method
id missing here cannot be submitted.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, ClassVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ActionPayload(BaseModel):
    """Base for deferred action payloads; unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    # Field naming the item the action targets; used to detect duplicates.
    target_field: ClassVar[str | None] = None

    def target_ref(self) -> str | None:
        if self.target_field is None:
            return None
        value = getattr(self, self.target_field, None)
        return None if value is None else str(value)


class SolicitationAction(ActionPayload):
    target_field: ClassVar[str | None] = "solicitation_id"

    solicitation_id: UUID
    reason: str = Field(min_length=1)


class BenefitAction(ActionPayload):
    target_field: ClassVar[str | None] = "benefit_id"

    benefit_id: UUID
    reason: str = Field(min_length=1)


class BenefitSuspension(BenefitAction):
    resume_on: date | None = None


class PaymentSuspension(ActionPayload):
    target_field: ClassVar[str | None] = "payment_id"

    payment_id: UUID
    reason: str = Field(min_length=1)


class CitizenStatusChange(ActionPayload):
    target_field: ClassVar[str | None] = "citizen_id"

    citizen_id: UUID
    reason: str = Field(min_length=1)


class UserStatusChange(ActionPayload):
    target_field: ClassVar[str | None] = "user_id"

    user_id: UUID
    reason: str = Field(min_length=1)


class PermissionChange(ActionPayload):
    target_field: ClassVar[str | None] = "user_id"

    user_id: UUID
    grant: list[str] = Field(default_factory=list)
    revoke: list[str] = Field(default_factory=list)


class DocumentDeletion(ActionPayload):
    target_field: ClassVar[str | None] = "document_id"

    document_id: UUID
    reason: str = Field(min_length=1)


class CriticalSettingChange(ActionPayload):
    target_field: ClassVar[str | None] = "key"

    key: str = Field(min_length=1)
    value: str | int | float | bool | None = None


@dataclass(frozen=True)
class ActionHandler:
    """Route on the domain API that performs one critical action."""

    method_id: str
    payload_model: type[ActionPayload]
    http_method: str
    path: str
    description: str = ""

    def parse(self, raw: str) -> ActionPayload:
        return self.payload_model.model_validate_json(raw)

    def render_path(self, payload: dict[str, Any]) -> str:
        return self.path.format(**payload)


def _handlers(*handlers: ActionHandler) -> dict[str, ActionHandler]:
    return {handler.method_id: handler for handler in handlers}


ACTION_HANDLERS: dict[str, ActionHandler] = _handlers(
    ActionHandler(
        "cancelar_solicitacao",
        SolicitationAction,
        "PUT",
        "/v1/beneficio/solicitacoes/{solicitation_id}/cancelar",
        "Cancel a benefit solicitation",
    ),
    ActionHandler(
        "suspender_solicitacao",
        SolicitationAction,
        "PUT",
        "/v1/beneficio/solicitacoes/{solicitation_id}/suspender",
        "Suspend a benefit solicitation",
    ),
    ActionHandler(
        "reativar_solicitacao",
        SolicitationAction,
        "PUT",
        "/v1/beneficio/solicitacoes/{solicitation_id}/reativar",
        "Reactivate a suspended solicitation",
    ),
    ActionHandler(
        "suspender_beneficio",
        BenefitSuspension,
        "POST",
        "/v1/beneficios/{benefit_id}/suspender",
        "Suspend an active benefit",
    ),
    ActionHandler(
        "bloquear_beneficio",
        BenefitAction,
        "POST",
        "/v1/beneficios/{benefit_id}/bloquear",
        "Block a benefit",
    ),
    ActionHandler(
        "desbloquear_beneficio",
        BenefitAction,
        "POST",
        "/v1/beneficios/{benefit_id}/desbloquear",
        "Unblock a benefit",
    ),
    ActionHandler(
        "liberar_beneficio",
        BenefitAction,
        "POST",
        "/v1/beneficios/{benefit_id}/liberar",
        "Release a held benefit",
    ),
    ActionHandler(
        "cancelar_beneficio",
        BenefitAction,
        "POST",
        "/v1/beneficios/{benefit_id}/cancelar",
        "Cancel a benefit",
    ),
    ActionHandler(
        "suspender_pagamento",
        PaymentSuspension,
        "POST",
        "/v1/pagamentos/{payment_id}/suspender",
        "Suspend a scheduled payment",
    ),
    ActionHandler(
        "inativar_cidadao",
        CitizenStatusChange,
        "PATCH",
        "/v1/cidadaos/{citizen_id}/inativar",
        "Deactivate a citizen record",
    ),
    ActionHandler(
        "reativar_cidadao",
        CitizenStatusChange,
        "PATCH",
        "/v1/cidadaos/{citizen_id}/reativar",
        "Reactivate a citizen record",
    ),
    ActionHandler(
        "inativar_usuario",
        UserStatusChange,
        "PATCH",
        "/v1/usuarios/{user_id}/inativar",
        "Deactivate a system user",
    ),
    ActionHandler(
        "reativar_usuario",
        UserStatusChange,
        "PATCH",
        "/v1/usuarios/{user_id}/reativar",
        "Reactivate a system user",
    ),
    ActionHandler(
        "alterar_permissoes",
        PermissionChange,
        "PUT",
        "/v1/usuarios/{user_id}/permissoes",
        "Grant or revoke user permissions",
    ),
    ActionHandler(
        "excluir_documento",
        DocumentDeletion,
        "DELETE",
        "/v1/documentos/{document_id}",
        "Delete an uploaded document",
    ),
    ActionHandler(
        "alterar_configuracao_critica",
        CriticalSettingChange,
        "PUT",
        "/v1/configuracoes/{key}",
        "Change a critical system setting",
    ),
)
