"""CLI script to register one action type per known critical action."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from uuid import UUID

BACKEND_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_ROOT))

# Actions whose default policy needs more than one approver.
_MAJORITY_DEFAULTS: dict[str, int] = {
    "suspender_beneficio": 3,
    "cancelar_beneficio": 3,
    "suspender_pagamento": 3,
    "alterar_permissoes": 2,
    "alterar_configuracao_critica": 3,
}


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Register the critical action catalog as approval action types.",
    )
    parser.add_argument(
        "--approver",
        action="append",
        default=[],
        help="User UUID added as a standing approver to every seeded type (repeatable)",
    )
    parser.add_argument(
        "--deadline-hours",
        type=float,
        default=72.0,
        help="Default approval deadline for seeded types (default: 72)",
    )
    parser.add_argument(
        "--auto-approve-profile",
        action="append",
        default=[],
        help="Role tag whose requests are approved without voting (repeatable)",
    )
    return parser.parse_args()


async def _run() -> int:
    from approval_gate.core.errors import NotFoundError, ValidationError
    from approval_gate.db.session import async_session_maker, init_db
    from approval_gate.services import action_registry
    from approval_gate.services.action_catalog import ACTION_HANDLERS

    args = _parse_args()
    approver_ids = [UUID(value) for value in args.approver]
    await init_db()

    created = 0
    skipped = 0
    async with async_session_maker() as session:
        for method_id, handler in ACTION_HANDLERS.items():
            try:
                existing = await action_registry.get_policy_by_code(session, method_id)
            except NotFoundError:
                existing = None
            if existing is not None:
                sys.stdout.write(f"skip code={method_id} reason=already registered\n")
                skipped += 1
                continue
            quorum = _MAJORITY_DEFAULTS.get(method_id)
            try:
                action_type = await action_registry.register_action_type(
                    session,
                    code=method_id,
                    name=handler.description or method_id,
                    description=handler.description,
                    strategy="majority" if quorum else "simple",
                    min_approvers=quorum or 1,
                    auto_approval_profiles=list(args.auto_approve_profile),
                    execution_method=method_id,
                    deadline_hours=args.deadline_hours,
                )
            except ValidationError as exc:
                sys.stdout.write(f"skip code={method_id} reason={exc.detail}\n")
                skipped += 1
                continue
            for user_id in approver_ids:
                await action_registry.add_standing_approver(
                    session,
                    action_type_id=action_type.id,
                    user_id=user_id,
                )
            sys.stdout.write(
                f"created code={action_type.code} strategy={action_type.strategy} "
                f"min_approvers={action_type.min_approvers}\n",
            )
            created += 1

    sys.stdout.write(f"created={created} skipped={skipped}\n")
    return 0


def main() -> None:
    """Run the async CLI workflow and exit with its return code."""
    raise SystemExit(asyncio.run(_run()))


if __name__ == "__main__":
    main()
