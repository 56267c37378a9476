"""CLI script to run the notification queue worker or register the sweep schedule."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_ROOT))


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Approval gate background processes.")
    parser.add_argument(
        "--bootstrap-sweep",
        action="store_true",
        help="Register the recurring escalation sweep with rq-scheduler and exit",
    )
    parser.add_argument(
        "--sweep-interval",
        type=int,
        default=None,
        help="Override ESCALATION_SWEEP_INTERVAL_SECONDS for the registered job",
    )
    return parser.parse_args()


def main() -> None:
    from approval_gate.core.logging import configure_logging
    from approval_gate.services.queue_worker import run_worker
    from approval_gate.services.sweep_schedule import bootstrap_sweep_schedule

    args = _parse_args()
    configure_logging()
    if args.bootstrap_sweep:
        bootstrap_sweep_schedule(interval_seconds=args.sweep_interval)
        return
    run_worker()


if __name__ == "__main__":
    main()
