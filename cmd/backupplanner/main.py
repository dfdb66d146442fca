"""Command-line front end: load configuration, compile, and hand the result
to a provisioning backend.

Exit codes: 0 success, 1 configuration error, 2 backend error.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from internal.policy.data import PolicyStore, backend_name, load_policy
from internal.policy.errors import ConfigError
from internal.policy.lifecycle import evaluate, transition_schedule
from internal.policy.serialize import dumps, fingerprint
from internal.provisioning.base import BackendError
from internal.provisioning.factory import get_backend
from internal.scheduler.cron import upcoming_runs

logger = logging.getLogger("backupplanner")

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_BACKEND_ERROR = 2


def _timestamp(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _tags(pairs) -> dict:
    tags = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep:
            raise argparse.ArgumentTypeError(f"tag must be KEY=VALUE, got {pair!r}")
        tags[key] = value
    return tags


def cmd_plan(args, store) -> int:
    policy = load_policy(store)
    sys.stdout.write(dumps(policy))
    if args.runs:
        now = datetime.now(timezone.utc)
        for run in upcoming_runs(policy, now):
            print(f"# {run.tier}: next run {run.run_at.isoformat()} deadline {run.deadline.isoformat()}")
    return EXIT_OK


def cmd_apply(args, store) -> int:
    policy = load_policy(store)
    backend = get_backend(args.backend or backend_name(store.load()))
    handle = backend.apply(policy)
    logger.info("Applied via %s: id=%s changed=%s", handle.backend, handle.id, handle.changed)
    print(json.dumps({
        "backend": handle.backend,
        "id": handle.id,
        "fingerprint": handle.fingerprint,
        "changed": handle.changed,
    }, indent=2))
    return EXIT_OK


def cmd_evaluate(args, store) -> int:
    policy = load_policy(store)
    tags = _tags(args.tag)
    created_at = _timestamp(args.created_at)
    now = _timestamp(args.now) if args.now else datetime.now(timezone.utc)
    results = []
    for tier in policy.tiers_for(tags):
        schedule = transition_schedule(created_at, tier.retention)
        results.append({
            "tier": tier.name,
            "state": evaluate(created_at, tier.retention, now).value,
            "transitions": {state.value: ts.isoformat() for state, ts in schedule.items()},
            "archiveEligible": tier.retention.archive_eligible,
        })
    print(json.dumps({"fingerprint": fingerprint(policy), "matches": results}, indent=2))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="backupplanner", description=__doc__.splitlines()[0])
    parser.add_argument("--config", help="policy YAML (default: $BACKUP_POLICY_PATH or config/policy.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    plan = sub.add_parser("plan", help="compile and print the serialized policy")
    plan.add_argument("--runs", action="store_true", help="also list the next run of each tier")
    plan.set_defaults(func=cmd_plan)

    apply = sub.add_parser("apply", help="compile and apply through a provisioning backend")
    apply.add_argument("--backend", help="memory or crossplane (default: $BACKUP_BACKEND)")
    apply.set_defaults(func=cmd_apply)

    ev = sub.add_parser("evaluate", help="show tier membership and lifecycle state for a resource")
    ev.add_argument("--tag", action="append", metavar="KEY=VALUE")
    ev.add_argument("--created-at", required=True, help="recovery point creation time (ISO 8601)")
    ev.add_argument("--now", help="evaluation time (ISO 8601, default: current time)")
    ev.set_defaults(func=cmd_evaluate)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    store = PolicyStore(args.config)
    try:
        return args.func(args, store)
    except ConfigError as exc:
        logger.warning("Configuration error: %s", exc)
        print(f"error: {exc.kind}: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except BackendError as exc:
        logger.error("Backend error: %s", exc)
        print(f"error: backend {exc.backend}: {exc}", file=sys.stderr)
        return EXIT_BACKEND_ERROR
    except (ValueError, argparse.ArgumentTypeError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    sys.exit(main())
