#!/usr/bin/env python3
"""Operator CLI for flag documents.

Usage:
    delivery-plane validate config/flags.yaml
    delivery-plane evaluate config/flags.yaml new-checkout --env production --user u-42
    delivery-plane bucket u-42 new-checkout

Exit codes: 0 ok, 2 invalid flag document, 3 unknown flag key.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

from delivery_plane.core.errors import ConfigurationError
from delivery_plane.core.feature_flags import (
    DecisionReason,
    EvaluationContext,
    FlagEvaluationEngine,
    compute_bucket,
    load_flags,
)

EXIT_OK = 0
EXIT_INVALID = 2
EXIT_NOT_FOUND = 3


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        snapshot = load_flags(args.path)
    except ConfigurationError as e:
        print(f"invalid: {e.message}", file=sys.stderr)
        for problem in e.details.get("errors", []):
            print(f"  - {problem['loc']}: {problem['msg']}", file=sys.stderr)
        return EXIT_INVALID
    _print_json({"status": "ok", "flags": sorted(snapshot.flags)})
    return EXIT_OK


def cmd_evaluate(args: argparse.Namespace) -> int:
    try:
        snapshot = load_flags(args.path)
    except ConfigurationError as e:
        print(f"invalid: {e.message}", file=sys.stderr)
        return EXIT_INVALID

    ctx = EvaluationContext.build(args.env, user_id=args.user, segments=args.segment)
    decision = FlagEvaluationEngine(snapshot).evaluate_key(args.key, ctx)
    if decision.reason == DecisionReason.FLAG_NOT_FOUND:
        print(f"unknown flag: {args.key}", file=sys.stderr)
        return EXIT_NOT_FOUND
    _print_json({"flag_key": args.key, **decision.to_dict()})
    return EXIT_OK


def cmd_bucket(args: argparse.Namespace) -> int:
    _print_json({"user_id": args.user_id, "flag_key": args.key, "bucket": compute_bucket(args.user_id, args.key)})
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="delivery-plane", description="Progressive delivery control plane tools")
    sub = ap.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate", help="Validate a JSON/YAML flag document")
    validate.add_argument("path")
    validate.set_defaults(func=cmd_validate)

    evaluate = sub.add_parser("evaluate", help="Evaluate one flag for a context")
    evaluate.add_argument("path")
    evaluate.add_argument("key")
    evaluate.add_argument("--env", required=True, help="Deployment environment")
    evaluate.add_argument("--user", default=None, help="User id")
    evaluate.add_argument("--segment", action="append", default=[], help="User segment (repeatable)")
    evaluate.set_defaults(func=cmd_evaluate)

    bucket = sub.add_parser("bucket", help="Show the rollout bucket of a user for a flag")
    bucket.add_argument("user_id")
    bucket.add_argument("key")
    bucket.set_defaults(func=cmd_bucket)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
