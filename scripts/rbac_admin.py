#!/usr/bin/env python3
"""
RBAC Admin CLI

Command-line interface for the RBAC migration endpoints.

Usage:
    # Current compatibility config and check counters
    python scripts/rbac_admin.py status

    # Migration readiness report as JSON
    python scripts/rbac_admin.py readiness

    # Move 25% of users to the dynamic evaluator during the migration phase
    python scripts/rbac_admin.py set --rollout 25 --phase migration --dynamic

    # Turn fallback off for validation
    python scripts/rbac_admin.py set --phase validation --no-fallback

Environment:
    RBAC_API_URL - Service URL (default: http://localhost:8000)
    RBAC_ADMIN_TOKEN - Bearer token of a super admin
    SECRET_KEY - Used with --user-id to mint a token locally instead
"""

import argparse
import json
import logging
import os
import sys
from typing import Optional

import httpx

logger = logging.getLogger("rbac_admin")

DEFAULT_URL = "http://localhost:8000"


def get_base_url(args) -> str:
    return (args.url or os.environ.get("RBAC_API_URL") or DEFAULT_URL).rstrip("/")


def get_token(args) -> str:
    """Token from --token / RBAC_ADMIN_TOKEN, or minted for --user-id."""
    token: Optional[str] = args.token or os.environ.get("RBAC_ADMIN_TOKEN")
    if token:
        return token

    if args.user_id is None:
        print("Error: provide --token, RBAC_ADMIN_TOKEN or --user-id")
        sys.exit(1)

    from pharmacare_authz.core.security import create_access_token

    return create_access_token({"sub": args.user_id})


def api_request(args, method: str, path: str, **kwargs) -> dict:
    """Make authenticated API request."""
    headers = kwargs.pop("headers", {})
    headers["Authorization"] = f"Bearer {get_token(args)}"

    response = httpx.request(
        method,
        f"{get_base_url(args)}/admin/rbac{path}",
        headers=headers,
        timeout=kwargs.pop("timeout", 30.0),
        **kwargs
    )
    response.raise_for_status()
    return response.json()


# =============================================================================
# COMMANDS
# =============================================================================


def cmd_status(args):
    """Print config and metrics."""
    data = api_request(args, "GET", "/metrics")
    config = data.get("config", {})

    print("\n" + "=" * 60)
    print("RBAC COMPATIBILITY STATUS")
    print("=" * 60)
    print(f"  Dynamic RBAC: {config.get('enable_dynamic_rbac')}")
    print(f"  Legacy fallback: {config.get('enable_legacy_fallback')}")
    print(f"  Deprecation warnings: {config.get('enable_deprecation_warnings')}")
    print(f"  Migration phase: {config.get('migration_phase')}")
    print(f"  Rollout: {config.get('rollout_percentage')}%")

    print("\nMetrics:")
    print(f"  Since: {data.get('collected_since')}")
    print(f"  Dynamic checks: {data.get('dynamic_checks', 0):,}")
    print(f"  Legacy checks: {data.get('legacy_checks', 0):,}")
    print(f"  Fallback usage: {data.get('fallback_usage', 0):,}")
    print(f"  Errors: {data.get('errors', 0):,}")
    print(f"  Avg response: {data.get('average_response_time', 0.0):.2f} ms")


def cmd_readiness(args):
    """Print the migration readiness report."""
    data = api_request(args, "GET", "/readiness", timeout=120.0)
    print(json.dumps(data, indent=2))
    if not data.get("ready_for_migration"):
        sys.exit(2)


def cmd_set(args):
    """Update compatibility config."""
    patch = {}
    if args.rollout is not None:
        patch["rollout_percentage"] = args.rollout
    if args.phase is not None:
        patch["migration_phase"] = args.phase
    if args.dynamic is not None:
        patch["enable_dynamic_rbac"] = args.dynamic
    if args.fallback is not None:
        patch["enable_legacy_fallback"] = args.fallback
    if args.warnings is not None:
        patch["enable_deprecation_warnings"] = args.warnings

    if not patch:
        print("Nothing to update")
        sys.exit(1)

    data = api_request(args, "PATCH", "/config", json=patch)
    print(json.dumps(data["config"], indent=2))

    if data.get("failed_flags"):
        print(f"\nWARNING: not persisted (will revert on restart): {', '.join(data['failed_flags'])}")
        sys.exit(3)


def rollout_percentage(value: str) -> int:
    percentage = int(value)
    if not 0 <= percentage <= 100:
        raise argparse.ArgumentTypeError("rollout must be between 0 and 100")
    return percentage


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="RBAC migration admin CLI")
    parser.add_argument("--url", help=f"Service URL (default: {DEFAULT_URL})")
    parser.add_argument("--token", help="Bearer token of a super admin")
    parser.add_argument("--user-id", type=int, help="Mint a token for this user id using SECRET_KEY")
    parser.add_argument("-v", "--verbose", action="store_true")

    subparsers = parser.add_subparsers(dest="command", required=True)

    status = subparsers.add_parser("status", help="Show config and metrics")
    status.set_defaults(func=cmd_status)

    readiness = subparsers.add_parser("readiness", help="Print migration readiness report")
    readiness.set_defaults(func=cmd_readiness)

    set_cmd = subparsers.add_parser("set", help="Update compatibility config")
    set_cmd.add_argument("--rollout", type=rollout_percentage, help="Rollout percentage (0-100)")
    set_cmd.add_argument(
        "--phase",
        choices=["preparation", "migration", "validation", "cleanup"],
        help="Migration phase",
    )
    set_cmd.add_argument("--dynamic", action=argparse.BooleanOptionalAction, default=None,
                         help="Enable or disable dynamic RBAC")
    set_cmd.add_argument("--fallback", action=argparse.BooleanOptionalAction, default=None,
                         help="Enable or disable legacy fallback")
    set_cmd.add_argument("--warnings", action=argparse.BooleanOptionalAction, default=None,
                         help="Enable or disable deprecation warnings")
    set_cmd.set_defaults(func=cmd_set)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        args.func(args)
    except httpx.HTTPStatusError as e:
        print(f"Request failed: {e.response.status_code} - {e.response.text}")
        sys.exit(1)
    except httpx.RequestError as e:
        print(f"Could not reach {get_base_url(args)}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
