#!/usr/bin/env python3
"""CLI tools for operating the Campaign Dialer.

Usage:
    python -m campaign_dialer.cli serve                  # Run the API server
    python -m campaign_dialer.cli init-db                # Create tables
    python -m campaign_dialer.cli token USER ACCOUNT     # Issue a dashboard token
    python -m campaign_dialer.cli tick                   # Run one dispatch tick
    python -m campaign_dialer.cli cleanup                # Enqueue and run the stale-call sweep
    python -m campaign_dialer.cli reset-daily            # Zero daily outbound number counters
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import timedelta

from campaign_dialer.config import get_settings
from campaign_dialer.core.security import ROLES, create_access_token, resolve_secret
from campaign_dialer.log import get_logger, setup_logging

log = get_logger(__name__)


def serve(args: argparse.Namespace) -> int:
    from campaign_dialer.main import run

    run()
    return 0


def init_db(args: argparse.Namespace) -> int:
    from campaign_dialer.db.session import Database

    async def _init() -> None:
        database = Database.from_settings(get_settings().database)
        try:
            await database.create_all()
        finally:
            await database.dispose()

    asyncio.run(_init())
    print("Database tables created")
    return 0


def issue_token(args: argparse.Namespace) -> int:
    settings = get_settings()
    token = create_access_token(
        args.user_id,
        account_id=args.account_id,
        role=args.role,
        secret=resolve_secret(settings.jwt_secret_key, settings.environment),
        algorithm=settings.jwt_algorithm,
        expires_delta=timedelta(minutes=args.minutes or settings.jwt_expiry_minutes),
    )
    print(token)
    return 0


def tick(args: argparse.Namespace) -> int:
    from campaign_dialer.dependencies import build_services, stop_services

    async def _tick() -> dict:
        services = build_services(get_settings())
        try:
            await services.database.create_all()
            report = await services.dispatch_queue.tick()
            return report.to_dict()
        finally:
            await stop_services(services)

    print(json.dumps(asyncio.run(_tick()), indent=2, default=str))
    return 0


def cleanup(args: argparse.Namespace) -> int:
    from campaign_dialer.dependencies import build_services, stop_services

    async def _cleanup() -> dict:
        services = build_services(get_settings())
        try:
            await services.database.create_all()
            await services.jobs.enqueue(
                "cleanup-stale-calls", {"older_than_hours": args.hours}
            )
            ran = await services.jobs.run_until_idle()
            return {"jobs_run": ran, **(await services.jobs.get_stats())}
        finally:
            await stop_services(services)

    print(json.dumps(asyncio.run(_cleanup()), indent=2, default=str))
    return 0


def reset_daily(args: argparse.Namespace) -> int:
    from campaign_dialer.dependencies import build_services, stop_services

    async def _reset() -> int:
        services = build_services(get_settings())
        try:
            await services.database.create_all()
            return await services.dispatch_queue.reset_daily_counters()
        finally:
            await stop_services(services)

    print(json.dumps({"numbers_reset": asyncio.run(_reset())}))
    return 0


def main() -> int:
    settings = get_settings()
    setup_logging(
        level=settings.log_level,
        json_output=settings.log_json,
        service_name="campaign-dialer-cli",
        environment=settings.environment,
    )

    parser = argparse.ArgumentParser(
        prog="campaign-dialer",
        description="Campaign Dialer operations",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Run the API server").set_defaults(func=serve)
    subparsers.add_parser("init-db", help="Create database tables").set_defaults(func=init_db)

    token_parser = subparsers.add_parser("token", help="Issue a JWT for the API and dashboard")
    token_parser.add_argument("user_id")
    token_parser.add_argument("account_id")
    token_parser.add_argument("--role", choices=ROLES, default="supervisor")
    token_parser.add_argument("--minutes", type=int, default=None)
    token_parser.set_defaults(func=issue_token)

    subparsers.add_parser("tick", help="Run one dispatch tick").set_defaults(func=tick)

    cleanup_parser = subparsers.add_parser("cleanup", help="Reconcile stale call attempts")
    cleanup_parser.add_argument("--hours", type=float, default=settings.jobs.stale_call_hours)
    cleanup_parser.set_defaults(func=cleanup)

    subparsers.add_parser(
        "reset-daily", help="Zero daily outbound number call counts"
    ).set_defaults(func=reset_daily)

    args = parser.parse_args()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
