"""polystore CLI - storage health, stats and quota checks with JSON output.

Usage:
    polystore health [--timeout SECONDS]
    polystore stats
    polystore primary
    polystore quota check --quota BYTES --used BYTES --add BYTES

Backends are configured from POLYSTORE_* environment variables.

Exit codes:
    0: Success / all backends UP / upload allowed
    1: Configuration error / internal error
    2: A backend is DOWN / upload denied by quota
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from polystore.config import build_gateway, build_prober, load_storage_settings
from polystore.health.prober import StorageHealthProber
from polystore.observability.tracing import TracingConfigError, configure_tracing
from polystore.quota.errors import QuotaError
from polystore.quota.quota import Quota
from polystore.storage.errors import StorageConfigError, StorageError

logger = logging.getLogger(__name__)


def _output_json(data: Any) -> None:
    """Output JSON to stdout with deterministic ordering."""
    print(json.dumps(data, sort_keys=True, indent=2))


def _error(code: str, message: str, errors: list[str] | None = None) -> dict[str, Any]:
    return {"error": {"code": code, "message": message, "details": errors or []}}


def cmd_health(args: argparse.Namespace) -> int:
    """Probe every configured backend.

    The gateway is not closed while a check is still running past the timeout.

    Exit codes:
        0: every backend UP
        2: at least one backend DOWN
    """
    settings = load_storage_settings()
    gateway = build_gateway(settings)
    prober: StorageHealthProber | None = None
    try:
        prober = build_prober(settings, gateway)
        if args.timeout is not None:
            prober = StorageHealthProber(
                gateway,
                timeout_seconds=args.timeout,
                usage_warning_percent=settings.health.usage_warning_percent,
                usage_critical_percent=settings.health.usage_critical_percent,
            )
        summary = prober.probe_all()
    finally:
        if prober is not None and prober.has_pending_checks:
            logger.warning("Health checks still running; leaving backends open")
        else:
            gateway.close()

    _output_json(summary.model_dump(mode="json"))
    return 0 if summary.status == "UP" else 2


def cmd_stats(args: argparse.Namespace) -> int:
    """Print capacity and object counts of every configured backend."""
    gateway = build_gateway(load_storage_settings())
    try:
        stats = [
            {"backend": backend.backend_name, **backend.get_stats().to_dict()}
            for backend in gateway.list()
        ]
    finally:
        gateway.close()
    _output_json(stats)
    return 0


def cmd_primary(args: argparse.Namespace) -> int:
    """Print the backend that new objects are written to."""
    gateway = build_gateway(load_storage_settings())
    try:
        primary = gateway.get_primary()
        _output_json(
            {"storage_type": primary.storage_type.value, "backend": primary.backend_name}
        )
    finally:
        gateway.close()
    return 0


def cmd_quota_check(args: argparse.Namespace) -> int:
    """Check whether an upload of ``--add`` bytes fits a quota.

    Exit codes:
        0: the upload fits
        1: the quota values or the upload size are invalid
        2: the upload would exceed the quota
    """
    try:
        quota = Quota(quota=args.quota, used=args.used)
    except QuotaError as e:
        _output_json(_error("INVALID_QUOTA", e.message))
        return 1
    if args.add < 0:
        _output_json(_error("INVALID_QUOTA", f"Upload size must not be negative: {args.add}"))
        return 1

    allowed = quota.has_enough_space(args.add)
    after = quota.add_usage(args.add) if allowed else quota
    _output_json(
        {
            "allowed": allowed,
            "usage_ratio": round(after.usage_ratio(), 4),
            "remaining": after.remaining_space(),
            "info": after.format_info(),
        }
    )
    return 0 if allowed else 2


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="polystore",
        description="polystore - multi-backend storage CLI",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    health_parser = subparsers.add_parser(
        "health",
        help="Probe every configured storage backend",
    )
    health_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Per-backend probe timeout (overrides POLYSTORE_HEALTH_PROBE_TIMEOUT_SECONDS)",
    )

    subparsers.add_parser("stats", help="Show capacity and object counts per backend")
    subparsers.add_parser("primary", help="Show the primary storage backend")

    quota_parser = subparsers.add_parser("quota", help="Quota arithmetic")
    quota_subparsers = quota_parser.add_subparsers(
        dest="quota_command",
        help="Quota subcommands",
    )
    check_parser = quota_subparsers.add_parser(
        "check",
        help="Check whether an upload fits a quota",
    )
    check_parser.add_argument("--quota", type=int, required=True, metavar="BYTES")
    check_parser.add_argument("--used", type=int, default=0, metavar="BYTES")
    check_parser.add_argument("--add", type=int, required=True, metavar="BYTES")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Exit codes:
        0: Success / UP / allowed
        1: Configuration error / internal error
        2: DOWN / denied
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        if args.command is None:
            parser.print_help()
            return 0

        configure_tracing()

        if args.command == "health":
            return cmd_health(args)

        if args.command == "stats":
            return cmd_stats(args)

        if args.command == "primary":
            return cmd_primary(args)

        if args.command == "quota":
            if getattr(args, "quota_command", None) == "check":
                return cmd_quota_check(args)
            parser.parse_args(["quota", "--help"])
            return 0

        return 0

    except TracingConfigError as e:
        _output_json(_error("TRACING_UNAVAILABLE", str(e)))
        return 1
    except StorageConfigError as e:
        _output_json(_error("CONFIGURATION_ERROR", e.message, e.errors))
        return 1
    except StorageError as e:
        _output_json(_error(e.kind.value, str(e)))
        return 1
    except Exception as e:
        # Fail-closed: unexpected errors return exit code 1
        _output_json(_error("INTERNAL_ERROR", str(e)))
        return 1


if __name__ == "__main__":
    sys.exit(main())
