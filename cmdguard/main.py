"""Command-line entry point for cmdguard."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from cmdguard import __version__
from cmdguard.config import load_config
from cmdguard.config.settings import Settings
from cmdguard.exceptions import (
    ConfigurationError,
    ConfirmationRequiredError,
    RateLimitError,
    SecurityError,
    StatePersistenceError,
)
from cmdguard.security.audit import AuditContext, AuditLogger
from cmdguard.security.correlation import CorrelationContext
from cmdguard.security.primitives import sanitize_output
from cmdguard.security.rate_limiter import RateLimiter
from cmdguard.security.reporter import SecurityEventReporter
from cmdguard.utils.constants import EXIT_FAILURE, EXIT_OK, EXIT_RATE_LIMITED


def setup_logging(debug: bool = False, level_name: str = "INFO") -> None:
    """Configure structured logging on stderr; stdout carries command output."""
    level = logging.DEBUG if debug else getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        stream=sys.stderr,
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            (
                structlog.processors.JSONRenderer()
                if not debug
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="cmdguard",
        description="Command admission control and tamper-evident audit log",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version", action="version", version=f"cmdguard {__version__}"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--config-file", type=Path, help="Path to configuration file")

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("status", help="Show rate limit usage per command")

    check = commands.add_parser("check", help="Check whether a command may run")
    check.add_argument("name", help="Command name")
    check.add_argument(
        "--no-increment",
        action="store_true",
        help="Do not record this check as an invocation",
    )

    enforce = commands.add_parser("enforce", help="Admit a command or fail")
    enforce.add_argument("name", help="Command name")

    reset = commands.add_parser("reset", help="Clear rate limit history")
    reset.add_argument("--command", dest="target", help="Only reset this command")
    reset.add_argument(
        "--force", action="store_true", help="Confirm the security-sensitive reset"
    )

    verify = commands.add_parser("verify", help="Verify audit log signatures")
    verify.add_argument("--hours", type=float, help="Only check recent entries")
    verify.add_argument(
        "--verbose", action="store_true", help="Also list unsigned entries"
    )

    commands.add_parser("rotate-key", help="Rotate the audit signing key")

    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    return build_parser().parse_args(argv)


def create_application(config: Settings) -> Dict[str, Any]:
    """Wire the security components together."""
    correlation = CorrelationContext()
    correlation.from_environment()

    audit_logger = AuditLogger(config, correlation=correlation, context=AuditContext())
    reporter = SecurityEventReporter(audit_logger)
    rate_limiter = RateLimiter(config, reporter=reporter, correlation=correlation)

    return {
        "config": config,
        "correlation": correlation,
        "audit_logger": audit_logger,
        "reporter": reporter,
        "rate_limiter": rate_limiter,
    }


def _emit(payload: Any) -> None:
    text = json.dumps(payload, indent=2, default=str)
    print(sanitize_output(text, max_length=len(text), max_newlines=text.count("\n")))


async def run_command(args: argparse.Namespace, app: Dict[str, Any]) -> int:
    """Execute one subcommand and return its exit code."""
    logger = structlog.get_logger()
    config: Settings = app["config"]
    rate_limiter: RateLimiter = app["rate_limiter"]
    audit_logger: AuditLogger = app["audit_logger"]

    if args.command == "status":
        _emit(await rate_limiter.get_rate_limit_status())
        return EXIT_OK

    if args.command == "check":
        result = await rate_limiter.check_rate_limit(
            args.name, increment=not args.no_increment
        )
        _emit(result.to_dict())
        return EXIT_OK if result.allowed else EXIT_RATE_LIMITED

    if args.command == "enforce":
        try:
            result = await rate_limiter.enforce_rate_limit(
                args.name, {"command": args.name}
            )
        except RateLimitError as e:
            _emit(e.to_dict())
            return EXIT_RATE_LIMITED
        _emit(result.to_dict())
        return EXIT_OK

    if args.command == "reset":
        try:
            await rate_limiter.reset_rate_limits(args.target, force=args.force)
        except ConfirmationRequiredError as e:
            logger.error("Reset refused", error=str(e))
            return EXIT_FAILURE
        _emit({"reset": args.target or "ALL"})
        return EXIT_OK

    if args.command == "verify":
        hours = args.hours if args.hours is not None else config.audit_verify_hours
        report = await audit_logger.verify_audit_integrity(
            hours=hours, verbose=args.verbose or config.verbose
        )
        _emit(report.to_dict())
        return EXIT_OK if report.valid else EXIT_FAILURE

    if args.command == "rotate-key":
        rotated = await audit_logger.rotate_signing_key()
        _emit({"rotated": rotated, "key_id": audit_logger.keyring.active_key_id})
        return EXIT_OK if rotated else EXIT_FAILURE

    logger.error("Unknown command", command=args.command)
    return EXIT_FAILURE


async def async_main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, load configuration and run the subcommand."""
    args = parse_args(argv)
    setup_logging(debug=args.debug)

    logger = structlog.get_logger()
    logger.debug("Starting cmdguard", version=__version__, command=args.command)

    try:
        config = load_config(config_file=args.config_file)
        if not args.debug:
            setup_logging(debug=config.debug, level_name=config.log_level)

        app = create_application(config)
        return await run_command(args, app)

    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e))
        return EXIT_FAILURE
    except (SecurityError, StatePersistenceError, OSError) as e:
        logger.error("Command failed", error=str(e), error_type=type(e).__name__)
        return EXIT_FAILURE


def main() -> None:
    """Synchronous entry point for setuptools."""
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
