"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the health engine.

- Provides argparse-based CLI
- Loads configuration from YAML, environment and CLI flags
- One-shot commands against the configured stores

============================================================
USAGE
============================================================
python app.py run
python app.py run --no-api --log-format json
python app.py trigger Backups --triggered-by dba.oncall
python app.py consolidate
python app.py status
python app.py seed --database-url sqlite:///health.db

============================================================
"""

import argparse
import json
import logging
import sys
from typing import Any, List, Optional

from core.exceptions import ConfigurationError
from health_scoring.config import EngineConfig, load_config
from health_scoring.models import CollectorKind, RunStatus


logger = logging.getLogger(__name__)

COMMANDS = ("run", "trigger", "consolidate", "status", "seed")


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="health-engine",
        description="Fleet health scoring engine: collector scheduler, scoring and consolidation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  run          - Schedule every enabled collector and the consolidator, serve the admin API
  trigger      - Run one collector once (tagged Manual) and print the outcome
  consolidate  - Run one consolidation cycle and print the result
  status       - Print collector summary and fleet summary
  seed         - Create shipped configs and rules where missing

Examples:
  %(prog)s run --config health.yaml
  %(prog)s trigger Backups --triggered-by dba.oncall
  %(prog)s status --log-level WARNING
        """
    )

    parser.add_argument(
        "command",
        nargs="?",
        choices=COMMANDS,
        default="run",
        help="Command to execute (default: run)",
    )
    parser.add_argument(
        "collector",
        nargs="?",
        help="Collector kind for the trigger command",
    )

    # --------------------------------------------------------
    # Configuration Options
    # --------------------------------------------------------
    config_group = parser.add_argument_group("Configuration Options")

    config_group.add_argument(
        "--config", "-c",
        type=str,
        metavar="PATH",
        help="YAML configuration file",
    )

    config_group.add_argument(
        "--database-url",
        type=str,
        help="Database URL (overrides DATABASE_URL; in-memory stores when unset)",
    )

    config_group.add_argument(
        "--triggered-by",
        type=str,
        default="cli",
        help="Operator identity recorded on manual runs (default: cli)",
    )

    # --------------------------------------------------------
    # API Options
    # --------------------------------------------------------
    api_group = parser.add_argument_group("API Options")

    api_group.add_argument(
        "--host",
        type=str,
        help="Admin API bind address",
    )

    api_group.add_argument(
        "--port",
        type=int,
        help="Admin API port",
    )

    api_group.add_argument(
        "--no-api",
        action="store_true",
        help="Do not serve the admin API",
    )

    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    logging_group = parser.add_argument_group("Logging Options")

    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )

    logging_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        help="Log output format",
    )

    return parser


# ============================================================
# ARGUMENT VALIDATION
# ============================================================

def validate_args(args: argparse.Namespace) -> List[str]:
    """Validate parsed arguments; returns a list of errors."""
    errors = []

    if args.command == "trigger":
        if not args.collector:
            errors.append("trigger requires a collector kind")
        elif args.collector not in [k.value for k in CollectorKind]:
            errors.append(
                f"Unknown collector '{args.collector}'. "
                f"Available: {', '.join(k.value for k in CollectorKind)}"
            )
    elif args.collector:
        errors.append(f"{args.command} does not take a collector argument")

    if args.port is not None and not 0 < args.port < 65536:
        errors.append("--port must be within 1..65535")

    return errors


def build_config(args: argparse.Namespace) -> EngineConfig:
    """
    Build configuration from YAML, environment and CLI flags.

    Raises:
        ConfigurationError: invalid resulting configuration
    """
    config = load_config(args.config)

    if args.database_url:
        config.database_url = args.database_url
    if args.host:
        config.api_host = args.host
    if args.port is not None:
        config.api_port = args.port
    if args.log_level:
        config.log_level = args.log_level
    if args.log_format:
        config.log_format = args.log_format

    return config.ensure_valid()


def requires_sampling(args: argparse.Namespace) -> bool:
    """Commands that reach instances through the provider and sampler."""
    return args.command in ("run", "trigger")


# ============================================================
# ONE-SHOT COMMANDS
# ============================================================

def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def run_command(application: Any, args: argparse.Namespace) -> int:
    """
    Execute a one-shot command against a built application.

    Returns:
        Exit code
    """
    if args.command == "seed":
        _print_json(application.seed_report.to_dict())
        return 0

    if args.command == "status":
        _print_json({
            "collectors": await application.admin.get_summary(),
            "fleet": await application.admin.fleet_summary(),
            "consolidator": application.admin.consolidator_status(),
        })
        return 0

    if args.command == "consolidate":
        result = await application.admin.run_consolidation_now()
        _print_json(result.to_dict())
        return 0 if not result.failed_instances else 1

    if args.command == "trigger":
        orchestrator = application.orchestrator
        outcome = await orchestrator.trigger_now(args.collector, triggered_by=args.triggered_by)
        if not outcome.accepted:
            print(f"Trigger rejected: {outcome.value}", file=sys.stderr)
            return 1
        result = await orchestrator.wait_for_run(args.collector)
        _print_json(result.to_dict() if result else None)
        return 0 if result and result.status == RunStatus.COMPLETED else 1

    raise ConfigurationError(f"Unsupported one-shot command: {args.command}")


def print_banner(args: argparse.Namespace, config: EngineConfig) -> None:
    """Print startup banner."""
    print()
    print("=" * 60)
    print("  FLEET HEALTH SCORING ENGINE")
    print("=" * 60)
    print(f"  Command:       {args.command}")
    print(f"  Database:      {(config.database_url or 'in-memory').split('@')[-1]}")
    print(f"  Inventory:     {config.inventory_url or 'none'}")
    print(f"  Metrics:       {config.metrics_url or 'none'}")
    print(f"  Consolidation: every {config.consolidation_interval_seconds}s")
    if not args.no_api:
        print(f"  Admin API:     http://{config.api_host}:{config.api_port}/api")
    print(f"  Log Level:     {config.log_level}")
    print("=" * 60)
    print()


__all__ = [
    "COMMANDS",
    "create_parser",
    "validate_args",
    "build_config",
    "requires_sampling",
    "run_command",
    "print_banner",
]
