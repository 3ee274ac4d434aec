#!/usr/bin/env python3
"""
Fleet Health Scoring Engine - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
This is the ONE executable entry point for the engine.

- Compatible with PM2 / systemd process management
- Can be started, stopped, and restarted safely
- Handles SIGINT / SIGTERM gracefully (in-flight runs drain)
- Wires stores, collectors, consolidator and admin API into
  one controlled runtime

============================================================
USAGE
============================================================
Direct execution:
    python app.py run

One-shot commands:
    python app.py trigger Backups --triggered-by dba.oncall
    python app.py consolidate
    python app.py status

Environment-based configuration:
    DATABASE_URL=postgresql://... HEALTH_METRICS_URL=http://gateway python app.py

============================================================
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.absolute()
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from aiohttp import web
from sqlalchemy.engine import Engine

from admin.api import setup_admin_routes
from admin.service import CollectorAdminService
from collectors.provider import HttpInstanceProvider, InstanceProvider, StaticInstanceProvider
from collectors.registry import build_default_registry
from collectors.sampler import HttpMetricSampler, MetricSampler
from core.exceptions import ConfigurationError, HealthEngineError
from database.engine import create_database_engine, create_session_factory, initialize_database
from database.repositories import SqlConfigStore, SqlExceptionStore, SqlScoreStore
from database.seed import SeedReport, seed_defaults
from health_scoring.config import EngineConfig
from health_scoring.consolidator import HealthScoreConsolidator
from health_scoring.exception_registry import ExceptionRegistry
from health_scoring.stores import InMemoryConfigStore, InMemoryExceptionStore, InMemoryScoreStore
from orchestrator.cli import (
    build_config,
    create_parser,
    print_banner,
    requires_sampling,
    run_command,
    validate_args,
)
from orchestrator.core import CollectorOrchestrator, create_orchestrator, make_correlation_id, setup_logging


logger = logging.getLogger(__name__)


# ============================================================
# APPLICATION
# ============================================================

class HealthEngineApp:
    """Wired runtime: stores, collectors, orchestrator and admin service."""

    def __init__(
        self,
        config: EngineConfig,
        admin: CollectorAdminService,
        seed_report: SeedReport,
        orchestrator: Optional[CollectorOrchestrator] = None,
        instance_provider: Optional[InstanceProvider] = None,
        sampler: Optional[MetricSampler] = None,
        engine: Optional[Engine] = None,
    ):
        self.config = config
        self.admin = admin
        self.seed_report = seed_report
        self.orchestrator = orchestrator
        self._instance_provider = instance_provider
        self._sampler = sampler
        self._engine = engine

    async def run_forever(self, serve_api: bool = True) -> None:
        """Run the scheduler (and the admin API) until a stop signal arrives."""
        if self.orchestrator is None:
            raise ConfigurationError("The run command requires an orchestrator")

        runner: Optional[web.AppRunner] = None
        if serve_api:
            app = web.Application()
            setup_admin_routes(app, self.admin, prefix="/api")
            runner = web.AppRunner(app)
            await runner.setup()
            site = web.TCPSite(runner, self.config.api_host, self.config.api_port)
            await site.start()
            logger.info(f"Admin API listening on http://{self.config.api_host}:{self.config.api_port}/api")

        try:
            logger.info("Starting main loop (press Ctrl+C to stop)...")
            await self.orchestrator.run_forever()
        finally:
            if runner is not None:
                await runner.cleanup()
                logger.info("Admin API stopped")

    async def close(self) -> None:
        """Release HTTP sessions and database connections."""
        if self._instance_provider is not None:
            await self._instance_provider.close()
        if self._sampler is not None:
            await self._sampler.close()
        if self._engine is not None:
            self._engine.dispose()


# ============================================================
# WIRING
# ============================================================

def build_application(
    config: EngineConfig,
    sampling: bool = True,
    correlation_id: Optional[str] = None,
) -> HealthEngineApp:
    """
    Wire every component for the given configuration.

    Args:
        config: Validated engine configuration
        sampling: Build the instance provider, sampler and orchestrator
        correlation_id: Logging correlation id shared with the orchestrator

    Raises:
        ConfigurationError: sampling requested without a metrics URL
        DatabaseConnectionError: database unreachable
    """
    engine: Optional[Engine] = None
    if config.database_url:
        engine = create_database_engine(config.database_url)
        initialize_database(engine)
        session_factory = create_session_factory(engine)
        config_store = SqlConfigStore(session_factory)
        exception_store = SqlExceptionStore(session_factory)
        score_store = SqlScoreStore(session_factory)
    else:
        logger.warning("No database configured; using in-memory stores (state is lost on exit)")
        config_store = InMemoryConfigStore()
        exception_store = InMemoryExceptionStore()
        score_store = InMemoryScoreStore()

    registry = build_default_registry()
    seed_report = seed_defaults(config_store, registry)
    exception_registry = ExceptionRegistry(exception_store)

    orchestrator: Optional[CollectorOrchestrator] = None
    provider: Optional[InstanceProvider] = None
    sampler: Optional[MetricSampler] = None

    if sampling:
        if not config.metrics_url:
            raise ConfigurationError(
                "A metrics gateway URL is required to collect",
                config_key="metrics_url",
            )
        if config.inventory_url:
            provider = HttpInstanceProvider(
                config.inventory_url,
                cache_ttl_seconds=config.inventory_cache_ttl_seconds,
                include_dmz=config.include_dmz,
                include_aws=config.include_aws,
                excluded_instances=config.excluded_instances,
            )
        else:
            logger.warning("No inventory URL configured; collectors will see no instances")
            provider = StaticInstanceProvider([])
        sampler = HttpMetricSampler(config.metrics_url)

        orchestrator = create_orchestrator(
            registry,
            config_store,
            score_store,
            exception_registry,
            provider,
            sampler,
            config=config,
            correlation_id=correlation_id,
        )
        consolidator = orchestrator.consolidator
    else:
        consolidator = HealthScoreConsolidator(config_store, score_store, config=config)

    admin = CollectorAdminService(
        config_store,
        score_store,
        exception_registry,
        registry,
        orchestrator=orchestrator,
        consolidator=consolidator,
        config=config,
    )

    return HealthEngineApp(
        config=config,
        admin=admin,
        seed_report=seed_report,
        orchestrator=orchestrator,
        instance_provider=provider,
        sampler=sampler,
        engine=engine,
    )


# ============================================================
# MAIN FUNCTION
# ============================================================

async def async_main(args, config: EngineConfig, correlation_id: Optional[str] = None) -> int:
    """
    Run the requested command.

    Returns:
        Exit code
    """
    application: Optional[HealthEngineApp] = None
    try:
        application = build_application(config, sampling=requires_sampling(args), correlation_id=correlation_id)

        if args.command == "run":
            await application.run_forever(serve_api=not args.no_api)
            return 0
        return await run_command(application, args)

    except HealthEngineError as e:
        logger.error(f"{type(e).__name__}: {e.message}")
        return 1
    finally:
        if application is not None:
            await application.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    # Parse arguments
    parser = create_parser()
    args = parser.parse_args(argv)

    # Validate arguments
    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    try:
        config = build_config(args)
    except ConfigurationError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    correlation_id = make_correlation_id(config.correlation_id_prefix)
    setup_logging(config.log_level, config.log_format, correlation_id)

    if args.command == "run":
        print_banner(args, config)

    try:
        return asyncio.run(async_main(args, config, correlation_id))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
