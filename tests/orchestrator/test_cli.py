"""
Tests for the Command-Line Interface and Application Wiring.

Tests cover:
- Argument parsing and validation
- Configuration overrides from flags
- One-shot commands over in-memory stores
- Wiring failures surfacing as exit codes
"""

import json

import pytest

from app import async_main, build_application, main
from core.exceptions import ConfigurationError
from health_scoring.config import EngineConfig
from orchestrator.cli import build_config, create_parser, requires_sampling, run_command, validate_args


def parse(*argv):
    return create_parser().parse_args(list(argv))


# =============================================================
# TEST: Parsing
# =============================================================

class TestParser:
    """argparse surface."""

    def test_defaults(self):
        """No arguments means run with the API."""
        args = parse()
        assert args.command == "run"
        assert args.collector is None
        assert args.triggered_by == "cli"
        assert not args.no_api

    def test_trigger_arguments(self):
        """trigger takes a collector kind and an author."""
        args = parse("trigger", "Backups", "--triggered-by", "dba.oncall")
        assert (args.command, args.collector, args.triggered_by) == ("trigger", "Backups", "dba.oncall")
        assert validate_args(args) == []
        assert requires_sampling(args)

    def test_unknown_command_exits(self):
        """Unknown commands are rejected by argparse."""
        with pytest.raises(SystemExit):
            parse("purge")

    @pytest.mark.parametrize("argv,fragment", [
        (("trigger",), "requires a collector"),
        (("trigger", "Replication"), "Unknown collector"),
        (("status", "CPU"), "does not take a collector"),
        (("status", "--port", "0"), "--port"),
    ])
    def test_validation_errors(self, argv, fragment):
        """Invalid combinations are reported."""
        errors = validate_args(parse(*argv))
        assert any(fragment in e for e in errors)

    def test_main_returns_1_on_invalid_args(self, capsys):
        """main prints validation errors and exits 1."""
        assert main(["trigger"]) == 1
        assert "requires a collector" in capsys.readouterr().err


# =============================================================
# TEST: Configuration
# =============================================================

class TestBuildConfig:
    """Flags override file and environment."""

    def test_flag_overrides(self, tmp_path):
        """CLI flags win over the YAML file."""
        path = tmp_path / "engine.yaml"
        path.write_text("api:\n  port: 9000\nlogging:\n  level: DEBUG\n")

        config = build_config(parse(
            "status", "--config", str(path), "--port", "9100",
            "--log-format", "json", "--database-url", "sqlite://",
        ))

        assert config.api_port == 9100
        assert config.log_level == "DEBUG"
        assert config.log_format == "json"
        assert config.database_url == "sqlite://"

    def test_invalid_file_raises(self, tmp_path):
        """An invalid resulting configuration raises ConfigurationError."""
        path = tmp_path / "engine.yaml"
        path.write_text("status_boundaries:\n  healthy: 10\n  warning: 20\n  risk: 30\n")
        with pytest.raises(ConfigurationError):
            build_config(parse("status", "--config", str(path)))


# =============================================================
# TEST: One-shot Commands
# =============================================================

class TestCommands:
    """Commands run against a wired in-memory application."""

    @pytest.mark.asyncio
    async def test_seed(self, capsys):
        """seed prints what was created."""
        application = build_application(EngineConfig(), sampling=False)
        try:
            code = await run_command(application, parse("seed"))
        finally:
            await application.close()

        assert code == 0
        report = json.loads(capsys.readouterr().out)
        assert len(report["configs_created"]) == 13

    @pytest.mark.asyncio
    async def test_status(self, capsys):
        """status prints collectors, fleet and consolidator sections."""
        application = build_application(EngineConfig(), sampling=False)
        try:
            code = await run_command(application, parse("status"))
        finally:
            await application.close()

        assert code == 0
        output = json.loads(capsys.readouterr().out)
        assert set(output) == {"collectors", "fleet", "consolidator"}
        assert output["fleet"]["total_instances"] == 0

    @pytest.mark.asyncio
    async def test_consolidate(self, capsys):
        """consolidate runs one cycle and exits 0 when nothing failed."""
        application = build_application(EngineConfig(), sampling=False)
        try:
            code = await run_command(application, parse("consolidate"))
        finally:
            await application.close()

        assert code == 0
        assert json.loads(capsys.readouterr().out)["instances_scored"] == 0

    @pytest.mark.asyncio
    async def test_trigger_without_metrics_url(self):
        """Collecting without a metrics gateway is a configuration error."""
        assert await async_main(parse("trigger", "CPU"), EngineConfig()) == 1

    @pytest.mark.asyncio
    async def test_trigger_with_empty_inventory(self, capsys):
        """A trigger with no inventory completes with zero instances."""
        config = EngineConfig(metrics_url="http://127.0.0.1:1/metrics")

        code = await async_main(parse("trigger", "CPU", "--triggered-by", "tester"), config)

        assert code == 0
        result = json.loads(capsys.readouterr().out)
        assert result["trigger"] == "Manual"
        assert result["total_instances"] == 0

    @pytest.mark.asyncio
    async def test_sql_backed_application(self, tmp_path):
        """A database URL wires SQL stores and seeds them."""
        config = EngineConfig(database_url=f"sqlite:///{tmp_path / 'health.db'}")
        application = build_application(config, sampling=False)
        try:
            assert len(application.seed_report.configs_created) == 13
            configs = await application.admin.list_configs()
            assert len(configs) == 13
        finally:
            await application.close()

        reopened = build_application(config, sampling=False)
        try:
            assert reopened.seed_report.configs_created == []
        finally:
            await reopened.close()
