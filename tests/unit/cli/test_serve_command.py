"""Unit tests for the clouddeck serve command."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

from click.testing import CliRunner

from clouddeck.cli.commands.serve import apply_overrides, serve
from clouddeck.models.config import PlatformConfig


class TestApplyOverrides:
    """Tests for command line overrides."""

    def test_unset_values_keep_config(self) -> None:
        """Nothing changes when no override is given."""
        config = PlatformConfig(max_workers=3)

        assert apply_overrides(config, max_workers=None) is config

    def test_overrides_are_validated(self) -> None:
        """Overrides produce a new validated configuration."""
        config = PlatformConfig()

        updated = apply_overrides(config, max_workers=8, state_path="state.json")

        assert updated.max_workers == 8
        assert updated.state_path == "state.json"
        assert config.max_workers == 4


class TestServeCommand:
    """Tests for the serve command."""

    def test_runs_server_with_overrides(self, tmp_path: Path) -> None:
        """Options are applied before the server starts."""
        config_file = tmp_path / "clouddeck.yaml"
        config_file.write_text("max_workers: 2\n")

        with patch(
            "clouddeck.cli.commands.serve._run_server", new_callable=AsyncMock
        ) as run_server:
            result = CliRunner().invoke(
                serve,
                [
                    "--config",
                    str(config_file),
                    "--workers",
                    "6",
                    "--port",
                    "9000",
                    "--cors-origins",
                    "https://a.test, https://b.test",
                ],
            )

        assert result.exit_code == 0, result.output
        config, host, port, origins, debug = run_server.await_args.args
        assert config.max_workers == 6
        assert (host, port, debug) == ("127.0.0.1", 9000, False)
        assert origins == ["https://a.test", "https://b.test"]

    def test_invalid_config(self, tmp_path: Path) -> None:
        """Configuration errors exit with code 2 before serving."""
        config_file = tmp_path / "clouddeck.yaml"
        config_file.write_text("unknown_setting: true\n")

        with patch(
            "clouddeck.cli.commands.serve._run_server", new_callable=AsyncMock
        ) as run_server:
            result = CliRunner().invoke(serve, ["--config", str(config_file)])

        assert result.exit_code == 2
        assert "Invalid configuration" in result.output
        run_server.assert_not_called()

    def test_interrupt(self) -> None:
        """Ctrl+C stops the server with exit code 130."""
        runner = CliRunner()
        with (
            runner.isolated_filesystem(),
            patch(
                "clouddeck.cli.commands.serve._run_server",
                new_callable=AsyncMock,
                side_effect=KeyboardInterrupt,
            ),
        ):
            result = runner.invoke(serve, [])

        assert result.exit_code == 130
        assert "Server stopped." in result.output
