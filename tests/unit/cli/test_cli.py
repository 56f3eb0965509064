"""Unit tests for the dockpilot CLI.

Commands run against on-disk stores under tmp_path; the executor is a
scripted double, so no Docker daemon is needed.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Generator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner
from doubles import BROKEN_DOCKERFILE, COMPOSE_FILE, FakeExecutor, failed_build

from dockpilot import __version__
from dockpilot.cli.commands.config_set import collect_files
from dockpilot.cli.main import main
from dockpilot.deploy.artifacts import LocalArtifactStore
from dockpilot.deploy.state import DeploymentStateStore
from dockpilot.lib.errors import ConfigError
from dockpilot.models.config import OrchestratorConfig
from dockpilot.models.deployment import Deployment, DeploymentStatus
from dockpilot.orchestrator import DeploymentOrchestrator


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """Drop handlers bound to a finished invocation's stderr."""
    yield
    root = logging.getLogger("dockpilot")
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.NOTSET)
    root.propagate = True


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI runner."""
    return CliRunner()


@pytest.fixture
def cli_env(tmp_path: Path) -> dict[str, str]:
    """DOCKPILOT_* variables pointing every store under tmp_path."""
    return {
        "DOCKPILOT_STATE_PATH": str(tmp_path / "state" / "deployments.json"),
        "DOCKPILOT_ARTIFACTS_ROOT": str(tmp_path / "configs"),
        "DOCKPILOT_BUILD_ROOT": str(tmp_path / "builds"),
    }


@pytest.fixture
def generated_dir(tmp_path: Path) -> Path:
    """A directory of generated deployment files."""
    directory = tmp_path / "generated"
    (directory / "nginx").mkdir(parents=True)
    (directory / "Dockerfile").write_text(BROKEN_DOCKERFILE, encoding="utf-8")
    (directory / "docker-compose.yml").write_text(COMPOSE_FILE, encoding="utf-8")
    (directory / "nginx" / "default.conf").write_text("server {}\n", encoding="utf-8")
    (directory / ".env").write_text("SECRET=1\n", encoding="utf-8")
    return directory


@pytest.fixture
def registered_id(
    runner: CliRunner, cli_env: dict[str, str], generated_dir: Path
) -> str:
    """Register the generated directory and return the config set id."""
    result = runner.invoke(
        main,
        ["config-set", "register", str(generated_dir), "--project-id", "shop"],
        env=cli_env,
    )
    assert result.exit_code == 0, result.output
    return result.output.split("Registered config set ")[1].split()[0]


@pytest.fixture
def fake_orchestrator(
    executor: FakeExecutor,
) -> Callable[[OrchestratorConfig], DeploymentOrchestrator]:
    """build_orchestrator replacement that uses the scripted executor."""

    def _build(config: OrchestratorConfig) -> DeploymentOrchestrator:
        return DeploymentOrchestrator(
            artifacts=LocalArtifactStore(config.artifacts_root),
            state=DeploymentStateStore(config.state_path),
            config=config,
            executor_factory=lambda platform: executor,
        )

    return _build


class TestMain:
    """Tests for the command group."""

    def test_help_lists_commands(self, runner: CliRunner) -> None:
        """All command groups are registered."""
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        for command in ("config-set", "deploy", "serve"):
            assert command in result.output

    def test_version(self, runner: CliRunner) -> None:
        """--version prints the package version."""
        result = runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_deploy_group_without_subcommand(self, runner: CliRunner) -> None:
        """The deploy group shows help when called alone."""
        result = runner.invoke(main, ["deploy"])

        assert result.exit_code == 0
        assert "run" in result.output
        assert "status" in result.output


class TestConfigSetCommands:
    """Tests for 'dockpilot config-set'."""

    def test_collect_files_skips_hidden(self, generated_dir: Path) -> None:
        """Hidden files are not part of a config set."""
        assert sorted(collect_files(generated_dir)) == [
            "Dockerfile",
            "docker-compose.yml",
            "nginx/default.conf",
        ]

    def test_collect_files_rejects_binary(self, tmp_path: Path) -> None:
        """Non UTF-8 files are a configuration error."""
        (tmp_path / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\xff\xfe")

        with pytest.raises(ConfigError, match="UTF-8"):
            collect_files(tmp_path)

    def test_register_and_list(
        self,
        runner: CliRunner,
        cli_env: dict[str, str],
        registered_id: str,
        tmp_path: Path,
    ) -> None:
        """A registered directory is stored and listed."""
        stored = tmp_path / "configs" / registered_id
        assert (stored / "Dockerfile").read_text(encoding="utf-8") == (
            BROKEN_DOCKERFILE
        )
        assert not (stored / ".env").exists()

        result = runner.invoke(main, ["config-set", "list"], env=cli_env)

        assert result.exit_code == 0
        assert registered_id in result.output
        assert "shop/generated" in result.output

    def test_list_empty(self, runner: CliRunner, cli_env: dict[str, str]) -> None:
        """An empty store says so."""
        result = runner.invoke(main, ["config-set", "list"], env=cli_env)

        assert result.exit_code == 0
        assert "No config sets registered." in result.output

    def test_register_empty_directory(
        self, runner: CliRunner, cli_env: dict[str, str], tmp_path: Path
    ) -> None:
        """A directory without files is a configuration error."""
        empty = tmp_path / "empty"
        empty.mkdir()

        result = runner.invoke(
            main,
            ["config-set", "register", str(empty), "--project-id", "shop"],
            env=cli_env,
        )

        assert result.exit_code == 2
        assert "No files found" in result.output

    def test_register_requires_project_id(
        self, runner: CliRunner, cli_env: dict[str, str], generated_dir: Path
    ) -> None:
        """--project-id is mandatory."""
        result = runner.invoke(
            main, ["config-set", "register", str(generated_dir)], env=cli_env
        )

        assert result.exit_code == 2
        assert "--project-id" in result.output


class TestDeployRun:
    """Tests for 'dockpilot deploy run'."""

    def test_successful_run(
        self,
        runner: CliRunner,
        cli_env: dict[str, str],
        registered_id: str,
        fake_orchestrator: Callable[[OrchestratorConfig], DeploymentOrchestrator],
    ) -> None:
        """A clean deployment prints progress and the service URL."""
        with patch(
            "dockpilot.cli.commands.deploy.build_orchestrator", fake_orchestrator
        ):
            result = runner.invoke(
                main, ["deploy", "run", registered_id, "--name", "cli"], env=cli_env
            )

        assert result.exit_code == 0, result.output
        assert "Status: building" in result.output
        assert "Deployment Successful!" in result.output
        assert "http://localhost:32768" in result.output

    def test_failed_run_exits_3(
        self,
        runner: CliRunner,
        cli_env: dict[str, str],
        registered_id: str,
        executor: FakeExecutor,
        fake_orchestrator: Callable[[OrchestratorConfig], DeploymentOrchestrator],
    ) -> None:
        """Without an advisor a failed build fails the deployment."""
        executor.builds = [failed_build()]

        with patch(
            "dockpilot.cli.commands.deploy.build_orchestrator", fake_orchestrator
        ):
            result = runner.invoke(main, ["deploy", "run", registered_id], env=cli_env)

        assert result.exit_code == 3
        assert "Deployment failed" in result.output
        assert "Remediation session failed" in result.output
        assert "Unfixable" in result.output

    def test_quiet_run(
        self,
        runner: CliRunner,
        cli_env: dict[str, str],
        registered_id: str,
        fake_orchestrator: Callable[[OrchestratorConfig], DeploymentOrchestrator],
    ) -> None:
        """--quiet suppresses the progress lines."""
        with patch(
            "dockpilot.cli.commands.deploy.build_orchestrator", fake_orchestrator
        ):
            result = runner.invoke(
                main, ["deploy", "run", registered_id, "-q"], env=cli_env
            )

        assert result.exit_code == 0
        assert "Status:" not in result.output.split("Deployment Successful!")[0]

    def test_unknown_config_set(
        self,
        runner: CliRunner,
        cli_env: dict[str, str],
        fake_orchestrator: Callable[[OrchestratorConfig], DeploymentOrchestrator],
    ) -> None:
        """An unknown config set exits with the deployment error code."""
        with patch(
            "dockpilot.cli.commands.deploy.build_orchestrator", fake_orchestrator
        ):
            result = runner.invoke(main, ["deploy", "run", "missing"], env=cli_env)

        assert result.exit_code == 3
        assert "Config set not found: missing" in result.output

    def test_invalid_max_attempts(
        self, runner: CliRunner, cli_env: dict[str, str]
    ) -> None:
        """The attempt budget is limited to 1-5."""
        result = runner.invoke(
            main, ["deploy", "run", "cs", "--max-attempts", "6"], env=cli_env
        )

        assert result.exit_code == 2

    def test_invalid_config_file(
        self, runner: CliRunner, cli_env: dict[str, str], tmp_path: Path
    ) -> None:
        """A bad settings file exits with the configuration error code."""
        config_file = tmp_path / "dockpilot.yaml"
        config_file.write_text("max_attempts: 9\n", encoding="utf-8")

        result = runner.invoke(
            main,
            ["deploy", "run", "cs", "--config", str(config_file)],
            env=cli_env,
        )

        assert result.exit_code == 2
        assert "Configuration error" in result.output


class TestDeployStatusAndCancel:
    """Tests for 'dockpilot deploy status' and 'dockpilot deploy cancel'."""

    def _pending(self, cli_env: dict[str, str]) -> Deployment:
        store = DeploymentStateStore(Path(cli_env["DOCKPILOT_STATE_PATH"]))
        return store.save_deployment(
            Deployment(config_set_id="cs-1", project_id="shop", name="queued")
        )

    def test_status_empty(self, runner: CliRunner, cli_env: dict[str, str]) -> None:
        """No records yet."""
        result = runner.invoke(main, ["deploy", "status"], env=cli_env)

        assert result.exit_code == 0
        assert "No deployments found." in result.output

    def test_status_list_and_detail(
        self, runner: CliRunner, cli_env: dict[str, str]
    ) -> None:
        """Records are listed and shown in detail."""
        deployment = self._pending(cli_env)

        listing = runner.invoke(main, ["deploy", "status"], env=cli_env)
        detail = runner.invoke(main, ["deploy", "status", deployment.id], env=cli_env)
        as_json = runner.invoke(
            main, ["deploy", "status", deployment.id, "--json"], env=cli_env
        )

        assert deployment.id in listing.output
        assert "pending" in listing.output
        assert "Attempts:  1/3" in detail.output
        assert json.loads(as_json.output)["name"] == "queued"

    def test_status_unknown(self, runner: CliRunner, cli_env: dict[str, str]) -> None:
        """Unknown ids exit with code 3."""
        result = runner.invoke(main, ["deploy", "status", "nope"], env=cli_env)

        assert result.exit_code == 3
        assert "Deployment not found: nope" in result.output

    def test_cancel_pending(self, runner: CliRunner, cli_env: dict[str, str]) -> None:
        """A pending deployment is cancelled in the state file."""
        deployment = self._pending(cli_env)

        result = runner.invoke(main, ["deploy", "cancel", deployment.id], env=cli_env)

        assert result.exit_code == 0, result.output
        assert "is cancelled" in result.output
        store = DeploymentStateStore(Path(cli_env["DOCKPILOT_STATE_PATH"]))
        assert store.get_deployment(deployment.id).status == (
            DeploymentStatus.CANCELLED
        )

        again = runner.invoke(main, ["deploy", "cancel", deployment.id], env=cli_env)
        assert again.exit_code == 3


class TestServeCommand:
    """Tests for 'dockpilot serve'."""

    def test_bad_config_exits_2(
        self, runner: CliRunner, cli_env: dict[str, str], tmp_path: Path
    ) -> None:
        """Configuration errors stop the server before it binds."""
        config_file = tmp_path / "dockpilot.yaml"
        config_file.write_text("unknown_setting: 1\n", encoding="utf-8")

        result = runner.invoke(
            main, ["serve", "--config", str(config_file)], env=cli_env
        )

        assert result.exit_code == 2
        assert "Failed to load configuration" in result.output

    def test_runs_uvicorn(self, runner: CliRunner, cli_env: dict[str, str]) -> None:
        """The server is started with the requested host and port."""
        with patch("uvicorn.Server") as server_cls:
            server_cls.return_value.serve = _noop_serve
            result = runner.invoke(
                main,
                ["serve", "--port", "9123", "--cors-origins", "http://a, http://b"],
                env=cli_env,
            )

        assert result.exit_code == 0, result.output
        config = server_cls.call_args.args[0]
        assert config.port == 9123
        assert config.host == "127.0.0.1"
        assert "http://127.0.0.1:9123" in result.output

    def test_keyboard_interrupt_exits_130(
        self, runner: CliRunner, cli_env: dict[str, str]
    ) -> None:
        """Ctrl+C stops the server with exit code 130."""
        with patch(
            "dockpilot.cli.commands.serve._run_server",
            MagicMock(side_effect=KeyboardInterrupt),
        ):
            result = runner.invoke(main, ["serve"], env=cli_env)

        assert result.exit_code == 130
        assert "Server stopped." in result.output


async def _noop_serve() -> None:
    return None
