"""Tests for the CLI entry point."""

import logging

import pytest
from click.testing import CliRunner

from hsl_live_proxy.cli import main


@pytest.fixture(autouse=True)
def _restore_logging(monkeypatch: pytest.MonkeyPatch):
    for var in ("HSL_USERNAME", "HSL_PASSWORD", "HSL_PROXY_CONFIG", "HSL_PROXY_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_validate_config_with_flags() -> None:
    """Credentials on the command line are enough for a valid config."""
    result = CliRunner().invoke(main, ["-u", "user", "-p", "pass", "--validate-config"])
    assert result.exit_code == 0
    assert "Configuration is valid." in result.output


def test_missing_credentials() -> None:
    """Without credentials the CLI reports a config error and exits 1."""
    result = CliRunner().invoke(main, ["--validate-config"])
    assert result.exit_code == 1
    assert "Config error" in result.output


def test_logfile_option(tmp_path) -> None:
    """``-l`` enables a log file at the given path."""
    log_path = tmp_path / "logs" / "proxy.log"
    result = CliRunner().invoke(
        main, ["-u", "user", "-p", "pass", "-l", str(log_path), "--validate-config"]
    )
    assert result.exit_code == 0
    assert log_path.parent.is_dir()


def test_flags_supply_credentials_missing_from_file(tmp_path) -> None:
    """``-u``/``-p`` satisfy the credential check for a file without them."""
    path = tmp_path / "config.json"
    path.write_text('{"server": {"port": 9000}}')
    result = CliRunner().invoke(
        main, ["-c", str(path), "-u", "user", "-p", "pass", "--validate-config"]
    )
    assert result.exit_code == 0, result.output
    assert "Configuration is valid." in result.output


@pytest.mark.parametrize("port", ["0", "65536", "-1"])
def test_port_out_of_range(port: str) -> None:
    """Ports outside 1-65535 are rejected as a usage error."""
    result = CliRunner().invoke(
        main, ["-u", "user", "-p", "pass", "-P", port, "--validate-config"]
    )
    assert result.exit_code == 2
    assert "Configuration is valid." not in result.output
