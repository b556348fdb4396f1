"""Tests for the command-line entry point."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from coin_indexer import __version__
from coin_indexer.__main__ import build_parser, main, run_index
from coin_indexer.config import clear_settings_cache
from coin_indexer.errors import ConfigurationError

USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"


@pytest.fixture(autouse=True)
def cli_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CHAIN_RPC_URL", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("INDEXER_CONTRACTS", raising=False)
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    clear_settings_cache()
    yield
    clear_settings_cache()


def test_parser_requires_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_version(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit):
        main(["--version"])
    assert __version__ in capsys.readouterr().out


def test_contract_lifecycle(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["init-db"]) == 0

    assert main(["add-contract", "--name", "USDC", "--address", USDC, "--start-block", "6082465"]) == 0
    assert "Registered USDC" in capsys.readouterr().out

    assert main(["add-contract", "--name", "USDC", "--address", USDC]) == 0
    assert "already active" in capsys.readouterr().out

    assert main(["status"]) == 0
    status = capsys.readouterr().out
    assert USDC.lower() in status
    assert "6082465" in status

    assert main(["deactivate-contract", USDC]) == 0
    assert main(["deactivate-contract", USDC]) == 1
    assert "No active contract" in capsys.readouterr().out


def test_invalid_address_is_a_configuration_error(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["init-db"]) == 0
    assert main(["add-contract", "--name", "bad", "--address", "0x1234"]) == 2
    assert "Invalid contract address" in capsys.readouterr().err


def test_index_requires_rpc_url(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["index"]) == 2
    assert "CHAIN_RPC_URL" in capsys.readouterr().err


def test_invalid_settings_exit_with_usage_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "mysql://localhost/db")
    assert main(["status"]) == 2


def test_status_without_schema_fails() -> None:
    assert main(["status"]) == 1


def test_run_index_rejects_missing_rpc_url() -> None:
    settings = MagicMock()
    settings.chain.rpc_url = None
    with pytest.raises(ConfigurationError, match="CHAIN_RPC_URL"):
        asyncio.run(run_index(settings))
