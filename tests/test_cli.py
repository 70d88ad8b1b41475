"""Tests for the seace-etl command line interface."""

import sys
from pathlib import Path

import pytest
import typer
from typer.testing import CliRunner

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import seace_etl.cli as cli_module
from seace_etl.server import build_runtime
from seace_etl.store import MemoryStateStore

runner = CliRunner()


@pytest.fixture
def local_runtime(monkeypatch, settings):
    """Point the CLI at one in-memory runtime for the whole test."""
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    runtime = build_runtime(settings, store=MemoryStateStore())
    monkeypatch.setattr(cli_module, "_local_runtime", lambda: runtime)
    return runtime


def test_parse_params():
    assert cli_module.parse_params(["limit=5", " keywords = agua,puente "]) == {
        "limit": "5",
        "keywords": "agua,puente",
    }
    with pytest.raises(typer.BadParameter):
        cli_module.parse_params(["limit"])


def test_models_command_lists_catalog():
    result = runner.invoke(cli_module.app, ["models"])
    assert result.exit_code == 0
    assert "gemini-2.5-flash" in result.output


def test_keys_add_and_list_mask_secret(local_runtime):
    result = runner.invoke(cli_module.app, ["add-key", "K1", "--secret", "AIza-secret-9876"])
    assert result.exit_code == 0
    assert "****-9876" in result.output

    listed = runner.invoke(cli_module.app, ["keys"])
    assert listed.exit_code == 0
    assert "K1" in listed.output
    assert "AIza-secret-9876" not in listed.output


def test_reorder_rejects_partial_permutation(local_runtime):
    local_runtime.pool.add("K1", "secret-1111")
    local_runtime.pool.add("K2", "secret-2222")

    assert runner.invoke(cli_module.app, ["reorder", "2"]).exit_code == 1
    result = runner.invoke(cli_module.app, ["reorder", "2", "1"])
    assert result.exit_code == 0
    assert [view.alias for view in local_runtime.pool.list()] == ["K2", "K1"]


def test_run_reports_invalid_params(local_runtime):
    result = runner.invoke(cli_module.app, ["run", "categorize", "-P", "limit=0"])
    assert result.exit_code == 2
    assert "Invalid parameters" in result.output


def test_run_without_keys_exits_with_failure(local_runtime, make_record):
    local_runtime.records.upsert(make_record("P-1"))
    result = runner.invoke(cli_module.app, ["run", "categorize", "-P", "limit=1"])
    assert result.exit_code == 1
    assert "credentials_exhausted" in result.output


def test_status_of_unknown_operation(local_runtime):
    result = runner.invoke(cli_module.app, ["status", "missing"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_gen_key_prints_a_usable_fernet_key():
    from cryptography.fernet import Fernet

    result = runner.invoke(cli_module.app, ["gen-key"])
    assert result.exit_code == 0
    Fernet(result.output.strip().encode("utf-8"))
