"""
Unit tests for the typer CLI (commands that need no provider).
"""

import json

import pytest
from typer.testing import CliRunner

from enrichment_engine.cli import app
from enrichment_engine.config import get_settings

runner = CliRunner()


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_keys_command_lists_usage(tmp_path):
    keys = tmp_path / "keys.json"
    keys.write_text(json.dumps({"main": "token-main-0001", "spare": "token-spare-0002"}))
    (tmp_path / "used_keys.json").write_text(
        json.dumps(
            {
                "main": {
                    "token_hint": "toke...0001",
                    "used_credits": 12,
                    "remaining_credits": 1588,
                    "status": "ACTIVE",
                }
            }
        )
    )

    result = runner.invoke(app, ["keys", "--keys", str(keys), "--json"])

    assert result.exit_code == 0, result.output
    rows = {r["key"]: r for r in json.loads(result.stdout)}
    assert rows["main"]["used_credits"] == 12
    assert rows["spare"]["status"] == "ACTIVE"
    assert rows["spare"]["used_credits"] == 0


def test_keys_command_missing_file(tmp_path):
    result = runner.invoke(app, ["keys", "--keys", str(tmp_path / "none.json")])
    assert result.exit_code == 2


def test_ledger_command_counts_completed(tmp_path):
    output = tmp_path / "results.csv"
    (tmp_path / "results.csv.ledger.jsonl").write_text('{"key": "a"}\n{"key": "b"}\n')

    result = runner.invoke(app, ["ledger", "--output", str(output)])

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["completed"] == 2


def test_run_with_bad_keys_file_exits_2(tmp_path):
    source = tmp_path / "in.txt"
    source.write_text("a\n")
    keys = tmp_path / "keys.json"
    keys.write_text("[]")

    result = runner.invoke(
        app,
        [
            "run",
            str(source),
            "--url",
            "https://api.example.test/enrich",
            "--keys",
            str(keys),
            "--output",
            str(tmp_path / "out.csv"),
        ],
    )
    assert result.exit_code == 2


@pytest.mark.parametrize(
    "option, value",
    [("--concurrency", "0"), ("--max-retries", "0"), ("--credit-cap", "-1")],
)
def test_run_rejects_out_of_range_options(tmp_path, option, value):
    source = tmp_path / "in.txt"
    source.write_text("a\n")

    result = runner.invoke(
        app,
        [
            "run",
            str(source),
            "--url",
            "https://api.example.test/enrich",
            "--output",
            str(tmp_path / "out.csv"),
            option,
            value,
        ],
    )

    assert result.exit_code == 2
    assert not (tmp_path / "out.csv").exists()
