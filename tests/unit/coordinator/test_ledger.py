"""
Unit tests for the ResumeLedger journal.
"""

import json

import pytest

from enrichment_engine.coordinator import ResumeLedger


@pytest.mark.asyncio
async def test_mark_done_is_durable_and_idempotent(tmp_path):
    path = tmp_path / "out" / "results.csv.ledger.jsonl"
    ledger = ResumeLedger(path, fsync=False)
    ledger.load()

    assert await ledger.mark_done("a", status="success", credential_id="api1") is True
    assert await ledger.mark_done("a", status="success") is False
    assert await ledger.mark_done("b", status="error") is True
    await ledger.close()

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [e["key"] for e in lines] == ["a", "b"]
    assert lines[0]["credential_id"] == "api1"
    assert "a" in ledger and len(ledger) == 2


@pytest.mark.asyncio
async def test_load_restores_previous_run(tmp_path):
    path = tmp_path / "ledger.jsonl"
    first = ResumeLedger(path, fsync=False)
    first.load()
    for k in ("x", "y"):
        await first.mark_done(k)
    await first.close()

    second = ResumeLedger(path, fsync=False)
    assert second.load() == 2
    assert second.contains("x") and second.contains("y")
    assert not second.contains("z")


def test_load_skips_torn_last_line(tmp_path):
    path = tmp_path / "ledger.jsonl"
    path.write_text('{"key": "ok1"}\n{"key": "ok2"}\n{"key": "tor', encoding="utf-8")
    ledger = ResumeLedger(path)
    assert ledger.load() == 2
    assert ledger.keys == frozenset({"ok1", "ok2"})


def test_load_merges_seed_keys(tmp_path):
    path = tmp_path / "ledger.jsonl"
    path.write_text('{"key": "a"}\n', encoding="utf-8")
    ledger = ResumeLedger(path)
    assert ledger.load(seed=["a", "b", ""]) == 2
    assert "b" in ledger


@pytest.mark.asyncio
async def test_reset_forgets_everything(tmp_path):
    path = tmp_path / "ledger.jsonl"
    ledger = ResumeLedger(path, fsync=False)
    ledger.load()
    await ledger.mark_done("a")

    ledger.reset()
    assert not path.exists()
    assert len(ledger) == 0
    assert await ledger.mark_done("a") is True
    await ledger.close()
    assert path.exists()
