"""
Unit tests for the keys.json / used_keys.json credential store.
"""

import json

import pytest

from enrichment_engine.coordinator import CredentialPool, CredentialState, Outcome
from enrichment_engine.keys import CredentialStore, KeysFileError, parse_keys


def test_parse_keys_array_and_object():
    assert parse_keys(["t1", " ", None, "t2 "]) == [("api1", "t1"), ("api2", "t2")]
    assert parse_keys({"main": "t1", "backup": "", "spare": "t3"}) == [
        ("main", "t1"),
        ("spare", "t3"),
    ]


@pytest.mark.parametrize("raw", [[], {}, ["", None], "token", 42])
def test_parse_keys_rejects_unusable(raw):
    with pytest.raises(KeysFileError):
        parse_keys(raw)


def test_missing_or_malformed_keys_file(tmp_path):
    with pytest.raises(KeysFileError):
        CredentialStore(tmp_path / "keys.json").load_keys()

    bad = tmp_path / "bad.json"
    bad.write_text("[not json", encoding="utf-8")
    with pytest.raises(KeysFileError):
        CredentialStore(bad).load_keys()


@pytest.mark.asyncio
async def test_usage_round_trip(tmp_path):
    keys = tmp_path / "keys.json"
    keys.write_text(json.dumps(["token-aaaa-1111", "token-bbbb-2222", "token-cccc-3333"]))
    store = CredentialStore(keys, credit_cap=3)

    creds = store.credentials()
    assert [c.id for c in creds] == ["api1", "api2", "api3"]
    pool = CredentialPool(creds)

    await pool.report_outcome(pool.get("api1"), Outcome.AUTH_FAILED)
    for _ in range(3):
        await pool.report_outcome(pool.get("api2"), Outcome.SUCCESS)
    await pool.report_outcome(pool.get("api3"), Outcome.SUCCESS)
    store.save(pool.credentials)

    saved = json.loads((tmp_path / "used_keys.json").read_text())
    assert saved["api1"]["status"] == "INVALID"
    assert saved["api1"]["reason"] == "authentication failed"
    assert saved["api2"]["status"] == "EXHAUSTED"
    assert saved["api2"]["remaining_credits"] == 0
    assert saved["api3"]["status"] == "ACTIVE"
    assert saved["api3"]["used_credits"] == 1
    assert "token-cccc-3333" not in json.dumps(saved)

    # next run restores bans and spent credits
    restored = {c.id: c for c in CredentialStore(keys, credit_cap=3).credentials()}
    assert restored["api1"].state is CredentialState.BANNED
    assert restored["api2"].state is CredentialState.BANNED
    assert restored["api3"].state is CredentialState.ACTIVE
    assert restored["api3"].calls_remaining == 2


@pytest.mark.asyncio
async def test_rate_limit_bans_are_not_persisted(tmp_path):
    keys = tmp_path / "keys.json"
    keys.write_text(json.dumps({"only": "token-only-0000"}))
    store = CredentialStore(keys, tmp_path / "state" / "usage.json")
    pool = CredentialPool(store.credentials(), ban_threshold=1)

    await pool.report_outcome(pool.get("only"), Outcome.RATE_LIMITED)
    assert pool.get("only").state is CredentialState.BANNED
    store.save(pool.credentials)

    assert store.load_usage()["only"].status.value == "ACTIVE"
    assert store.credentials()[0].state is CredentialState.ACTIVE


def test_unreadable_usage_file_is_ignored(tmp_path):
    keys = tmp_path / "keys.json"
    keys.write_text(json.dumps(["t1"]))
    (tmp_path / "used_keys.json").write_text("{oops")
    assert CredentialStore(keys).load_usage() == {}
