"""
Unit tests for CredentialPool rotation and health transitions.
"""

import asyncio
import time
from collections import Counter

import pytest

from enrichment_engine.coordinator import CredentialPool, CredentialState, Outcome
from enrichment_engine.errors import PoolExhausted


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_round_robin_fairness_without_failures(make_pool):
    """Sequential checkouts spread evenly: max - min usage <= 1."""
    pool = make_pool(3)
    used = Counter()
    for _ in range(10):
        async with pool.acquire() as cred:
            used[cred.id] += 1
        await pool.report_outcome(cred, Outcome.SUCCESS)

    assert set(used) == {"api1", "api2", "api3"}
    assert max(used.values()) - min(used.values()) <= 1


@pytest.mark.asyncio
async def test_checkout_prefers_idle_credentials(make_pool):
    pool = make_pool(2)
    c1, r1 = await pool.checkout()
    c2, r2 = await pool.checkout()
    assert c1.id != c2.id
    r1()
    r2()
    r2()  # double release is a no-op
    assert all(c.leases == 0 for c in pool.credentials)


@pytest.mark.asyncio
async def test_rate_limited_cools_then_reactivates(make_pool):
    clock = FakeClock()
    pool = make_pool(2, clock=clock)
    cred = pool.get("api1")

    state = await pool.report_outcome(cred, Outcome.RATE_LIMITED, retry_after=5.0)
    assert state is CredentialState.COOLING
    assert cred.cooling_until == pytest.approx(1005.0)
    assert pool.counts()[CredentialState.COOLING] == 1

    # cooling credential is skipped
    other, release = await pool.checkout()
    release()
    assert other.id == "api2"

    clock.now = 1006.0
    assert pool.counts()[CredentialState.ACTIVE] == 2
    assert cred.state is CredentialState.ACTIVE


@pytest.mark.asyncio
async def test_consecutive_rate_limits_ban(make_pool):
    pool = make_pool(1, ban_threshold=3, clock=FakeClock())
    cred = pool.get("api1")
    for _ in range(2):
        await pool.report_outcome(cred, Outcome.RATE_LIMITED, retry_after=1.0)
    assert cred.state is CredentialState.COOLING

    await pool.report_outcome(cred, Outcome.RATE_LIMITED, retry_after=1.0)
    assert cred.state is CredentialState.BANNED
    assert "rate limited" in cred.reason


@pytest.mark.asyncio
async def test_success_resets_rate_limit_strikes(make_pool):
    pool = make_pool(1, ban_threshold=2, clock=FakeClock())
    cred = pool.get("api1")
    await pool.report_outcome(cred, Outcome.RATE_LIMITED, retry_after=0.0)
    await pool.report_outcome(cred, Outcome.SUCCESS)
    assert cred.rate_limit_strikes == 0
    await pool.report_outcome(cred, Outcome.RATE_LIMITED, retry_after=0.0)
    assert cred.state is not CredentialState.BANNED


@pytest.mark.asyncio
async def test_auth_failure_bans_and_is_final(make_pool):
    pool = make_pool(2)
    cred = pool.get("api1")
    await pool.report_outcome(cred, Outcome.AUTH_FAILED)
    assert cred.state is CredentialState.BANNED

    # a later success does not resurrect it
    await pool.report_outcome(cred, Outcome.SUCCESS)
    assert cred.state is CredentialState.BANNED

    for _ in range(4):
        other, release = await pool.checkout()
        release()
        assert other.id == "api2"


@pytest.mark.asyncio
async def test_all_banned_raises_pool_exhausted(make_pool):
    pool = make_pool(2)
    for cred in pool.credentials:
        await pool.report_outcome(cred, Outcome.AUTH_FAILED)

    with pytest.raises(PoolExhausted) as ei:
        await pool.checkout()
    assert "api1" in str(ei.value)


@pytest.mark.asyncio
async def test_checkout_waits_for_cooldown(make_pool):
    pool = make_pool(1)
    cred = pool.get("api1")
    await pool.report_outcome(cred, Outcome.RATE_LIMITED, retry_after=0.05)

    t0 = time.monotonic()
    got, release = await asyncio.wait_for(pool.checkout(), timeout=2.0)
    release()
    assert got is cred
    assert time.monotonic() - t0 >= 0.04


@pytest.mark.asyncio
async def test_credit_cap_bans_when_spent(make_pool):
    pool = make_pool(2, credit_cap=2)
    cred = pool.get("api1")
    await pool.report_outcome(cred, Outcome.SUCCESS)
    assert cred.calls_remaining == 1
    await pool.report_outcome(cred, Outcome.SUCCESS)
    assert cred.calls_remaining == 0
    assert cred.state is CredentialState.BANNED
    assert cred.reason == "credit cap reached"


@pytest.mark.asyncio
async def test_precheck_bans_rejected_credentials(make_pool):
    pool = make_pool(3)

    async def verify(cred):
        if cred.id == "api3":
            raise RuntimeError("boom")
        return cred.id == "api1"

    passed = await pool.precheck(verify)
    assert passed == 1
    states = {c.id: c.state for c in pool.credentials}
    assert states == {
        "api1": CredentialState.ACTIVE,
        "api2": CredentialState.BANNED,
        "api3": CredentialState.BANNED,
    }


def test_pool_requires_unique_ids(make_credentials):
    creds = make_credentials(2)
    creds[1].id = "api1"
    with pytest.raises(ValueError):
        CredentialPool(creds)
    with pytest.raises(ValueError):
        CredentialPool([])


def test_usage_and_hint(make_pool):
    pool = make_pool(2)
    assert pool.usage() == {"api1": 0, "api2": 0}
    hint = pool.get("api1").hint
    assert "secret-token-0001" not in hint
    assert hint.endswith("0001")


@pytest.mark.asyncio
async def test_recovered_credential_starts_with_no_strikes(make_pool):
    """Rate limits separated by a full cooldown never add up to a ban."""
    clock = FakeClock()
    pool = make_pool(1, ban_threshold=2, clock=clock)
    cred = pool.get("api1")

    for _ in range(5):
        await pool.report_outcome(cred, Outcome.RATE_LIMITED, retry_after=1.0)
        assert cred.state is CredentialState.COOLING
        clock.now += 2.0
        got, release = await pool.checkout()
        release()
        assert got is cred
        assert cred.rate_limit_strikes == 0

    assert cred.state is CredentialState.ACTIVE
