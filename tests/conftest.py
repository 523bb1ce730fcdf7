"""
Pytest configuration and fixtures for enrichment-engine.

Provides cross-platform event loop configuration and small factories for
credentials, pools and backoff policies.
"""

import asyncio
import random
import sys

import pytest

from enrichment_engine.coordinator import BackoffPolicy, Credential, CredentialPool

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


@pytest.fixture
def fast_backoff():
    """Millisecond-scale backoff so retry scenarios run quickly."""
    return BackoffPolicy(max_attempts=5, base_ms=1, cap_ms=5, jitter=False)


@pytest.fixture
def make_credentials():
    def _make(n: int, credit_cap=None):
        return [
            Credential(id=f"api{i}", secret=f"secret-token-{i:04d}", credit_cap=credit_cap)
            for i in range(1, n + 1)
        ]

    return _make


@pytest.fixture
def make_pool(make_credentials, fast_backoff):
    def _make(n: int = 3, **kwargs):
        kwargs.setdefault("backoff", fast_backoff)
        return CredentialPool(make_credentials(n, kwargs.pop("credit_cap", None)), **kwargs)

    return _make


@pytest.fixture
def seeded_rng():
    return random.Random(1234)
