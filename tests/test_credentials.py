from __future__ import annotations

import asyncio

import pytest
from azure.core.credentials import AccessToken

from ccrouter.credentials import (
    REFRESH_MARGIN_SECONDS,
    TOKEN_LIFETIME_SECONDS,
    AzureIdentityTokenAcquirer,
    CredentialCache,
    CredentialState,
)
from ccrouter.errors import CredentialAcquisitionError
from tests.client_test_utils import FakeTokenAcquirer

SCOPE = "https://cognitiveservices.azure.com/.default"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_token_is_reused_within_lifetime() -> None:
    async def _run() -> None:
        clock = FakeClock()
        acquirer = FakeTokenAcquirer()
        cache = CredentialCache(acquirer, clock=clock)

        first = await cache.get_token(SCOPE)
        clock.advance(48 * 60 + 59)
        second = await cache.get_token(SCOPE)

        assert first == second == "token-1"
        assert acquirer.calls == [SCOPE]
        assert cache.state(SCOPE) == CredentialState.VALID

    asyncio.run(_run())


def test_token_inside_safety_margin_is_refreshed() -> None:
    async def _run() -> None:
        clock = FakeClock()
        acquirer = FakeTokenAcquirer()
        cache = CredentialCache(acquirer, clock=clock)

        assert await cache.get_token(SCOPE) == "token-1"
        clock.advance(TOKEN_LIFETIME_SECONDS - REFRESH_MARGIN_SECONDS + 1)
        assert cache.state(SCOPE) == CredentialState.STALE

        assert await cache.get_token(SCOPE) == "token-2"
        assert len(acquirer.calls) == 2
        assert cache.state(SCOPE) == CredentialState.VALID

    asyncio.run(_run())


def test_concurrent_callers_share_one_acquisition() -> None:
    async def _run() -> None:
        gate = asyncio.Event()
        acquirer = FakeTokenAcquirer(gate=gate)
        cache = CredentialCache(acquirer)

        first = asyncio.create_task(cache.get_token(SCOPE))
        second = asyncio.create_task(cache.get_token(SCOPE))
        await acquirer.started.wait()
        await asyncio.sleep(0)
        assert cache.state(SCOPE) == CredentialState.REFRESHING

        gate.set()
        tokens = await asyncio.gather(first, second)

        assert tokens == ["token-1", "token-1"]
        assert acquirer.calls == [SCOPE]

    asyncio.run(_run())


def test_many_concurrent_callers_on_stale_token_refresh_once() -> None:
    async def _run() -> None:
        clock = FakeClock()
        acquirer = FakeTokenAcquirer(delay_seconds=0.01)
        cache = CredentialCache(acquirer, clock=clock)
        await cache.get_token(SCOPE)
        clock.advance(TOKEN_LIFETIME_SECONDS)

        tokens = await asyncio.gather(*(cache.get_token(SCOPE) for _ in range(20)))

        assert set(tokens) == {"token-2"}
        assert len(acquirer.calls) == 2

    asyncio.run(_run())


def test_failure_reaches_every_waiter_and_is_not_cached() -> None:
    async def _run() -> None:
        gate = asyncio.Event()
        acquirer = FakeTokenAcquirer(gate=gate, error=RuntimeError("no identity"))
        cache = CredentialCache(acquirer)

        waiters = [asyncio.create_task(cache.get_token(SCOPE)) for _ in range(3)]
        await acquirer.started.wait()
        gate.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert len(acquirer.calls) == 1
        assert all(isinstance(result, CredentialAcquisitionError) for result in results)
        assert results[0].scope == SCOPE
        assert "no identity" in str(results[0])
        assert cache.state(SCOPE) == CredentialState.EMPTY

        acquirer.error = None
        assert await cache.get_token(SCOPE) == "token-2"
        assert len(acquirer.calls) == 2

    asyncio.run(_run())


def test_failed_refresh_drops_the_stale_token() -> None:
    async def _run() -> None:
        clock = FakeClock()
        acquirer = FakeTokenAcquirer()
        cache = CredentialCache(acquirer, clock=clock)
        await cache.get_token(SCOPE)
        clock.advance(TOKEN_LIFETIME_SECONDS)
        acquirer.error = RuntimeError("expired refresh")

        with pytest.raises(CredentialAcquisitionError):
            await cache.get_token(SCOPE)
        assert cache.state(SCOPE) == CredentialState.EMPTY

    asyncio.run(_run())


def test_acquisition_timeout_is_a_failure() -> None:
    async def _run() -> None:
        acquirer = FakeTokenAcquirer(delay_seconds=5.0)
        cache = CredentialCache(acquirer, timeout_seconds=0.05)

        with pytest.raises(CredentialAcquisitionError, match="timed out"):
            await cache.get_token(SCOPE)
        assert cache.state(SCOPE) == CredentialState.EMPTY

        acquirer.delay_seconds = 0.0
        assert await cache.get_token(SCOPE) == "token-2"

    asyncio.run(_run())


def test_empty_token_is_a_failure() -> None:
    class _EmptyAcquirer(FakeTokenAcquirer):
        async def acquire(self, scope: str) -> str:
            self.calls.append(scope)
            return ""

    async def _run() -> None:
        cache = CredentialCache(_EmptyAcquirer())
        with pytest.raises(CredentialAcquisitionError, match="no token"):
            await cache.get_token(SCOPE)

    asyncio.run(_run())


def test_cancelled_caller_does_not_cancel_shared_acquisition() -> None:
    async def _run() -> None:
        gate = asyncio.Event()
        acquirer = FakeTokenAcquirer(gate=gate)
        cache = CredentialCache(acquirer)

        caller = asyncio.create_task(cache.get_token(SCOPE))
        await acquirer.started.wait()
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        gate.set()
        for _ in range(10):
            if cache.state(SCOPE) == CredentialState.VALID:
                break
            await asyncio.sleep(0)

        assert cache.state(SCOPE) == CredentialState.VALID
        assert await cache.get_token(SCOPE) == "token-1"
        assert acquirer.calls == [SCOPE]

    asyncio.run(_run())


def test_scopes_refresh_independently() -> None:
    class _PerScopeAcquirer(FakeTokenAcquirer):
        def __init__(self, blocked_scope: str) -> None:
            super().__init__()
            self.blocked_scope = blocked_scope
            self.release = asyncio.Event()

        async def acquire(self, scope: str) -> str:
            self.calls.append(scope)
            if scope == self.blocked_scope:
                await self.release.wait()
            return f"{scope}-token"

    async def _run() -> None:
        acquirer = _PerScopeAcquirer(blocked_scope="scope-a")
        cache = CredentialCache(acquirer)

        blocked = asyncio.create_task(cache.get_token("scope-a"))
        await asyncio.sleep(0)
        token_b = await asyncio.wait_for(cache.get_token("scope-b"), timeout=1.0)

        assert token_b == "scope-b-token"
        assert cache.snapshot() == {"scope-a": "refreshing", "scope-b": "valid"}

        acquirer.release.set()
        assert await blocked == "scope-a-token"

    asyncio.run(_run())


def test_close_closes_acquirer() -> None:
    acquirer = FakeTokenAcquirer()
    asyncio.run(CredentialCache(acquirer).close())
    assert acquirer.closed is True


def test_unknown_scope_is_empty() -> None:
    assert CredentialCache(FakeTokenAcquirer()).state("never-used") == (
        CredentialState.EMPTY
    )


class _FakeAzureCredential:
    instances = 0

    def __init__(self) -> None:
        type(self).instances += 1
        self.scopes: list[str] = []
        self.closed = False

    async def get_token(self, *scopes: str) -> AccessToken:
        self.scopes.extend(scopes)
        return AccessToken("azure-access-token", 1_700_003_600)

    async def close(self) -> None:
        self.closed = True


def test_azure_identity_acquirer_creates_credential_lazily_once() -> None:
    async def _run() -> None:
        _FakeAzureCredential.instances = 0
        acquirer = AzureIdentityTokenAcquirer(_FakeAzureCredential)
        assert _FakeAzureCredential.instances == 0

        assert await acquirer.acquire(SCOPE) == "azure-access-token"
        assert await acquirer.acquire(SCOPE) == "azure-access-token"
        assert _FakeAzureCredential.instances == 1

        credential = acquirer._credential
        assert isinstance(credential, _FakeAzureCredential)
        assert credential.scopes == [SCOPE, SCOPE]

        await acquirer.close()
        assert credential.closed is True

    asyncio.run(_run())
