from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Protocol

from azure.core.credentials_async import AsyncTokenCredential
from azure.identity.aio import AzureCliCredential, DefaultAzureCredential

from ccrouter.errors import CredentialAcquisitionError

TOKEN_LIFETIME_SECONDS = 50 * 60
REFRESH_MARGIN_SECONDS = 60.0

logger = logging.getLogger("uvicorn.error")


class CredentialState(str, Enum):
    EMPTY = "empty"
    VALID = "valid"
    STALE = "stale"
    REFRESHING = "refreshing"


@dataclass(frozen=True, slots=True)
class CachedToken:
    scope: str
    value: str
    expires_at: float

    def is_fresh(self, now: float, margin_seconds: float) -> bool:
        return now + margin_seconds < self.expires_at


class TokenAcquirer(Protocol):
    async def acquire(self, scope: str) -> str: ...

    async def close(self) -> None: ...


@dataclass(slots=True)
class _ScopeSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    token: CachedToken | None = None
    inflight: asyncio.Task[CachedToken] | None = None


class CredentialCache:
    """Caches bearer tokens per scope with single-flight refresh.

    Each scope owns its own lock, so refreshing one scope never blocks callers
    of another. While an acquisition is in flight every caller for that scope
    awaits the same task. The task is shielded from caller cancellation, so an
    aborted request still leaves a fresh token behind. A failed acquisition
    clears the scope; the next caller starts a new attempt.
    """

    def __init__(
        self,
        acquirer: TokenAcquirer,
        *,
        timeout_seconds: float = 30.0,
        token_lifetime_seconds: float = TOKEN_LIFETIME_SECONDS,
        refresh_margin_seconds: float = REFRESH_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._acquirer = acquirer
        self._timeout_seconds = timeout_seconds
        self._token_lifetime_seconds = token_lifetime_seconds
        self._refresh_margin_seconds = refresh_margin_seconds
        self._clock = clock
        self._slots: dict[str, _ScopeSlot] = {}

    def state(self, scope: str) -> CredentialState:
        slot = self._slots.get(scope)
        if slot is None:
            return CredentialState.EMPTY
        if slot.inflight is not None:
            return CredentialState.REFRESHING
        if slot.token is None:
            return CredentialState.EMPTY
        if slot.token.is_fresh(self._clock(), self._refresh_margin_seconds):
            return CredentialState.VALID
        return CredentialState.STALE

    def snapshot(self) -> dict[str, str]:
        return {scope: self.state(scope).value for scope in sorted(self._slots)}

    async def get_token(self, scope: str) -> str:
        slot = self._slots.setdefault(scope, _ScopeSlot())
        cached = self._fresh_token(slot)
        if cached is not None:
            return cached.value

        async with slot.lock:
            cached = self._fresh_token(slot)
            if cached is not None:
                return cached.value
            task = slot.inflight
            if task is None:
                task = asyncio.create_task(self._acquire(scope, slot))
                task.add_done_callback(_retrieve_task_exception)
                slot.inflight = task

        token = await asyncio.shield(task)
        return token.value

    async def close(self) -> None:
        await self._acquirer.close()

    def _fresh_token(self, slot: _ScopeSlot) -> CachedToken | None:
        token = slot.token
        if token is not None and token.is_fresh(
            self._clock(), self._refresh_margin_seconds
        ):
            return token
        return None

    async def _acquire(self, scope: str, slot: _ScopeSlot) -> CachedToken:
        logger.info("credential_acquire_start scope=%s", scope)
        try:
            value = await self._acquire_value(scope)
            token = CachedToken(
                scope=scope,
                value=value,
                expires_at=self._clock() + self._token_lifetime_seconds,
            )
            slot.token = token
        except CredentialAcquisitionError:
            slot.token = None
            raise
        finally:
            slot.inflight = None

        logger.info(
            "credential_acquire_success scope=%s expires_at=%d",
            scope,
            int(token.expires_at),
        )
        return token

    async def _acquire_value(self, scope: str) -> str:
        try:
            value = await asyncio.wait_for(
                self._acquirer.acquire(scope),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as exc:
            logger.warning(
                "credential_acquire_error scope=%s reason=timeout timeout_seconds=%s",
                scope,
                self._timeout_seconds,
            )
            raise CredentialAcquisitionError(
                scope, f"timed out after {self._timeout_seconds}s"
            ) from exc
        except CredentialAcquisitionError:
            logger.warning("credential_acquire_error scope=%s reason=acquirer", scope)
            raise
        except Exception as exc:
            logger.warning(
                "credential_acquire_error scope=%s reason=%s",
                scope,
                exc.__class__.__name__,
            )
            raise CredentialAcquisitionError(
                scope, str(exc).strip() or exc.__class__.__name__
            ) from exc

        if not value:
            logger.warning("credential_acquire_error scope=%s reason=empty_token", scope)
            raise CredentialAcquisitionError(scope, "identity provider returned no token")
        return value


def _retrieve_task_exception(task: asyncio.Task[CachedToken]) -> None:
    # Waiters may all be gone; the failure still counts as observed.
    if not task.cancelled():
        task.exception()


class AzureIdentityTokenAcquirer:
    def __init__(
        self,
        credential_factory: Callable[[], AsyncTokenCredential] = DefaultAzureCredential,
    ) -> None:
        self._credential_factory = credential_factory
        self._credential: AsyncTokenCredential | None = None

    async def acquire(self, scope: str) -> str:
        if self._credential is None:
            self._credential = self._credential_factory()
        access_token = await self._credential.get_token(scope)
        return access_token.token

    async def close(self) -> None:
        credential = self._credential
        self._credential = None
        if credential is not None:
            await credential.close()


def build_token_acquirer(source: str) -> AzureIdentityTokenAcquirer:
    if source == "cli":
        return AzureIdentityTokenAcquirer(AzureCliCredential)
    return AzureIdentityTokenAcquirer(DefaultAzureCredential)
