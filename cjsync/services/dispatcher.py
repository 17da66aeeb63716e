"""
CJ 호출 디스패처.

모든 공급사 호출은 여기를 거칩니다.
- 계정 등급(tier)별 최소 호출 간격을 전체 워커가 공유하는 게이트로 강제
- 현재 토큰 부착, 401 계열이면 토큰 폐기 후 1회 재시도
- 429/1600200 및 네트워크 오류는 tenacity로 지수 백오프 재시도
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from cjsync.cj_client import CJClient, CJEnvelope
from cjsync.exceptions import AuthError, RateLimitError, SupplierTransportError
from cjsync.services.credentials import CredentialManager

logger = logging.getLogger(__name__)

# 전역 최소 간격 + 등급별 추가 지연 (초)
BASE_MIN_INTERVAL = 1.5
TIER_EXTRA_DELAY = {
    "free": 0.2,
    "plus": 0.1,
    "prime": 0.05,
    "advanced": 0.0,
}
# 호출 제한 응답 시 첫 백오프 (초)
TIER_RATE_LIMIT_BACKOFF = {
    "free": 20.0,
    "plus": 10.0,
    "prime": 8.0,
    "advanced": 5.0,
}
MAX_BACKOFF = 120.0

Sleep = Callable[[float], Awaitable[Any]]


def min_interval_for_tier(tier: str) -> float:
    return BASE_MIN_INTERVAL + TIER_EXTRA_DELAY.get(tier, TIER_EXTRA_DELAY["free"])


@dataclass(frozen=True)
class CJRequest:
    method: str
    path: str
    params: dict[str, Any] | None = None
    json: dict[str, Any] | None = None
    auth: bool = True


class PacingGate:
    """
    호출 타이밍만 직렬화하는 공유 게이트.
    wait()는 직전 슬롯으로부터 min_interval이 지난 뒤에 반환됩니다.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_slot: float | None = None

    async def wait(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._last_slot is not None:
                delay = self._last_slot + self.min_interval - now
                if delay > 0:
                    await self._sleep(delay)
                    now = self._clock()
            self._last_slot = now


class RateLimitedDispatcher:
    def __init__(
        self,
        client: CJClient,
        credentials: CredentialManager,
        gate: PacingGate,
        max_attempts: int = 5,
        rate_limit_backoff: float = TIER_RATE_LIMIT_BACKOFF["free"],
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._gate = gate
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._rate_limit_wait = wait_exponential(multiplier=rate_limit_backoff, min=rate_limit_backoff, max=MAX_BACKOFF)
        self._transport_wait = wait_exponential(multiplier=1, min=2, max=30)

    @classmethod
    def for_tier(
        cls,
        client: CJClient,
        credentials: CredentialManager,
        tier: str,
        max_attempts: int = 5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> "RateLimitedDispatcher":
        gate = PacingGate(min_interval_for_tier(tier), clock=clock, sleep=sleep)
        return cls(
            client,
            credentials,
            gate,
            max_attempts=max_attempts,
            rate_limit_backoff=TIER_RATE_LIMIT_BACKOFF.get(tier, TIER_RATE_LIMIT_BACKOFF["free"]),
            sleep=sleep,
        )

    @property
    def gate(self) -> PacingGate:
        return self._gate

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitError):
            delay = self._rate_limit_wait(retry_state)
            if exc.retry_after:
                delay = max(delay, exc.retry_after)
            return delay
        return self._transport_wait(retry_state)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait_s = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"[DISPATCH] 재시도 중... ({retry_state.attempt_number}/{self.max_attempts}회째, "
            f"{wait_s:.1f}s 대기): {exc}"
        )

    async def dispatch(self, request: CJRequest) -> CJEnvelope:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type((RateLimitError, SupplierTransportError)),
            sleep=self._sleep,
            reraise=True,
            before_sleep=self._before_sleep,
        )
        envelope: CJEnvelope | None = None
        async for attempt in retrying:
            with attempt:
                envelope = await self._send_authenticated(request)
        return envelope

    async def _send(self, request: CJRequest, token: str | None) -> CJEnvelope:
        await self._gate.wait()
        return await self._client.request(
            request.method,
            request.path,
            token=token,
            params=request.params,
            json=request.json,
        )

    async def _send_authenticated(self, request: CJRequest) -> CJEnvelope:
        if not request.auth:
            return await self._send(request, None)

        token = await self._credentials.get_valid_token()
        try:
            return await self._send(request, token.access_token)
        except AuthError as e:
            logger.warning(f"[DISPATCH] {request.path} 인증 실패, 토큰 재발급 후 1회 재시도: {e.message}")
            self._credentials.invalidate(token.access_token)

        fresh = await self._credentials.get_valid_token()
        return await self._send(request, fresh.access_token)
