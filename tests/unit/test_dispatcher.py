"""
RateLimitedDispatcher / PacingGate 테스트.

가짜 시계로 호출 간격과 백오프를 실제 대기 없이 검증합니다.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from cjsync.cj_client import CJEnvelope, CJToken
from cjsync.exceptions import AuthError, RateLimitError, SupplierTransportError
from cjsync.services.dispatcher import (
    CJRequest,
    PacingGate,
    RateLimitedDispatcher,
    min_interval_for_tier,
)

OK = CJEnvelope(code=200, result=True, message="Success", data={"ok": True})


class FakeCredentials:
    def __init__(self):
        self.issued = 0
        self.invalidated = []
        self._current = None

    async def get_valid_token(self):
        if self._current is None:
            self.issued += 1
            self._current = CJToken(
                access_token=f"token-{self.issued}",
                expires_at=datetime.now(timezone.utc) + timedelta(days=1),
            )
        return self._current

    def invalidate(self, token=None):
        self.invalidated.append(token)
        if self._current is not None and token == self._current.access_token:
            self._current = None


class ScriptedClient:
    """응답 시나리오를 순서대로 돌려주는 클라이언트 대역."""

    def __init__(self, clock, script=None):
        self.clock = clock
        self.script = list(script or [])
        self.calls = []

    async def request(self, method, path, *, token=None, params=None, json=None):
        self.calls.append({"at": self.clock.now, "path": path, "token": token})
        outcome = self.script.pop(0) if self.script else OK
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _dispatcher(fake_clock, client, tier="free", max_attempts=5):
    return RateLimitedDispatcher.for_tier(
        client,
        FakeCredentials(),
        tier,
        max_attempts=max_attempts,
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )


@pytest.mark.unit
class TestPacing:
    """호출 간격 강제."""

    def test_tier_intervals(self):
        assert min_interval_for_tier("free") == pytest.approx(1.7)
        assert min_interval_for_tier("advanced") == pytest.approx(1.5)
        assert min_interval_for_tier("free") >= min_interval_for_tier("plus") >= min_interval_for_tier("prime")
        # 모르는 등급은 가장 보수적인 free로
        assert min_interval_for_tier("unknown") == min_interval_for_tier("free")

    @pytest.mark.asyncio
    async def test_ten_concurrent_calls_are_spaced(self, fake_clock):
        """동시 10건 → 연속 호출 간격이 모두 최소 간격 이상"""
        client = ScriptedClient(fake_clock)
        dispatcher = _dispatcher(fake_clock, client)
        start = fake_clock.now

        await asyncio.gather(*(dispatcher.dispatch(CJRequest("GET", "/product/query")) for _ in range(10)))

        interval = dispatcher.gate.min_interval
        stamps = sorted(call["at"] for call in client.calls)
        assert len(stamps) == 10
        assert stamps[-1] - start >= 9 * interval - 1e-9
        assert all(b - a >= interval - 1e-9 for a, b in zip(stamps, stamps[1:]))

    @pytest.mark.asyncio
    async def test_gate_does_not_wait_after_idle_period(self, fake_clock):
        gate = PacingGate(1.5, clock=fake_clock, sleep=fake_clock.sleep)

        await gate.wait()
        fake_clock.now += 10
        await gate.wait()

        assert fake_clock.sleeps == []


@pytest.mark.unit
class TestRetries:
    """재시도/백오프."""

    @pytest.mark.asyncio
    async def test_rate_limit_backs_off_then_succeeds(self, fake_clock):
        client = ScriptedClient(fake_clock, [RateLimitError("429"), RateLimitError("429"), OK])
        dispatcher = _dispatcher(fake_clock, client)

        envelope = await dispatcher.dispatch(CJRequest("GET", "/product/listV2"))

        assert envelope.ok
        assert len(client.calls) == 3
        # free 등급 백오프 20초부터 지수 증가
        assert 20.0 in fake_clock.sleeps
        assert 40.0 in fake_clock.sleeps

    @pytest.mark.asyncio
    async def test_retry_after_is_honoured(self, fake_clock):
        client = ScriptedClient(fake_clock, [RateLimitError("429", retry_after=90), OK])
        dispatcher = _dispatcher(fake_clock, client)

        await dispatcher.dispatch(CJRequest("GET", "/product/listV2"))

        assert 90 in fake_clock.sleeps

    @pytest.mark.asyncio
    async def test_persistent_rate_limit_surfaces_after_retry_budget(self, fake_clock):
        client = ScriptedClient(fake_clock, [RateLimitError("429") for _ in range(10)])
        dispatcher = _dispatcher(fake_clock, client, max_attempts=3)

        with pytest.raises(RateLimitError):
            await dispatcher.dispatch(CJRequest("GET", "/product/listV2"))
        assert len(client.calls) == 3

    @pytest.mark.asyncio
    async def test_transport_error_retried(self, fake_clock):
        client = ScriptedClient(fake_clock, [SupplierTransportError("timeout"), OK])
        dispatcher = _dispatcher(fake_clock, client)

        envelope = await dispatcher.dispatch(CJRequest("GET", "/product/query"))

        assert envelope.ok
        assert len(client.calls) == 2


@pytest.mark.unit
class TestAuthRetry:
    """인증 실패 시 1회 재시도."""

    @pytest.mark.asyncio
    async def test_auth_error_invalidates_and_retries_once(self, fake_clock):
        client = ScriptedClient(fake_clock, [AuthError("expired"), OK])
        dispatcher = _dispatcher(fake_clock, client)

        envelope = await dispatcher.dispatch(CJRequest("GET", "/product/query"))

        assert envelope.ok
        assert [c["token"] for c in client.calls] == ["token-1", "token-2"]
        assert dispatcher._credentials.invalidated == ["token-1"]

    @pytest.mark.asyncio
    async def test_second_auth_error_surfaces(self, fake_clock):
        client = ScriptedClient(fake_clock, [AuthError("expired"), AuthError("still bad"), OK])
        dispatcher = _dispatcher(fake_clock, client)

        with pytest.raises(AuthError):
            await dispatcher.dispatch(CJRequest("GET", "/product/query"))
        assert len(client.calls) == 2

    @pytest.mark.asyncio
    async def test_unauthenticated_request_has_no_token(self, fake_clock):
        client = ScriptedClient(fake_clock)
        dispatcher = _dispatcher(fake_clock, client)

        await dispatcher.dispatch(CJRequest("POST", "/authentication/getAccessToken", auth=False))

        assert client.calls[0]["token"] is None
        assert dispatcher._credentials.issued == 0
