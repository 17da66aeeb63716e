from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from cjsync.exceptions import AuthError, RateLimitError, SupplierTransportError
from cjsync.normalization import parse_cj_datetime

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TTL = timedelta(days=15)
REFRESH_TOKEN_TTL = timedelta(days=180)

RATE_LIMIT_CODES = frozenset({1600200})
AUTH_ERROR_CODES = frozenset({1600001, 1600003})
SUCCESS_CODES = frozenset({200, 0})


@dataclass(frozen=True)
class CJToken:
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None
    refresh_expires_at: datetime | None = None


@dataclass(frozen=True)
class CJEnvelope:
    """CJ 공통 응답 { code, result, message, data }."""
    code: int | None
    result: bool | None
    message: str | None
    data: Any
    request_id: str | None = None
    status_code: int = 200

    @property
    def ok(self) -> bool:
        return self.code in SUCCESS_CODES and self.result is not False


def mask_token(token: str | None) -> str:
    if not token:
        return "<none>"
    if len(token) <= 10:
        return "***"
    return f"{token[:6]}...{token[-4:]}"


class CJClient:
    """
    CJ Dropshipping REST 전송 계층.

    상태 코드/응답 코드를 예외 분류로만 변환하고 재시도나 페이싱은 하지 않습니다.
    """

    def __init__(
        self,
        base_url: str,
        platform_token: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._platform_token = platform_token or None
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "CJClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ----- 1. 인증 API -----

    async def get_access_token(self, email: str, api_key: str) -> CJToken:
        """1.1 Access Token 발급 (로그인)"""
        envelope = await self.request(
            "POST", "/authentication/getAccessToken", json={"email": email, "apiKey": api_key}
        )
        return self._token_from(envelope, "로그인")

    async def refresh_access_token(self, refresh_token: str) -> CJToken:
        """1.2 Access Token 갱신"""
        envelope = await self.request(
            "POST", "/authentication/refreshAccessToken", json={"refreshToken": refresh_token}
        )
        return self._token_from(envelope, "토큰 갱신")

    def _token_from(self, envelope: CJEnvelope, action: str) -> CJToken:
        data = envelope.data if isinstance(envelope.data, dict) else {}
        access_token = data.get("accessToken")
        if not envelope.ok or not access_token:
            raise AuthError(
                f"CJ {action} 실패: {envelope.message or 'accessToken 없음'}",
                context={"code": envelope.code},
            )
        now = datetime.now(timezone.utc)
        expires_at = parse_cj_datetime(data.get("accessTokenExpiryDate")) or now + ACCESS_TOKEN_TTL
        refresh_expires_at = parse_cj_datetime(data.get("refreshTokenExpiryDate"))
        refresh_token = data.get("refreshToken")
        if refresh_token and refresh_expires_at is None:
            refresh_expires_at = now + REFRESH_TOKEN_TTL
        return CJToken(
            access_token=str(access_token),
            expires_at=expires_at,
            refresh_token=str(refresh_token) if refresh_token else None,
            refresh_expires_at=refresh_expires_at,
        )

    # ----- 2. 공통 요청 -----

    async def request(
        self,
        method: str,
        path: str,
        *,
        token: str | None = None,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> CJEnvelope:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if token:
            headers["CJ-Access-Token"] = token
        if self._platform_token:
            headers["platformToken"] = self._platform_token

        try:
            resp = await self._client.request(method, path, params=params, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise SupplierTransportError(f"CJ {method} {path} 타임아웃") from exc
        except httpx.TransportError as exc:
            raise SupplierTransportError(f"CJ {method} {path} 연결 실패: {exc.__class__.__name__}") from exc

        if resp.status_code == 429:
            raise RateLimitError(
                f"CJ {path} 호출 제한 (HTTP 429)",
                retry_after=_retry_after(resp),
                context={"path": path},
            )
        if resp.status_code in (401, 403):
            raise AuthError(f"CJ {path} 인증 실패 (HTTP {resp.status_code})", context={"path": path})
        if resp.status_code >= 500:
            raise SupplierTransportError(f"CJ {path} 서버 오류 (HTTP {resp.status_code})", status_code=resp.status_code)

        try:
            body = resp.json()
        except ValueError as exc:
            raise SupplierTransportError(
                f"CJ {path} JSON 응답 아님: {resp.text[:200]}", status_code=resp.status_code
            ) from exc
        if not isinstance(body, dict):
            raise SupplierTransportError(f"CJ {path} 응답 형식 오류", status_code=resp.status_code)

        envelope = CJEnvelope(
            code=_as_int(body.get("code")),
            result=body.get("result", body.get("success")),
            message=body.get("message"),
            data=body.get("data"),
            request_id=body.get("requestId"),
            status_code=resp.status_code,
        )
        if envelope.code in RATE_LIMIT_CODES:
            raise RateLimitError(f"CJ {path} 호출 제한 (code {envelope.code})", context={"path": path})
        if envelope.code in AUTH_ERROR_CODES:
            raise AuthError(f"CJ {path} 토큰 오류 (code {envelope.code}): {envelope.message}", context={"path": path})

        logger.debug(f"[CJ] {method} {path} HTTP {resp.status_code} code={envelope.code}")
        return envelope


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _retry_after(resp: httpx.Response) -> float | None:
    value = resp.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
