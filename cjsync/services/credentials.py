"""
CJ 인증 상태의 단일 소스.

access/refresh 토큰 쌍과 만료 시각을 소유하며, 만료를 동시에 관찰한
여러 호출자의 갱신 요청을 하나의 in-flight 작업으로 합칩니다.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from cjsync.cj_client import CJClient, CJToken, mask_token
from cjsync.exceptions import AuthError, CJSyncError, SyncDisabledError
from cjsync.normalization import ensure_utc
from cjsync.repository import RepositoryScope

logger = logging.getLogger(__name__)

# 만료 1시간 전부터는 유효하지 않은 것으로 간주
REFRESH_MARGIN = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class _StoredCredential:
    email: str
    api_key: str
    enabled: bool
    token: CJToken | None


class CredentialManager:
    def __init__(
        self,
        client: CJClient,
        scope: RepositoryScope,
        supplier_id: uuid.UUID,
        clock: Callable[[], datetime] = _utcnow,
        refresh_margin: timedelta = REFRESH_MARGIN,
    ) -> None:
        self._client = client
        self._scope = scope
        self._supplier_id = supplier_id
        self._clock = clock
        self._refresh_margin = refresh_margin
        self._token: CJToken | None = None
        self._revoked: str | None = None
        self._inflight: asyncio.Task[CJToken] | None = None

    @property
    def supplier_id(self) -> uuid.UUID:
        return self._supplier_id

    @property
    def current_expiry(self) -> datetime | None:
        return self._token.expires_at if self._token else None

    def _is_usable(self, token: CJToken | None) -> bool:
        if token is None or not token.access_token or token.access_token == self._revoked:
            return False
        expires_at = ensure_utc(token.expires_at)
        return expires_at is not None and self._clock() < expires_at - self._refresh_margin

    async def get_valid_token(self) -> CJToken:
        """
        이번 호출에 바로 쓸 수 있는 토큰을 반환합니다.
        만료 임박 시 refresh (refresh token이 없으면 로그인) 후 반환합니다.
        """
        if self._is_usable(self._token):
            return self._token

        if self._inflight is None:
            task = asyncio.create_task(self._renew())
            task.add_done_callback(self._renewal_done)
            self._inflight = task
        return await asyncio.shield(self._inflight)

    def invalidate(self, token: str | None = None) -> None:
        """
        다음 호출이 재인증하도록 현재 토큰을 폐기합니다.
        token을 넘기면 그 토큰이 아직 현재 토큰일 때만 폐기합니다.
        """
        if self._token is None:
            return
        if token is not None and token != self._token.access_token:
            logger.debug("[AUTH] 이미 교체된 토큰에 대한 invalidate 무시")
            return
        logger.info(f"[AUTH] 토큰 폐기: {mask_token(self._token.access_token)}")
        self._revoked = self._token.access_token
        self._token = None

    def _renewal_done(self, task: asyncio.Task[CJToken]) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # 대기자가 모두 취소된 경우에도 예외가 회수되도록 조회
            task.exception()

    def _load(self) -> _StoredCredential:
        with self._scope() as repo:
            credential = repo.get_credential(self._supplier_id)
            if credential is None:
                raise AuthError(
                    f"supplier {self._supplier_id} 인증 정보가 없습니다",
                    context={"supplier_id": str(self._supplier_id)},
                )
            token = None
            if credential.access_token and credential.token_expiry:
                token = CJToken(
                    access_token=credential.access_token,
                    expires_at=ensure_utc(credential.token_expiry),
                    refresh_token=credential.refresh_token,
                    refresh_expires_at=ensure_utc(credential.refresh_token_expiry),
                )
            elif credential.refresh_token:
                token = CJToken(
                    access_token="",
                    expires_at=self._clock(),
                    refresh_token=credential.refresh_token,
                    refresh_expires_at=ensure_utc(credential.refresh_token_expiry),
                )
            return _StoredCredential(
                email=credential.email,
                api_key=credential.api_key,
                enabled=credential.enabled,
                token=token,
            )

    def _persist(self, token: CJToken) -> None:
        with self._scope() as repo:
            repo.update_credential(
                self._supplier_id,
                access_token=token.access_token,
                token_expiry=token.expires_at,
                refresh_token=token.refresh_token,
                refresh_token_expiry=token.refresh_expires_at,
                last_refreshed_at=self._clock(),
            )

    async def _renew(self) -> CJToken:
        stored = self._load()
        if not stored.enabled:
            raise SyncDisabledError(
                "CJ 연결이 비활성화되어 있습니다", context={"supplier_id": str(self._supplier_id)}
            )

        # 다른 프로세스가 이미 갱신해 둔 토큰이면 그대로 사용
        if self._is_usable(stored.token):
            logger.info(f"[AUTH] 저장된 토큰 사용 (expires={stored.token.expires_at.isoformat()})")
            self._token = stored.token
            return stored.token

        token: CJToken | None = None
        refresh_token = stored.token.refresh_token if stored.token else None
        refresh_expiry = ensure_utc(stored.token.refresh_expires_at) if stored.token else None
        if refresh_token and (refresh_expiry is None or self._clock() < refresh_expiry):
            try:
                token = await self._client.refresh_access_token(refresh_token)
                logger.info(f"[AUTH] 토큰 갱신 성공: {mask_token(token.access_token)}")
            except SyncDisabledError:
                raise
            except CJSyncError as e:
                logger.warning(f"[AUTH] 토큰 갱신 실패, 재로그인 시도: {e.message}")

        if token is None:
            try:
                token = await self._client.get_access_token(stored.email, stored.api_key)
            except AuthError as e:
                logger.error(f"[AUTH] 재로그인 실패: {e.message}")
                raise AuthError(
                    f"CJ 재로그인 실패: {e.message}",
                    context={"supplier_id": str(self._supplier_id)},
                ) from e
            logger.info(f"[AUTH] 로그인 성공: {mask_token(token.access_token)}")

        if token.refresh_token is None and refresh_token:
            token = CJToken(
                access_token=token.access_token,
                expires_at=token.expires_at,
                refresh_token=refresh_token,
                refresh_expires_at=refresh_expiry,
            )

        self._token = token
        self._revoked = None
        self._persist(token)
        return token
