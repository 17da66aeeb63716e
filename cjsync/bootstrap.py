"""
서비스 조립.

CJClient, CredentialManager, Dispatcher는 프로세스당 하나씩 공유되고
설정값은 여기서 한 번 읽어 각 서비스 생성자에 값으로 전달됩니다.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Callable

from cjsync.cj_client import CJClient
from cjsync.repository import RepositoryScope
from cjsync.services.catalog import CatalogFetcher
from cjsync.services.category_mapper import CategoryMapper
from cjsync.services.credentials import CredentialManager
from cjsync.services.dispatcher import RateLimitedDispatcher
from cjsync.services.orchestrator import SyncOrchestrator
from cjsync.services.reconciliation import IdentityReconciler
from cjsync.services.webhooks import WebhookHandler
from cjsync.settings import Settings, settings

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: Settings
    scope: RepositoryScope
    supplier_id: uuid.UUID
    client: CJClient
    credentials: CredentialManager
    dispatcher: RateLimitedDispatcher
    fetcher: CatalogFetcher
    reconciler: IdentityReconciler
    mapper: CategoryMapper
    orchestrator: SyncOrchestrator
    # 웹훅 토글을 요청마다 다시 읽는 설정 로더 (없으면 config 고정)
    config_loader: Callable[[], Settings] | None = None

    def webhook_handler(self, config: Settings | None = None) -> WebhookHandler:
        """요청마다 토글을 다시 읽어 핸들러를 만듭니다."""
        if config is None:
            config = self.config_loader() if self.config_loader else self.config
        return WebhookHandler(
            scope=self.scope,
            supplier_id=self.supplier_id,
            mapper=self.mapper,
            fetcher=self.fetcher,
            enabled=config.enable_webhooks,
            require_secure_transport=config.is_production,
        )

    async def aclose(self) -> None:
        await self.orchestrator.shutdown()
        await self.client.aclose()


def ensure_supplier(scope: RepositoryScope, config: Settings) -> uuid.UUID:
    """공급사 행과 인증 정보 행을 보장합니다. 설정의 계정 정보가 바뀌면 반영합니다."""
    with scope() as repo:
        supplier = repo.get_supplier_by_name(config.cj_supplier_name)
        if supplier is None:
            supplier = repo.create_supplier(config.cj_supplier_name)
            logger.info(f"[BOOT] 공급사 생성: {supplier.name} ({supplier.id})")

        credential = repo.get_credential(supplier.id)
        if credential is None:
            repo.create_credential(
                supplier.id,
                email=config.cj_email,
                api_key=config.cj_api_key,
                tier=config.cj_tier,
                enabled=True,
            )
        elif config.cj_email and (credential.email, credential.api_key) != (config.cj_email, config.cj_api_key):
            # 계정이 바뀌면 기존 토큰은 무효
            repo.update_credential(
                supplier.id,
                email=config.cj_email,
                api_key=config.cj_api_key,
                access_token=None,
                refresh_token=None,
                token_expiry=None,
                refresh_token_expiry=None,
            )
        if credential is not None and credential.tier != config.cj_tier:
            repo.update_credential(supplier.id, tier=config.cj_tier)
        return supplier.id


def build_services(config: Settings | None = None, scope: RepositoryScope | None = None) -> Services:
    # 설정을 주입받지 않은 경우에만 웹훅 토글을 환경에서 다시 읽음
    loader_enabled = config is None
    config = config or settings
    if scope is None:
        from cjsync.db import default_scope

        scope = default_scope()

    supplier_id = ensure_supplier(scope, config)
    client = CJClient(
        config.cj_api_base_url,
        platform_token=config.cj_platform_token,
        timeout=config.cj_request_timeout,
    )
    credentials = CredentialManager(client, scope, supplier_id)
    dispatcher = RateLimitedDispatcher.for_tier(
        client, credentials, config.cj_tier, max_attempts=config.cj_retry_count
    )
    fetcher = CatalogFetcher(dispatcher)
    reconciler = IdentityReconciler(fetcher, scope)
    mapper = CategoryMapper(scope)
    orchestrator = SyncOrchestrator(
        scope,
        supplier_id,
        fetcher,
        reconciler,
        batch_size=config.sync_batch_size,
        concurrency=config.sync_concurrency,
        batch_sleep=config.sync_batch_sleep,
        sync_enabled=config.enable_sync,
        review_sync_enabled=config.enable_review_sync,
    )
    logger.info(
        f"[BOOT] CJ 서비스 준비 완료 (tier={config.cj_tier}, env={config.environment}, "
        f"sync={config.enable_sync}, webhooks={config.enable_webhooks})"
    )
    return Services(
        config=config,
        scope=scope,
        supplier_id=supplier_id,
        client=client,
        credentials=credentials,
        dispatcher=dispatcher,
        fetcher=fetcher,
        reconciler=reconciler,
        mapper=mapper,
        orchestrator=orchestrator,
        config_loader=Settings if loader_enabled else None,
    )
