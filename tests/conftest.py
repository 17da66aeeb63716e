"""Pytest configuration and fixtures."""

import asyncio
import uuid
from functools import partial
from typing import Any, Callable

import pytest
from sqlalchemy import create_engine, JSON
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cjsync.cj_client import CJEnvelope
from cjsync.exceptions import PersistenceError
from cjsync.models import Base
from cjsync.repository import repository_scope


# 테스트용 메모리 SQLite 엔진 (세션 간 같은 커넥션 공유)
TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False  # 테스트 로그 줄이기
)

TestSessionLocal = sessionmaker(
    bind=test_engine,
    autoflush=False,
    expire_on_commit=False,
)


def _patch_jsonb_to_json(base):
    """
    SQLite에서 JSONB를 JSON으로 변경하여 컴파일 오류 방지.
    테스트용으로만 사용.
    """
    from sqlalchemy.dialects.postgresql import JSONB

    for table in base.metadata.sorted_tables:
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()


@pytest.fixture(scope="function")
def scope():
    """
    테스트용 트랜잭션 스코프 팩토리.
    각 테스트마다 새로운 메모리 DB 생성.
    """
    _patch_jsonb_to_json(Base)
    Base.metadata.create_all(bind=test_engine)
    try:
        yield partial(repository_scope, TestSessionLocal)
    finally:
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def supplier_id(scope) -> uuid.UUID:
    """공급사 + 인증 정보 기본 행."""
    with scope() as repo:
        supplier = repo.create_supplier("CJ Dropshipping")
        repo.create_credential(supplier.id, email="ops@example.com", api_key="key-123", tier="free")
        return supplier.id


@pytest.fixture
def seed(scope, supplier_id):
    """상품/옵션 생성 헬퍼."""

    class Seeder:
        def product(self, pid: str, variants: list[dict[str, Any]] | None = None, **fields: Any):
            with scope() as repo:
                product = repo.create_product(supplier_id, pid, **fields)
                for variant in variants or []:
                    repo.create_variant(product.id, **variant)
                return product.id

        def category(self, name: str, slug: str | None = None) -> uuid.UUID:
            with scope() as repo:
                return repo.create_category(name, slug or name.lower().replace(" ", "-")).id

    return Seeder()


def envelope(data: Any = None, code: int = 200, result: bool | None = True, message: str = "Success") -> CJEnvelope:
    return CJEnvelope(code=code, result=result, message=message, data=data)


@pytest.fixture
def make_envelope() -> Callable[..., CJEnvelope]:
    return envelope


class FakeDispatcher:
    """
    경로별 응답을 돌려주는 디스패처 대역.
    routes 값은 CJEnvelope, 예외, 또는 request를 받는 callable.
    """

    def __init__(self, routes: dict[str, Any] | None = None) -> None:
        self.routes = routes or {}
        self.requests = []

    async def dispatch(self, request):
        self.requests.append(request)
        await asyncio.sleep(0)
        route = self.routes.get(request.path)
        if route is None:
            raise AssertionError(f"unexpected request: {request.path}")
        if callable(route) and not isinstance(route, CJEnvelope):
            route = route(request)
        if isinstance(route, Exception):
            raise route
        return route

    def calls(self, path: str):
        return [r for r in self.requests if r.path == path]


@pytest.fixture
def fake_dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


class FakeClock:
    """단조 시계 + 시계를 전진시키는 sleep."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


class FlakyScope:
    """
    저장소 장애 대역.
    fail_calls에 든 호출 순번(0부터)이나 down=True 이후의 호출은 PersistenceError.
    """

    def __init__(self, scope, fail_calls=()) -> None:
        self._scope = scope
        self.fail_calls = set(fail_calls)
        self.down = False
        self.calls = 0

    def __call__(self):
        index = self.calls
        self.calls += 1
        if self.down or index in self.fail_calls:
            raise PersistenceError("db down", operation="transaction")
        return self._scope()


@pytest.fixture
def flaky_scope(scope) -> FlakyScope:
    return FlakyScope(scope)


# 테스트 마커 정의
def pytest_configure(config):
    """Pytest 마커 등록."""
    config.addinivalue_line("markers", "unit: 단위 테스트 (메모리 DB만 사용)")
    config.addinivalue_line("markers", "integration: 통합 테스트 (FastAPI 앱 경유)")
