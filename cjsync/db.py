from collections.abc import Iterator
from functools import partial

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from cjsync.repository import RepositoryScope, repository_scope
from cjsync.settings import settings

engine = create_engine(settings.database_url, pool_pre_ping=True)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    expire_on_commit=False,
)


def get_session() -> Iterator[Session]:
    with SessionLocal() as session:
        with session.begin():
            yield session


def default_scope() -> RepositoryScope:
    """SessionLocal에 묶인 트랜잭션 스코프 팩토리."""
    return partial(repository_scope, SessionLocal)
