from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from twofactor.db.base import Base


def build_engine(database_url: str) -> Engine:
    if not database_url.startswith('sqlite'):
        return create_engine(database_url, pool_pre_ping=True)
    connect_args = {'check_same_thread': False}
    if ':memory:' in database_url:
        # One shared connection, otherwise every session sees a fresh empty database.
        return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(database_url, connect_args=connect_args)


def build_session_factory(engine: Engine) -> sessionmaker:
    from twofactor.models import schema  # noqa: F401

    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, expire_on_commit=False)
