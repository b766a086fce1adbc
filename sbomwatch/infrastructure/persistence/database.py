from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from sbomwatch.core.exceptions import StoreUnavailableError

Base = declarative_base()


def create_database_engine(db_url: str = "sqlite:///sbomwatch.db"):
    """Create SQLAlchemy engine and make sure every table exists"""
    # Registers the ORM tables on Base.metadata
    from sbomwatch.infrastructure.persistence import models  # noqa: F401

    if db_url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection so worker threads see the same in-memory database
        engine = create_engine(
            db_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif db_url.startswith("sqlite"):
        engine = create_engine(db_url, echo=False, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(db_url, echo=False, pool_pre_ping=True)
    Base.metadata.create_all(engine)
    return engine


def create_session_factory(engine):
    """Sessions are thread-confined: open one per unit of work"""
    return sessionmaker(bind=engine, expire_on_commit=False)


def create_session(engine):
    """Create database session"""
    return create_session_factory(engine)()


@contextmanager
def translate_store_errors(transactional, phase: str):
    """Roll back and re-raise database failures as StoreUnavailableError"""
    try:
        yield
    except SQLAlchemyError as e:
        transactional.rollback()
        raise StoreUnavailableError(phase, str(e)) from e
