from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from delivery_pipeline.config.settings import DatabaseSettings

Base = declarative_base()


def create_db_engine(settings: DatabaseSettings) -> Engine:
    """Create the engine for the configured database URL."""
    kwargs = {'echo': settings.echo}
    if settings.url.startswith("sqlite"):
        # Runs execute on worker threads
        kwargs['connect_args'] = {"check_same_thread": False}
        if settings.url in ("sqlite://", "sqlite:///:memory:"):
            kwargs['poolclass'] = StaticPool
    return create_engine(settings.url, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create the database tables."""
    # Register the mapped classes before creating tables
    from delivery_pipeline.models import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
