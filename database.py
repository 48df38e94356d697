import logging
import os
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///database.sqlite"


def make_engine(url: Optional[str] = None) -> Engine:
    """Engine for the license database; DATABASE_URL unless given one."""
    url = url or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    kwargs = {"echo": False, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        # sync routes run in a threadpool, so connections cross threads
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, or every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


engine = make_engine()


def init_db(bind: Optional[Engine] = None) -> None:
    bind = bind or engine
    SQLModel.metadata.create_all(bind)
    logger.info("database ready at %s", bind.url.render_as_string(hide_password=True))


def get_session():
    with Session(engine) as session:
        yield session
