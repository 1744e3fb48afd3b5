import os
from typing import Any, Generator

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from signflow.core.config import settings
from signflow.core.logging_setup import logger
import signflow.db.base  # noqa: F401


def build_engine(database_url: str | None = None, *, echo: bool | None = None) -> Engine:
    url = database_url or settings.database_url
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        # Writers wait on the database lock instead of failing immediately.
        connect_args["timeout"] = settings.sqlite_busy_timeout_seconds
    elif url.startswith("postgresql"):
        client_encoding = os.getenv("POSTGRES_CLIENT_ENCODING", "UTF8")
        connect_args["options"] = f"-c client_encoding={client_encoding}"
    return create_engine(
        url,
        echo=settings.debug if echo is None else echo,
        future=True,
        connect_args=connect_args,
    )


engine = build_engine()


def init_db(bind: Engine | None = None) -> None:
    target = bind or engine
    SQLModel.metadata.create_all(bind=target)
    logger.info("Database schema ready (%s)", target.url.render_as_string(hide_password=True))


def new_session() -> Session:
    """Standalone session for worker threads and jobs (resolves the engine at call time)."""
    return Session(engine)


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
