from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from idbackfill.db_models import Base


def build_engine(database_url: str, *, credentials_path: str | None = None, pool_size: int | None = None) -> Engine:
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    elif pool_size is not None:
        # Leave headroom so every worker can hold a connection at once.
        engine_kwargs["pool_size"] = pool_size
        engine_kwargs["max_overflow"] = pool_size

    if credentials_path and database_url.startswith("bigquery"):
        engine_kwargs["credentials_path"] = credentials_path

    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True, **engine_kwargs)


def build_session_factory(database_url: str) -> sessionmaker[Session]:
    engine = build_engine(database_url)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)
