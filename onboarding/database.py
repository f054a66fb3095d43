from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from onboarding.db_models import Base


SQLITE_BUSY_TIMEOUT_MS = 5000


def _configure_sqlite(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_pragmas(dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        # Workers and the sweeper write concurrently; wait for the lock instead of failing.
        cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()


def build_session_factory(database_url: str) -> sessionmaker[Session]:
    is_sqlite = database_url.startswith("sqlite")
    connect_args: dict[str, object] = {"check_same_thread": False} if is_sqlite else {}

    engine = create_engine(database_url, future=True, connect_args=connect_args)
    if is_sqlite:
        _configure_sqlite(engine)
    Base.metadata.create_all(engine)
    # Store functions return ORM rows that callers read after the session closes.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
