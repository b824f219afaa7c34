from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from adreports.db_models import Base


def _enable_sqlite_concurrency(dbapi_connection, _connection_record) -> None:
    # Worker threads write entity chunks while the runner updates the ledger.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def build_session_factory(database_url: str) -> sessionmaker[Session]:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    engine = create_engine(database_url, future=True, connect_args=connect_args)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_concurrency)

    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
