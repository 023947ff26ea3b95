"""Entity store: engine setup and atomic units of work.

Every registry operation runs inside ``EntityStore.unit_of_work``. A unit
commits as a whole or rolls back as a whole; SQLAlchemy errors raised inside
it surface as ``StoreError``.

Isolation per unit:

- SQLite: the driver's implicit transaction handling is switched off and
  BEGIN is emitted explicitly. Write units use ``BEGIN IMMEDIATE`` so only
  one writer holds the database at a time; read units use a deferred BEGIN
  and keep one snapshot for their whole duration.
- Other backends (PostgreSQL): write units run at READ COMMITTED and lock
  the service row with ``SELECT ... FOR UPDATE``; read units run at
  REPEATABLE READ so a service and its child rows come from one snapshot.
"""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import StoreError
from .models import Base

_WRITE_LOCK_OPTION = "beacon_write_lock"


def _unicode_lower(value):
    return value.lower() if isinstance(value, str) else value


def normalize_database_url(database_url: str) -> str:
    """Point a bare ``postgresql://`` URL at the psycopg 3 driver."""
    url = make_url(database_url)
    if url.drivername == "postgresql":
        url = url.set(drivername="postgresql+psycopg")
    return url.render_as_string(hide_password=False)


def _install_sqlite_hooks(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None
        # Built-in lower() only folds ASCII
        dbapi_connection.create_function("lower", 1, _unicode_lower, deterministic=True)
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(_WRITE_LOCK_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


class EntityStore:
    """Owns the engine and hands out atomic units of work."""

    def __init__(self, database_url: str, echo: bool = False,
                 sqlite_busy_timeout: float = 30.0):
        database_url = normalize_database_url(database_url)
        self.database_url = database_url
        self.is_sqlite = database_url.startswith("sqlite")

        if self.is_sqlite:
            self.engine = create_engine(
                database_url,
                echo=echo,
                connect_args={
                    "check_same_thread": False,
                    "timeout": sqlite_busy_timeout,
                },
            )
            _install_sqlite_hooks(self.engine)
            self._read_engine = self.engine
            self._write_engine = self.engine.execution_options(**{_WRITE_LOCK_OPTION: True})
        else:
            self.engine = create_engine(database_url, echo=echo, pool_pre_ping=True)
            self._read_engine = self.engine.execution_options(isolation_level="REPEATABLE READ")
            self._write_engine = self.engine.execution_options(isolation_level="READ COMMITTED")

        self._session_factory = sessionmaker(expire_on_commit=False)

    def create_schema(self) -> None:
        """Create any missing tables and indexes."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to initialise schema: {exc}") from exc

    @contextmanager
    def unit_of_work(self, write: bool = False) -> Iterator[Session]:
        """Yield a session bound to one transaction.

        Commits when the block exits normally, rolls back on any exception.
        """
        bind = self._write_engine if write else self._read_engine
        session = self._session_factory(bind=bind)
        try:
            with session.begin():
                yield session
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def open_store(database_url: str, echo: bool = False,
               sqlite_busy_timeout: float = 30.0) -> EntityStore:
    """Create an EntityStore and make sure the schema exists."""
    store = EntityStore(database_url, echo=echo, sqlite_busy_timeout=sqlite_busy_timeout)
    store.create_schema()
    return store
