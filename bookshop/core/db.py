"""
Database handle with Prometheus instrumentation

Each service owns its own database. The handle is created by the application
lifespan (not at import time) and shared between request handlers, consumers
and the outbox relay; the pooled engine is safe for that.
"""

import time
from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy import Table, event
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine

from bookshop.core.errors import PersistenceError
from bookshop.core.metrics import db_query_duration_seconds, db_query_errors_total


def _operation(statement: str) -> str:
    verb = statement.lstrip().split(" ", 1)[0].lower()
    return verb if verb in ("select", "insert", "update", "delete") else "other"


class Database:
    """
    Engine plus session helpers for one service's store.

    Usage:
        db = Database(settings.SQLALCHEMY_DATABASE_URI)
        with db.transaction() as session:
            session.add(order)
    """

    def __init__(self, url: str, **engine_kwargs: Any):
        if url.startswith("postgresql"):
            engine_kwargs.setdefault("pool_size", 10)
            engine_kwargs.setdefault("max_overflow", 20)
            engine_kwargs.setdefault("pool_recycle", 3600)
        engine_kwargs.setdefault("pool_pre_ping", True)
        self.engine = create_engine(url, **engine_kwargs)
        self._instrument()

    def _instrument(self) -> None:
        @event.listens_for(self.engine, "before_cursor_execute")
        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            context._query_start_time = time.time()

        @event.listens_for(self.engine, "after_cursor_execute")
        def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            if hasattr(context, "_query_start_time"):
                db_query_duration_seconds.labels(operation=_operation(statement)).observe(
                    time.time() - context._query_start_time
                )

        @event.listens_for(self.engine, "handle_error")
        def handle_error(exception_context):
            error_type = type(exception_context.original_exception).__name__.lower()
            if "integrity" in error_type or "constraint" in error_type:
                category = "constraint"
            elif "timeout" in error_type:
                category = "timeout"
            elif "connection" in error_type or "operational" in error_type:
                category = "connection"
            else:
                category = "other"
            db_query_errors_total.labels(error_type=category).inc()

    def create_tables(self, tables: list[Table]) -> None:
        """Create only the tables this service owns"""
        SQLModel.metadata.create_all(self.engine, tables=tables)

    def session(self) -> Session:
        return Session(self.engine)

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Session that commits on success and rolls back on any error.

        Storage failures surface as PersistenceError; domain errors raised
        inside the block propagate unchanged.
        """
        session = Session(self.engine)
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Database operation failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.exec_driver_sql("SELECT 1")
            return True
        except SQLAlchemyError:
            return False

    def dispose(self) -> None:
        self.engine.dispose()
