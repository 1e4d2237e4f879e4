"""
DuckDB access layer for the statistics warehouse.

Wraps a single connection with:
  - bounded reconnect with exponential backoff on connection/IO failures,
    re-running the interrupted statement once the connection is back
  - reconnect listeners, so components holding session-bound state (sequence
    reservations) can drop it before processing resumes
  - a dry-run mode that keeps every write inside one transaction and rolls it
    back on close
  - retry_on_conflict(), the single fetch-then-insert retry used for every
    dimension, identity, session and sequence write shared with sibling workers
"""
import contextlib
import logging
import time
from typing import Any, Callable, List, Optional, Sequence

import duckdb

MAX_CONFLICT_ATTEMPTS = 2

# Unique-key violations and write-write conflicts from a sibling worker
CONFLICT_ERRORS = (duckdb.ConstraintException, duckdb.TransactionException)

# Only these are worth reconnecting for; SQL/catalog errors are bugs
RECONNECT_ERRORS = (duckdb.ConnectionException, duckdb.IOException)


class PersistentConflictError(RuntimeError):
    """A write conflicted twice in a row, so it is not a race with another worker."""

    def __init__(self, description: str, cause: Exception):
        super().__init__(f"Persistent conflict on {description}: {cause}")
        self.description = description
        self.cause = cause


def retry_on_conflict(
    operation: Callable[[], Any],
    description: str,
    logger: Optional[logging.Logger] = None,
) -> Any:
    """
    Run a fetch-or-insert operation, re-running it once if it loses an insert
    race. The operation must re-read the warehouse on every call so the second
    attempt sees the sibling's row.
    """
    logger = logger or logging.getLogger("etl.warehouse")
    for attempt in range(1, MAX_CONFLICT_ATTEMPTS + 1):
        try:
            return operation()
        except CONFLICT_ERRORS as e:
            if attempt >= MAX_CONFLICT_ATTEMPTS:
                raise PersistentConflictError(description, e) from e
            logger.info(f"Insert conflict on {description}, retrying once: {e}")


class Warehouse:
    def __init__(
        self,
        database_path: Optional[str] = None,
        connection: Optional[duckdb.DuckDBPyConnection] = None,
        dry_run: bool = False,
        reconnect_retries: int = 5,
        reconnect_interval: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ):
        if database_path is None and connection is None:
            raise ValueError("Warehouse needs a database_path or a connection")
        self.database_path = database_path
        self.dry_run = dry_run
        self.reconnect_retries = reconnect_retries
        self.reconnect_interval = reconnect_interval
        self.logger = logger or logging.getLogger("etl.warehouse")
        self.reconnects = 0
        self._listeners: List[Callable[[], None]] = []
        self._con = connection
        if self._con is None:
            self._con = duckdb.connect(database=database_path, read_only=False)
            self.logger.info(f"Connected to warehouse: {database_path}")
        if dry_run:
            self._con.execute("BEGIN TRANSACTION")

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        return self._con

    def add_reconnect_listener(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None):
        try:
            return self._run(sql, params)
        except RECONNECT_ERRORS as e:
            self.logger.warning(f"Warehouse connection lost: {e}")
            self.reconnect()
            return self._run(sql, params)

    def fetchone(self, sql: str, params: Optional[Sequence[Any]] = None):
        return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Optional[Sequence[Any]] = None):
        return self.execute(sql, params).fetchall()

    def _run(self, sql, params):
        if params is None:
            return self._con.execute(sql)
        return self._con.execute(sql, list(params))

    def reconnect(self) -> None:
        """
        Re-open the warehouse with bounded retries, then notify listeners.
        Raises the last connection error if every attempt fails.
        """
        if self.database_path is None:
            raise duckdb.ConnectionException(
                "Cannot reconnect a warehouse built from an external connection"
            )
        with contextlib.suppress(duckdb.Error):
            self._con.close()

        last_err = None
        for attempt in range(self.reconnect_retries):
            try:
                self._con = duckdb.connect(database=self.database_path, read_only=False)
                break
            except (IOError, OSError, duckdb.Error) as e:
                last_err = e
                self.logger.warning(
                    f"Warehouse reconnect failed (attempt {attempt+1}/{self.reconnect_retries}): {e}"
                )
                if attempt < self.reconnect_retries - 1:
                    time.sleep(self.reconnect_interval * (2**attempt))
        else:
            raise duckdb.ConnectionException(
                f"Failed to reconnect to warehouse after {self.reconnect_retries} attempts: {last_err}"
            )

        if self.dry_run:
            self._con.execute("BEGIN TRANSACTION")
        self.reconnects += 1
        self.logger.warning("Reconnected to warehouse; invalidating session-bound state")
        for callback in self._listeners:
            callback()

    def close(self) -> None:
        if self.dry_run:
            self.logger.info("Dry run: rolling back warehouse changes")
            with contextlib.suppress(duckdb.Error):
                self._con.execute("ROLLBACK")
        self._con.close()
