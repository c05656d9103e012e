"""
This module provides a logging handler that stores records in a SQLite
database, so refresh-cycle logs can be inspected after an Airflow run.
Use a database file other than the item store: the handler keeps its
transaction open for the whole task.

It includes:
- 'DBLogHandler': A 'logging.Handler' subclass that writes log records
  to the 'logs' table.
- 'task_db_logger': A context manager that attaches the handler to the
  root logger for the duration of an Airflow task.
"""

import logging
import sqlite3
from contextlib import contextmanager
from typing import TYPE_CHECKING, Generator, Optional

if TYPE_CHECKING:
    from airflow.models.taskinstance import TaskInstance

LOGS_TABLE = """
CREATE TABLE IF NOT EXISTS logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    dag_id TEXT,
    task_id TEXT
)
"""


class DBLogHandler(logging.Handler):
    """Write log records into the ``logs`` table of an open connection.

    Commit and rollback are left to the owner of the connection. Records may
    arrive from worker threads; ``handle`` serializes ``emit`` under the
    handler lock, so the connection must be opened with
    ``check_same_thread=False``.
    """

    def __init__(self, conn: sqlite3.Connection, dag_id: str, task_id: str):
        super().__init__()
        self.conn = conn
        self.dag_id = dag_id
        self.task_id = task_id

    def emit(self, record: logging.LogRecord):
        try:
            message = self.format(record)
            self.conn.execute(
                """
                INSERT INTO logs (level, message, dag_id, task_id)
                VALUES (?, ?, ?, ?)
                """,
                (record.levelname, message, self.dag_id, self.task_id),
            )
        except sqlite3.Error:
            # a failed log write must not abort the task
            self.handleError(record)


@contextmanager
def task_db_logger(
    db_path: str, ti: Optional["TaskInstance"] = None
) -> Generator[sqlite3.Connection, None, None]:
    """Attach a DBLogHandler to the root logger while a task runs.

    Yields the database connection the handler writes to; it is committed
    when the block exits cleanly and rolled back otherwise.

    Raises:
        ValueError: If no task instance is given.
    """
    if not ti:
        raise ValueError("A TaskInstance (ti) is required to know the DAG context.")

    conn = None
    db_handler = None
    try:
        # a generous timeout avoids "database is locked" errors
        conn = sqlite3.connect(db_path, timeout=15, check_same_thread=False)
        conn.execute(LOGS_TABLE)
        root_logger = logging.getLogger()

        db_handler = DBLogHandler(conn=conn, dag_id=ti.dag_id, task_id=ti.task_id)
        root_logger.addHandler(db_handler)

        yield conn

        conn.commit()
    except Exception as e:
        if conn:
            conn.rollback()
        logging.error("Error in DB logger context manager: %s", e, exc_info=True)
        raise
    finally:
        if db_handler:
            logging.getLogger().removeHandler(db_handler)
        if conn:
            conn.close()
