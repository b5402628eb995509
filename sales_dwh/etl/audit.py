"""
ETL : Journalisation en base de donnees.

- log_etl     : une entree par etape et par run (Running -> Success / Failed)
- log_erreurs : lignes de staging rejetees, consultables pour remediation

Chaque ecriture est commitee avant de rendre la main : une etape n'est
consideree terminee qu'une fois son entree durable.
"""

import time
import uuid
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime

import pandas as pd
from sqlalchemy import insert, update, select
from sqlalchemy.exc import DBAPIError

from .errors import AuditStateError, SystemicError, StageCancelledError
from .schema import log_etl, log_erreurs

logger = logging.getLogger('etl_audit')

STATUS_RUNNING = 'Running'
STATUS_SUCCESS = 'Success'
STATUS_FAILED = 'Failed'

MAX_MESSAGE = 500


@dataclass
class LogHandle:
    """Reference vers une entree de log_etl ouverte par begin()."""
    log_id: int
    run_id: str
    stage_name: str
    start_time: datetime
    status: str = STATUS_RUNNING


class AuditLogger:

    def __init__(self, engine):
        self.engine = engine

    def begin(self, stage_name: str, run_id: str) -> LogHandle:
        start = datetime.now()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(insert(log_etl).values(
                    run_id=run_id, stage_name=stage_name,
                    start_time=start, status=STATUS_RUNNING,
                ))
                log_id = result.inserted_primary_key[0]
        except DBAPIError as e:
            raise SystemicError(f"Ecriture log_etl impossible ({stage_name}): {e}") from e

        logger.info(f"[{run_id}] {stage_name}: demarrage")
        return LogHandle(log_id, run_id, stage_name, start)

    def complete(self, handle: LogHandle, rows_processed: int):
        self._finalize(handle, STATUS_SUCCESS, rows_processed=rows_processed)
        logger.info(f"[{handle.run_id}] {handle.stage_name}: {rows_processed} lignes traitees")

    def fail(self, handle: LogHandle, error_message: str):
        self._finalize(handle, STATUS_FAILED, error_message=str(error_message)[:MAX_MESSAGE])
        logger.error(f"[{handle.run_id}] {handle.stage_name}: ECHEC - {error_message}")

    def _finalize(self, handle: LogHandle, status: str, rows_processed: int = None,
                  error_message: str = None):
        if handle.status != STATUS_RUNNING:
            raise AuditStateError(
                f"Entree {handle.log_id} ({handle.stage_name}) deja finalisee en {handle.status}"
            )

        end = datetime.now()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(log_etl)
                    .where(log_etl.c.log_id == handle.log_id)
                    .where(log_etl.c.status == STATUS_RUNNING)
                    .values(
                        status=status, end_time=end,
                        rows_processed=rows_processed,
                        duration_sec=(end - handle.start_time).total_seconds(),
                        error_message=error_message,
                    )
                )
        except DBAPIError as e:
            raise SystemicError(f"Ecriture log_etl impossible ({handle.stage_name}): {e}") from e

        if result.rowcount == 0:
            raise AuditStateError(f"Entree {handle.log_id} introuvable ou deja finalisee")
        handle.status = status


class ErrorSink:
    """Destination des lignes rejetees (log_erreurs)."""

    def __init__(self, engine):
        self.engine = engine

    def record(self, rejections: list, conn=None) -> int:
        """
        Ecrit les rejets.

        conn : connexion ouverte de l'appelant ; l'ecriture fait alors partie
        de sa transaction (pas de commit ici).
        """
        if not rejections:
            return 0
        rows = [dict(r, reason=str(r.get('reason', ''))[:MAX_MESSAGE]) for r in rejections]
        try:
            if conn is not None:
                conn.execute(insert(log_erreurs), rows)
            else:
                with self.engine.begin() as own:
                    own.execute(insert(log_erreurs), rows)
        except DBAPIError as e:
            raise SystemicError(f"Ecriture log_erreurs impossible: {e}") from e
        return len(rows)


class StageControl:
    """
    Suivi d'une etape en cours d'execution.

    Le chrono de l'etape demarre quand elle commence reellement (pas a la
    soumission). Une fois cancel() appele sous `lock`, guard() et commit()
    levent StageCancelledError : aucune ecriture ne suit le fail().
    """

    def __init__(self, stage_name: str, ctx=None):
        self.stage_name = stage_name
        self.ctx = ctx
        self.handle = None
        self.started = None
        self.started_at = None
        self.finished = None
        self.committed = False
        self.lock = threading.Lock()
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self):
        self._cancelled.set()

    def check(self):
        if self._cancelled.is_set():
            raise StageCancelledError(f"{self.stage_name}: etape annulee")

    @contextmanager
    def guard(self):
        with self.lock:
            self.check()
            yield

    def commit(self, conn):
        """Commit de la transaction de l'etape, refuse si l'etape est annulee."""
        with self.guard():
            conn.commit()
            self.committed = True

    def elapsed(self, now: float = None) -> float:
        if self.started is None:
            return 0.0
        end = now if now is not None else (self.finished or time.monotonic())
        return end - self.started

    def run(self, fn):
        """Execute fn(self) dans le thread de l'etape, entree log_etl comprise."""
        self.handle = self.ctx.audit.begin(self.stage_name, self.ctx.run_id)
        self.started_at = datetime.now()
        self.started = time.monotonic()
        try:
            return fn(self)
        finally:
            self.finished = time.monotonic()


@dataclass
class RunContext:
    """Etat d'un run, passe explicitement a chaque etape."""
    run_id: str
    audit: AuditLogger
    errors: ErrorSink
    started_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def create(cls, engine, run_id: str = None):
        return cls(run_id or uuid.uuid4().hex, AuditLogger(engine), ErrorSink(engine))


def get_execution_log(engine, run_id: str = None) -> pd.DataFrame:
    query = select(log_etl).order_by(log_etl.c.log_id)
    if run_id:
        query = query.where(log_etl.c.run_id == run_id)
    with engine.connect() as conn:
        return pd.read_sql(query, conn)


def get_rejections(engine, run_id: str = None) -> pd.DataFrame:
    query = select(log_erreurs).order_by(log_erreurs.c.erreur_id)
    if run_id:
        query = query.where(log_erreurs.c.run_id == run_id)
    with engine.connect() as conn:
        return pd.read_sql(query, conn)
