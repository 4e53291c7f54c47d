"""
Run history for backup jobs.

Every execution gets a BackupHistory row: created as 'running', then closed
as 'success' or 'failed' together with the delivered location and the
run's log lines.
"""

import logging
import os
import threading
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()

STATUS_RUNNING = 'running'
STATUS_SUCCESS = 'success'
STATUS_FAILED = 'failed'


class BackupHistory(Base):
    """Backup execution history and logs"""
    __tablename__ = 'backup_history'

    id = Column(Integer, primary_key=True)
    job_name = Column(String(255), nullable=False, index=True)
    status = Column(String(20), nullable=False)  # running, success, failed
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime)
    file_size_bytes = Column(BigInteger)
    location = Column(String(1024))
    error_message = Column(Text)
    logs = Column(Text)

    def __repr__(self):
        return f'<BackupHistory job={self.job_name} status={self.status}>'


class HistoryStore:
    """
    Thin persistence layer over BackupHistory.

    Sessions are short-lived and opened per call, so the store can be shared
    by every scheduler thread.
    """

    def __init__(self, database_url: str):
        url = make_url(database_url)
        engine_kwargs = {}

        if url.get_backend_name() == 'sqlite':
            engine_kwargs['connect_args'] = {'check_same_thread': False}
            if url.database in (None, '', ':memory:'):
                # A single shared connection, otherwise every thread sees its own empty database
                engine_kwargs['poolclass'] = StaticPool
            else:
                os.makedirs(os.path.dirname(os.path.abspath(url.database)), exist_ok=True)

        self.engine = create_engine(database_url, **engine_kwargs)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._lock = threading.Lock()

        Base.metadata.create_all(self.engine)

    def start_run(self, job_name: str) -> BackupHistory:
        record = BackupHistory(
            job_name=job_name,
            status=STATUS_RUNNING,
            started_at=datetime.utcnow()
        )
        with self._lock, self._session_factory() as session:
            session.add(record)
            session.commit()
        return record

    def finish_run(
        self,
        record: BackupHistory,
        status: str,
        location: Optional[str] = None,
        file_size_bytes: Optional[int] = None,
        error_message: Optional[str] = None,
        logs: Optional[List[str]] = None
    ) -> BackupHistory:
        record.status = status
        record.completed_at = datetime.utcnow()
        record.location = location
        record.file_size_bytes = file_size_bytes
        record.error_message = error_message
        record.logs = '\n'.join(logs or [])

        with self._lock, self._session_factory() as session:
            session.merge(record)
            session.commit()
        return record

    def recent(self, limit: int = 20, job_name: Optional[str] = None) -> List[BackupHistory]:
        with self._session_factory() as session:
            query = session.query(BackupHistory)
            if job_name:
                query = query.filter(BackupHistory.job_name == job_name)
            return query.order_by(BackupHistory.started_at.desc(), BackupHistory.id.desc()).limit(limit).all()

    def purge_older_than(self, days: int) -> int:
        """Delete history rows started more than ``days`` days ago."""
        cutoff = datetime.utcnow() - timedelta(days=days)
        with self._lock, self._session_factory() as session:
            count = session.query(BackupHistory).filter(BackupHistory.started_at < cutoff).delete()
            session.commit()
        logger.info(f"Deleted {count} old backup history records")
        return count
