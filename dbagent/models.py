import os
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import create_engine, Column, Integer, BigInteger, String, Text, DateTime
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker, Session


Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite stores no timezone)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BackupRun(Base):
    """One backup run for one scope: status, artifact and logs"""
    __tablename__ = 'backup_runs'

    id = Column(Integer, primary_key=True)
    engine = Column(String(20), nullable=False)  # mongo, postgres, cassandra, oracle
    mode = Column(String(50), nullable=False)  # dump, basebackup, snapshot, ...
    scope = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False)  # running, success, failed, skipped, cancelled
    started_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime)
    artifact_path = Column(String(1000))
    file_size_bytes = Column(BigInteger)
    sha256 = Column(String(64))
    s3_key = Column(String(1000))
    pruned_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text)
    logs = Column(Text)  # Detailed execution logs

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def __repr__(self):
        return f'<BackupRun {self.engine}/{self.mode} scope={self.scope} status={self.status}>'


def init_db(database_url: str) -> sessionmaker:
    """
    Create the history tables if needed and return a session factory.

    Args:
        database_url: SQLAlchemy URL, e.g. sqlite:////backups/.dbagent/history.db

    Returns:
        sessionmaker bound to the database
    """
    url = make_url(database_url)
    if url.drivername.startswith('sqlite') and url.database not in (None, '', ':memory:'):
        os.makedirs(os.path.dirname(os.path.abspath(url.database)), exist_ok=True)

    engine = create_engine(database_url)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def open_session(database_url: Optional[str]) -> Optional[Session]:
    """Open a history session, or return None when history is disabled."""
    if not database_url:
        return None
    return init_db(database_url)()


def recent_runs(session: Session, limit: int = 20, engine: Optional[str] = None) -> List[BackupRun]:
    """Most recent runs first."""
    query = session.query(BackupRun)
    if engine:
        query = query.filter(BackupRun.engine == engine)
    return query.order_by(BackupRun.started_at.desc(), BackupRun.id.desc()).limit(limit).all()
