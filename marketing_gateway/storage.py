import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, or_, update
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine, select

from marketing_gateway.errors import JobNotFound, RejectedConcurrent
from marketing_gateway.models import Job, JobKind, JobStatus, utcnow

logger = logging.getLogger(__name__)

Messages = List[Dict[str, Any]]


def make_engine(url: str):
    """
    SQLite engines are shared across the request threadpool and background
    tasks, so same-thread checks are off. In-memory databases need a single
    shared connection or every checkout would see an empty schema.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)
    kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def _append_messages(conn, job_id: str, messages: Messages) -> None:
    # caller holds the job: it won the CAS or owns the current attempt
    current = conn.execute(select(Job.messages).where(Job.id == job_id)).scalar_one()
    conn.execute(update(Job).where(Job.id == job_id).values(messages=list(current or []) + list(messages)))


class JobStore:
    """
    Durable job records. Every status transition is a single UPDATE that
    writes status, result and error together; set_processing is the
    compare-and-set the single-flight gate relies on.
    """

    def __init__(self, url: str = "sqlite:///./jobs.db", *, engine=None):
        self.engine = engine if engine is not None else make_engine(url)
        SQLModel.metadata.create_all(self.engine)

    # ----- reads -----
    def get(self, job_id: str) -> Job:
        with Session(self.engine) as s:
            job = s.get(Job, job_id)
            if job is None:
                raise JobNotFound(job_id)
            return job

    def get_owned(self, job_id: str, owner: str) -> Job:
        job = self.get(job_id)
        if job.owner != owner:
            # same answer as a missing row, ids are not an oracle
            raise JobNotFound(job_id)
        return job

    def list_for_owner(self, owner: str, kind: Optional[JobKind] = None, limit: int = 50) -> List[Job]:
        with Session(self.engine) as s:
            stmt = select(Job).where(Job.owner == owner)
            if kind is not None:
                stmt = stmt.where(Job.kind == kind)
            stmt = stmt.order_by(Job.created_at.desc()).limit(limit)
            return list(s.exec(stmt).all())

    # ----- writes -----
    def create(self, owner: str, kind: JobKind, payload: Dict[str, Any], title: Optional[str] = None) -> Job:
        job = Job(owner=owner, kind=kind, payload=payload, title=title, status=JobStatus.idle)
        with Session(self.engine) as s:
            s.add(job)
            s.commit()
            s.refresh(job)
            return job

    def create_processing(
        self,
        owner: str,
        kind: JobKind,
        payload: Dict[str, Any],
        *,
        lease_seconds: float,
        title: Optional[str] = None,
        messages: Optional[Messages] = None,
    ) -> Tuple[Job, str]:
        """Insert a new job already in processing. Returns the job and its attempt token."""
        now = utcnow()
        attempt = uuid.uuid4().hex
        job = Job(
            owner=owner,
            kind=kind,
            payload=payload,
            title=title,
            status=JobStatus.processing,
            messages=list(messages or []),
            attempt=attempt,
            lease_expires_at=now + timedelta(seconds=lease_seconds),
            created_at=now,
            last_activity=now,
        )
        with Session(self.engine) as s:
            s.add(job)
            s.commit()
            s.refresh(job)
            return job, attempt

    def set_processing(
        self,
        job_id: str,
        owner: str,
        *,
        lease_seconds: float,
        payload: Optional[Dict[str, Any]] = None,
        title: Optional[str] = None,
        messages: Optional[Messages] = None,
    ) -> str:
        """
        Atomically move an owned job to processing and return the new attempt
        token. A job whose lease has run out counts as not processing.
        ``messages`` are appended to the history in the same transaction.
        Raises RejectedConcurrent when another submission holds the job.
        """
        now = utcnow()
        attempt = uuid.uuid4().hex
        values: Dict[str, Any] = {
            "status": JobStatus.processing,
            "result": None,
            "error": None,
            "run_id": None,
            "attempt": attempt,
            "lease_expires_at": now + timedelta(seconds=lease_seconds),
            "last_activity": now,
        }
        if payload is not None:
            values["payload"] = payload
        if title is not None:
            values["title"] = title
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.owner == owner)
            .where(or_(Job.status != JobStatus.processing, Job.lease_expires_at < now))
            .values(**values)
        )
        with self.engine.begin() as conn:
            won = conn.execute(stmt).rowcount == 1
            if won and messages:
                _append_messages(conn, job_id, messages)
        if won:
            return attempt
        # lost: tell "not yours / gone" apart from "busy"
        self.get_owned(job_id, owner)
        raise RejectedConcurrent(job_id)

    def complete(self, job_id: str, result: Optional[Dict[str, Any]], *, attempt: Optional[str] = None,
                 run_id: Optional[str] = None, messages: Optional[Messages] = None) -> bool:
        """Store the result and mark completed. False if the attempt is stale."""
        return self._settle(job_id, attempt, messages, status=JobStatus.completed, result=result, error=None,
                            run_id=run_id)

    def fail(self, job_id: str, error: str, *, attempt: Optional[str] = None, run_id: Optional[str] = None,
             messages: Optional[Messages] = None) -> bool:
        """Store the error and mark error. False if the attempt is stale."""
        return self._settle(job_id, attempt, messages, status=JobStatus.error, result=None, error=error,
                            run_id=run_id)

    def _settle(self, job_id: str, attempt: Optional[str], messages: Optional[Messages], **values) -> bool:
        now = utcnow()
        values.update(lease_expires_at=None, last_activity=now)
        if values.get("run_id") is None:
            values.pop("run_id")
        stmt = update(Job).where(Job.id == job_id)
        if attempt is not None:
            stmt = stmt.where(Job.attempt == attempt)
        with self.engine.begin() as conn:
            updated = conn.execute(stmt.values(**values)).rowcount == 1
            if updated and messages:
                _append_messages(conn, job_id, messages)
        if updated:
            return True
        self.get(job_id)
        logger.warning("Discarded stale settlement for job %s (attempt %s)", job_id, attempt)
        return False

    def edit(self, job_id: str, owner: str, *, title: Optional[str] = None,
             result: Optional[Dict[str, Any]] = None) -> Job:
        """Owner edits of a saved job. Refused with RejectedConcurrent while it is processing."""
        values: Dict[str, Any] = {"last_activity": utcnow()}
        if title is not None:
            values["title"] = title
        if result is not None:
            values["result"] = result
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.owner == owner, Job.status != JobStatus.processing)
            .values(**values)
        )
        with self.engine.begin() as conn:
            edited = conn.execute(stmt).rowcount == 1
        if not edited:
            self.get_owned(job_id, owner)
            raise RejectedConcurrent(job_id)
        return self.get(job_id)

    def delete(self, job_id: str, owner: str) -> None:
        with self.engine.begin() as conn:
            deleted = conn.execute(delete(Job).where(Job.id == job_id, Job.owner == owner)).rowcount
        if not deleted:
            raise JobNotFound(job_id)

    # ----- housekeeping -----
    def expire_leases(self, now: Optional[datetime] = None,
                      message: str = "Processing was interrupted; please resubmit") -> int:
        now = now or utcnow()
        stmt = (
            update(Job)
            .where(Job.status == JobStatus.processing, Job.lease_expires_at < now)
            .values(status=JobStatus.error, result=None, error=message, lease_expires_at=None, last_activity=now)
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount

    def purge_inactive(self, before: datetime) -> int:
        stmt = delete(Job).where(Job.last_activity < before, Job.status != JobStatus.processing)
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount
