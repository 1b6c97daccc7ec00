"""Per-job single-flight gate.

A job may have at most one submission talking to an upstream service at a
time. Entry is the store's compare-and-set to ``processing``; exit is the
reconciler's ``complete`` or a ``fail`` issued here. ``held`` makes sure
every exit path, including unexpected exceptions, leaves the job terminal.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from marketing_gateway.conversation import error_reply
from marketing_gateway.errors import GatewayError, JobKindMismatch
from marketing_gateway.models import JobKind
from marketing_gateway.storage import JobStore

logger = logging.getLogger(__name__)

UNEXPECTED_FAILURE = "Unexpected error while processing request"


@dataclass(frozen=True)
class Ticket:
    """Proof that the holder won the compare-and-set for ``job_id``."""

    job_id: str
    attempt: str
    owner: str
    kind: JobKind
    payload: Dict[str, Any]


class SingleFlightGate:
    def __init__(self, store: JobStore, lease_seconds: float) -> None:
        self.store = store
        self.lease_seconds = lease_seconds

    def enter(
        self,
        owner: str,
        kind: JobKind,
        payload: Dict[str, Any],
        *,
        job_id: Optional[str] = None,
        title: Optional[str] = None,
        messages: Optional[List[Dict[str, Any]]] = None,
    ) -> Ticket:
        """Create (or reuse) a job and move it to processing.

        A new job is inserted already processing, so it is never seen idle.
        Raises RejectedConcurrent if the job is already processing and
        JobNotFound if ``job_id`` does not exist for ``owner``. The loser of
        a race gets the exception and must not call upstream.
        """
        if job_id is None:
            job, attempt = self.store.create_processing(
                owner, kind, payload, lease_seconds=self.lease_seconds, title=title, messages=messages
            )
            job_id = job.id
        else:
            existing = self.store.get_owned(job_id, owner)
            if existing.kind != kind:
                raise JobKindMismatch(job_id, existing.kind.value)
            attempt = self.store.set_processing(
                job_id, owner, lease_seconds=self.lease_seconds, payload=payload, title=title, messages=messages
            )
        logger.info("Job %s (%s) entered processing for %s", job_id, kind.value, owner)
        return Ticket(job_id=job_id, attempt=attempt, owner=owner, kind=kind, payload=payload)

    def fail(self, ticket: Ticket, message: str) -> None:
        """Move the job to error. Store failures are logged; the lease covers them."""
        reply = [error_reply(message)] if ticket.kind == JobKind.conversation else None
        try:
            self.store.fail(ticket.job_id, message, attempt=ticket.attempt, messages=reply)
        except Exception:
            logger.exception("Could not release job %s after failure", ticket.job_id)

    @contextmanager
    def held(self, ticket: Ticket) -> Iterator[Ticket]:
        try:
            yield ticket
        except GatewayError as exc:
            logger.warning("Job %s failed: %s", ticket.job_id, exc.message)
            self.fail(ticket, exc.message)
            raise
        except BaseException as exc:
            logger.error("Job %s failed unexpectedly: %r", ticket.job_id, exc)
            self.fail(ticket, UNEXPECTED_FAILURE)
            raise
