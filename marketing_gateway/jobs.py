"""Job lifecycle: gate -> upstream call -> reconcile -> store."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from marketing_gateway.auth import CurrentUser
from marketing_gateway.conversation import history_for_upstream, user_message
from marketing_gateway.errors import GatewayError, UpstreamHTTPError
from marketing_gateway.gate import SingleFlightGate, Ticket
from marketing_gateway.models import Job, JobKind
from marketing_gateway.reconciler import Reconciler, ReconcileOutcome
from marketing_gateway.settings import Settings
from marketing_gateway.storage import JobStore
from marketing_gateway.workflow_adapter import (
    AUTOMATION_PLATFORM,
    WORKFLOW_ENGINE,
    RawResponse,
    WorkflowClient,
    classify_upstream_error,
)

logger = logging.getLogger(__name__)

TITLE_LENGTH = 60

# which upstream serves which kind of job
UPSTREAM_FOR_KIND = {
    JobKind.adcopy: WORKFLOW_ENGINE,
    JobKind.audience: AUTOMATION_PLATFORM,
    JobKind.workflow: WORKFLOW_ENGINE,
    JobKind.conversation: AUTOMATION_PLATFORM,
}


class JobService:
    def __init__(self, store: JobStore, client: WorkflowClient, settings: Settings) -> None:
        self.store = store
        self.client = client
        self.settings = settings
        self.gate = SingleFlightGate(store, lease_seconds=settings.lease_seconds)
        self.reconciler = Reconciler(store)

    # ── Submit & run ─────────────────────────────────────────────────

    def submit(
        self,
        owner: str,
        kind: JobKind,
        inputs: Dict[str, Any],
        *,
        job_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Ticket:
        """Pass the gate. Raises RejectedConcurrent / JobNotFound without touching upstream.

        A conversation message is added to the job's history as the gate opens.
        """
        messages = None
        if kind == JobKind.conversation:
            messages = [user_message(inputs["message"])]
            if job_id is None and title is None:
                title = inputs["message"][:TITLE_LENGTH]
        return self.gate.enter(owner, kind, inputs, job_id=job_id, title=title, messages=messages)

    def execute(self, ticket: Ticket, user: CurrentUser) -> ReconcileOutcome:
        """Call upstream and settle the job. The job is terminal when this returns or raises."""
        with self.gate.held(ticket):
            service = UPSTREAM_FOR_KIND[ticket.kind]
            raw = self._call_upstream(service, ticket, user)
            outcome = self.reconciler.settle(ticket, raw, service)
        if not outcome.saved:
            logger.warning("Job %s succeeded but its result was not saved: %s", ticket.job_id, outcome.save_error)
        return outcome

    def run_in_background(self, ticket: Ticket, user: CurrentUser) -> None:
        """BackgroundTasks entry point; the job already records any failure."""
        try:
            self.execute(ticket, user)
        except GatewayError as e:
            logger.info("Background job %s ended in error: %s", ticket.job_id, e.message)
        except Exception:
            logger.exception("Background job %s crashed", ticket.job_id)

    def _call_upstream(self, service: str, ticket: Ticket, user: CurrentUser) -> RawResponse:
        payload = ticket.payload
        try:
            if ticket.kind == JobKind.conversation:
                history = history_for_upstream(self.store.get(ticket.job_id).messages)
                return self.client.send_message(ticket.job_id, payload["message"], history, user.email, user.name)
            if service == AUTOMATION_PLATFORM:
                return self.client.call_automation(payload, user.email, user.name)
            return self.client.run_workflow(payload, user.email)
        except UpstreamHTTPError as e:
            raise classify_upstream_error(e, service) from e

    # ── Reads & CRUD ─────────────────────────────────────────────────

    def get_status(self, job_id: str, owner: str) -> Job:
        return self.store.get_owned(job_id, owner)

    def history(self, owner: str, kind: Optional[JobKind] = None, limit: int = 50) -> List[Job]:
        return self.store.list_for_owner(owner, kind=kind, limit=limit)

    def update(self, job_id: str, owner: str, *, title: Optional[str] = None,
               result: Optional[Dict[str, Any]] = None) -> Job:
        job = self.store.edit(job_id, owner, title=title, result=result)
        logger.info("Job %s updated by %s", job_id, owner)
        return job

    def delete(self, job_id: str, owner: str) -> None:
        self.store.delete(job_id, owner)
        logger.info("Job %s deleted by %s", job_id, owner)

    # ── Pass-through ─────────────────────────────────────────────────

    def proxy(self, service: str, body: Dict[str, Any], user: CurrentUser) -> Any:
        """Forward a raw request body without creating a job record."""
        upstream = self.client.automation_platform if service == AUTOMATION_PLATFORM else self.client.workflow_engine
        try:
            raw = self.client.invoke(upstream, body)
        except UpstreamHTTPError as e:
            raise classify_upstream_error(e, service) from e
        logger.info("%s proxy call successful for %s", service, user.email)
        return raw.body
