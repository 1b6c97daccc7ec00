"""Turn upstream replies into a stable flat result and settle the job.

Two reply shapes are recognized, each with its own normalizer:

* ``WorkflowRunEnvelope`` - the workflow engine's run object,
  ``{"workflow_run_id": ..., "data": {"status", "error", "outputs"}}``.
* ``WebhookEnvelope`` - whatever the automation platform's webhook answers:
  an object, a list of items, or plain text.

Anything else is a ``MalformedUpstreamResponse``.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from marketing_gateway.conversation import assistant_message, reply_text
from marketing_gateway.errors import JobNotFound, MalformedUpstreamResponse, WorkflowRunFailed
from marketing_gateway.gate import Ticket
from marketing_gateway.models import JobKind, JobStatus
from marketing_gateway.storage import JobStore
from marketing_gateway.workflow_adapter import AUTOMATION_PLATFORM, RawResponse

logger = logging.getLogger(__name__)

NOT_GENERATED_MARKERS = ("Not generated",)


@dataclass
class WorkflowRunEnvelope:
    run_id: Optional[str]
    data: Optional[Dict[str, Any]]
    top_level_outputs: Any = None


@dataclass
class WebhookEnvelope:
    body: Union[Dict[str, Any], List[Any], str]
    run_id: Optional[str] = None


Envelope = Union[WorkflowRunEnvelope, WebhookEnvelope]


@dataclass
class ReconcileOutcome:
    """Computation outcome and persistence outcome, reported separately."""

    job_id: str
    run_id: Optional[str]
    result: Dict[str, Any]       # what was (or should have been) persisted
    visible: Dict[str, Any]      # what the immediate caller gets back
    saved: bool
    save_error: Optional[str] = None   # operator-facing, logged only
    status: Optional[JobStatus] = None  # stored status after settling; None if the job is gone


def recognize(raw: RawResponse, service: str) -> Envelope:
    body = raw.body
    if service == AUTOMATION_PLATFORM:
        if isinstance(body, (dict, list, str)) and body:
            run_id = body.get("executionId") if isinstance(body, dict) else None
            return WebhookEnvelope(body=body, run_id=str(run_id) if run_id else None)
        raise MalformedUpstreamResponse("No answer received from workflow", details={"body": body})
    if not isinstance(body, dict):
        raise MalformedUpstreamResponse("Invalid workflow response format", details={"body": body})
    data = body.get("data")
    return WorkflowRunEnvelope(
        run_id=body.get("workflow_run_id"),
        data=data if isinstance(data, dict) else None,
        top_level_outputs=body.get("outputs"),
    )


def _normalize_workflow_run(env: WorkflowRunEnvelope) -> Dict[str, Any]:
    if not env.run_id:
        raise MalformedUpstreamResponse("Failed to start workflow - no workflow ID received")
    if env.data is None:
        raise MalformedUpstreamResponse("Invalid workflow response format - missing data object")
    if env.data.get("status") == "failed":
        raise WorkflowRunFailed(env.data.get("error") or "Workflow execution failed", details={"run_id": env.run_id})

    outputs = env.data.get("outputs")
    if outputs is None:
        outputs = env.top_level_outputs
    if outputs is None:
        raise MalformedUpstreamResponse("No answer received from workflow", details={"run_id": env.run_id})
    if not isinstance(outputs, dict):
        raise MalformedUpstreamResponse(
            "Invalid workflow response format - outputs is not an object", details={"run_id": env.run_id}
        )
    return outputs


def _normalize_webhook(env: WebhookEnvelope) -> Dict[str, Any]:
    body = env.body
    if isinstance(body, str):
        return {"output": body}
    if isinstance(body, list):
        first = body[0]
        if isinstance(first, dict):
            return _normalize_webhook(WebhookEnvelope(body=first)) if first else {"output": None}
        return {"output": "\n".join(str(item) for item in body)}
    outputs = body.get("outputs")
    if isinstance(outputs, dict):
        return outputs
    return {k: v for k, v in body.items() if k != "executionId"} or {"output": None}


def parse_output_value(key: str, value: Any) -> Any:
    """JSON-looking strings become structured data; anything unparsable stays as-is."""
    if not isinstance(value, str):
        return value
    stripped = value.strip()
    if not stripped.startswith(("{", "[")):
        return value
    try:
        return json.loads(stripped)
    except ValueError as e:
        logger.warning("Failed to parse output for %s: %s", key, e)
        return value


def visible_outputs(outputs: Dict[str, Any]) -> Dict[str, Any]:
    return {
        k: v for k, v in outputs.items()
        if not (isinstance(v, str) and any(marker in v for marker in NOT_GENERATED_MARKERS))
    }


def reconcile(raw: RawResponse, service: str) -> Tuple[Optional[str], Dict[str, Any]]:
    """Return ``(run_id, outputs)`` or raise a gateway error describing why not."""
    env = recognize(raw, service)
    if isinstance(env, WorkflowRunEnvelope):
        outputs = _normalize_workflow_run(env)
    else:
        outputs = _normalize_webhook(env)
    processed = {key: parse_output_value(key, value) for key, value in outputs.items()}
    logger.info(
        "Processed %s outputs (run %s): keys=%s, null values=%s",
        service, env.run_id, sorted(processed), any(v is None for v in processed.values()),
    )
    return env.run_id, processed


class Reconciler:
    def __init__(self, store: JobStore):
        self.store = store

    def settle(self, ticket: Ticket, raw: RawResponse, service: str) -> ReconcileOutcome:
        """
        Reconcile and persist. Reconcile errors propagate (the gate turns them
        into a failed job); persistence errors never do.
        """
        run_id, result = reconcile(raw, service)
        reply = [assistant_message(reply_text(result))] if ticket.kind == JobKind.conversation else None
        outcome = ReconcileOutcome(
            job_id=ticket.job_id, run_id=run_id, result=result,
            visible=visible_outputs(result), saved=False,
        )
        try:
            outcome.saved = self.store.complete(
                ticket.job_id, result, attempt=ticket.attempt, run_id=run_id, messages=reply
            )
            if outcome.saved:
                outcome.status = JobStatus.completed
            else:
                outcome.save_error = "Job was resubmitted before this result arrived"
                outcome.status = self.store.get(ticket.job_id).status
        except JobNotFound:
            logger.warning("Job %s was deleted while processing; result not saved", ticket.job_id)
            outcome.save_error = "Job was deleted"
        except Exception as e:
            logger.exception("Persistence failure saving result of job %s", ticket.job_id)
            outcome.save_error = str(e)
            outcome.status = self._release_unsaved(ticket, run_id, reply)
        return outcome

    def _release_unsaved(self, ticket: Ticket, run_id: Optional[str],
                         reply: Optional[List[Dict[str, Any]]]) -> JobStatus:
        # status-only write; if this fails too the lease sweep frees the job
        try:
            self.store.complete(ticket.job_id, None, attempt=ticket.attempt, run_id=run_id, messages=reply)
        except Exception:
            logger.exception("Could not release job %s after persistence failure", ticket.job_id)
            return JobStatus.processing
        return JobStatus.completed
