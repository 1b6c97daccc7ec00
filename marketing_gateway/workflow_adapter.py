"""
Outbound calls to the hosted workflow engine and the automation platform.
- One POST per call with a bearer key and a total deadline; no retries
- Non-2xx replies surface as UpstreamHTTPError with status/body untouched
- classify_upstream_error turns those into user-facing gateway errors
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from marketing_gateway.errors import (
    GatewayError,
    UpstreamHTTPError,
    UpstreamMisconfigured,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from marketing_gateway.settings import Settings

logger = logging.getLogger(__name__)

WORKFLOW_ENGINE = "workflow engine"
AUTOMATION_PLATFORM = "automation platform"

CHUNK_SIZE = 64 * 1024


@dataclass
class RawResponse:
    status_code: int
    body: Any          # parsed JSON when the reply is JSON, text otherwise
    url: str


@dataclass(frozen=True)
class Upstream:
    name: str
    url: Optional[str]
    api_key: Optional[str]


def _body(content: bytes, encoding: Optional[str]) -> Any:
    text = content.decode(encoding or "utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text


class WorkflowClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.session = session or requests.Session()
        self._clock = clock

    @property
    def workflow_engine(self) -> Upstream:
        return Upstream(WORKFLOW_ENGINE, self.settings.WORKFLOW_API_URL, self.settings.WORKFLOW_API_KEY)

    @property
    def automation_platform(self) -> Upstream:
        return Upstream(AUTOMATION_PLATFORM, self.settings.AUTOMATION_WEBHOOK_URL, self.settings.AUTOMATION_API_KEY)

    @property
    def assistant(self) -> Upstream:
        return Upstream(AUTOMATION_PLATFORM, self.settings.ASSISTANT_WEBHOOK_URL, self.settings.AUTOMATION_API_KEY)

    def _timed_out(self, upstream: Upstream, timeout: float) -> UpstreamTimeout:
        return UpstreamTimeout(
            f"The request to the {upstream.name} timed out. Please try again.",
            details={"timeout_seconds": timeout},
        )

    def _read(self, r, upstream: Upstream, deadline: float, timeout: float) -> bytes:
        """Read the body, giving up once the total deadline has passed."""
        chunks = []
        if self._clock() > deadline:
            raise self._timed_out(upstream, timeout)
        for chunk in r.iter_content(chunk_size=CHUNK_SIZE):
            if self._clock() > deadline:
                logger.error("%s reply still streaming after %ss; abandoning it", upstream.name, timeout)
                raise self._timed_out(upstream, timeout)
            chunks.append(chunk)
        return b"".join(chunks)

    def invoke(self, upstream: Upstream, body: Any, timeout: Optional[float] = None) -> RawResponse:
        """
        Single attempt bounded by ``timeout`` seconds in total, body included.
        Raises UpstreamTimeout / UpstreamUnavailable on transport failure and
        UpstreamHTTPError on a non-2xx status. A timeout leaves the upstream
        outcome unknown.
        """
        if not upstream.url:
            raise UpstreamMisconfigured(f"The {upstream.name} endpoint is not configured.")
        timeout = self.settings.UPSTREAM_TIMEOUT_SECONDS if timeout is None else timeout
        headers = {"Content-Type": "application/json"}
        if upstream.api_key:
            headers["Authorization"] = f"Bearer {upstream.api_key}"

        deadline = self._clock() + timeout
        try:
            r = self.session.post(
                upstream.url,
                json=body,
                headers=headers,
                timeout=(self.settings.UPSTREAM_CONNECT_TIMEOUT_SECONDS, timeout),
                stream=True,
            )
            try:
                content = self._read(r, upstream, deadline, timeout)
            finally:
                r.close()
        except requests.Timeout as e:
            logger.error("%s call timed out after %ss: %s", upstream.name, timeout, e)
            raise self._timed_out(upstream, timeout) from e
        except requests.RequestException as e:
            if self._clock() > deadline:
                logger.error("%s call timed out after %ss: %s", upstream.name, timeout, e)
                raise self._timed_out(upstream, timeout) from e
            logger.error("%s call failed: %s", upstream.name, e)
            raise UpstreamUnavailable(
                f"Could not reach the {upstream.name}. Please try again.",
                details={"reason": str(e)},
            ) from e

        body_out = _body(content, r.encoding)
        if not 200 <= r.status_code < 300:
            logger.error("%s responded with status %s: %s", upstream.name, r.status_code, body_out)
            raise UpstreamHTTPError(r.status_code, body_out, url=upstream.url)
        logger.info("%s responded with status %s", upstream.name, r.status_code)
        return RawResponse(status_code=r.status_code, body=body_out, url=upstream.url)

    def run_workflow(self, inputs: Dict[str, Any], user: str) -> RawResponse:
        body = {
            "inputs": inputs,
            "response_mode": self.settings.WORKFLOW_RESPONSE_MODE,
            "user": user,
        }
        logger.info("Starting workflow run for %s (input keys: %s)", user, sorted(inputs))
        return self.invoke(self.workflow_engine, body)

    def call_automation(self, payload: Dict[str, Any], user: str, user_name: Optional[str] = None) -> RawResponse:
        body = dict(payload)
        body["userEmail"] = user
        if user_name:
            body["userName"] = user_name
        logger.info("Calling automation webhook for %s", user)
        return self.invoke(self.automation_platform, body)

    def send_message(self, conversation_id: str, message: str, history: List[Dict[str, str]],
                     user: str, user_name: Optional[str] = None) -> RawResponse:
        body: Dict[str, Any] = {
            "conversationId": conversation_id,
            "message": message,
            "history": history,
            "userEmail": user,
        }
        if user_name:
            body["userName"] = user_name
        logger.info("Sending message for conversation %s (%d in history)", conversation_id, len(history))
        return self.invoke(self.assistant, body)


def classify_upstream_error(exc: UpstreamHTTPError, service: str = WORKFLOW_ENGINE) -> GatewayError:
    """Map a raw upstream status to the error a user should see."""
    details = {"upstream_status": exc.status_code, "upstream_body": exc.body}
    if exc.status_code == 404:
        return UpstreamMisconfigured(
            f"Workflow not found on the {service}. Please check the configuration.", details=details
        )
    if exc.status_code in (401, 403):
        return UpstreamMisconfigured(
            f"Unauthorized access to the {service}. Please check your API key configuration.", details=details
        )
    if exc.status_code >= 500:
        return UpstreamUnavailable(
            f"The {service} encountered an internal error. Please try again.", details=details
        )
    return UpstreamUnavailable(
        f"The {service} rejected the request (status {exc.status_code}).", details=details
    )
