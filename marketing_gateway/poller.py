"""Client side of the status polling contract.

Reads are never gated, so any number of pollers may watch the same job.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

import requests

from marketing_gateway.models import TERMINAL_STATUSES

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0
_TERMINAL = {s.value for s in TERMINAL_STATUSES}


class PollTimeout(Exception):
    """The job did not reach a terminal status before the deadline."""


class JobPoller:
    def __init__(
        self,
        base_url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = 600.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.interval = interval
        self.timeout = timeout
        self.session = session or requests.Session()
        if headers:
            self.session.headers.update(headers)
        self._sleep = sleep
        self._clock = clock

    def status(self, job_id: str) -> Dict[str, Any]:
        r = self.session.get(f"{self.base_url}/api/jobs/{job_id}", timeout=30)
        r.raise_for_status()
        return r.json()

    def wait(self, job_id: str) -> Dict[str, Any]:
        """Poll until the job is completed or error and return its last view.

        The last read happens at the deadline itself before giving up.
        """
        deadline = self._clock() + self.timeout
        while True:
            view = self.status(job_id)
            if view.get("status") in _TERMINAL:
                return view
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise PollTimeout(f"Job {job_id} still {view.get('status')} after {self.timeout:g}s")
            logger.debug("Job %s is %s; polling again in %ss", job_id, view.get("status"), self.interval)
            self._sleep(min(self.interval, remaining))
