"""Job submission sinks the runner can be wired to."""

from __future__ import annotations

from typing import Awaitable, Callable

import httpx

from rsched.infrastructure.logger import logger
from rsched.payloads.types import SubmissionItem

# (job_name, items, user_id); raising signals a failed submission.
SubmitFn = Callable[[str, list[SubmissionItem], str], Awaitable[None]]


class HttpSubmissionSink:
    """POSTs a job batch as JSON to the submission endpoint."""

    def __init__(self, url: str, token: str = "", timeout_s: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._url = url
        self._token = token
        self._timeout = timeout_s
        self._transport = transport

    async def __call__(self, job_name: str, items: list[SubmissionItem], user_id: str) -> None:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        body = {
            "job_name": job_name,
            "user_id": user_id,
            "jobs": [item.model_dump(mode="json") for item in items],
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(self._url, json=body, headers=headers)
            response.raise_for_status()
        logger.info("Submitted job batch", job_name=job_name, jobs=len(items), status=response.status_code)


class DryRunSink:
    """Logs what would be submitted and reports success."""

    def __init__(self) -> None:
        self.submitted: list[tuple[str, int, str]] = []

    async def __call__(self, job_name: str, items: list[SubmissionItem], user_id: str) -> None:
        self.submitted.append((job_name, len(items), user_id))
        logger.info("Dry run: would submit job batch", job_name=job_name, jobs=len(items), user_id=user_id)
