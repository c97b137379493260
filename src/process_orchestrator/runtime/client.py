"""HTTP adapter for the process runtime's REST API.

Wraps ``requests`` so the rest of the code never sees HTTP. Deployments and instance
starts are retried with backoff when the runtime is unavailable or times out; task
completion is never retried because the runtime may already have applied it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from process_orchestrator.runtime.port import (
    RuntimeRejectedError,
    RuntimeTimeoutError,
    RuntimeUnavailableError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class HttpProcessRuntime:
    """Talks to a Camunda 8 style ``/v2`` REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        token: str = "",
        timeout_seconds: float = 10.0,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        session: requests.Session | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("Runtime base URL is required")

        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._retry_attempts = max(1, retry_attempts)
        self._retry_backoff = retry_backoff_seconds
        self._session = session or requests.Session()
        self._session.headers.update(
            {"Accept": "application/json", "User-Agent": "process-orchestrator"}
        )
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"

    def close(self) -> None:
        self._session.close()

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def _send(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = self._url(path)
        try:
            resp = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.Timeout as e:
            raise RuntimeTimeoutError(f"{method} {path} timed out after {self._timeout}s") from e
        except requests.ConnectionError as e:
            raise RuntimeUnavailableError(f"{method} {path} failed: {e}") from e

        if resp.status_code >= 500:
            raise RuntimeUnavailableError(f"{method} {path} returned HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise RuntimeRejectedError(_error_detail(resp), status_code=resp.status_code)
        return resp

    def _with_retry(self, operation: str, call: Callable[[], T]) -> T:
        retrying = Retrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=self._retry_backoff, max=10),
            retry=retry_if_exception_type((RuntimeUnavailableError, RuntimeTimeoutError)),
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "Runtime unavailable or timed out; retrying",
                extra={"operation": operation, "attempt": state.attempt_number},
            ),
        )
        return retrying(call)

    def deploy(self, definition_xml: str, resource_name: str) -> str:
        def call() -> str:
            resp = self._send(
                "POST",
                "/v2/deployments",
                files={"resources": (resource_name, definition_xml.encode("utf-8"), "text/xml")},
            )
            data = resp.json()
            for deployment in data.get("deployments") or []:
                definition = deployment.get("processDefinition") or {}
                key = definition.get("processDefinitionKey")
                if key:
                    return str(key)
            raise RuntimeRejectedError("Deployment response did not contain a process definition")

        key = self._with_retry("deploy", call)
        logger.info("Deployed process definition", extra={"resource": resource_name, "key": key})
        return key

    def start_instance(
        self,
        deployed_key: str,
        business_key: str | None,
        variables: Mapping[str, Any],
        idempotency_key: str | None = None,
    ) -> str:
        payload_vars = dict(variables)
        if business_key:
            payload_vars.setdefault("businessKey", business_key)
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None

        def call() -> str:
            resp = self._send(
                "POST",
                "/v2/process-instances",
                json={"processDefinitionKey": deployed_key, "variables": payload_vars},
                headers=headers,
            )
            key = resp.json().get("processInstanceKey")
            if not key:
                raise RuntimeRejectedError("Start response did not contain processInstanceKey")
            return str(key)

        return self._with_retry("start_instance", call)

    def complete_user_task(self, task_key: str, form_data: Mapping[str, Any]) -> None:
        self._send(
            "POST",
            f"/v2/user-tasks/{task_key}/completion",
            json={"variables": dict(form_data)},
        )
        logger.info("Completed user task in runtime", extra={"task_key": task_key})


def _error_detail(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("detail", "message", "title"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {resp.status_code}"
