import asyncio
import json
from typing import Any, Dict, Optional
import httpx
from automation_engine.api.exceptions import AgentDispatchError, AgentTaskFailedError
from automation_engine.clients.agent_response import (
    AgentTaskState,
    extract_task_error,
    extract_task_id,
    extract_task_result,
    interpret_task_status,
)
from automation_engine.config.logging import get_logger
from automation_engine.config.settings import Settings
from automation_engine.utils.backoff import AttemptBackoff


class AgentWebhookClient:
    """Dispatches one step to the execution agent and returns its result body.

    Each attempt asks the agent for asynchronous processing. A response
    carrying a task id is polled at ``{webhook_url}/status/{task_id}`` until
    it completes, fails or the poll envelope runs out. A plain body is the
    synchronous result. Failed attempts are retried after a backoff; the last
    attempt falls back to one synchronous call with a long timeout.

    The wrapped ``httpx.AsyncClient`` is opened with the client and must be
    released with ``aclose``.
    """

    def __init__(
        self,
        webhook_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
        request_timeout: float = 30.0,
        poll_interval: float = 5.0,
        poll_request_timeout: float = 10.0,
        max_poll_seconds: float = 720.0,
        sync_timeout: float = 600.0,
        backoff: Optional[AttemptBackoff] = None,
        user_agent: str = "Automation-Engine/1.0",
    ):
        self.webhook_url = webhook_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient()
        self.max_attempts = max_attempts
        self.request_timeout = request_timeout
        self.poll_interval = poll_interval
        self.poll_request_timeout = poll_request_timeout
        self.max_poll_seconds = max_poll_seconds
        self.sync_timeout = sync_timeout
        self.backoff = backoff or AttemptBackoff(base_delay=2.0)
        self.headers = {"Content-Type": "application/json", "User-Agent": user_agent}
        self.logger = get_logger("agent.client")

    @classmethod
    def from_settings(cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> "AgentWebhookClient":
        return cls(
            webhook_url=settings.agent_webhook_url,
            http_client=http_client,
            max_attempts=settings.agent_max_attempts,
            request_timeout=settings.agent_request_timeout_seconds,
            poll_interval=settings.agent_poll_interval_seconds,
            poll_request_timeout=settings.agent_poll_request_timeout_seconds,
            max_poll_seconds=settings.agent_max_poll_seconds,
            sync_timeout=settings.agent_sync_timeout_seconds,
            backoff=AttemptBackoff(base_delay=settings.agent_retry_base_delay_seconds),
            user_agent=settings.agent_user_agent,
        )

    async def aclose(self) -> None:
        await self.http_client.aclose()

    async def __aenter__(self) -> "AgentWebhookClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def dispatch(self, payload: Dict[str, Any]) -> str:
        step_number = payload.get("step_number")

        for attempt in range(1, self.max_attempts + 1):
            self.logger.info("Calling agent webhook",
                             attempt=attempt,
                             max_attempts=self.max_attempts,
                             step_number=step_number,
                             execution_id=payload.get("execution_id"))
            try:
                return await self._dispatch_async(payload)
            except AgentTaskFailedError:
                # Business-logic failure reported by the agent, never retried
                raise
            except (AgentDispatchError, httpx.HTTPError) as e:
                self.logger.error("Agent attempt failed",
                                  attempt=attempt,
                                  step_number=step_number,
                                  error=str(e))
                if attempt == self.max_attempts:
                    self.logger.info("All async attempts failed, trying synchronous call",
                                     step_number=step_number,
                                     timeout_seconds=self.sync_timeout)
                    return await self._dispatch_sync(payload)
                await self.backoff.wait(attempt)

        raise AgentDispatchError(f"Step {step_number} could not be dispatched")

    async def _dispatch_async(self, payload: Dict[str, Any]) -> str:
        response = await self.http_client.post(
            self.webhook_url,
            json={**payload, "async": True, "return_task_id": True},
            headers=self.headers,
            timeout=self.request_timeout,
        )
        self.logger.debug("Initial agent response", status_code=response.status_code)

        if not response.is_success:
            raise AgentDispatchError(
                f"Agent responded with status {response.status_code}: {response.text[:500]}"
            )

        body = response.text
        task_id = extract_task_id(body)
        if not task_id:
            self.logger.debug("No task id found, treating as synchronous response")
            return body

        self.logger.info("Agent accepted task, polling for completion", task_id=task_id)
        try:
            return await asyncio.wait_for(self._poll_task(task_id), timeout=self.max_poll_seconds)
        except asyncio.TimeoutError:
            raise AgentDispatchError(
                f"Task {task_id} timed out after {int(self.max_poll_seconds)} seconds"
            )

    async def _poll_task(self, task_id: str) -> str:
        status_url = f"{self.webhook_url}/status/{task_id}"

        while True:
            await asyncio.sleep(self.poll_interval)

            try:
                response = await self.http_client.get(
                    status_url,
                    headers={"User-Agent": self.headers["User-Agent"]},
                    timeout=self.poll_request_timeout,
                )
            except httpx.HTTPError as e:
                self.logger.warning("Polling error (will retry)", task_id=task_id, error=str(e))
                continue

            if not response.is_success:
                self.logger.warning("Polling returned error status (will retry)",
                                    task_id=task_id,
                                    status_code=response.status_code)
                continue

            try:
                status_data = json.loads(response.text)
            except ValueError:
                self.logger.warning("Polling returned non-JSON body (will retry)", task_id=task_id)
                continue
            if not isinstance(status_data, dict):
                continue

            state = interpret_task_status(status_data)
            if state == AgentTaskState.COMPLETED:
                self.logger.info("Agent task completed", task_id=task_id)
                return extract_task_result(status_data, response.text)
            if state == AgentTaskState.FAILED:
                raise AgentTaskFailedError(f"Task {task_id} failed: {extract_task_error(status_data)}")

            self.logger.debug("Agent task still running", task_id=task_id, status=status_data.get("status"))

    async def _dispatch_sync(self, payload: Dict[str, Any]) -> str:
        try:
            response = await self.http_client.post(
                self.webhook_url,
                json=payload,
                headers=self.headers,
                timeout=self.sync_timeout,
            )
        except httpx.HTTPError as e:
            raise AgentDispatchError(f"Synchronous agent call failed: {e}") from e

        if not response.is_success:
            raise AgentDispatchError(
                f"Agent responded with status {response.status_code}: {response.text[:500]}"
            )
        return response.text
