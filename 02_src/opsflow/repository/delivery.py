"""Default delivery and workflow-invocation collaborators."""

import uuid
from typing import Any

import httpx

from ..config import WorkflowConfig
from ..logging_config import get_logger
from ..models import DeliveryContent, DeliveryResult, InvocationResponse

logger = get_logger(__name__)


class LoggingDeliveryService:
    """Accepts every delivery and logs it. Keeps a list of what was sent."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []

    async def _deliver(
        self, channel: str, recipient: str, content: DeliveryContent
    ) -> DeliveryResult:
        external_id = f"{channel}_{uuid.uuid4().hex[:12]}"
        self.sent.append(
            {
                "channel": channel,
                "recipient": recipient,
                "subject": content.subject,
                "body": content.body,
                "external_id": external_id,
            }
        )
        logger.info("Delivered %s to %s: %s", channel, recipient, content.subject)
        return DeliveryResult(success=True, external_id=external_id, status_code=202)

    async def send_email(self, recipient: str, content: DeliveryContent) -> DeliveryResult:
        return await self._deliver("email", recipient, content)

    async def send_sms(self, recipient: str, content: DeliveryContent) -> DeliveryResult:
        return await self._deliver("sms", recipient, content)

    async def send_push(self, recipient: str, content: DeliveryContent) -> DeliveryResult:
        return await self._deliver("push", recipient, content)

    async def send_in_app(self, recipient: str, content: DeliveryContent) -> DeliveryResult:
        return await self._deliver("in_app", recipient, content)


class HttpWorkflowInvoker:
    """Posts to a workflow engine over HTTP.

    ``workflow_ref`` is either a full URL (a workflow's webhook) or a workflow id,
    which is sent to ``<base_url>/workflows/<id>/execute``.
    """

    def __init__(
        self,
        config: WorkflowConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config or WorkflowConfig()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def url_for(self, workflow_ref: str) -> str:
        if workflow_ref.startswith(("http://", "https://")):
            return workflow_ref
        base = self._config.base_url.rstrip("/")
        return f"{base}/workflows/{workflow_ref}/execute"

    async def invoke(
        self,
        workflow_ref: str,
        payload: dict[str, Any],
        timeout_ms: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> InvocationResponse:
        request_headers = {"Content-Type": "application/json"}
        if self._config.api_key:
            request_headers["X-API-KEY"] = self._config.api_key
        request_headers.update(headers or {})

        timeout = (timeout_ms or self._config.default_timeout_ms) / 1000
        response = await self._get_client().post(
            self.url_for(workflow_ref),
            json=payload,
            headers=request_headers,
            timeout=timeout,
        )

        try:
            body = response.json()
        except ValueError:
            body = response.text

        return InvocationResponse(
            status_code=response.status_code,
            body=body,
            headers=dict(response.headers),
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
