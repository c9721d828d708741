"""
Outbound messaging gateway client.

Sends agent replies to individual recipients or group threads over the
gateway's HTTP API. Transient failures (429, 5xx, connection errors) are
retried with backoff; everything else surfaces as GatewayError.
"""

import asyncio

import httpx

from agent_core.config import settings
from agent_core.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_RETRIES = 3
BACKOFF_FACTOR = 0.5
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
WHATSAPP_SERVICE = "whatsapp"


class GatewayError(Exception):
    """Raised when the gateway rejects or cannot accept a message."""

    def __init__(self, message: str, status_code: int | None = None, recoverable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.recoverable = recoverable


class GatewayClient:
    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client or self._create_client()
        self.account_id = settings.GATEWAY_ACCOUNT_ID
        self.sender = settings.AGENT_NUMBER

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(settings.GATEWAY_TIMEOUT_SECONDS)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        return httpx.AsyncClient(
            base_url=settings.GATEWAY_BASE_URL,
            timeout=timeout,
            limits=limits,
            headers={
                "Content-Type": "application/json",
                "x-api-key": settings.GATEWAY_API_KEY or "",
                "x-api-secret": settings.GATEWAY_API_SECRET or "",
            },
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Gateway retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise GatewayError(f"Gateway unreachable: {e}") from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Gateway request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise GatewayError("Gateway retry loop exhausted")

    async def _send(self, path: str, body: dict, target: str) -> None:
        if not self.account_id:
            raise GatewayError("GATEWAY_ACCOUNT_ID not configured", recoverable=False)

        response = await self._request_with_retry("POST", path, json=body)
        if not response.is_success:
            logger.error(
                "Gateway rejected message",
                status_code=response.status_code,
                target=target,
                response_preview=response.text[:200] if response.text else "",
            )
            raise GatewayError(
                f"Gateway returned {response.status_code}",
                status_code=response.status_code,
                recoverable=response.status_code in RETRY_STATUS_CODES,
            )
        logger.debug("Gateway accepted message", target=target)

    async def send_individual(self, text: str, recipient: str) -> None:
        await self._send(
            f"/messages/individual/{self.account_id}/send",
            {"content": text, "from": self.sender, "to": recipient, "service": WHATSAPP_SERVICE},
            target=recipient,
        )

    async def send_group(self, text: str, thread_id: str) -> None:
        await self._send(
            f"/messages/group/{self.account_id}/send",
            {
                "content": text,
                "from": self.sender,
                "thread_id": thread_id,
                "service": WHATSAPP_SERVICE,
            },
            target=thread_id,
        )
