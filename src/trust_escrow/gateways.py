"""HTTP implementations of the processor and notification interfaces."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set, Tuple

import aiohttp

from .config import DEFAULT_PROCESSOR_TIMEOUT, EngineConfig
from .processors import ProcessorError, ProcessorResult

logger = logging.getLogger(__name__)


class HttpPaymentGateway:
    """Payment and payout processor backed by a JSON HTTP service.

    Every call POSTs to `{endpoint}/<operation>` and expects
    `{"success": bool, "reference": str, "error": str}` back.
    """

    def __init__(self, endpoint: str, timeout: float = DEFAULT_PROCESSOR_TIMEOUT):
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> None:
        """Initialize HTTP session."""
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        self.session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        """Close HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None

    async def __aenter__(self) -> "HttpPaymentGateway":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _post(self, path: str, body: Dict[str, Any]) -> ProcessorResult:
        if self.session is None:
            raise ProcessorError("gateway not connected")
        try:
            async with self.session.post(f"{self.endpoint}/{path}", json=body) as resp:
                if resp.status >= 500:
                    raise ProcessorError(f"{path}: HTTP {resp.status}")
                data = await resp.json()
        except aiohttp.ClientError as e:
            logger.error(f"POST {path} failed: {e}")
            raise ProcessorError(f"{path}: {e}") from e

        if data.get("success"):
            return ProcessorResult.success(reference=data.get("reference"))
        return ProcessorResult.failure(data.get("error") or f"{path} rejected")

    async def charge(
        self, buyer_id: str, amount: int, method: str, idempotency_key: str
    ) -> ProcessorResult:
        return await self._post(
            "charges",
            {
                "buyer_id": buyer_id,
                "amount": amount,
                "method": method,
                "idempotency_key": idempotency_key,
            },
        )

    async def payout(self, seller_id: str, amount: int, idempotency_key: str) -> ProcessorResult:
        return await self._post(
            "payouts",
            {"seller_id": seller_id, "amount": amount, "idempotency_key": idempotency_key},
        )

    async def refund(self, buyer_id: str, amount: int, idempotency_key: str) -> ProcessorResult:
        return await self._post(
            "refunds",
            {"buyer_id": buyer_id, "amount": amount, "idempotency_key": idempotency_key},
        )


class WebhookNotifier:
    """Posts events to a webhook without making the caller wait on delivery."""

    def __init__(self, endpoint: str, timeout: float = DEFAULT_PROCESSOR_TIMEOUT):
        self.endpoint = endpoint
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self._pending: Set[asyncio.Task] = set()
        self.delivered = 0
        self.failed = 0

    async def connect(self) -> None:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        self.session = aiohttp.ClientSession(timeout=timeout)

    async def notify(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if self.session is None:
            await self.connect()
        body = {"user_id": user_id, "event": event_type, "payload": payload}
        task = asyncio.create_task(self._send(body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, body: Dict[str, Any]) -> None:
        try:
            async with self.session.post(self.endpoint, json=body) as resp:
                if resp.status >= 400:
                    self.failed += 1
                    logger.warning(f"Webhook {body['event']} rejected: HTTP {resp.status}")
                    return
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.failed += 1
            logger.warning(f"Webhook {body['event']} to {body['user_id']} failed: {e}")
            return
        self.delivered += 1

    async def flush(self) -> None:
        """Wait for every in-flight delivery."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    async def aclose(self) -> None:
        await self.flush()
        if self.session:
            await self.session.close()
            self.session = None


def gateways_from_config(
    config: EngineConfig,
) -> Tuple[Optional[HttpPaymentGateway], Optional[WebhookNotifier]]:
    """HTTP collaborators for the endpoints set in `config`; None where unset."""
    payments = None
    if config.payment_endpoint:
        payments = HttpPaymentGateway(config.payment_endpoint, config.processor_timeout)
    notifier = None
    if config.notify_endpoint:
        notifier = WebhookNotifier(config.notify_endpoint, config.processor_timeout)
    return payments, notifier
