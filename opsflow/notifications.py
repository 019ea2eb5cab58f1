"""Notification boundary: the core only records whether sending worked."""

from __future__ import annotations

import logging
import uuid
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional, Protocol

import httpx
from pydantic import BaseModel

from .contracts import NotificationRecord
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)


class NotificationResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class Notifier(Protocol):
    async def send(self, to: List[str], subject: str, body: str) -> NotificationResult:
        """Deliver a message; never raises for delivery problems."""


class LoggingNotifier:
    """Logs messages and keeps the most recent ones in an outbox. Default for tests and the CLI."""

    def __init__(self, keep: int = 1000) -> None:
        self.outbox: Deque[Dict[str, object]] = deque(maxlen=keep)

    async def send(self, to: List[str], subject: str, body: str) -> NotificationResult:
        message_id = uuid.uuid4().hex
        self.outbox.append({"id": message_id, "to": list(to), "subject": subject, "body": body})
        logger.info(f"Notification to {', '.join(to) or '<nobody>'}: {subject}")
        return NotificationResult(success=True, message_id=message_id)


class WebhookNotifier:
    """POSTs notifications as JSON to a webhook (chat, mail relay, ...)."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def send(self, to: List[str], subject: str, body: str) -> NotificationResult:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.url, json={"to": to, "subject": subject, "body": body}
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Webhook notification '{subject}' failed: {e}")
            return NotificationResult(success=False, error=str(e))
        message_id = response.headers.get("x-message-id") or uuid.uuid4().hex
        return NotificationResult(success=True, message_id=message_id)


class NotificationService:
    """Resolves roles to recipients, sends, and records the outcome."""

    def __init__(
        self,
        notifier: Notifier,
        repository: WorkflowRepository,
        role_addresses: Optional[Dict[str, List[str]]] = None,
    ) -> None:
        self._notifier = notifier
        self._repository = repository
        self._role_addresses = role_addresses or {}

    def recipients_for(self, roles: Iterable[str]) -> List[str]:
        recipients: List[str] = []
        for role in roles:
            for address in self._role_addresses.get(role, [f"role:{role}"]):
                if address not in recipients:
                    recipients.append(address)
        return recipients

    async def notify(
        self,
        kind: str,
        subject: str,
        body: str,
        roles: Iterable[str],
        run_id: Optional[str] = None,
    ) -> NotificationRecord:
        return await self.send_to(kind, subject, body, self.recipients_for(roles), run_id)

    async def send_to(
        self,
        kind: str,
        subject: str,
        body: str,
        to: List[str],
        run_id: Optional[str] = None,
    ) -> NotificationRecord:
        """Send to explicit addresses, such as a vendor contact."""
        result = await self._notifier.send(to, subject, body)
        record = NotificationRecord(
            run_id=run_id,
            kind=kind,
            to=to,
            subject=subject,
            body=body,
            success=result.success,
            message_id=result.message_id,
            error=result.error,
        )
        await self._repository.save_notification(record)
        return record
