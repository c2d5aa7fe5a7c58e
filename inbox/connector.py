"""
Mailbox connectors — pull-only access to message metadata.

The queue never pushes to the mailbox. It asks for one message by id when
admitting a classified message, and for the body when building a snooze
suggestion.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import (
    retry, retry_if_exception, stop_after_attempt, wait_exponential,
)

from config.settings import MailboxConfig
from models.errors import CollaboratorError
from models.schemas import MessageMetadata

logger = structlog.get_logger()


class MailboxConnector(abc.ABC):
    """Abstract mailbox interface."""

    @abc.abstractmethod
    async def get_message(self, message_id: str) -> Optional[MessageMetadata]:
        """Metadata for one message, or None if the mailbox does not know it."""
        ...

    async def close(self):
        pass

    @staticmethod
    def normalize_message(raw: dict[str, Any]) -> MessageMetadata:
        """Accept the common field spellings mail APIs use."""
        recipients = raw.get("recipients") or raw.get("to") or []
        if isinstance(recipients, str):
            recipients = [r.strip() for r in recipients.split(",") if r.strip()]
        data = {
            "message_id": raw.get("message_id") or raw.get("id"),
            "thread_id": raw.get("thread_id") or raw.get("threadId") or "",
            "subject": raw.get("subject", ""),
            "sender": raw.get("sender") or raw.get("from") or "",
            "recipients": recipients,
            "labels": raw.get("labels") or [],
            "body": raw.get("body") or raw.get("snippet") or "",
        }
        received = raw.get("received_at") or raw.get("date")
        if received:
            data["received_at"] = received
        return MessageMetadata.model_validate(data)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return False


class RestMailboxConnector(MailboxConnector):
    """
    REST mailbox API.
    GET {base_url}/messages/{message_id} → message JSON.
    """

    def __init__(self, config: MailboxConfig):
        self.config = config
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_token:
                headers["Authorization"] = f"Bearer {self.config.auth_token}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_s,
            )
        return self.client

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        reraise=True,
    )
    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        response = await client.request(method, url, **kwargs)
        if response.status_code != 404:
            response.raise_for_status()
        return response

    async def get_message(self, message_id: str) -> Optional[MessageMetadata]:
        try:
            response = await self._request("GET", f"/messages/{message_id}")
        except httpx.HTTPError as e:
            logger.error("mailbox_fetch_failed", message_id=message_id, error=str(e))
            raise CollaboratorError(f"Mailbox unavailable: {e}",
                                    details={"message_id": message_id}) from e
        if response.status_code == 404:
            logger.info("mailbox_message_not_found", message_id=message_id)
            return None
        try:
            return self.normalize_message(response.json())
        except ValueError as e:
            raise CollaboratorError(f"Malformed mailbox response for {message_id}: {e}",
                                    details={"message_id": message_id}) from e

    async def close(self):
        if self.client and not self.client.is_closed:
            await self.client.aclose()


class InMemoryMailbox(MailboxConnector):
    """Dict-backed mailbox for development and tests."""

    def __init__(self, messages: list[MessageMetadata] = None):
        self._messages: dict[str, MessageMetadata] = {
            m.message_id: m for m in (messages or [])
        }

    def add(self, message: MessageMetadata) -> None:
        self._messages[message.message_id] = message

    async def get_message(self, message_id: str) -> Optional[MessageMetadata]:
        message = self._messages.get(message_id)
        return message.model_copy() if message else None


def create_mailbox_connector(config: MailboxConfig = None) -> MailboxConnector:
    """Factory function to create the configured mailbox connector."""
    config = config or MailboxConfig()
    if config.type == "rest" and config.base_url and not config.base_url.startswith("${"):
        return RestMailboxConnector(config)
    if config.type == "rest":
        logger.warning("using_memory_mailbox", reason="mailbox base_url not configured")
    return InMemoryMailbox()
