"""Tests for mailbox connectors."""
from datetime import datetime, timezone

import httpx
import pytest

from config.settings import MailboxConfig
from inbox.connector import (
    InMemoryMailbox, MailboxConnector, RestMailboxConnector, create_mailbox_connector,
)
from models.errors import CollaboratorError
from models.schemas import MessageMetadata

UTC = timezone.utc

RAW_MESSAGE = {
    "id": "msg-42",
    "threadId": "thr-42",
    "subject": "Invoice 1042",
    "from": "billing@vendor.com",
    "to": "me@acme.com, ap@acme.com",
    "date": "2026-03-02T08:15:00Z",
    "labels": ["INBOX"],
    "snippet": "Please find attached...",
}


def _connector(handler, token="secret") -> RestMailboxConnector:
    conn = RestMailboxConnector(MailboxConfig(type="rest", base_url="https://mail.test/api",
                                              auth_token=token))
    conn.client = httpx.AsyncClient(
        base_url="https://mail.test/api",
        headers={"Authorization": f"Bearer {token}"},
        transport=httpx.MockTransport(handler),
    )
    return conn


class TestNormalizeMessage:
    def test_alternate_field_names(self):
        msg = MailboxConnector.normalize_message(RAW_MESSAGE)
        assert msg.message_id == "msg-42"
        assert msg.thread_id == "thr-42"
        assert msg.sender == "billing@vendor.com"
        assert msg.recipients == ["me@acme.com", "ap@acme.com"]
        assert msg.received_at == datetime(2026, 3, 2, 8, 15, tzinfo=UTC)
        assert msg.body == "Please find attached..."

    def test_canonical_field_names(self):
        msg = MailboxConnector.normalize_message({
            "message_id": "m-1", "sender": "a@b.com", "recipients": ["c@d.com"], "body": "hi",
        })
        assert msg.message_id == "m-1"
        assert msg.recipients == ["c@d.com"]
        assert msg.thread_id == ""

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError):
            MailboxConnector.normalize_message({"subject": "no id"})


class TestInMemoryMailbox:
    @pytest.mark.asyncio
    async def test_get_and_add(self):
        box = InMemoryMailbox()
        assert await box.get_message("m-1") is None
        box.add(MessageMetadata(message_id="m-1", subject="Hello"))
        assert (await box.get_message("m-1")).subject == "Hello"

    @pytest.mark.asyncio
    async def test_returns_copies(self):
        box = InMemoryMailbox([MessageMetadata(message_id="m-1", subject="Hello")])
        msg = await box.get_message("m-1")
        msg.subject = "changed"
        assert (await box.get_message("m-1")).subject == "Hello"


class TestRestMailboxConnector:
    @pytest.mark.asyncio
    async def test_fetch_message(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json=RAW_MESSAGE)

        conn = _connector(handler)
        msg = await conn.get_message("msg-42")
        await conn.close()

        assert msg.subject == "Invoice 1042"
        assert seen["path"] == "/api/messages/msg-42"
        assert seen["auth"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_unknown_message(self):
        conn = _connector(lambda request: httpx.Response(404, json={"error": "not found"}))
        assert await conn.get_message("msg-missing") is None

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(503)
            return httpx.Response(200, json=RAW_MESSAGE)

        conn = _connector(handler)
        msg = await conn.get_message("msg-42")
        assert msg.message_id == "msg-42"
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_persistent_server_error(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(500)

        conn = _connector(handler)
        with pytest.raises(CollaboratorError, match="Mailbox unavailable"):
            await conn.get_message("msg-42")
        assert calls["n"] == 3

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(403)

        conn = _connector(handler)
        with pytest.raises(CollaboratorError):
            await conn.get_message("msg-42")
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        conn = _connector(lambda request: httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(CollaboratorError, match="Malformed"):
            await conn.get_message("msg-42")


class TestFactory:
    def test_rest_with_url(self):
        conn = create_mailbox_connector(MailboxConfig(type="rest", base_url="https://mail.test"))
        assert isinstance(conn, RestMailboxConnector)

    def test_rest_without_url_falls_back_to_memory(self):
        conn = create_mailbox_connector(MailboxConfig(type="rest", base_url="${MAILBOX_API_URL}"))
        assert isinstance(conn, InMemoryMailbox)

    def test_default_is_memory(self):
        assert isinstance(create_mailbox_connector(), InMemoryMailbox)
