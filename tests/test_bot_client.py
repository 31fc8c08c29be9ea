"""Tests for BotClient — Bot API wrapper. The HTTP layer is always mocked."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from roffle_economy.bot_client import BotClient
from roffle_economy.config import BotConfig


def _make_client(**overrides) -> BotClient:
    cfg = BotConfig(token="123:abc", app_url="https://roffle.test", **overrides)
    return BotClient(cfg, logging.getLogger("test"))


def _mock_session(client: BotClient, body=None, exc: Exception | None = None) -> MagicMock:
    mock_resp = AsyncMock()
    if exc is not None:
        mock_resp.json = AsyncMock(side_effect=exc)
    else:
        mock_resp.json = AsyncMock(return_value=body)
    mock_resp.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_resp.__aexit__ = AsyncMock(return_value=False)

    mock_session = MagicMock()
    mock_session.post = MagicMock(return_value=mock_resp)
    mock_session.close = AsyncMock()
    client._session = mock_session
    return mock_session


# ═══════════════════════════════════════════════════════════════
#  sendMessage
# ═══════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_send_message_posts_to_method():
    client = _make_client()
    session = _mock_session(client, {"ok": True, "result": {"message_id": 1}})

    assert await client.send_message(42, "hello") is True
    args, kwargs = session.post.call_args
    assert args[0] == "/bot123:abc/sendMessage"
    assert kwargs["json"] == {"chat_id": 42, "text": "hello"}


@pytest.mark.asyncio
async def test_send_play_button_markup():
    client = _make_client()
    session = _mock_session(client, {"ok": True, "result": {}})

    assert await client.send_play_button(42, "Ann") is True
    body = session.post.call_args[1]["json"]
    assert body["text"] == "👋 Hey Ann! Tap below to play ROFFLE:"
    button = body["reply_markup"]["inline_keyboard"][0][0]
    assert button["web_app"] == {"url": "https://roffle.test"}


@pytest.mark.asyncio
async def test_send_play_button_default_name():
    client = _make_client()
    session = _mock_session(client, {"ok": True, "result": {}})
    await client.send_play_button(42)
    assert "Hey there!" in session.post.call_args[1]["json"]["text"]


@pytest.mark.asyncio
async def test_api_error_returns_false():
    client = _make_client()
    _mock_session(client, {"ok": False, "description": "Forbidden: bot was blocked"})
    assert await client.send_message(42, "hello") is False


@pytest.mark.asyncio
@pytest.mark.parametrize("exc", [
    aiohttp.ClientConnectionError("refused"),
    asyncio.TimeoutError(),
    ValueError("bad json"),
])
async def test_transport_errors_swallowed(exc):
    client = _make_client()
    _mock_session(client, exc=exc)
    assert await client.send_message(42, "hello") is False


@pytest.mark.asyncio
async def test_not_started_skips_call():
    client = _make_client()
    assert await client.send_message(42, "hello") is False


# ═══════════════════════════════════════════════════════════════
#  Payments
# ═══════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_answer_pre_checkout_rejection_carries_message():
    client = _make_client()
    session = _mock_session(client, {"ok": True, "result": True})

    assert await client.answer_pre_checkout_query("q1", False, "Price changed") is True
    body = session.post.call_args[1]["json"]
    assert body == {"pre_checkout_query_id": "q1", "ok": False, "error_message": "Price changed"}


@pytest.mark.asyncio
async def test_answer_pre_checkout_approval_has_no_message():
    client = _make_client()
    session = _mock_session(client, {"ok": True, "result": True})
    await client.answer_pre_checkout_query("q1", True, "ignored")
    assert "error_message" not in session.post.call_args[1]["json"]


@pytest.mark.asyncio
async def test_create_invoice_link():
    client = _make_client()
    session = _mock_session(client, {"ok": True, "result": "https://t.me/$abc"})
    link = await client.create_invoice_link({"title": "x", "prices": []})
    assert link == "https://t.me/$abc"
    assert session.post.call_args[0][0] == "/bot123:abc/createInvoiceLink"


@pytest.mark.asyncio
async def test_create_invoice_link_failure():
    client = _make_client()
    _mock_session(client, {"ok": False})
    assert await client.create_invoice_link({}) is None


# ═══════════════════════════════════════════════════════════════
#  Lifecycle
# ═══════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_stop_closes_session():
    client = _make_client()
    session = _mock_session(client, {})
    await client.stop()
    session.close.assert_awaited_once()
    assert client._session is None
