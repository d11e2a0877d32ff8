# tests/notifier/test_webhook.py
import asyncio
import hashlib
import hmac
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from market_alerts.notifier.webhook import (
    MAX_BODY_LENGTH,
    WebhookSender,
    backoff_delay_ms,
    canonical_json,
    sign_payload,
)

URL = "https://hooks.example.com/alerts"
SECRET = "test-secret"


def make_response(status=200, text="ok"):
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=text)
    return response


def make_sender(side_effect, max_retries=3):
    sender = WebhookSender(max_retries=max_retries, backoff_base_ms=100)
    session = MagicMock()
    session.post = AsyncMock(side_effect=side_effect)
    sender._session = session
    return sender


def test_canonical_json_is_sorted_and_compact():
    assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'


def test_sign_payload():
    body = '{"symbol":"BTCUSDT"}'
    expected = hmac.new(SECRET.encode(), body.encode(), hashlib.sha256).hexdigest()

    assert sign_payload(SECRET, body) == expected
    assert len(sign_payload(SECRET, body)) == 64


def test_backoff_delay_grows_exponentially():
    with patch("market_alerts.notifier.webhook.random.uniform", return_value=0):
        assert backoff_delay_ms(1, 500) == 500
        assert backoff_delay_ms(2, 500) == 1000
        assert backoff_delay_ms(3, 500) == 2000


def test_backoff_delay_jitter_bounds():
    for _ in range(20):
        delay = backoff_delay_ms(1, 500)
        assert 500 <= delay <= 750


async def test_send_requires_session():
    sender = WebhookSender()

    with pytest.raises(RuntimeError):
        await sender.send(URL, {"a": 1}, SECRET)


async def test_send_success_sets_headers():
    sender = make_sender([make_response(200, "accepted")])
    payload = {"symbol": "BTCUSDT", "indicator_value": 0.025}

    result = await sender.send(URL, payload, SECRET)

    assert result.success
    assert result.attempts == 1
    assert result.status == 200
    assert result.body == "accepted"

    args, kwargs = sender._session.post.call_args
    assert args[0] == URL
    body = kwargs["data"].decode()
    assert body == canonical_json(payload)
    assert kwargs["headers"]["Content-Type"] == "application/json"
    assert kwargs["headers"]["X-Signature"] == sign_payload(SECRET, body)


async def test_send_retries_on_5xx():
    sender = make_sender([make_response(502, "bad gateway"), make_response(200)], max_retries=2)

    with patch("market_alerts.notifier.webhook.asyncio.sleep", new=AsyncMock()) as sleep:
        result = await sender.send(URL, {"a": 1}, SECRET)

    assert result.success
    assert result.attempts == 2
    assert sender._session.post.call_count == 2
    sleep.assert_awaited_once()
    assert 0.1 <= sleep.await_args[0][0] <= 0.15


async def test_send_gives_up_after_max_retries():
    sender = make_sender(lambda *a, **kw: make_response(500, "oops"), max_retries=2)

    with patch("market_alerts.notifier.webhook.asyncio.sleep", new=AsyncMock()):
        result = await sender.send(URL, {"a": 1}, SECRET)

    assert not result.success
    assert result.attempts == 2
    assert result.status == 500
    assert result.body == "oops"
    assert "500" in result.error


async def test_send_does_not_retry_4xx():
    sender = make_sender([make_response(404, "not found"), make_response(200)])

    with patch("market_alerts.notifier.webhook.asyncio.sleep", new=AsyncMock()) as sleep:
        result = await sender.send(URL, {"a": 1}, SECRET)

    assert not result.success
    assert result.attempts == 1
    assert result.status == 404
    sleep.assert_not_awaited()


async def test_send_retries_network_errors():
    sender = make_sender(
        [
            aiohttp.ClientConnectionError("refused"),
            asyncio.TimeoutError(),
            make_response(200),
        ]
    )

    with patch("market_alerts.notifier.webhook.asyncio.sleep", new=AsyncMock()):
        result = await sender.send(URL, {"a": 1}, SECRET)

    assert result.success
    assert result.attempts == 3


async def test_send_network_error_exhausted():
    sender = make_sender(aiohttp.ClientConnectionError("refused"), max_retries=2)

    with patch("market_alerts.notifier.webhook.asyncio.sleep", new=AsyncMock()):
        result = await sender.send(URL, {"a": 1}, SECRET)

    assert not result.success
    assert result.attempts == 2
    assert result.status is None
    assert "ClientConnectionError" in result.error


def make_binary_response(status, raw=b"\xff\xfe\x00ok"):
    async def text(encoding=None, errors="strict"):
        return raw.decode(encoding or "utf-8", errors=errors)

    response = MagicMock()
    response.status = status
    response.text = AsyncMock(side_effect=text)
    return response


async def test_send_success_with_binary_body():
    sender = make_sender([make_binary_response(200)])

    result = await sender.send(URL, {"a": 1}, SECRET)

    assert result.success
    assert result.attempts == 1
    assert result.status == 200
    assert result.body.endswith("ok")


async def test_send_retries_5xx_with_binary_body():
    sender = make_sender([make_binary_response(502), make_response(200)], max_retries=2)

    with patch("market_alerts.notifier.webhook.asyncio.sleep", new=AsyncMock()):
        result = await sender.send(URL, {"a": 1}, SECRET)

    assert result.success
    assert result.attempts == 2


async def test_send_truncates_response_body():
    sender = make_sender([make_response(200, "x" * 5000)])

    result = await sender.send(URL, {"a": 1}, SECRET)

    assert len(result.body) == MAX_BODY_LENGTH


async def test_sender_context_manager_closes_session():
    async with WebhookSender() as sender:
        assert sender._session is not None
    assert sender._session is None
