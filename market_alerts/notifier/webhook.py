"""Webhook 告警投递"""

import asyncio
import hashlib
import hmac
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Any

import aiohttp

logger = logging.getLogger(__name__)

MAX_BODY_LENGTH = 1000


@dataclass
class WebhookResult:
    success: bool
    attempts: int
    status: int | None = None
    body: str | None = None
    error: str | None = None


def canonical_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sign_payload(secret: str, body: str) -> str:
    """hex(HMAC-SHA256(secret, body))"""
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


def backoff_delay_ms(attempt: int, backoff_base_ms: float) -> float:
    """第 attempt 次失败后的等待时间 (ms)"""
    jitter = random.uniform(0, backoff_base_ms / 2)
    return backoff_base_ms * 2 ** (attempt - 1) + jitter


def _truncate(text: str | None) -> str | None:
    if text is None or len(text) <= MAX_BODY_LENGTH:
        return text
    return text[:MAX_BODY_LENGTH]


@dataclass
class WebhookSender:
    """带签名、超时与指数退避重试的 Webhook 发送器"""

    timeout_ms: int = 5000
    max_retries: int = 3
    backoff_base_ms: int = 500
    _session: aiohttp.ClientSession | None = field(default=None, repr=False)

    async def init(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "WebhookSender":
        await self.init()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def send(self, url: str, payload: dict[str, Any], secret: str) -> WebhookResult:
        """
        发送告警

        仅在网络错误、超时或 5xx 时重试；4xx 等其他响应直接失败。
        不抛出异常，结果通过 WebhookResult 返回。
        """
        if self._session is None:
            raise RuntimeError("Session not initialized. Use 'async with' context.")

        body = canonical_json(payload)
        headers = {
            "Content-Type": "application/json",
            "X-Signature": sign_payload(secret, body),
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_ms / 1000)
        max_attempts = max(self.max_retries, 1)

        attempt = 0
        last_status: int | None = None
        last_body: str | None = None
        last_error: str | None = None

        while attempt < max_attempts:
            attempt += 1
            retryable = False
            try:
                response = await self._session.post(
                    url, data=body.encode(), headers=headers, timeout=timeout
                )
                last_status = response.status
                # 成功与否只看状态码，响应体按替换模式解码
                last_body = _truncate(await response.text(errors="replace"))

                if 200 <= response.status < 300:
                    return WebhookResult(
                        success=True, attempts=attempt, status=last_status, body=last_body
                    )

                last_error = f"Webhook responded with status {response.status}"
                retryable = response.status >= 500
                logger.warning(f"Webhook non-ok: {url} status={response.status} attempt={attempt}")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = f"{type(e).__name__}: {e}"
                retryable = True
                logger.warning(f"Webhook error: {url} attempt={attempt} {last_error}")
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.error(f"Webhook failed: {url} attempt={attempt} {last_error}")

            if not retryable or attempt >= max_attempts:
                break
            await asyncio.sleep(backoff_delay_ms(attempt, self.backoff_base_ms) / 1000)

        return WebhookResult(
            success=False,
            attempts=attempt,
            status=last_status,
            body=last_body,
            error=last_error,
        )
