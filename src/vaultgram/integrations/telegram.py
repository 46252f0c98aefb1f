from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

logger = logging.getLogger("vaultgram.telegram")

API_BASE = "https://api.telegram.org"
DEFAULT_RETRIES = 2
RETRY_BASE_SECONDS = 0.75
ALLOWED_UPDATES = ["message", "callback_query"]


class TelegramError(RuntimeError):
    """Telegram answered ``ok: false`` or the request kept failing."""

    def __init__(self, description: str, method: str = "") -> None:
        super().__init__(description)
        self.description = description
        self.method = method


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return False


@dataclass
class TelegramClient:
    """Bot API client: one JSON POST per call, retried on transport failure."""
    token: str
    timeout: float = 15.0
    transport: Optional[httpx.BaseTransport] = field(default=None, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def _url(self, method: str) -> str:
        return f"{API_BASE}/bot{self.token.strip()}/{method}"

    def _post(self, method: str, payload: dict[str, Any], timeout: float) -> dict[str, Any]:
        with httpx.Client(timeout=timeout, transport=self.transport) as client:
            resp = client.post(self._url(method), json=payload)
            if resp.status_code != 200:
                try:
                    body = resp.json()
                except ValueError:
                    body = None
                if isinstance(body, dict) and body.get("ok") is False and not (
                    resp.status_code == 429 or resp.status_code >= 500
                ):
                    return body
                resp.raise_for_status()
            return resp.json()

    def request(
        self,
        method: str,
        payload: dict[str, Any],
        retries: int = DEFAULT_RETRIES,
        timeout: Optional[float] = None,
    ) -> Any:
        """POST ``payload`` to ``method`` and return the ``result`` field."""
        body = {k: v for k, v in payload.items() if v is not None}
        attempt = 0
        while True:
            try:
                data = self._post(method, body, timeout or self.timeout)
                break
            except Exception as exc:  # noqa: BLE001
                if attempt >= retries or not _retryable(exc):
                    raise TelegramError(f"Telegram {method} failed: {exc}", method) from exc
                delay = RETRY_BASE_SECONDS * (2 ** attempt)
                logger.debug("Telegram %s failed (%s), retrying in %.2fs", method, exc, delay)
                self.sleep(delay)
                attempt += 1

        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else None
            raise TelegramError(description or "Telegram API request failed", method)
        return data.get("result")

    def send_message(
        self,
        chat_id: int | str,
        text: str,
        reply_markup: Optional[dict[str, Any]] = None,
    ) -> Any:
        return self.request("sendMessage", {
            "chat_id": chat_id,
            "text": text or "(empty message)",
            "reply_markup": reply_markup,
        })

    def get_updates(self, offset: int, timeout_seconds: int) -> list[dict[str, Any]]:
        """Long-poll for updates. Not retried: an empty poll is normal."""
        result = self.request(
            "getUpdates",
            {"offset": offset, "timeout": timeout_seconds, "allowed_updates": ALLOWED_UPDATES},
            retries=0,
            timeout=max(0, timeout_seconds) + 10,
        )
        return result if isinstance(result, list) else []

    def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None) -> Any:
        return self.request("answerCallbackQuery", {
            "callback_query_id": callback_query_id,
            "text": text,
        })
