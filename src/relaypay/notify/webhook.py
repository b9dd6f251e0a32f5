"""
Webhook notifier.

POSTs each notification as JSON to a configured URL. When a signing key is
given, the body is signed with Ed25519 and the base64 signature is sent in the
``x-relaypay-signature`` header, so receivers can verify the sender.
"""

from __future__ import annotations

import base64
import json
from typing import Any

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from relaypay.core.exceptions import ConfigurationError, NetworkError
from relaypay.core.logging import get_logger
from relaypay.core.types import Notification, NotificationKind
from relaypay.notify.base import Notifier
from relaypay.resilience.retry import execute_with_retry

SIGNATURE_HEADER = "x-relaypay-signature"

EVENT_TYPES: dict[NotificationKind, str] = {
    NotificationKind.MILESTONE: "payment.milestone",
    NotificationKind.COMPLETED: "payment.completed",
    NotificationKind.FAILED: "payment.failed",
}


def encode_event(notification: Notification) -> bytes:
    """Canonical JSON body: stable key order so signatures are reproducible."""
    event = {
        "id": notification.id,
        "type": EVENT_TYPES[notification.kind],
        "timestamp": notification.timestamp.isoformat(),
        "owner_id": notification.owner_id,
        "job_id": notification.job_id,
        "data": notification.detail,
    }
    return json.dumps(event, sort_keys=True, separators=(",", ":"), default=str).encode()


def load_signing_key(key: Ed25519PrivateKey | str | bytes) -> Ed25519PrivateKey:
    """
    Load an Ed25519 private key.

    Accepts a key object, a PEM string/bytes, or base64 of the 32 raw key bytes.
    """
    if isinstance(key, Ed25519PrivateKey):
        return key
    key_bytes = key.encode() if isinstance(key, str) else key
    try:
        if b"BEGIN" in key_bytes:
            loaded = serialization.load_pem_private_key(key_bytes, password=None)
        else:
            loaded = Ed25519PrivateKey.from_private_bytes(base64.b64decode(key_bytes))
    except ValueError as e:
        raise ConfigurationError(f"Invalid webhook signing key: {e}") from None
    if not isinstance(loaded, Ed25519PrivateKey):
        raise ConfigurationError("Webhook signing key is not an Ed25519 private key")
    return loaded


def verify_signature(body: bytes, signature: str, public_key: Ed25519PublicKey) -> bool:
    """Check a webhook body against its ``x-relaypay-signature`` header."""
    try:
        public_key.verify(base64.b64decode(signature), body)
        return True
    except (InvalidSignature, ValueError):
        return False


class WebhookNotifier(Notifier):
    """Delivers notifications over HTTP."""

    DEFAULT_TIMEOUT = 10.0

    def __init__(
        self,
        url: str,
        signing_key: Ed25519PrivateKey | str | bytes | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        if not url:
            raise ConfigurationError("Webhook URL is required")
        self._url = url
        self._signing_key = load_signing_key(signing_key) if signing_key is not None else None
        self._http_client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout
        self._logger = get_logger("notify.webhook")

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def build_request(self, notification: Notification) -> tuple[bytes, dict[str, str]]:
        body = encode_event(notification)
        headers = {"content-type": "application/json"}
        if self._signing_key is not None:
            signature = self._signing_key.sign(body)
            headers[SIGNATURE_HEADER] = base64.b64encode(signature).decode()
        return body, headers

    async def notify(self, notification: Notification) -> None:
        body, headers = self.build_request(notification)
        await execute_with_retry(self._post, body, headers)
        self._logger.debug(f"Delivered {notification.kind.value} for job {notification.job_id}")

    async def _post(self, body: bytes, headers: dict[str, str]) -> Any:
        client = await self._get_http_client()
        try:
            response = await client.post(self._url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Webhook timed out: {e}", url=self._url) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Webhook request failed: {e}", url=self._url) from e

        if response.status_code >= 400:
            error = NetworkError(
                f"Webhook returned HTTP {response.status_code}",
                status_code=response.status_code,
                url=self._url,
            )
            # Only 5xx and 429 are worth retrying
            if error.is_server_error() or error.is_rate_limited():
                raise error
            raise ConfigurationError(error.message, details={"url": self._url})
        return response
