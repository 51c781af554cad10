"""Notification sinks for user-facing membership changes.

Sink selection (get_default_notification_sink):
  NOTIFICATION_WEBHOOK_URL set → HttpNotificationSink (email/messaging relay)
  NOTIFICATION_FILE_DIR set    → FileNotificationSink (local dev / CI)
  neither                      → LogNotificationSink

Sinks are best-effort from the dispatcher's point of view: a raised error is
logged and never propagates into billing state.

Test helpers:
  FailingNotificationSink → always raises RuntimeError
  RecordingNotificationSink → keeps sent notifications in memory
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)


class NotificationSinkConfigError(RuntimeError):
    """Raised when a configured sink cannot be constructed."""


# ── Protocol ──────────────────────────────────────────────────────────────────

@runtime_checkable
class NotificationSink(Protocol):
    """Minimal interface for all notification sinks."""

    async def send(self, notification: dict) -> None:
        """Deliver one notification.

        Args:
            notification: JSON-serialisable payload with at least `type`
                and `member_id`.

        Raises:
            RuntimeError / httpx.HTTPError: delivery failed
        """
        ...


# ── HTTP relay sink ───────────────────────────────────────────────────────────

class HttpNotificationSink:
    """POST notifications to a relay (email service, CRM webhook)."""

    def __init__(
        self,
        url: str,
        secret: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not url:
            raise NotificationSinkConfigError("HttpNotificationSink requires a URL")
        self._url = url
        self._secret = secret
        self._timeout = timeout
        self._transport = transport

    async def send(self, notification: dict) -> None:
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers["Authorization"] = f"Bearer {self._secret}"
        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.post(self._url, headers=headers, json=notification, timeout=self._timeout)
            response.raise_for_status()
        logger.info(
            "NOTIFICATION_SENT",
            extra={"notification_type": notification.get("type"), "sink": "http"},
        )


# ── File sink (CI / local dev) ────────────────────────────────────────────────

class FileNotificationSink:
    """Append notifications as JSON lines to a local file."""

    def __init__(self, directory: str) -> None:
        self._path = Path(directory) / "notifications.jsonl"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    async def send(self, notification: dict) -> None:
        with self._path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(notification, ensure_ascii=False, default=str) + "\n")
        logger.info("NOTIFICATION_FILE_WRITTEN", extra={"path": str(self._path)})


# ── Log sink (default) ────────────────────────────────────────────────────────

class LogNotificationSink:
    """Emit the notification as a structured log line only."""

    async def send(self, notification: dict) -> None:
        logger.info(
            "NOTIFICATION_LOGGED",
            extra={
                "notification_type": notification.get("type"),
                "notification_member_id": notification.get("member_id"),
            },
        )


# ── Test helpers ──────────────────────────────────────────────────────────────

class FailingNotificationSink:
    """Always raises RuntimeError. Used in tests to simulate sink failure."""

    async def send(self, notification: dict) -> None:
        raise RuntimeError("FailingNotificationSink: intentional failure for testing")


class RecordingNotificationSink:
    """Keeps every notification it receives."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send(self, notification: dict) -> None:
        self.sent.append(notification)


# ── Factory ───────────────────────────────────────────────────────────────────

def get_default_notification_sink() -> NotificationSink:
    """Return the sink selected by environment configuration."""
    url = os.getenv("NOTIFICATION_WEBHOOK_URL")
    if url:
        logger.info("NOTIFICATION_SINK_HTTP")
        return HttpNotificationSink(url=url, secret=os.getenv("NOTIFICATION_WEBHOOK_SECRET"))

    file_dir = os.getenv("NOTIFICATION_FILE_DIR")
    if file_dir:
        logger.info("NOTIFICATION_SINK_FILE", extra={"directory": file_dir})
        return FileNotificationSink(directory=file_dir)

    return LogNotificationSink()
