from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any

import httpx

from ..config.loader import NotificationConfig
from ..models.telemetry import SchemaChangeTelemetry

"""Schema-change webhook (best-effort side channel).

Delivery runs on a background worker thread and the run does not wait for
it. Whatever outcome is known when the run record is written becomes its
suppression reason (``pending`` while the POST is still in flight); a failed or
skipped delivery never fails the run.
"""

__all__ = [
    "NotificationOutcome",
    "SchemaChangeNotifier",
    "build_schema_change_payload",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationOutcome:
    delivered: bool
    suppressed_reason: str | None = None


def build_schema_change_payload(change: SchemaChangeTelemetry) -> dict[str, Any]:
    parts = []
    if change.added:
        parts.append(f"added: {', '.join(change.added)}")
    if change.removed:
        parts.append(f"removed: {', '.join(change.removed)}")
    if change.renamed:
        parts.append("renamed: " + ", ".join(f"{a} -> {b}" for a, b in change.renamed))
    text = f"Sheet {change.sheet_id} columns changed ({'; '.join(parts) or 'no details'})"
    return {"text": text, "event": change.to_dict()}


class SchemaChangeNotifier:
    def __init__(
        self,
        webhook_url: str | None = None,
        *,
        paused: bool = False,
        timeout_seconds: float = 5.0,
        settle_seconds: float = 0.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.paused = paused
        self.timeout_seconds = timeout_seconds
        self.settle_seconds = settle_seconds
        self._transport = transport
        self._executor: ThreadPoolExecutor | None = None

    @classmethod
    def from_config(cls, cfg: NotificationConfig) -> SchemaChangeNotifier:
        return cls(cfg.webhook_url, paused=cfg.paused, timeout_seconds=cfg.timeout_seconds)

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    def _post(self, payload: dict[str, Any]) -> None:
        with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = client.post(self.webhook_url, json=payload)
            response.raise_for_status()

    def submit(self, payload: dict[str, Any]) -> Future[None]:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="schema-notify")
        return self._executor.submit(self._post, payload)

    def notify(self, change: SchemaChangeTelemetry, *, dry_run: bool = False) -> NotificationOutcome:
        """Dispatch the webhook and return without waiting for delivery.

        The outcome is read after at most ``settle_seconds`` (0 by default). A
        delivery still in flight reports ``pending``; its final result is logged
        by the completion callback.
        """
        if dry_run:
            return self._suppressed(change, "dry_run")
        if self.paused:
            return self._suppressed(change, "paused")
        if not self.is_configured:
            return self._suppressed(change, "no_webhook")

        future = self.submit(build_schema_change_payload(change))
        future.add_done_callback(lambda done: self._log_completion(change, done))
        if self.settle_seconds > 0:
            wait([future], timeout=self.settle_seconds)
        if not future.done():
            return NotificationOutcome(delivered=False, suppressed_reason="pending")
        reason = _failure_reason(future)
        if reason is not None:
            return NotificationOutcome(delivered=False, suppressed_reason=reason)
        return NotificationOutcome(delivered=True)

    def _log_completion(self, change: SchemaChangeTelemetry, future: Future[None]) -> None:
        reason = _failure_reason(future)
        if reason is None:
            logger.info("event=SYNC_COLUMNS_CHANGED run=%s notified=true", change.run_id)
        else:
            self._suppressed(change, reason)

    def _suppressed(self, change: SchemaChangeTelemetry, reason: str) -> NotificationOutcome:
        log = logger.warning if reason.startswith(("delivery_failed", "timeout")) else logger.info
        log("event=SCHEMA_NOTIFY_SUPPRESSED run=%s sheet=%s reason=%s", change.run_id, change.sheet_id, reason)
        return NotificationOutcome(delivered=False, suppressed_reason=reason)

    def close(self, *, wait_for_delivery: bool = True) -> None:
        """Stop the worker; by default lets an in-flight delivery finish (bounded by the HTTP timeout)."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait_for_delivery)
            self._executor = None


def _failure_reason(future: Future[None]) -> str | None:
    error = future.exception()
    if error is None:
        return None
    if isinstance(error, httpx.TimeoutException):
        return "timeout"
    # httpx.HTTPError や不正 URL など、送信失敗はすべて抑止理由として記録
    return f"delivery_failed: {error}"
