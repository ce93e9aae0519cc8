from __future__ import annotations

import json
import logging
import threading

import httpx
import pytest

from roster_sync.config.loader import NotificationConfig
from roster_sync.models.telemetry import SchemaChangeTelemetry
from roster_sync.services.notifier import SchemaChangeNotifier, build_schema_change_payload

WEBHOOK = "https://hooks.example.com/roster"


@pytest.fixture()
def change():
    return SchemaChangeTelemetry(
        sheet_id="devices-main",
        run_id="run-1",
        added=("Warranty",),
        removed=(),
        renamed=(("Owner", "Assignee"),),
        previous_version="registry-5-aaaa",
        current_version="registry-6-bbbb",
        column_total=6,
        created_at="2024-01-01T00:00:00Z",
    )


def _notifier(handler, **kwargs):
    kwargs.setdefault("settle_seconds", 1.0)
    return SchemaChangeNotifier(WEBHOOK, transport=httpx.MockTransport(handler), **kwargs)


def test_payload_text_and_event(change):
    payload = build_schema_change_payload(change)
    assert payload["text"] == (
        "Sheet devices-main columns changed (added: Warranty; renamed: Owner -> Assignee)"
    )
    assert payload["event"]["renamed"] == [{"from": "Owner", "to": "Assignee"}]
    assert payload["event"]["eventType"] == "SYNC_COLUMNS_CHANGED"


def test_delivered_posts_json(change):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, str(request.url), json.loads(request.content)))
        return httpx.Response(200)

    notifier = _notifier(handler)
    try:
        outcome = notifier.notify(change)
    finally:
        notifier.close()

    assert outcome.delivered is True
    assert outcome.suppressed_reason is None
    [(method, url, body)] = seen
    assert (method, url) == ("POST", WEBHOOK)
    assert body["event"]["runId"] == "run-1"


def test_http_error_is_suppressed_not_raised(change):
    notifier = _notifier(lambda request: httpx.Response(500))
    try:
        outcome = notifier.notify(change)
    finally:
        notifier.close()
    assert outcome.delivered is False
    assert outcome.suppressed_reason.startswith("delivery_failed:")


def test_timeout_is_suppressed(change):
    def handler(request):
        raise httpx.ReadTimeout("webhook did not answer", request=request)

    notifier = _notifier(handler)
    try:
        outcome = notifier.notify(change)
    finally:
        notifier.close()
    assert outcome == outcome.__class__(delivered=False, suppressed_reason="timeout")


def test_notify_returns_while_delivery_in_flight(change):
    release = threading.Event()
    posted = []

    def handler(request):
        release.wait(2)
        posted.append(request)
        return httpx.Response(200)

    notifier = _notifier(handler, settle_seconds=0)
    try:
        outcome = notifier.notify(change)
        assert outcome.delivered is False
        assert outcome.suppressed_reason == "pending"
        assert posted == []
    finally:
        release.set()
        notifier.close()
    assert len(posted) == 1


def test_late_failure_is_logged(change, propagate_logs, caplog):
    release = threading.Event()

    def handler(request):
        release.wait(2)
        return httpx.Response(502)

    notifier = _notifier(handler, settle_seconds=0)
    with caplog.at_level(logging.WARNING, logger="roster_sync"):
        try:
            assert notifier.notify(change).suppressed_reason == "pending"
        finally:
            release.set()
            notifier.close()
    assert "event=SCHEMA_NOTIFY_SUPPRESSED run=run-1" in caplog.text
    assert "reason=delivery_failed" in caplog.text


@pytest.mark.parametrize(
    ("kwargs", "dry_run", "reason"),
    [
        ({"webhook_url": WEBHOOK}, True, "dry_run"),
        ({"webhook_url": WEBHOOK, "paused": True}, False, "paused"),
        ({"webhook_url": None}, False, "no_webhook"),
        ({"webhook_url": ""}, False, "no_webhook"),
    ],
)
def test_suppression_reasons_skip_delivery(change, kwargs, dry_run, reason):
    def handler(request):
        raise AssertionError("webhook must not be called")

    notifier = SchemaChangeNotifier(transport=httpx.MockTransport(handler), **kwargs)
    outcome = notifier.notify(change, dry_run=dry_run)
    assert outcome.delivered is False
    assert outcome.suppressed_reason == reason


def test_from_config():
    notifier = SchemaChangeNotifier.from_config(
        NotificationConfig(webhook_url=WEBHOOK, paused=True, timeout_seconds=1.5)
    )
    assert notifier.is_configured
    assert notifier.paused
    assert notifier.timeout_seconds == 1.5
