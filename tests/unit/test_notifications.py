import httpx
import pytest

from opsflow.notifications import LoggingNotifier, NotificationService, WebhookNotifier
from opsflow.persistence import InMemoryWorkflowRepository


@pytest.mark.asyncio
async def test_roles_resolve_to_configured_addresses():
    repo = InMemoryWorkflowRepository()
    notifier = LoggingNotifier()
    service = NotificationService(notifier, repo, {"ops": ["ops@example.com", "pager@example.com"]})

    record = await service.notify("approval_needed", "PO needs approval", "body", ["ops", "finance"], run_id="r1")

    assert record.success
    assert record.to == ["ops@example.com", "pager@example.com", "role:finance"]
    assert [n.id for n in await repo.list_notifications(run_id="r1")] == [record.id]


@pytest.mark.asyncio
async def test_webhook_posts_json():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, headers={"x-message-id": "msg-1"})

    notifier = WebhookNotifier("https://hooks.test/notify", transport=httpx.MockTransport(handler))

    result = await notifier.send(["ops@example.com"], "Stockout", "Widget is out")

    assert result.success
    assert result.message_id == "msg-1"
    assert seen[0].method == "POST"
    assert b'"subject":"Stockout"' in seen[0].content.replace(b" ", b"")


@pytest.mark.asyncio
async def test_webhook_failure_is_recorded_not_raised():
    notifier = WebhookNotifier(
        "https://hooks.test/notify",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    service = NotificationService(notifier, InMemoryWorkflowRepository())

    record = await service.notify("exception_escalated", "Down", "body", ["ops"])

    assert not record.success
    assert record.error


@pytest.mark.asyncio
async def test_logging_notifier_keeps_only_recent_messages():
    notifier = LoggingNotifier(keep=2)
    for subject in ("first", "second", "third"):
        await notifier.send(["ops@example.com"], subject, "body")

    assert [m["subject"] for m in notifier.outbox] == ["second", "third"]
