from types import SimpleNamespace

from vacancywatch.models import BatchSummary, PropertyRunResult, RunStatus
from vacancywatch.notifications import (
    SlackNotifier,
    build_notifier_from_env,
    deliver,
    format_notifications,
)


class DummyResponse:

    def raise_for_status(self):
        pass


def make_summary(results):
    return BatchSummary(
        executed_at="2025-03-02T10:00:00+00:00",
        snapshot_date="2025-03-02",
        source="snapshot",
        results=results,
    )


def test_slack_notifier_posts(monkeypatch):
    calls = []

    def fake_post(url, json=None, timeout=None):
        calls.append(SimpleNamespace(url=url, json=json, timeout=timeout))
        return DummyResponse()

    monkeypatch.setattr("vacancywatch.notifications.requests.post", fake_post)

    notifier = SlackNotifier(webhook_url="https://hooks.slack.com/services/test")
    notifier.send("hello slack")

    assert len(calls) == 1
    assert calls[0].url == "https://hooks.slack.com/services/test"
    assert calls[0].json == {"text": "hello slack"}


def test_slack_notifier_includes_username(monkeypatch):
    payloads = []

    def fake_post(url, json=None, timeout=None):
        payloads.append(json)
        return DummyResponse()

    monkeypatch.setattr("vacancywatch.notifications.requests.post", fake_post)

    SlackNotifier(webhook_url="https://hooks.slack.com/services/test", username="vacancy-bot").send(
        "hi"
    )

    assert payloads == [{"text": "hi", "username": "vacancy-bot"}]


def test_deliver_logs_and_continues(caplog):
    delivered = []

    class Flaky:
        def send(self, message):
            if message == "second":
                raise RuntimeError("webhook down")
            delivered.append(message)

    sent = deliver(Flaky(), ["first", "second", "third"])

    assert sent == 2
    assert delivered == ["first", "third"]
    assert "Failed to deliver notification via Flaky" in caplog.text


def test_build_notifier_from_env(monkeypatch):
    monkeypatch.delenv("SLACK_WEBHOOK", raising=False)
    monkeypatch.delenv("SLACK_USERNAME", raising=False)
    assert build_notifier_from_env() is None

    monkeypatch.setenv("SLACK_WEBHOOK", "https://hooks.slack.com/services/x")
    monkeypatch.setenv("SLACK_USERNAME", "vacancy-bot")
    notifier = build_notifier_from_env()
    assert isinstance(notifier, SlackNotifier)
    assert notifier.webhook_url == "https://hooks.slack.com/services/x"
    assert notifier.username == "vacancy-bot"


def test_format_notifications_surfaces_suspect_and_failed_properties():
    summary = make_summary(
        [
            PropertyRunResult(
                property_id="A",
                status=RunStatus.SUCCESS,
                appeared=["unit:1", "unit:2"],
                disappeared=["unit:3"],
                events_written=3,
            ),
            PropertyRunResult(
                property_id="B",
                name="Harbor View",
                status=RunStatus.SUSPECT_EMPTY,
                reason="adapter returned no records",
            ),
            PropertyRunResult(property_id="C", status=RunStatus.FAILED, reason="navigation timeout"),
            PropertyRunResult(property_id="D", status=RunStatus.SKIPPED, reason="skip flag set"),
        ]
    )

    messages = format_notifications(summary)

    assert len(messages) == 3
    assert "success 1 / suspect-empty 1 / failed 1 / skipped 1" in messages[0]
    assert "+2 appeared / -1 disappeared (3 events)" in messages[0]
    assert "- Harbor View (B): adapter returned no records" in messages[1]
    assert "- C: navigation timeout" in messages[2]


def test_format_notifications_truncates_long_lists():
    failed = [
        PropertyRunResult(property_id=f"P{i}", status=RunStatus.FAILED, reason="boom")
        for i in range(12)
    ]

    messages = format_notifications(make_summary(failed))

    assert messages[-1].endswith("...and 2 more")


def test_format_notifications_empty_batch():
    assert format_notifications(make_summary([])) == []
