"""Notification helpers for delivering batch outcomes to external channels."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Protocol

import requests

from .models import BatchSummary, PropertyRunResult

logger = logging.getLogger(__name__)

MAX_PROPERTIES_PER_MESSAGE = 10


class Notifier(Protocol):
    """Protocol defining the notifier contract."""

    def send(self, message: str) -> None:
        ...


@dataclass
class SlackNotifier:
    """Post run summaries to a Slack Incoming Webhook."""

    webhook_url: str
    timeout: int = 10
    username: Optional[str] = None

    def send(self, message: str) -> None:
        payload = {"text": message}
        if self.username:
            payload["username"] = self.username
        response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        response.raise_for_status()


def build_notifier_from_env() -> Optional[Notifier]:
    """Return a Slack notifier when ``SLACK_WEBHOOK`` is set, else ``None``."""
    webhook = (os.getenv("SLACK_WEBHOOK") or "").strip()
    if not webhook:
        return None
    username = (os.getenv("SLACK_USERNAME") or "").strip() or None
    return SlackNotifier(webhook_url=webhook, username=username)


def deliver(notifier: Notifier, messages: List[str]) -> int:
    """Send each message in order and return how many went through.

    A failed delivery is logged and does not stop the remaining messages.
    """
    delivered = 0
    for message in messages:
        try:
            notifier.send(message)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to deliver notification via %s", type(notifier).__name__)
            continue
        delivered += 1
    return delivered


def format_notifications(summary: BatchSummary) -> List[str]:
    """Render a batch summary into human-friendly notification payloads."""
    if not summary.results:
        return []

    messages = [
        "\n".join(
            [
                f":bar_chart: Unit snapshot run {summary.snapshot_date} (source: {summary.source})",
                (
                    f"success {len(summary.succeeded)} / suspect-empty {len(summary.suspect_empty)}"
                    f" / failed {len(summary.failed)} / skipped {len(summary.skipped)}"
                ),
                (
                    f"units +{summary.appeared_total} appeared / -{summary.disappeared_total} disappeared"
                    f" ({summary.events_written_total} events)"
                ),
            ]
        )
    ]

    if summary.suspect_empty:
        messages.append(
            _property_list(
                ":warning: No units extracted (zero vacancy or broken scraper?)",
                summary.suspect_empty,
            )
        )
    if summary.failed:
        messages.append(_property_list(":x: Property runs failed", summary.failed))
    return messages


def _property_list(header: str, results: List[PropertyRunResult]) -> str:
    lines = [header]
    for result in results[:MAX_PROPERTIES_PER_MESSAGE]:
        label = f"{result.name} ({result.property_id})" if result.name else result.property_id
        lines.append(f"- {label}: {result.reason or 'no details'}")
    if len(results) > MAX_PROPERTIES_PER_MESSAGE:
        lines.append(f"...and {len(results) - MAX_PROPERTIES_PER_MESSAGE} more")
    return "\n".join(lines)


__all__ = [
    "Notifier",
    "SlackNotifier",
    "build_notifier_from_env",
    "deliver",
    "format_notifications",
]
