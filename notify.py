"""Optional update notifications via ntfy and generic webhooks."""

import json
import logging
from typing import Any, Dict, List

import requests

logger = logging.getLogger("harborbuddy.notify")

REQUEST_TIMEOUT = 10
DEFAULT_BODY_TEMPLATE = '{"text": {message_json}}'


def build_message(report, cycle_id: str = "") -> str:
    """Summarize a CycleReport as a short plain-text message."""
    lines: List[str] = []
    if report.updated_containers:
        lines.append(f"Updated: {', '.join(report.updated_containers)}")
    if report.failed_containers:
        lines.append(f"Failed: {', '.join(report.failed_containers)}")
    if report.self_update_requested:
        lines.append("HarborBuddy is updating itself")
    lines.append(
        f"{report.updated} updated, {report.skipped} skipped, "
        f"{report.errored} errors, {report.total} total"
    )
    if cycle_id:
        lines.append(f"cycle {cycle_id}")
    return "\n".join(lines)


def _send_ntfy(settings: Dict[str, Any], title: str, message: str) -> None:
    headers = {"Title": title, "Tags": "whale"}
    if settings.get("priority"):
        headers["Priority"] = settings["priority"]
    headers.update(settings.get("headers") or {})
    response = requests.post(
        settings["url"],
        data=message.encode("utf-8"),
        headers=headers,
        timeout=REQUEST_TIMEOUT,
    )
    response.raise_for_status()


def _send_webhook(settings: Dict[str, Any], title: str, message: str) -> None:
    template = settings.get("body_template") or DEFAULT_BODY_TEMPLATE
    body = (template
            .replace("{title_json}", json.dumps(title))
            .replace("{message_json}", json.dumps(message))
            .replace("{title}", title)
            .replace("{message}", message))
    headers = {"Content-Type": "application/json"}
    headers.update(settings.get("headers") or {})
    response = requests.request(
        settings.get("method", "POST").upper(),
        settings["url"],
        data=body.encode("utf-8"),
        headers=headers,
        timeout=REQUEST_TIMEOUT,
    )
    response.raise_for_status()


def send_notifications(notifications_config, report, cycle_id: str = "") -> int:
    """Deliver a cycle summary to every configured channel.

    Only cycles that updated something, failed something or handed off to a
    self-update are reported.  Delivery problems are logged, never raised.
    Returns the number of channels that accepted the message.
    """
    if not notifications_config.enabled:
        return 0
    if not (report.updated or report.errored or report.self_update_requested):
        return 0

    title = "HarborBuddy: containers updated" if report.updated else "HarborBuddy: update problems"
    message = build_message(report, cycle_id)

    delivered = 0
    channels = (
        ("ntfy", notifications_config.ntfy, _send_ntfy),
        ("webhook", notifications_config.webhook, _send_webhook),
    )
    for name, settings, send in channels:
        if not settings:
            continue
        try:
            send(settings, title, message)
            delivered += 1
        except requests.RequestException as e:
            logger.warning(f"Could not send {name} notification: {e}")
    return delivered
