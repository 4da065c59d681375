"""Slack Web API integration: review notifications and the Slack message executor."""

import json
import logging
from dataclasses import dataclass
from typing import Any

from action_governor.core.dispatch import DispatchResult
from action_governor.db.models import Action

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a message cannot be delivered to Slack."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """WebClient for the bot token, or None when Slack is not configured."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Post ``text`` (and optional Block Kit ``blocks``) to ``channel``."""
    client = get_client(token)
    if client is None:
        raise SlackError("Cannot post to Slack: SLACK_BOT_TOKEN is not set")

    response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_review_request(action: Action) -> list[dict]:
    """Format a pending action as Slack blocks asking for a review."""
    risk_emoji = {
        "low": ":large_green_circle:",
        "medium": ":large_yellow_circle:",
        "high": ":red_circle:",
    }
    emoji = risk_emoji.get(action.risk_level, ":grey_question:")
    preview = json.dumps(action.action_data, indent=2, default=str)
    if len(preview) > 1500:
        preview = preview[:1500] + "\n..."

    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":inbox_tray: *Action awaiting review* (#{action.id})\n"
                    f"Type: *{action.action_type.replace('_', ' ')}* | "
                    f"Risk: {emoji} {action.risk_level}"
                ),
            },
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"```{preview}```"},
        },
    ]


def notify_review_request(token: str | None, channel: str | None, action: Action) -> bool:
    """Post a review request for a pending action. Best-effort: never raises."""
    if not token or not channel or action.status != "pending":
        return False
    try:
        send_message(
            token,
            channel,
            f"Action #{action.id} ({action.action_type}) is awaiting review",
            format_review_request(action),
        )
        return True
    except Exception:
        logger.exception("Failed to send Slack review request for action %s", action.id)
        return False


class SlackMessageExecutor:
    """Executor that delivers a messaging action as a Slack message.

    The payload needs a channel (``channel`` or ``recipient``) and a body
    (``text`` or ``message``).
    """

    def __init__(self, token: str | None):
        self.token = token

    def execute(self, action: Action, payload: dict[str, Any]) -> DispatchResult:
        channel = payload.get("channel") or payload.get("recipient")
        text = payload.get("text") or payload.get("message")
        if not channel or not text:
            return DispatchResult(
                success=False, error="Slack message needs a channel and a text"
            )
        try:
            sent = send_message(self.token, channel, text)
        except SlackError as e:
            return DispatchResult(success=False, error=str(e))
        return DispatchResult(success=True, message=f"Message sent to {sent.channel} (ts: {sent.ts})")
