"""Slack Web API integration."""

from dataclasses import dataclass


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
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
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_notification(
    kind: str,
    project_id: str,
    message: str,
    source_id: str | None = None,
    notification_id: int | None = None,
) -> list[dict]:
    """Format a blocking notification as Slack blocks."""
    headings = {
        "hil_approval": ":raised_hand: *Approval needed*",
        "hil_notice": ":information_source: *Heads up*",
        "api_blocked": ":no_entry: *Agent API blocked*",
        "task_blocked": ":red_circle: *Task blocked*",
    }
    heading = headings.get(kind, ":bell: *Notification*")
    source = f" (`{source_id}`)" if source_id else ""
    resolve_hint = (
        f"\nResolve with `osp notifications resolve {notification_id}`"
        if notification_id is not None and kind != "hil_notice"
        else ""
    )
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{heading}{source}\nProject: {project_id}\n{message[:1500]}{resolve_hint}",
            },
        }
    ]
