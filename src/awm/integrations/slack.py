"""Slack Web API integration for work session notifications."""

from dataclasses import dataclass


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


@dataclass
class SessionOutcome:
    project_id: str
    project_name: str
    session_id: str
    status: str
    duration: float
    executor_session_key: str | None = None
    summary: str | None = None
    outcome: str | None = None
    error: str | None = None
    repository: str | None = None


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


def format_session_notification(outcome: SessionOutcome) -> list[dict]:
    """Format a finished work session as Slack blocks."""
    completed = outcome.status == "completed"
    emoji = ":white_check_mark:" if completed else ":x:"
    title = "Work Session Complete" if completed else "Work Session Failed"
    minutes = outcome.duration / 60

    lines = [
        f"{emoji} *{title}*",
        f"*Project:* {outcome.project_name} (`{outcome.project_id}`)",
        f"*Duration:* {minutes:.1f} minutes",
    ]
    if outcome.executor_session_key:
        lines.append(f"*Session:* `{outcome.executor_session_key}`")

    if completed:
        if outcome.summary:
            lines.append(f"\n*Summary:*\n{outcome.summary}")
        if outcome.outcome:
            text = outcome.outcome[:800]
            if len(outcome.outcome) > 800:
                text += "..."
            lines.append(f"\n*Outcome:*\n{text}")
    elif outcome.error:
        lines.append(f"\n*Error:* {outcome.error}")

    if outcome.repository:
        lines.append(f"\n*Repository:* {outcome.repository}")

    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": "\n".join(lines)},
        }
    ]


class SlackNotifier:
    """Posts session outcomes to one Slack channel."""

    def __init__(self, token: str | None, channel: str):
        self.token = token
        self.channel = channel

    def notify(self, outcome: SessionOutcome) -> SlackMessage:
        blocks = format_session_notification(outcome)
        text = f"Work session {outcome.status} for {outcome.project_name}"
        return send_message(self.token, self.channel, text, blocks)
