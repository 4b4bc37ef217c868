"""Markdown report over the current session."""

from datetime import datetime, timezone
from typing import List, Optional

from ..models.session import EventRecord, SessionRecord, coerce_timestamp, utc_now


def _format_time(value) -> str:
    parsed = coerce_timestamp(value)
    if parsed is None:
        return 'N/A'
    return parsed.astimezone(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')


def _describe_event(event: EventRecord) -> str:
    data = event.data
    if data.get('message'):
        return str(data['message'])
    target = data.get('target') or {}
    if target.get('selector'):
        return f"on {target['selector']}"
    if data.get('key'):
        return f"key {data['key']}"
    if data.get('name'):
        return str(data['name'])
    return 'No message'


def render_markdown_report(record: SessionRecord, generated_at: Optional[datetime] = None) -> str:
    """Render a deterministic Markdown report for a session.

    Args:
        record: Session to report on
        generated_at: Report timestamp (now when omitted); also used as the
            end of the duration window of an open session

    Returns:
        Markdown text
    """
    generated_at = generated_at or utc_now()
    stats = record.stats(now=generated_at)
    flagged = {flag.event_id: flag for flag in record.flags}

    lines: List[str] = [
        "# Exploratory Testing Report",
        "",
        "## Session",
        f"- **ID**: {record.id}",
        f"- **Name**: {record.name}",
    ]
    if record.description:
        lines.append(f"- **Description**: {record.description}")
    lines += [
        f"- **Status**: {record.status.value}",
        f"- **Started**: {_format_time(record.start_time)}",
        f"- **Ended**: {_format_time(record.end_time)}",
        f"- **Duration**: {stats.duration_ms // 1000}s",
        "",
        "## Statistics",
        f"- **Events**: {stats.event_count}",
        f"- **Errors**: {stats.error_count}",
        f"- **Screenshots**: {stats.screenshot_count}",
        f"- **Flags**: {stats.flag_count}",
        "",
        "## Events",
    ]

    if record.events:
        for event in record.events:
            marker = " :triangular_flag_on_post:" if event.id in flagged else ""
            lines.append(
                f"- **{event.type.value}** ({_format_time(event.timestamp)}): "
                f"{_describe_event(event)}{marker}"
            )
    else:
        lines.append("No events")

    errors = [event for event in record.events if event.is_error]
    if errors:
        lines += ["", "## Errors"]
        for event in errors:
            lines.append(f"- ({_format_time(event.timestamp)}) {_describe_event(event)}")

    if record.flags:
        lines += ["", "## Flags"]
        for flag in record.flags:
            note = flag.note or 'No note'
            lines.append(f"- {flag.event_id}: {note}")

    lines += [
        "",
        "---",
        f"Generated: {_format_time(generated_at)}",
        "",
    ]
    return "\n".join(lines)
