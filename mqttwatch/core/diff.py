"""
Payload formatting and line diffs for the message detail view.

Both sides of a comparison go through format_payload() first, so two JSON
documents that differ only in whitespace compare equal and nested changes show
up on their own lines.
"""
import difflib
import json
import logging

from mqttwatch.core.models import LogEntry, MessageDetail

logger = logging.getLogger(__name__)

NO_CHANGES = "No changes detected"
NO_PREVIOUS = "No previous message to compare"

_PREFIX = {"delete": "-", "insert": "+", "equal": " "}


def format_payload(text: str) -> str:
    """Pretty-print JSON payloads; anything else is returned unchanged."""
    try:
        return json.dumps(json.loads(text), indent=2, ensure_ascii=False)
    except (ValueError, RecursionError):
        return text


def diff_payloads(old: str, new: str) -> str:
    """
    Line diff of two payloads after normalization.

    Every output line is prefixed with '-' (only in old), '+' (only in new)
    or ' ' (in both). A changed block lists its deletions before its
    insertions.
    """
    old_text = format_payload(old)
    new_text = format_payload(new)
    if old_text == new_text:
        return NO_CHANGES

    old_lines = old_text.splitlines(keepends=True)
    new_lines = new_text.splitlines(keepends=True)
    matcher = difflib.SequenceMatcher(a=old_lines, b=new_lines, autojunk=False)

    out: list[str] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag in ("delete", "replace"):
            out.extend(_emit("delete", old_lines[i1:i2]))
        if tag in ("insert", "replace"):
            out.extend(_emit("insert", new_lines[j1:j2]))
        if tag == "equal":
            out.extend(_emit("equal", old_lines[i1:i2]))
    return "".join(out)


def _emit(tag: str, lines: list[str]) -> list[str]:
    prefix = _PREFIX[tag]
    return [f"{prefix}{line}" if line.endswith("\n") else f"{prefix}{line}\n" for line in lines]


def message_detail(entry: LogEntry) -> MessageDetail:
    """Formatted body of `entry` plus its diff against the previous message on the topic."""
    body = entry.record.body_text()
    formatted = format_payload(body)
    if entry.previous is None:
        return MessageDetail(entry=entry, formatted_body=formatted,
                             diff_text=NO_PREVIOUS, has_previous=False)
    diff_text = diff_payloads(entry.previous.body_text(), body)
    logger.debug(f"Diff computed for seq={entry.seq} topic='{entry.record.topic}'")
    return MessageDetail(entry=entry, formatted_body=formatted,
                         diff_text=diff_text, has_previous=True)
