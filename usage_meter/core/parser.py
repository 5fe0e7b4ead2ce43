"""
Event parsing for line-delimited usage logs.

Turns raw log lines into validated usage events. Lines are independent:
a malformed line is dropped with a diagnostic and never affects its
siblings in the same file.
"""

import json
import logging
import math
import re
from pathlib import PurePath
from typing import List, Optional, Tuple

from usage_meter.core.clock import format_timestamp, parse_timestamp
from usage_meter.core.token_counter import TokenCounts
from usage_meter.storage.models import UsageEvent

log = logging.getLogger(__name__)

PROJECTS_MARKER = "projects"

_SEPARATORS = re.compile(r"[\\/]+")


def derive_origin(source_path: str) -> Optional[Tuple[str, str]]:
    """Derive the (project, session) pair from a log file path.

    The project is the path segment immediately following the
    ``projects`` marker; the session is the file's base name with its
    extension removed.

    Args:
        source_path: Path of the originating log file

    Returns:
        (project, session), or None if the path has no ``projects``
        segment or too few segments after it
    """
    parts = [p for p in _SEPARATORS.split(source_path) if p]
    try:
        marker = parts.index(PROJECTS_MARKER)
    except ValueError:
        return None

    # Need at least a project directory and a file after the marker
    if marker >= len(parts) - 2:
        return None

    project = parts[marker + 1]
    session = PurePath(parts[-1]).stem
    return project, session


def _token_count(usage: dict, key: str) -> int:
    value = usage.get(key)
    if (isinstance(value, bool) or not isinstance(value, (int, float))
            or not math.isfinite(value) or value < 0):
        return 0
    return int(value)


def parse_line(
    line: str,
    project: str,
    session: str,
    source_path: str,
) -> Optional[UsageEvent]:
    """Parse one log line into a usage event.

    A line is valid only if it is a JSON object with a non-empty
    ``timestamp``, a ``message.usage`` mapping and a numeric ``costUSD``.
    The timestamp is stored in fixed-width UTC form whatever offset the
    line used.

    Returns:
        The parsed event, or None if the line was dropped
    """
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        log.warning("Skipping malformed line in %s", source_path)
        return None

    if not isinstance(record, dict):
        log.warning("Skipping non-object line in %s", source_path)
        return None

    timestamp = record.get("timestamp")
    message = record.get("message")
    usage = message.get("usage") if isinstance(message, dict) else None
    cost = record.get("costUSD")

    if not timestamp or not isinstance(timestamp, str):
        log.warning("Skipping line without timestamp in %s", source_path)
        return None
    moment = parse_timestamp(timestamp)
    if moment is None:
        log.warning("Skipping line with unparseable timestamp %r in %s", timestamp, source_path)
        return None
    if not isinstance(usage, dict):
        log.warning("Skipping line without usage data in %s", source_path)
        return None
    if (isinstance(cost, bool) or not isinstance(cost, (int, float))
            or not math.isfinite(cost) or cost < 0):
        log.warning("Skipping line with invalid cost in %s", source_path)
        return None

    tokens = TokenCounts(
        input_tokens=_token_count(usage, "input_tokens"),
        output_tokens=_token_count(usage, "output_tokens"),
        cache_creation_tokens=_token_count(usage, "cache_creation_input_tokens"),
        cache_read_tokens=_token_count(usage, "cache_read_input_tokens"),
    )

    return UsageEvent(
        timestamp=format_timestamp(moment),
        tokens=tokens,
        cost=float(cost),
        project=project,
        session=session,
        source_path=source_path,
    )


def parse_file_content(source_path: str, content: str) -> List[UsageEvent]:
    """Parse the full text of one log file.

    Parsing is idempotent: the same content always yields an equal list.

    Args:
        source_path: Path of the originating log file
        content: Full text content of the file

    Returns:
        Events in file order; empty if the path structure is not
        recognised
    """
    origin = derive_origin(source_path)
    if origin is None:
        log.debug("No project segment in %s, ignoring file", source_path)
        return []
    project, session = origin

    events = []
    for line in content.splitlines():
        if not line.strip():
            continue
        event = parse_line(line, project, session, source_path)
        if event is not None:
            events.append(event)
    return events
