"""
Session reconstruction over an hourly series.

A session is a run of at most five hourly buckets that starts at the
first hour with cost. Quiet hours inside the window are bridged; the
session closes once the window is full.
"""

from datetime import datetime, tzinfo
from typing import Iterable, List, Optional, Sequence

from usage_meter.core.aggregator import get_current_hour_entries
from usage_meter.core.clock import (
    hour_key,
    hours_between,
    local_timezone,
    resolve_now,
    truncate_to_hour,
)
from usage_meter.storage.models import HourlySummary, Session, UsageEvent

SESSION_WINDOW_HOURS = 5

# A quiet hour is bridged when activity lies within this many hours on both sides
BRIDGE_LOOKAROUND_HOURS = 2


def _build_session(window: List[HourlySummary], is_ongoing: bool) -> Session:
    members = list(window)
    # Trailing quiet hours are part of the window, not of the activity
    while len(members) > 1 and members[-1].cost == 0:
        members.pop()
    return Session(
        start_hour=members[0].hour,
        end_hour=members[-1].hour,
        hours=members,
        total_cost=sum(h.cost for h in members),
        is_ongoing=is_ongoing,
    )


def reconstruct_sessions(hourly: Sequence[HourlySummary]) -> List[Session]:
    """Partition a dense, ascending hourly series into sessions.

    Scanning oldest to newest: a non-zero hour opens a session; every
    following hour (zero or not) extends it until the window holds
    ``SESSION_WINDOW_HOURS`` hours, at which point it closes. An hour
    lying a full window or more after the session start also closes it,
    which only matters when the input has gaps.

    The session still open at the end of input is ongoing: it contains
    the last hour and can grow on the next tick.

    Args:
        hourly: Hourly summaries, chronologically ascending and dense

    Returns:
        Sessions ordered newest first
    """
    ordered = sorted(hourly, key=lambda h: h.hour)
    sessions: List[Session] = []
    window: List[HourlySummary] = []

    for hour in ordered:
        if window and hours_between(window[0].hour_start, hour.hour_start) >= SESSION_WINDOW_HOURS:
            sessions.append(_build_session(window, is_ongoing=False))
            window = []

        if window:
            window.append(hour)
        elif hour.cost > 0:
            window = [hour]

        if len(window) >= SESSION_WINDOW_HOURS:
            sessions.append(_build_session(window, is_ongoing=False))
            window = []

    if window:
        is_ongoing = window[-1] is ordered[-1] and len(window) < SESSION_WINDOW_HOURS
        sessions.append(_build_session(window, is_ongoing=is_ongoing))

    sessions.reverse()
    return sessions


def _is_bridge(series: Sequence[HourlySummary], index: int, last_active: int) -> bool:
    """True if a quiet hour sits between activity on both sides."""
    after = any(
        series[j].cost > 0
        for j in range(index + 1, min(last_active, index + BRIDGE_LOOKAROUND_HOURS) + 1)
    )
    if not after:
        return False
    return any(
        series[j].cost > 0
        for j in range(max(0, index - BRIDGE_LOOKAROUND_HOURS), index)
    )


def current_session_cost(
    hourly: Sequence[HourlySummary],
    now: Optional[datetime] = None,
    live_events: Optional[Iterable[UsageEvent]] = None,
    tz: Optional[tzinfo] = None,
) -> float:
    """Running cost of the session in progress at ``now``.

    Computed from the full hourly series rather than from reconstructed
    sessions. The most recent hour with cost anchors the session; if it
    is a full window or more before the current hour the session has
    expired. Otherwise the walk goes back up to four more hours, taking
    hours with cost and quiet hours that bridge activity, and stops at
    the first true gap.

    Activity from ``live_events`` inside the current hour is added to an
    active session when the series does not already contain a slot for
    that hour.

    Args:
        hourly: Hourly summaries, chronologically ascending
        now: Reference instant (wall clock if omitted)
        live_events: Events that may not yet be folded into ``hourly``
        tz: Local time zone used for hour boundaries

    Returns:
        Running session cost, 0 when no session is active or it has expired
    """
    tz = tz or local_timezone()
    now = resolve_now(now, tz)
    current_hour = truncate_to_hour(now, tz)
    series = sorted(hourly, key=lambda h: h.hour)

    live_cost = 0.0
    folded = any(h.hour == hour_key(current_hour) for h in series)
    if live_events is not None and not folded:
        live_cost = sum(e.cost for e in get_current_hour_entries(live_events, now, tz))

    last_active = None
    for i in range(len(series) - 1, -1, -1):
        if series[i].cost > 0:
            last_active = i
            break

    if last_active is None:
        return 0.0

    if hours_between(series[last_active].hour_start, current_hour) >= SESSION_WINDOW_HOURS:
        return 0.0

    cost = series[last_active].cost
    lower = max(-1, last_active - SESSION_WINDOW_HOURS)
    for i in range(last_active - 1, lower, -1):
        hour = series[i]
        if hour.cost > 0 or _is_bridge(series, i, last_active):
            cost += hour.cost
        else:
            break

    return cost + live_cost
