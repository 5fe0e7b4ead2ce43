"""
Data models for the usage engine.

Defines usage events, the bucketed summaries derived from them and the
bundle pushed to subscribers.
"""

from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from usage_meter.core.token_counter import TokenCounts, ZERO_TOKENS

UNKNOWN_PROJECT = "Unknown"

# Hour keys are UTC and fixed width, so string order is chronological order
HOUR_KEY_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one unit of recorded work.

    Events are never modified after parsing. The only change an event
    can undergo is removal, when its source file is deleted or re-parsed.
    """
    timestamp: str
    tokens: TokenCounts
    cost: float
    project: str = UNKNOWN_PROJECT
    session: str = ""
    source_path: str = ""

    def __post_init__(self):
        """Validate required fields."""
        if not self.timestamp:
            raise ValueError("timestamp is required")
        if self.cost < 0:
            raise ValueError("cost cannot be negative")


@dataclass(frozen=True)
class DailySummary:
    """Usage rolled up to one local calendar date."""
    date: str
    tokens: TokenCounts
    cost: float
    entry_count: int
    percent_change: Optional[float] = None


@dataclass(frozen=True)
class SessionSummary:
    """Usage rolled up to one (project, session) pair."""
    project: str
    session: str
    tokens: TokenCounts
    cost: float
    start_time: str
    end_time: str
    entry_count: int


@dataclass(frozen=True)
class ProjectSummary:
    """Usage rolled up to one project."""
    project: str
    tokens: TokenCounts
    cost: float
    percentage: float
    sessions: int


@dataclass(frozen=True)
class HourlySummary:
    """Usage rolled up to one hour slot.

    ``hour`` is the UTC key of the hour start; ``hour_label`` is the
    local-time display label (e.g. "10 AM").
    """
    hour: str
    hour_label: str
    tokens: TokenCounts
    cost: float
    entry_count: int

    @property
    def hour_start(self) -> datetime:
        """Aware datetime for the start of this hour."""
        return datetime.strptime(self.hour, HOUR_KEY_FORMAT).replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class TokenTotals:
    """Summed tokens and cost over a period such as a week or month."""
    tokens: TokenCounts = ZERO_TOKENS
    total_cost: float = 0.0


@dataclass(frozen=True)
class Session:
    """A run of up to five hourly buckets of continuous activity.

    Derived from an hourly series on demand and never persisted.
    """
    start_hour: str
    end_hour: str
    hours: List[HourlySummary]
    total_cost: float
    is_ongoing: bool = False


@dataclass(frozen=True)
class UsageData:
    """Full summary bundle consumed by the display layer."""
    daily: List[DailySummary]
    sessions: List[SessionSummary]
    projects: List[ProjectSummary]
    hourly: List[HourlySummary]
    today_hourly: List[HourlySummary]
    today: Optional[DailySummary]
    this_week: TokenTotals
    this_month: TokenTotals
    reference_date: Optional[str] = None
    reference_date_is_fallback: bool = False


class ChangeKind(Enum):
    """Kinds of file-system notification."""
    ADDED = "added"
    CHANGED = "changed"
    REMOVED = "removed"


@dataclass(frozen=True)
class FileChangeEvent:
    """A single notification from the file watcher."""
    kind: ChangeKind
    path: str
    timestamp: float = 0.0


@dataclass(frozen=True)
class DataUpdate:
    """Payload broadcast to subscribers after aggregation."""
    kind: str  # "full" or "incremental"
    data: UsageData
    timestamp: float


def usage_data_to_dict(data: UsageData) -> Dict[str, Any]:
    """Convert a bundle into plain JSON-compatible types."""
    return asdict(data)


def _tokens_from_dict(raw: Dict[str, Any]) -> TokenCounts:
    return TokenCounts(**raw)


def _hourly_from_dict(raw: Dict[str, Any]) -> HourlySummary:
    return HourlySummary(
        hour=raw["hour"],
        hour_label=raw["hour_label"],
        tokens=_tokens_from_dict(raw["tokens"]),
        cost=raw["cost"],
        entry_count=raw["entry_count"],
    )


def _daily_from_dict(raw: Dict[str, Any]) -> DailySummary:
    return DailySummary(
        date=raw["date"],
        tokens=_tokens_from_dict(raw["tokens"]),
        cost=raw["cost"],
        entry_count=raw["entry_count"],
        percent_change=raw.get("percent_change"),
    )


def _totals_from_dict(raw: Dict[str, Any]) -> TokenTotals:
    return TokenTotals(tokens=_tokens_from_dict(raw["tokens"]), total_cost=raw["total_cost"])


def usage_data_from_dict(raw: Dict[str, Any]) -> UsageData:
    """Rebuild a bundle from the output of :func:`usage_data_to_dict`.

    Raises:
        KeyError, TypeError, ValueError: If the payload is not a valid bundle
    """
    today = raw.get("today")
    return UsageData(
        daily=[_daily_from_dict(d) for d in raw["daily"]],
        sessions=[
            SessionSummary(
                project=s["project"],
                session=s["session"],
                tokens=_tokens_from_dict(s["tokens"]),
                cost=s["cost"],
                start_time=s["start_time"],
                end_time=s["end_time"],
                entry_count=s["entry_count"],
            )
            for s in raw["sessions"]
        ],
        projects=[
            ProjectSummary(
                project=p["project"],
                tokens=_tokens_from_dict(p["tokens"]),
                cost=p["cost"],
                percentage=p["percentage"],
                sessions=p["sessions"],
            )
            for p in raw["projects"]
        ],
        hourly=[_hourly_from_dict(h) for h in raw["hourly"]],
        today_hourly=[_hourly_from_dict(h) for h in raw["today_hourly"]],
        today=_daily_from_dict(today) if today else None,
        this_week=_totals_from_dict(raw["this_week"]),
        this_month=_totals_from_dict(raw["this_month"]),
        reference_date=raw.get("reference_date"),
        reference_date_is_fallback=bool(raw.get("reference_date_is_fallback", False)),
    )


def empty_usage_data(reference_date: Optional[date] = None) -> UsageData:
    """Bundle with no data, used before the first aggregation completes."""
    return UsageData(
        daily=[],
        sessions=[],
        projects=[],
        hourly=[],
        today_hourly=[],
        today=None,
        this_week=TokenTotals(),
        this_month=TokenTotals(),
        reference_date=reference_date.isoformat() if reference_date else None,
    )
