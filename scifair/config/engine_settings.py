"""
Engine Configuration

All tunable judging rules are loaded from environment variables (a .env file
is honoured through python-dotenv). Services receive an EngineSettings
instance instead of reading the environment themselves, so tests can pass
their own values.
"""
import json
import os
from datetime import time
from decimal import Decimal
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from scifair.orm.competition import Section

load_dotenv()


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return int(value)


def get_decimal_env(key: str, default: str) -> Decimal:
    return Decimal(os.getenv(key, default))


def get_time_env(key: str, default: str) -> time:
    """Parse an HH:MM value."""
    hours, minutes = os.getenv(key, default).split(":")
    return time(int(hours), int(minutes))


def get_point_table_env(key: str) -> Dict[int, int]:
    """
    Point table as JSON, e.g. POINT_TABLE='{"1": 4, "2": 3, "3": 2, "4": 1}'.
    Ranks missing from the table earn 0 points.
    """
    raw = os.getenv(key)
    if not raw:
        return dict(DEFAULT_POINT_TABLE)
    return {int(rank): int(points) for rank, points in json.loads(raw).items()}


DEFAULT_POINT_TABLE: Dict[int, int] = {1: 4, 2: 3, 3: 2, 4: 1}


class EngineSettings:
    """
    Judging engine configuration.

    point_table: category rank -> competition points (0 for any other rank)
    arbitration_threshold: regular-judge score gap that requires a coordinator
    top_band_size: projects promoted per category; ties inside it block publish
    min_regular_judges: completed regular assignments for a fully judged section
    min_regular_judges_with_coordinator: lower bound accepted when the
        coordinator has also completed the section
    session_minutes: section -> (minimum, maximum) dwell time of a judging session
    judging_hours: optional (start, end) window for starting sessions
    """

    def __init__(
        self,
        point_table: Optional[Dict[int, int]] = None,
        arbitration_threshold: Optional[Decimal] = None,
        top_band_size: Optional[int] = None,
        min_regular_judges: Optional[int] = None,
        min_regular_judges_with_coordinator: Optional[int] = None,
        session_minutes: Optional[Dict[Section, Tuple[int, int]]] = None,
        enforce_session_minimum: Optional[bool] = None,
        judging_hours: Optional[Tuple[time, time]] = None,
        enforce_judging_hours: Optional[bool] = None,
    ):
        self.point_table = point_table if point_table is not None else get_point_table_env("POINT_TABLE")
        self.arbitration_threshold = (
            Decimal(str(arbitration_threshold)) if arbitration_threshold is not None
            else get_decimal_env("ARBITRATION_THRESHOLD", "5")
        )
        self.top_band_size = top_band_size if top_band_size is not None else get_int_env("TOP_BAND_SIZE", 4)
        self.min_regular_judges = (
            min_regular_judges if min_regular_judges is not None
            else get_int_env("MIN_REGULAR_JUDGES", 2)
        )
        self.min_regular_judges_with_coordinator = (
            min_regular_judges_with_coordinator if min_regular_judges_with_coordinator is not None
            else get_int_env("MIN_REGULAR_JUDGES_WITH_COORDINATOR", 1)
        )
        self.session_minutes = session_minutes or {
            Section.PART_A: (
                get_int_env("MIN_TIME_PART_A_MINUTES", 4),
                get_int_env("MAX_TIME_PART_A_MINUTES", 7),
            ),
            Section.PART_BC: (
                get_int_env("MIN_TIME_PART_BC_MINUTES", 8),
                get_int_env("MAX_TIME_PART_BC_MINUTES", 15),
            ),
        }
        self.enforce_session_minimum = (
            enforce_session_minimum if enforce_session_minimum is not None
            else get_bool_env("ENFORCE_SESSION_MINIMUM", True)
        )
        self.judging_hours = judging_hours or (
            get_time_env("JUDGING_START_TIME", "08:00"),
            get_time_env("JUDGING_END_TIME", "17:00"),
        )
        self.enforce_judging_hours = (
            enforce_judging_hours if enforce_judging_hours is not None
            else get_bool_env("ENFORCE_JUDGING_HOURS", False)
        )

        if self.top_band_size < 1:
            raise ValueError("TOP_BAND_SIZE must be at least 1")
        if self.min_regular_judges_with_coordinator > self.min_regular_judges:
            raise ValueError("MIN_REGULAR_JUDGES_WITH_COORDINATOR cannot exceed MIN_REGULAR_JUDGES")
        for section, (low, high) in self.session_minutes.items():
            if low > high:
                raise ValueError(f"Minimum session time exceeds maximum for {section.value}")
        self._validate_point_table()

    def _validate_point_table(self) -> None:
        """Ranks start at 1, points are never negative and never grow with rank."""
        if any(rank < 1 for rank in self.point_table):
            raise ValueError("POINT_TABLE ranks must be 1 or greater")
        if any(points < 0 for points in self.point_table.values()):
            raise ValueError("POINT_TABLE points cannot be negative")
        previous = None
        for rank in range(1, max(self.point_table, default=0) + 1):
            points = self.point_table.get(rank, 0)
            if previous is not None and points > previous:
                raise ValueError(f"POINT_TABLE awards rank {rank} more points than rank {rank - 1}")
            previous = points

    def points_for_rank(self, rank: Optional[int]) -> int:
        if rank is None:
            return 0
        return self.point_table.get(rank, 0)

    def session_bounds(self, section: Section) -> Tuple[int, int]:
        return self.session_minutes[section]

    def to_dict(self) -> Dict:
        return {
            "point_table": {str(k): v for k, v in sorted(self.point_table.items())},
            "arbitration_threshold": str(self.arbitration_threshold),
            "top_band_size": self.top_band_size,
            "min_regular_judges": self.min_regular_judges,
            "min_regular_judges_with_coordinator": self.min_regular_judges_with_coordinator,
            "session_minutes": {s.value: list(v) for s, v in self.session_minutes.items()},
            "enforce_session_minimum": self.enforce_session_minimum,
            "judging_hours": [t.strftime("%H:%M") for t in self.judging_hours],
            "enforce_judging_hours": self.enforce_judging_hours,
        }


settings = EngineSettings()


def get_engine_settings() -> EngineSettings:
    """FastAPI dependency returning the process-wide settings."""
    return settings
