"""
Engine settings and shared vocabulary tests.
"""
from datetime import time
from decimal import Decimal

import pytest

from scifair.config.engine_settings import EngineSettings
from scifair.core.geo_scope import GeoScope
from scifair.orm import CompetitionLevel, Section

ENV_KEYS = [
    "POINT_TABLE", "ARBITRATION_THRESHOLD", "TOP_BAND_SIZE", "MIN_REGULAR_JUDGES",
    "MIN_REGULAR_JUDGES_WITH_COORDINATOR", "MIN_TIME_PART_A_MINUTES", "MAX_TIME_PART_A_MINUTES",
    "MIN_TIME_PART_BC_MINUTES", "MAX_TIME_PART_BC_MINUTES", "ENFORCE_SESSION_MINIMUM",
    "JUDGING_START_TIME", "JUDGING_END_TIME", "ENFORCE_JUDGING_HOURS",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


# =============================================================================
# EngineSettings
# =============================================================================

class TestEngineSettings:

    def test_defaults(self, clean_env):
        settings = EngineSettings()

        assert settings.point_table == {1: 4, 2: 3, 3: 2, 4: 1}
        assert settings.arbitration_threshold == Decimal("5")
        assert settings.top_band_size == 4
        assert settings.min_regular_judges == 2
        assert settings.min_regular_judges_with_coordinator == 1
        assert settings.session_bounds(Section.PART_A) == (4, 7)
        assert settings.session_bounds(Section.PART_BC) == (8, 15)
        assert settings.enforce_session_minimum is True
        assert settings.judging_hours == (time(8, 0), time(17, 0))
        assert settings.enforce_judging_hours is False

    def test_environment_overrides(self, clean_env):
        clean_env.setenv("POINT_TABLE", '{"1": 10, "2": 5}')
        clean_env.setenv("TOP_BAND_SIZE", "2")
        clean_env.setenv("ARBITRATION_THRESHOLD", "7.5")
        clean_env.setenv("ENFORCE_JUDGING_HOURS", "yes")

        settings = EngineSettings()

        assert settings.point_table == {1: 10, 2: 5}
        assert settings.top_band_size == 2
        assert settings.arbitration_threshold == Decimal("7.5")
        assert settings.enforce_judging_hours is True

    def test_points_for_rank(self, settings):
        assert settings.points_for_rank(1) == 4
        assert settings.points_for_rank(4) == 1
        assert settings.points_for_rank(5) == 0
        assert settings.points_for_rank(None) == 0

    def test_rejects_empty_top_band(self, clean_env):
        with pytest.raises(ValueError):
            EngineSettings(top_band_size=0)

    def test_rejects_fallback_above_minimum(self, clean_env):
        with pytest.raises(ValueError):
            EngineSettings(min_regular_judges=2, min_regular_judges_with_coordinator=3)

    def test_rejects_inverted_session_window(self, clean_env):
        with pytest.raises(ValueError):
            EngineSettings(session_minutes={Section.PART_A: (9, 7), Section.PART_BC: (8, 15)})

    @pytest.mark.parametrize("table", [
        {1: 4, 2: -1},
        {0: 5, 1: 4},
        {1: 1, 2: 4},
        {1: 4, 3: 2},
    ])
    def test_rejects_malformed_point_table(self, clean_env, table):
        with pytest.raises(ValueError):
            EngineSettings(point_table=table)

    def test_rejects_malformed_point_table_from_environment(self, clean_env):
        clean_env.setenv("POINT_TABLE", '{"1": 2, "2": 3}')

        with pytest.raises(ValueError, match="rank 2 more points than rank 1"):
            EngineSettings()

    def test_accepts_flat_and_empty_tables(self, clean_env):
        assert EngineSettings(point_table={1: 2, 2: 2, 3: 0}).points_for_rank(2) == 2
        assert EngineSettings(point_table={}).points_for_rank(1) == 0

    def test_to_dict(self, settings):
        data = settings.to_dict()

        assert data["point_table"] == {"1": 4, "2": 3, "3": 2, "4": 1}
        assert data["session_minutes"]["Part A"] == [4, 7]


# =============================================================================
# Levels and scopes
# =============================================================================

class TestCompetitionLevel:

    def test_promotion_order(self):
        assert CompetitionLevel.SUB_COUNTY.next_level() == CompetitionLevel.COUNTY
        assert CompetitionLevel.REGIONAL.next_level() == CompetitionLevel.NATIONAL
        assert CompetitionLevel.NATIONAL.next_level() is None
        assert CompetitionLevel.NATIONAL.is_terminal
        assert CompetitionLevel.COUNTY.previous_level() == CompetitionLevel.SUB_COUNTY

    def test_levels_compare_by_order(self):
        assert CompetitionLevel.SUB_COUNTY < CompetitionLevel.COUNTY < CompetitionLevel.NATIONAL
        assert sorted([CompetitionLevel.NATIONAL, CompetitionLevel.SUB_COUNTY])[0] == CompetitionLevel.SUB_COUNTY


class TestGeoScope:

    def test_national_covers_everything(self):
        assert GeoScope().covers(GeoScope("Rift Valley", "Nakuru", "Naivasha"))
        assert not GeoScope("Rift Valley", "Nakuru").covers(GeoScope())

    def test_county_covers_its_sub_counties(self):
        county = GeoScope("Rift Valley", "Nakuru")

        assert county.covers(GeoScope("Rift Valley", "Nakuru", "Naivasha"))
        assert not county.covers(GeoScope("Rift Valley", "Kericho", "Belgut"))

    def test_overlaps(self):
        assert GeoScope("Rift Valley").overlaps(GeoScope(county="Nakuru"))
        assert not GeoScope(county="Nakuru").overlaps(GeoScope(county="Kericho"))

    def test_key_and_label(self):
        scope = GeoScope("Rift Valley", "Nakuru")

        assert scope.key() == "Rift Valley|Nakuru|*"
        assert scope.label == "Nakuru county"
        assert GeoScope().label == "national"
