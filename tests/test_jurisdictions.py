"""Tests for jurisdiction rules and calling window arithmetic."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from campaign_dialer.services.jurisdictions import (
    DEFAULT_RULE_SET,
    JurisdictionRule,
    effective_window,
    infer_region,
    infer_timezone,
    is_within_hours,
    load_rule_set,
    next_allowed_time,
    normalize_phone,
)


class TestRegionInference:
    """Phone number to region and timezone."""

    def test_us_area_code_maps_to_state(self):
        """Test a New York area code resolves to NY."""
        assert infer_region("+12125550123") == ("US", "NY")

    def test_non_us_number_has_no_state(self):
        """Test international numbers resolve to their country only."""
        country, state = infer_region("+442071234567")

        assert country == "GB"
        assert state is None

    def test_unparseable_number(self):
        """Test garbage input yields no region."""
        assert infer_region("not a number") == (None, None)

    def test_timezone_from_state(self):
        """Test state zone is used for US numbers."""
        assert infer_timezone("+13105550123") == "America/Los_Angeles"

    def test_timezone_from_country(self):
        """Test country zone is used when no state applies."""
        assert infer_timezone("+442071234567") == "Europe/London"

    def test_explicit_timezone_preferred(self):
        """Test a valid explicit zone wins over inference."""
        assert infer_timezone("+12125550123", "America/Denver") == "America/Denver"

    def test_unknown_explicit_timezone_falls_back(self):
        """Test an invalid explicit zone is ignored."""
        assert infer_timezone("+12125550123", "Mars/Olympus") == "America/New_York"

    def test_default_timezone(self):
        """Test the final fallback zone."""
        assert infer_timezone("garbage") == "America/New_York"

    def test_normalize_phone(self):
        """Test national formatting is normalized to E.164."""
        assert normalize_phone("(212) 555-0123") == "+12125550123"
        assert normalize_phone("nonsense") == "nonsense"


class TestCallingWindow:
    """Next permitted calling time."""

    def test_inside_window(self):
        """Test no wait inside the window."""
        now = datetime(2024, 3, 13, 15, 0, tzinfo=timezone.utc)  # 11:00 EDT

        assert next_allowed_time(now, "America/New_York", 8, 21) is None
        assert is_within_hours(now, "America/New_York", 8, 21) is True

    def test_before_window_same_day(self):
        """Test early calls wait for today's start."""
        now = datetime(2024, 3, 13, 11, 0, tzinfo=timezone.utc)  # 07:00 EDT

        allowed = next_allowed_time(now, "America/New_York", 8, 21)

        assert allowed == datetime(2024, 3, 13, 12, 0, tzinfo=timezone.utc)

    def test_end_hour_is_exclusive(self):
        """Test the end hour itself is outside the window."""
        now = datetime(2024, 3, 14, 1, 0, tzinfo=timezone.utc)  # 21:00 EDT

        allowed = next_allowed_time(now, "America/New_York", 8, 21)

        assert allowed == datetime(2024, 3, 14, 12, 0, tzinfo=timezone.utc)

    def test_restricted_sunday_skips_to_monday(self):
        """Test a restricted Sunday rolls over to Monday's start."""
        now = datetime(2024, 3, 16, 23, 0, tzinfo=timezone.utc)  # Saturday 19:00 EDT, after 8-18

        allowed = next_allowed_time(now, "America/New_York", 8, 18, sunday_calling=False)

        assert allowed == datetime(2024, 3, 18, 12, 0, tzinfo=timezone.utc)

    def test_unknown_zone_uses_default(self):
        """Test an unknown zone falls back to New York time."""
        now = datetime(2024, 3, 13, 15, 0, tzinfo=timezone.utc)

        assert next_allowed_time(now, "Nowhere/Void", 8, 21) is None

    def test_effective_window_intersects_floor(self):
        """Test the window is the intersection of floor and rule."""
        rule = JurisdictionRule(start_hour=7, end_hour=20)

        assert effective_window(rule, 8, 21) == (8, 20)


class TestRuleSets:
    """Versioned rule tables."""

    def test_builtin_rules(self):
        """Test the built-in table covers the restricted states."""
        assert DEFAULT_RULE_SET.rule_for("ca").sunday_calling is False
        assert DEFAULT_RULE_SET.rule_for("TX").max_calls_per_day == 5
        assert DEFAULT_RULE_SET.rule_for("WA") == DEFAULT_RULE_SET.default
        assert DEFAULT_RULE_SET.has_rule(None) is False

    def test_load_rule_set_from_yaml(self, tmp_path):
        """Test loading a replacement table from YAML."""
        path = tmp_path / "rules.yaml"
        path.write_text(
            'version: "2025-06"\n'
            "default: {sunday_calling: true, start_hour: 9, end_hour: 20}\n"
            "rules:\n"
            "  WA: {sunday_calling: false, start_hour: 10, end_hour: 18}\n",
            encoding="utf-8",
        )

        rules = load_rule_set(path)

        assert rules.version == "2025-06"
        assert rules.rule_for("WA").start_hour == 10
        assert rules.rule_for("NY").start_hour == 9

    def test_invalid_rule_file(self, tmp_path):
        """Test a malformed table is rejected."""
        path = tmp_path / "rules.yaml"
        path.write_text("rules: {}\n", encoding="utf-8")

        with pytest.raises(ValidationError):
            load_rule_set(path)
