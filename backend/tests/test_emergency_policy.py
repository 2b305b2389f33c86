"""
Dispatch policy tests — priority, search radius, scoring, validation and
display helpers. Pure functions, no database.
"""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from lifeline.models.emergency import EmergencyType, EmergencyPriority
from lifeline.services.emergency_policy import (
    MAX_SEARCH_RADIUS_M,
    apply_default_settings,
    bounding_boxes,
    calculate_response_times,
    calculate_search_radius,
    determine_priority,
    draft_from_template,
    emergency_summary,
    escalate_priority,
    format_location,
    generate_emergency_code,
    has_timed_out,
    haversine_distance,
    is_location_accurate,
    requires_immediate_attention,
    severity_score,
    validate_emergency_draft,
    validate_resolution,
)


def _valid_draft(**overrides):
    draft = {
        "type": "fire",
        "title": "Kitchen fire",
        "description": "Smoke coming from second floor",
        "location": {"coordinates": [34.46, 31.50], "address": "Al-Jalaa St"},
    }
    draft.update(overrides)
    return draft


class TestPriority:
    """Tests for determine_priority / escalate_priority"""

    @pytest.mark.parametrize("etype,expected", [
        ("medical", EmergencyPriority.CRITICAL),
        ("accident", EmergencyPriority.CRITICAL),
        ("fire", EmergencyPriority.CRITICAL),
        ("natural_disaster", EmergencyPriority.CRITICAL),
        ("crime", EmergencyPriority.HIGH),
        ("other", EmergencyPriority.MEDIUM),
    ])
    def test_base_priority_by_type(self, etype, expected):
        assert determine_priority(etype) == expected

    def test_escalation_ladder(self):
        assert escalate_priority(EmergencyPriority.LOW) == EmergencyPriority.MEDIUM
        assert escalate_priority("medium") == EmergencyPriority.HIGH
        assert escalate_priority(EmergencyPriority.HIGH) == EmergencyPriority.CRITICAL
        assert escalate_priority(EmergencyPriority.CRITICAL) == EmergencyPriority.CRITICAL

    def test_unknown_priority_rejected(self):
        with pytest.raises(ValueError):
            escalate_priority("urgent")

    def test_each_risk_flag_escalates_once(self):
        assert determine_priority("other", {"is_reoccurring": True}) == EmergencyPriority.HIGH
        both = {"is_reoccurring": True, "time_sensitive": True}
        assert determine_priority("other", both) == EmergencyPriority.CRITICAL

    def test_escalation_caps_at_critical(self):
        both = {"is_reoccurring": True, "time_sensitive": True}
        assert determine_priority("crime", both) == EmergencyPriority.CRITICAL


class TestSearchRadius:
    """Tests for calculate_search_radius"""

    def test_medical_at_start(self):
        assert calculate_search_radius("medical", 0) == 7500

    def test_other_at_start(self):
        assert calculate_search_radius(EmergencyType.OTHER, 0) == 5000

    def test_accident_and_crime_factors(self):
        assert calculate_search_radius("accident") == pytest.approx(7000)
        assert calculate_search_radius("crime") == pytest.approx(6000)

    def test_widens_ten_percent_per_minute(self):
        assert calculate_search_radius("other", 10) == pytest.approx(10_000)

    def test_time_multiplier_caps_at_three(self):
        assert calculate_search_radius("other", 20) == pytest.approx(15_000)
        assert calculate_search_radius("other", 600) == pytest.approx(15_000)

    def test_never_exceeds_maximum(self):
        for etype in EmergencyType:
            for minutes in (0, 5, 30, 10_000):
                assert calculate_search_radius(etype, minutes) <= MAX_SEARCH_RADIUS_M

    def test_non_decreasing_in_time(self):
        radii = [calculate_search_radius("fire", m) for m in range(0, 40)]
        assert radii == sorted(radii)


class TestGeometry:

    def test_haversine_zero_distance(self):
        assert haversine_distance((34.46, 31.50), (34.46, 31.50)) == 0

    def test_haversine_one_degree_latitude(self):
        assert haversine_distance((0, 0), (0, 1)) == pytest.approx(111_195, rel=1e-3)

    def test_bounding_box_contains_circle(self):
        point = (34.46, 31.50)
        [(min_lon, min_lat, max_lon, max_lat)] = bounding_boxes(point, 5000)
        assert min_lon < point[0] < max_lon
        assert min_lat < point[1] < max_lat
        assert haversine_distance(point, (point[0], max_lat)) == pytest.approx(5000, rel=1e-3)

    def test_bounding_box_splits_at_antimeridian(self):
        boxes = bounding_boxes((179.99, -17.0), 5000)
        assert len(boxes) == 2
        east, west = boxes
        assert east[0] < 179.99 and east[2] == 180.0
        assert west[0] == -180.0 and -180.0 < west[2] < -179.9
        # a point 1.5 km across the line falls in the western box
        assert west[0] <= -179.995 <= west[2]

    def test_bounding_box_near_pole_spans_all_longitudes(self):
        [(min_lon, _, max_lon, max_lat)] = bounding_boxes((10.0, 89.99), 5000)
        assert (min_lon, max_lon, max_lat) == (-180.0, 180.0, 90.0)

    def test_location_accuracy_threshold(self):
        assert is_location_accurate(100)
        assert not is_location_accurate(150)
        assert not is_location_accurate(None)


class TestScoring:

    def _emergency(self, priority, etype, created_at):
        return SimpleNamespace(priority=priority, type=etype, created_at=created_at, sos_triggered_at=created_at)

    def test_fresh_critical_medical_is_clamped(self):
        now = datetime(2026, 1, 1, 12, 0)
        e = self._emergency(EmergencyPriority.CRITICAL, EmergencyType.MEDICAL, now)
        assert severity_score(e, now) == 100

    def test_recency_bonus_decays(self):
        now = datetime(2026, 1, 1, 12, 0)
        fresh = self._emergency("medium", "crime", now)
        old = self._emergency("medium", "crime", now - timedelta(hours=5))
        assert severity_score(fresh, now) == pytest.approx(75)
        assert severity_score(old, now) == pytest.approx(70)

    def test_bonus_never_negative(self):
        now = datetime(2026, 1, 1, 12, 0)
        e = self._emergency("low", "other", now - timedelta(days=3))
        assert severity_score(e, now) == 25

    def test_immediate_attention(self):
        assert requires_immediate_attention("critical", "other")
        assert requires_immediate_attention("low", "crime")
        assert not requires_immediate_attention("medium", "natural_disaster")
        assert not requires_immediate_attention("low", "other")


class TestTiming:

    def test_has_timed_out(self):
        created = datetime(2026, 1, 1, 12, 0)
        assert not has_timed_out(created, 30, created + timedelta(minutes=30))
        assert has_timed_out(created, 30, created + timedelta(minutes=31))

    def test_response_times_partial(self):
        start = datetime(2026, 1, 1, 12, 0)
        e = SimpleNamespace(
            sos_triggered_at=start,
            first_helper_assigned_at=start + timedelta(seconds=2),
            first_helper_accepted_at=start + timedelta(minutes=1),
            first_helper_arrived_at=None,
            resolved_at=None,
        )
        times = calculate_response_times(e)
        assert times["time_to_first_assignment_ms"] == 2000
        assert times["time_to_first_acceptance_ms"] == 60_000
        assert times["time_to_first_arrival_ms"] is None
        assert times["total_response_time_ms"] is None

    def test_emergency_code_format(self):
        code = generate_emergency_code("0b7c6f1e-0000-4000-8000-00000000ab3f", now=0)
        assert code == "EM-0-AB3F"
        assert generate_emergency_code("x-1234", now=1_700_000_000).startswith("EM-")


class TestDraftValidation:
    """Tests for validate_emergency_draft"""

    def test_valid_draft_has_no_errors(self):
        assert validate_emergency_draft(_valid_draft()) == []

    def test_reports_every_problem_at_once(self):
        errors = validate_emergency_draft({"type": "alien", "title": "", "description": " "})
        fields = {e["field"] for e in errors}
        assert fields == {"type", "title", "description", "location"}

    def test_title_length_limit(self):
        errors = validate_emergency_draft(_valid_draft(title="x" * 101))
        assert [e["field"] for e in errors] == ["title"]
        assert validate_emergency_draft(_valid_draft(title="x" * 100)) == []

    def test_description_length_limit(self):
        errors = validate_emergency_draft(_valid_draft(description="y" * 501))
        assert [e["field"] for e in errors] == ["description"]

    def test_coordinates_out_of_range(self):
        draft = _valid_draft(location={"coordinates": [200, 31.5], "address": "Somewhere"})
        assert validate_emergency_draft(draft) == [
            {"field": "location", "message": "Invalid location coordinates"},
        ]

    def test_missing_address(self):
        draft = _valid_draft(location={"coordinates": [34.4, 31.5]})
        assert validate_emergency_draft(draft)[0]["message"] == "Location information is required"

    def test_invalid_priority(self):
        errors = validate_emergency_draft(_valid_draft(priority="urgent"))
        assert [e["field"] for e in errors] == ["priority"]

    @pytest.mark.parametrize("overrides,field", [
        ({"title": 123}, "title"),
        ({"description": ["smoke"]}, "description"),
        ({"location": {"coordinates": 5, "address": "Al-Jalaa St"}}, "location"),
        ({"location": {"coordinates": "34.46,31.50", "address": "Al-Jalaa St"}}, "location"),
        ({"location": {"coordinates": [34.46, 31.50], "address": 42}}, "location.address"),
        ({"location": {"coordinates": [34.46, 31.50], "address": "Al-Jalaa St", "city": 7}}, "location.city"),
        ({"location": {"coordinates": [34.46, 31.50], "address": "Al-Jalaa St", "accuracy": "5m"}}, "location.accuracy"),
        ({"location": "Al-Jalaa St"}, "location"),
        ({"type": ["fire"]}, "type"),
        ({"settings": {"max_helpers": "three"}}, "settings.max_helpers"),
        ({"settings": {"auto_assign_helpers": "yes"}}, "settings.auto_assign_helpers"),
        ({"context": "urgent"}, "context"),
        ({"tags": "a,b"}, "tags"),
    ])
    def test_wrong_types_are_violations(self, overrides, field):
        errors = validate_emergency_draft(_valid_draft(**overrides))
        assert [e["field"] for e in errors] == [field]


class TestResolutionValidation:

    def test_defaults_are_valid(self):
        assert validate_resolution({}) == []

    @pytest.mark.parametrize("rating", [0, 6, 2.5, True])
    def test_rating_out_of_range(self, rating):
        assert validate_resolution({"rating": rating})[0]["field"] == "rating"

    def test_unknown_resolution_type(self):
        assert validate_resolution({"resolution_type": "gave_up"})[0]["field"] == "resolution_type"


class TestTemplatesAndDisplay:

    def test_template_fills_missing_fields(self):
        draft = draft_from_template("fire", {"location": {"coordinates": [1, 2], "address": "A"}})
        assert draft["title"] == "Fire Emergency"
        assert draft["priority"] == "critical"
        assert draft["location"]["address"] == "A"

    def test_template_keeps_custom_title(self):
        assert draft_from_template("crime", {"title": "Break-in"})["title"] == "Break-in"

    def test_unknown_template(self):
        with pytest.raises(ValueError):
            draft_from_template("other")

    def test_default_settings_merge(self):
        merged = apply_default_settings({"max_helpers": 5, "unknown": 1})
        assert merged["max_helpers"] == 5
        assert merged["timeout_minutes"] == 30
        assert "unknown" not in merged

    def test_summary(self):
        e = SimpleNamespace(title="Fire", description="Smoke", address="Main St", city="Gaza", state=None, country="PS")
        assert format_location(e) == "Main St, Gaza, PS"
        assert emergency_summary(e) == "Fire: Smoke at Main St, Gaza, PS"
