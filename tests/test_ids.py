"""Tests for deterministic identifier generation."""

from datetime import datetime, timedelta, timezone

from weather_federation.ids import (
    EMPTY_ALERT_TOKEN,
    accept_activity_id,
    actor_id,
    canonical_url,
    collection_id,
    create_activity_id,
    parse_post_id,
    post_id,
    sanitize_alert_id,
    sanitize_id,
    slot_datetime,
)

MORNING = datetime(2025, 8, 12, 7, 34, 12, tzinfo=timezone.utc)


class TestPostId:
    """Tests for post id generation."""

    def test_forecast_slot_rounding(self):
        """Test a forecast post id uses the slot date and hour."""
        assert post_id("newyork", MORNING, "forecast-morning") == "newyork-forecast-morning-20250812-07"

    def test_same_slot_same_id(self):
        """Test two times within a slot produce the same id."""
        later = MORNING + timedelta(minutes=20)
        assert post_id("newyork", MORNING, "forecast-morning") == post_id("newyork", later, "forecast-morning")

    def test_noon_and_evening_hours(self):
        """Test slot hours for noon and evening posts."""
        assert post_id("paris", MORNING, "forecast-noon").endswith("-20250812-12")
        assert post_id("paris", MORNING, "forecast-evening").endswith("-20250812-19")

    def test_naive_datetime_is_utc(self):
        """Test naive datetimes are treated as UTC."""
        naive = datetime(2025, 8, 12, 7, 5)
        assert post_id("paris", naive, "forecast-morning") == "paris-forecast-morning-20250812-07"

    def test_alert_id_ignores_time(self):
        """Test alert post ids depend only on location and alert id."""
        first = post_id("miami", MORNING, "alert", "NWS.Hurricane.1")
        second = post_id("miami", MORNING + timedelta(days=2), "alert", "NWS.Hurricane.1")
        assert first == second == f"miami-alert-{sanitize_alert_id('NWS.Hurricane.1')}"
        assert first.startswith("miami-alert-nws-hurricane-1~")

    def test_alert_without_id(self):
        """Test missing alert id maps to a reserved token."""
        assert post_id("miami", MORNING, "alert", "") == f"miami-alert-{EMPTY_ALERT_TOKEN}"
        assert post_id("miami", MORNING, "alert", None) == f"miami-alert-{EMPTY_ALERT_TOKEN}"


class TestSanitizers:
    """Tests for id sanitizers."""

    def test_sanitize_alert_id(self):
        """Test unsafe characters become dashes and a digest is appended."""
        token = sanitize_alert_id("urn:oid:2.49.0.1.840")
        assert token.startswith("urn-oid-2-49-0-1-840~")
        assert len(token) == len("urn-oid-2-49-0-1-840~") + 10

    def test_clean_alert_id_unchanged(self):
        """Test an id that is already URL-safe is used as is."""
        assert sanitize_alert_id("nws-heat-1") == "nws-heat-1"

    def test_alert_ids_do_not_collide(self):
        """Test ids differing only in case or punctuation give distinct post ids."""
        raw_ids = [
            "urn:oid:2.49.0.1",
            "urn-oid-2-49-0-1",
            "URN:OID:2.49.0.1",
            "urn.oid.2.49.0.1",
            "urn:oid:2-49-0-1",
            "A:B.C/D",
            "a-b-c-d",
            "A-B-C-D",
            "",
            "~none",
        ]
        ids = {post_id("paris", MORNING, "alert", raw) for raw in raw_ids}
        assert len(ids) == len(raw_ids)

    def test_alert_tokens_parse_back(self):
        """Test a digest-suffixed alert post id still parses."""
        parsed = parse_post_id(post_id("paris", MORNING, "alert", "URN:OID:2.49.0.1"))
        assert parsed.location_id == "paris"
        assert parsed.alert_id == sanitize_alert_id("URN:OID:2.49.0.1")

    def test_sanitize_id_collapses_dashes(self):
        """Test sanitize_id collapses runs and trims dashes."""
        assert sanitize_id("  Hello,  World! ") == "hello-world"

    def test_actor_id(self):
        """Test location names normalize to alphanumerics."""
        assert actor_id("New York") == "newyork"
        assert actor_id("São Paulo") == "sopaulo"
        assert actor_id("St. Louis") == "stlouis"


class TestDerivedIds:
    """Tests for activity and collection ids."""

    def test_create_activity_id(self):
        """Test Create id is derived from the post id."""
        assert create_activity_id("paris-alert-x") == "paris-alert-x-create"

    def test_accept_activity_id_deterministic(self):
        """Test the same Follow yields the same Accept id."""
        follow = "https://mastodon.social/activities/123"
        first = accept_activity_id("paris", follow)
        assert first == accept_activity_id("paris", follow)
        assert first != accept_activity_id("paris", follow + "4")
        assert first.startswith("accept-paris-")

    def test_collection_id(self):
        """Test collection ids with and without pages."""
        assert collection_id("New York", "outbox") == "newyork-outbox"
        assert collection_id("newyork", "outbox", page=2) == "newyork-outbox-page2"

    def test_canonical_url(self):
        """Test canonical URLs per object kind."""
        assert canonical_url("weather.gripe", "actor", "paris") == "https://weather.gripe/locations/paris"
        assert canonical_url("weather.gripe", "post", "p1") == "https://weather.gripe/posts/p1"
        assert canonical_url("weather.gripe", "activity", "a1") == "https://weather.gripe/activities/a1"
        assert canonical_url("weather.gripe", "collection", "c1") == "https://weather.gripe/collections/c1"
        assert canonical_url("weather.gripe", "other", "o1") == "https://weather.gripe/objects/o1"


class TestParsePostId:
    """Tests for post id parsing."""

    def test_parse_forecast(self):
        """Test parsing a forecast post id."""
        parsed = parse_post_id("newyork-forecast-morning-20250812-07")
        assert parsed.location_id == "newyork"
        assert parsed.post_type == "forecast-morning"
        assert parsed.date == "20250812"
        assert parsed.hour == "07"
        assert slot_datetime(parsed) == datetime(2025, 8, 12, 7, tzinfo=timezone.utc)

    def test_parse_alert(self):
        """Test parsing an alert post id keeps dashes in the alert part."""
        parsed = parse_post_id("miami-alert-nws-hurricane-1")
        assert parsed.post_type == "alert"
        assert parsed.alert_id == "nws-hurricane-1"
        assert slot_datetime(parsed) is None

    def test_parse_invalid(self):
        """Test malformed ids return None."""
        assert parse_post_id("nonsense") is None
        assert parse_post_id("paris-forecast-morning-2025-07") is None
