"""Deterministic identifier generation for ActivityPub objects.

Every identifier here is a pure function of semantic input (location, time
slot, alert id). Regenerating the same logical post after a cache purge
therefore yields the same id, URL and content address.
"""

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timezone

# Slot hour for each scheduled forecast type (UTC clock value is ignored)
FORECAST_SLOT_HOURS = {
    "forecast-morning": "07",
    "forecast-noon": "12",
    "forecast-evening": "19",
}

ALERT_POST_TYPE = "alert"

# Used when an alert carries no id; cannot be produced by sanitizing a real id
# because sanitized ids never start with "~".
EMPTY_ALERT_TOKEN = "~none"

# Separates a rewritten alert id from the digest of the raw id
ALERT_DIGEST_SEPARATOR = "~"
ALERT_DIGEST_LENGTH = 10

_NON_ACTOR_CHARS = re.compile(r"[^a-z0-9]")
_NON_ID_CHARS = re.compile(r"[^a-z0-9-]")
_DASH_RUNS = re.compile(r"-{2,}")


@dataclass(frozen=True)
class ParsedPostId:
    """Components recovered from a post id."""
    location_id: str
    post_type: str
    alert_id: str | None = None
    date: str | None = None  # YYYYMMDD
    hour: str | None = None  # HH


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def sanitize_alert_id(alert_id: str) -> str:
    """Map an upstream alert id onto a URL-safe token.

    Ids already made of ``[a-z0-9-]`` are used as is. Anything else is
    lowercased with unsafe characters replaced by dashes, then suffixed with
    ``~`` and a digest of the raw id, so ids that differ only in case or
    punctuation keep distinct tokens.
    """
    cleaned = _NON_ID_CHARS.sub("-", alert_id.lower())
    if cleaned == alert_id:
        return cleaned
    digest = hashlib.sha256(alert_id.encode()).hexdigest()[:ALERT_DIGEST_LENGTH]
    return f"{cleaned}{ALERT_DIGEST_SEPARATOR}{digest}"


def post_id(
    location_id: str,
    slot_time: datetime,
    post_type: str,
    alert_id: str | None = None,
) -> str:
    """Generate the deterministic post id.

    Args:
        location_id: Location identifier (e.g. "newyork")
        slot_time: Time of the posting slot
        post_type: "forecast-morning", "forecast-noon", "forecast-evening"
            or "alert"
        alert_id: Upstream alert id, for alert posts

    Returns:
        ``<location>-alert-<alert>`` for alerts, otherwise
        ``<location>-<type>-<YYYYMMDD>-<HH>``
    """
    if post_type == ALERT_POST_TYPE:
        token = sanitize_alert_id(alert_id) if alert_id else EMPTY_ALERT_TOKEN
        return f"{location_id}-alert-{token}"

    slot = _as_utc(slot_time)
    hour = FORECAST_SLOT_HOURS.get(post_type, f"{slot.hour:02d}")
    return f"{location_id}-{post_type}-{slot.strftime('%Y%m%d')}-{hour}"


def create_activity_id(post_id: str) -> str:
    """Create activity id for a post (same post, same Create)."""
    return f"{post_id}-create"


def actor_id(location_name: str) -> str:
    """Normalize a location name into its actor id."""
    return _NON_ACTOR_CHARS.sub("", location_name.lower())


def collection_id(location_id: str, collection_type: str, page: int | None = None) -> str:
    """Collection id such as ``newyork-outbox`` or ``newyork-outbox-page2``."""
    base = f"{actor_id(location_id)}-{collection_type}"
    if page is not None:
        return f"{base}-page{page}"
    return base


def accept_activity_id(location_id: str, follow_id: str) -> str:
    """Accept id derived from the Follow it answers.

    Re-sending an Accept for the same Follow reuses the same id.
    """
    digest = hashlib.sha256(follow_id.encode()).hexdigest()[:16]
    return f"accept-{actor_id(location_id)}-{digest}"


def canonical_url(domain: str, kind: str, object_id: str) -> str:
    """Canonical URL of an object on this server."""
    if kind == "actor":
        return f"https://{domain}/locations/{object_id}"
    if kind == "post":
        return f"https://{domain}/posts/{object_id}"
    if kind == "activity":
        return f"https://{domain}/activities/{object_id}"
    if kind == "collection":
        return f"https://{domain}/collections/{object_id}"
    return f"https://{domain}/objects/{object_id}"


def sanitize_id(value: str) -> str:
    """Make an arbitrary string safe for use as a URL path segment."""
    cleaned = _DASH_RUNS.sub("-", _NON_ID_CHARS.sub("-", value.lower()))
    return cleaned.strip("-")


def parse_post_id(value: str) -> ParsedPostId | None:
    """Split a post id into its parts.

    Location ids never contain dashes (see ``actor_id``), so the first
    segment is always the location.
    """
    parts = value.split("-")
    if len(parts) < 3:
        return None

    if parts[1] == ALERT_POST_TYPE:
        return ParsedPostId(
            location_id=parts[0],
            post_type=ALERT_POST_TYPE,
            alert_id="-".join(parts[2:]),
        )

    if len(parts) != 5:
        return None

    date, hour = parts[3], parts[4]
    if not (date.isdigit() and len(date) == 8 and hour.isdigit() and len(hour) == 2):
        return None

    return ParsedPostId(
        location_id=parts[0],
        post_type=f"{parts[1]}-{parts[2]}",
        date=date,
        hour=hour,
    )


def slot_datetime(parsed: ParsedPostId) -> datetime | None:
    """Start of the slot a forecast post id refers to."""
    if parsed.date is None or parsed.hour is None:
        return None
    return datetime.strptime(f"{parsed.date}{parsed.hour}", "%Y%m%d%H").replace(
        tzinfo=timezone.utc
    )
