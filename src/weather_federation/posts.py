"""Builders for weather Notes and the activities that carry them.

Forecast and alert data arrive as opaque value objects from the weather
layer; only the fields used for posting are modelled here.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .activitypub_types import (
    AS_PUBLIC,
    Activity,
    ActivityType,
    JsonDict,
    Note,
    ObjectType,
    format_published,
)
from .ids import (
    ALERT_POST_TYPE,
    FORECAST_SLOT_HOURS,
    accept_activity_id,
    canonical_url,
    create_activity_id,
    post_id,
)

FORECAST_POST_TYPES = tuple(FORECAST_SLOT_HOURS)
SENSITIVE_SEVERITIES = ("Extreme", "Severe")
DEFAULT_HASHTAGS = ("weather",)
ALERT_HASHTAGS = ("weather", "alert")
NWS_ALERT_URL = "https://api.weather.gov/alerts/{alert_id}"

_SLOT_LABELS = {
    "forecast-morning": "Good morning",
    "forecast-noon": "Midday update",
    "forecast-evening": "Evening outlook",
}


def _parse_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        moment = value
    else:
        moment = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


@dataclass(frozen=True)
class Alert:
    """Weather alert as supplied by the weather layer."""
    id: str
    event: str
    severity: str = "Unknown"
    description: str = ""
    headline: str = ""
    urgency: str = ""
    effective: datetime | None = None
    expires: datetime | None = None
    web: str = ""

    @classmethod
    def from_dict(cls, data: JsonDict) -> "Alert":
        """Build from an upstream alert dict.

        Accepts ``effective`` or ``onset`` for the start and ``expires`` or
        ``ends`` for the end, as different providers use either.
        """
        return cls(
            id=str(data.get("id") or ""),
            event=data.get("event") or "Weather Alert",
            severity=data.get("severity") or "Unknown",
            description=data.get("description") or "",
            headline=data.get("headline") or "",
            urgency=data.get("urgency") or "",
            effective=_parse_time(data.get("effective") or data.get("onset")),
            expires=_parse_time(data.get("expires") or data.get("ends")),
            web=data.get("web") or "",
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        """True once the alert's end time has passed."""
        if self.expires is None:
            return False
        return self.expires <= (now or datetime.now(timezone.utc))


@dataclass(frozen=True)
class Forecast:
    """Forecast summary as supplied by the weather layer."""
    condition: str
    temperature: float | None = None
    high: float | None = None
    low: float | None = None
    unit: str = "F"
    summary: str = ""

    @classmethod
    def from_dict(cls, data: JsonDict) -> "Forecast":
        """Build from an upstream forecast dict."""
        return cls(
            condition=data.get("condition") or "",
            temperature=data.get("temperature"),
            high=data.get("high"),
            low=data.get("low"),
            unit=data.get("unit") or "F",
            summary=data.get("summary") or "",
        )


def format_forecast_content(forecast: Forecast, location_name: str, post_type: str) -> str:
    """Render a forecast as post text."""
    label = _SLOT_LABELS.get(post_type, "Weather update")
    parts = [f"{label}, {location_name}!"]

    if forecast.condition:
        parts.append(f"{forecast.condition}.")
    if forecast.temperature is not None:
        parts.append(f"Currently {round(forecast.temperature)}°{forecast.unit}.")
    if forecast.high is not None and forecast.low is not None:
        parts.append(
            f"High {round(forecast.high)}°{forecast.unit}, low {round(forecast.low)}°{forecast.unit}."
        )
    if forecast.summary:
        parts.append(forecast.summary)

    return " ".join(parts)


def alert_emoji(severity_or_event: str) -> str:
    """Emoji matching an alert's severity or event name."""
    text = (severity_or_event or "").lower()

    if "tornado" in text:
        return "🌪️"
    if "hurricane" in text or "typhoon" in text:
        return "🌀"
    if "flood" in text:
        return "🌊"
    if "fire" in text:
        return "🔥"
    if "blizzard" in text or "snow" in text:
        return "❄️"
    if "thunder" in text or "storm" in text:
        return "⛈️"
    if "extreme" in text or "severe" in text:
        return "🚨"
    if "watch" in text:
        return "👁️"
    return "⚠️"


_ARTICLE_EXCEPTIONS = {
    "hour": "an",
    "honor": "an",
    "honest": "an",
    "heir": "an",
    "one": "a",
    "once": "a",
    "unicorn": "a",
    "uniform": "a",
    "university": "a",
    "european": "a",
}


def indefinite_article(word: str) -> str:
    """'a' or 'an' for ``word``."""
    if not word:
        return "a"
    lowered = word.lower()
    for prefix, article in _ARTICLE_EXCEPTIONS.items():
        if lowered.startswith(prefix):
            return article
    return "an" if lowered[0] in "aeiou" else "a"


def is_alert_severe(alert: Alert) -> bool:
    """Keyword check used to decide whether an alert is worth posting loudly."""
    keywords = (
        "extreme", "severe", "tornado", "hurricane", "typhoon",
        "blizzard", "emergency", "danger", "evacuation",
    )
    text = f"{alert.severity} {alert.event} {alert.urgency}".lower()
    return any(k in text for k in keywords)


def format_alert_content(alert: Alert, location_name: str) -> str:
    """Render an alert as post text."""
    emoji = alert_emoji(alert.severity if alert.severity != "Unknown" else alert.event)
    content = (
        f"{emoji} {location_name} is now under "
        f"{indefinite_article(alert.event)} {alert.event}."
    )

    if alert.headline:
        content += f" {alert.headline}"

    # Long NWS descriptions go in the attachment only
    if alert.description and len(alert.description) < 200:
        content += f"\n\n{alert.description}"

    return content


def _hashtags(domain: str, tags: tuple[str, ...] | list[str]) -> tuple[JsonDict, ...]:
    return tuple(
        {
            "type": "Hashtag",
            "href": f"https://{domain}/tags/{tag.lstrip('#')}",
            "name": f"#{tag.lstrip('#')}",
        }
        for tag in tags
    )


def build_forecast_post(
    location_id: str,
    post_time: datetime,
    post_type: str,
    content: str,
    domain: str,
    hashtags: tuple[str, ...] | list[str] = DEFAULT_HASHTAGS,
) -> Note:
    """Create a forecast Note.

    Args:
        location_id: Location identifier
        post_time: When the post is being made
        post_type: "forecast-morning", "forecast-noon" or "forecast-evening"
        content: Formatted weather content
        domain: Server domain
        hashtags: Hashtags without '#'

    Returns:
        Note whose id depends only on location, slot date and post type
    """
    pid = post_id(location_id, post_time, post_type)
    post_url = canonical_url(domain, "post", pid)
    actor_url = canonical_url(domain, "actor", location_id)

    if post_time.tzinfo is None:
        post_time = post_time.replace(tzinfo=timezone.utc)
    published = post_time.replace(minute=0, second=0, microsecond=0)

    return Note(
        id=post_url,
        url=post_url,
        attributed_to=actor_url,
        content=content,
        published=format_published(published),
        post_id=pid,
        post_type=post_type,
        location_id=location_id,
        to=(AS_PUBLIC,),
        cc=(f"{actor_url}/followers",),
        tag=_hashtags(domain, hashtags),
    )


def build_alert_post(
    location_id: str,
    alert: Alert,
    content: str,
    domain: str,
) -> Note:
    """Create an alert Note.

    The post id comes from the alert's own id, so checking the same alert
    again before it expires yields the same post.
    """
    effective = alert.effective or datetime.now(timezone.utc)
    pid = post_id(location_id, effective, ALERT_POST_TYPE, alert.id)
    post_url = canonical_url(domain, "post", pid)
    actor_url = canonical_url(domain, "actor", location_id)

    return Note(
        id=post_url,
        url=post_url,
        attributed_to=actor_url,
        content=content,
        published=format_published(effective),
        post_id=pid,
        post_type=ALERT_POST_TYPE,
        location_id=location_id,
        to=(AS_PUBLIC,),
        cc=(f"{actor_url}/followers",),
        tag=_hashtags(domain, ALERT_HASHTAGS),
        sensitive=alert.severity in SENSITIVE_SEVERITIES,
        attachment={
            "type": ObjectType.PAGE.value,
            "name": alert.event,
            "content": alert.description,
            "url": alert.web or NWS_ALERT_URL.format(alert_id=alert.id),
        },
        alert_id=alert.id,
        expires=format_published(alert.expires) if alert.expires else None,
    )


def wrap_in_create(note: Note, domain: str) -> Activity:
    """Wrap a Note in its Create activity (same note, same Create id)."""
    return Activity(
        id=canonical_url(domain, "activity", create_activity_id(note.post_id)),
        type=ActivityType.CREATE,
        actor=note.attributed_to,
        object=note.to_dict(),
        published=note.published,
        to=note.to,
        cc=note.cc,
    )


def wrap_in_accept(follow_activity: JsonDict, actor_url: str) -> Activity:
    """Accept a Follow, embedding the original Follow as the object."""
    location_id = actor_url.rstrip("/").rsplit("/", 1)[-1]
    domain = actor_url.split("://", 1)[-1].split("/", 1)[0]
    follow_id = str(follow_activity.get("id") or follow_activity.get("actor") or "")

    return Activity(
        id=canonical_url(domain, "activity", accept_activity_id(location_id, follow_id)),
        type=ActivityType.ACCEPT,
        actor=actor_url,
        object=follow_activity,
        published=format_published(datetime.now(timezone.utc)),
        to=(follow_activity["actor"],) if isinstance(follow_activity.get("actor"), str) else (),
    )
