"""Entry points for scheduled forecast posts and alert checks.

Both operations are idempotent: a post id is derived from its location, slot
and type (or alert id), and only a newly stored post is delivered.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from .activitypub_types import JsonDict
from .delivery import DeliveryReport, DeliveryService
from .posts import (
    FORECAST_POST_TYPES,
    Alert,
    Forecast,
    build_alert_post,
    build_forecast_post,
    format_alert_content,
    format_forecast_content,
    is_alert_severe,
    wrap_in_create,
)
from .repository import PostRepository
from .store import StoreError

logger = structlog.get_logger()

# Marker lifetime for alerts that carry no expiry
DEFAULT_ALERT_TTL = 24 * 3600


class PublishError(Exception):
    """A post could not be built or stored."""
    pass


@dataclass
class PublishResult:
    """Outcome of publishing one post."""
    post_id: str
    created: bool
    report: DeliveryReport | None = None


class Publisher:
    """Builds, stores and delivers weather posts for locations."""

    def __init__(self, posts: PostRepository, delivery: DeliveryService, domain: str):
        self.posts = posts
        self.delivery = delivery
        self.domain = domain

    async def publish_forecast(
        self,
        location_id: str,
        forecast: Forecast | JsonDict,
        post_type: str,
        post_time: datetime | None = None,
        location_name: str = "",
    ) -> PublishResult:
        """Publish the forecast post for a slot.

        Args:
            location_id: Location identifier
            forecast: Forecast value object or its dict form
            post_type: "forecast-morning", "forecast-noon" or "forecast-evening"
            post_time: Slot time (defaults to now)
            location_name: Display name used in the content

        Returns:
            PublishResult; ``created`` is False when the slot was already posted

        Raises:
            PublishError: Unknown post type or the post could not be stored
        """
        if post_type not in FORECAST_POST_TYPES:
            raise PublishError(f"Unknown forecast post type: {post_type}")
        if isinstance(forecast, dict):
            forecast = Forecast.from_dict(forecast)

        content = format_forecast_content(forecast, location_name or location_id, post_type)
        note = build_forecast_post(
            location_id=location_id,
            post_time=post_time or datetime.now(timezone.utc),
            post_type=post_type,
            content=content,
            domain=self.domain,
        )

        try:
            created = await self.posts.save_if_absent(note)
        except StoreError as e:
            raise PublishError(f"Failed to store post {note.post_id}: {e}") from e

        if not created:
            logger.info("Forecast already posted", location_id=location_id, post_id=note.post_id)
            return PublishResult(post_id=note.post_id, created=False)

        report = await self.delivery.deliver(location_id, wrap_in_create(note, self.domain))
        return PublishResult(post_id=note.post_id, created=True, report=report)

    async def check_alerts(
        self,
        location_id: str,
        alerts: list[Alert | JsonDict],
        location_name: str = "",
        severe_only: bool = False,
    ) -> list[PublishResult]:
        """Post every active alert that has not been posted yet.

        Expired alerts are skipped. Already-posted alerts yield a result with
        ``created=False``.

        Raises:
            PublishError: An alert post could not be stored
        """
        now = datetime.now(timezone.utc)
        results = []

        for item in alerts:
            alert = Alert.from_dict(item) if isinstance(item, dict) else item
            if alert.is_expired(now):
                logger.debug("Skipping expired alert", location_id=location_id, alert_id=alert.id)
                continue
            if severe_only and not is_alert_severe(alert):
                continue

            note = build_alert_post(
                location_id=location_id,
                alert=alert,
                content=format_alert_content(alert, location_name or location_id),
                domain=self.domain,
            )

            try:
                marker = await self.posts.alert_marker(location_id, alert.id)
                if marker and marker.get("delivered", True):
                    results.append(PublishResult(post_id=note.post_id, created=False))
                    continue

                ttl = int((alert.expires - now).total_seconds()) if alert.expires else DEFAULT_ALERT_TTL
                ttl = max(ttl, 1)
                if marker is None:
                    # Claim the alert before storing so a failure below is retried next run
                    await self.posts.mark_alert(location_id, alert.id, note.post_id, ttl=ttl, delivered=False)
                    if not await self.posts.save_if_absent(note):
                        # Post outlived its marker; it went out already
                        await self.posts.mark_alert(location_id, alert.id, note.post_id, ttl=ttl)
                        results.append(PublishResult(post_id=note.post_id, created=False))
                        continue
                else:
                    logger.warning("Redelivering undelivered alert", location_id=location_id, alert_id=alert.id)
                    await self.posts.save_if_absent(note)
            except StoreError as e:
                raise PublishError(f"Failed to store alert post {note.post_id}: {e}") from e

            logger.info("Posting alert", location_id=location_id, alert_id=alert.id, alert_event=alert.event)
            report = await self.delivery.deliver(location_id, wrap_in_create(note, self.domain))

            try:
                await self.posts.mark_alert(location_id, alert.id, note.post_id, ttl=ttl)
            except StoreError as e:
                # Left pending; the next check delivers the same Create again
                logger.error("Failed to mark alert delivered", location_id=location_id, alert_id=alert.id, error=str(e))

            results.append(PublishResult(post_id=note.post_id, created=True, report=report))

        return results
