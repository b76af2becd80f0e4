"""Inbox activity processing for location actors.

Each (location, remote actor) pair is either following or not. Follow moves
it to following and answers with an Accept; Undo(Follow) and the remote
account deleting itself move it back. Every other ActivityStreams verb is
acknowledged and ignored, and anything that is not one is rejected.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TypeAlias

import structlog

from .activitypub_types import ActivityType, JsonDict, actor_id_from_key_id
from .delivery import DeliveryJob, DeliveryOutcome, DeliveryService
from .ids import canonical_url
from .posts import wrap_in_accept
from .remote import ActorFetchError, ActorResolver
from .repository import FollowerRepository
from .signatures import signature_key_id, verify_request
from .store import StoreError

logger = structlog.get_logger()


class InboxStatus(str, Enum):
    """Business outcome of an inbox POST."""
    ACCEPTED = "accepted"
    IGNORED = "ignored"
    REJECTED = "rejected"
    FAILED = "failed"
    UNAUTHORIZED = "unauthorized"


@dataclass(frozen=True)
class InboxResult:
    """Outcome reported to the inbox endpoint."""
    status: InboxStatus
    reason: str = ""

    @property
    def http_status(self) -> int:
        """Receipt status code; failed Follows are still acknowledged."""
        if self.status is InboxStatus.REJECTED:
            return 400
        if self.status is InboxStatus.UNAUTHORIZED:
            return 401
        return 202

    def to_dict(self) -> JsonDict:
        result = {"status": self.status.value}
        if self.reason:
            result["reason"] = self.reason
        return result


# === Inbound variants ===

@dataclass(frozen=True)
class FollowActivity:
    actor: str
    raw: JsonDict


@dataclass(frozen=True)
class UndoFollowActivity:
    actor: str  # The Undo's actor, or the inner Follow's when absent
    raw: JsonDict


@dataclass(frozen=True)
class DeleteActivity:
    actor: str
    raw: JsonDict


@dataclass(frozen=True)
class UnhandledActivity:
    """A valid ActivityStreams verb this server does not act on."""
    type: str
    raw: JsonDict


@dataclass(frozen=True)
class UnknownActivity:
    """Not an ActivityStreams activity (unknown or missing type, bad shape)."""
    reason: str


InboundActivity: TypeAlias = (
    FollowActivity | UndoFollowActivity | DeleteActivity | UnhandledActivity | UnknownActivity
)


def classify(activity: object) -> InboundActivity:
    """Map a parsed inbox body onto its variant."""
    if not isinstance(activity, dict):
        return UnknownActivity(reason="activity must be a JSON object")

    raw_type = activity.get("type")
    if not raw_type:
        return UnknownActivity(reason="missing type")

    activity_type = ActivityType.from_value(raw_type)
    if activity_type is None:
        return UnknownActivity(reason=f"unknown type: {raw_type}")

    actor = activity.get("actor")
    actor = actor if isinstance(actor, str) else ""

    if activity_type is ActivityType.FOLLOW:
        if not actor:
            return UnknownActivity(reason="Follow without actor")
        return FollowActivity(actor=actor, raw=activity)

    if activity_type is ActivityType.UNDO:
        inner = activity.get("object")
        if isinstance(inner, dict) and inner.get("type") == ActivityType.FOLLOW.value:
            inner_actor = inner.get("actor")
            actor = actor or (inner_actor if isinstance(inner_actor, str) else "")
            if not actor:
                return UnknownActivity(reason="Undo without actor")
            return UndoFollowActivity(actor=actor, raw=activity)
        return UnhandledActivity(type=activity_type.value, raw=activity)

    if activity_type is ActivityType.DELETE:
        if not actor:
            return UnknownActivity(reason="Delete without actor")
        target = activity.get("object")
        if isinstance(target, dict):
            target = target.get("id")
        # Only an account deleting itself ends a follow
        if target != actor:
            return UnhandledActivity(type=activity_type.value, raw=activity)
        return DeleteActivity(actor=actor, raw=activity)

    return UnhandledActivity(type=activity_type.value, raw=activity)


class InboxProcessor:
    """Applies inbound activities to a location's follower set."""

    def __init__(
        self,
        followers: FollowerRepository,
        resolver: ActorResolver,
        delivery: DeliveryService,
        domain: str,
        strict_signatures: bool = False,
    ):
        """Initialize inbox processor.

        Args:
            followers: Follower repository
            resolver: Remote actor fetcher (inboxes and public keys)
            delivery: Delivery pipeline used to send Accepts
            domain: Server domain
            strict_signatures: Reject unsigned or badly signed posts
        """
        self.followers = followers
        self.resolver = resolver
        self.delivery = delivery
        self.domain = domain
        self.strict_signatures = strict_signatures

    async def receive(
        self,
        location_id: str,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> InboxResult:
        """Verify, parse and process a raw inbox POST."""
        verified = await verify_request(
            method=method,
            url=url,
            headers=headers,
            resolve_public_key=self.resolver.resolve_public_key,
            body=body,
        )
        if not verified:
            if self.strict_signatures:
                logger.warning("Rejecting unsigned inbox post", location_id=location_id)
                return InboxResult(InboxStatus.UNAUTHORIZED, "invalid or missing signature")
            logger.warning("Processing inbox post without a valid signature", location_id=location_id)

        try:
            activity = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return InboxResult(InboxStatus.REJECTED, "invalid JSON")

        if verified:
            signer = actor_id_from_key_id(signature_key_id(headers) or "")
            claimed = getattr(classify(activity), "actor", None)
            if claimed and claimed != signer:
                logger.warning(
                    "Signing key does not belong to activity actor",
                    location_id=location_id,
                    signer=signer,
                    actor=claimed,
                )
                if self.strict_signatures:
                    return InboxResult(InboxStatus.UNAUTHORIZED, "signer does not match actor")

        return await self.process(location_id, activity)

    async def process(self, location_id: str, activity: object) -> InboxResult:
        """Apply one parsed activity to a location.

        Args:
            location_id: Receiving location
            activity: Parsed JSON body

        Returns:
            InboxResult
        """
        inbound = classify(activity)

        if isinstance(inbound, UnknownActivity):
            logger.info("Rejecting inbox activity", location_id=location_id, reason=inbound.reason)
            return InboxResult(InboxStatus.REJECTED, inbound.reason)

        logger.info(
            "Processing inbox activity",
            location_id=location_id,
            type=inbound.raw.get("type"),
            activity_id=inbound.raw.get("id"),
        )

        if isinstance(inbound, FollowActivity):
            return await self._handle_follow(location_id, inbound)
        if isinstance(inbound, (UndoFollowActivity, DeleteActivity)):
            try:
                removed = await self.followers.remove(location_id, inbound.actor)
            except StoreError:
                return InboxResult(InboxStatus.FAILED, "follower not removed")
            if not removed:
                return InboxResult(InboxStatus.ACCEPTED, "not following")
            if isinstance(inbound, DeleteActivity):
                return InboxResult(InboxStatus.ACCEPTED, "follower removed")
            return InboxResult(InboxStatus.ACCEPTED, "unfollowed")

        logger.debug("Ignoring unsupported activity type", type=inbound.type)
        return InboxResult(InboxStatus.IGNORED, f"unsupported type: {inbound.type}")

    async def _handle_follow(self, location_id: str, follow: FollowActivity) -> InboxResult:
        """Record the follower and send the Accept."""
        try:
            remote_actor = await self.resolver.fetch_actor(follow.actor)
        except ActorFetchError as e:
            logger.error("Failed to fetch follower actor", location_id=location_id, actor=follow.actor, error=str(e))
            return InboxResult(InboxStatus.FAILED, "could not fetch actor")

        try:
            added = await self.followers.add(
                location_id,
                follow.actor,
                inbox=remote_actor.inbox,
                shared_inbox=remote_actor.shared_inbox,
                preferred_username=remote_actor.preferred_username,
            )
        except StoreError:
            # Accept only once the follower is stored
            return InboxResult(InboxStatus.FAILED, "follower not persisted")
        if not added:
            logger.debug("Already following", location_id=location_id, follower=follow.actor)

        actor_url = canonical_url(self.domain, "actor", location_id)
        accept = wrap_in_accept(follow.raw, actor_url)
        outcome = await self.delivery.deliver_to_inbox(
            DeliveryJob(
                inbox_url=remote_actor.inbox,
                activity=accept.to_dict(),
                actor_id=location_id,
            )
        )
        if outcome is not DeliveryOutcome.DELIVERED:
            logger.warning(
                "Accept not delivered",
                location_id=location_id,
                follower=follow.actor,
                outcome=outcome.value,
            )

        return InboxResult(InboxStatus.ACCEPTED, "followed" if added else "already following")
