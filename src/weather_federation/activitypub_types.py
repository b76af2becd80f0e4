"""ActivityPub protocol types for the weather federation core.

This module holds the ActivityStreams vocabulary and the value objects
(actors, notes, activities, collections) exchanged with remote servers.

References:
- ActivityPub spec: https://www.w3.org/TR/activitypub/
- ActivityStreams 2.0: https://www.w3.org/TR/activitystreams-core/
- Mastodon: https://docs.joinmastodon.org/spec/activitypub/
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeAlias

# JSON-LD contexts for ActivityPub
ACTIVITY_STREAMS_CONTEXT = "https://www.w3.org/ns/activitystreams"
SECURITY_CONTEXT = "https://w3id.org/security/v1"
MASTODON_CONTEXT = {
    "toot": "http://joinmastodon.org/ns#",
    "discoverable": "toot:discoverable",
    "manuallyApprovesFollowers": "as:manuallyApprovesFollowers",
    "sensitive": "as:sensitive",
    "Hashtag": "as:Hashtag",
    "featured": {"@id": "toot:featured", "@type": "@id"},
}

ACTOR_CONTEXT: list[str | dict] = [
    ACTIVITY_STREAMS_CONTEXT,
    SECURITY_CONTEXT,
    MASTODON_CONTEXT,
]

# Content types
AP_CONTENT_TYPE = "application/activity+json"
AP_ACCEPT_HEADER = 'application/activity+json, application/ld+json; profile="https://www.w3.org/ns/activitystreams"'

# Public addressing
AS_PUBLIC = "https://www.w3.org/ns/activitystreams#Public"

# Actor profile creation date shown on every location actor
ACTOR_PUBLISHED = "2024-01-01T00:00:00Z"

JsonDict: TypeAlias = dict[str, Any]


class ActivityType(str, Enum):
    """ActivityStreams activity types accepted at the inbox."""
    # Handled
    FOLLOW = "Follow"
    UNDO = "Undo"
    DELETE = "Delete"

    # Produced
    CREATE = "Create"
    ACCEPT = "Accept"

    # Valid but not acted on
    UPDATE = "Update"
    REJECT = "Reject"
    ADD = "Add"
    REMOVE = "Remove"
    LIKE = "Like"
    ANNOUNCE = "Announce"
    BLOCK = "Block"
    FLAG = "Flag"
    IGNORE = "Ignore"
    JOIN = "Join"
    LEAVE = "Leave"
    OFFER = "Offer"
    INVITE = "Invite"
    QUESTION = "Question"
    LISTEN = "Listen"
    READ = "Read"
    MOVE = "Move"
    TRAVEL = "Travel"
    VIEW = "View"

    @classmethod
    def from_value(cls, value: Any) -> "ActivityType | None":
        """Look up a type by its wire name, None if not an ActivityStreams verb."""
        if not isinstance(value, str):
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class ObjectType(str, Enum):
    """ActivityPub object types used here."""
    PERSON = "Person"
    SERVICE = "Service"
    NOTE = "Note"
    PAGE = "Page"
    IMAGE = "Image"
    ORDERED_COLLECTION = "OrderedCollection"
    ORDERED_COLLECTION_PAGE = "OrderedCollectionPage"


def format_published(moment: datetime) -> str:
    """ISO timestamp with milliseconds and Z suffix (2025-08-12T07:00:00.000Z)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class PublicKey:
    """RSA public key for HTTP signatures."""
    id: str  # e.g., https://weather.gripe/locations/newyork#main-key
    owner: str  # Actor ID
    public_key_pem: str

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        return {
            "id": self.id,
            "owner": self.owner,
            "publicKeyPem": self.public_key_pem,
        }


@dataclass(frozen=True)
class Actor:
    """A location actor (one per location)."""
    id: str  # https://weather.gripe/locations/newyork
    preferred_username: str
    name: str
    summary: str
    inbox: str
    outbox: str
    followers: str
    following: str
    featured: str
    public_key: PublicKey
    icon_url: str = ""
    type: ObjectType = ObjectType.PERSON

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        actor = {
            "@context": ACTOR_CONTEXT,
            "id": self.id,
            "type": self.type.value,
            "preferredUsername": self.preferred_username,
            "name": self.name,
            "summary": self.summary,
            "url": self.id,
            "inbox": self.inbox,
            "outbox": self.outbox,
            "followers": self.followers,
            "following": self.following,
            "featured": self.featured,
            "manuallyApprovesFollowers": False,
            "discoverable": True,
            "published": ACTOR_PUBLISHED,
            "publicKey": self.public_key.to_dict(),
        }

        if self.icon_url:
            actor["icon"] = {
                "type": ObjectType.IMAGE.value,
                "mediaType": "image/png",
                "url": self.icon_url,
            }

        return actor


@dataclass(frozen=True)
class Note:
    """ActivityPub Note for a weather post.

    ``post_id``, ``post_type`` and ``location_id`` are local metadata and
    are not part of the federated representation.
    """
    id: str
    url: str
    attributed_to: str
    content: str
    published: str
    post_id: str
    post_type: str
    location_id: str
    to: tuple[str, ...] = (AS_PUBLIC,)
    cc: tuple[str, ...] = ()
    tag: tuple[JsonDict, ...] = ()
    sensitive: bool = False
    attachment: JsonDict | None = None
    alert_id: str | None = None
    expires: str | None = None

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        note = {
            "@context": ACTIVITY_STREAMS_CONTEXT,
            "id": self.id,
            "type": ObjectType.NOTE.value,
            "url": self.url,
            "attributedTo": self.attributed_to,
            "content": self.content,
            "published": self.published,
            "to": list(self.to),
            "cc": list(self.cc),
            "tag": list(self.tag),
            "sensitive": self.sensitive,
        }

        if self.attachment:
            note["attachment"] = self.attachment

        return note


@dataclass(frozen=True)
class Activity:
    """ActivityPub Activity wrapper (Create, Accept)."""
    id: str
    type: ActivityType
    actor: str  # Actor ID performing the activity
    object: str | JsonDict  # Target object (ID or inline object)
    published: str = ""
    to: tuple[str, ...] = ()
    cc: tuple[str, ...] = ()

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        activity = {
            "@context": ACTIVITY_STREAMS_CONTEXT,
            "id": self.id,
            "type": self.type.value,
            "actor": self.actor,
            "object": self.object,
        }

        if self.published:
            activity["published"] = self.published
        if self.to:
            activity["to"] = list(self.to)
        if self.cc:
            activity["cc"] = list(self.cc)

        return activity


@dataclass
class OrderedCollection:
    """ActivityPub OrderedCollection for outbox/followers/following."""
    id: str
    total_items: int = 0
    first: str = ""  # First page URL
    last: str = ""  # Last page URL
    ordered_items: list[str | JsonDict] | None = None  # Inline items (unpaged)

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        collection = {
            "@context": ACTIVITY_STREAMS_CONTEXT,
            "id": self.id,
            "type": ObjectType.ORDERED_COLLECTION.value,
            "totalItems": self.total_items,
        }

        if self.first:
            collection["first"] = self.first
        if self.last:
            collection["last"] = self.last
        if self.ordered_items is not None:
            collection["orderedItems"] = self.ordered_items

        return collection


@dataclass
class OrderedCollectionPage:
    """Page of an OrderedCollection."""
    id: str
    part_of: str  # Parent collection ID
    items: list[str | JsonDict] = field(default_factory=list)
    next: str = ""
    prev: str = ""

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        page = {
            "@context": ACTIVITY_STREAMS_CONTEXT,
            "id": self.id,
            "type": ObjectType.ORDERED_COLLECTION_PAGE.value,
            "partOf": self.part_of,
            "orderedItems": self.items,
        }

        if self.next:
            page["next"] = self.next
        if self.prev:
            page["prev"] = self.prev

        return page


@dataclass(frozen=True)
class RemoteActor:
    """The parts of a remote actor document the core relies on."""
    id: str
    inbox: str
    shared_inbox: str | None = None
    preferred_username: str = ""
    public_key_id: str = ""
    public_key_pem: str = ""


def parse_remote_actor(data: JsonDict) -> RemoteActor | None:
    """Parse a remote actor document.

    Args:
        data: JSON-LD actor document

    Returns:
        RemoteActor, or None if the document has no id or inbox
    """
    if not isinstance(data, dict):
        return None

    actor_id = data.get("id")
    inbox = data.get("inbox")
    if not isinstance(actor_id, str) or not isinstance(inbox, str) or not inbox:
        return None

    endpoints = data.get("endpoints")
    shared_inbox = endpoints.get("sharedInbox") if isinstance(endpoints, dict) else None
    # Some servers put sharedInbox at the top level
    shared_inbox = shared_inbox or data.get("sharedInbox")

    public_key = data.get("publicKey")
    if isinstance(public_key, list):
        public_key = public_key[0] if public_key else None
    if not isinstance(public_key, dict):
        public_key = {}

    return RemoteActor(
        id=actor_id,
        inbox=inbox,
        shared_inbox=shared_inbox if isinstance(shared_inbox, str) else None,
        preferred_username=data.get("preferredUsername") or "",
        public_key_id=public_key.get("id", ""),
        public_key_pem=public_key.get("publicKeyPem", ""),
    )


def create_location_actor(
    domain: str,
    location_id: str,
    public_key_pem: str,
    display_name: str = "",
) -> Actor:
    """Build the actor document for a location.

    Args:
        domain: Server domain (e.g., weather.gripe)
        location_id: Normalized location id
        public_key_pem: Actor's RSA public key in PEM format
        display_name: Human readable location name

    Returns:
        Actor instance
    """
    actor_url = f"https://{domain}/locations/{location_id}"
    name = display_name or location_id

    return Actor(
        id=actor_url,
        preferred_username=location_id,
        name=f"{name} Weather",
        summary=(
            f"Automated weather forecasts and severe weather alerts for {name}. "
            "Posts at 7am, noon, and 7pm local time."
        ),
        inbox=f"{actor_url}/inbox",
        outbox=f"{actor_url}/outbox",
        followers=f"{actor_url}/followers",
        following=f"{actor_url}/following",
        featured=f"{actor_url}/alerts",
        public_key=PublicKey(
            id=f"{actor_url}#main-key",
            owner=actor_url,
            public_key_pem=public_key_pem,
        ),
        icon_url=f"https://{domain}/assets/weather-icon.png",
    )


def actor_id_from_key_id(key_id: str) -> str:
    """Strip the fragment from a keyId (``...#main-key``) to get the actor URL."""
    return key_id.split("#", 1)[0]
