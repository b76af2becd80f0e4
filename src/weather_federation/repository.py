"""Follower and post repositories over the key-value store.

Followers for a location are kept as one JSON array under
``followers:<location_id>``. Updates are read-modify-write and not atomic:
a Follow and an Undo racing for the same remote actor resolve as
last-write-wins. Such races are rare and not adversarial in practice.
"""

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from .activitypub_types import JsonDict, Note
from .store import Store, StoreError

logger = structlog.get_logger()

FOLLOWERS_PREFIX = "followers:"
POST_PREFIX = "post:"
ALERT_PREFIX = "alert:"


@dataclass(frozen=True)
class Follower:
    """A remote actor subscribed to a location."""
    id: str  # Remote actor URL
    inbox: str
    shared_inbox: str | None = None
    preferred_username: str = ""
    followed_at: str = ""

    @property
    def delivery_inbox(self) -> str:
        """Shared inbox when offered, personal inbox otherwise."""
        return self.shared_inbox or self.inbox

    def to_json(self) -> JsonDict:
        return {
            "id": self.id,
            "inbox": self.inbox,
            "sharedInbox": self.shared_inbox,
            "preferredUsername": self.preferred_username,
            "followedAt": self.followed_at,
        }

    @classmethod
    def from_json(cls, data: JsonDict) -> "Follower | None":
        if not isinstance(data, dict) or not data.get("id") or not data.get("inbox"):
            return None
        return cls(
            id=data["id"],
            inbox=data["inbox"],
            shared_inbox=data.get("sharedInbox"),
            preferred_username=data.get("preferredUsername") or "",
            followed_at=data.get("followedAt") or "",
        )


class FollowerRepository:
    """Set of followers per location, keyed by remote actor URL."""

    def __init__(self, store: Store):
        self.store = store

    async def _load(self, location_id: str) -> dict[str, Follower]:
        raw = await self.store.get(f"{FOLLOWERS_PREFIX}{location_id}")
        if not raw:
            return {}
        try:
            items = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Corrupt follower set, treating as empty", location_id=location_id)
            return {}
        followers: dict[str, Follower] = {}
        for item in items if isinstance(items, list) else []:
            follower = Follower.from_json(item)
            if follower:
                followers[follower.id] = follower
        return followers

    async def _save(self, location_id: str, followers: dict[str, Follower]) -> None:
        payload = json.dumps([f.to_json() for f in followers.values()])
        await self.store.put(f"{FOLLOWERS_PREFIX}{location_id}", payload)

    async def list_followers(self, location_id: str) -> list[Follower]:
        """All followers of a location (empty if the store is unavailable)."""
        try:
            return list((await self._load(location_id)).values())
        except StoreError as e:
            logger.error("Failed to read followers", location_id=location_id, error=str(e))
            return []

    async def add(
        self,
        location_id: str,
        actor_url: str,
        inbox: str,
        shared_inbox: str | None = None,
        preferred_username: str = "",
    ) -> bool:
        """Add a follower.

        Returns:
            True if newly added, False if already present

        Raises:
            StoreError: The follower set could not be read or written
        """
        try:
            followers = await self._load(location_id)
            if actor_url in followers:
                return False
            followers[actor_url] = Follower(
                id=actor_url,
                inbox=inbox,
                shared_inbox=shared_inbox,
                preferred_username=preferred_username,
                followed_at=datetime.now(timezone.utc).isoformat(),
            )
            await self._save(location_id, followers)
        except StoreError as e:
            logger.error("Failed to add follower", location_id=location_id, follower=actor_url, error=str(e))
            raise

        logger.info("Added follower", location_id=location_id, follower=actor_url)
        return True

    async def remove(self, location_id: str, actor_url: str) -> bool:
        """Remove a follower; absent followers are a no-op.

        Returns:
            True if a follower was removed

        Raises:
            StoreError: The follower set could not be read or written
        """
        try:
            followers = await self._load(location_id)
            if followers.pop(actor_url, None) is None:
                return False
            await self._save(location_id, followers)
        except StoreError as e:
            logger.error("Failed to remove follower", location_id=location_id, follower=actor_url, error=str(e))
            raise

        logger.info("Removed follower", location_id=location_id, follower=actor_url)
        return True

    async def inbox_targets(self, location_id: str) -> list[str]:
        """Unique delivery inboxes, collapsing followers that share an inbox."""
        targets: dict[str, None] = {}
        for follower in await self.list_followers(location_id):
            if follower.delivery_inbox:
                targets[follower.delivery_inbox] = None
        return list(targets)


@dataclass
class StoredPost:
    """A published note with its local metadata."""
    post_id: str
    location_id: str
    post_type: str
    note: JsonDict
    alert_id: str | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_note(cls, note: Note) -> "StoredPost":
        return cls(
            post_id=note.post_id,
            location_id=note.location_id,
            post_type=note.post_type,
            note=note.to_dict(),
            alert_id=note.alert_id,
        )

    @classmethod
    def from_json(cls, raw: str) -> "StoredPost":
        data: dict[str, Any] = json.loads(raw)
        return cls(**data)


class PostRepository:
    """Published posts (``post:<post_id>``) and posted-alert markers."""

    def __init__(self, store: Store):
        self.store = store

    async def save_if_absent(self, note: Note) -> bool:
        """Store a note unless one with the same id exists.

        Check-then-put, not atomic; a racing duplicate overwrites an
        identical document because ids are deterministic.

        Returns:
            True if stored, False if it already existed
        """
        key = f"{POST_PREFIX}{note.post_id}"
        if await self.store.get(key) is not None:
            return False
        await self.store.put(key, StoredPost.from_note(note).to_json())
        logger.info("Stored post", post_id=note.post_id)
        return True

    async def get(self, post_id: str) -> StoredPost | None:
        raw = await self.store.get(f"{POST_PREFIX}{post_id}")
        if raw is None:
            return None
        try:
            return StoredPost.from_json(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error("Corrupt stored post", post_id=post_id, error=str(e))
            return None

    async def list_recent(self, location_id: str, limit: int = 20, offset: int = 0) -> list[StoredPost]:
        """Posts for a location, newest first."""
        keys = await self.store.list_keys(f"{POST_PREFIX}{location_id}-")
        posts = []
        for key in keys:
            post = await self.get(key[len(POST_PREFIX):])
            if post:
                posts.append(post)
        posts.sort(key=lambda p: p.note.get("published", ""), reverse=True)
        return posts[offset:offset + limit]

    async def count(self, location_id: str) -> int:
        return len(await self.store.list_keys(f"{POST_PREFIX}{location_id}-"))

    async def alert_marker(self, location_id: str, alert_id: str) -> JsonDict | None:
        """Marker left by an earlier check of this alert, if still live."""
        raw = await self.store.get(f"{ALERT_PREFIX}{location_id}:{alert_id}")
        if raw is None:
            return None
        try:
            marker = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Corrupt alert marker", location_id=location_id, alert_id=alert_id)
            return None
        return marker if isinstance(marker, dict) else None

    async def mark_alert(
        self,
        location_id: str,
        alert_id: str,
        post_id: str,
        ttl: int | None,
        delivered: bool = True,
    ) -> None:
        """Remember an alert until it expires.

        A marker with ``delivered`` False means the post was claimed but its
        Create has not gone out yet.
        """
        await self.store.put(
            f"{ALERT_PREFIX}{location_id}:{alert_id}",
            json.dumps({
                "postId": post_id,
                "delivered": delivered,
                "postedAt": datetime.now(timezone.utc).isoformat(),
            }),
            ttl=ttl,
        )

    async def active_alerts(self, location_id: str) -> list[StoredPost]:
        """Alert posts whose markers have not expired (the featured collection)."""
        posts = []
        for key in await self.store.list_keys(f"{ALERT_PREFIX}{location_id}:"):
            raw = await self.store.get(key)
            if raw is None:
                continue
            post = await self.get(json.loads(raw).get("postId", ""))
            if post:
                posts.append(post)
        return posts
