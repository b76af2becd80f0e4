"""Remote actor resolution.

Fetches actor documents from other servers to learn where to deliver
(``inbox`` / ``endpoints.sharedInbox``) and which key verifies their
signatures (``publicKey.publicKeyPem``). Documents are cached in the store.
"""

import asyncio
import json
from typing import Any

import aiohttp
import structlog

from .activitypub_types import (
    AP_ACCEPT_HEADER,
    RemoteActor,
    actor_id_from_key_id,
    parse_remote_actor,
)
from .store import Store, StoreError

logger = structlog.get_logger()

ACTOR_CACHE_PREFIX = "actor:"


class ActorFetchError(Exception):
    """Remote actor document could not be fetched or parsed."""
    pass


class ActorResolver:
    """Fetches and caches remote actor documents."""

    def __init__(
        self,
        store: Store,
        user_agent: str,
        cache_ttl: int = 3600,
        timeout_seconds: float = 10.0,
        http_session: Any = None,
    ):
        """Initialize resolver.

        Args:
            store: Store used as actor document cache
            user_agent: User-Agent header for fetches
            cache_ttl: Cache lifetime in seconds (0 disables caching)
            timeout_seconds: Fetch timeout
            http_session: aiohttp.ClientSession to use; created lazily if None
        """
        self.store = store
        self.user_agent = user_agent
        self.cache_ttl = cache_ttl
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._http_session = http_session

    async def _get_http_session(self) -> Any:
        """Get or create HTTP session."""
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
        return self._http_session

    async def close(self) -> None:
        """Close HTTP session."""
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()

    async def _cached(self, actor_url: str) -> RemoteActor | None:
        if not self.cache_ttl:
            return None
        try:
            raw = await self.store.get(f"{ACTOR_CACHE_PREFIX}{actor_url}")
        except StoreError as e:
            logger.warning("Actor cache unavailable", actor=actor_url, error=str(e))
            return None
        if not raw:
            return None
        try:
            return parse_remote_actor(json.loads(raw))
        except json.JSONDecodeError:
            return None

    async def _remember(self, actor_url: str, data: dict[str, Any]) -> None:
        if not self.cache_ttl:
            return
        try:
            await self.store.put(f"{ACTOR_CACHE_PREFIX}{actor_url}", json.dumps(data), ttl=self.cache_ttl)
        except StoreError as e:
            logger.warning("Failed to cache actor", actor=actor_url, error=str(e))

    async def fetch_actor(self, actor_url: str, use_cache: bool = True) -> RemoteActor:
        """Fetch a remote actor document.

        Args:
            actor_url: Full actor ID URL
            use_cache: Consult the cache before fetching

        Returns:
            Parsed RemoteActor

        Raises:
            ActorFetchError: If the actor cannot be fetched or has no inbox
        """
        if use_cache:
            cached = await self._cached(actor_url)
            if cached:
                return cached

        http_session = await self._get_http_session()
        try:
            async with http_session.get(
                actor_url,
                headers={
                    "Accept": AP_ACCEPT_HEADER,
                    "User-Agent": self.user_agent,
                },
                timeout=self.timeout,
            ) as response:
                if response.status != 200:
                    raise ActorFetchError(f"Failed to fetch actor {actor_url}: HTTP {response.status}")
                data = await response.json(content_type=None)
        except ActorFetchError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError, ValueError) as e:
            raise ActorFetchError(f"Failed to fetch actor {actor_url}: {e}") from e

        actor = parse_remote_actor(data)
        if actor is None:
            raise ActorFetchError(f"Invalid actor document at {actor_url}")

        await self._remember(actor_url, data)
        logger.debug("Fetched remote actor", actor=actor_url, inbox=actor.inbox)
        return actor

    async def resolve_public_key(self, key_id: str) -> str | None:
        """Public key PEM for a signature keyId, None if unavailable.

        Suitable as the resolver callback of ``verify_request``.
        """
        actor_url = actor_id_from_key_id(key_id)
        try:
            actor = await self.fetch_actor(actor_url)
        except ActorFetchError as e:
            logger.warning("Failed to fetch actor public key", key_id=key_id, error=str(e))
            return None
        return actor.public_key_pem or None
