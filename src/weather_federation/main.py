"""Main entry point for the weather federation server.

Implements an aiohttp-based HTTP server with:
- WebFinger endpoint (/.well-known/webfinger)
- Location actor endpoints (/locations/{location_id})
- Inbox/Outbox and collection endpoints
- Post objects (/posts/{post_id})
- A background loop draining the delivery retry queue
"""

import asyncio
import logging
import signal
from typing import Any

import structlog
from aiohttp import web

from .activitypub_types import (
    ACTIVITY_STREAMS_CONTEXT,
    AP_CONTENT_TYPE,
    Activity,
    ActivityType,
    OrderedCollection,
    OrderedCollectionPage,
    create_location_actor,
)
from .config import AppConfig, load_config
from .delivery import DeliveryService
from .ids import actor_id, canonical_url, create_activity_id, parse_post_id
from .inbox import InboxProcessor
from .keys import KeyManager
from .publisher import Publisher
from .remote import ActorResolver
from .repository import FollowerRepository, PostRepository, StoredPost
from .store import Store, open_store

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

OUTBOX_PAGE_SIZE = 20


class FederationServer:
    """ActivityPub server for weather location actors."""

    def __init__(self, config: AppConfig, store: Store | None = None, http_session: Any = None):
        """Initialize server.

        Args:
            config: Application configuration
            store: Store to use instead of opening ``config.store.url``
            http_session: Shared aiohttp.ClientSession for outbound requests
        """
        self.config = config
        self.app = web.Application()
        self.store = store
        self.http_session = http_session
        self.key_manager = None
        self.followers = None
        self.posts = None
        self.resolver = None
        self.delivery = None
        self.inbox = None
        self.publisher = None
        self._drain_task: asyncio.Task | None = None

    async def setup(self) -> None:
        """Set up server components."""
        if self.store is None:
            self.store = await open_store(self.config.store.url)

        federation = self.config.federation

        self.key_manager = KeyManager(self.store)
        self.followers = FollowerRepository(self.store)
        self.posts = PostRepository(self.store)

        self.resolver = ActorResolver(
            store=self.store,
            user_agent=federation.user_agent,
            cache_ttl=federation.actor_cache_ttl_seconds,
            http_session=self.http_session,
        )

        self.delivery = DeliveryService(
            key_manager=self.key_manager,
            followers=self.followers,
            domain=federation.domain,
            config=self.config.delivery,
            user_agent=federation.user_agent,
            queue_store=self.store if self.config.delivery.use_retry_queue else None,
            http_session=self.http_session,
        )

        self.inbox = InboxProcessor(
            followers=self.followers,
            resolver=self.resolver,
            delivery=self.delivery,
            domain=federation.domain,
            strict_signatures=federation.strict_signatures,
        )

        self.publisher = Publisher(
            posts=self.posts,
            delivery=self.delivery,
            domain=federation.domain,
        )

        # Set up routes
        self._setup_routes()

        # Store services in app for handlers
        self.app["config"] = self.config
        self.app["keys"] = self.key_manager
        self.app["followers"] = self.followers
        self.app["posts"] = self.posts
        self.app["inbox"] = self.inbox

        logger.info(
            "Server setup complete",
            domain=federation.domain,
            strict_signatures=federation.strict_signatures,
        )

    async def cleanup(self) -> None:
        """Clean up server resources."""
        if self._drain_task:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        if self.delivery:
            await self.delivery.close()
        if self.resolver:
            await self.resolver.close()
        if self.store:
            await self.store.close()

    def _setup_routes(self) -> None:
        """Set up HTTP routes."""
        self.app.router.add_get("/.well-known/webfinger", handle_webfinger)

        self.app.router.add_get("/locations/{location_id}", handle_actor)
        self.app.router.add_post("/locations/{location_id}/inbox", handle_inbox)
        self.app.router.add_get("/locations/{location_id}/outbox", handle_outbox)
        self.app.router.add_get("/locations/{location_id}/followers", handle_followers)
        self.app.router.add_get("/locations/{location_id}/following", handle_following)
        self.app.router.add_get("/locations/{location_id}/alerts", handle_alerts)

        self.app.router.add_get("/posts/{post_id}", handle_post)

        # Health check
        self.app.router.add_get("/health", handle_health)

    # === Background Queue Drain ===

    async def _drain_loop(self) -> None:
        """Background task re-driving the delivery retry queue."""
        interval = self.config.delivery.drain_interval_seconds
        logger.info("Starting delivery queue drain loop", interval=interval)

        while True:
            await asyncio.sleep(interval)
            try:
                await self.delivery.drain_queue()
            except Exception as e:
                logger.error("Queue drain error", error=str(e))

    async def run(self) -> None:
        """Run the server."""
        await self.setup()

        if self.delivery.queue_store is not None and self.config.delivery.drain_interval_seconds > 0:
            self._drain_task = asyncio.create_task(self._drain_loop())

        runner = web.AppRunner(self.app)
        await runner.setup()

        site = web.TCPSite(
            runner,
            self.config.server.host,
            self.config.server.port,
        )

        await site.start()

        logger.info(
            "Server started",
            host=self.config.server.host,
            port=self.config.server.port,
        )

        # Wait for shutdown signal
        stop_event = asyncio.Event()

        def signal_handler():
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

        await stop_event.wait()

        logger.info("Shutting down...")
        await self.cleanup()
        await runner.cleanup()


# === Helpers ===

def _location_id(request: web.Request) -> str:
    location_id = actor_id(request.match_info["location_id"])
    if not location_id:
        raise web.HTTPNotFound(text="Unknown location")
    return location_id


def _ap_response(data: dict[str, Any], status: int = 200) -> web.Response:
    return web.json_response(data, status=status, content_type=AP_CONTENT_TYPE)


def _create_for(post: StoredPost, domain: str) -> dict[str, Any]:
    """Create activity for a stored post, as federated at publish time."""
    note = post.note
    return Activity(
        id=canonical_url(domain, "activity", create_activity_id(post.post_id)),
        type=ActivityType.CREATE,
        actor=note.get("attributedTo", ""),
        object=note,
        published=note.get("published", ""),
        to=tuple(note.get("to", ())),
        cc=tuple(note.get("cc", ())),
    ).to_dict()


# === Route Handlers ===

async def handle_webfinger(request: web.Request) -> web.Response:
    """Handle WebFinger discovery requests."""
    resource = request.query.get("resource", "")
    if not resource:
        return web.json_response(
            {"error": "Missing resource parameter"},
            status=400,
        )

    domain = request.app["config"].federation.domain
    if resource.startswith("acct:") and "@" in resource:
        name, resource_domain = resource[5:].rsplit("@", 1)
    elif resource.startswith(f"https://{domain}/locations/"):
        name, resource_domain = resource.rsplit("/", 1)[-1], domain
    else:
        return web.json_response({"error": "Invalid resource format"}, status=400)

    location_id = actor_id(name)
    if resource_domain.lower() != domain.lower() or not location_id:
        return web.json_response(
            {"error": "Resource not found"},
            status=404,
        )

    actor_url = canonical_url(domain, "actor", location_id)
    return web.json_response(
        {
            "subject": f"acct:{location_id}@{domain}",
            "aliases": [actor_url],
            "links": [
                {"rel": "self", "type": AP_CONTENT_TYPE, "href": actor_url},
                {"rel": "http://webfinger.net/rel/profile-page", "type": "text/html", "href": actor_url},
            ],
        },
        content_type="application/jrd+json",
    )


async def handle_actor(request: web.Request) -> web.Response:
    """Handle location actor request."""
    location_id = _location_id(request)
    domain = request.app["config"].federation.domain

    # Check Accept header for ActivityPub
    accept = request.headers.get("Accept", "")
    if "application/activity+json" not in accept and "application/ld+json" not in accept:
        # Return HTML profile page for browsers
        return web.Response(
            text=f"<html><body><h1>@{location_id}@{domain}</h1></body></html>",
            content_type="text/html",
        )

    public_key = await request.app["keys"].get_public_key(location_id)
    actor = create_location_actor(domain, location_id, public_key)
    return _ap_response(actor.to_dict())


async def handle_inbox(request: web.Request) -> web.Response:
    """Handle incoming ActivityPub activities."""
    location_id = _location_id(request)
    body = await request.read()

    try:
        result = await request.app["inbox"].receive(
            location_id,
            request.method,
            request.path_qs,
            request.headers,
            body,
        )
    except Exception as e:
        logger.error("Inbox processing error", location_id=location_id, error=str(e))
        return web.json_response({"error": "Internal error"}, status=500)

    return web.json_response(result.to_dict(), status=result.http_status)


async def handle_outbox(request: web.Request) -> web.Response:
    """Handle outbox collection request."""
    location_id = _location_id(request)
    domain = request.app["config"].federation.domain
    posts = request.app["posts"]
    outbox_url = f"{canonical_url(domain, 'actor', location_id)}/outbox"

    page = request.query.get("page")
    if not page:
        total = await posts.count(location_id)
        last_page = max(1, -(-total // OUTBOX_PAGE_SIZE))
        return _ap_response(
            OrderedCollection(
                id=outbox_url,
                total_items=total,
                first=f"{outbox_url}?page=1",
                last=f"{outbox_url}?page={last_page}",
            ).to_dict()
        )

    try:
        page_num = max(1, int(page))
    except ValueError:
        return web.json_response({"error": "Invalid page"}, status=400)

    items = await posts.list_recent(
        location_id,
        limit=OUTBOX_PAGE_SIZE,
        offset=(page_num - 1) * OUTBOX_PAGE_SIZE,
    )
    return _ap_response(
        OrderedCollectionPage(
            id=f"{outbox_url}?page={page_num}",
            part_of=outbox_url,
            items=[_create_for(post, domain) for post in items],
            next=f"{outbox_url}?page={page_num + 1}" if len(items) == OUTBOX_PAGE_SIZE else "",
            prev=f"{outbox_url}?page={page_num - 1}" if page_num > 1 else "",
        ).to_dict()
    )


async def handle_followers(request: web.Request) -> web.Response:
    """Handle followers collection request (count only)."""
    location_id = _location_id(request)
    domain = request.app["config"].federation.domain
    followers = await request.app["followers"].list_followers(location_id)
    return _ap_response(
        OrderedCollection(
            id=f"{canonical_url(domain, 'actor', location_id)}/followers",
            total_items=len(followers),
        ).to_dict()
    )


async def handle_following(request: web.Request) -> web.Response:
    """Handle following collection request (always empty)."""
    location_id = _location_id(request)
    domain = request.app["config"].federation.domain
    return _ap_response(
        OrderedCollection(
            id=f"{canonical_url(domain, 'actor', location_id)}/following",
            ordered_items=[],
        ).to_dict()
    )


async def handle_alerts(request: web.Request) -> web.Response:
    """Handle featured collection request (active alert posts)."""
    location_id = _location_id(request)
    domain = request.app["config"].federation.domain
    alerts = await request.app["posts"].active_alerts(location_id)
    return _ap_response(
        OrderedCollection(
            id=f"{canonical_url(domain, 'actor', location_id)}/alerts",
            total_items=len(alerts),
            ordered_items=[post.note for post in alerts],
        ).to_dict()
    )


async def handle_post(request: web.Request) -> web.Response:
    """Handle post object request."""
    post_id = request.match_info["post_id"]
    post = await request.app["posts"].get(post_id) if parse_post_id(post_id) else None
    if not post:
        return web.json_response(
            {"error": "Post not found"},
            status=404,
        )
    note = dict(post.note)
    note.setdefault("@context", ACTIVITY_STREAMS_CONTEXT)
    return _ap_response(note)


async def handle_health(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({"status": "ok"})


def main() -> None:
    """Main entry point."""
    # Configure standard logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
    )

    config = load_config()

    # Set log level from config
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)
    logging.getLogger().setLevel(log_level)

    server = FederationServer(config)

    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
