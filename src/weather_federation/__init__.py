"""Weather location actors on the Fediverse.

This package implements the federation and delivery engine behind
per-location weather accounts: each location is an ActivityPub actor that
publishes forecasts and alerts and pushes them to follower inboxes.

Key components:
- ids: Deterministic post, activity and actor identifiers
- store: Key-value store interface (memory and SQLAlchemy backends)
- keys: Per-actor RSA key management
- signatures: HTTP Signatures (sign and verify)
- posts: Note and activity builders
- repository: Followers and published posts
- remote: Remote actor fetching
- inbox: Inbox activity processing
- delivery: Batched fanout with retry queue
- publisher: Forecast and alert publishing
- main: HTTP server entry point
"""

from .activitypub_types import (
    Activity,
    ActivityType,
    Actor,
    Note,
    ObjectType,
    OrderedCollection,
    OrderedCollectionPage,
    PublicKey,
    RemoteActor,
)
from .config import (
    AppConfig,
    DeliveryConfig,
    FederationConfig,
    ServerConfig,
    StoreConfig,
    load_config,
)
from .delivery import (
    DeliveryError,
    DeliveryJob,
    DeliveryOutcome,
    DeliveryReport,
    DeliveryService,
    DrainReport,
)
from .inbox import InboxProcessor, InboxResult, InboxStatus, classify
from .keys import KeyManager, KeyPair
from .posts import Alert, Forecast
from .publisher import PublishError, Publisher, PublishResult
from .remote import ActorFetchError, ActorResolver
from .repository import Follower, FollowerRepository, PostRepository
from .signatures import SignatureError, sign_request, verify_request
from .store import MemoryStore, SqlStore, Store, StoreError, open_store

__version__ = "0.1.0"

__all__ = [
    # Types
    "Activity",
    "ActivityType",
    "Actor",
    "Note",
    "ObjectType",
    "OrderedCollection",
    "OrderedCollectionPage",
    "PublicKey",
    "RemoteActor",
    # Config
    "AppConfig",
    "DeliveryConfig",
    "FederationConfig",
    "ServerConfig",
    "StoreConfig",
    "load_config",
    # Delivery
    "DeliveryError",
    "DeliveryJob",
    "DeliveryOutcome",
    "DeliveryReport",
    "DeliveryService",
    "DrainReport",
    # Inbox
    "InboxProcessor",
    "InboxResult",
    "InboxStatus",
    "classify",
    # Keys and signatures
    "KeyManager",
    "KeyPair",
    "SignatureError",
    "sign_request",
    "verify_request",
    # Publishing
    "Alert",
    "Forecast",
    "PublishError",
    "Publisher",
    "PublishResult",
    # Remote actors
    "ActorFetchError",
    "ActorResolver",
    # Storage
    "Follower",
    "FollowerRepository",
    "MemoryStore",
    "PostRepository",
    "SqlStore",
    "Store",
    "StoreError",
    "open_store",
]
