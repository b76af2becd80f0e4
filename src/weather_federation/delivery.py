"""Fanout delivery of signed activities to remote inboxes.

Implements:
- Resolution of follower inboxes (shared inboxes collapse followers)
- Batched concurrent delivery with per-request timeouts
- Permanent (4xx) vs transient (5xx, timeout, network) failure handling
- A persisted retry queue with not-before timestamps, re-driven by
  ``drain_queue`` from an external trigger
"""

import asyncio
import json
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

import aiohttp
import structlog

from .activitypub_types import AP_CONTENT_TYPE, Activity, JsonDict
from .config import DeliveryConfig
from .ids import canonical_url
from .keys import KeyManager
from .repository import FollowerRepository
from .signatures import SignatureError, sign_request
from .store import Store, StoreError

logger = structlog.get_logger()

QUEUE_PREFIX = "delivery:"


class DeliveryError(Exception):
    """Error delivering an activity to one inbox."""

    def __init__(self, message: str, status: int | None = None, transient: bool = False):
        super().__init__(message)
        self.status = status
        self.transient = transient


class DeliveryOutcome(str, Enum):
    """Final state of one delivery attempt chain."""
    DELIVERED = "delivered"  # 2xx from the receiver
    REJECTED = "rejected"    # 4xx, never retried
    QUEUED = "queued"        # transient failure persisted for a later drain
    DROPPED = "dropped"      # transient failures exhausted the retry budget


@dataclass
class DeliveryJob:
    """One activity bound for one inbox."""
    inbox_url: str
    activity: JsonDict
    actor_id: str  # Location id of the sending actor
    attempt: int = 0  # Retries already spent
    not_before: float = 0.0  # Epoch seconds

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "DeliveryJob":
        data = json.loads(raw)
        return cls(
            inbox_url=data["inbox_url"],
            activity=data["activity"],
            actor_id=data["actor_id"],
            attempt=int(data.get("attempt", 0)),
            not_before=float(data.get("not_before", 0.0)),
        )


@dataclass
class DeliveryReport:
    """Outcome counters for one fanout."""
    delivered: int = 0
    failed: int = 0
    errors: list[JsonDict] = field(default_factory=list)


@dataclass
class DrainReport:
    """Outcome counters for one queue drain."""
    processed: int = 0
    delivered: int = 0
    requeued: int = 0
    dropped: int = 0
    pending: int = 0


def chunk(items: list[Any], size: int) -> list[list[Any]]:
    """Split ``items`` into lists of at most ``size``."""
    return [items[i:i + size] for i in range(0, len(items), size)]


class DeliveryService:
    """Signs and pushes activities to follower inboxes."""

    def __init__(
        self,
        key_manager: KeyManager,
        followers: FollowerRepository,
        domain: str,
        config: DeliveryConfig | None = None,
        user_agent: str = "weather.gripe/1.0",
        queue_store: Store | None = None,
        http_session: Any = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize delivery service.

        Args:
            key_manager: Source of actor signing keys
            followers: Follower repository used to resolve inboxes
            domain: Server domain (actor URLs and key ids)
            config: Batch, retry and timeout settings
            user_agent: User-Agent header for deliveries
            queue_store: Durable retry queue; None retries in-process
            http_session: aiohttp.ClientSession to use; created lazily if None
            clock: Epoch-seconds clock
            sleep: Awaitable sleep used for in-process backoff
        """
        self.key_manager = key_manager
        self.followers = followers
        self.domain = domain
        self.config = config or DeliveryConfig()
        self.user_agent = user_agent
        self.queue_store = queue_store
        self._http_session = http_session
        self._clock = clock
        self._sleep = sleep
        self.timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)

    async def _get_http_session(self) -> Any:
        """Get or create HTTP session."""
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
        return self._http_session

    async def close(self) -> None:
        """Close HTTP session."""
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()

    # === Fanout ===

    async def deliver(self, location_id: str, activity: Activity | JsonDict) -> DeliveryReport:
        """Deliver an activity to every follower inbox of a location.

        Inboxes are processed in batches of ``batch_size``; a batch runs
        concurrently and completes (successes and failures alike) before
        the next one starts.

        Args:
            location_id: Sending location
            activity: Activity to deliver

        Returns:
            DeliveryReport; transient failures handed to the retry queue
            count as failed for this fanout
        """
        report = DeliveryReport()
        payload = activity.to_dict() if isinstance(activity, Activity) else activity

        targets = await self.followers.inbox_targets(location_id)
        if not targets:
            logger.info("No followers to deliver to", location_id=location_id)
            return report

        started = time.monotonic()
        logger.info(
            "Starting delivery to followers",
            location_id=location_id,
            targets=len(targets),
            activity_id=payload.get("id"),
        )

        for batch in chunk(targets, self.config.batch_size):
            outcomes = await asyncio.gather(
                *(
                    self.deliver_to_inbox(DeliveryJob(inbox_url=inbox, activity=payload, actor_id=location_id))
                    for inbox in batch
                ),
                return_exceptions=True,
            )
            for inbox, outcome in zip(batch, outcomes):
                if outcome is DeliveryOutcome.DELIVERED:
                    report.delivered += 1
                elif isinstance(outcome, BaseException):
                    report.failed += 1
                    report.errors.append({"inbox": inbox, "error": str(outcome)})
                else:
                    report.failed += 1
                    report.errors.append({"inbox": inbox, "error": outcome.value})

        logger.info(
            "Delivery completed",
            location_id=location_id,
            delivered=report.delivered,
            failed=report.failed,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return report

    # === Single inbox ===

    async def deliver_to_inbox(self, job: DeliveryJob) -> DeliveryOutcome:
        """Deliver one job, applying the retry policy to transient failures.

        With a queue store the job is persisted with ``attempt + 1`` and a
        backoff ``not_before``; without one it retries in-process until the
        budget runs out. Either way a job is posted at most
        ``max_retries + 1`` times.
        """
        while True:
            try:
                status = await self._post(job)
            except DeliveryError as e:
                if not e.transient:
                    logger.error(
                        "Permanent delivery failure",
                        inbox=job.inbox_url,
                        status=e.status,
                        error=str(e),
                    )
                    return DeliveryOutcome.REJECTED

                if job.attempt >= self.config.max_retries:
                    logger.error(
                        "Dropping delivery after retries",
                        inbox=job.inbox_url,
                        attempts=job.attempt + 1,
                        error=str(e),
                    )
                    return DeliveryOutcome.DROPPED

                delay = self.config.delay_for(job.attempt)
                logger.warning(
                    "Temporary delivery failure, will retry",
                    inbox=job.inbox_url,
                    error=str(e),
                    attempt=job.attempt,
                    retry_delay=delay,
                )
                next_job = DeliveryJob(
                    inbox_url=job.inbox_url,
                    activity=job.activity,
                    actor_id=job.actor_id,
                    attempt=job.attempt + 1,
                    not_before=self._clock() + delay,
                )
                if self.queue_store is not None and await self.enqueue(next_job):
                    return DeliveryOutcome.QUEUED

                await self._sleep(delay)
                job = next_job
                continue

            logger.debug("Delivered to inbox", inbox=job.inbox_url, status=status, attempt=job.attempt)
            return DeliveryOutcome.DELIVERED

    async def _signed_headers(self, job: DeliveryJob, body: bytes) -> dict[str, str]:
        headers = {
            "Content-Type": AP_CONTENT_TYPE,
            "Accept": AP_CONTENT_TYPE,
            "User-Agent": self.user_agent,
        }
        actor_url = canonical_url(self.domain, "actor", job.actor_id)
        try:
            private_key = await self.key_manager.get_private_key(job.actor_id)
            return sign_request(
                key_id=f"{actor_url}#main-key",
                private_key_pem=private_key,
                method="POST",
                url=job.inbox_url,
                headers=headers,
                body=body,
            )
        except (SignatureError, ValueError, TypeError) as e:
            logger.error("Failed to sign request, sending unsigned", actor_id=job.actor_id, error=str(e))
            return headers

    async def _post(self, job: DeliveryJob) -> int:
        """POST one job once.

        Returns:
            HTTP status on success

        Raises:
            DeliveryError: classified as transient or permanent
        """
        body = json.dumps(job.activity).encode()
        headers = await self._signed_headers(job, body)
        http_session = await self._get_http_session()

        try:
            async with http_session.post(
                job.inbox_url,
                data=body,
                headers=headers,
                timeout=self.timeout,
            ) as response:
                if 200 <= response.status < 300:
                    return response.status
                detail = (await response.text())[:200]
                if 400 <= response.status < 500:
                    raise DeliveryError(
                        f"Permanent delivery failure: HTTP {response.status} {detail}",
                        status=response.status,
                    )
                raise DeliveryError(
                    f"Temporary delivery failure: HTTP {response.status} {detail}",
                    status=response.status,
                    transient=True,
                )
        except asyncio.TimeoutError as e:
            raise DeliveryError(f"Timed out after {self.config.timeout_seconds}s", transient=True) from e
        except aiohttp.ClientError as e:
            raise DeliveryError(f"Network error: {e}", transient=True) from e

    # === Retry queue ===

    async def enqueue(self, job: DeliveryJob) -> bool:
        """Persist a job for a later drain.

        Returns:
            False if the queue store is unavailable
        """
        if self.queue_store is None:
            return False
        key = f"{QUEUE_PREFIX}{int(self._clock() * 1000)}:{secrets.token_hex(5)}"
        try:
            await self.queue_store.put(key, job.to_json(), ttl=self.config.queue_ttl_seconds)
        except StoreError as e:
            logger.error("Failed to queue delivery, retrying in-process", inbox=job.inbox_url, error=str(e))
            return False
        logger.debug("Queued delivery job", key=key, attempt=job.attempt)
        return True

    async def drain_queue(self) -> DrainReport:
        """Attempt every due job in the retry queue.

        Not-yet-due jobs are left untouched. Delivered, rejected, dropped
        and unreadable jobs are removed; transient failures are re-queued
        under a new key before the old one is removed.
        """
        report = DrainReport()
        if self.queue_store is None:
            return report

        try:
            keys = await self.queue_store.list_keys(QUEUE_PREFIX)
        except StoreError as e:
            logger.error("Failed to list delivery queue", error=str(e))
            return report

        now = self._clock()
        due: list[tuple[str, DeliveryJob]] = []
        for key in keys:
            try:
                raw = await self.queue_store.get(key)
                if raw is None:
                    continue
                job = DeliveryJob.from_json(raw)
            except StoreError as e:
                logger.error("Failed to read queued delivery", key=key, error=str(e))
                continue
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.error("Discarding unreadable delivery job", key=key, error=str(e))
                await self._discard(key)
                report.dropped += 1
                continue

            if job.not_before > now:
                report.pending += 1
                continue
            due.append((key, job))

        for batch in chunk(due, self.config.batch_size):
            outcomes = await asyncio.gather(
                *(self.deliver_to_inbox(job) for _, job in batch),
                return_exceptions=True,
            )
            for (key, job), outcome in zip(batch, outcomes):
                report.processed += 1
                if outcome is DeliveryOutcome.DELIVERED:
                    report.delivered += 1
                elif outcome is DeliveryOutcome.QUEUED:
                    report.requeued += 1
                elif isinstance(outcome, BaseException):
                    # Leave the entry for the next drain
                    logger.error("Failed to process queued delivery", key=key, error=str(outcome))
                    continue
                else:
                    report.dropped += 1
                await self._discard(key)

        if report.processed:
            logger.info("Drained delivery queue", **asdict(report))
        return report

    async def _discard(self, key: str) -> None:
        try:
            await self.queue_store.delete(key)
        except StoreError as e:
            logger.error("Failed to remove queued delivery", key=key, error=str(e))
