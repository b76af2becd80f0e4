"""Per-actor RSA key management.

Keys are generated lazily the first time an actor signs something or
publishes its actor document. The read-check-then-create sequence is not
atomic: two concurrent first uses may both generate a keypair. That is
wasteful but safe, since the store keeps the last write and every later read
sees it.
"""

from dataclasses import dataclass

import structlog
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .store import Store, StoreError

logger = structlog.get_logger()

PRIVATE_KEY_PREFIX = "private_key:"
PUBLIC_KEY_PREFIX = "public_key:"


@dataclass(frozen=True)
class KeyPair:
    """PEM-encoded RSA keypair (PKCS8 private, SPKI public)."""
    private_key_pem: str
    public_key_pem: str


def generate_rsa_keypair() -> tuple[str, str]:
    """Generate RSA key pair for HTTP signatures.

    Returns:
        Tuple of (public_key_pem, private_key_pem)
    """
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
    )

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()

    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()

    return public_pem, private_pem


class KeyManager:
    """Get-or-create access to each location actor's keypair."""

    def __init__(self, store: Store):
        """Initialize key manager.

        Args:
            store: Store holding ``private_key:<id>`` / ``public_key:<id>``
        """
        self.store = store
        # Keys generated while the store was down, reused for this process
        self._volatile: dict[str, KeyPair] = {}

    async def get_or_create_keypair(self, actor_id: str) -> KeyPair:
        """Return the actor's keypair, generating and persisting it on a miss.

        If the store cannot be read or written the keypair is still returned
        for this call, but it is only held in process memory.
        """
        if actor_id in self._volatile:
            return self._volatile[actor_id]

        store_ok = True
        try:
            private_pem = await self.store.get(f"{PRIVATE_KEY_PREFIX}{actor_id}")
            public_pem = await self.store.get(f"{PUBLIC_KEY_PREFIX}{actor_id}")
            if private_pem and public_pem:
                return KeyPair(private_key_pem=private_pem, public_key_pem=public_pem)
        except StoreError as e:
            store_ok = False
            logger.error("Key store unavailable, key will not be durable", actor_id=actor_id, error=str(e))

        public_pem, private_pem = generate_rsa_keypair()
        keypair = KeyPair(private_key_pem=private_pem, public_key_pem=public_pem)

        if store_ok:
            try:
                await self.store.put(f"{PRIVATE_KEY_PREFIX}{actor_id}", private_pem)
                await self.store.put(f"{PUBLIC_KEY_PREFIX}{actor_id}", public_pem)
                logger.info("Generated actor keypair", actor_id=actor_id)
                return keypair
            except StoreError as e:
                logger.error("Failed to persist actor keypair", actor_id=actor_id, error=str(e))

        self._volatile[actor_id] = keypair
        return keypair

    async def get_public_key(self, actor_id: str) -> str:
        """Public key PEM for the actor document."""
        return (await self.get_or_create_keypair(actor_id)).public_key_pem

    async def get_private_key(self, actor_id: str) -> str:
        """Private key PEM for signing."""
        return (await self.get_or_create_keypair(actor_id)).private_key_pem
