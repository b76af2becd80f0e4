"""HTTP Signatures for ActivityPub requests.

Implements the draft-cavage-http-signatures scheme as deployed by Mastodon
and other Fediverse servers:
- rsa-sha256 signatures over ``(request-target) host date [digest]``
- ``Digest: SHA-256=<base64>`` body digests

References:
- https://datatracker.ietf.org/doc/html/draft-cavage-http-signatures-12
- https://docs.joinmastodon.org/spec/security/
"""

import base64
import binascii
import hashlib
import re
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from email.utils import format_datetime
from urllib.parse import urlparse

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

logger = structlog.get_logger()

SIGNATURE_ALGORITHM = "rsa-sha256"
REQUEST_TARGET = "(request-target)"

PublicKeyResolver = Callable[[str], Awaitable[str | None]]

_SIGNATURE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class SignatureError(Exception):
    """Malformed signature header or unusable key."""
    pass


def format_http_date(moment: datetime | None = None) -> str:
    """RFC 7231 IMF-fixdate, e.g. ``Tue, 12 Aug 2025 07:00:00 GMT``."""
    moment = moment or datetime.now(timezone.utc)
    return format_datetime(moment.astimezone(timezone.utc), usegmt=True)


def compute_digest(body: bytes) -> str:
    """Compute SHA-256 digest of request body.

    Args:
        body: Request body bytes

    Returns:
        Base64-encoded digest with algorithm prefix
    """
    digest = hashlib.sha256(body).digest()
    return f"SHA-256={base64.b64encode(digest).decode()}"


def request_target_path(url: str) -> str:
    """Path plus query string of a URL (a bare path is returned as is)."""
    parsed = urlparse(url)
    path = parsed.path or "/"
    if parsed.query:
        path += f"?{parsed.query}"
    return path


def build_signing_string(
    method: str,
    path: str,
    headers: Mapping[str, str],
    signed_headers: list[str],
) -> str:
    """Create the string to sign for HTTP signatures.

    Args:
        method: HTTP method (any case)
        path: Request path (with query string)
        headers: Request headers keyed by lowercase name
        signed_headers: Header names in signing order

    Returns:
        Signing string

    Raises:
        SignatureError: If a signed header is missing from ``headers``
    """
    lines = []
    for header in signed_headers:
        name = header.lower()
        if name == REQUEST_TARGET:
            lines.append(f"{REQUEST_TARGET}: {method.lower()} {path}")
            continue
        if name not in headers:
            raise SignatureError(f"Signed header missing from request: {name}")
        lines.append(f"{name}: {headers[name]}")
    return "\n".join(lines)


def parse_signature_header(value: str) -> dict[str, str]:
    """Parse ``keyId="...",headers="...",signature="..."`` into a dict.

    Raises:
        SignatureError: If keyId or signature is missing
    """
    params = dict(_SIGNATURE_PARAM.findall(value))
    if not params.get("keyId") or not params.get("signature"):
        raise SignatureError("Signature header lacks keyId or signature")
    # Servers omitting "headers" sign only the Date header
    params.setdefault("headers", "date")
    params.setdefault("algorithm", SIGNATURE_ALGORITHM)
    return params


def signature_key_id(headers: Mapping[str, str]) -> str | None:
    """keyId named by a request's Signature header, if it has a usable one."""
    for name, value in headers.items():
        if name.lower() == "signature":
            try:
                return parse_signature_header(value)["keyId"]
            except SignatureError:
                return None
    return None


def sign_request(
    key_id: str,
    private_key_pem: str,
    method: str,
    url: str,
    headers: Mapping[str, str],
    body: bytes | None = None,
) -> dict[str, str]:
    """Sign an outgoing request.

    Args:
        key_id: Public key ID (actor#main-key)
        private_key_pem: RSA private key in PEM format
        method: HTTP method
        url: Full URL
        headers: Request headers (not mutated)
        body: Optional request body

    Returns:
        New header dict with Host, Date, Digest (if body) and Signature
    """
    private_key = serialization.load_pem_private_key(
        private_key_pem.encode(),
        password=None,
    )
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise SignatureError("Only RSA keys are supported")

    parsed = urlparse(url)
    signed = dict(headers)
    lowered = {k.lower(): k for k in signed}

    signed.setdefault(lowered.get("host", "Host"), parsed.netloc)
    if "date" not in lowered:
        signed["Date"] = format_http_date()

    signed_headers = [REQUEST_TARGET, "host", "date"]
    if body:
        signed[lowered.get("digest", "Digest")] = compute_digest(body)
        signed_headers.append("digest")

    sig_string = build_signing_string(
        method=method,
        path=request_target_path(url),
        headers={k.lower(): v for k, v in signed.items()},
        signed_headers=signed_headers,
    )

    signature = private_key.sign(
        sig_string.encode("utf-8"),
        padding.PKCS1v15(),
        hashes.SHA256(),
    )
    sig_b64 = base64.b64encode(signature).decode()

    signed["Signature"] = (
        f'keyId="{key_id}",'
        f'headers="{" ".join(signed_headers)}",'
        f'signature="{sig_b64}",'
        f'algorithm="{SIGNATURE_ALGORITHM}"'
    )
    return signed


def _check_signature(public_key_pem: str, signing_string: str, signature_b64: str) -> bool:
    public_key = serialization.load_pem_public_key(public_key_pem.encode())
    if not isinstance(public_key, rsa.RSAPublicKey):
        return False
    try:
        public_key.verify(
            base64.b64decode(signature_b64, validate=True),
            signing_string.encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
    except InvalidSignature:
        return False
    return True


async def verify_request(
    method: str,
    url: str,
    headers: Mapping[str, str],
    resolve_public_key: PublicKeyResolver,
    body: bytes | None = None,
) -> bool:
    """Verify the HTTP signature of an incoming request.

    Args:
        method: Received HTTP method
        url: Received URL or path (with query string)
        headers: Received headers (any case)
        resolve_public_key: Async callback mapping keyId to a PEM public key
        body: Received body; when given, a signed Digest must match it

    Returns:
        True only if the signature checks out. Never raises.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    signature_value = lowered.get("signature")
    if not signature_value:
        return False

    try:
        params = parse_signature_header(signature_value)
        if params["algorithm"].lower() not in (SIGNATURE_ALGORITHM, "hs2019"):
            logger.debug("Unsupported signature algorithm", algorithm=params["algorithm"])
            return False

        signed_headers = params["headers"].lower().split()
        if body is not None and "digest" in signed_headers:
            if lowered.get("digest") != compute_digest(body):
                logger.debug("Digest does not match body", key_id=params["keyId"])
                return False

        signing_string = build_signing_string(
            method=method,
            path=request_target_path(url),
            headers=lowered,
            signed_headers=signed_headers,
        )

        public_key_pem = await resolve_public_key(params["keyId"])
        if not public_key_pem:
            logger.debug("No public key for signature", key_id=params["keyId"])
            return False

        return _check_signature(public_key_pem, signing_string, params["signature"])
    except (SignatureError, ValueError, TypeError, binascii.Error) as e:
        logger.debug("Malformed signature", error=str(e))
        return False
    except Exception as e:
        # Resolver callbacks do network I/O and may fail in arbitrary ways
        logger.warning("Signature verification error", error=str(e))
        return False
