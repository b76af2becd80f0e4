"""Tests for HTTP signature signing and verification."""

import base64
import hashlib

import pytest

from weather_federation.signatures import (
    SignatureError,
    build_signing_string,
    compute_digest,
    parse_signature_header,
    request_target_path,
    sign_request,
    signature_key_id,
    verify_request,
)

KEY_ID = "https://weather.test/locations/paris#main-key"
INBOX = "https://mastodon.example/users/alice/inbox"
BODY = b'{"type": "Create"}'


def resolver_for(public_pem):
    async def resolve(key_id):
        return public_pem if key_id == KEY_ID else None
    return resolve


class TestComputeDigest:
    """Tests for HTTP digest computation."""

    def test_compute_digest(self):
        """Test SHA-256 digest computation."""
        digest = compute_digest(BODY)
        expected_hash = base64.b64encode(hashlib.sha256(BODY).digest()).decode()
        assert digest == f"SHA-256={expected_hash}"

    def test_compute_digest_empty_body(self):
        """Test digest of empty body."""
        assert compute_digest(b"").startswith("SHA-256=")


class TestSigningString:
    """Tests for signing string construction."""

    def test_build_signing_string(self):
        """Test signing string lines in header order."""
        headers = {
            "host": "mastodon.example",
            "date": "Tue, 12 Aug 2025 07:00:00 GMT",
            "digest": "SHA-256=abc123",
        }
        result = build_signing_string(
            method="POST",
            path="/users/alice/inbox",
            headers=headers,
            signed_headers=["(request-target)", "host", "date", "digest"],
        )
        assert result.split("\n") == [
            "(request-target): post /users/alice/inbox",
            "host: mastodon.example",
            "date: Tue, 12 Aug 2025 07:00:00 GMT",
            "digest: SHA-256=abc123",
        ]

    def test_missing_header_raises(self):
        """Test a signed header absent from the request is an error."""
        with pytest.raises(SignatureError):
            build_signing_string("post", "/inbox", {"host": "x"}, ["host", "date"])

    def test_request_target_path(self):
        """Test request target keeps the query string."""
        assert request_target_path("https://x.example/inbox?a=1") == "/inbox?a=1"
        assert request_target_path("/inbox") == "/inbox"

    def test_parse_signature_header_defaults(self):
        """Test headers default to date when omitted."""
        params = parse_signature_header('keyId="k",signature="c2ln"')
        assert params["headers"] == "date"
        assert params["algorithm"] == "rsa-sha256"

    def test_parse_signature_header_requires_key_id(self):
        """Test a header without keyId is rejected."""
        with pytest.raises(SignatureError):
            parse_signature_header('signature="c2ln"')

    def test_signature_key_id(self):
        """Test the keyId is read from a Signature header in any case."""
        assert signature_key_id({"signature": f'keyId="{KEY_ID}",signature="c2ln"'}) == KEY_ID
        assert signature_key_id({"Signature": 'signature="c2ln"'}) is None
        assert signature_key_id({}) is None


class TestSignRequest:
    """Tests for HTTP request signing."""

    def test_sign_request_headers(self, keypair):
        """Test signing adds Host, Date, Digest and Signature."""
        _, private_pem = keypair
        original = {"Content-Type": "application/activity+json"}

        headers = sign_request(KEY_ID, private_pem, "POST", INBOX, original, BODY)

        assert headers["Host"] == "mastodon.example"
        assert headers["Digest"] == compute_digest(BODY)
        assert "Date" in headers
        assert f'keyId="{KEY_ID}"' in headers["Signature"]
        assert 'headers="(request-target) host date digest"' in headers["Signature"]
        assert 'algorithm="rsa-sha256"' in headers["Signature"]
        # Input headers are not mutated
        assert original == {"Content-Type": "application/activity+json"}

    def test_sign_request_without_body(self, keypair):
        """Test GET-style requests sign no digest."""
        _, private_pem = keypair
        headers = sign_request(KEY_ID, private_pem, "GET", INBOX, {})
        assert "Digest" not in headers
        assert 'headers="(request-target) host date"' in headers["Signature"]

    def test_existing_date_kept(self, keypair):
        """Test a caller-provided Date header is signed as is."""
        _, private_pem = keypair
        date = "Tue, 12 Aug 2025 07:00:00 GMT"
        headers = sign_request(KEY_ID, private_pem, "POST", INBOX, {"Date": date}, BODY)
        assert headers["Date"] == date


class TestVerifyRequest:
    """Tests for signature verification."""

    @pytest.mark.asyncio
    async def test_round_trip(self, keypair):
        """Test a signed request verifies with the matching key."""
        public_pem, private_pem = keypair
        headers = sign_request(KEY_ID, private_pem, "POST", INBOX, {}, BODY)

        assert await verify_request("POST", INBOX, headers, resolver_for(public_pem), BODY) is True

    @pytest.mark.asyncio
    async def test_round_trip_with_path_and_lowercase_headers(self, keypair):
        """Test verification from a server-side view of the request."""
        public_pem, private_pem = keypair
        headers = sign_request(KEY_ID, private_pem, "POST", INBOX, {}, BODY)
        received = {k.lower(): v for k, v in headers.items()}

        assert await verify_request("post", "/users/alice/inbox", received, resolver_for(public_pem), BODY)

    @pytest.mark.asyncio
    async def test_tampered_body(self, keypair):
        """Test a modified body fails the digest check."""
        public_pem, private_pem = keypair
        headers = sign_request(KEY_ID, private_pem, "POST", INBOX, {}, BODY)

        tampered = b'{"type": "Delete"}'
        assert await verify_request("POST", INBOX, headers, resolver_for(public_pem), tampered) is False

    @pytest.mark.asyncio
    async def test_tampered_signed_header(self, keypair):
        """Test a modified signed header fails verification."""
        public_pem, private_pem = keypair
        headers = sign_request(KEY_ID, private_pem, "POST", INBOX, {}, BODY)
        headers["Date"] = "Wed, 13 Aug 2025 07:00:00 GMT"

        assert await verify_request("POST", INBOX, headers, resolver_for(public_pem), BODY) is False

    @pytest.mark.asyncio
    async def test_wrong_path(self, keypair):
        """Test a request replayed to another path fails."""
        public_pem, private_pem = keypair
        headers = sign_request(KEY_ID, private_pem, "POST", INBOX, {}, BODY)

        other = "https://mastodon.example/users/bob/inbox"
        assert await verify_request("POST", other, headers, resolver_for(public_pem), BODY) is False

    @pytest.mark.asyncio
    async def test_wrong_key(self, keypair, other_keypair):
        """Test verification with another actor's key fails."""
        _, private_pem = keypair
        other_public, _ = other_keypair
        headers = sign_request(KEY_ID, private_pem, "POST", INBOX, {}, BODY)

        assert await verify_request("POST", INBOX, headers, resolver_for(other_public), BODY) is False

    @pytest.mark.asyncio
    async def test_missing_signature(self, keypair):
        """Test unsigned requests do not verify."""
        public_pem, _ = keypair
        assert await verify_request("POST", INBOX, {"Host": "x"}, resolver_for(public_pem), BODY) is False

    @pytest.mark.asyncio
    async def test_unknown_key(self, keypair):
        """Test an unresolvable keyId does not verify."""
        _, private_pem = keypair
        headers = sign_request("https://other.example/actor#main-key", private_pem, "POST", INBOX, {}, BODY)

        assert await verify_request("POST", INBOX, headers, resolver_for("unused"), BODY) is False

    @pytest.mark.asyncio
    async def test_resolver_failure_does_not_raise(self, keypair):
        """Test a failing resolver yields False."""
        _, private_pem = keypair
        headers = sign_request(KEY_ID, private_pem, "POST", INBOX, {}, BODY)

        async def broken(key_id):
            raise RuntimeError("network down")

        assert await verify_request("POST", INBOX, headers, broken, BODY) is False

    @pytest.mark.asyncio
    async def test_garbage_signature(self, keypair):
        """Test a non-base64 signature value does not verify."""
        public_pem, _ = keypair
        headers = {
            "Host": "mastodon.example",
            "Date": "Tue, 12 Aug 2025 07:00:00 GMT",
            "Signature": f'keyId="{KEY_ID}",headers="host date",signature="!!!",algorithm="rsa-sha256"',
        }
        assert await verify_request("POST", INBOX, headers, resolver_for(public_pem), None) is False
