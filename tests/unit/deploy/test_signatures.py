"""Unit tests for webhook signature verification."""

from __future__ import annotations

import base64
import hashlib
import hmac

import pytest

from clouddeck.deploy.signatures import (
    GIT_SCHEMES,
    PROVIDER_SCHEMES,
    SignatureEncoding,
    SignatureScheme,
    get_header,
    sign,
    verify_signature,
)

BODY = b'{"deploymentId":"dpl_1","state":"READY"}'
SECRET = "s3cret"


class TestSchemes:
    """The scheme table matches each sender's convention."""

    def test_vercel_is_sha1_hex(self) -> None:
        """Vercel signs with HMAC-SHA1 hex."""
        expected = hmac.new(SECRET.encode(), BODY, hashlib.sha1).hexdigest()

        assert sign(PROVIDER_SCHEMES["vercel"], SECRET, BODY) == {
            "x-vercel-signature": expected
        }

    def test_netlify_is_sha256_hex(self) -> None:
        """Netlify signs with HMAC-SHA256 hex."""
        expected = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()

        assert PROVIDER_SCHEMES["netlify"].expected(SECRET, BODY) == expected

    def test_render_is_sha256_base64(self) -> None:
        """Render signs with base64-encoded HMAC-SHA256."""
        digest = hmac.new(SECRET.encode(), BODY, hashlib.sha256).digest()

        assert PROVIDER_SCHEMES["render"].expected(SECRET, BODY) == (
            base64.b64encode(digest).decode()
        )

    @pytest.mark.parametrize("provider", ["vercel", "render"])
    def test_provider_named_signature_header(self, provider: str) -> None:
        """Vercel and Render sign in an ``x-<provider>-signature`` header."""
        assert PROVIDER_SCHEMES[provider].header == f"x-{provider}-signature"

    def test_github_uses_prefix(self) -> None:
        """GitHub prefixes the digest with the algorithm."""
        value = GIT_SCHEMES["github"].expected(SECRET, BODY)

        assert value.startswith("sha256=")
        assert len(value) == len("sha256=") + 64

    def test_gitlab_echoes_token(self) -> None:
        """GitLab sends the shared secret itself."""
        assert GIT_SCHEMES["gitlab"].encoding == SignatureEncoding.TOKEN
        assert GIT_SCHEMES["gitlab"].expected(SECRET, BODY) == SECRET


class TestVerifySignature:
    """Tests for verify_signature."""

    @pytest.mark.parametrize(
        "scheme",
        [*PROVIDER_SCHEMES.values(), *GIT_SCHEMES.values()],
        ids=[*PROVIDER_SCHEMES, *GIT_SCHEMES],
    )
    def test_valid_signature(self, scheme: SignatureScheme) -> None:
        """A correctly signed body validates for every scheme."""
        headers = sign(scheme, SECRET, BODY)

        assert verify_signature(scheme, SECRET, BODY, headers)

    @pytest.mark.parametrize(
        "scheme",
        [*PROVIDER_SCHEMES.values(), GIT_SCHEMES["github"], GIT_SCHEMES["bitbucket"]],
        ids=[*PROVIDER_SCHEMES, "github", "bitbucket"],
    )
    def test_tampered_body_rejected(self, scheme: SignatureScheme) -> None:
        """Changing the body after signing invalidates HMAC signatures."""
        headers = sign(scheme, SECRET, BODY)
        tampered = BODY.replace(b"READY", b"ERROR")

        assert not verify_signature(scheme, SECRET, tampered, headers)

    def test_wrong_secret_rejected(self) -> None:
        """A signature made with another secret fails."""
        scheme = PROVIDER_SCHEMES["netlify"]
        headers = sign(scheme, "other", BODY)

        assert not verify_signature(scheme, SECRET, BODY, headers)

    def test_missing_header_rejected(self) -> None:
        """No signature header means invalid."""
        assert not verify_signature(PROVIDER_SCHEMES["vercel"], SECRET, BODY, {})

    def test_missing_secret_never_validates(self) -> None:
        """Without a configured secret every webhook is rejected."""
        scheme = GIT_SCHEMES["gitlab"]

        assert not verify_signature(scheme, None, BODY, {"x-gitlab-token": ""})
        assert not verify_signature(scheme, "", BODY, {"x-gitlab-token": ""})

    def test_header_lookup_is_case_insensitive(self) -> None:
        """Header names match regardless of case."""
        scheme = GIT_SCHEMES["github"]
        value = scheme.expected(SECRET, BODY)

        assert verify_signature(scheme, SECRET, BODY, {"X-Hub-Signature-256": value})


def test_get_header() -> None:
    """get_header ignores case and returns None when absent."""
    headers = {"Content-Type": "application/json"}

    assert get_header(headers, "content-type") == "application/json"
    assert get_header(headers, "x-missing") is None
