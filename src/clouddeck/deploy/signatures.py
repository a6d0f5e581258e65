"""Webhook signature verification.

Every inbound webhook source is described by a :class:`SignatureScheme`:
which header carries the signature, which digest is used, and how the
digest is encoded. All comparisons are constant-time and run over the raw
request body, never a re-serialized payload.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum


class SignatureEncoding(str, Enum):
    """How an expected signature is rendered in its header."""

    HEX = "hex"
    BASE64 = "base64"
    TOKEN = "token"  # shared secret echoed verbatim


@dataclass(frozen=True)
class SignatureScheme:
    """Signature convention of one webhook source.

    Attributes:
        header: Header name carrying the signature (case-insensitive)
        algorithm: hashlib digest name for HMAC schemes
        encoding: Rendering of the digest
        prefix: Literal prefix in front of the digest, e.g. ``sha256=``
    """

    header: str
    algorithm: str = "sha256"
    encoding: SignatureEncoding = SignatureEncoding.HEX
    prefix: str = ""

    def expected(self, secret: str, body: bytes) -> str:
        """Compute the header value a legitimate sender would produce."""
        if self.encoding == SignatureEncoding.TOKEN:
            return secret
        mac = hmac.new(secret.encode("utf-8"), body, self.algorithm)
        if self.encoding == SignatureEncoding.BASE64:
            digest = base64.b64encode(mac.digest()).decode("ascii")
        else:
            digest = mac.hexdigest()
        return f"{self.prefix}{digest}"


PROVIDER_SCHEMES: dict[str, SignatureScheme] = {
    "vercel": SignatureScheme(header="x-vercel-signature", algorithm="sha1"),
    "netlify": SignatureScheme(header="x-webhook-signature"),
    "render": SignatureScheme(
        header="x-render-signature", encoding=SignatureEncoding.BASE64
    ),
}

GIT_SCHEMES: dict[str, SignatureScheme] = {
    "github": SignatureScheme(header="x-hub-signature-256", prefix="sha256="),
    "gitlab": SignatureScheme(
        header="x-gitlab-token", encoding=SignatureEncoding.TOKEN
    ),
    "bitbucket": SignatureScheme(header="x-hook-signature"),
}


def get_header(headers: Mapping[str, str], name: str) -> str | None:
    """Look up a header case-insensitively."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def verify_signature(
    scheme: SignatureScheme,
    secret: str | None,
    body: bytes,
    headers: Mapping[str, str],
) -> bool:
    """Verify a webhook signature against its scheme.

    Args:
        scheme: Signature convention of the sender
        secret: Shared secret; a missing secret never validates
        body: Raw request body
        headers: Request headers

    Returns:
        True if the signature header matches the expected value
    """
    if not secret:
        return False
    provided = get_header(headers, scheme.header)
    if not provided:
        return False
    expected = scheme.expected(secret, body)
    return hmac.compare_digest(
        provided.strip().encode("utf-8"), expected.encode("utf-8")
    )


def sign(scheme: SignatureScheme, secret: str, body: bytes) -> dict[str, str]:
    """Return the header a sender would attach; used by tooling and tests."""
    return {scheme.header: scheme.expected(secret, body)}
