from __future__ import annotations

import base64
from dataclasses import dataclass
import hashlib
import hmac
import logging
from typing import Protocol

from apptnotify.core.errors import AuthError


logger = logging.getLogger(__name__)

TWILIO_SIGNATURE_HEADER = "X-Twilio-Signature"
EMAIL_SIGNATURE_HEADER = "X-Webhook-Signature"


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    # True when no secret is provisioned and the callback was accepted unchecked.
    permissive: bool = False


class SignatureVerifier(Protocol):
    header_name: str

    def verify(self, *, url: str, body: bytes, signature: str | None) -> VerificationResult:
        ...


def canonical_callback_url(*, public_base_url: str | None, path: str, request_url: str) -> str:
    # Behind a proxy the provider signs the public URL, not the one the app sees.
    if public_base_url:
        return f"{public_base_url.rstrip('/')}{path}"
    return request_url


class _HmacVerifier:
    header_name = ""
    provider = ""

    def __init__(self, secret: str | None) -> None:
        self._secret = secret or None

    def _expected(self, message: bytes) -> str:
        raise NotImplementedError

    def _message(self, *, url: str, body: bytes) -> bytes:
        raise NotImplementedError

    def verify(self, *, url: str, body: bytes, signature: str | None) -> VerificationResult:
        """Check ``signature`` against the shared secret in constant time.

        With no secret provisioned every callback is accepted and a warning is
        logged. With a secret, a missing or mismatched signature raises
        ``AuthError``.
        """

        if self._secret is None:
            logger.warning("webhook_signature_unchecked provider=%s reason=no_secret", self.provider)
            return VerificationResult(verified=False, permissive=True)
        if not signature:
            raise AuthError("Missing webhook signature")
        expected = self._expected(self._message(url=url, body=body))
        if not hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8")):
            logger.warning("webhook_signature_mismatch provider=%s", self.provider)
            raise AuthError("Invalid webhook signature")
        return VerificationResult(verified=True)


class TwilioSignatureVerifier(_HmacVerifier):
    """HMAC-SHA1 over the callback URL followed by the raw body, base64 encoded."""

    header_name = TWILIO_SIGNATURE_HEADER
    provider = "twilio"

    def _message(self, *, url: str, body: bytes) -> bytes:
        return url.encode("utf-8") + body

    def _expected(self, message: bytes) -> str:
        digest = hmac.new(self._secret.encode("utf-8"), message, hashlib.sha1).digest()
        return base64.b64encode(digest).decode("ascii")


class HmacSha256Verifier(_HmacVerifier):
    """Hex HMAC-SHA256 over the raw body, used by the email provider callback."""

    header_name = EMAIL_SIGNATURE_HEADER
    provider = "email"

    def _message(self, *, url: str, body: bytes) -> bytes:
        return body

    def _expected(self, message: bytes) -> str:
        return hmac.new(self._secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_twilio(*, secret: str, url: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), url.encode("utf-8") + body, hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def sign_email(*, secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
