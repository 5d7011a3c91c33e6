"""HMAC verification of webhook deliveries."""

from __future__ import annotations

import hashlib
import hmac
import logging

logger = logging.getLogger("prgate.signature")

SIGNATURE_PREFIX = "sha1="


def compute_signature(body: bytes, secret: str) -> str:
    """Return the ``sha1=<hex>`` signature GitHub sends for *body*."""
    digest = hmac.new(secret.encode(), body, hashlib.sha1).hexdigest()
    return SIGNATURE_PREFIX + digest


class SignatureValidator:
    """Checks the ``X-Hub-Signature`` header against a repository secret."""

    @staticmethod
    def check(body: bytes, signature_header: str | None, secret: str | None) -> bool:
        """Return *True* if the delivery is authentic.

        With no secret configured every delivery is accepted.  Otherwise the
        header must carry the ``sha1=`` prefix and a matching hex digest.
        """
        if not secret:
            return True
        if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
            logger.warning("Webhook signature missing or without sha1= prefix")
            return False
        expected = compute_signature(body, secret)
        if not hmac.compare_digest(expected.lower(), signature_header.strip().lower()):
            logger.warning("Webhook signature mismatch")
            return False
        return True
