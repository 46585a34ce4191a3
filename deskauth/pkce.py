"""PKCE (Proof Key for Code Exchange) and CSRF state generation.

RFC 7636 - Proof Key for Code Exchange for OAuth 2.0 public clients.
Uses S256 challenge method (SHA-256 hash of the code verifier).
"""

from __future__ import annotations

import hashlib
import secrets

from base64 import urlsafe_b64encode
from dataclasses import dataclass


def compute_challenge(verifier: str) -> str:
    """Return the S256 challenge for a verifier.

    Parameters
    ----------
    verifier : str
        The code verifier.

    Returns
    -------
    str
        base64url (unpadded) encoding of SHA-256(verifier).
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_nonce(num_bytes: int = 16) -> str:
    """Return a hex-encoded random CSRF nonce."""
    return secrets.token_hex(num_bytes)


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and challenge pair.

    Attributes
    ----------
    verifier : str
        The code verifier (high-entropy random string).
    challenge : str
        The code challenge (base64url-encoded SHA-256 hash of verifier).
    method : str
        The challenge method, always "S256".
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def generate(cls, num_bytes: int = 32) -> PKCEChallenge:
        """Generate a new PKCE code verifier and challenge.

        Parameters
        ----------
        num_bytes : int
            Number of random bytes behind the verifier (default 32,
            the RFC 7636 recommendation).

        Returns
        -------
        PKCEChallenge
            A new PKCE challenge pair.
        """
        # token_urlsafe is base64url of the random bytes with padding stripped
        verifier = secrets.token_urlsafe(num_bytes)
        return cls(verifier=verifier, challenge=compute_challenge(verifier))


@dataclass(frozen=True)
class FlowState:
    """CSRF state for one authorization flow.

    Attributes
    ----------
    nonce : str
        Sent as ``state`` in the authorize request; the callback must
        echo it back exactly.
    """

    nonce: str

    @classmethod
    def generate(cls) -> FlowState:
        """Generate fresh state for a new flow."""
        return cls(nonce=generate_nonce())

    def matches(self, returned_state: str | None) -> bool:
        """Constant-time comparison against the callback's ``state``."""
        if returned_state is None:
            return False
        return secrets.compare_digest(self.nonce.encode("utf-8"), returned_state.encode("utf-8"))
