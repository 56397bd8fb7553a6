"""PKCE (Proof Key for Code Exchange) generation for OAuth 2.1.

Implements RFC 7636 S256 parameter generation to prevent authorization
code interception attacks.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

from tether.auth.client.models.errors import PKCEError
from tether.auth.client.models.security import PKCEParameters

VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"
VERIFIER_LENGTH = 128


class PKCEManager:
    """Generates PKCE parameters for authorization code flows.

    Every flow gets a fresh verifier. Only the S256 method is produced;
    ``plain`` is not allowed under OAuth 2.1.
    """

    def generate_parameters(self) -> PKCEParameters:
        """Generate a verifier and its S256 challenge.

        Raises:
            PKCEError: If parameter generation fails
        """
        try:
            code_verifier = self._generate_code_verifier()
            code_challenge = self.compute_challenge(code_verifier)

            return PKCEParameters(
                code_verifier=code_verifier,
                code_challenge=code_challenge,
                code_challenge_method="S256",
            )

        except ValueError as e:
            raise PKCEError(f"Failed to generate PKCE parameters: {e}") from e

    @staticmethod
    def compute_challenge(code_verifier: str) -> str:
        """BASE64URL-ENCODE(SHA256(ASCII(code_verifier))), unpadded (RFC 7636 4.2)."""
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

    def _generate_code_verifier(self) -> str:
        # RFC 7636 Section 4.1: 43-128 unreserved characters
        return "".join(
            secrets.choice(VERIFIER_ALPHABET) for _ in range(VERIFIER_LENGTH)
        )
