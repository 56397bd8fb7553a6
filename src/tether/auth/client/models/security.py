"""PKCE pair carried from ``begin_authorization`` to the token exchange."""

from __future__ import annotations

from dataclasses import dataclass

S256 = "S256"


@dataclass(frozen=True)
class PKCEParameters:
    """Verifier and S256 challenge for one login (RFC 7636).

    Only the challenge leaves the process; the verifier is persisted
    until the callback code is exchanged.
    """

    code_verifier: str
    code_challenge: str
    code_challenge_method: str = S256

    def __post_init__(self) -> None:
        for name in ("code_verifier", "code_challenge"):
            if not 43 <= len(getattr(self, name)) <= 128:
                raise ValueError(f"{name} must be 43-128 characters")
        if self.code_challenge_method != S256:
            raise ValueError(f"Only {S256} is supported, got {self.code_challenge_method}")
