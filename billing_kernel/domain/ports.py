"""
Interfaces the billing core consumes but does not implement.

ProofLinkProvider
    File storage for payment proofs lives elsewhere.  The core stores only
    the opaque file reference and asks the provider for a short-lived URL.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class ProofLinkProvider(Protocol):
    """Resolve a stored proof-file reference to a short-lived access URL."""

    def get_access_url(self, file_ref: str, expires_in_seconds: int = 900) -> str:
        ...
