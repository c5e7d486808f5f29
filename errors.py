"""
errors.py
---------
MTB FHIR Bridge: Error Kinds
----------------------------
Exceptions raised by the mapping engine and its collaborators.  The HTTP
layer (main.py) translates each kind into a status code; nothing below the
HTTP layer knows about status codes.

    AuthorizationDenied   missing/invalid session or no matching role  → 403
    NotFound              patient or presentation absent upstream      → 404
    AmbiguousMatch        identifier expected unique matched >1        → 500
    InvalidArgument       identifier scope mismatch / bad payload      → 422
    UnsupportedAttribute  clinical attribute without a handler         → 422
    TransactionRejected   repository rejected a transaction bundle     → 422
    UpstreamUnavailable   network / timeout talking to a collaborator  → 500

Project: MTB FHIR Bridge
"""

from __future__ import annotations

from typing import Optional


class MtbBridgeError(Exception):
    """Base class for all errors raised by the bridge."""


class AuthorizationDenied(MtbBridgeError):
    """The caller may not read or manipulate the requested patient."""


class NotFound(MtbBridgeError):
    """A patient or presentation does not exist in the repository."""


class AmbiguousMatch(MtbBridgeError):
    """More than one resource matched an identifier that must be unique."""


class InvalidArgument(MtbBridgeError, ValueError):
    """An identifier is not scoped to the requesting patient, or a payload is malformed."""


class UnsupportedAttribute(InvalidArgument):
    """No clinical-data handler is registered for an attribute id."""

    def __init__(self, attribute_id: str) -> None:
        self.attribute_id = attribute_id
        super().__init__(f"Unsupported clinical attribute: {attribute_id!r}")


class TransactionRejected(MtbBridgeError):
    """
    The repository refused a transaction bundle.

    ``artifact_path`` points at the file holding the raw response body so an
    operator can inspect and replay the transaction by hand.
    """

    def __init__(
        self,
        status_code: int,
        body: str,
        artifact_path: Optional[str] = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.artifact_path = artifact_path
        super().__init__(
            f"Transaction rejected with HTTP {status_code}"
            + (f" (details in {artifact_path})" if artifact_path else "")
        )


class UpstreamUnavailable(MtbBridgeError):
    """A remote collaborator could not be reached or timed out."""
