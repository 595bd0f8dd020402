"""Exception taxonomy for Outpost.

Remote failures all derive from ControlPlaneError so teardown and background
paths can catch one type; callers that care about the distinction catch
AuthError or TransientError first.
"""

from __future__ import annotations


class OutpostError(Exception):
    """Base class for all Outpost errors."""


class ControlPlaneError(OutpostError):
    """Unexpected failure reported by (or while talking to) a control plane."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthError(ControlPlaneError):
    """The control plane rejected the credential (invalid or revoked key)."""


class TransientError(ControlPlaneError):
    """Timeout or transient network failure. Safe to re-invoke the same step."""


class DecryptError(OutpostError):
    """Stored ciphertext is malformed or was written with a different key."""


class ConfigError(OutpostError):
    """Required process-wide configuration is missing or invalid."""


class StepOrderError(OutpostError):
    """A provisioning step was invoked before its prerequisite completed."""


class RecordNotFoundError(OutpostError):
    """No setup record (or sandbox) exists for the caller."""
