"""Exception hierarchy shared by every inventory component."""

from __future__ import annotations


class InventoryError(Exception):
    """Base class for all errors raised by imagecertinfo."""


class MalformedReference(InventoryError, ValueError):
    """An image id could not be parsed into a registry/repository/digest reference."""


# ── Certification lookups ─────────────────────────────────────────────────


class CertificationError(InventoryError):
    """A certification provider could not answer a lookup."""


class AuthError(CertificationError):
    """The provider rejected our credentials (401/403)."""


class RateLimited(CertificationError):
    """The provider throttled the request (429)."""


class TransportError(CertificationError):
    """Network failure, unexpected status code, or an unparseable payload."""


class LookupCancelled(InventoryError):
    """The caller's cancellation event fired while waiting for a rate-limit token."""


# ── Record store ──────────────────────────────────────────────────────────


class StoreError(InventoryError):
    """The record store failed to read or write a record."""


class RecordExists(StoreError):
    """``create`` was called for a key that is already stored."""


class RecordNotFound(StoreError):
    """An update targeted a record that no longer exists."""


class RecordConflict(StoreError):
    """An update carried a stale ``resource_version``."""


# ── Workloads ─────────────────────────────────────────────────────────────


class WorkloadReadError(InventoryError):
    """A pod could not be read from the cluster (transient API failure)."""
