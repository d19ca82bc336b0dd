"""Exception hierarchy for the retrieval daemon."""

from __future__ import annotations


class RetrievalCoreError(Exception):
    """Base class for daemon errors."""


class ConfigurationError(RetrievalCoreError):
    """Configuration could not be read or is malformed."""


class StoreError(RetrievalCoreError):
    """A structural store operation failed."""


class ServiceStateError(RetrievalCoreError):
    """The service was asked to do something its lifecycle state forbids."""


__all__ = ["RetrievalCoreError", "ConfigurationError", "StoreError", "ServiceStateError"]
