from __future__ import annotations


class ConfigurationError(ValueError):
    """An option, or a combination of options, cannot produce a valid ensemble."""


class ConcurrencyFault(RuntimeError):
    """A pooled task failed or was interrupted while the caller was waiting on it."""


class InvariantViolation(RuntimeError):
    """Internal bookkeeping is inconsistent."""
