"""Lethe exception hierarchy."""


class LetheError(Exception):
    """Base class for all lethe errors."""


class ValidationError(LetheError, ValueError):
    """A caller supplied missing or malformed input. Nothing was written."""


class ProviderError(LetheError):
    """An embedding or expansion provider call failed (timeout, HTTP status, bad payload).

    Raised by the provider transport only; the public provider methods catch it
    and degrade to an absent result.
    """
