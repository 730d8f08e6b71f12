"""Exception types for devmon."""


class DevmonError(Exception):
    """Base class for devmon errors."""


class ProbeError(DevmonError):
    """An OS query returned nothing usable; the cycle should be retried later."""


class MalformedRowError(DevmonError):
    """A single process or socket row could not be parsed."""


class LedgerIOError(DevmonError):
    """The orphan ledger could not be read or written."""


class CacheRootUnavailable(DevmonError):
    """A configured cache root is missing or unreadable."""
