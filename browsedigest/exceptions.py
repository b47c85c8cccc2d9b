"""Exception hierarchy for Browse Digest."""


class BrowseDigestError(Exception):
    """Base exception for all Browse Digest errors."""


# Durable state
class StorageError(BrowseDigestError):
    """Failed to read or write durable state."""


class QuotaExceededError(StorageError):
    """A write was rejected because it would exceed the storage quota."""


# Content capture
class ExtractionError(BrowseDigestError):
    """Readable content could not be extracted from a page."""


# Outbound delivery
class DeliveryError(BrowseDigestError):
    """An outbound delivery endpoint rejected or failed a request."""
