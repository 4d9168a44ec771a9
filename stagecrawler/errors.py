"""
Exception hierarchy shared by all crawler stages.
"""


class CrawlerError(Exception):
    """Base class for crawler errors."""
    pass


class ConfigError(CrawlerError, ValueError):
    """Invalid or incomplete configuration."""
    pass


class StoreError(CrawlerError):
    """Identifier store operation failed."""
    pass


class StoreTimeoutError(StoreError):
    """Identifier store did not answer within the operation timeout."""
    pass


class BusError(CrawlerError):
    """Message bus operation failed."""
    pass


class BusTimeoutError(BusError):
    """Message bus did not answer within the operation timeout."""
    pass


class MessageError(CrawlerError):
    """A message body could not be decoded."""
    pass


class PageStoreError(CrawlerError):
    """Persisted page could not be written or read."""
    pass


class IdSpaceExhausted(CrawlerError):
    """The sequence counter has passed the largest 32-bit URL id."""
    pass
