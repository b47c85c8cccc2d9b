"""Browse Digest: local browsing activity tracking and daily digests."""

__version__ = "0.3.0"
