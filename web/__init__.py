"""Local HTTP API for Browse Digest."""
