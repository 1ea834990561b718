"""Shared constants used by the resilient dependency client."""

NO_CONTENT_STATUS = 204
BODYLESS_METHODS = frozenset({"GET", "HEAD"})
DEFAULT_TIMEOUT_SECONDS = 10.0
CANCELLED_MESSAGE = "Request cancelled by caller."
