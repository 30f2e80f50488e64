from __future__ import annotations


class UnicalError(Exception):
    """Base class for errors raised by the schedule core."""


class MalformedInput(UnicalError):
    """A line or value of an imported feed could not be parsed."""


class ValidationError(UnicalError):
    """A record failed validation before reaching the store."""


class StoreError(UnicalError):
    """A durable read or write against the event store failed."""


class PublishError(UnicalError):
    """Uploading or removing the published feed failed."""
