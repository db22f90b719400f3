"""Errors raised by the services."""


class NotFoundError(ValueError):
    """A referenced user, word or word state does not exist."""


class FlowNotFoundError(NotFoundError):
    """The user has no flow of the requested kind in progress."""
