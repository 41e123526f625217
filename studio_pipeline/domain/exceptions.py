"""Exceptions raised when domain models reject a state change."""


class InvalidTransitionError(Exception):
    """Raised when a category status would regress or leave a terminal state."""

    pass
