from __future__ import annotations


class PlbError(Exception):
    """Base class for every error raised by the reconciler."""


class StoreError(PlbError):
    """The coordination store could not be reached or answered with an error."""


class TreeBuildError(PlbError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class DecodeError(PlbError):
    pass


class StructuralError(PlbError):
    """The observed tree is not in a shape a safe config can be derived from."""


class ApplyError(PlbError):
    pass


class ProcessStartError(PlbError):
    pass
