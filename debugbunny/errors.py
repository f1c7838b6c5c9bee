from __future__ import annotations


class DebugBunnyError(Exception):
    """Base class for all errors raised by debugbunny."""


class ConfigValidationError(DebugBunnyError, ValueError):
    """The target set cannot be scheduled (duplicate ids, bad durations, ...)."""


class ActionTimeout(DebugBunnyError):
    """An action did not complete before its deadline."""


class ActionFailure(DebugBunnyError):
    """An action failed before producing a result."""


class ActionCancelled(DebugBunnyError):
    """An action was aborted because its target loop is being shut down."""


class EncodingError(DebugBunnyError):
    """An outcome could not be turned into a log record."""


class SinkError(DebugBunnyError):
    """The output sink rejected a write."""


class ChannelClosed(DebugBunnyError):
    """The aggregation channel no longer accepts outcomes."""


class DecodeError(DebugBunnyError, ValueError):
    """A log stream could not be turned back into records."""
