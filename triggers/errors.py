"""Error taxonomy for the trigger engine.

Creation-time errors propagate to the caller. Dispatch-time errors are logged
by the dispatcher and the event is dropped.
"""


class TriggerEngineError(Exception):
    """Base class for all trigger engine errors."""


class InvalidInput(TriggerEngineError):
    """Empty message, past time, missing coordinates, out-of-range fields."""


class SchedulingError(TriggerEngineError):
    """Permission denied, trigger slots exhausted, arm/register failure."""


class PersistenceError(TriggerEngineError):
    """Store read/write failure."""


class UnknownError(TriggerEngineError):
    """Anything unexpected, chained from the original exception."""
