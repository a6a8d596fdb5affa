# core/exceptions.py
"""
Error taxonomy for the reminder core.

- StoreUnavailableError: run-level, aborts the current run (scheduler keeps going)
- DeliveryError: raised by channel senders; `permanent` separates bad addresses
  (never retried) from timeouts / 5xx (retried on the next run)
- RunInProgressError: a manual trigger arrived while a run was in flight
"""


class ReminderError(Exception):
    """Base class for all reminder service errors."""


class StoreUnavailableError(ReminderError):
    """Subscription / history store could not be reached."""


class DeliveryError(ReminderError):
    def __init__(self, reason: str, permanent: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.permanent = permanent


class RunInProgressError(ReminderError):
    """A dispatcher run is already executing in this process."""
