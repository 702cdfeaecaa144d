"""Scheduler error taxonomy.

Validation and ownership errors are raised synchronously to authoring
callers. Dispatch-time failures are recorded on the job instead.
"""

from __future__ import annotations


class SchedulerError(Exception):
    """Base class for scheduler errors."""


class InvalidScheduleError(SchedulerError, ValueError):
    """The schedule is malformed: bad cron syntax, unknown zone, missing fields."""


class UnsatisfiableScheduleError(InvalidScheduleError):
    """No occurrence matches within the search horizon."""


class ConflictingScheduleFieldsError(InvalidScheduleError):
    """Both ``run_at`` and ``cron_expression`` were supplied."""


class PastRunTimeError(InvalidScheduleError):
    """A one-shot ``run_at`` is not in the future."""


class InvalidPayloadError(SchedulerError, ValueError):
    """The action payload does not match its ``action_type``."""


class InvalidTransitionError(SchedulerError, ValueError):
    """The requested status change is not allowed from the current status."""


class NotFoundError(SchedulerError, LookupError):
    """The job does not exist under the caller's owner scope."""


class TaskNotFoundError(NotFoundError):
    """The linked task does not exist or belongs to someone else."""


class PermanentActionError(SchedulerError):
    """An action failed in a way that retrying cannot fix."""
