"""SQLAlchemy models."""

from shared.models.base import Base
from shared.models.job_execution import JobExecution
from shared.models.scheduled_job import ScheduledJob

__all__ = [
    "Base",
    "JobExecution",
    "ScheduledJob",
]
