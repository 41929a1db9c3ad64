"""Domain exceptions shared by the repositories, services and CLI."""


class TimeTrackerError(Exception):
    """Base class for user-visible errors."""


class ValidationError(TimeTrackerError):
    """Rejected locally before any persistence call."""


class ConflictError(TimeTrackerError):
    """The store refused the write, e.g. a second open entry for a user."""


class NotFoundError(TimeTrackerError):
    """No record with that id is visible to the caller."""


class ExternalServiceError(TimeTrackerError):
    """Linear, Slack or the export workbook failed."""
