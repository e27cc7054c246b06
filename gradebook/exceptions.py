"""
Errors raised by the results engine.

NotFound and ExportFailure are meant for the caller. RenderFailure is local to
one student and is escalated (or collected) by the bundle archiver.
"""


class GradebookError(Exception):
    """Base class for results engine errors."""


class NotFound(GradebookError):
    """Unknown or malformed class, exam or student identifier."""

    def __init__(self, kind, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier!r} not found")


class RenderFailure(GradebookError):
    """A single student's document could not be produced."""

    def __init__(self, student_id, reason):
        self.student_id = student_id
        self.reason = reason
        super().__init__(f"Report for student {student_id} failed: {reason}")


class BulkJobFailure(GradebookError):
    """A class bundle was aborted. Wraps the render failures that caused it."""

    def __init__(self, message, failures=None):
        self.failures = list(failures or [])
        super().__init__(message)


class BulkJobCancelled(BulkJobFailure):
    """The caller cancelled a class bundle before it finished."""


class ExportFailure(GradebookError):
    """Analytics could not be serialized to a tabular export."""
