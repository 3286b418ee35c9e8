"""Exception hierarchy for the migration core."""


class MigrationError(Exception):
    """Base class for expected migration failures."""
    pass


class TemplateError(MigrationError):
    """A template is structurally invalid (duplicate steps, cycles, bad execution order)."""
    pass


class QueryError(MigrationError):
    """A query could not be built or executed."""
    pass


class ExtractionError(MigrationError):
    """
    Extracted data violates an expectation of the template.

    Raised when a step that declares its records as required extracts
    zero rows for a non-empty selection.
    """
    pass


class EngineBusyError(MigrationError):
    """An ExecutionEngine instance was asked to start a second concurrent run."""
    pass
