class BackfillError(RuntimeError):
    pass


class SelectionError(BackfillError):
    """Candidate rows could not be fetched; fatal to the whole run."""


class InvalidIdentifierError(BackfillError, ValueError):
    """A resolved identifier does not carry a parsable positive number."""
