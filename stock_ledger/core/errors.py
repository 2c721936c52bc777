class LedgerError(Exception):
    """Base class for failures the ledger surfaces to callers.

    Each subclass carries the error ``code`` and HTTP status used in the
    structured error envelope, so the server renders it and the client maps
    it back onto the same class.
    """

    code = "ledger_error"
    status_code = 500

    def __init__(self, message: str, *, details: list[dict] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(LedgerError):
    code = "validation_error"
    status_code = 422


class NotFoundError(LedgerError):
    code = "not_found"
    status_code = 404


class ConcurrencyConflict(LedgerError):
    """The stock changed between the read and the write; re-read and retry."""

    code = "conflict"
    status_code = 409


class PersistenceError(LedgerError):
    code = "persistence_error"
    status_code = 503


ERRORS_BY_CODE: dict[str, type[LedgerError]] = {
    cls.code: cls for cls in (ValidationError, NotFoundError, ConcurrencyConflict, PersistenceError)
}
