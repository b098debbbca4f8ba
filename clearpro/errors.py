class CaseError(Exception):
    kind = "case_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": {"kind": self.kind, "message": self.message}}

class ValidationError(CaseError):
    """A required field is missing or malformed."""
    kind = "validation_error"
    status_code = 400

class NotFoundError(CaseError):
    kind = "not_found"
    status_code = 404

class InvalidStateError(CaseError):
    """The action is not allowed from the case's current status."""
    kind = "invalid_state"
    status_code = 409

class ConflictError(CaseError):
    kind = "conflict"
    status_code = 409

class StorageUnavailableError(CaseError):
    kind = "storage_unavailable"
    status_code = 503
