# errors.py — Domain error taxonomy shared by every access surface
from typing import Optional

# ============================================================
# ERROR CODE CATALOGUE
# code -> default message + HTTP status used by the REST surface
# ============================================================

ERROR_CATALOGUE = {
    "not_found": {"message": "Resource not found", "http_status": 404},
    "validation": {"message": "Invalid input", "http_status": 400},
    "duplicate": {"message": "Resource already exists", "http_status": 409},
    "internal": {"message": "Internal server error", "http_status": 500},
}


class BoardError(Exception):
    """Base class for failures the business layer reports to callers."""

    code = "internal"

    def __init__(self, message: Optional[str] = None):
        self.message = message or ERROR_CATALOGUE[self.code]["message"]
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return ERROR_CATALOGUE[self.code]["http_status"]

    def to_dict(self) -> dict:
        return {"code": self.code, "error": self.message}


class NotFoundError(BoardError):
    code = "not_found"


class ValidationError(BoardError):
    code = "validation"


class DuplicateError(BoardError):
    code = "duplicate"
