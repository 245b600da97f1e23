# omintel/errors.py
"""
Error taxonomy shared by the services and the HTTP layer.

Every error carries the HTTP status it maps to; the FastAPI exception
handler in omintel.main renders them as ``{"error": message}``.
"""

# error_message column is clipped to this many characters
MAX_ERROR_MESSAGE = 500


class OMIntelError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthError(OMIntelError):
    status_code = 401


class ValidationError(OMIntelError):
    status_code = 400


class QuotaError(OMIntelError):
    status_code = 429


class NotFoundError(OMIntelError):
    status_code = 404


class UpstreamError(OMIntelError):
    """The completion API or the PDF parser failed."""
    status_code = 500


class ExtractionError(UpstreamError):
    pass


class PersistenceError(OMIntelError):
    status_code = 500


def clip_message(message: str, limit: int = MAX_ERROR_MESSAGE) -> str:
    message = message or "Unknown error"
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."
