"""Error taxonomy shared by the embedding, storage and reranking services"""

import json
from typing import Any

VALIDATION = "VALIDATION"
UPSTREAM_ERROR = "UPSTREAM_ERROR"
UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
FORMAT_ERROR = "FORMAT_ERROR"
INTERNAL = "INTERNAL"

# Remote error_type -> HTTP status
ERROR_TYPE_STATUS = {
    "empty": 400,
    "validation": 413,
    "tokenizer": 422,
    "backend": 424,
    "overloaded": 429,
}
UNRECOGNIZED_ERROR_STATUS = 502


class RerankEngineError(Exception):
    """Base class for every error surfaced by this service"""

    code = INTERNAL
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code}


class InvalidInputError(RerankEngineError):
    """Raised when input is malformed, oversized or empty (before any network call)"""

    code = VALIDATION
    status_code = 400


class UpstreamError(RerankEngineError):
    """Raised when the remote model reported a structured failure"""

    code = UPSTREAM_ERROR

    def __init__(self, error_type: str, message: str, payload: str | None = None):
        self.error_type = error_type
        self.status_code = map_error_type(error_type)
        # Original error object, forwarded verbatim to callers
        self.payload = payload
        super().__init__(message)


class UpstreamUnavailableError(RerankEngineError):
    """Raised when the remote call failed with no parseable structured error"""

    code = UPSTREAM_UNAVAILABLE
    status_code = 502


class UpstreamTimeoutError(UpstreamUnavailableError):
    """Raised when the remote call exceeded its deadline"""

    status_code = 504


class StoreUnavailableError(RerankEngineError):
    """Raised when schema provisioning or a store operation failed"""

    code = STORE_UNAVAILABLE
    status_code = 503


class FormatError(RerankEngineError):
    """Raised when a binary embedding frame is malformed"""

    code = FORMAT_ERROR
    status_code = 400


class InternalError(RerankEngineError):
    """Anything unanticipated"""

    code = INTERNAL
    status_code = 500


def map_error_type(error_type: str | None) -> int:
    """Map a remote error_type to its HTTP status (502 when unrecognized)"""
    if not error_type:
        return UNRECOGNIZED_ERROR_STATUS
    return ERROR_TYPE_STATUS.get(error_type, UNRECOGNIZED_ERROR_STATUS)


def extract_error_object(text: str) -> tuple[dict[str, Any], str] | None:
    """
    Locate a JSON error object embedded in free text

    Takes everything from the first '{' to the last '}' and parses it.

    Returns:
        Tuple of (parsed object, raw JSON text), or None if nothing parseable was found
    """
    start = text.find("{")
    if start == -1:
        return None
    end = text.rfind("}")
    if end < start:
        return None

    raw = text[start : end + 1]
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed, raw


def error_from_text(text: str) -> RerankEngineError:
    """
    Build an error from a transport-level failure message

    Structured extraction is best effort: when no error object with an error_type
    can be recovered, the failure is reported as UPSTREAM_UNAVAILABLE with the
    original text attached.
    """
    extracted = extract_error_object(text)
    if extracted is not None:
        obj, raw = extracted
        error_type = obj.get("error_type")
        if error_type:
            return UpstreamError(
                error_type=str(error_type),
                message=str(obj.get("error") or error_type),
                payload=raw,
            )
    return UpstreamUnavailableError(f"Remote embedding call failed: {text}")


def error_from_body(body: bytes) -> UpstreamError | None:
    """
    Inspect a 200-status body for a remote error object

    Returns:
        UpstreamError when the body is a JSON object carrying error_type, otherwise None
    """
    try:
        parsed = json.loads(body)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None

    error_type = parsed.get("error_type")
    if not error_type:
        return None
    return UpstreamError(
        error_type=str(error_type),
        message=str(parsed.get("error") or error_type),
        payload=body.decode("utf-8", errors="replace"),
    )
