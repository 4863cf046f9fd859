"""Typed failures raised by the proxy pipeline stages."""
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    INVALID_INPUT = "InvalidInput"
    ORIGIN_FAULT = "OriginFault"
    UNSUPPORTED_MEDIA = "UnsupportedMedia"
    RESOURCE_EXCEEDED = "ResourceExceeded"
    DECODE_FAULT = "DecodeFault"
    ENCODE_FAULT = "EncodeFault"


class FetchErrorKind(str, Enum):
    INVALID_URL = "InvalidUrl"
    NETWORK_ERROR = "NetworkError"
    TIMEOUT = "Timeout"
    TOO_LARGE = "TooLarge"
    NON_SUCCESS_STATUS = "NonSuccessStatus"


class DecodeErrorKind(str, Enum):
    TRUNCATED = "Truncated"
    INVALID_DATA = "InvalidData"
    DIMENSIONS_EXCEED_LIMIT = "DimensionsExceedLimit"


class RenderErrorKind(str, Enum):
    PARSE_ERROR = "ParseError"
    UNSUPPORTED_FEATURE = "UnsupportedFeature"
    DIMENSIONS_EXCEED_LIMIT = "DimensionsExceedLimit"


class EncodeErrorKind(str, Enum):
    INVALID_DIMENSIONS = "InvalidDimensions"
    ENCODER_FAILURE = "EncoderFailure"


class ProxyError(Exception):
    """Base class. `message` is safe to show to callers; `kind` names the failure."""

    category: ErrorCategory = ErrorCategory.INVALID_INPUT

    def __init__(self, kind: Enum, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.value}: {self.message})"


class InvalidInputError(ProxyError):
    category = ErrorCategory.INVALID_INPUT

    class Kind(str, Enum):
        INVALID_PARAMETER = "InvalidParameter"

    def __init__(self, message: str):
        super().__init__(InvalidInputError.Kind.INVALID_PARAMETER, message)


class UnsupportedMediaError(ProxyError):
    category = ErrorCategory.UNSUPPORTED_MEDIA

    class Kind(str, Enum):
        UNRECOGNIZED_FORMAT = "UnrecognizedFormat"

    def __init__(self, message: str = "unsupported media type"):
        super().__init__(UnsupportedMediaError.Kind.UNRECOGNIZED_FORMAT, message)


class DeadlineExceededError(ProxyError):
    """The whole request ran longer than REQUEST_TIMEOUT."""

    category = ErrorCategory.RESOURCE_EXCEEDED

    class Kind(str, Enum):
        DEADLINE_EXCEEDED = "DeadlineExceeded"

    def __init__(self, seconds: float):
        super().__init__(DeadlineExceededError.Kind.DEADLINE_EXCEEDED, f"processing exceeded {seconds:g}s")


_FETCH_CATEGORIES = {
    FetchErrorKind.INVALID_URL: ErrorCategory.INVALID_INPUT,
    FetchErrorKind.NETWORK_ERROR: ErrorCategory.ORIGIN_FAULT,
    FetchErrorKind.TIMEOUT: ErrorCategory.ORIGIN_FAULT,
    FetchErrorKind.TOO_LARGE: ErrorCategory.RESOURCE_EXCEEDED,
    FetchErrorKind.NON_SUCCESS_STATUS: ErrorCategory.ORIGIN_FAULT,
}


class FetchError(ProxyError):
    def __init__(self, kind: FetchErrorKind, message: str, upstream_status: Optional[int] = None):
        super().__init__(kind, message)
        self.upstream_status = upstream_status

    @property
    def category(self) -> ErrorCategory:
        return _FETCH_CATEGORIES[self.kind]


class DecodeError(ProxyError):
    @property
    def category(self) -> ErrorCategory:
        if self.kind is DecodeErrorKind.DIMENSIONS_EXCEED_LIMIT:
            return ErrorCategory.RESOURCE_EXCEEDED
        return ErrorCategory.DECODE_FAULT


class RenderError(ProxyError):
    @property
    def category(self) -> ErrorCategory:
        if self.kind is RenderErrorKind.DIMENSIONS_EXCEED_LIMIT:
            return ErrorCategory.RESOURCE_EXCEEDED
        if self.kind is RenderErrorKind.UNSUPPORTED_FEATURE:
            return ErrorCategory.UNSUPPORTED_MEDIA
        return ErrorCategory.DECODE_FAULT


class EncodeError(ProxyError):
    category = ErrorCategory.ENCODE_FAULT
