"""
Classification of RPC failures.

Every exception raised by a chain call is classified exactly once into an
ErrorKind; the RPC access layer routes retries on that value alone.
"""

import re
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional

import aiohttp
import httpx


class ErrorKind(Enum):
    RATE_LIMITED = "rate_limited"
    BENIGN_TRANSIENT = "benign_transient"
    OTHER_TRANSIENT = "other_transient"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class ErrorClassification:
    kind: ErrorKind
    code: Optional[int] = None

    @property
    def is_retryable(self) -> bool:
        return self.kind is not ErrorKind.PERMANENT


RATE_LIMIT_CODE = 429
BENIGN_HTTP_CODES = (502, 503, 504, 408, 410)

_RATE_LIMIT_PHRASES = ("too many requests", "rate limit", "rate-limit", "ratelimit")

# A bare number in a message is only an HTTP status next to an HTTP marker
# ("HTTP 503", "status code: 503", "503 Server Error") or its reason phrase.
_STATUS_MARKER_RE = re.compile(
    r"(?:\bhttp(?:/[\d.]+)?|\bstatus(?:[ _]?code)?)\W{0,3}(\d{3})\b"
    r"|\b(\d{3})\W{1,3}(?:server|client) error\b"
)
_STATUS_REASON_RE = re.compile(
    r"\b(\d{3})\W{1,3}(request time-?out|gone|too many requests|bad gateway"
    r"|service unavailable|gateway time-?out)\b"
)
_REASON_CODES = {
    "request timeout": 408,
    "gone": 410,
    "too many requests": 429,
    "bad gateway": 502,
    "service unavailable": 503,
    "gateway timeout": 504,
}

# web3 exception class names; matched by name so provider-specific
# subclasses are caught as well.
_TRANSIENT_WEB3_ERRORS = {
    "ProviderConnectionError",
    "BadResponseFormat",
    "TimeExhausted",
}

# Contract reverts carry arbitrary text; never route them as transport noise.
_PERMANENT_WEB3_ERRORS = {
    "ContractLogicError",
    "ContractCustomError",
    "ContractPanicError",
}

_TRANSPORT_ERRORS = (
    aiohttp.ClientError,
    httpx.TransportError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)


def iter_error_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield the exception and everything reachable via __cause__ / __context__."""
    seen = set()
    pending = [exc]
    while pending:
        current = pending.pop(0)
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        pending.append(current.__cause__)
        pending.append(current.__context__)


def _http_status(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    status_code = getattr(response, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    return None


def _message_status(message: str) -> Optional[int]:
    """HTTP status quoted in a lower-cased error message, None without HTTP context."""
    match = _STATUS_MARKER_RE.search(message)
    if match:
        return int(match.group(1) or match.group(2))
    for match in _STATUS_REASON_RE.finditer(message):
        code = int(match.group(1))
        if _REASON_CODES.get(match.group(2).replace("-", "")) == code:
            return code
    return None


def _class_names(exc: BaseException) -> set:
    return {cls.__name__ for cls in type(exc).__mro__}


def classify_error(exc: BaseException) -> ErrorClassification:
    """
    Classify an RPC failure by inspecting the whole cause chain.

    Precedence: contract revert (permanent), rate limit, benign provider
    hiccup, other transport failure, permanent.
    """
    chain = list(iter_error_chain(exc))

    for err in chain:
        if _class_names(err) & _PERMANENT_WEB3_ERRORS:
            return ErrorClassification(ErrorKind.PERMANENT)

    statuses = [(_http_status(err) or _message_status(str(err).lower()), err) for err in chain]

    for status, err in statuses:
        if status == RATE_LIMIT_CODE:
            return ErrorClassification(ErrorKind.RATE_LIMITED, RATE_LIMIT_CODE)
        message = str(err).lower()
        if any(phrase in message for phrase in _RATE_LIMIT_PHRASES):
            return ErrorClassification(ErrorKind.RATE_LIMITED, RATE_LIMIT_CODE)

    for status, _ in statuses:
        if status in BENIGN_HTTP_CODES:
            return ErrorClassification(ErrorKind.BENIGN_TRANSIENT, status)

    for err in chain:
        if isinstance(err, _TRANSPORT_ERRORS) or _class_names(err) & _TRANSIENT_WEB3_ERRORS:
            return ErrorClassification(ErrorKind.OTHER_TRANSIENT)

    return ErrorClassification(ErrorKind.PERMANENT)
