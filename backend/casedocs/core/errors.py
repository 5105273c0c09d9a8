"""
Pipeline error taxonomy.

Provider-level errors (ProviderError) are raised by a single OCR or AI
provider and are always caught by the fallback chain that called it. Only
when every provider has failed does the chain raise ChainExhaustedError,
which the queue processor turns into a job transition:

    ProviderError ──▶ first_success() ──▶ ChainExhaustedError ──▶ classify_failure()
                                                                     │
                                               transient ◀───────────┴──────▶ terminal
                                          (reschedule w/ backoff)          (job failed)
"""

from __future__ import annotations

from enum import Enum

import httpx
from sqlalchemy.exc import OperationalError


class ProviderErrorKind(str, Enum):
    AUTH         = "auth"           # bad/missing credentials — skip provider
    RATE_LIMIT   = "rate_limit"     # 429 — try next provider immediately
    SERVER       = "server"         # 5xx / transport failure
    TIMEOUT      = "timeout"        # call exceeded its deadline
    EMPTY_RESULT = "empty_result"   # succeeded but returned too little
    REJECTED     = "rejected"       # definitive 4xx / unprocessable input


# Kinds that indicate a capacity problem rather than an unusable input.
TRANSIENT_KINDS = frozenset({
    ProviderErrorKind.RATE_LIMIT,
    ProviderErrorKind.SERVER,
    ProviderErrorKind.TIMEOUT,
})


class ProviderError(Exception):
    """A single provider failed; the chain moves on to the next one."""

    def __init__(self, provider: str, kind: ProviderErrorKind, message: str = "") -> None:
        self.provider = provider
        self.kind = kind
        self.message = message or kind.value
        super().__init__(f"{provider}: {kind.value} ({self.message})")


class PipelineError(Exception):
    """Job-level failure with an explicit retry classification."""

    transient: bool = False

    def __init__(self, message: str, *, transient: bool | None = None) -> None:
        super().__init__(message)
        if transient is not None:
            self.transient = transient


class TerminalPipelineError(PipelineError):
    transient = False


class TransientPipelineError(PipelineError):
    transient = True


class ChainExhaustedError(PipelineError):
    """Every provider in a fallback chain failed."""

    def __init__(self, chain: str, failures: list[ProviderError]) -> None:
        self.chain = chain
        self.failures = list(failures)
        if not self.failures:
            message = f"No {chain} provider configured"
        else:
            reasons = "; ".join(
                f"{f.provider}: {f.kind.value} ({f.message})" for f in self.failures
            )
            message = f"All {chain} providers failed. {reasons}"
        super().__init__(
            message,
            transient=any(f.kind in TRANSIENT_KINDS for f in self.failures),
        )

    @property
    def kinds(self) -> list[ProviderErrorKind]:
        return [f.kind for f in self.failures]


def classify_http_status(status_code: int) -> ProviderErrorKind:
    """Map an HTTP status from a provider to a ProviderErrorKind."""
    if status_code in (401, 403):
        return ProviderErrorKind.AUTH
    if status_code == 429:
        return ProviderErrorKind.RATE_LIMIT
    if status_code >= 500:
        return ProviderErrorKind.SERVER
    return ProviderErrorKind.REJECTED


def classify_failure(exc: BaseException) -> tuple[bool, str]:
    """
    Classify an exception raised while processing a job.

    Returns (transient, message). Unknown exceptions are terminal so that a
    programming error cannot keep a job cycling through the retry path.
    """
    if isinstance(exc, PipelineError):
        return exc.transient, str(exc)
    if isinstance(exc, FileNotFoundError):
        return False, f"Source file not found: {exc}"
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return (code == 429 or code >= 500), f"HTTP {code} while fetching {exc.request.url}"
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True, f"Network error: {exc.__class__.__name__}: {exc}"
    if isinstance(exc, OperationalError):
        return True, f"Database unavailable: {exc.__class__.__name__}"
    return False, f"{exc.__class__.__name__}: {exc}"
