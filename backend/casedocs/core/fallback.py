"""
Ordered Provider Fallback — the "first success" combinator

Both the OCR chain and the AI analysis chain are ordered lists of providers
behind one interface each. Instead of a try/except cascade per chain, both
iterate their providers through first_success():

  providers = [A, B, C]
      │
      ├─ A ─▶ ProviderError(rate_limit)   → recorded, try next
      ├─ B ─▶ ok                          → return (B, result); C never called
      └─ C

Failure policy:
  - ProviderError of any kind          → recorded, fall through
  - asyncio.TimeoutError (per attempt) → recorded as TIMEOUT, fall through
  - httpx transport errors             → recorded as SERVER, fall through
  - anything else                      → propagates (programming error)

If every provider fails, ChainExhaustedError carries each provider's reason
so the caller can classify the job-level failure.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Protocol, Sequence, TypeVar

import httpx

from casedocs.core.errors import ChainExhaustedError, ProviderError, ProviderErrorKind

logger = logging.getLogger(__name__)


class NamedProvider(Protocol):
    @property
    def name(self) -> str: ...


P = TypeVar("P", bound=NamedProvider)
R = TypeVar("R")


async def first_success(
    chain: str,
    providers: Sequence[P],
    attempt: Callable[[P], Awaitable[R]],
    *,
    timeout: float | None = None,
) -> tuple[P, R]:
    """
    Call attempt(provider) for each provider in order and return the first
    (provider, result) pair that does not fail.

    Args:
        chain:     Chain label used in logs and in the aggregated error.
        providers: Providers in priority order.
        attempt:   Coroutine factory; raise ProviderError to fall through.
        timeout:   Optional per-attempt deadline in seconds.

    Raises:
        ChainExhaustedError: every provider failed (or none configured).
    """
    failures: list[ProviderError] = []

    for provider in providers:
        try:
            logger.debug("%s chain | trying provider=%s", chain, provider.name)
            if timeout is not None:
                result = await asyncio.wait_for(attempt(provider), timeout=timeout)
            else:
                result = await attempt(provider)

        except ProviderError as exc:
            failure = exc

        except asyncio.TimeoutError:
            failure = ProviderError(
                provider.name, ProviderErrorKind.TIMEOUT, f"timed out after {timeout}s",
            )

        except httpx.TransportError as exc:
            kind = (
                ProviderErrorKind.TIMEOUT
                if isinstance(exc, httpx.TimeoutException)
                else ProviderErrorKind.SERVER
            )
            failure = ProviderError(provider.name, kind, f"{type(exc).__name__}: {exc}")

        else:
            logger.info("%s chain | provider=%s status=ok", chain, provider.name)
            return provider, result

        logger.warning(
            "%s chain | provider=%s status=failed kind=%s reason=%s",
            chain, provider.name, failure.kind.value, failure.message,
        )
        failures.append(failure)

    raise ChainExhaustedError(chain, failures)
