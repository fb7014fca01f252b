# =============================================================================
# Error Taxonomy — Upstream Failure Classification
# =============================================================================
#
# The pipeline talks to three flaky upstreams (embeddings, vector search,
# completions). Every failure is sorted into one of two buckets:
#
#   TransientUpstreamError — rate limited, overloaded, temporarily
#       unavailable. Retried with exponential backoff.
#   FatalUpstreamError     — authentication, configuration, invalid input.
#       Propagated immediately, never retried.
#
# Terminal pipeline failures are surfaced as RetrievalError (no variant
# could be searched) or GenerationError (completion failed after retries).
#
# DESIGN DECISION: Classification by SDK exception type first, then by
# message signature. The signature check mirrors what the providers put
# in their error strings ("429", "overloaded", "quota") so wrapped or
# re-raised errors from other layers still classify correctly.
# =============================================================================

from __future__ import annotations

import anthropic
import openai


class UpstreamError(Exception):
    """Base class for failures of an external collaborator."""


class TransientUpstreamError(UpstreamError):
    """Rate-limit, overload or unavailability. Safe to retry."""


class FatalUpstreamError(UpstreamError):
    """Authentication, configuration or invalid-input failure."""


class RetrievalError(Exception):
    """Every variant search failed; nothing could be retrieved."""


class GenerationError(Exception):
    """Answer generation failed after exhausting the retry budget."""


# Substrings that mark an error message as transient. Lowercase.
TRANSIENT_SIGNATURES: tuple[str, ...] = (
    "429",
    "503",
    "529",
    "overloaded",
    "quota",
    "rate limit",
    "rate_limit",
    "unavailable",
    "timeout",
    "timed out",
)

_TRANSIENT_SDK_ERRORS: tuple[type[BaseException], ...] = (
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
    anthropic.RateLimitError,
    anthropic.APITimeoutError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
)

_FATAL_SDK_ERRORS: tuple[type[BaseException], ...] = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.BadRequestError,
    openai.NotFoundError,
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
    anthropic.BadRequestError,
    anthropic.NotFoundError,
)


def is_transient_error(error: BaseException) -> bool:
    """Return True if the error belongs to the retryable class."""
    if isinstance(error, TransientUpstreamError):
        return True
    if isinstance(error, FatalUpstreamError):
        return False
    if isinstance(error, _TRANSIENT_SDK_ERRORS):
        return True
    if isinstance(error, _FATAL_SDK_ERRORS):
        return False
    message = str(error).lower()
    return any(sig in message for sig in TRANSIENT_SIGNATURES)


def classify_error(error: BaseException) -> UpstreamError:
    """
    Wrap an arbitrary exception in the matching UpstreamError subclass.

    Already-classified errors are returned unchanged. The original
    exception is kept as __cause__ so tracebacks stay intact.
    """
    if isinstance(error, UpstreamError):
        return error
    wrapped: UpstreamError
    if is_transient_error(error):
        wrapped = TransientUpstreamError(str(error))
    else:
        wrapped = FatalUpstreamError(str(error))
    wrapped.__cause__ = error
    return wrapped
