# =============================================================================
# Usage Accounting Boundary
# =============================================================================
#
# Every completion call (success or failure) is reported as one
# UsageRecord. Persisting quota and cost data belongs to the hosting
# service; this package only defines the boundary and a logging default.
#
# Request types:
#   chat                 — batch answer generation
#   chat_stream          — streamed answer generation
#   query_preprocessing  — query variant generation
#   query_analysis       — collection routing
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageRecord:
    request_type: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    success: bool = True
    priority: int | None = None
    error: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class UsageReporter(Protocol):
    def report(self, record: UsageRecord) -> None:
        ...


class LoggingUsageReporter:
    """Default reporter: one INFO line per call, WARNING for failures."""

    def report(self, record: UsageRecord) -> None:
        if record.success:
            logger.info(
                "LLM usage type=%s model=%s priority=%s in=%d out=%d",
                record.request_type,
                record.model,
                record.priority,
                record.input_tokens,
                record.output_tokens,
            )
        else:
            logger.warning(
                "LLM call failed type=%s model=%s priority=%s error=%s",
                record.request_type,
                record.model,
                record.priority,
                record.error,
            )
