"""Work-context snapshots: a short natural-language summary of recent work.

The content comes from the executor; this module only frames the request
and normalizes the answer.
"""

from __future__ import annotations

from dataclasses import dataclass

from agentlink.executor import Executor
from agentlink.logger import logger
from agentlink.types import now_ms

SUMMARY_PROMPT = """Summarize my recent work activities.

Include:
- Main tasks or projects
- Key files modified
- Important commands or operations
- Overall progress

Requirements:
- 200-300 words, plain text
- Start directly with the summary content
- No preamble, meta-commentary, or phrases like "Based on..." or "Here's..."
"""

COLLECT_TIMEOUT = 60.0  # seconds
MIN_CONTEXT_LENGTH = 5


@dataclass
class WorkContextSnapshot:
    context: str
    collected_at: int
    since: int | None = None

    @property
    def is_empty(self) -> bool:
        return len(self.context.strip()) < MIN_CONTEXT_LENGTH


async def collect_work_context(
    executor: Executor | None,
    *,
    since: int | None = None,
    timeout: float = COLLECT_TIMEOUT,
) -> WorkContextSnapshot:
    """Ask the executor for a summary. Returns an empty snapshot without one.

    Executor errors propagate so the caller's governor can classify them.
    """
    collected_at = now_ms()
    if executor is None:
        logger.info("Work context skipped: no executor")
        return WorkContextSnapshot(context="", collected_at=collected_at, since=since)

    result = await executor.execute(SUMMARY_PROMPT, f"work-context-{collected_at}", timeout)
    if result.is_error:
        logger.warning("Work context collection returned an error", err=result.text[:200])
        return WorkContextSnapshot(context="", collected_at=collected_at, since=since)

    context = result.text.strip()
    logger.info("Work context collected", length=len(context))
    return WorkContextSnapshot(context=context, collected_at=collected_at, since=since)
