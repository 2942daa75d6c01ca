"""Response shaper: passthrough, truncation, or model-assisted summarization."""

from __future__ import annotations

import logging
import math
import re
from typing import Optional

from toolgate.providers.base import CompletionClient, CompletionError
from toolgate.validation.config import FilterPolicy

logger = logging.getLogger(__name__)

# Upper bound on what is sent to the completion API, regardless of policy.
MAX_SUMMARY_INPUT_CHARS = 200000

_MARKER_RE = re.compile(r"\n\n\[truncated: original length (\d+) chars\]$")


def truncation_marker(original_length: int) -> str:
    return f"\n\n[truncated: original length {original_length} chars]"


def truncate(content: str, max_chars: int) -> str:
    """
    Cut ``content`` to ``max_chars`` characters and append a marker.

    Text that already ends in a marker is measured by its payload, so
    re-truncating at the same limit returns it unchanged.
    """
    match = _MARKER_RE.search(content)
    if match:
        payload = content[: match.start()]
        if len(payload) <= max_chars:
            return content
        return payload[:max_chars] + truncation_marker(int(match.group(1)))

    if len(content) <= max_chars:
        return content
    return content[:max_chars] + truncation_marker(len(content))


def _purpose_prompt(purpose: str, budget: int) -> str:
    return (
        "You extract information for a user who is working on this task:\n\n"
        f"PURPOSE: {purpose}\n\n"
        "From the content below, keep only the information directly relevant to that purpose.\n"
        "Rules:\n"
        f"1. Output at most {budget} characters.\n"
        "2. If the content is JSON or other structured data, keep the key identifying fields "
        "(id, name, url, and similar) with their original names.\n"
        "3. Output the result only, with no explanation."
    )


def _generic_prompt(budget: int) -> str:
    return (
        f"Condense the content below into a summary of at most {budget} characters.\n"
        "Rules:\n"
        "1. Keep the most important information.\n"
        "2. If the content is JSON, output a reduced JSON document with the same structure.\n"
        "3. Keep key field names (id, name, url, and similar) unchanged.\n"
        "4. Output the summary only, with no explanation."
    )


class ResponseShaper:
    """
    Decides how a response reaches the agent and applies that decision.

    Order of checks:

    1. ``force_summarize``: always summarize.
    2. Filtering disabled or no credential: truncate if over the limit.
    3. At or under ``max_response_chars``: unchanged.
    4. Under ``summarize_threshold``: truncate.
    5. Otherwise summarize.

    Summarization is best-effort; any completion failure falls back to
    truncation.
    """

    def __init__(self, policy: FilterPolicy, client: Optional[CompletionClient] = None):
        self.policy = policy
        self.client = client

    @property
    def can_summarize(self) -> bool:
        return self.client is not None and self.client.available

    def truncate(self, content: str) -> str:
        return truncate(content, self.policy.max_response_chars)

    async def shape(self, content: str, purpose: Optional[str] = None) -> str:
        policy = self.policy

        if policy.force_summarize:
            return await self.summarize(content, purpose)

        if not policy.enabled or not self.can_summarize:
            return self.truncate(content)

        if len(content) <= policy.max_response_chars:
            return content

        if len(content) < policy.summarize_threshold:
            return self.truncate(content)

        return await self.summarize(content, purpose)

    async def summarize(self, content: str, purpose: Optional[str] = None) -> str:
        """Ask the completion API for a budgeted summary, truncating on failure."""
        if not self.can_summarize:
            return self.truncate(content)

        budget = self.policy.max_response_chars
        source = content
        if len(source) > MAX_SUMMARY_INPUT_CHARS:
            source = source[:MAX_SUMMARY_INPUT_CHARS] + (
                f"\n\n[content truncated for summarization, original length {len(content)} chars]"
            )

        system = _purpose_prompt(purpose, budget) if purpose else _generic_prompt(budget)

        try:
            response = await self.client.complete(
                source,
                system=system,
                max_tokens=math.ceil(budget / 2),
                temperature=0.3,
            )
        except CompletionError as e:
            logger.warning("Summarization failed, falling back to truncation: %s", e)
            return self.truncate(content)

        return response.content
