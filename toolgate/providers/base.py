"""
toolgate Completion Provider - OpenAI-compatible chat completions client.

The gateway never runs inference itself. Summarization and tool ranking go
through this client, which speaks the ``/chat/completions`` protocol shared by
OpenAI, OpenRouter and most self-hosted gateways.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from toolgate.validation.config import CompletionSettings


class CompletionError(Exception):
    """Raised when a completion request fails or returns no content."""

    pass


@dataclass
class CompletionResponse:
    """Response from the completion API."""

    content: str
    model: str
    token_usage: int = 0
    finish_reason: str = "stop"
    metadata: Dict[str, Any] = field(default_factory=dict)


class CompletionClient:
    """
    Async client for an OpenAI-compatible chat completions API.

    Example:
        >>> client = CompletionClient(settings)
        >>> response = await client.complete("Summarize this", system="Be brief")
        >>> print(response.content)
    """

    def __init__(
        self,
        settings: CompletionSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            settings: Credential, endpoint and default model.
            transport: Optional httpx transport (used by tests).
        """
        self.settings = settings
        self._transport = transport

    @property
    def available(self) -> bool:
        """True when a credential is configured."""
        return bool(self.settings.api_key)

    async def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        model: Optional[str] = None,
        **kwargs,
    ) -> CompletionResponse:
        """
        Generate a completion for the given prompt.

        Args:
            prompt: User message content.
            system: Optional system instruction.
            model: Model override (defaults to the configured model).
            **kwargs: ``max_tokens`` and ``temperature``.

        Returns:
            CompletionResponse with non-empty content.

        Raises:
            CompletionError: On a missing credential, transport failure,
                error status, malformed body, or empty content.
        """
        if not self.available:
            raise CompletionError("LLM API key not configured. Set LLM_API_KEY or OPENAI_API_KEY.")

        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        payload: Dict[str, Any] = {
            "model": model or self.settings.model,
            "messages": messages,
        }
        if "max_tokens" in kwargs:
            payload["max_tokens"] = kwargs["max_tokens"]
        if "temperature" in kwargs:
            payload["temperature"] = kwargs["temperature"]

        try:
            async with httpx.AsyncClient(
                base_url=self.settings.base_url,
                timeout=self.settings.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    "/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self.settings.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise CompletionError(f"Completion API returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise CompletionError(f"Completion request failed: {e}") from e
        except ValueError as e:
            raise CompletionError(f"Completion API returned invalid JSON: {e}") from e

        try:
            choice = data["choices"][0]
            content = choice["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise CompletionError(f"Unexpected completion response shape: {e}") from e

        if not isinstance(content, str):
            raise CompletionError(
                f"Completion API returned non-text content ({type(content).__name__})"
            )
        if not content.strip():
            raise CompletionError("Completion API returned empty content")

        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        total_tokens = usage.get("total_tokens")
        return CompletionResponse(
            content=content,
            model=str(data.get("model") or payload["model"]),
            token_usage=total_tokens if isinstance(total_tokens, int) else 0,
            finish_reason=str(choice.get("finish_reason") or "stop"),
        )
