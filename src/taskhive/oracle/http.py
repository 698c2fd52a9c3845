"""OpenAI-compatible chat completions oracle over httpx."""

from __future__ import annotations

import json
from typing import Any

import httpx
import structlog

from taskhive.oracle.base import OracleResult, TaskOracle, parse_oracle_payload

logger = structlog.get_logger(__name__)


class ChatCompletionsOracle(TaskOracle):
    """
    Asks a ``/chat/completions`` endpoint for a JSON task batch.

    The snapshot travels as its own user message so the model sees it
    verbatim; the reply must be a JSON object ``{"tasks": [...], "rationale"}``.
    """

    name = "chat_completions"

    DEFAULT_BASE_URL = "https://api.openai.com/v1"
    MAX_TOKENS = 700  # roughly ten tasks plus rationale

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = client is None

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def build_messages(
        self, snapshot: dict[str, Any], instructions: str, max_tasks: int
    ) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": instructions},
            {
                "role": "user",
                "content": (
                    "Here is the current status snapshot in JSON. "
                    f"Propose up to {max_tasks} high-value tasks. "
                    "If nothing needs to be done, respond with an empty tasks array."
                ),
            },
            {"role": "user", "content": json.dumps(snapshot, default=str)},
        ]

    async def generate(
        self,
        snapshot: dict[str, Any],
        instructions: str,
        max_tasks: int,
        temperature: float,
    ) -> OracleResult:
        response = await self._client.post(
            f"{self.base_url}/chat/completions",
            headers=self._headers(),
            json={
                "model": self.model,
                "messages": self.build_messages(snapshot, instructions, max_tasks),
                "temperature": temperature,
                "max_tokens": self.MAX_TOKENS,
                "response_format": {"type": "json_object"},
            },
        )
        response.raise_for_status()
        data = response.json()

        content = data.get("choices", [{}])[0].get("message", {}).get("content")
        if not content:
            logger.warning("oracle_empty_reply", model=self.model)
            return OracleResult(tasks=[], rationale="No response")
        return parse_oracle_payload(content, max_tasks)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
