"""Ollama adapter for the LLM abstraction layer.

Connects via ollama.AsyncClient with optional auth headers. Structured output
uses format='json' plus a schema description in the system prompt, since not
every Ollama deployment enforces a full JSON schema passed as format.
"""

import json
import logging
from typing import Optional, Type

from ollama import AsyncClient, ResponseError
from pydantic import BaseModel, ValidationError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from docuvid.services.llm.base import LLMAdapter

logger = logging.getLogger(__name__)


def _schema_instruction(schema: Type[BaseModel]) -> str:
    """Compact instruction describing the JSON object the model must return."""
    schema_json = json.dumps(schema.model_json_schema(), indent=2)
    return (
        "\n\nRespond with a single JSON object only (no markdown, no commentary). "
        f"It must conform to this schema:\n{schema_json}\n"
        "String fields must be strings, not arrays."
    )


def _strip_code_fence(raw: str) -> str:
    stripped = raw.strip()
    if not stripped.startswith("```"):
        return raw
    # Drop the opening fence line (``` or ```json)
    stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
    if stripped.endswith("```"):
        stripped = stripped[:-3].rstrip()
    return stripped


class OllamaAdapter(LLMAdapter):
    """LLM adapter backed by a local or cloud Ollama instance.

    The "ollama/" prefix is stripped before the model name reaches the
    library; stream=False keeps responses as plain objects.
    """

    def __init__(
        self,
        model_id: str,
        base_url: str = "http://localhost:11434",
        api_key: Optional[str] = None,
    ) -> None:
        self._ollama_model = model_id.removeprefix("ollama/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = AsyncClient(host=base_url, headers=headers)

    async def generate_text(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
        max_retries: int = 3,
    ) -> BaseModel:
        system_content = (system_prompt or "") + _schema_instruction(schema)

        @retry(
            stop=stop_after_attempt(max_retries),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            retry=retry_if_exception_type((ResponseError, ValidationError, ConnectionError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def _call() -> BaseModel:
            response = await self._client.chat(
                model=self._ollama_model,
                messages=[
                    {"role": "system", "content": system_content.strip()},
                    {"role": "user", "content": prompt},
                ],
                format="json",
                options={"temperature": temperature},
                stream=False,
            )
            return schema.model_validate_json(_strip_code_fence(response.message.content))

        return await _call()
