"""Vertex AI adapter for the LLM abstraction layer.

Wraps the google-genai client with location-aware routing and structured
JSON output. Transient API errors and unparseable responses are retried.
"""

import logging
from typing import Optional, Type

from google.genai import types as genai_types
from google.genai.errors import ClientError, ServerError
from pydantic import BaseModel, ValidationError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from docuvid.services.llm.base import LLMAdapter
from docuvid.services.vertex_client import get_vertex_client, location_for_model

logger = logging.getLogger(__name__)


def _is_retriable(exc: BaseException) -> bool:
    """Retry 5xx, 429, connection trouble and malformed structured output."""
    if isinstance(exc, ServerError):
        return True
    if isinstance(exc, ClientError):
        return getattr(exc, "code", 0) == 429
    return isinstance(exc, (ValidationError, ConnectionError, TimeoutError))


class VertexAIAdapter(LLMAdapter):
    """LLM adapter backed by Google Vertex AI (google-genai SDK)."""

    def __init__(self, model_id: str) -> None:
        self._model_id = model_id

    async def generate_text(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
        max_retries: int = 3,
    ) -> BaseModel:
        @retry(
            stop=stop_after_attempt(max_retries),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            retry=retry_if_exception(_is_retriable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def _call() -> BaseModel:
            client = get_vertex_client(location=location_for_model(self._model_id))
            config = genai_types.GenerateContentConfig(
                temperature=temperature,
                response_mime_type="application/json",
                response_schema=schema,
                system_instruction=system_prompt,
            )
            response = await client.aio.models.generate_content(
                model=self._model_id,
                contents=prompt,
                config=config,
            )
            return schema.model_validate_json(response.text)

        return await _call()
