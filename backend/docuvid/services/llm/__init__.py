"""LLM provider abstraction layer.

Provides a unified async interface for structured text generation across
Vertex AI and Ollama.

Usage:
    from docuvid.services.llm import get_adapter, LLMAdapter

    adapter = get_adapter("gemini-2.5-flash")
    result = await adapter.generate_text(prompt, Understanding)
"""

from docuvid.services.llm.base import LLMAdapter
from docuvid.services.llm.registry import get_adapter

__all__ = ["LLMAdapter", "get_adapter"]
