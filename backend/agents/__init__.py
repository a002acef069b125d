"""Agent contracts, prompts and LLM integration.

This module exports the pieces shared by every agent:
- System prompts for each analytical role
- LLM client utilities with retry logic and metrics tracking

Agent implementations live in ``agents.catalog`` and the input/output
contracts in ``agents.schemas``; import those modules directly.
"""

from agents.prompts import (
    AGENT_PROMPTS,
    PERSPECTIVE_INSTRUCTIONS,
    get_agent_system_prompt,
    get_perspective_prompt,
)
from agents.utils import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    extract_json_from_response,
    text_response,
)

__all__ = [
    # Prompts
    "AGENT_PROMPTS",
    "PERSPECTIVE_INSTRUCTIONS",
    "get_agent_system_prompt",
    "get_perspective_prompt",
    # Utils
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "extract_json_from_response",
    "text_response",
]
