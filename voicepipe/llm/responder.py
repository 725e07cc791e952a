"""Response generator — finalized transcript in, structured answer out.

Wraps ``ChatAnthropic.with_structured_output`` around a pydantic schema so
the model's answer is validated before it reaches the session.
"""

from __future__ import annotations

import logging

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field, field_validator

from voicepipe.constants import DEFAULT_ANTHROPIC_MODEL, MAX_LLM_INPUT_CHARS, MAX_RESPONSE_BULLETS
from voicepipe.errors import ResponseGenerationError

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are a helpful assistant that provides structured responses.\n"
    "Given the user's spoken input, provide:\n"
    "1. A brief summary (1-2 sentences)\n"
    "2. Up to 3 key bullet points\n"
    "3. A suggested next action or follow-up\n\n"
    "Be concise and actionable. The user spoke this message aloud, so be "
    "conversational but helpful."
)


class StructuredResponse(BaseModel):
    summary: str = Field(description="Brief 1-2 sentence summary of the user input")
    bullets: list[str] = Field(default_factory=list, description="Up to 3 key points")
    next_action: str = Field(description="Suggested next action or follow-up")

    @field_validator("bullets")
    @classmethod
    def _cap_bullets(cls, value: list[str]) -> list[str]:
        return [b for b in value if b.strip()][:MAX_RESPONSE_BULLETS]


class ResponseGenerator:
    """Stateless structured-answer call to Claude.

    Parameters
    ----------
    api_key : str
        Anthropic API key (from ANTHROPIC_API_KEY env var).
    model : str
        Claude model id.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_ANTHROPIC_MODEL,
        max_input_chars: int = MAX_LLM_INPUT_CHARS,
        max_tokens: int = 500,
        temperature: float = 0.7,
    ) -> None:
        self._max_input_chars = max_input_chars
        self._llm = ChatAnthropic(
            model=model,
            api_key=api_key,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        self._structured = self._llm.with_structured_output(StructuredResponse)

    async def generate(self, user_input: str) -> StructuredResponse:
        """Return the structured answer for *user_input* (truncated to the input bound)."""
        if not user_input.strip():
            raise ResponseGenerationError("Empty input provided")

        truncated = user_input[: self._max_input_chars]
        if len(truncated) < len(user_input):
            logger.info("[LLM] Input truncated from %d to %d chars.", len(user_input), len(truncated))

        result = await self._structured.ainvoke([
            SystemMessage(content=_SYSTEM_PROMPT),
            HumanMessage(content=truncated),
        ])
        if result is None:
            raise ResponseGenerationError("Failed to parse LLM response")
        if not isinstance(result, StructuredResponse):
            result = StructuredResponse.model_validate(result)
        logger.info("[LLM] Summary: %.120s", result.summary)
        return result
