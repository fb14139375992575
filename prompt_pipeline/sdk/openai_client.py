"""
OpenAI-compatible model service.

Adapts the ``openai`` chat completions API to the executor's session
protocol. Any OpenAI-compatible endpoint works; the default base URL is
Gemini's compatibility endpoint.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from openai import APITimeoutError, OpenAI, OpenAIError

from ..core.errors import GenerationError, GenerationTimeout
from ..core.executor import ModelConfig, ModelTurn, ToolCall, ToolResult, ToolSpec

logger = logging.getLogger(__name__)

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


def _parse_arguments(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        arguments = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding malformed tool arguments: %r", raw)
        return {}
    return arguments if isinstance(arguments, dict) else {}


class OpenAIChatSession:
    """One chat conversation, holding the message history between rounds."""

    def __init__(self, client: OpenAI, config: ModelConfig, tools: Sequence[ToolSpec]):
        self.client = client
        self.config = config
        self.messages: List[Dict[str, Any]] = []
        self._tools = [
            {
                "type": "function",
                "function": {
                    "name": spec.name,
                    "description": spec.description,
                    "parameters": spec.parameters,
                },
            }
            for spec in tools
        ]
        self._pending_assistant: Optional[Dict[str, Any]] = None

    def send_prompt(self, prompt: str, timeout: Optional[float] = None) -> ModelTurn:
        self.messages.append({"role": "user", "content": prompt})
        return self._complete(timeout)

    def send_tool_results(self, results: Sequence[ToolResult], timeout: Optional[float] = None) -> ModelTurn:
        """Answer the last round's tool calls in one follow-up request.

        Tool calls without a result are removed from the assistant message
        so the request stays well-formed.
        """
        if self._pending_assistant is None:
            raise GenerationError("No tool calls are awaiting results")

        answered = {result.call.call_id for result in results}
        assistant = dict(self._pending_assistant)
        assistant["tool_calls"] = [
            call for call in assistant["tool_calls"] if call["id"] in answered
        ]
        self.messages.append(assistant)
        self._pending_assistant = None

        for result in results:
            self.messages.append({
                "role": "tool",
                "tool_call_id": result.call.call_id,
                "content": result.content,
            })
        return self._complete(timeout)

    def _complete(self, timeout: Optional[float]) -> ModelTurn:
        kwargs: Dict[str, Any] = {
            "model": self.config.model,
            "messages": list(self.messages),
        }
        if self._tools:
            kwargs["tools"] = self._tools
        if self.config.temperature is not None:
            kwargs["temperature"] = self.config.temperature
        if self.config.max_output_tokens is not None:
            kwargs["max_tokens"] = self.config.max_output_tokens
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            response = self.client.chat.completions.create(**kwargs)
        except APITimeoutError as e:
            raise GenerationTimeout("The AI service did not respond in time.") from e
        except OpenAIError as e:
            logger.error("Model API error: %s", e)
            raise GenerationError(
                "The AI service is currently unavailable or exceeded usage limits. Please try again later."
            ) from e

        if not response.choices:
            raise GenerationError("Unexpected response from the Generative AI service.")

        choice = response.choices[0]
        message = choice.message
        text = message.content or ""
        raw_calls = message.tool_calls or []

        tool_calls = tuple(
            ToolCall(
                name=call.function.name,
                arguments=_parse_arguments(call.function.arguments),
                call_id=call.id
            )
            for call in raw_calls
        )

        if tool_calls:
            self._pending_assistant = {
                "role": "assistant",
                "content": message.content,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.function.name,
                            "arguments": call.function.arguments,
                        },
                    }
                    for call in raw_calls
                ],
            }
        else:
            self.messages.append({"role": "assistant", "content": text})

        return ModelTurn(text=text, tool_calls=tool_calls, finish_reason=choice.finish_reason)


class OpenAIModelService:
    """Model service backed by an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = GEMINI_OPENAI_BASE_URL,
        client: Optional[OpenAI] = None
    ):
        """Initialize the model service.

        Args:
            api_key: API key; the SDK falls back to OPENAI_API_KEY when None
            base_url: Endpoint root; None uses the SDK default
            client: Pre-built client, mainly for tests
        """
        self.client = client or OpenAI(api_key=api_key, base_url=base_url)

    def start_session(self, config: ModelConfig, tools: Sequence[ToolSpec]) -> OpenAIChatSession:
        return OpenAIChatSession(self.client, config, tools)
