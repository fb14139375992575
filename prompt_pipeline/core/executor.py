"""
Generation executor.

Drives one prompt through the model service. When the model asks for
tools, every tool call of that round is executed and all results go back
to the model in a single follow-up message. The loop is bounded by a
maximum number of tool rounds and a per-prompt deadline.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .errors import GenerationError, GenerationTimeout, ToolRoundsExceeded
from .pricing import DEFAULT_MODEL

logger = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 5
DEFAULT_TIMEOUT_SECONDS = 120.0

# Finish reasons after which the model will not produce more output
TERMINAL_FINISH_REASONS = frozenset({"stop", "length", "content_filter", "safety"})


@dataclass(frozen=True)
class ToolCall:
    """A model-initiated request to invoke a named capability."""
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    call_id: Optional[str] = None


@dataclass(frozen=True)
class ToolResult:
    """Text produced by executing a tool call."""
    call: ToolCall
    content: str


@dataclass(frozen=True)
class ModelTurn:
    """One model response: text, tool calls, or both."""
    text: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    finish_reason: Optional[str] = None


@dataclass(frozen=True)
class ToolSpec:
    """Declaration of a tool the model may call."""
    name: str
    description: str
    parameters: Dict[str, Any]


@dataclass(frozen=True)
class ModelConfig:
    """Per-call model settings."""
    model: str = DEFAULT_MODEL
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    enable_tools: bool = True


class ModelSession(Protocol):
    """One conversation with the model service."""

    def send_prompt(self, prompt: str, timeout: Optional[float] = None) -> ModelTurn:
        ...

    def send_tool_results(self, results: Sequence[ToolResult], timeout: Optional[float] = None) -> ModelTurn:
        ...


class ModelService(Protocol):
    """Factory for model conversations."""

    def start_session(self, config: ModelConfig, tools: Sequence[ToolSpec]) -> ModelSession:
        ...


class Tool(Protocol):
    """A capability the model can invoke by name."""
    spec: ToolSpec

    def __call__(self, **arguments: Any) -> str:
        ...


class ToolRegistry:
    """Fixed set of tools the executor may run on the model's behalf."""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: Dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.spec.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.spec.name}")
        self._tools[tool.spec.name] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def specs(self) -> List[ToolSpec]:
        return [tool.spec for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


class GenerationExecutor:
    """Runs a prompt to completion, including the tool-call loop."""

    def __init__(
        self,
        model_service: ModelService,
        tool_registry: Optional[ToolRegistry] = None,
        max_tool_rounds: int = MAX_TOOL_ROUNDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        if max_tool_rounds < 0:
            raise ValueError("max_tool_rounds must be >= 0")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.model_service = model_service
        self.tool_registry = tool_registry or ToolRegistry()
        self.max_tool_rounds = max_tool_rounds
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    def execute(self, prompt: str, model_config: Optional[ModelConfig] = None) -> str:
        """Generate text for a prompt.

        Args:
            prompt: Prompt text, sent as-is
            model_config: Model settings; defaults to ModelConfig()

        Returns:
            All text fragments the model produced, in arrival order

        Raises:
            GenerationTimeout: If the deadline passes
            ToolRoundsExceeded: If the model still asks for tools after
                max_tool_rounds rounds
            GenerationError: If no usable text was produced
        """
        config = model_config or ModelConfig()
        deadline = self._clock() + self.timeout_seconds
        tools = self.tool_registry.specs() if config.enable_tools else []

        session = self.model_service.start_session(config, tools)
        turn = session.send_prompt(prompt, timeout=self._remaining(deadline))

        fragments: List[str] = []
        rounds = 0
        while True:
            if turn.text:
                fragments.append(turn.text)

            if not turn.tool_calls or turn.finish_reason in TERMINAL_FINISH_REASONS:
                break

            if rounds >= self.max_tool_rounds:
                raise ToolRoundsExceeded(
                    f"Model requested tools after {self.max_tool_rounds} rounds"
                )
            rounds += 1

            results = self._run_tool_calls(turn.tool_calls)
            if not results:
                # Only unknown tools were requested; nothing to send back
                break

            turn = session.send_tool_results(results, timeout=self._remaining(deadline))

        text = "".join(fragments)
        if not text.strip():
            raise GenerationError("Empty response from AI service")
        return text

    def _remaining(self, deadline: float) -> float:
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise GenerationTimeout(
                f"Generation exceeded {self.timeout_seconds:g}s timeout"
            )
        return remaining

    def _run_tool_calls(self, calls: Sequence[ToolCall]) -> List[ToolResult]:
        results = []
        for call in calls:
            tool = self.tool_registry.get(call.name)
            if tool is None:
                logger.warning("Ignoring call to unknown tool %r", call.name)
                continue

            logger.info("Running tool %s", call.name)
            try:
                content = tool(**call.arguments)
            except Exception as e:
                # The model still needs an answer for this call
                logger.warning("Tool %s failed: %s", call.name, e)
                content = f"Tool {call.name} failed: {e}"
            results.append(ToolResult(call=call, content=content))
        return results
