"""
Token counting and usage tracking.

Estimates token counts from text length; the model service does not
report exact counts for every provider.
"""

from dataclasses import dataclass

# Rough ratio for English text
CHARS_PER_TOKEN = 4


def estimate_token_count(text: str) -> int:
    """Estimate tokens as ceil(len(text) / 4)."""
    return (len(text or "") + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens

    @classmethod
    def estimate(cls, prompt_text: str, result_text: str) -> "TokenUsage":
        """Build an estimated usage from the prompt and the generated text."""
        return cls(
            prompt_tokens=estimate_token_count(prompt_text),
            completion_tokens=estimate_token_count(result_text)
        )
