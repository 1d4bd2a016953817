"""
Token counting heuristics.

Estimates token counts without a real tokenizer. Latin-script text packs
roughly four characters per token; every other character counts as one.
"""

import re
from dataclasses import dataclass

_COMPACT_CHARS = re.compile(r"[A-Za-z0-9\s]")


@dataclass(frozen=True)
class TokenUsage:
    """Estimated token counts for a single request."""
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens (input + output)."""
        return self.input_tokens + self.output_tokens


def estimate_token_count(text: str) -> int:
    """Estimate tokens for a text string.

    Args:
        text: Arbitrary text, possibly empty

    Returns:
        ceil(ascii_chars / 4 + other_chars)
    """
    if not text:
        return 0
    ascii_chars = len(_COMPACT_CHARS.findall(text))
    other_chars = len(text) - ascii_chars
    # other_chars is integral, so only the ascii share needs rounding up
    return other_chars + -(-ascii_chars // 4)
