"""Token usage value objects shared by providers, the catalog and the ledger."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """Usage counters as reported by a provider.

    Either counter may be missing; the ledger estimates whichever one the
    provider didn't supply.
    """

    input_tokens: int | None = None
    output_tokens: int | None = None

    @property
    def is_complete(self) -> bool:
        return self.input_tokens is not None and self.output_tokens is not None

    @property
    def is_empty(self) -> bool:
        return self.input_tokens is None and self.output_tokens is None

    def to_json(self) -> dict[str, int | None]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


@dataclass(slots=True)
class TokenCounter:
    """Running input/output tallies for one execution."""

    input: int = 0
    output: int = 0

    def add(self, usage: TokenUsage | None) -> None:
        if usage is None:
            return
        self.input += usage.input_tokens or 0
        self.output += usage.output_tokens or 0

    def to_json(self) -> dict[str, int]:
        return {"input": self.input, "output": self.output}
