"""Task-completion heuristics for the decision loop.

A completion strategy looks at the text of a successful tool result and
answers one question: can the loop stop here? The default strategy is
keyword based and therefore approximate. Known tolerances:

- false negative: file content that happens to contain "error" (a
  source file with error handling) keeps the loop going;
- false positive: output saying "created" for an intermediate step ends
  the loop early.

Either way the loop's retry budget still applies.
"""

import json
from typing import Any, Callable, Iterable, List, Optional

from sandbox_engine.config import LoopSettings, config


CompletionStrategy = Callable[[str], bool]


def result_text(value: Any) -> str:
    """Render tool output (text or structured data) for marker scanning."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


class KeywordCompletionHeuristic:
    """Complete when a success marker is present and no failure marker is."""

    def __init__(
        self,
        success_markers: Optional[Iterable[str]] = None,
        failure_markers: Optional[Iterable[str]] = None,
        settings: Optional[LoopSettings] = None,
    ):
        settings = settings or config.loop
        self.success_markers: List[str] = [
            m.lower()
            for m in (success_markers if success_markers is not None else settings.success_markers)
        ]
        self.failure_markers: List[str] = [
            m.lower()
            for m in (failure_markers if failure_markers is not None else settings.failure_markers)
        ]

    def count(self, text: str, markers: List[str]) -> int:
        lowered = text.lower()
        return sum(1 for marker in markers if marker and marker in lowered)

    def __call__(self, output: str) -> bool:
        if not output:
            return False
        if self.count(output, self.failure_markers):
            return False
        return self.count(output, self.success_markers) > 0


def always_complete(output: str) -> bool:
    """Stop after the first successful tool round."""
    return True
