from sandbox_engine.agent.completion import (
    CompletionStrategy,
    KeywordCompletionHeuristic,
    always_complete,
    result_text,
)
from sandbox_engine.agent.decision_loop import (
    DecisionContext,
    DecisionLoop,
    LoopOutcome,
    LoopState,
    default_decision,
    parse_decision,
)


__all__ = [
    "CompletionStrategy",
    "DecisionContext",
    "DecisionLoop",
    "KeywordCompletionHeuristic",
    "LoopOutcome",
    "LoopState",
    "always_complete",
    "default_decision",
    "parse_decision",
    "result_text",
]
