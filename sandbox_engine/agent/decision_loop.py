"""Bounded-retry agent decision loop.

Each iteration asks an external decide capability what to do next:
call tools, answer the user, or ask the user for input. Tool rounds are
judged by a swappable completion strategy. Every iteration that does
not terminate the loop uses up one retry, so the loop always ends within
``max_retries`` iterations.
"""

import inspect
import json
import re
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from sandbox_engine.agent.completion import (
    CompletionStrategy,
    KeywordCompletionHeuristic,
    result_text,
)
from sandbox_engine.config import LoopSettings, config
from sandbox_engine.exceptions import ParsingError
from sandbox_engine.logger import logger
from sandbox_engine.schema import Decision, DecisionRecord
from sandbox_engine.tool.base import ExecutionContext, ToolExecutionResult
from sandbox_engine.tool.dispatcher import ToolDispatcher


_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class LoopState(str, Enum):
    ANALYZING = "analyzing"
    DONE = "done"
    AWAITING_USER = "awaiting_user"
    FAILED = "failed"


class DecisionContext(BaseModel):
    """What the decide and respond capabilities get to see."""

    user_request: str
    retry_count: int = 0
    last_error: Optional[str] = None
    sandbox_snapshot: Dict[str, Any] = Field(default_factory=dict)
    history: List[DecisionRecord] = Field(default_factory=list)
    available_tools: List[Dict[str, Any]] = Field(default_factory=list)
    tool_results: List[ToolExecutionResult] = Field(default_factory=list)


class LoopOutcome(BaseModel):
    success: bool
    message: str
    needs_user_input: bool = False
    state: LoopState
    attempts: int = 0
    last_error: Optional[str] = None
    decisions: List[DecisionRecord] = Field(default_factory=list)
    tool_results: List[ToolExecutionResult] = Field(default_factory=list)


Decider = Callable[[DecisionContext], Union[Any, Awaitable[Any]]]
Responder = Callable[[DecisionContext], Union[str, Awaitable[str]]]
SnapshotProvider = Callable[[], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _normalise_tool_calls(calls: Any) -> List[Dict[str, Any]]:
    normalised = []
    for call in calls or []:
        if not isinstance(call, dict):
            raise ParsingError(f"Tool call must be an object, got {type(call).__name__}")
        tool_id = call.get("tool_id") or call.get("name") or call.get("tool")
        params = call.get("params", call.get("args", call.get("arguments", {})))
        if isinstance(params, str):
            try:
                params = json.loads(params) if params.strip() else {}
            except json.JSONDecodeError as e:
                raise ParsingError(f"Tool call arguments are not valid JSON: {e.msg}")
        normalised.append({"tool_id": tool_id, "params": params})
    return normalised


def parse_decision(raw: Any, retry_count: int = 0) -> DecisionRecord:
    """Turn whatever the decide capability returned into a DecisionRecord.

    Accepts a DecisionRecord, a mapping, or JSON text (optionally inside
    a Markdown code fence).

    Raises:
        ParsingError: If no valid decision can be read.
    """
    if isinstance(raw, DecisionRecord):
        return raw.model_copy(update={"retry_count": retry_count})

    if isinstance(raw, str):
        text = raw.strip()
        fenced = _FENCE.match(text)
        if fenced:
            text = fenced.group(1)
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParsingError(f"Decision is not valid JSON: {e.msg}")

    if not isinstance(raw, dict):
        raise ParsingError(f"Decision must be an object, got {type(raw).__name__}")

    data = dict(raw)
    data["retry_count"] = retry_count
    data["tool_calls"] = _normalise_tool_calls(data.get("tool_calls"))
    try:
        return DecisionRecord.model_validate(data)
    except PydanticValidationError as e:
        raise ParsingError(f"Invalid decision: {e.errors()[0].get('msg', str(e))}")


def default_decision(
    user_request: str, retry_count: int, last_error: Optional[str] = None
) -> DecisionRecord:
    """Fallback used when the decision cannot be parsed.

    Act on the first attempt, answer the user on any later one.
    """
    return DecisionRecord(
        reasoning=f"Analysing user request: {user_request}",
        decision=Decision.CONTINUE_TOOLS if retry_count == 0 else Decision.RESPOND_TO_USER,
        confidence=0.5,
        retry_count=retry_count,
        last_error=last_error,
    )


class DecisionLoop:
    """Alternates between deciding and invoking tools until done.

    Attributes:
        dispatcher: Executes the tools a decision names.
        decide: External decision capability.
        respond: External response generator for ``respond_to_user``.
        completion: Strategy judging whether a tool round finished the task.
        snapshot: Provides the sandbox snapshot handed to ``decide``.
        max_retries: Iteration budget.
    """

    def __init__(
        self,
        dispatcher: ToolDispatcher,
        decide: Decider,
        respond: Optional[Responder] = None,
        completion: Optional[CompletionStrategy] = None,
        snapshot: Optional[SnapshotProvider] = None,
        max_retries: Optional[int] = None,
        tool_context: Optional[ExecutionContext] = None,
        settings: Optional[LoopSettings] = None,
    ):
        self.settings = settings or config.loop
        self.dispatcher = dispatcher
        self.decide = decide
        self.respond = respond
        self.completion = completion or KeywordCompletionHeuristic(settings=self.settings)
        self.snapshot = snapshot
        self.max_retries = max_retries if max_retries is not None else self.settings.max_retries
        self.tool_context = tool_context
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")

    async def _take_snapshot(self) -> Dict[str, Any]:
        if self.snapshot is None:
            return {}
        try:
            return await _maybe_await(self.snapshot()) or {}
        except Exception as e:
            logger.warning(f"Sandbox snapshot failed: {e}")
            return {"error": str(e)}

    async def _decide(self, context: DecisionContext) -> DecisionRecord:
        try:
            raw = await _maybe_await(self.decide(context))
            return parse_decision(raw, context.retry_count)
        except ParsingError as e:
            logger.warning(f"Unparseable decision, using default: {e.message}")
            return default_decision(
                context.user_request, context.retry_count, context.last_error
            )

    async def run(
        self, user_request: str, context: Optional[ExecutionContext] = None
    ) -> LoopOutcome:
        """Drive the loop for one user request.

        Args:
            user_request: What the user asked for.
            context: Caller context passed to every tool call.

        Returns:
            LoopOutcome: Always returned, including when the budget runs out.
        """
        tool_context = context or self.tool_context or ExecutionContext()
        retry_count = 0
        last_error: Optional[str] = None
        decisions: List[DecisionRecord] = []
        tool_results: List[ToolExecutionResult] = []

        def outcome(**kwargs: Any) -> LoopOutcome:
            return LoopOutcome(
                attempts=retry_count + 1,
                last_error=last_error,
                decisions=list(decisions),
                tool_results=list(tool_results),
                **kwargs,
            )

        while retry_count < self.max_retries:
            logger.info(f"Decision loop iteration #{retry_count + 1}/{self.max_retries}")
            decision_context = DecisionContext(
                user_request=user_request,
                retry_count=retry_count,
                last_error=last_error,
                sandbox_snapshot=await self._take_snapshot(),
                history=list(decisions),
                available_tools=self.dispatcher.registry.to_params(),
                tool_results=list(tool_results),
            )

            try:
                record = await self._decide(decision_context)
            except Exception as e:
                logger.error(f"Decision capability failed: {e}")
                last_error = str(e) or type(e).__name__
                retry_count += 1
                continue

            decisions.append(record)
            logger.info(
                f"Decision: {record.decision.value} (confidence {record.confidence:.2f})"
            )

            if record.decision == Decision.NEED_INPUT:
                return outcome(
                    success=False,
                    message=record.reasoning,
                    needs_user_input=True,
                    state=LoopState.AWAITING_USER,
                )

            if record.decision == Decision.RESPOND_TO_USER:
                if self.respond is None:
                    message = record.reasoning
                else:
                    try:
                        message = await _maybe_await(self.respond(decision_context))
                    except Exception as e:
                        logger.error(f"Response generation failed: {e}")
                        last_error = str(e) or type(e).__name__
                        retry_count += 1
                        continue
                return outcome(
                    success=True,
                    message=message,
                    needs_user_input=False,
                    state=LoopState.DONE,
                )

            if not record.tool_calls:
                last_error = "Decision asked for tools but named none"
                logger.warning(last_error)
                retry_count += 1
                continue

            results = await self.dispatcher.execute_many(record.tool_calls, tool_context)
            tool_results.extend(results)

            failed = next((result for result in results if not result.success), None)
            if failed is not None:
                last_error = f"{failed.tool_id}: {failed.error}"
                retry_count += 1
                continue

            output = "\n".join(result_text(result.data) or str(result) for result in results)
            if self.completion(output):
                logger.info(f"Task completed after {retry_count + 1} iteration(s)")
                return outcome(
                    success=True,
                    message=f"✅ Task completed. {output}".strip(),
                    needs_user_input=False,
                    state=LoopState.DONE,
                )

            last_error = None
            retry_count += 1

        message = (
            f"❌ Task could not be completed after {retry_count} attempts. "
            f"Last error: {last_error or 'no error reported'}"
        )
        logger.warning(message)
        return LoopOutcome(
            success=False,
            message=message,
            needs_user_input=False,
            state=LoopState.FAILED,
            attempts=retry_count,
            last_error=last_error,
            decisions=decisions,
            tool_results=tool_results,
        )
