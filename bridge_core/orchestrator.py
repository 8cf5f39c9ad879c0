"""Bounded tool-calling loop for one conversation turn.

Each iteration asks the model for its next action, interprets the response,
and executes the first tool call. The turn ends when the finish tool runs,
when the iteration cap forces a finish, when a proposed message repeats
one already sent this turn, when the per-turn message cap is reached,
when the model keeps calling one tool after a message was sent, or when
consecutive errors hit the abort threshold (a static notice is then posted
without the model).

Tool failures arrive as ``ToolResult(ok=False)`` values rather than
exceptions, so the error path is an ordinary transition.
"""
from __future__ import annotations

import difflib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .errors import ModelAPIError, format_error_for_model
from .interpreter import interpret, message_text
from .prompts import (
    DUPLICATE_BLOCKED_NOTE,
    ITERATION_WARNING,
    LOOP_DETECTED_NOTE,
    MESSAGE_CAP_NOTE,
    POST_SENT_NOTE,
    build_system_prompt,
    format_messages_for_model,
    summarize_tool_result,
)
from .schema import (
    FINISH_TOOL,
    POST_MESSAGE_TOOL,
    Message,
    Role,
    ToolCall,
    ToolContext,
    ToolExecutionRecord,
    ToolResult,
    idempotency_key,
)
from .thread_store import ThreadAccessor, ThreadStore

logger = logging.getLogger(__name__)

MESSAGE_TOOLS = frozenset({POST_MESSAGE_TOOL, "createButtonMessage", "createEmojiVote"})

FALLBACK_NOTICE = "Sorry, something went wrong while handling your request. Please try again in a moment."

# Near-duplicate thresholds. Tunable heuristics, not exact semantics.
DUPLICATE_PREFIX_CHARS = 20
DUPLICATE_LENGTH_RATIO = 0.8
DUPLICATE_MIN_OVERLAP = 30

# Consecutive calls to one tool that count as a loop.
LOOP_DETECTION_THRESHOLD = 3


class ModelClient(Protocol):
    async def complete(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]], tool_choice: str
    ) -> dict[str, Any]: ...


class TurnState(str, Enum):
    ITERATING = "iterating"
    TOOL_EXECUTING = "tool_executing"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class TurnOutcome:
    state: TurnState
    iterations: int = 0
    messages_sent: int = 0
    finished_by: str | None = None
    error: str | None = None
    executed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state == TurnState.COMPLETED


def _normalize_for_compare(text: str) -> str:
    return " ".join((text or "").split()).lower()


def is_near_duplicate(a: str, b: str) -> bool:
    """Prefix match, or similar length with a long common run."""
    a, b = _normalize_for_compare(a), _normalize_for_compare(b)
    if not a or not b:
        return False
    if a == b:
        return True
    if len(a) >= DUPLICATE_PREFIX_CHARS and len(b) >= DUPLICATE_PREFIX_CHARS:
        if a[:DUPLICATE_PREFIX_CHARS] == b[:DUPLICATE_PREFIX_CHARS]:
            return True
    ratio = min(len(a), len(b)) / max(len(a), len(b))
    if ratio <= DUPLICATE_LENGTH_RATIO:
        return False
    match = difflib.SequenceMatcher(None, a, b, autojunk=False).find_longest_match(0, len(a), 0, len(b))
    return match.size >= DUPLICATE_MIN_OVERLAP


class _Turn:
    """Mutable bookkeeping for one run of the loop."""

    def __init__(self, is_button_click: bool) -> None:
        self.is_button_click = is_button_click
        self.state = TurnState.ITERATING
        self.iterations = 0
        self.consecutive_errors = 0
        self.sent_texts: list[str] = []
        self.executed: list[str] = []
        self.last_tool: str | None = None
        self.same_tool_streak = 0

    def outcome(self, state: TurnState, finished_by: str | None = None, error: str | None = None) -> TurnOutcome:
        self.state = state
        return TurnOutcome(
            state=state,
            iterations=self.iterations,
            messages_sent=len(self.sent_texts),
            finished_by=finished_by,
            error=error,
            executed=list(self.executed),
        )


class Orchestrator:
    def __init__(
        self,
        store: ThreadStore,
        registry: Any,
        model: ModelClient,
        platform: Any,
        *,
        max_iterations: int = 10,
        max_consecutive_errors: int = 3,
        max_messages_per_turn: int = 1,
        button_click_max_iterations: int = 5,
        tool_choice: str = "required",
    ) -> None:
        self.store = store
        self.registry = registry
        self.model = model
        self.platform = platform
        self.max_iterations = max_iterations
        self.max_consecutive_errors = max_consecutive_errors
        self.max_messages_per_turn = max_messages_per_turn
        self.button_click_max_iterations = button_click_max_iterations
        self.tool_choice = tool_choice

    async def run_turn(
        self,
        thread_id: str,
        *,
        inbound: Message | None = None,
        is_button_click: bool = False,
    ) -> TurnOutcome:
        """Serialize on the thread lock, append ``inbound`` and run the loop."""
        async with self.store.lock(thread_id):
            if inbound is not None:
                self.store.accessor(thread_id).add_message(inbound)
            return await self.run_locked(thread_id, is_button_click=is_button_click)

    async def run_locked(self, thread_id: str, is_button_click: bool = False) -> TurnOutcome:
        """Run the loop. The caller must hold ``store.lock(thread_id)``."""
        thread = self.store.accessor(thread_id)
        turn = _Turn(is_button_click)
        cap = self.button_click_max_iterations if is_button_click else self.max_iterations
        logger.info("Starting turn for thread %s (button_click=%s, cap=%d)", thread_id, is_button_click, cap)

        while turn.iterations < cap:
            turn.iterations += 1
            turn.state = TurnState.ITERATING
            if turn.iterations >= cap - 1:
                thread.add_message(Message(role=Role.SYSTEM, text=ITERATION_WARNING, is_system_note=True))

            try:
                response = await self._request_next_action(thread)
            except ModelAPIError as e:
                logger.warning("Model call failed on iteration %d: %s", turn.iterations, e)
                outcome = self._record_error(thread, turn, "model", e)
                if outcome:
                    await self._send_fallback_notice(thread)
                    return outcome
                continue

            calls = interpret(response)
            if not calls:
                logger.info("Model returned no tool calls; turn complete")
                return turn.outcome(TurnState.COMPLETED, finished_by="no_tool_calls")
            if len(calls) > 1:
                logger.debug("Model proposed %d calls; executing %s only", len(calls), calls[0].tool)
            call = calls[0]

            if call.tool == FINISH_TOOL:
                await self._execute(thread, turn, call)
                return turn.outcome(TurnState.COMPLETED, finished_by="finish_tool")

            if call.tool in MESSAGE_TOOLS:
                blocked = self._check_message_policy(thread, turn, call)
                if blocked:
                    await self._force_finish(thread, turn, blocked)
                    return turn.outcome(TurnState.COMPLETED, finished_by=blocked)

            result, cached = await self._execute(thread, turn, call)

            if self._detect_loop(thread, turn, call.tool) and turn.sent_texts:
                logger.warning("Finishing turn to break a %s loop", call.tool)
                await self._force_finish(thread, turn, "loop_detected")
                return turn.outcome(TurnState.COMPLETED, finished_by="loop_detected")

            if not result.ok:
                outcome = self._record_error(thread, turn, call.tool, result.error or "unknown_error")
                if outcome:
                    await self._send_fallback_notice(thread)
                    return outcome
                continue
            turn.consecutive_errors = 0

            if call.tool in MESSAGE_TOOLS:
                if cached:
                    logger.info("Message already sent earlier in this thread; finishing")
                    await self._force_finish(thread, turn, "duplicate")
                    return turn.outcome(TurnState.COMPLETED, finished_by="duplicate")
                if result.data.get("finished"):
                    return turn.outcome(TurnState.COMPLETED, finished_by="finish_tool")
                turn.sent_texts.append(message_text(call))
                thread.add_message(Message(role=Role.SYSTEM, text=POST_SENT_NOTE, is_system_note=True))
                if is_button_click:
                    await self._force_finish(thread, turn, "message_cap")
                    return turn.outcome(TurnState.COMPLETED, finished_by="message_cap")

        logger.warning("Iteration cap (%d) reached for thread %s; forcing finish", cap, thread_id)
        await self._force_finish(thread, turn, "iteration_cap")
        return turn.outcome(TurnState.COMPLETED, finished_by="iteration_cap")

    async def _request_next_action(self, thread: ThreadAccessor) -> dict[str, Any]:
        context = thread.get_metadata("context") or {}
        system_prompt = build_system_prompt(context, self.registry.list_tools())
        messages = format_messages_for_model(thread.messages(), system_prompt, {
            "lastButtonSelection": thread.get_metadata("lastButtonSelection"),
            "buttonSelectionAlreadyAcknowledged": thread.get_metadata("buttonSelectionAlreadyAcknowledged"),
        })
        return await self.model.complete(messages, self.registry.openai_tools(), self.tool_choice)

    def _check_message_policy(self, thread: ThreadAccessor, turn: _Turn, call: ToolCall) -> str | None:
        """Return a finish reason when the proposed message must not be sent."""
        proposed = message_text(call)
        for sent in turn.sent_texts:
            if is_near_duplicate(proposed, sent):
                logger.info("Suppressing near-duplicate message: %.60s", proposed)
                thread.add_message(Message(role=Role.SYSTEM, text=DUPLICATE_BLOCKED_NOTE, is_system_note=True))
                return "duplicate"
        if len(turn.sent_texts) >= self.max_messages_per_turn:
            logger.info("Message cap (%d) reached; blocking %s", self.max_messages_per_turn, call.tool)
            thread.add_message(Message(role=Role.SYSTEM, text=MESSAGE_CAP_NOTE, is_system_note=True))
            return "message_cap"
        return None

    def _detect_loop(self, thread: ThreadAccessor, turn: _Turn, tool: str) -> bool:
        """Track consecutive calls to ``tool``; note and report a loop at the threshold."""
        if tool == turn.last_tool:
            turn.same_tool_streak += 1
        else:
            turn.last_tool = tool
            turn.same_tool_streak = 1
        if turn.same_tool_streak < LOOP_DETECTION_THRESHOLD:
            return False
        logger.warning("Loop detected: %d consecutive %s calls", turn.same_tool_streak, tool)
        thread.add_message(
            Message(
                role=Role.SYSTEM,
                is_system_note=True,
                text=LOOP_DETECTED_NOTE.format(tool=tool, count=turn.same_tool_streak),
            )
        )
        return True

    async def _execute(self, thread: ThreadAccessor, turn: _Turn, call: ToolCall) -> tuple[ToolResult, bool]:
        """Dispatch one call, short-circuiting on a cached idempotent result."""
        turn.state = TurnState.TOOL_EXECUTING
        key = idempotency_key(call.tool, call.parameters)
        spec = self.registry.get(call.tool)
        if spec is not None and spec.cache_results:
            prior = thread.find_execution(key)
            if prior is not None:
                logger.info("Idempotent hit for %s; returning stored result", call.tool)
                return ToolResult(ok=True, data=dict((prior.result or {}).get("data") or {})), True

        ctx = ToolContext(
            thread=thread,
            platform=self.platform,
            reasoning=call.reasoning,
            is_button_click=turn.is_button_click,
        )
        logger.info("Executing tool %s (reasoning: %s)", call.tool, call.reasoning)
        start = time.monotonic()
        result = await self.registry.execute(call.tool, call.parameters, ctx)
        duration_ms = (time.monotonic() - start) * 1000.0

        record = ToolExecutionRecord(
            tool=call.tool,
            parameters=dict(call.parameters),
            key=key,
            result=result.to_dict() if result.ok else None,
            error=None if result.ok else (result.error or "unknown_error"),
            duration_ms=duration_ms,
        )
        thread.record_execution(record)
        turn.executed.append(call.tool)
        thread.add_message(
            Message(
                role=Role.TOOL,
                tool_name=call.tool,
                text=summarize_tool_result(call.tool, call.parameters, result.to_dict()),
            )
        )
        return result, False

    def _record_error(self, thread: ThreadAccessor, turn: _Turn, source: str, error: Any) -> TurnOutcome | None:
        """Feed an error back into context; returns an aborted outcome at the threshold."""
        turn.consecutive_errors += 1
        if isinstance(error, BaseException):
            payload = format_error_for_model(error)
        else:
            payload = {"error": True, "message": str(error), "type": source, "details": {}}
        thread.add_message(
            Message(
                role=Role.SYSTEM,
                is_system_note=True,
                text=f"ERROR from {source}: {payload['message']}. Decide how to respond to the user.",
            )
        )
        if turn.consecutive_errors >= self.max_consecutive_errors:
            logger.error(
                "Aborting turn after %d consecutive errors (last: %s)", turn.consecutive_errors, payload["message"]
            )
            return turn.outcome(TurnState.ABORTED, error=str(payload["message"]))
        return None

    async def _force_finish(self, thread: ThreadAccessor, turn: _Turn, reason: str) -> None:
        call = ToolCall(tool=FINISH_TOOL, parameters={"summary": f"Forced finish: {reason}"}, reasoning=reason)
        await self._execute(thread, turn, call)

    async def _send_fallback_notice(self, thread: ThreadAccessor) -> None:
        channel_id = thread.channel_id
        if not channel_id:
            logger.error("Cannot send fallback notice: no channel for thread %s", thread.thread_id)
            return
        try:
            await self.platform.post_message(channel_id, text=FALLBACK_NOTICE, thread_ts=thread.thread_ts)
        except Exception:
            logger.exception("Failed to send fallback notice to %s", channel_id)
