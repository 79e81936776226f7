"""Agent loop controller for codeloop."""

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from codeloop.agent_stream_mixin import AgentStreamMixin
from codeloop.agent_tool_loop_mixin import PLAN_REMINDER, AgentToolLoopMixin
from codeloop.approval import ApprovalClass, ApprovalGate
from codeloop.compaction import ContextCompactor, provider_summarizer
from codeloop.config import Config, get_config
from codeloop.exceptions import CodeLoopError, LLMError
from codeloop.llm import LLMProvider, ToolCall, ToolStatus, create_provider
from codeloop.logging import bind_turn_context, clear_turn_context, get_logger
from codeloop.loop_detector import LoopDetector
from codeloop.recovery import RecoveryJournal, RecoveryPoint, RecoveryStore
from codeloop.runner import ABORTED_MESSAGE, ExecutionRunner
from codeloop.session import AssistantMessage, FileChange, Session
from codeloop.tools.registry import ToolRegistry, WorkMode

log = get_logger(__name__)

MAX_ITERATIONS_MARKER = "\n\n⚠️ Reached maximum tool call limit."
LOOP_SKIPPED_MESSAGE = "Skipped: loop detected"
UNFINISHED_MESSAGE = "Interrupted: turn ended before execution"


class StopReason(str, Enum):
    """Why a turn stopped."""

    COMPLETED = "completed"
    LOOP_DETECTED = "loop_detected"
    MAX_ITERATIONS = "max_iterations"
    ABORTED = "aborted"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass
class TurnResult:
    """Outcome of one ``send_turn`` or resumed turn."""

    assistant_message_id: str
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    iterations: int = 0
    stop_reason: StopReason = StopReason.COMPLETED
    error: str | None = None


class Agent(AgentStreamMixin, AgentToolLoopMixin):
    """Main agent orchestrator."""

    def __init__(
        self,
        provider: LLMProvider | None = None,
        tools: ToolRegistry | None = None,
        session: Session | None = None,
        config: Config | None = None,
        recovery_store: RecoveryStore | None = None,
        change_tracker: Callable[[FileChange], None] | None = None,
    ):
        """Initialize the agent.

        Args:
            provider: Optional LLM provider override (defaults to one built from config)
            tools: Tool registry; an empty one rooted at the configured workspace otherwise
            session: Conversation state to drive; a fresh session otherwise
            config: Optional config override (defaults to the global config)
            recovery_store: Optional persistence backend for recovery points
            change_tracker: Optional callback receiving every recorded file change
        """
        self.config = config or get_config()
        cfg = self.config
        self.provider = provider or create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            api_key=cfg.model.api_key or None,
            base_url=cfg.model.base_url or None,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            timeout=cfg.model.timeout_seconds,
        )
        self.workspace_path: Path = cfg.resolved_workspace_path()
        self.tools = tools or ToolRegistry(self.workspace_path)
        self.session = session or Session()
        if not self.session.auto_approve:
            self.session.auto_approve.update(cfg.tools.auto_approve.model_dump())
        self.gate = ApprovalGate(overrides=cfg.tools.approval_overrides)
        # share the live map so session changes take effect immediately
        self.gate.auto_approve = self.session.auto_approve
        self.runner = ExecutionRunner(
            self.tools,
            self.gate,
            self.session,
            config=cfg.tools,
            max_result_chars=cfg.loop.max_tool_result_chars,
            change_tracker=change_tracker,
        )
        self.compactor = ContextCompactor(
            provider_summarizer(
                self.provider,
                max_tokens=cfg.compaction.summary_max_tokens,
                temperature=cfg.compaction.summary_temperature,
            ),
            config=cfg.compaction,
            max_history_messages=cfg.loop.max_history_messages,
        )
        if self.session.context_summary:
            self.compactor.summary = self.session.context_summary
        self.recovery = RecoveryJournal(cfg.recovery, store=recovery_store)
        self.max_iterations = cfg.loop.max_iterations
        self.current_assistant_id: str | None = None
        self.last_usage: dict[str, int] = self._empty_usage()
        self.total_usage: dict[str, int] = self._empty_usage()
        self._abort_event: asyncio.Event | None = None
        self._running = False

    @staticmethod
    def _empty_usage() -> dict[str, int]:
        """Create an empty usage bucket."""
        return {
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_tokens": 0,
        }

    def _accumulate_usage(self, usage: dict[str, int]) -> None:
        for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
            value = int(usage.get(key, 0) or 0)
            self.last_usage[key] += value
            self.total_usage[key] += value

    @property
    def is_running(self) -> bool:
        return self._running

    # -- public surface ---------------------------------------------------

    async def send_turn(self, user_message: str, mode: WorkMode | str | None = None) -> TurnResult:
        """Run one user turn to completion.

        Raises:
            CodeLoopError: a turn is already running
        """
        if self._running:
            raise CodeLoopError("A turn is already running")
        if mode is not None:
            self.session.mode = WorkMode(mode)

        self.session.add_message("user", user_message)
        assistant = self.session.add_assistant_message()
        return await self._run_turn(assistant)

    def approve(self) -> bool:
        return self.gate.approve()

    def reject(self) -> bool:
        return self.gate.reject()

    def approve_and_enable_auto(self) -> bool:
        approval_class = self.gate.approve_and_enable_auto()
        if approval_class is None:
            return False
        if approval_class != ApprovalClass.NONE:
            self.session.set_auto_approve(approval_class.value, True)
        return True

    def abort(self) -> None:
        """Cancel the running turn and fail every tool call that has not finished."""
        if self._abort_event is not None:
            self._abort_event.set()
        self.gate.reject()
        failed = self.session.fail_open_tool_calls(self.current_assistant_id, ABORTED_MESSAGE)
        log.info("Turn aborted", failed_tool_calls=failed)

    def get_recoverable_sessions(self) -> list[RecoveryPoint]:
        return self.recovery.get_recoverable_sessions()

    async def recover_from_point(self, recovery_id: str) -> TurnResult | None:
        """Resume an interrupted turn from a recovery point.

        The session history is replaced by the point's replayed messages,
        ending with the continuation instruction.
        """
        if self._running:
            raise CodeLoopError("A turn is already running")
        point = self.recovery.recover_from_point(recovery_id)
        if point is None or not self.recovery.can_recover():
            log.warning("Recovery point unavailable", recovery_id=recovery_id)
            return None

        assistant = self.session.get_assistant_message(point.assistant_message_id)
        if assistant is None:
            assistant = AssistantMessage(id=point.assistant_message_id)
            self.session.transcript.append(assistant)
        assistant.finalized = False
        self.recovery.restore_transcript(assistant)

        messages = self.recovery.prepare_recovery_messages() or []
        await self.recovery.end_session(success=True)
        self.session.messages = [m for m in messages if m.role != "system"]
        log.info("Resuming from recovery point", recovery_id=recovery_id, messages=len(self.session.messages))
        return await self._run_turn(assistant)

    async def close(self) -> None:
        await self.compactor.close()
        if self.recovery.current_point is not None:
            await self.recovery.end_session(success=False)
        await self.recovery.store.close()
        await self.provider.close()

    # -- loop ---------------------------------------------------------------

    async def _run_turn(self, assistant: AssistantMessage) -> TurnResult:
        self._running = True
        self._abort_event = asyncio.Event()
        self.current_assistant_id = assistant.id
        self.last_usage = self._empty_usage()
        bind_turn_context(
            turn_id=uuid.uuid4().hex[:12],
            assistant_message_id=assistant.id,
            session_id=self.session.id,
        )
        try:
            return await self._run_loop(assistant, self._abort_event)
        except Exception as e:
            log.error("Turn raised", error=str(e))
            self.recovery.record_error(str(e))
            raise
        finally:
            if self.recovery.current_point is not None:
                # the loop exited mid-attempt; keep the point and stop autosave
                await self.recovery.end_session(success=False)
            self.session.fail_open_tool_calls(assistant.id, UNFINISHED_MESSAGE)
            assistant.finalized = True
            self.session.context_summary = self.compactor.summary
            self._abort_event = None
            self.current_assistant_id = None
            self._running = False
            clear_turn_context("turn_id", "assistant_message_id", "session_id")

    async def _run_loop(self, assistant: AssistantMessage, abort_event: asyncio.Event) -> TurnResult:
        cfg = self.config
        detector = LoopDetector(cfg.loop_detection)
        turn_start = len(self.session.messages)
        iterations = 0
        reminded = False
        stop_reason = StopReason.COMPLETED
        error: str | None = None
        turn_tool_calls: list[ToolCall] = []

        while iterations < self.max_iterations:
            if abort_event.is_set():
                stop_reason = StopReason.ABORTED
                break
            iterations += 1
            log.info("Loop iteration", iteration=iterations)

            request = self.compactor.build_request_messages(cfg.loop.system_prompt, self.session.messages)
            try:
                result = await self._call_provider_with_retry(request, assistant, abort_event, iterations)
            except LLMError as e:
                if abort_event.is_set():
                    stop_reason = StopReason.ABORTED
                    break
                error = str(e)
                log.error("Turn failed", error=error)
                assistant.append_text(f"\n\n❌ Error: {error}")
                stop_reason = StopReason.ERROR
                break

            if result is None or abort_event.is_set():
                stop_reason = StopReason.ABORTED
                break

            tool_calls = result.tool_calls
            if not tool_calls:
                self.session.add_message("assistant", result.content)
                await self.recovery.end_session(success=True)
                if not reminded and self._needs_plan_reminder(turn_start):
                    log.info("Reminding model to update the plan")
                    self.session.add_message("user", PLAN_REMINDER)
                    reminded = True
                    continue
                log.info("No tool calls, turn complete", iterations=iterations)
                break

            loop_check = detector.check_loop(tool_calls)
            if loop_check.is_loop:
                suggestion = f"\n💡 {loop_check.suggestion}" if loop_check.suggestion else ""
                assistant.append_text(f"\n\n⚠️ {loop_check.reason}{suggestion}")
                for tool_call in tool_calls:
                    if tool_call.can_transition(ToolStatus.ERROR):
                        tool_call.transition(ToolStatus.ERROR)
                        tool_call.error = LOOP_SKIPPED_MESSAGE
                if result.content:
                    self.session.add_message("assistant", result.content)
                await self.recovery.end_session(success=True)
                stop_reason = StopReason.LOOP_DETECTED
                break

            turn_tool_calls.extend(tool_calls)
            self.session.add_message("assistant", result.content or None, tool_calls=tool_calls)
            self.recovery.add_pending_tool_calls(tool_calls)
            log.info("Executing tool calls", count=len(tool_calls))
            outcomes, rejected = await self._execute_tool_calls(tool_calls, abort_event)
            self._record_tool_results(outcomes)
            await self.recovery.end_session(success=True)

            if abort_event.is_set():
                stop_reason = StopReason.ABORTED
                break
            if rejected and cfg.loop.halt_on_rejection:
                stop_reason = StopReason.REJECTED
                break
        else:
            log.warning("Reached maximum iterations", max_iterations=self.max_iterations)
            assistant.append_text(MAX_ITERATIONS_MARKER)
            stop_reason = StopReason.MAX_ITERATIONS

        return TurnResult(
            assistant_message_id=assistant.id,
            content=assistant.content,
            tool_calls=turn_tool_calls,
            iterations=iterations,
            stop_reason=stop_reason,
            error=error,
        )
