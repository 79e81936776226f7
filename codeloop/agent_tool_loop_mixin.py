"""Tool-batch execution helpers for Agent."""

import asyncio

from codeloop.llm import ToolCall
from codeloop.logging import get_logger
from codeloop.runner import ExecutionOutcome, execution_stats
from codeloop.scheduler import analyze_dependencies, is_read_only_tool
from codeloop.tools.registry import WorkMode

log = get_logger(__name__)

PLAN_TOOLS = frozenset({"create_plan", "update_plan"})
PLAN_REMINDER = (
    "Reminder: You have performed some actions. Please use `update_plan` to update the plan "
    "status (e.g., mark the current step as completed) before finishing your response."
)
HALTED_MESSAGE = "Skipped: batch halted after a rejected tool call"


class AgentToolLoopMixin:
    """Schedule a batch, run it through the execution runner, and record results."""

    async def _run_tool_call(
        self,
        tool_call: ToolCall,
        abort_event: asyncio.Event,
        interruptible: bool = True,
    ) -> ExecutionOutcome:
        outcome = await self.runner.run(tool_call, abort_event, interruptible=interruptible)
        self.recovery.add_completed_tool_call(tool_call)
        return outcome

    async def _run_parallel_group(
        self,
        group: list[ToolCall],
        abort_event: asyncio.Event,
    ) -> list[ExecutionOutcome]:
        """Run independent calls concurrently; a failing call never cancels its siblings.

        On abort, members still waiting for a slot are skipped and started
        members run to completion.
        """
        semaphore = asyncio.Semaphore(max(1, self.config.loop.max_parallel_tools))

        async def run_one(tool_call: ToolCall) -> ExecutionOutcome:
            async with semaphore:
                return await self._run_tool_call(tool_call, abort_event, interruptible=False)

        return list(await asyncio.gather(*(run_one(tc) for tc in group)))

    async def _execute_tool_calls(
        self,
        tool_calls: list[ToolCall],
        abort_event: asyncio.Event,
    ) -> tuple[list[ExecutionOutcome], bool]:
        """Execute one batch. Returns outcomes in request order and whether any call was rejected."""
        if len(tool_calls) == 1:
            outcome = await self._run_tool_call(tool_calls[0], abort_event)
            return [outcome], outcome.rejected

        analysis = analyze_dependencies(tool_calls, requires_approval=self.gate.requires_approval)
        outcomes: dict[str, ExecutionOutcome] = {}

        for group in analysis.parallel_groups:
            log.info("Running parallel group", size=len(group))
            for outcome in await self._run_parallel_group(group, abort_event):
                outcomes[outcome.tool_call.id] = outcome

        rejected = any(o.rejected for o in outcomes.values())
        halt = self.config.loop.halt_on_rejection
        for tool_call in analysis.serial_tools:
            if rejected and halt:
                outcomes[tool_call.id] = self.runner.skip(tool_call, HALTED_MESSAGE)
                continue
            outcome = await self._run_tool_call(tool_call, abort_event)
            outcomes[tool_call.id] = outcome
            rejected = rejected or outcome.rejected
            # let other tasks (approval handlers, abort) run between steps
            await asyncio.sleep(0)

        ordered = [outcomes[tc.id] for tc in tool_calls]
        return ordered, rejected

    def _record_tool_results(self, outcomes: list[ExecutionOutcome]) -> None:
        for outcome in outcomes:
            self.session.add_message(
                "tool",
                outcome.content,
                tool_call_id=outcome.tool_call.id,
                tool_name=outcome.tool_call.name,
            )
        log.info("Tool batch finished", **execution_stats(outcomes))

    def _needs_plan_reminder(self, turn_start: int) -> bool:
        """Plan mode: mutating work happened this turn but the plan was never updated."""
        if self.session.mode != WorkMode.PLAN:
            return False
        called = [
            tc.name
            for message in self.session.messages[turn_start:]
            if message.role == "assistant"
            for tc in message.tool_calls
        ]
        has_write_ops = any(not is_read_only_tool(name) and name not in PLAN_TOOLS for name in called)
        return has_write_ops and "update_plan" not in called
