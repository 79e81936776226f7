"""Provider-call helpers for Agent: streaming, timeout, abort and retry."""

import asyncio

from codeloop.exceptions import LLMAPIError, LLMError, ProviderTimeoutError
from codeloop.llm import Message
from codeloop.logging import get_logger
from codeloop.runner import classify_error, is_retryable
from codeloop.session import AssistantMessage
from codeloop.stream_parser import StreamParser, StreamResult
from codeloop.tools.registry import ToolRegistry

log = get_logger(__name__)


class AgentStreamMixin:
    """Run one model call per loop iteration and journal it for recovery."""

    @staticmethod
    async def _cancel_task(task: asyncio.Task | None) -> None:
        await ToolRegistry._cancel_task(task)

    def _stream_parser(self, assistant: AssistantMessage) -> StreamParser:
        mode = self.session.mode
        return StreamParser(
            transcript=assistant,
            is_allowed_tool=lambda name: self.tools.is_allowed(name, mode),
            on_text=self.recovery.append_content,
        )

    async def _consume_stream(self, parser: StreamParser, request: list[Message]) -> StreamResult:
        """Feed every provider event to the parser.

        Raises:
            ProtocolError: the stream broke the event contract
            LLMAPIError: the provider reported an error event
        """
        cfg = self.config.model
        definitions = self.tools.get_definitions(self.session.mode)
        async for event in self.provider.stream(
            request,
            tools=definitions or None,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
        ):
            parser.feed(event)
        result = parser.finish()
        if result.error is not None:
            raise LLMAPIError(result.error, status_code=result.error_status)
        return result

    async def _call_provider(
        self,
        request: list[Message],
        assistant: AssistantMessage,
        abort_event: asyncio.Event,
    ) -> StreamResult | None:
        """One streamed model call raced against abort and the provider timeout.

        Returns None when the turn was aborted mid-stream.
        """
        parser = self._stream_parser(assistant)
        timeout = max(0.001, float(self.config.model.timeout_seconds))
        consume_task = asyncio.create_task(self._consume_stream(parser, request))
        abort_task = asyncio.create_task(abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {consume_task, abort_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if consume_task in done:
                return consume_task.result()
            await self._cancel_task(consume_task)
            parser.close_reasoning()
            if abort_task in done:
                log.info("Provider stream aborted")
                return None
            raise ProviderTimeoutError(timeout)
        finally:
            await self._cancel_task(abort_task)
            await self._cancel_task(consume_task)

    def _rollback_transcript(self, assistant: AssistantMessage, content: str, tool_call_ids: set[str]) -> None:
        """Drop what a failed attempt streamed before it is retried."""
        if assistant.content != content:
            assistant.replace_text(content)
        for tool_call_id in list(assistant.tool_calls):
            if tool_call_id not in tool_call_ids:
                assistant.remove_tool_call(tool_call_id)

    async def _call_provider_with_retry(
        self,
        request: list[Message],
        assistant: AssistantMessage,
        abort_event: asyncio.Event,
        iteration: int,
    ) -> StreamResult | None:
        """Call the provider, retrying retryable failures with exponential backoff.

        Each attempt opens a recovery session. A failed final attempt keeps its
        recovery point so the turn can be resumed later.

        Raises:
            LLMError: the last attempt failed, or the failure is terminal
        """
        cfg = self.config.model
        delay = cfg.retry_delay_seconds
        content_before = assistant.content
        ids_before = set(assistant.tool_calls)

        for attempt in range(cfg.max_retries + 1):
            if attempt > 0:
                try:
                    await asyncio.wait_for(abort_event.wait(), timeout=delay)
                    return None
                except asyncio.TimeoutError:
                    pass
                delay *= cfg.retry_backoff
                self._rollback_transcript(assistant, content_before, ids_before)

            self.recovery.start_session(
                assistant.id,
                request,
                session_id=self.session.id,
                loop_count=iteration,
            )
            try:
                result = await self._call_provider(request, assistant, abort_event)
            except LLMError as e:
                retry = attempt < cfg.max_retries and is_retryable(e) and not abort_event.is_set()
                log.warning(
                    "Provider call failed",
                    attempt=attempt + 1,
                    max_attempts=cfg.max_retries + 1,
                    cause=classify_error(e).value,
                    retry=retry,
                    error=str(e),
                )
                if retry:
                    await self.recovery.end_session(success=True)
                    continue
                self.recovery.record_error(str(e))
                await self.recovery.end_session(success=False)
                raise

            if result is None:
                self.recovery.record_error("Aborted by user")
                await self.recovery.end_session(success=False)
                return None
            if result.usage:
                self._accumulate_usage(result.usage)
            return result
        return None
