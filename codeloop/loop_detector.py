"""Detect pathological repetition of tool calls within a turn."""

import hashlib
import json
from collections import Counter, deque
from dataclasses import dataclass

from codeloop.config import LoopDetectionConfig
from codeloop.llm import ToolCall
from codeloop.logging import get_logger

log = get_logger(__name__)


def loop_signature(tool_call: ToolCall) -> str:
    payload = json.dumps(tool_call.public_arguments(), sort_keys=True, default=str, ensure_ascii=False)
    return hashlib.sha1(f"{tool_call.name.lower()}:{payload}".encode("utf-8")).hexdigest()


@dataclass
class LoopCheck:
    is_loop: bool
    reason: str | None = None
    suggestion: str | None = None


class LoopDetector:
    """Trailing window of call signatures for one turn."""

    def __init__(self, config: LoopDetectionConfig | None = None):
        self.config = config or LoopDetectionConfig()
        self._window: deque[tuple[str, str]] = deque(maxlen=max(1, self.config.window_size))

    def reset(self) -> None:
        self._window.clear()

    def check_loop(self, tool_calls: list[ToolCall]) -> LoopCheck:
        """Record a batch and report whether the turn is looping."""
        for tool_call in tool_calls:
            self._window.append((loop_signature(tool_call), tool_call.name))

        signatures = [sig for sig, _ in self._window]
        counts = Counter(signatures)
        for signature, count in counts.most_common(1):
            if count > self.config.repeat_threshold:
                name = next(name for sig, name in self._window if sig == signature)
                log.warning("Loop detected: repeated call", tool=name, count=count)
                return LoopCheck(
                    is_loop=True,
                    reason=f"Detected repeated calls to '{name}' with identical arguments ({count} times).",
                    suggestion="The same action keeps producing the same result. Try a different approach or ask the user for guidance.",
                )

        cycle = self._find_cycle(signatures)
        if cycle:
            names = [name for _, name in list(self._window)[-cycle:]]
            log.warning("Loop detected: cycle", cycle=names)
            return LoopCheck(
                is_loop=True,
                reason=f"Detected a repeating cycle of tool calls: {' -> '.join(names)}.",
                suggestion="Stop and reconsider the plan; the last steps are repeating without progress.",
            )
        return LoopCheck(is_loop=False)

    def _find_cycle(self, signatures: list[str]) -> int:
        """Length of a contiguous repeating cycle at the tail, or 0."""
        repeats = max(2, self.config.min_cycle_repeats)
        for length in range(2, self.config.max_cycle_length + 1):
            span = length * repeats
            if len(signatures) < span:
                break
            tail = signatures[-span:]
            pattern = tail[:length]
            if len(set(pattern)) < 2:
                continue
            if all(tail[i] == pattern[i % length] for i in range(span)):
                return length
        return 0
