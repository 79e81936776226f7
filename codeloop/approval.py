"""Approval classes and the one-shot approval channel."""

import asyncio
from enum import Enum
from typing import Mapping

from codeloop.exceptions import ApprovalError
from codeloop.logging import get_logger

log = get_logger(__name__)


class ApprovalClass(str, Enum):
    EDITS = "edits"
    TERMINAL = "terminal"
    DANGEROUS = "dangerous"
    NONE = "none"


DEFAULT_APPROVAL_CLASSES: dict[str, ApprovalClass] = {
    "edit_file": ApprovalClass.EDITS,
    "write_file": ApprovalClass.EDITS,
    "create_file": ApprovalClass.EDITS,
    "create_file_or_folder": ApprovalClass.EDITS,
    "replace_in_file": ApprovalClass.EDITS,
    "apply_patch": ApprovalClass.EDITS,
    "delete_file_or_folder": ApprovalClass.DANGEROUS,
    "run_command": ApprovalClass.TERMINAL,
}


class ApprovalGate:
    """Decide which calls need confirmation and hold at most one pending decision.

    ``approve()``/``reject()`` resolve the outstanding wait; with nothing
    outstanding they do nothing.
    """

    def __init__(
        self,
        auto_approve: Mapping[str, bool] | None = None,
        overrides: Mapping[str, str] | None = None,
    ):
        self.auto_approve: dict[str, bool] = dict(auto_approve or {})
        self._classes: dict[str, ApprovalClass] = dict(DEFAULT_APPROVAL_CLASSES)
        for name, value in (overrides or {}).items():
            self._classes[name] = ApprovalClass(value)
        self._pending: asyncio.Future[bool] | None = None
        self._pending_tool: str | None = None

    def approval_class(self, tool_name: str) -> ApprovalClass:
        return self._classes.get(tool_name, ApprovalClass.NONE)

    def requires_approval(self, tool_name: str) -> bool:
        approval_class = self.approval_class(tool_name)
        if approval_class == ApprovalClass.NONE:
            return False
        return not self.auto_approve.get(approval_class.value, False)

    def set_auto_approve(self, approval_class: ApprovalClass | str, enabled: bool = True) -> None:
        self.auto_approve[ApprovalClass(approval_class).value] = enabled

    @property
    def pending_tool(self) -> str | None:
        """Name of the tool whose decision is outstanding."""
        return self._pending_tool if self.has_pending else None

    @property
    def has_pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def wait_for_decision(self, tool_name: str) -> bool:
        """Suspend until ``approve()``/``reject()``. Returns True when approved.

        Raises:
            ApprovalError: another decision is already outstanding
        """
        if self.has_pending:
            raise ApprovalError(
                f"Approval already pending for {self._pending_tool!r}; cannot wait for {tool_name!r}"
            )
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending = future
        self._pending_tool = tool_name
        log.info("Awaiting approval", tool=tool_name)
        try:
            return await future
        finally:
            if self._pending is future:
                self._pending = None
                self._pending_tool = None

    def _resolve(self, approved: bool) -> bool:
        pending = self._pending
        if pending is None or pending.done():
            return False
        pending.set_result(approved)
        log.info("Approval resolved", tool=self._pending_tool, approved=approved)
        return True

    def approve(self) -> bool:
        return self._resolve(True)

    def reject(self) -> bool:
        return self._resolve(False)

    def approve_and_enable_auto(self) -> ApprovalClass | None:
        """Approve the outstanding call and auto-approve its class from now on."""
        if not self.has_pending or self._pending_tool is None:
            return None
        approval_class = self.approval_class(self._pending_tool)
        if approval_class != ApprovalClass.NONE:
            self.set_auto_approve(approval_class, True)
        self._resolve(True)
        return approval_class
