import asyncio

import pytest

from codeloop.approval import ApprovalClass, ApprovalGate
from codeloop.exceptions import ApprovalError


async def wait_until_pending(gate: ApprovalGate) -> None:
    for _ in range(100):
        if gate.has_pending:
            return
        await asyncio.sleep(0)
    raise AssertionError("no decision was requested")


def test_requires_approval_follows_classes_and_auto_approve():
    gate = ApprovalGate(auto_approve={"edits": True, "terminal": False})

    assert gate.requires_approval("write_file") is False
    assert gate.requires_approval("run_command") is True
    assert gate.requires_approval("delete_file_or_folder") is True
    assert gate.requires_approval("read_file") is False

    gate.set_auto_approve("terminal", True)
    assert gate.requires_approval("run_command") is False


def test_overrides_reclassify_tools():
    gate = ApprovalGate(overrides={"read_file": "dangerous", "run_command": "none"})

    assert gate.approval_class("read_file") == ApprovalClass.DANGEROUS
    assert gate.requires_approval("read_file") is True
    assert gate.requires_approval("run_command") is False


@pytest.mark.asyncio
async def test_approve_resolves_pending_wait():
    gate = ApprovalGate()
    waiter = asyncio.create_task(gate.wait_for_decision("run_command"))
    await wait_until_pending(gate)

    assert gate.pending_tool == "run_command"
    assert gate.approve() is True
    assert await waiter is True
    assert gate.has_pending is False
    assert gate.pending_tool is None


@pytest.mark.asyncio
async def test_reject_resolves_pending_wait():
    gate = ApprovalGate()
    waiter = asyncio.create_task(gate.wait_for_decision("run_command"))
    await wait_until_pending(gate)

    assert gate.reject() is True
    assert await waiter is False


def test_decisions_without_pending_wait_are_no_ops():
    gate = ApprovalGate()
    assert gate.approve() is False
    assert gate.reject() is False
    assert gate.approve_and_enable_auto() is None


@pytest.mark.asyncio
async def test_decision_after_cancelled_wait_is_a_no_op():
    gate = ApprovalGate()
    waiter = asyncio.create_task(gate.wait_for_decision("run_command"))
    await wait_until_pending(gate)

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert gate.approve() is False
    assert gate.reject() is False
    assert gate.has_pending is False


@pytest.mark.asyncio
async def test_second_outstanding_wait_is_refused():
    gate = ApprovalGate()
    first = asyncio.create_task(gate.wait_for_decision("run_command"))
    await wait_until_pending(gate)

    with pytest.raises(ApprovalError):
        await gate.wait_for_decision("write_file")

    gate.approve()
    assert await first is True


@pytest.mark.asyncio
async def test_approve_and_enable_auto_switches_class_on():
    gate = ApprovalGate(auto_approve={"terminal": False})
    waiter = asyncio.create_task(gate.wait_for_decision("run_command"))
    await wait_until_pending(gate)

    assert gate.approve_and_enable_auto() == ApprovalClass.TERMINAL
    assert await waiter is True
    assert gate.auto_approve["terminal"] is True
    assert gate.requires_approval("run_command") is False
