"""Tests for run state transitions."""

import pytest

from stepwise.errors import Conflict, EngineFault
from stepwise.persistence import PendingHook, Run, RunError, RunStatus, StepResult


def _running(claim: str = "c1") -> Run:
    return Run(run_id="r1", workflow_name="wf").begin(claim)


def _paused(token: str = "T") -> Run:
    run = _running().record("c1", StepResult(index=0, name="draft", output="x"))
    return run.pause("c1", PendingHook(token=token, index=1, name="approve"))


def test_begin_takes_claim_and_requires_pending() -> None:
    run = _running()
    assert run.status == RunStatus.RUNNING
    assert run.claimed_by == "c1"
    with pytest.raises(EngineFault):
        run.begin("c2")


def test_record_advances_cursor_without_mutating_original() -> None:
    run = _running()
    updated = run.record("c1", StepResult(index=0, name="a", output=1))
    assert updated.cursor == 1
    assert [r.output for r in updated.step_results] == [1]
    assert run.cursor == 0
    assert run.step_results == []


def test_record_rejects_result_for_wrong_index() -> None:
    with pytest.raises(EngineFault):
        _running().record("c1", StepResult(index=1, name="b"))


def test_record_requires_claim() -> None:
    with pytest.raises(Conflict):
        _running().record("other", StepResult(index=0, name="a"))


def test_pause_releases_claim_and_resume_reclaims() -> None:
    paused = _paused()
    assert paused.status == RunStatus.PAUSED
    assert paused.claimed_by is None
    assert paused.pending_hook.token == "T"

    resumed = paused.resume(
        "c2", "T", StepResult(index=1, name="approve", kind="hook", output=True)
    )
    assert resumed.status == RunStatus.RUNNING
    assert resumed.claimed_by == "c2"
    assert resumed.pending_hook is None
    assert resumed.cursor == 2


def test_resume_checks_token_and_index() -> None:
    paused = _paused()
    with pytest.raises(EngineFault):
        paused.resume("c2", "other", StepResult(index=1, name="approve", kind="hook"))
    with pytest.raises(EngineFault):
        paused.resume("c2", "T", StepResult(index=0, name="approve", kind="hook"))
    with pytest.raises(EngineFault):
        _running().resume("c2", "T", StepResult(index=0, name="approve", kind="hook"))


def test_terminal_runs_refuse_transitions() -> None:
    completed = _running().complete("c1", 5)
    assert completed.status == RunStatus.COMPLETED
    assert completed.return_value == 5
    assert completed.claimed_by is None
    with pytest.raises(EngineFault):
        completed.request_cancel()
    with pytest.raises(EngineFault):
        completed.record("c1", StepResult(index=0, name="a"))
    with pytest.raises(EngineFault):
        completed.fail("c1", RunError(type="X", message="late"))


def test_cancel_of_active_run_is_deferred() -> None:
    flagged = _running().request_cancel()
    assert flagged.status == RunStatus.RUNNING
    assert flagged.cancel_requested is True

    failed = flagged.fail("c1", RunError(type="RuntimeError", message="boom"))
    assert failed.status == RunStatus.CANCELLED
    assert failed.error.message == "boom"


def test_cancel_of_paused_run_is_immediate() -> None:
    cancelled = _paused().request_cancel()
    assert cancelled.status == RunStatus.CANCELLED
    assert cancelled.pending_hook is None


def test_abandon_fails_paused_run() -> None:
    failed = _paused().abandon("T", RunError(type="DuplicateToken", message="dup"))
    assert failed.status == RunStatus.FAILED
    assert failed.pending_hook is None
    with pytest.raises(EngineFault):
        _paused().abandon("other", RunError(type="DuplicateToken", message="dup"))


def test_reclaim_requires_force_for_claimed_run() -> None:
    run = _running()
    with pytest.raises(Conflict):
        run.reclaim("c2")
    assert run.reclaim("c2", force=True).claimed_by == "c2"
    with pytest.raises(EngineFault):
        _paused().reclaim("c2", force=True)


def test_run_status_terminal_flags() -> None:
    assert RunStatus.COMPLETED.is_terminal
    assert RunStatus.CANCELLED.is_terminal
    assert not RunStatus.PAUSED.is_terminal
