"""Tests for storypipe.workflow.service module."""

import time

import pytest

from storypipe.agents.base import AgentResult
from storypipe.lib.config import PipelineConfig
from storypipe.lib.errors import InvalidRetryAction, PipelineAlreadyRunning, StoryNotFound
from storypipe.lib.models import (
    PhaseState,
    PipelinePhase,
    RetryAction,
    StoryStatus,
    TestResult,
)
from storypipe.storage.locking import is_run_locked
from storypipe.storage.stories import StoryStore
from storypipe.workflow.service import PipelineService


class StaticAgent:
    def __init__(self, result):
        self.result = result

    def run(self, context):
        return self.result


FAILING = AgentResult(False, test_results=[
    TestResult("test_login", class_name="TestAuth", passed=False, error_message="boom"),
])


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def phase_state(service, story_id, phase):
    return service.get_status(story_id).phase(phase).state


@pytest.fixture
def store(tmp_path):
    return StoryStore(tmp_path, lock_timeout=5)


def make_service(store, agents=None, approval_phases=(), max_retry_attempts=3):
    config = PipelineConfig(
        max_retry_attempts=max_retry_attempts,
        approval_phases=frozenset(approval_phases),
        agent_timeout=0,
        desktop_notifications=False,
    )
    return PipelineService(store, config, agents=agents)


class TestStartPipeline:
    def test_runs_to_completion(self, store):
        story = store.create("Runs")
        service = make_service(store)

        snapshot = service.start_pipeline(story.id, auto_approve_all=True)
        assert snapshot.is_running
        assert service.wait(story.id, 5)

        final = service.get_status(story.id)
        assert final.completed_at is not None
        assert not service.is_running(story.id)
        assert store.status(story.id) == StoryStatus.COMPLETED
        # run lock released when the thread ends
        assert not is_run_locked(store.root, story.id)

    def test_unknown_story(self, store):
        with pytest.raises(StoryNotFound):
            make_service(store).start_pipeline("STR-20260101-ZZZZ")

    def test_already_running(self, store):
        story = store.create("Gated")
        service = make_service(store, {PipelinePhase.CODING: StaticAgent(AgentResult(True))},
                               approval_phases=[PipelinePhase.CODING])
        service.start_pipeline(story.id)
        try:
            with pytest.raises(PipelineAlreadyRunning):
                service.start_pipeline(story.id)
            assert service.running_pipelines() == [story.id]
        finally:
            service.shutdown(5)

    def test_locked_by_other_process(self, store):
        from storypipe.storage.locking import run_lock

        story = store.create("Locked")
        service = make_service(store)
        with run_lock(store.root, story.id):
            with pytest.raises(PipelineAlreadyRunning):
                service.start_pipeline(story.id)


class TestApprovals:
    def test_approve_phase(self, store):
        story = store.create("Approve")
        service = make_service(store, {PipelinePhase.CODING: StaticAgent(AgentResult(True))},
                               approval_phases=[PipelinePhase.CODING])
        service.start_pipeline(story.id)

        # nothing is waiting on planning
        assert not service.approve_phase(story.id, PipelinePhase.PLANNING)
        assert wait_until(lambda: phase_state(service, story.id, PipelinePhase.CODING)
                          == PhaseState.WAITING_APPROVAL)
        assert wait_until(lambda: service.approve_phase(story.id, PipelinePhase.CODING))
        assert service.wait(story.id, 5)
        assert phase_state(service, story.id, PipelinePhase.CODING) == PhaseState.COMPLETED

    def test_reject_phase(self, store):
        story = store.create("Reject")
        service = make_service(store, {PipelinePhase.CODING: StaticAgent(AgentResult(True))},
                               approval_phases=[PipelinePhase.CODING])
        service.start_pipeline(story.id)
        assert wait_until(lambda: service.approve_phase(story.id, "coding", False, "Not now"))
        service.wait(story.id, 5)

        coding = service.get_status(story.id).phase(PipelinePhase.CODING)
        assert coding.state == PhaseState.FAILED
        assert coding.message == "Not now"

    def test_retry_decisions(self, store):
        story = store.create("Retry")
        service = make_service(store, {PipelinePhase.DEBUGGING: StaticAgent(FAILING)})
        service.start_pipeline(story.id)

        assert wait_until(lambda: service.get_retry_info(story.id) is not None
                          and phase_state(service, story.id, PipelinePhase.DEBUGGING)
                          == PhaseState.WAITING_RETRY_APPROVAL)
        info = service.get_retry_info(story.id)
        assert info.current_attempt == 1
        assert RetryAction.AUTO_FIX in info.allowed_actions

        assert wait_until(lambda: service.approve_retry(story.id, RetryAction.SKIP_TESTS))
        assert service.wait(story.id, 5)
        assert service.get_status(story.id).completed_at is not None

    def test_listener_approves_on_notification(self, store):
        story = store.create("Listener approves")
        service = make_service(store, {PipelinePhase.CODING: StaticAgent(AgentResult(True))},
                               approval_phases=[PipelinePhase.CODING])
        replies = []

        def on_update(update):
            if update.update_type == "phase_pending_approval":
                replies.append(service.approve_phase(story.id, PipelinePhase.CODING))

        service.notifier.subscribe(on_update)
        service.start_pipeline(story.id)
        assert service.wait(story.id, 5)

        assert replies == [True]
        assert phase_state(service, story.id, PipelinePhase.CODING) == PhaseState.COMPLETED
        assert store.status(story.id) == StoryStatus.COMPLETED

    def test_listener_decides_retry_on_notification(self, store):
        story = store.create("Listener aborts")
        service = make_service(store, {PipelinePhase.DEBUGGING: StaticAgent(FAILING)})
        replies = []

        def on_update(update):
            if update.update_type == "retry_required":
                replies.append(service.approve_retry(story.id, RetryAction.ABORT))

        service.notifier.subscribe(on_update)
        service.start_pipeline(story.id)
        assert service.wait(story.id, 5)

        assert replies == [True]
        debug = service.get_status(story.id).phase(PipelinePhase.DEBUGGING)
        assert debug.state == PhaseState.FAILED
        assert debug.message == "Retry aborted by user"

    def test_retry_not_running(self, store):
        story = store.create("Idle")
        assert not make_service(store).approve_retry(story.id, RetryAction.ABORT)

    def test_illegal_retry_action(self, store):
        story = store.create("Exhausted")
        service = make_service(store, {PipelinePhase.DEBUGGING: StaticAgent(FAILING)},
                               max_retry_attempts=1)
        service.start_pipeline(story.id, auto_approve_all=True)
        try:
            assert wait_until(lambda: service.get_retry_info(story.id) is not None
                              and service.get_retry_info(story.id).current_attempt == 2
                              and service.channel.waiting_for(story.id) is not None)
            with pytest.raises(InvalidRetryAction):
                service.approve_retry(story.id, RetryAction.AUTO_FIX)
            assert service.approve_retry(story.id, "abort")
        finally:
            service.wait(story.id, 5)


class TestCancelAndStatus:
    def test_cancel(self, store):
        story = store.create("Cancel")
        service = make_service(store, {PipelinePhase.CODING: StaticAgent(AgentResult(True))},
                               approval_phases=[PipelinePhase.CODING])
        service.start_pipeline(story.id)
        assert wait_until(lambda: phase_state(service, story.id, PipelinePhase.CODING)
                          == PhaseState.WAITING_APPROVAL)

        assert service.cancel_pipeline(story.id)
        assert service.wait(story.id, 5)
        coding = service.get_status(story.id).phase(PipelinePhase.CODING)
        assert coding.message == "Cancelled by user"
        assert store.status(story.id) == StoryStatus.FAILED

    def test_cancel_not_running(self, store):
        story = store.create("Idle")
        assert not make_service(store).cancel_pipeline(story.id)

    def test_status_falls_back_to_snapshot(self, store):
        story = store.create("Snapshot")
        make_service(store).start_pipeline(story.id, auto_approve_all=True)
        wait_until(lambda: not is_run_locked(store.root, story.id))

        fresh = make_service(store)
        status = fresh.get_status(story.id)
        assert status is not None
        assert status.completed_at is not None

    def test_status_unknown_story(self, store):
        assert make_service(store).get_status("STR-20260101-ZZZZ") is None

    def test_status_never_run(self, store):
        story = store.create("New")
        assert make_service(store).get_status(story.id) is None

    def test_listener_receives_updates(self, store):
        story = store.create("Listen")
        service = make_service(store)
        seen = []
        service.notifier.subscribe(lambda u: seen.append(u.update_type))
        service.start_pipeline(story.id, auto_approve_all=True)
        service.wait(story.id, 5)
        assert seen[-1] == "pipeline_completed"
