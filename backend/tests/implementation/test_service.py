"""
Tests for ImplementationService
"""
import asyncio
import uuid

import pytest

import config
from implementation.schemas import ImplementationConfig, ImplementationStatus
from services.event_service import clear_events, get_events_since
from services.implementation_service import (
    ImplementationConflictError,
    ImplementationNotFoundError,
    ImplementationService,
)

from conftest import FakeCodeOracle, RecordingObserver, make_context, plan_json

NOTES_PLAN = plan_json([{
    "id": "s1",
    "title": "Write notes",
    "type": "create_file",
    "target": "notes.md",
    "content": "draft",
    "order": 1,
}])


def make_service(plan=NOTES_PLAN, **kwargs):
    return ImplementationService(
        oracle=FakeCodeOracle(plan_response=plan),
        version_control_factory=lambda path: None,
        **kwargs,
    )


def options(**overrides):
    values = {"auto_approve": True, "run_tests": False, "max_retries": 0}
    values.update(overrides)
    return ImplementationConfig(**values)


@pytest.fixture
def task_id():
    value = f"task-{uuid.uuid4().hex[:8]}"
    yield value
    clear_events(value)


class TestImplementationService:
    """Test background runs, state checks and locking"""

    def test_start_runs_in_background(self, temp_project, task_id):
        service = make_service()

        async def scenario():
            started = service.start(make_context(temp_project, task_id=task_id), options())
            assert started.status == ImplementationStatus.PENDING
            return await service.wait(task_id)

        progress = asyncio.run(scenario())

        assert progress.status == ImplementationStatus.COMPLETED
        assert (temp_project / "notes.md").read_text() == "draft"
        events = get_events_since(task_id, limit=1000)
        assert events[-1]["event_type"] == "status_change"
        assert events[-2]["payload"]["status"] == "completed"

    def test_start_requires_directory(self, temp_project, task_id):
        service = make_service()

        with pytest.raises(ValueError):
            service.start(make_context(temp_project / "missing", task_id=task_id), options())

    def test_start_without_api_key(self, temp_project, task_id, monkeypatch):
        monkeypatch.setattr(config, "GEMINI_API_KEY", None)
        service = ImplementationService(version_control_factory=lambda path: None)

        with pytest.raises(ValueError):
            service.start(make_context(temp_project, task_id=task_id), options())

    def test_unknown_task(self):
        service = make_service()

        with pytest.raises(ImplementationNotFoundError):
            service.get_progress("nope")
        with pytest.raises(ImplementationNotFoundError):
            service.cancel("nope")

    def test_review_approve_flow(self, temp_project, task_id):
        service = make_service()

        async def scenario():
            service.start(make_context(temp_project, task_id=task_id), options(auto_approve=False))
            reviewing = await service.wait(task_id)
            assert reviewing.status == ImplementationStatus.REVIEWING

            with pytest.raises(ImplementationConflictError):
                service.start(make_context(temp_project, task_id=task_id), options())

            service.approve(task_id)
            with pytest.raises(ImplementationConflictError):
                service.approve(task_id)
            return await service.wait(task_id)

        progress = asyncio.run(scenario())

        assert progress.status == ImplementationStatus.COMPLETED

    def test_approve_requires_review(self, temp_project, task_id):
        service = make_service()

        async def scenario():
            service.start(make_context(temp_project, task_id=task_id), options())
            await service.wait(task_id)
            service.approve(task_id)

        with pytest.raises(ImplementationConflictError):
            asyncio.run(scenario())

    def test_refine(self, temp_project, task_id):
        service = make_service()
        service._oracle.refine_response = plan_json([{
            "id": "s1",
            "title": "Write readme",
            "type": "create_file",
            "target": "README.md",
            "content": "# Readme",
            "order": 1,
        }])

        async def scenario():
            service.start(make_context(temp_project, task_id=task_id), options(auto_approve=False))
            await service.wait(task_id)
            return await service.refine(task_id, "Write a README instead")

        progress = asyncio.run(scenario())

        assert progress.plan.steps[0].target == "README.md"
        assert progress.status == ImplementationStatus.REVIEWING

    def test_cancel_while_reviewing(self, temp_project, task_id):
        service = make_service()

        async def scenario():
            service.start(make_context(temp_project, task_id=task_id), options(auto_approve=False))
            await service.wait(task_id)
            return service.cancel(task_id, "not now")

        progress = asyncio.run(scenario())

        assert progress.status == ImplementationStatus.CANCELLED

    def test_restart_after_terminal_state(self, temp_project, task_id):
        service = make_service()

        async def scenario():
            service.start(make_context(temp_project, task_id=task_id), options(auto_approve=False))
            await service.wait(task_id)
            service.cancel(task_id)
            service.start(make_context(temp_project, task_id=task_id), options())
            return await service.wait(task_id)

        progress = asyncio.run(scenario())

        assert progress.status == ImplementationStatus.COMPLETED

    def test_manual_rollback(self, temp_project, task_id):
        service = make_service()

        async def scenario():
            service.start(make_context(temp_project, task_id=task_id), options())
            await service.wait(task_id)
            return await service.rollback(task_id)

        progress = asyncio.run(scenario())

        assert not (temp_project / "notes.md").exists()
        assert progress.can_rollback is False

    def test_runs_on_same_project_do_not_overlap(self, temp_project):
        first_id = f"task-{uuid.uuid4().hex[:8]}"
        second_id = f"task-{uuid.uuid4().hex[:8]}"
        slow = plan_json([{
            "id": "s1", "title": "Slow", "type": "run_command",
            "target": "sleep 0.3 && echo first >> order.txt", "order": 1,
        }])
        fast = plan_json([{
            "id": "s1", "title": "Fast", "type": "run_command",
            "target": "echo second >> order.txt", "order": 1,
        }])
        first = make_service(plan=slow)
        second_oracle = FakeCodeOracle(plan_response=fast)

        async def scenario():
            first.start(make_context(temp_project, task_id=first_id), options())
            # Engines bind the oracle at start(), so the second run gets its own plan
            first._oracle = second_oracle
            first.start(make_context(temp_project, task_id=second_id), options())
            await first.wait(first_id)
            await first.wait(second_id)

        try:
            asyncio.run(scenario())
        finally:
            clear_events(first_id)
            clear_events(second_id)

        assert (temp_project / "order.txt").read_text() == "first\nsecond\n"

    def test_extra_observers(self, temp_project, task_id):
        observer = RecordingObserver()
        service = make_service(observers=[observer])

        async def scenario():
            service.start(make_context(temp_project, task_id=task_id), options())
            await service.wait(task_id)

        asyncio.run(scenario())

        assert observer.progress[-1].status == ImplementationStatus.COMPLETED


class TestRetention:
    """Finished runs are dropped once the retention window has passed"""

    @pytest.fixture
    def other_id(self):
        value = f"task-{uuid.uuid4().hex[:8]}"
        yield value
        clear_events(value)

    def test_expired_run_evicted_on_next_start(self, temp_project, task_id, other_id):
        now = [1000.0]
        service = make_service(retention_seconds=60, clock=lambda: now[0])

        async def scenario():
            service.start(make_context(temp_project, task_id=task_id), options(dry_run=True))
            await service.wait(task_id)
            now[0] += 61
            service.start(make_context(temp_project, task_id=other_id), options(dry_run=True))
            await service.wait(other_id)

        asyncio.run(scenario())

        assert task_id not in service.engines
        with pytest.raises(ImplementationNotFoundError):
            service.get_progress(task_id)
        assert get_events_since(task_id) == []
        assert service.get_progress(other_id).status == ImplementationStatus.COMPLETED

    def test_run_kept_within_window(self, temp_project, task_id, other_id):
        now = [1000.0]
        service = make_service(retention_seconds=60, clock=lambda: now[0])

        async def scenario():
            service.start(make_context(temp_project, task_id=task_id), options(dry_run=True))
            await service.wait(task_id)
            now[0] += 30
            service.start(make_context(temp_project, task_id=other_id), options(dry_run=True))
            await service.wait(other_id)

        asyncio.run(scenario())

        assert service.get_progress(task_id).status == ImplementationStatus.COMPLETED
        assert get_events_since(task_id)

    def test_run_under_review_is_never_evicted(self, temp_project, task_id):
        now = [1000.0]
        service = make_service(retention_seconds=0, clock=lambda: now[0])

        async def scenario():
            service.start(make_context(temp_project, task_id=task_id), options(auto_approve=False))
            await service.wait(task_id)
            now[0] += 3600
            return service.evict_expired()

        assert asyncio.run(scenario()) == 0
        assert service.get_progress(task_id).status == ImplementationStatus.REVIEWING

    def test_cancelled_run_evicted(self, temp_project, task_id):
        now = [1000.0]
        service = make_service(retention_seconds=10, clock=lambda: now[0])

        async def scenario():
            service.start(make_context(temp_project, task_id=task_id), options(auto_approve=False))
            await service.wait(task_id)
            service.cancel(task_id)
            now[0] += 10
            return service.evict_expired()

        assert asyncio.run(scenario()) == 1
        assert task_id not in service.engines
