"""
Shared fixtures and fakes for implementation engine tests
"""
import json
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest

from implementation.core.events import ImplementationObserver
from implementation.schemas import ImplementationEvent, ImplementationProgress, TaskContext
from implementation.tools.code_oracle import CodeOracle
from implementation.tools.process_runner import ProcessResult, describe_command
from implementation.tools.version_control import CommitResult, VersionControl


class FakeCodeOracle(CodeOracle):
    """In-memory oracle with scripted replies"""

    def __init__(
        self,
        plan_response: str = "",
        content_response: str = "generated content",
        refine_response: str = "",
        error: Optional[Exception] = None,
    ):
        self.plan_response = plan_response
        self.content_response = content_response
        self.refine_response = refine_response
        self.error = error
        self.plan_prompts: List[str] = []
        self.content_prompts: List[str] = []
        self.refine_prompts: List[str] = []

    async def generate_plan(self, prompt: str) -> str:
        self.plan_prompts.append(prompt)
        if self.error:
            raise self.error
        return self.plan_response

    async def generate_content(self, prompt: str) -> str:
        self.content_prompts.append(prompt)
        if self.error:
            raise self.error
        return self.content_response

    async def refine(self, prompt: str) -> str:
        self.refine_prompts.append(prompt)
        if self.error:
            raise self.error
        return self.refine_response


class FakeProcessRunner:
    """ProcessRunner stand-in returning canned results by command substring"""

    def __init__(self, results: Optional[Dict[str, ProcessResult]] = None, default: Optional[ProcessResult] = None):
        self.results = results or {}
        self.default = default or ProcessResult(stdout="ok")
        self.commands: List[str] = []

    async def run(self, command, cwd, timeout_ms) -> ProcessResult:
        display = describe_command(command)
        self.commands.append(display)
        for fragment, result in self.results.items():
            if fragment in display:
                return result
        return self.default


class FakeVersionControl(VersionControl):
    def __init__(self, snapshot_ok: bool = True, commit_ok: bool = True):
        self.snapshot_ok = snapshot_ok
        self.commit_ok = commit_ok
        self.snapshots: List[str] = []
        self.commits: List[str] = []

    async def snapshot(self, label: str) -> bool:
        self.snapshots.append(label)
        return self.snapshot_ok

    async def commit(self, message: str) -> CommitResult:
        self.commits.append(message)
        if self.commit_ok:
            return CommitResult(success=True, commit_sha="abc1234")
        return CommitResult(success=False, output="nothing to commit")


class RecordingObserver(ImplementationObserver):
    """Keeps everything it receives, plus one combined timeline"""

    def __init__(self):
        self.progress: List[ImplementationProgress] = []
        self.events: List[ImplementationEvent] = []
        self.timeline: List[tuple] = []

    def on_progress(self, progress: ImplementationProgress) -> None:
        self.progress.append(progress)
        self.timeline.append(("progress", progress.status.value))

    def on_event(self, event: ImplementationEvent) -> None:
        self.events.append(event)
        self.timeline.append(("event", event.type.value))

    def events_of(self, event_type: str) -> List[ImplementationEvent]:
        return [e for e in self.events if e.type.value == event_type]


def plan_json(steps: List[dict], fenced: bool = False, **extra) -> str:
    """Serialize a plan the way the oracle would answer"""
    body = json.dumps({"steps": steps, **extra}, indent=2)
    return f"```json\n{body}\n```" if fenced else body


def make_context(project: Union[str, Path], task_id: str = "task-1", **overrides) -> TaskContext:
    fields = {
        "task_id": task_id,
        "title": "Add notes",
        "description": "Write project notes",
        "project_id": "project-1",
        "project_path": str(project),
        "tech_stack": ["python"],
    }
    fields.update(overrides)
    return TaskContext(**fields)


@pytest.fixture
def temp_project():
    """Create temporary project directory"""
    temp = Path(tempfile.mkdtemp())
    yield temp
    if temp.exists():
        shutil.rmtree(temp)


@pytest.fixture
def observer():
    return RecordingObserver()
