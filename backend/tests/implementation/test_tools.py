"""
Tests for engine tools: FileSystem, ProcessRunner, CodeOracle and GitVersionControl
"""
import asyncio

import pytest
from langchain_core.language_models import FakeListChatModel
from langchain_core.runnables import RunnableLambda

import config
from implementation.errors import CommandTimeoutError
from implementation.tools.code_oracle import LangChainCodeOracle, OracleError, TimedCodeOracle, create_code_oracle
from implementation.tools.file_system import (
    FileSystem,
    PathIOError,
    PathNotFoundError,
    PathPermissionError,
)
from implementation.tools.process_runner import ProcessResult, ProcessRunner
from implementation.tools.version_control import GitVersionControl

from conftest import FakeCodeOracle, FakeProcessRunner


class TestFileSystem:
    """Test project-rooted file access"""

    @pytest.fixture
    def fs(self, temp_project):
        return FileSystem(temp_project)

    def test_write_creates_parents(self, fs, temp_project):
        fs.write("a/b/c.txt", "hello")

        assert (temp_project / "a" / "b" / "c.txt").read_text() == "hello"
        assert fs.exists("a/b/c.txt")
        assert fs.read("a/b/c.txt") == "hello"

    def test_line_endings_preserved(self, fs, temp_project):
        fs.write("crlf.txt", "one\r\ntwo\r\n")

        assert (temp_project / "crlf.txt").read_bytes() == b"one\r\ntwo\r\n"
        assert fs.read("crlf.txt") == "one\r\ntwo\r\n"

    def test_read_missing_file(self, fs):
        with pytest.raises(PathNotFoundError) as exc_info:
            fs.read("missing.txt")

        assert exc_info.value.code == "FILE_NOT_FOUND"
        assert exc_info.value.path == "missing.txt"

    def test_delete(self, fs, temp_project):
        (temp_project / "old.txt").write_text("x")

        fs.delete("old.txt")

        assert not (temp_project / "old.txt").exists()
        with pytest.raises(PathNotFoundError):
            fs.delete("old.txt")

    def test_escape_is_refused(self, fs):
        with pytest.raises(PathPermissionError):
            fs.write("../outside.txt", "nope")
        with pytest.raises(PathPermissionError):
            fs.read("/etc/hostname")

    def test_file_in_place_of_directory(self, fs, temp_project):
        (temp_project / "blocker").write_text("")

        with pytest.raises(PathIOError):
            fs.write("blocker/inner.txt", "x")


class TestProcessRunner:
    """Test command execution against a real shell"""

    @pytest.fixture
    def runner(self):
        return ProcessRunner()

    def test_captures_output(self, runner, temp_project):
        result = asyncio.run(runner.run("echo out; echo err >&2", temp_project, 5000))

        assert result.succeeded
        assert result.stdout.strip() == "out"
        assert result.stderr.strip() == "err"
        assert "STDERR:" in result.combined_output

    def test_exit_code(self, runner, temp_project):
        result = asyncio.run(runner.run("exit 4", temp_project, 5000))

        assert result.exit_code == 4
        assert not result.succeeded

    def test_runs_in_working_directory(self, runner, temp_project):
        asyncio.run(runner.run("touch here.txt", temp_project, 5000))

        assert (temp_project / "here.txt").exists()

    def test_timeout_kills_process(self, runner, temp_project):
        with pytest.raises(CommandTimeoutError) as exc_info:
            asyncio.run(runner.run("sleep 5", temp_project, 200))

        assert exc_info.value.code == "COMMAND_TIMEOUT"
        assert exc_info.value.timeout_ms == 200

    def test_missing_executable(self, runner, temp_project):
        result = asyncio.run(runner.run(["definitely-not-a-real-binary-xyz"], temp_project, 5000))

        assert result.exit_code == 127

    def test_argument_list_is_not_shell_parsed(self, runner, temp_project):
        result = asyncio.run(runner.run(["echo", "a; touch injected.txt"], temp_project, 5000))

        assert result.stdout.strip() == "a; touch injected.txt"
        assert not (temp_project / "injected.txt").exists()

    def test_combined_output_without_stderr(self):
        assert ProcessResult(stdout="only").combined_output == "only"
        assert ProcessResult(stderr="only err").combined_output == "only err"


class TestCodeOracle:
    """Test the LangChain-backed oracle with in-memory models"""

    def test_returns_model_text(self):
        oracle = LangChainCodeOracle(FakeListChatModel(responses=['{"steps": []}', "print('hi')"]))

        assert asyncio.run(oracle.generate_plan("plan it")) == '{"steps": []}'
        assert asyncio.run(oracle.generate_content("write it")) == "print('hi')"

    def test_model_error_becomes_oracle_error(self):
        def explode(_):
            raise RuntimeError("quota exceeded")

        oracle = LangChainCodeOracle(RunnableLambda(explode))

        with pytest.raises(OracleError) as exc_info:
            asyncio.run(oracle.refine("refine it"))

        assert "quota exceeded" in str(exc_info.value)
        assert exc_info.value.code == "ORACLE_ERROR"

    def test_timeout(self):
        async def slow(_):
            await asyncio.sleep(1)
            return "late"

        oracle = LangChainCodeOracle(RunnableLambda(slow), timeout_ms=50)

        with pytest.raises(OracleError) as exc_info:
            asyncio.run(oracle.generate_content("write it"))

        assert exc_info.value.code == "ORACLE_TIMEOUT"

    def test_timed_oracle_bounds_every_call(self):
        class SlowOracle(FakeCodeOracle):
            async def generate_plan(self, prompt):
                await asyncio.sleep(1)
                return "late"

        inner = SlowOracle(content_response="fast")
        oracle = TimedCodeOracle(inner, timeout_ms=50)

        with pytest.raises(OracleError) as exc_info:
            asyncio.run(oracle.generate_plan("plan it"))

        assert exc_info.value.code == "ORACLE_TIMEOUT"
        assert asyncio.run(oracle.generate_content("write it")) == "fast"
        assert inner.content_prompts == ["write it"]

    def test_create_requires_api_key(self, monkeypatch):
        monkeypatch.setattr(config, "GEMINI_API_KEY", None)

        with pytest.raises(ValueError):
            create_code_oracle()


class RaisingRunner:
    async def run(self, command, cwd, timeout_ms):
        raise CommandTimeoutError("git", timeout_ms)


class TestGitVersionControl:
    """Test git calls through a scripted runner"""

    def test_snapshot_stores_stash(self, temp_project):
        runner = FakeProcessRunner(results={"stash create": ProcessResult(stdout="abc123\n")})
        vcs = GitVersionControl(temp_project, runner=runner)

        assert asyncio.run(vcs.snapshot("ai-buddy-backup-task-1"))
        assert runner.commands == [
            "git stash create ai-buddy-backup-task-1",
            "git stash store -m ai-buddy-backup-task-1 abc123",
        ]

    def test_snapshot_of_clean_tree(self, temp_project):
        runner = FakeProcessRunner(results={"stash create": ProcessResult(stdout="")})

        assert asyncio.run(GitVersionControl(temp_project, runner=runner).snapshot("label"))
        assert len(runner.commands) == 1

    def test_snapshot_outside_repository(self, temp_project):
        runner = FakeProcessRunner(default=ProcessResult(stderr="fatal: not a git repository", exit_code=128))

        assert not asyncio.run(GitVersionControl(temp_project, runner=runner).snapshot("label"))

    def test_commit(self, temp_project):
        runner = FakeProcessRunner(results={"rev-parse": ProcessResult(stdout="deadbeef\n")})

        result = asyncio.run(GitVersionControl(temp_project, runner=runner).commit("feat: x"))

        assert result.success
        assert result.commit_sha == "deadbeef"
        assert runner.commands[:2] == ["git add -A -- . :(exclude).ai-buddy", "git commit -m feat: x"]

    def test_commit_with_nothing_to_commit(self, temp_project):
        runner = FakeProcessRunner(results={"git commit": ProcessResult(stdout="nothing to commit", exit_code=1)})

        result = asyncio.run(GitVersionControl(temp_project, runner=runner).commit("feat: x"))

        assert not result.success
        assert result.output == "nothing to commit"

    def test_timeouts_are_not_raised(self, temp_project):
        vcs = GitVersionControl(temp_project, runner=RaisingRunner())

        assert not asyncio.run(vcs.snapshot("label"))
        assert not asyncio.run(vcs.commit("msg")).success
