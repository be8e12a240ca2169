"""
Validator - Post-step checks

Runs the ValidationRules attached to a step:
- syntax: per file extension (JSON parse, JS/TS balance heuristic + tsc, Python compile)
- type_check / lint / test: the project's own tooling
- custom: arbitrary command judged by error/success regexes

Missing tooling is never a failure. A project without a lint script
still gets its steps through.
"""
import json
import logging
import re
import shlex
from pathlib import Path, PurePosixPath
from typing import List, Optional, Union

import config
from implementation.errors import ValidationError
from implementation.schemas import ValidationResult, ValidationRule, ValidationType
from implementation.tools.file_system import FileSystem, FileSystemError
from implementation.tools.process_runner import EXIT_COMMAND_NOT_FOUND, ProcessResult, ProcessRunner

logger = logging.getLogger(__name__)

MISSING_TOOLING_MARKERS = ("missing script", "command not found", "No module named")

JS_EXTENSIONS = {".js", ".jsx", ".ts", ".tsx"}
TS_EXTENSIONS = {".ts", ".tsx"}

_UNESCAPED = {
    "single quote": re.compile(r"(?<!\\)'"),
    "double quote": re.compile(r'(?<!\\)"'),
    "template literal": re.compile(r"(?<!\\)`"),
}


def is_missing_tooling(result: ProcessResult) -> bool:
    """True when the process failed because the tool or script does not exist"""
    if result.exit_code == EXIT_COMMAND_NOT_FOUND:
        return True
    if result.succeeded:
        return False
    output = result.combined_output
    return any(marker in output for marker in MISSING_TOOLING_MARKERS)


def bracket_balance_issues(code: str) -> List[str]:
    """Cheap balance heuristic for C-like source"""
    issues = []
    opens = len(re.findall(r"[{\[(]", code))
    closes = len(re.findall(r"[}\])]", code))
    if opens != closes:
        issues.append("Mismatched brackets, braces, or parentheses")
    for name, pattern in _UNESCAPED.items():
        if len(pattern.findall(code)) % 2 != 0:
            issues.append(f"Unclosed {name}")
    return issues


def quick_syntax_check(code: str, language: str) -> bool:
    """Best-effort syntax check of an in-memory snippet; unknown languages pass"""
    language = language.lower()
    if language == "json":
        try:
            json.loads(code)
            return True
        except ValueError:
            return False
    if language in ("javascript", "typescript"):
        opens = len(re.findall(r"[{\[(]", code))
        closes = len(re.findall(r"[}\])]", code))
        return opens == closes
    if language == "python":
        try:
            compile(code, "<snippet>", "exec")
            return True
        except (SyntaxError, ValueError):
            return False
    return True


class Validator:
    """Runs validation rules inside one project"""

    def __init__(
        self,
        project_path: Union[str, Path],
        runner: Optional[ProcessRunner] = None,
        file_system: Optional[FileSystem] = None,
    ):
        self.project_path = Path(project_path)
        self.runner = runner or ProcessRunner()
        self.file_system = file_system or FileSystem(self.project_path)

    async def validate(
        self,
        step_id: str,
        rules: List[ValidationRule],
        file_path: Optional[str] = None,
    ) -> List[ValidationResult]:
        """
        Run every rule and collect the results

        Raises:
            ValidationError: If any rule failed; carries the full result list
        """
        results: List[ValidationResult] = []

        for rule in rules:
            try:
                result = await self._validate_rule(rule, file_path)
            except Exception as e:
                result = ValidationResult(rule=rule, passed=False, message=f"Validation failed: {e}")
            results.append(result)
            logger.debug(f"[Validator] {step_id} {rule.type.value}: {'passed' if result.passed else 'failed'}")

        failed = [r for r in results if not r.passed]
        if failed:
            logger.warning(f"[Validator] {len(failed)} validation(s) failed for step {step_id}")
            raise ValidationError(f"{len(failed)} validation(s) failed", results, step_id)

        return results

    async def _validate_rule(self, rule: ValidationRule, file_path: Optional[str]) -> ValidationResult:
        if rule.type == ValidationType.SYNTAX:
            return await self._validate_syntax(rule, file_path)
        if rule.type == ValidationType.TYPE_CHECK:
            return await self._validate_types(rule)
        if rule.type == ValidationType.LINT:
            return await self._validate_lint(rule, file_path)
        if rule.type == ValidationType.TEST:
            return await self._validate_tests(rule)
        if rule.type == ValidationType.CUSTOM:
            return await self._validate_custom(rule)
        return ValidationResult(rule=rule, passed=False, message=f"Unknown validation type: {rule.type}")

    async def _validate_syntax(self, rule: ValidationRule, file_path: Optional[str]) -> ValidationResult:
        if not file_path:
            return ValidationResult(rule=rule, passed=False, message="No file path provided for syntax validation")

        try:
            content = self.file_system.read(file_path)
        except FileSystemError as e:
            return ValidationResult(rule=rule, passed=False, message=f"Syntax validation error: {e}")

        ext = PurePosixPath(file_path).suffix.lower()
        if ext in JS_EXTENSIONS:
            return await self._validate_javascript_syntax(rule, file_path, content)
        if ext == ".json":
            return self._validate_json_syntax(rule, content)
        if ext == ".py":
            return await self._validate_python_syntax(rule, file_path)
        return ValidationResult(rule=rule, passed=True, message=f"No syntax validator for {ext or 'extensionless'} files")

    async def _validate_javascript_syntax(self, rule: ValidationRule, file_path: str, content: str) -> ValidationResult:
        issues = bracket_balance_issues(content)
        if issues:
            return ValidationResult(rule=rule, passed=False, message=f"Syntax issues found: {', '.join(issues)}")

        if PurePosixPath(file_path).suffix.lower() in TS_EXTENSIONS:
            result = await self.runner.run(
                f"{config.TSC_COMMAND} {shlex.quote(file_path)}",
                cwd=self.project_path,
                timeout_ms=config.SYNTAX_CHECK_TIMEOUT_MS,
            )
            # Without a compiler the heuristic above is all we have
            if "error TS" in result.combined_output:
                return ValidationResult(
                    rule=rule,
                    passed=False,
                    message="TypeScript syntax errors found",
                    output=result.combined_output,
                )
            if result.succeeded:
                return ValidationResult(rule=rule, passed=True, message="Syntax is valid", output=result.stdout)

        return ValidationResult(rule=rule, passed=True, message="Basic syntax validation passed")

    @staticmethod
    def _validate_json_syntax(rule: ValidationRule, content: str) -> ValidationResult:
        try:
            json.loads(content)
            return ValidationResult(rule=rule, passed=True, message="Valid JSON syntax")
        except ValueError as e:
            return ValidationResult(rule=rule, passed=False, message=f"Invalid JSON: {e}")

    async def _validate_python_syntax(self, rule: ValidationRule, file_path: str) -> ValidationResult:
        absolute = self.file_system.resolve(file_path)
        result = await self.runner.run(
            f"{config.PYTHON_SYNTAX_COMMAND} {shlex.quote(str(absolute))}",
            cwd=self.project_path,
            timeout_ms=config.SYNTAX_CHECK_TIMEOUT_MS,
        )
        if result.exit_code == EXIT_COMMAND_NOT_FOUND:
            return ValidationResult(rule=rule, passed=True, message="Python syntax check skipped (no interpreter)")
        return ValidationResult(
            rule=rule,
            passed=result.succeeded,
            message="Valid Python syntax" if result.succeeded else "Python syntax errors found",
            output=result.stderr or result.stdout,
        )

    async def _validate_types(self, rule: ValidationRule) -> ValidationResult:
        result = await self.runner.run(
            rule.command or config.TYPE_CHECK_COMMAND,
            cwd=self.project_path,
            timeout_ms=config.TOOLING_TIMEOUT_MS,
        )
        if is_missing_tooling(result):
            return ValidationResult(rule=rule, passed=True, message="Type checking skipped (no type-check script)")

        has_errors = not result.succeeded or "error TS" in result.combined_output
        return ValidationResult(
            rule=rule,
            passed=not has_errors,
            message="Type errors found" if has_errors else "Type checking passed",
            output=result.stderr or result.stdout,
        )

    async def _validate_lint(self, rule: ValidationRule, file_path: Optional[str]) -> ValidationResult:
        command = rule.command or f"{config.LINT_COMMAND} {shlex.quote(file_path or '.')}"
        result = await self.runner.run(command, cwd=self.project_path, timeout_ms=config.TOOLING_TIMEOUT_MS)
        if is_missing_tooling(result):
            return ValidationResult(rule=rule, passed=True, message="Linting skipped (no lint script)")

        has_errors = (
            not result.succeeded
            or "✖" in result.stdout
            or re.search(r"\berror\b", result.combined_output) is not None
        )
        return ValidationResult(
            rule=rule,
            passed=not has_errors,
            message="Linting errors found" if has_errors else "Linting passed",
            output=result.stderr or result.stdout,
        )

    async def _validate_tests(self, rule: ValidationRule) -> ValidationResult:
        result = await self.runner.run(
            rule.command or config.TEST_COMMAND,
            cwd=self.project_path,
            timeout_ms=config.VALIDATION_TEST_TIMEOUT_MS,
        )
        if is_missing_tooling(result):
            return ValidationResult(rule=rule, passed=True, message="Tests skipped (no test script)")

        has_failed = not result.succeeded or output_reports_failure(result)
        return ValidationResult(
            rule=rule,
            passed=not has_failed,
            message="Tests failed" if has_failed else "Tests passed",
            output=result.stderr or result.stdout,
        )

    async def _validate_custom(self, rule: ValidationRule) -> ValidationResult:
        if not rule.command:
            return ValidationResult(rule=rule, passed=False, message="No command provided for custom validation")

        result = await self.runner.run(rule.command, cwd=self.project_path, timeout_ms=config.TOOLING_TIMEOUT_MS)
        if not result.succeeded:
            return ValidationResult(
                rule=rule,
                passed=False,
                message=f"Custom validation failed: exit code {result.exit_code}",
                output=result.stderr or result.stdout,
            )

        passed = True
        if rule.error_pattern:
            error_regex = re.compile(rule.error_pattern)
            if error_regex.search(result.stdout) or error_regex.search(result.stderr):
                passed = False
        if rule.success_pattern:
            success_regex = re.compile(rule.success_pattern)
            if not success_regex.search(result.stdout) and not success_regex.search(result.stderr):
                passed = False

        return ValidationResult(
            rule=rule,
            passed=passed,
            message="Custom validation passed" if passed else "Custom validation failed",
            output=result.stderr or result.stdout,
        )

    def detect_tests(self, file_path: str) -> List[str]:
        """Existing test files that follow common naming conventions for file_path"""
        path = PurePosixPath(file_path)
        candidates = [
            re.sub(r"\.(ts|js|tsx|jsx)$", r".test.\1", file_path),
            re.sub(r"\.(ts|js|tsx|jsx)$", r".spec.\1", file_path),
            file_path.replace("src/", "tests/", 1),
            file_path.replace("lib/", "__tests__/", 1),
        ]
        if path.suffix == ".py":
            candidates.append(str(path.with_name(f"test_{path.name}")))
            candidates.append(str(PurePosixPath("tests") / f"test_{path.name}"))

        found: List[str] = []
        for candidate in candidates:
            if candidate == file_path or candidate in found:
                continue
            try:
                if self.file_system.exists(candidate):
                    found.append(candidate)
            except FileSystemError:
                continue
        return found


def output_reports_failure(result: ProcessResult) -> bool:
    """Test-runner output heuristic"""
    return "FAIL" in result.stderr or "FAIL" in result.stdout or "failed" in result.stdout


__all__ = [
    "Validator",
    "quick_syntax_check",
    "is_missing_tooling",
    "bracket_balance_issues",
    "output_reports_failure",
]
