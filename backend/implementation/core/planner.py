"""
Planner - Task → Implementation Plan

Responsibilities:
- Gather project context (related files, file list, dependency manifest)
- Ask the CodeOracle for a structured plan
- Normalize the oracle's JSON into ImplementationSteps
- Validate plan structure (ids, dependencies, cycles)
- Order steps topologically for execution
- Refine a plan from reviewer feedback

The Planner never touches the project beyond reading context files.
"""
import heapq
import json
import logging
import re
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

import config
from implementation.errors import ImplementationError
from implementation.schemas import (
    TaskContext,
    ImplementationPlan,
    ImplementationStep,
    PlanValidation,
    StepStatus,
    StepType,
    ValidationRule,
    ValidationType,
)
from implementation.tools.code_oracle import CodeOracle

logger = logging.getLogger(__name__)

FALLBACK_RISK = "Unable to generate detailed plan"

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Return the body of the first markdown code fence, or the trimmed text if there is none"""
    stripped = text.strip()
    match = _FENCE_RE.search(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


class Planner:
    """
    Planner - Converts a TaskContext into an ImplementationPlan

    Uses the CodeOracle for the actual decomposition.
    """

    def __init__(self, oracle: CodeOracle, project_path: Union[str, Path]):
        self.oracle = oracle
        self.project_path = Path(project_path)

    async def generate_plan(self, context: TaskContext) -> ImplementationPlan:
        """
        Generate an implementation plan for a task

        Args:
            context: Task being implemented

        Returns:
            Normalized plan. Falls back to a single best-effort step if the
            oracle's reply cannot be parsed.

        Raises:
            ImplementationError: If the oracle call itself fails
        """
        project_context = self._gather_project_context(context)
        prompt = self._build_planning_prompt(context, project_context)

        logger.info(f"[Planner] Requesting plan for task {context.task_id}: {context.title}")
        try:
            response = await self.oracle.generate_plan(prompt)
        except Exception as e:
            logger.error(f"[Planner] Plan generation failed: {e}", exc_info=True)
            raise ImplementationError(
                f"Failed to generate plan: {e}",
                "PLAN_GENERATION_FAILED",
                recoverable=False,
            ) from e

        plan = self.parse_plan_response(response)
        if plan is None:
            logger.warning("[Planner] Could not parse plan response, using fallback plan")
            logger.debug(f"[Planner] Response was: {response}")
            return self._fallback_plan()

        logger.info(f"[Planner] ✓ Planned {len(plan.steps)} steps")
        return plan

    async def refine_plan(
        self,
        original_plan: ImplementationPlan,
        feedback: str,
        context: TaskContext,
    ) -> ImplementationPlan:
        """Refine a plan from reviewer feedback; returns the original plan on any failure"""
        original_json = json.dumps(original_plan.model_dump(mode="json", exclude={"steps": {"__all__": {"status"}}}), indent=2)
        prompt = f"""You are refining an implementation plan based on user feedback.

## Original Plan
{original_json}

## User Feedback
{feedback}

## Task Context
**Title:** {context.title}
**Description:** {context.description}

Please provide an updated implementation plan that addresses the feedback while maintaining the same JSON structure as the original plan.

Provide ONLY the JSON response, no additional text."""

        try:
            response = await self.oracle.refine(prompt)
        except Exception as e:
            logger.error(f"[Planner] Refinement failed, keeping original plan: {e}")
            return original_plan

        refined = self.parse_plan_response(response)
        if refined is None:
            logger.warning("[Planner] Could not parse refined plan, keeping original plan")
            return original_plan

        logger.info(f"[Planner] ✓ Refined plan has {len(refined.steps)} steps")
        return refined

    def validate_plan(self, plan: ImplementationPlan) -> PlanValidation:
        """Check a plan for structural problems"""
        issues: List[str] = []

        if not plan.steps:
            issues.append("Plan has no steps")
            return PlanValidation(valid=False, issues=issues)

        seen: Set[str] = set()
        duplicates: Set[str] = set()
        for step in plan.steps:
            if not step.id:
                issues.append(f"Step {step.order} is missing an ID")
            elif step.id in seen and step.id not in duplicates:
                duplicates.add(step.id)
                issues.append(f"Step ID {step.id} is used by more than one step")
            seen.add(step.id)

            if not step.title:
                issues.append(f"Step {step.id or step.order} is missing a title")

            if not step.type:
                issues.append(f"Step {step.id or step.order} is missing a type")

            if step.id and step.id in step.dependencies:
                issues.append(f"Step {step.id} depends on itself")

        # Check for orphaned dependencies
        step_ids = {s.id for s in plan.steps if s.id}
        for step in plan.steps:
            for dep_id in step.dependencies:
                if dep_id not in step_ids:
                    issues.append(f"Step {step.id} depends on non-existent step {dep_id}")

        cycle = self._find_cycle(plan)
        if cycle:
            issues.append(f"Steps form a dependency cycle: {' -> '.join(cycle)}")

        return PlanValidation(valid=not issues, issues=issues)

    def order_steps(self, plan: ImplementationPlan) -> List[ImplementationStep]:
        """
        Topological execution order

        A step runs after every step it depends on. Among steps that are
        ready at the same time, lower `order` runs first, then stored position.
        Dependencies on unknown ids are left for the Engine to report.

        Raises:
            ImplementationError: If the dependency graph has a cycle
        """
        known = {step.id for step in plan.steps}
        pending: Dict[int, Set[str]] = {
            index: {d for d in step.dependencies if d in known and d != step.id}
            for index, step in enumerate(plan.steps)
        }
        scheduled_ids: Set[str] = set()
        ordered: List[ImplementationStep] = []
        ready: List[tuple] = []

        def push_ready():
            for index, deps in list(pending.items()):
                if deps <= scheduled_ids:
                    heapq.heappush(ready, (plan.steps[index].order, index))
                    del pending[index]

        push_ready()
        while ready:
            _, index = heapq.heappop(ready)
            step = plan.steps[index]
            ordered.append(step)
            scheduled_ids.add(step.id)
            push_ready()

        if pending:
            stuck = [plan.steps[index].id for index in sorted(pending)]
            raise ImplementationError(
                f"Plan cannot be scheduled; dependency cycle among steps: {', '.join(stuck)}",
                "UNSCHEDULABLE_PLAN",
                recoverable=False,
            )
        return ordered

    def parse_plan_response(self, response: str) -> Optional[ImplementationPlan]:
        """Parse the oracle's JSON reply into a plan, or None if it is not usable"""
        try:
            parsed = json.loads(strip_code_fences(response))
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"[Planner] Invalid JSON in plan response: {e}")
            return None

        if not isinstance(parsed, dict) or not isinstance(parsed.get("steps"), list):
            logger.warning("[Planner] Plan response has no steps list")
            return None

        try:
            steps = [
                self._normalize_step(raw, index)
                for index, raw in enumerate(parsed["steps"])
                if isinstance(raw, dict)
            ]

            estimated = parsed.get("estimated_duration", parsed.get("estimatedDuration"))
            return ImplementationPlan(
                steps=steps,
                estimated_duration=estimated if isinstance(estimated, (int, float)) else None,
                risks=[str(r) for r in _as_list(parsed.get("risks"))],
                dependencies=[str(d) for d in _as_list(parsed.get("dependencies"))],
            )
        except (ValueError, TypeError) as e:
            # pydantic's ValidationError is a ValueError
            logger.warning(f"[Planner] Plan response has ill-typed fields: {e}")
            return None

    def _normalize_step(self, raw: Dict[str, Any], index: int) -> ImplementationStep:
        step_type = raw.get("type")
        try:
            step_type = StepType(step_type) if step_type else None
        except ValueError:
            logger.warning(f"[Planner] Unknown step type '{step_type}' in step {index + 1}")
            step_type = None

        try:
            order = int(raw.get("order") or index + 1)
        except (TypeError, ValueError):
            order = index + 1

        return ImplementationStep(
            id=str(raw.get("id") or f"step-{index + 1}"),
            title=str(raw.get("title") or ""),
            description=str(raw.get("description") or ""),
            type=step_type,
            target=raw.get("target") or None,
            content=raw.get("content") or None,
            order=order,
            status=StepStatus.PENDING,
            dependencies=[str(d) for d in _as_list(raw.get("dependencies"))],
            validation=self._normalize_rules(_as_list(raw.get("validation"))),
        )

    @staticmethod
    def _normalize_rules(raw_rules: List[Any]) -> List[ValidationRule]:
        rules = []
        for raw in raw_rules:
            if not isinstance(raw, dict):
                continue
            try:
                rule_type = ValidationType(raw.get("type"))
            except ValueError:
                logger.warning(f"[Planner] Dropping validation rule with unknown type: {raw.get('type')}")
                continue
            rules.append(ValidationRule(
                type=rule_type,
                command=raw.get("command") or None,
                error_pattern=raw.get("error_pattern") or raw.get("errorPattern") or None,
                success_pattern=raw.get("success_pattern") or raw.get("successPattern") or None,
            ))
        return rules

    @staticmethod
    def _fallback_plan() -> ImplementationPlan:
        return ImplementationPlan(
            steps=[
                ImplementationStep(
                    id="step-1",
                    title="Implement task",
                    description="Implement the task as described",
                    type=StepType.MODIFY_FILE,
                    order=1,
                    status=StepStatus.PENDING,
                    dependencies=[],
                    validation=[ValidationRule(type=ValidationType.SYNTAX)],
                )
            ],
            estimated_duration=10,
            risks=[FALLBACK_RISK],
            dependencies=[],
        )

    @staticmethod
    def _find_cycle(plan: ImplementationPlan) -> Optional[List[str]]:
        """Return one dependency cycle as a list of ids (first id repeated at the end), if any"""
        graph: Dict[str, List[str]] = {}
        for step in plan.steps:
            if step.id and step.id not in graph:
                graph[step.id] = [d for d in step.dependencies if d != step.id]

        visiting: List[str] = []
        on_path: Set[str] = set()
        done: Set[str] = set()

        def visit(node: str) -> Optional[List[str]]:
            visiting.append(node)
            on_path.add(node)
            for dep in graph.get(node, []):
                if dep not in graph or dep in done:
                    continue
                if dep in on_path:
                    return visiting[visiting.index(dep):] + [dep]
                found = visit(dep)
                if found:
                    return found
            visiting.pop()
            on_path.discard(node)
            done.add(node)
            return None

        for node in graph:
            if node not in done:
                found = visit(node)
                if found:
                    return found
        return None

    def _gather_project_context(self, context: TaskContext) -> str:
        parts: List[str] = []

        if context.related_files:
            parts.append("## Related Files\n")
            for file in context.related_files[:config.MAX_RELATED_FILES]:
                parts.append(f"### {file.path}\n```{file.language or ''}\n{file.content}\n```\n")

        if context.existing_files:
            parts.append("\n## Project Structure\n")
            parts.append("\n".join(context.existing_files[:config.MAX_EXISTING_FILES]))

        manifest = self._summarize_manifest()
        if manifest:
            parts.append("\n## Dependencies\n")
            parts.append(manifest)

        return "\n".join(parts)

    def _summarize_manifest(self) -> Optional[str]:
        """Summarize the first dependency manifest found in the project root"""
        package_json = self.project_path / "package.json"
        if package_json.is_file():
            try:
                pkg = json.loads(package_json.read_text(encoding="utf-8"))
                lines = []
                if pkg.get("dependencies"):
                    lines.append("Dependencies: " + ", ".join(pkg["dependencies"].keys()))
                if pkg.get("devDependencies"):
                    lines.append("DevDependencies: " + ", ".join(pkg["devDependencies"].keys()))
                return "\n".join(lines) or None
            except (OSError, ValueError, AttributeError):
                pass

        pyproject = self.project_path / "pyproject.toml"
        if pyproject.is_file():
            try:
                data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
                deps = data.get("project", {}).get("dependencies", [])
                if deps:
                    return "Dependencies: " + ", ".join(deps)
            except (OSError, tomllib.TOMLDecodeError):
                pass

        requirements = self.project_path / "requirements.txt"
        if requirements.is_file():
            try:
                deps = [
                    line.strip() for line in requirements.read_text(encoding="utf-8").splitlines()
                    if line.strip() and not line.strip().startswith("#")
                ]
                if deps:
                    return "Dependencies: " + ", ".join(deps)
            except OSError:
                pass

        return None

    def _build_planning_prompt(self, context: TaskContext, project_context: str) -> str:
        criteria = f"**Acceptance Criteria:**\n{context.acceptance_criteria}" if context.acceptance_criteria else ""
        return f"""You are an expert software engineer creating a detailed implementation plan.

## Task Information
**Title:** {context.title}
**Description:** {context.description}
{criteria}

## Tech Stack
{", ".join(context.tech_stack)}

{project_context}

## Instructions
Create a detailed, step-by-step implementation plan for this task. Each step should be:
1. Specific and actionable
2. Ordered logically with dependencies considered
3. Include validation requirements
4. Specify the type of operation (create_file, modify_file, delete_file, run_command, test)

Format your response as a JSON object with this structure:
```json
{{
  "steps": [
    {{
      "id": "step-1",
      "title": "Brief step title",
      "description": "Detailed description of what to do",
      "type": "create_file|modify_file|delete_file|run_command|test",
      "target": "file/path/or/command",
      "order": 1,
      "dependencies": [],
      "validation": [
        {{
          "type": "syntax|type_check|lint|test|custom",
          "command": "optional command to run"
        }}
      ]
    }}
  ],
  "estimated_duration": 15,
  "risks": ["potential risk 1", "potential risk 2"],
  "dependencies": ["required package 1", "required package 2"]
}}
```

Important guidelines:
- Break complex changes into smaller, testable steps
- Include validation after each significant change
- Specify exact file paths relative to the project root
- For modifications, clearly describe what changes to make
- Only list step ids in a step's dependencies, never its own id

Provide ONLY the JSON response, no additional text."""


__all__ = ["Planner", "FALLBACK_RISK", "strip_code_fences"]
