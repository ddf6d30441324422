"""
Forge Orchestrator — one delegation from plan to verified working tree.

Phases (see forge.machine for the transition table):

    PLANNING -> CONTEXT_LOADING -> IMPLEMENTATION -> VALIDATION
        -> CORRECTION (bounded) -> TESTING (optional) -> DONE | FAILED

The orchestrator writes into the task workspace but never commits.
On success the working tree holds the validated change and the caller
commits it onto a branch; on failure every write has been undone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from loguru import logger
from pydantic import BaseModel, Field

from forgeline.agents import AgentContext, OutputParseError, PlanParseError
from forgeline.agents.implementer import CorrectorAgent, ImplementerAgent
from forgeline.agents.parsing import build_fallback_plan
from forgeline.agents.planner import PlannerAgent, summarize_plan
from forgeline.agents.tester import TestWriterAgent
from forgeline.config_loader import ForgelineConfig, ProjectConfig
from forgeline.event_bus import ExecutionEventEmitter
from forgeline.forge.context import ContextLoader, extract_keywords
from forgeline.forge.machine import ForgeStateMachine
from forgeline.forge.validation import (
    MAX_ERROR_PROMPT_CHARS,
    StructuredError,
    ValidationResult,
    Validator,
    format_errors_for_prompt,
)
from forgeline.models import CodeOutput, Delegation, FileChange, ForgePlan
from forgeline.patch import apply_changes
from forgeline.result import Err
from forgeline.router import BudgetExceededError, InfraUnavailableError, LLMError, Router
from forgeline.state import ForgeRun, Phase
from forgeline.workspace.manager import WorkspaceManager
from forgeline.workspace.process import TIMEOUT_EXIT_CODE
from forgeline.workspace.security import ProjectSecurityError, allowed_dirs_for, sanitize_workspace_path

REPLAN_SNIPPET_LINES = 40
ESCALATION_LINES = 80
ESCALATION_MAX_CHARS = 2000
VALIDATION_FAILURES_FOR_ESCALATION = 2
SEARCH_FAILURES_FOR_REPLAN = 2
MIN_BUDGET_FRACTION_FOR_REPLAN = 0.3
MAX_REPLANS = 1
COHERENCE_MAX_LINES = 600

IMPLEMENTATION_VERBS = (
    "aplicar", "apply", "implementar", "implement",
    "criar", "create", "adicionar", "add",
    "alterar", "change", "modificar", "modify",
    "override", "substituir", "replace", "trocar", "swap",
)

STYLE_SUFFIXES = (".css", ".scss", ".less")
STYLE_KEYWORDS = frozenset({
    "theme", "dark", "light", "color", "style", "css", "token",
    "override", "brand", "palette", "tema", "vermelho",
})


def is_implementation_task(task: str) -> bool:
    normalized = task.lower()
    return any(verb in normalized for verb in IMPLEMENTATION_VERBS)


def timeout_message(stage: str) -> str:
    return f"{stage} timed out (exit code {TIMEOUT_EXIT_CODE}): the process was killed before it finished"


class ForgeOutcome(BaseModel):
    """What one forge run produced. The working tree already reflects it."""
    success: bool
    partial: bool = False
    output: CodeOutput | None = None
    plan: ForgePlan | None = None
    originals: dict[str, str | None] = Field(default_factory=dict)
    lint_output: str = ""
    test_output: str = ""
    tokens_used: int = 0
    error: str | None = None
    timed_out: bool = False
    rounds_used: int = 0
    phases: list[Phase] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.output and self.output.files)


@dataclass
class _ReplanRequest:
    failed_plan: ForgePlan
    failed_files: list[str]
    reason: str
    snippets: dict[str, str] = field(default_factory=dict)


@dataclass
class _Attempt:
    """Mutable state shared by every round of one implementation attempt."""
    output: CodeOutput
    originals: dict[str, str | None]
    last_failed_file: str = ""
    search_failures: int = 0
    validation_failures: int = 0


ValidatorFactory = Callable[[Path], Validator]


class ForgeOrchestrator:
    """
    Drives one delegation through the forge phases.

    The router passed in is the per-task router: its budget is the task
    budget, and planning runs on a smaller sub-router carved out of it.
    """

    def __init__(
        self,
        config: ForgelineConfig,
        router: Router,
        workspace_manager: WorkspaceManager,
        emitter: ExecutionEventEmitter | None = None,
        validator_factory: ValidatorFactory | None = None,
    ):
        self.config = config
        self.forge = config.forge
        self.router = router
        self.workspace_manager = workspace_manager
        self.emitter = emitter
        self._validator_factory = validator_factory or (
            lambda ws: Validator.for_workspace(ws, config.forge, config.validation)
        )

    # -- events --------------------------------------------------------------

    def _event(self, event_type: str, message: str, phase: Phase | None = None, level: str = "info", **metadata) -> None:
        if self.emitter is not None:
            self.emitter.emit("forge", event_type, message,
                              phase=phase.value if phase else None, metadata=metadata or None, level=level)

    def _advance(self, machine: ForgeStateMachine, target: Phase, message: str = "") -> None:
        machine.advance(target)
        self._event("forge:phase", message or f"Entering {target.value}", phase=target, round=machine.run.rounds_used)

    def _fail(self, machine: ForgeStateMachine, error: str, **kwargs) -> ForgeOutcome:
        logger.warning(f"[FORGE] Failed: {error[:200]}")
        machine.fail(error)
        self._event("forge:failed", error[:500], phase=Phase.FAILED, level="error")
        return self._outcome(machine, success=False, error=error, **kwargs)

    def _outcome(self, machine: ForgeStateMachine, **kwargs) -> ForgeOutcome:
        machine.run.tokens_used = self.router.budget.usage.total_tokens
        return ForgeOutcome(
            tokens_used=machine.run.tokens_used,
            rounds_used=machine.run.rounds_used,
            phases=list(machine.run.phase_history),
            **kwargs,
        )

    # -- entry point ---------------------------------------------------------

    def run(self, delegation: Delegation, workspace: Path, task_id: str, project: ProjectConfig | None = None) -> ForgeOutcome:
        """
        Plan, load context, implement, validate and correct.

        InfraUnavailableError propagates: an unreachable provider is not
        the delegation's failure. Every other LLM problem ends the run
        as a failed outcome.
        """
        project = project or self.config.project
        run = ForgeRun(task_id=task_id, task=delegation.task)
        machine = ForgeStateMachine(run, self.forge.max_correction_rounds)
        loader = ContextLoader(workspace, self.forge, project.framework)
        validator = self._validator_factory(workspace)

        base = AgentContext(
            task=delegation.task,
            expected_output=delegation.expected_output,
            goal_id=delegation.goal_id,
            language=project.language,
            framework=project.framework,
            file_tree=loader.file_tree,
            allowed_dirs=list(allowed_dirs_for(project.framework, project.allowed_dirs)),
        )
        self._event("forge:start", f"Forge started: {delegation.task[:80]}", phase=Phase.PLANNING)
        logger.info(f"[FORGE] Starting task {task_id[:8]}: {delegation.task[:80]}")

        try:
            outcome = self._run(machine, base, loader, validator, delegation, workspace)
        except InfraUnavailableError:
            machine.run.tokens_used = self.router.budget.usage.total_tokens
            raise
        except BudgetExceededError as e:
            outcome = self._fail(machine, f"Task token budget exhausted: {e}")
        except (LLMError, OutputParseError) as e:
            outcome = self._fail(machine, f"{type(e).__name__}: {e}")

        try:
            run.persist(workspace)
        except OSError as e:
            logger.debug(f"[FORGE] Could not persist run state: {e}")
        return outcome

    def _run(
        self,
        machine: ForgeStateMachine,
        base: AgentContext,
        loader: ContextLoader,
        validator: Validator,
        delegation: Delegation,
        workspace: Path,
    ) -> ForgeOutcome:
        plan, from_planner = self._plan(base, loader, delegation)
        self._advance(machine, Phase.CONTEXT_LOADING, "Loading context")
        machine.run.files_in_scope = plan.planned_files

        replan: _ReplanRequest | None = None
        if from_planner and is_implementation_task(delegation.task) \
                and not (plan.files_to_modify or plan.files_to_create):
            logger.warning("[FORGE] Plan has no files to modify for an implementation task, replanning")
            replan = _ReplanRequest(
                plan, [],
                "The previous plan chose no files to modify, but the task requires code changes. "
                "You MUST pick files in files_to_modify.",
            )
        else:
            keywords = extract_keywords(delegation.task, delegation.expected_output)
            suspicious = self._incoherent_files(plan, loader, keywords)
            if suspicious:
                logger.warning(f"[FORGE] Plan incoherent, no planned file mentions {keywords}")
                replan = _ReplanRequest(
                    plan, suspicious,
                    "Plan coherence check failed: none of the planned files contain keywords related to the task",
                )

        if replan is not None:
            if not self._replan_allowed(machine.run, "coherence"):
                return self._fail(machine, f"Planning failed: {replan.reason}", plan=plan)
            self._advance(machine, Phase.PLANNING, "Replanning before implementation")
            new_plan = self._replan(base, loader, replan)
            if new_plan is None:
                return self._fail(
                    machine, "Planning failed: re-planning did not produce a viable alternative", plan=plan,
                )
            plan = new_plan
            self._advance(machine, Phase.CONTEXT_LOADING, "Loading context for the new plan")

        result = self._implement(machine, base, loader, validator, delegation, workspace, plan)
        if isinstance(result, ForgeOutcome):
            return result

        if not self._replan_allowed(machine.run, "correction"):
            return self._fail(machine, result.reason, plan=plan)
        self._advance(machine, Phase.PLANNING, "Replanning after repeated edit failures")
        new_plan = self._replan(base, loader, result)
        if new_plan is None:
            return self._fail(machine, f"{result.reason}; re-planning did not produce a viable alternative", plan=plan)
        self._advance(machine, Phase.CONTEXT_LOADING, "Loading context for the new plan")

        second = self._implement(machine, base, loader, validator, delegation, workspace, new_plan)
        if isinstance(second, _ReplanRequest):
            return self._fail(machine, second.reason, plan=new_plan)
        return second

    # -- planning ------------------------------------------------------------

    def _planner(self) -> PlannerAgent:
        return PlannerAgent(self.router.sub_router(self.config.budget.planning_token_limit))

    def _plan(self, base: AgentContext, loader: ContextLoader, delegation: Delegation) -> tuple[ForgePlan, bool]:
        """The planner's plan (sanitized), or a fallback plan when planning fails."""
        preview = loader.planning_preview(delegation.task)
        context = base.model_copy(update={"file_context": preview})
        try:
            plan = self._planner().run(context)
        except PlanParseError as e:
            logger.warning(f"[FORGE] Planning output invalid ({e.error}), proceeding with fallback plan")
            self._event("forge:plan_fallback", "Planner output invalid, using fallback plan",
                        phase=Phase.PLANNING, level="warn")
            return build_fallback_plan(delegation), False
        except BudgetExceededError as e:
            logger.warning(f"[FORGE] Planning budget exhausted ({e}), proceeding with fallback plan")
            return build_fallback_plan(delegation), False

        sanitized = self._sanitize_plan(plan, loader)
        if sanitized is None:
            self._event("forge:plan_fallback", "No planned file exists in the workspace, using fallback plan",
                        phase=Phase.PLANNING, level="warn")
            return build_fallback_plan(delegation), False
        self._event("forge:plan", sanitized.plan, phase=Phase.PLANNING, **summarize_plan(sanitized))
        return sanitized, True

    def _sanitize_plan(self, plan: ForgePlan, loader: ContextLoader) -> ForgePlan | None:
        """Drop planned modify/read files that do not exist; None when nothing usable is left."""
        modify = [p for p in plan.files_to_modify if loader.exists(p)]
        read = [p for p in plan.files_to_read if loader.exists(p)]
        for missing in set(plan.files_to_modify) - set(modify):
            logger.warning(f"[FORGE] Planned file_to_modify does not exist: {missing}")

        sanitized = plan.model_copy(update={"files_to_modify": modify, "files_to_read": read})
        if sanitized.is_empty and not plan.is_empty:
            return None
        if plan.files_to_modify and not modify and not plan.files_to_create:
            return None
        return sanitized

    def _incoherent_files(self, plan: ForgePlan, loader: ContextLoader, keywords: list[str]) -> list[str]:
        """Planned files that never mention a task keyword; empty when the plan looks right."""
        if not plan.files_to_modify or not keywords:
            return []
        suspicious = []
        for path in plan.files_to_modify:
            snippet = loader.first_lines([path], COHERENCE_MAX_LINES).get(path)
            if snippet is None:
                continue
            text = snippet.lower()
            if any(k in text or k in path.lower() for k in keywords):
                return []
            if path.lower().endswith(STYLE_SUFFIXES) and any(k in STYLE_KEYWORDS for k in keywords):
                return []
            suspicious.append(path)
        return suspicious if len(suspicious) == len(plan.files_to_modify) else []

    def _replan_allowed(self, run: ForgeRun, reason: str) -> bool:
        if run.replans >= MAX_REPLANS:
            logger.warning(f"[FORGE] Replan ({reason}) refused: already replanned once")
            return False
        remaining = self.router.budget.fraction_remaining()
        if remaining < MIN_BUDGET_FRACTION_FOR_REPLAN:
            logger.warning(f"[FORGE] Replan ({reason}) refused: only {remaining:.0%} of the task budget left")
            return False
        return True

    def _replan(self, base: AgentContext, loader: ContextLoader, request: _ReplanRequest) -> ForgePlan | None:
        context = base.model_copy(update={
            "failed_plan": request.failed_plan,
            "replan_context": request.reason,
            "extra": {"failed_file_snippets": request.snippets},
        })
        try:
            plan = self._planner().run(context)
        except (PlanParseError, BudgetExceededError) as e:
            logger.warning(f"[FORGE] Re-planning failed: {e}")
            return None

        overlap = [f for f in plan.files_to_modify if f in request.failed_files]
        if overlap:
            logger.warning(f"[FORGE] Re-plan chose files that already failed ({overlap}), rejecting")
            return None
        sanitized = self._sanitize_plan(plan, loader)
        if sanitized is None or not (sanitized.files_to_modify or sanitized.files_to_create):
            return None
        self._event("forge:replan", sanitized.plan, phase=Phase.PLANNING, **summarize_plan(sanitized))
        return sanitized

    # -- implementation + correction -----------------------------------------

    def _implement(
        self,
        machine: ForgeStateMachine,
        base: AgentContext,
        loader: ContextLoader,
        validator: Validator,
        delegation: Delegation,
        workspace: Path,
        plan: ForgePlan,
    ) -> ForgeOutcome | _ReplanRequest:
        file_context = loader.load(plan, delegation.task, delegation.expected_output)
        self._advance(machine, Phase.IMPLEMENTATION, f"Implementing with {len(file_context)} file(s) in context")
        context = base.model_copy(update={"plan": plan, "file_context": file_context})
        output = ImplementerAgent(self.router).run(context)

        if not output.files:
            return self._no_changes(machine, delegation, plan, output)

        attempt = _Attempt(output=output, originals={})
        return self._verify_and_correct(machine, base, loader, validator, delegation, workspace, plan, attempt)

    def _no_changes(self, machine: ForgeStateMachine, delegation: Delegation, plan: ForgePlan, output: CodeOutput) -> ForgeOutcome:
        if is_implementation_task(delegation.task):
            return self._fail(
                machine, "Implementation returned no file changes for a task that requires them",
                plan=plan, output=output,
            )
        logger.info(f"[FORGE] No changes needed: {output.description[:80]}")
        self._advance(machine, Phase.DONE, "No changes needed")
        return self._outcome(machine, success=True, plan=plan, output=output)

    def _record_originals(self, workspace: Path, files: list[FileChange], originals: dict[str, str | None]) -> None:
        for change in files:
            if change.path in originals:
                continue
            try:
                full_path = sanitize_workspace_path(workspace, change.path)
            except ProjectSecurityError:
                # rejected again by the patch engine with a proper error
                continue
            originals[change.path] = full_path.read_text(encoding="utf-8") if full_path.is_file() else None

    def _verify_and_correct(
        self,
        machine: ForgeStateMachine,
        base: AgentContext,
        loader: ContextLoader,
        validator: Validator,
        delegation: Delegation,
        workspace: Path,
        plan: ForgePlan,
        attempt: _Attempt,
    ) -> ForgeOutcome | _ReplanRequest:
        run = machine.run
        while True:
            paths = attempt.output.paths
            self._record_originals(workspace, attempt.output.files, attempt.originals)

            applied = apply_changes(workspace, attempt.output.files)
            if isinstance(applied, Err):
                failure = applied.error
                attempt.validation_failures = 0
                if failure.path == attempt.last_failed_file:
                    attempt.search_failures += 1
                else:
                    attempt.search_failures = 1
                    attempt.last_failed_file = failure.path
                run.record_attempt(run.rounds_used, "apply", failure.message)
                self._event("forge:apply_failed", failure.message[:300], phase=machine.phase, level="warn",
                            file=failure.path)
                self.workspace_manager.restore_workspace(workspace, paths)

                if attempt.search_failures >= SEARCH_FAILURES_FOR_REPLAN:
                    return _ReplanRequest(
                        failed_plan=plan,
                        failed_files=[failure.path],
                        reason=f"Search string repeatedly not found in {failure.path} "
                               f"({attempt.search_failures} times)",
                        snippets=loader.first_lines([failure.path], REPLAN_SNIPPET_LINES),
                    )
                if not machine.has_rounds_left():
                    return self._fail(machine, f"Edit application failed: {failure.message[:500]}",
                                      plan=plan, output=attempt.output, originals=attempt.originals)

                self._advance(machine, Phase.CORRECTION, f"Correcting failed edit in {failure.path}")
                attempt.output = self._correct(base, workspace, plan, run, paths, {
                    "workspace_restored": True,
                    "applied_files": [],
                    "failed_file": failure.path,
                    "failed_edit_index": getattr(failure, "edit_index", None),
                }, f"Edit application error: {failure.message}")
                if not attempt.output.files:
                    return self._no_changes(machine, delegation, plan, attempt.output)
                continue

            attempt.last_failed_file = ""
            attempt.search_failures = 0
            self._advance(machine, Phase.VALIDATION, f"Validating {len(paths)} file(s)")
            validator.auto_fix(paths)
            result = validator.run(paths)

            if result.success:
                logger.info(f"[FORGE] Validation passed after {run.rounds_used} correction round(s)")
                return self._after_validation(machine, base, validator, workspace, plan, attempt, result)

            attempt.validation_failures += 1
            run.record_attempt(run.rounds_used, "validation", self._summarize(result))
            self._event("forge:validation_failed", self._summarize(result), phase=Phase.VALIDATION, level="warn",
                        errors=len(result.errors), timed_out=result.timed_out)

            file_state = self.workspace_manager.read_files_state(workspace, paths)
            if not machine.has_rounds_left():
                self.workspace_manager.restore_workspace(workspace, paths)
                error = (timeout_message("Validation") if result.timed_out
                         else f"Validation failed after {run.rounds_used + 1} attempt(s)")
                return self._fail(machine, error, plan=plan, output=attempt.output, originals=attempt.originals,
                                  lint_output=result.output, timed_out=result.timed_out)

            errors_text = format_errors_for_prompt(result.errors, paths, MAX_ERROR_PROMPT_CHARS)
            if not errors_text:
                errors_text = result.output[:MAX_ERROR_PROMPT_CHARS]
            if result.timed_out:
                errors_text = f"{timeout_message('Validation')}\n{errors_text}"

            extra = {"workspace_restored": True, "applied_files": paths}
            if attempt.validation_failures >= VALIDATION_FAILURES_FOR_ESCALATION:
                extra["escalation_snippets"] = build_escalation(result.errors, file_state)

            self.workspace_manager.restore_workspace(workspace, paths)
            self._advance(machine, Phase.CORRECTION, f"Correcting {len(result.errors)} validation error(s)")
            attempt.output = self._correct(base, workspace, plan, run, paths, extra, errors_text)
            if not attempt.output.files:
                return self._no_changes(machine, delegation, plan, attempt.output)

    def _correct(
        self,
        base: AgentContext,
        workspace: Path,
        plan: ForgePlan,
        run: ForgeRun,
        paths: list[str],
        extra: dict,
        error_output: str,
    ) -> CodeOutput:
        # the workspace was restored, so the corrector sees the original files
        state = self.workspace_manager.read_files_state(workspace, paths)
        context = base.model_copy(update={
            "plan": plan,
            "file_context": state,
            "error_output": error_output,
            "attempt_history": list(run.attempt_history),
            "extra": extra,
        })
        return CorrectorAgent(self.router).run(context)

    @staticmethod
    def _summarize(result: ValidationResult) -> str:
        if result.timed_out:
            return timeout_message("Validation")
        if result.errors:
            return f"{len(result.errors)} error(s), {result.warning_count} warning(s)"
        first = next((l for l in result.output.splitlines() if "FAIL" in l or "error" in l.lower()), "")
        return f"Validation failed (no parsed errors): {first[:120] or 'unknown error'}"

    # -- testing -------------------------------------------------------------

    def _after_validation(
        self,
        machine: ForgeStateMachine,
        base: AgentContext,
        validator: Validator,
        workspace: Path,
        plan: ForgePlan,
        attempt: _Attempt,
        result: ValidationResult,
    ) -> ForgeOutcome:
        if not self.forge.enable_test_execution:
            self._advance(machine, Phase.DONE, "Change validated")
            return self._outcome(machine, success=True, plan=plan, output=attempt.output,
                                 originals=attempt.originals, lint_output=result.output)

        self._advance(machine, Phase.TESTING, "Generating tests")
        test_output, error = self._run_tests(base, validator, workspace, plan, attempt)
        # attempt.output now carries any generated tests that passed
        outcome = dict(plan=plan, output=attempt.output, originals=attempt.originals, lint_output=result.output)
        if error is None:
            self._advance(machine, Phase.DONE, "Change validated and tested")
            return self._outcome(machine, success=True, test_output=test_output, **outcome)

        logger.warning(f"[FORGE] Testing phase failed, downgrading to partial success: {error[:200]}")
        self._event("forge:tests_failed", error[:300], phase=Phase.TESTING, level="warn")
        self._advance(machine, Phase.DONE, "Change validated, tests failed")
        return self._outcome(machine, success=True, partial=True, test_output=test_output, error=error, **outcome)

    def _run_tests(
        self,
        base: AgentContext,
        validator: Validator,
        workspace: Path,
        plan: ForgePlan,
        attempt: _Attempt,
    ) -> tuple[str, str | None]:
        """Generate and run tests for the change. Returns (output, error or None)."""
        changed = attempt.output.paths
        context = base.model_copy(update={
            "plan": plan,
            "file_context": self.workspace_manager.read_files_state(workspace, changed),
            "extra": {"changed_files": changed},
        })
        try:
            tests = TestWriterAgent(self.router).run(context)
        except (LLMError, BudgetExceededError, OutputParseError) as e:
            return "", f"Test generation failed: {e}"

        new_tests = [f for f in tests.files if f.path not in changed]
        self._record_originals(workspace, new_tests, attempt.originals)
        applied = apply_changes(workspace, new_tests)
        if isinstance(applied, Err):
            self.workspace_manager.restore_workspace(workspace, [f.path for f in new_tests])
            return "", f"Generated tests could not be written: {applied.error.message[:300]}"

        result = validator.run_related_tests(changed, extra_tests=[f.path for f in new_tests])
        if not result.success:
            self.workspace_manager.restore_workspace(workspace, [f.path for f in new_tests])
            for f in new_tests:
                attempt.originals.pop(f.path, None)
            error = timeout_message("Tests") if result.timed_out else "Related tests failed"
            return result.output, error

        attempt.output = attempt.output.model_copy(update={"files": [*attempt.output.files, *new_tests]})
        return result.output, None


def _relevant(path: str, error_files: set[str]) -> bool:
    return any(e.endswith(path) or path.endswith(e) for e in error_files)


def build_escalation(errors: list[StructuredError], file_state: dict[str, str]) -> str:
    """First lines of the files that keep failing validation, capped."""
    error_files = {e.file for e in errors}
    snippets: list[str] = []
    total = 0
    for path, content in file_state.items():
        if error_files and not _relevant(path, error_files):
            continue
        head = "\n".join(content.split("\n")[:ESCALATION_LINES])
        snippet = f"--- {path} (first {ESCALATION_LINES} lines) ---\n{head}\n--- end ---"
        if total + len(snippet) > ESCALATION_MAX_CHARS:
            break
        snippets.append(snippet)
        total += len(snippet)
    return "\n".join(snippets)
