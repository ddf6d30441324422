"""
Validation — lint, type-check, build and related tests for a workspace.

Commands come from the `validation` config section when set, otherwise
from the detected stack:

  node    eslint (file-scoped), tsc --noEmit, <pm> run build, vitest/jest
  python  ruff check (file-scoped), mypy (file-scoped), pytest

A tool that is not installed (exit 127) is skipped with a warning rather
than failing the change. Exit 143 is reported as a timeout.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Literal

from loguru import logger
from pydantic import BaseModel, Field

from forgeline.config_loader import ForgeConfig, ValidationConfig
from forgeline.workspace.process import CommandResult, run_command

MAX_ERROR_PROMPT_CHARS = 2000
MAX_STEP_OUTPUT_CHARS = 3000
NOT_FOUND_EXIT_CODE = 127

NODE_SOURCE_SUFFIXES = (".ts", ".tsx", ".js", ".jsx")
PYTHON_SOURCE_SUFFIXES = (".py",)

ESLINT_CONFIG_ERROR_PATTERNS = (
    "Oops! Something went wrong!",
    "Error while loading rule",
    "You have used a rule which requires",
    "Error: Failed to load",
    "Cannot read config file",
    "ESLintrc configuration is no longer supported",
)


class ValidationFailure(Exception):
    """A change did not pass lint/type-check. Carries the tool output."""

    def __init__(self, output: str, timed_out: bool = False):
        super().__init__(output[:500])
        self.output = output
        self.timed_out = timed_out


# ---------------------------------------------------------------------------
# Structured errors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StructuredError:
    file: str
    line: int
    column: int
    code: str
    message: str
    severity: Literal["error", "warning"] = "error"
    source: str = "build"

    def format(self) -> str:
        severity = "ERROR" if self.severity == "error" else "WARN"
        return f"[{self.source.upper()}] {severity} {self.file}:{self.line}:{self.column} - {self.code}: {self.message}"


_TSC_ERROR = re.compile(r"^(.+?)\((\d+),(\d+)\):\s+(error|warning)\s+(TS\d+):\s+(.+)$")
_ESLINT_FILE = re.compile(r"^/.*\.\w+$|^[a-zA-Z].*\.\w+$")
_ESLINT_ERROR = re.compile(r"^\s+(\d+):(\d+)\s+(error|warning)\s+(.+?)\s{2,}(\S+)\s*$")
# ruff, mypy, pyflakes, and most bundlers: path:line[:col]: message
_LOCATION_ERROR = re.compile(r"^([^\s:][^:]*\.\w+):(\d+):(?:(\d+):)?\s*(.+)$")
_LEADING_CODE = re.compile(r"^([A-Z]+\d+)\s+(.+)$")
_TRAILING_CODE = re.compile(r"^(.+?)\s+\[([\w-]+)\]$")
_SEVERITY_PREFIX = re.compile(r"^(error|warning|note):\s*(.+)$")


def parse_tsc_errors(raw: str) -> list[StructuredError]:
    errors = []
    for line in raw.split("\n"):
        m = _TSC_ERROR.match(line.strip())
        if not m:
            continue
        errors.append(StructuredError(
            file=m.group(1).strip(),
            line=int(m.group(2)),
            column=int(m.group(3)),
            severity="warning" if m.group(4) == "warning" else "error",
            code=m.group(5),
            message=m.group(6).strip(),
            source="tsc",
        ))
    return errors


def parse_eslint_errors(raw: str) -> list[StructuredError]:
    errors = []
    current_file = ""
    for line in raw.split("\n"):
        trimmed = line.strip()
        if _ESLINT_FILE.match(trimmed) and " " not in trimmed:
            current_file = trimmed
            continue
        m = _ESLINT_ERROR.match(line)
        if m and current_file:
            errors.append(StructuredError(
                file=current_file,
                line=int(m.group(1)),
                column=int(m.group(2)),
                severity="warning" if m.group(3) == "warning" else "error",
                message=m.group(4).strip(),
                code=m.group(5),
                source="eslint",
            ))
    return errors


def parse_location_errors(raw: str, source: str = "build") -> list[StructuredError]:
    """Parse `path:line[:col]: message` lines (ruff, mypy, bundlers)."""
    errors = []
    for line in raw.split("\n"):
        m = _LOCATION_ERROR.match(line.strip())
        if not m or "node_modules" in m.group(1):
            continue

        message = m.group(4).strip()
        severity: Literal["error", "warning"] = "error"
        code = ""

        sev = _SEVERITY_PREFIX.match(message)
        if sev:
            if sev.group(1) == "note":
                continue
            severity = "warning" if sev.group(1) == "warning" else "error"
            message = sev.group(2)

        lead = _LEADING_CODE.match(message)
        if lead:
            code, message = lead.group(1), lead.group(2)
        else:
            trail = _TRAILING_CODE.match(message)
            if trail:
                message, code = trail.group(1), trail.group(2)

        errors.append(StructuredError(
            file=m.group(1),
            line=int(m.group(2)),
            column=int(m.group(3) or 0),
            code=code or "E",
            message=message,
            severity=severity,
            source=source,
        ))
    return errors


def separate_errors_and_warnings(
    errors: list[StructuredError],
) -> tuple[list[StructuredError], list[StructuredError]]:
    errs = [e for e in errors if e.severity == "error"]
    warns = [e for e in errors if e.severity == "warning"]
    return errs, warns


def _is_relevant(error_file: str, touched: set[str]) -> bool:
    return any(error_file.endswith(t) or t.endswith(error_file) for t in touched)


def format_errors_for_prompt(
    errors: list[StructuredError],
    touched_files: list[str],
    max_chars: int = MAX_ERROR_PROMPT_CHARS,
) -> str:
    """Errors in touched files first, errors before warnings, capped at max_chars."""
    touched = set(touched_files)
    prioritized = sorted(
        errors,
        key=lambda e: (0 if _is_relevant(e.file, touched) else 1, 0 if e.severity == "error" else 1),
    )

    lines: list[str] = []
    total = 0
    for err in prioritized:
        formatted = err.format()
        if total + len(formatted) > max_chars:
            break
        lines.append(formatted)
        total += len(formatted) + 1
    return "\n".join(lines)


def strip_npm_warnings(text: str) -> str:
    return "\n".join(
        line for line in text.split("\n")
        if not line.startswith("npm warn") and not line.startswith("npm WARN")
    ).strip()


def is_eslint_config_error(output: str) -> bool:
    return any(pattern in output for pattern in ESLINT_CONFIG_ERROR_PATTERNS)


# ---------------------------------------------------------------------------
# Stack detection
# ---------------------------------------------------------------------------

def detect_package_manager(workspace: Path) -> str:
    if (workspace / "pnpm-lock.yaml").exists():
        return "pnpm"
    if (workspace / "yarn.lock").exists():
        return "yarn"
    return "npm"


def read_package_json(workspace: Path) -> dict:
    pkg_path = workspace / "package.json"
    if not pkg_path.exists():
        return {}
    try:
        return json.loads(pkg_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        logger.debug(f"[VALIDATE] Unreadable package.json: {e}")
        return {}


def detect_stack(workspace: Path) -> str:
    if (workspace / "package.json").exists():
        return "node"
    if any((workspace / name).exists() for name in ("pyproject.toml", "setup.py", "setup.cfg")):
        return "python"
    return "unknown"


@dataclass
class ValidationCommands:
    stack: str = "unknown"
    lint: list[str] | None = None
    fix: list[str] | None = None
    typecheck: list[str] | None = None
    typecheck_scoped: bool = False
    build: list[str] | None = None
    test: list[str] | None = None
    source_suffixes: tuple[str, ...] = field(default_factory=tuple)


def _node_test_command(pkg: dict) -> list[str]:
    deps = {**pkg.get("dependencies", {}), **pkg.get("devDependencies", {})}
    if "vitest" not in deps and any(k in deps for k in ("jest", "@jest/core", "ts-jest")):
        return ["npx", "jest", "--verbose", "--no-coverage"]
    return ["npx", "vitest", "run", "--reporter=verbose"]


def resolve_commands(workspace: Path, overrides: ValidationConfig | None = None) -> ValidationCommands:
    stack = detect_stack(workspace)

    if stack == "node":
        pkg = read_package_json(workspace)
        has_build = bool(pkg.get("scripts", {}).get("build"))
        commands = ValidationCommands(
            stack=stack,
            lint=["npx", "eslint", "--no-error-on-unmatched-pattern"],
            fix=["npx", "eslint", "--fix", "--no-error-on-unmatched-pattern"],
            typecheck=["npx", "tsc", "--noEmit", "--incremental"],
            build=[detect_package_manager(workspace), "run", "build"] if has_build else None,
            test=_node_test_command(pkg),
            source_suffixes=NODE_SOURCE_SUFFIXES,
        )
    elif stack == "python":
        commands = ValidationCommands(
            stack=stack,
            lint=["ruff", "check"],
            fix=["ruff", "check", "--fix"],
            typecheck=["mypy"],
            typecheck_scoped=True,
            test=["pytest", "-q"],
            source_suffixes=PYTHON_SOURCE_SUFFIXES,
        )
    else:
        commands = ValidationCommands(stack=stack)

    if overrides:
        for name in ("lint", "fix", "typecheck", "build", "test"):
            value = getattr(overrides, f"{name}_command")
            if value is not None:
                setattr(commands, name, list(value) or None)
    return commands


# ---------------------------------------------------------------------------
# Related tests
# ---------------------------------------------------------------------------

NODE_TEST_SUFFIXES = (
    ".test.ts", ".test.tsx", ".test.js", ".test.jsx",
    ".spec.ts", ".spec.tsx", ".spec.js", ".spec.jsx",
)
TEST_DIRS = ("__tests__", "tests", "test")


def candidate_test_paths(file_path: str) -> list[str]:
    path = PurePosixPath(file_path)
    stem, parent = path.stem, path.parent
    dirs = [parent] + [parent / d for d in TEST_DIRS]
    if str(parent.parent) not in (".", str(parent)):
        dirs += [parent.parent / d for d in TEST_DIRS]

    candidates: list[str] = []
    if path.suffix == ".py":
        for d in dirs:
            candidates.append(str(d / f"test_{stem}.py"))
            candidates.append(str(d / f"{stem}_test.py"))
        candidates.append(f"tests/test_{stem}.py")
    else:
        for d in dirs:
            candidates.extend(str(d / f"{stem}{suffix}") for suffix in NODE_TEST_SUFFIXES)
    return candidates


def find_related_test_files(changed_files: list[str], workspace: Path) -> list[str]:
    found: dict[str, None] = {}
    for changed in changed_files:
        for candidate in candidate_test_paths(changed):
            if candidate != changed and (workspace / candidate).is_file():
                found.setdefault(candidate, None)
    return list(found)


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    success: bool
    output: str = ""
    timed_out: bool = False
    errors: list[StructuredError] = Field(default_factory=list)
    warning_count: int = 0

    def raise_for_failure(self) -> None:
        if not self.success:
            raise ValidationFailure(self.output, timed_out=self.timed_out)


@dataclass
class _Step:
    success: bool
    output: str
    timed_out: bool = False
    raw: str = ""


class Validator:
    """Runs the configured checks against one workspace."""

    def __init__(self, workspace: Path, forge: ForgeConfig, commands: ValidationCommands):
        self.workspace = workspace
        self.forge = forge
        self.commands = commands

    @classmethod
    def for_workspace(
        cls, workspace: Path, forge: ForgeConfig, overrides: ValidationConfig | None = None,
    ) -> "Validator":
        commands = resolve_commands(workspace, overrides)
        logger.debug(f"[VALIDATE] Stack for {workspace.name}: {commands.stack}")
        return cls(workspace, forge, commands)

    def _lintable(self, files: list[str]) -> list[str]:
        if not self.commands.source_suffixes:
            return list(files)
        return [f for f in files if f.endswith(self.commands.source_suffixes)]

    def _run(self, tag: str, cmd: list[str], timeout: float) -> _Step:
        result: CommandResult = run_command(cmd, cwd=self.workspace, timeout=timeout)
        cleaned = strip_npm_warnings(result.output)

        if result.timed_out:
            logger.warning(f"[VALIDATE] {tag} timed out")
            return _Step(False, f"[{tag} TIMEOUT] {result.describe()}\n{cleaned[:MAX_STEP_OUTPUT_CHARS]}", True, cleaned)
        if result.exit_code == NOT_FOUND_EXIT_CODE:
            logger.warning(f"[VALIDATE] {cmd[0]} not available, skipping {tag}")
            return _Step(True, f"[{tag}] SKIPPED ({cmd[0]} not installed)")
        if result.success:
            return _Step(True, f"[{tag}] {cleaned}".rstrip())
        if not cleaned:
            return _Step(True, f"[{tag}] OK (warnings only)")
        if tag == "eslint" and is_eslint_config_error(cleaned):
            logger.warning("[VALIDATE] ESLint config error in target project, skipping eslint")
            return _Step(True, f"[{tag}] SKIPPED (config error in target project)")
        return _Step(False, f"[{tag} FAIL] {cleaned[:MAX_STEP_OUTPUT_CHARS]}", raw=cleaned)

    @staticmethod
    def _tag(cmd: list[str]) -> str:
        # npx eslint -> eslint, ruff check -> ruff
        return cmd[1] if cmd[0] == "npx" and len(cmd) > 1 else cmd[0]

    def auto_fix(self, files: list[str]) -> None:
        """Best-effort fixer pass; its own failures surface in the lint step."""
        if not (self.forge.enable_auto_fix and self.commands.fix):
            return
        lintable = self._lintable(files)
        if not lintable:
            return
        result = run_command([*self.commands.fix, *lintable], cwd=self.workspace, timeout=self.forge.lint_timeout)
        logger.debug(f"[VALIDATE] Auto-fix exit {result.exit_code} on {len(lintable)} file(s)")

    def run(self, files: list[str]) -> ValidationResult:
        lintable = self._lintable(files)
        steps: list[_Step] = []
        errors: list[StructuredError] = []

        if self.commands.lint and lintable:
            tag = self._tag(self.commands.lint)
            step = self._run(tag, [*self.commands.lint, *lintable], self.forge.lint_timeout)
            steps.append(step)
            errors += parse_eslint_errors(step.raw) if tag == "eslint" else parse_location_errors(step.raw, tag)

        if self.commands.typecheck and (lintable or not self.commands.typecheck_scoped):
            cmd = [*self.commands.typecheck, *lintable] if self.commands.typecheck_scoped else self.commands.typecheck
            tag = self._tag(cmd)
            step = self._run(tag, cmd, self.forge.lint_timeout)
            steps.append(step)
            errors += parse_tsc_errors(step.raw) if tag == "tsc" else parse_location_errors(step.raw, tag)

        if all(s.success for s in steps) and self.forge.run_build and self.commands.build:
            step = self._run("build", self.commands.build, self.forge.build_timeout)
            steps.append(step)
            errors += parse_location_errors(step.raw, "build")

        success = all(s.success for s in steps)
        errs, warns = separate_errors_and_warnings(errors)
        result = ValidationResult(
            success=success,
            output="\n".join(s.output for s in steps),
            timed_out=any(s.timed_out for s in steps),
            errors=[] if success else errs,
            warning_count=len(warns),
        )
        if success:
            logger.info(f"[VALIDATE] Passed ({len(steps)} step(s), {len(warns)} warning(s))")
        else:
            logger.warning(f"[VALIDATE] Failed with {len(errs)} structured error(s)")
        return result

    def run_related_tests(self, files: list[str], extra_tests: list[str] | None = None) -> ValidationResult:
        tests = find_related_test_files(files, self.workspace)
        for t in extra_tests or []:
            if t not in tests:
                tests.append(t)
        if not tests:
            return ValidationResult(success=True, output="[tests] No related test files found")
        if not self.commands.test:
            return ValidationResult(success=True, output="[tests] SKIPPED (no test runner for this stack)")

        logger.info(f"[VALIDATE] Running {len(tests)} related test file(s)")
        step = self._run("tests", [*self.commands.test, *tests], self.forge.test_timeout)
        return ValidationResult(success=step.success, output=step.output, timed_out=step.timed_out)
