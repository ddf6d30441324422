import json
from pathlib import Path

import pytest

from forgeline.config_loader import ForgeConfig, ValidationConfig
from forgeline.forge.validation import (
    StructuredError,
    ValidationFailure,
    Validator,
    candidate_test_paths,
    find_related_test_files,
    format_errors_for_prompt,
    is_eslint_config_error,
    parse_eslint_errors,
    parse_location_errors,
    parse_tsc_errors,
    resolve_commands,
    strip_npm_warnings,
)


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

def test_parse_tsc_errors():
    raw = (
        "src/app.ts(12,5): error TS2304: Cannot find name 'foo'.\n"
        "src/util.ts(3,1): warning TS6133: 'x' is declared but never used.\n"
        "Found 2 errors.\n"
    )
    errors = parse_tsc_errors(raw)
    assert [(e.file, e.line, e.column, e.code, e.severity) for e in errors] == [
        ("src/app.ts", 12, 5, "TS2304", "error"),
        ("src/util.ts", 3, 1, "TS6133", "warning"),
    ]
    assert errors[0].message == "Cannot find name 'foo'."


def test_parse_eslint_errors():
    raw = (
        "/work/src/app.ts\n"
        "  3:10  error    'x' is assigned a value but never used  no-unused-vars\n"
        "  7:1   warning  Unexpected console statement            no-console\n"
        "\n"
        "✖ 2 problems (1 error, 1 warning)\n"
    )
    errors = parse_eslint_errors(raw)
    assert [(e.file, e.line, e.code, e.severity) for e in errors] == [
        ("/work/src/app.ts", 3, "no-unused-vars", "error"),
        ("/work/src/app.ts", 7, "no-console", "warning"),
    ]


def test_parse_location_errors_ruff_and_mypy():
    raw = (
        "src/app.py:1:8: F401 [*] `os` imported but unused\n"
        "src/app.py:4: error: Incompatible return value type  [return-value]\n"
        "src/app.py:4: note: See docs\n"
        "node_modules/x/index.js:1:1: E nope\n"
        "Found 1 error.\n"
    )
    errors = parse_location_errors(raw, "ruff")
    assert [(e.line, e.column, e.code) for e in errors] == [(1, 8, "F401"), (4, 0, "return-value")]
    assert errors[1].message == "Incompatible return value type"
    assert all(e.source == "ruff" for e in errors)


def test_format_errors_for_prompt_prioritizes_touched_files():
    errors = [
        StructuredError("lib/other.py", 1, 1, "E1", "elsewhere"),
        StructuredError("src/app.py", 2, 1, "W1", "warn here", severity="warning"),
        StructuredError("src/app.py", 3, 1, "E2", "error here"),
    ]
    lines = format_errors_for_prompt(errors, ["src/app.py"]).splitlines()
    assert [l.split(" - ")[1].split(":")[0] for l in lines] == ["E2", "W1", "E1"]
    assert lines[0] == "[BUILD] ERROR src/app.py:3:1 - E2: error here"


def test_format_errors_for_prompt_caps_length():
    errors = [StructuredError("src/app.py", i, 1, "E1", "x" * 50) for i in range(100)]
    assert len(format_errors_for_prompt(errors, [], max_chars=300)) <= 300


def test_npm_noise_and_eslint_config_errors():
    assert strip_npm_warnings("npm warn old\nreal error\nnpm WARN x") == "real error"
    assert is_eslint_config_error("Oops! Something went wrong! :(")
    assert not is_eslint_config_error("  1:1  error  bad  semi")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def test_resolve_commands_for_node(tmp_path: Path):
    (tmp_path / "package.json").write_text(json.dumps({
        "scripts": {"build": "tsc"},
        "devDependencies": {"jest": "^29"},
    }))
    (tmp_path / "pnpm-lock.yaml").write_text("")

    commands = resolve_commands(tmp_path)

    assert commands.stack == "node"
    assert commands.build == ["pnpm", "run", "build"]
    assert commands.test[:2] == ["npx", "jest"]


def test_resolve_commands_for_python_with_overrides(tmp_path: Path):
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'x'\n")

    commands = resolve_commands(tmp_path, ValidationConfig(lint_command=["flake8"], typecheck_command=[]))

    assert commands.stack == "python"
    assert commands.lint == ["flake8"]
    assert commands.typecheck is None
    assert commands.test == ["pytest", "-q"]


def test_unknown_stack_has_no_commands(tmp_path: Path):
    commands = resolve_commands(tmp_path)
    assert commands.stack == "unknown"
    assert commands.lint is None and commands.test is None


def test_related_test_discovery(tmp_path: Path):
    assert "src/tests/test_app.py" in candidate_test_paths("src/app.py")
    assert "src/app.test.ts" in candidate_test_paths("src/app.ts")

    (tmp_path / "tests").mkdir()
    (tmp_path / "tests" / "test_app.py").write_text("def test_x(): pass\n")
    assert find_related_test_files(["src/app.py", "src/none.py"], tmp_path) == ["tests/test_app.py"]


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------

def _validator(tmp_path: Path, **commands) -> Validator:
    return Validator.for_workspace(tmp_path, ForgeConfig(), ValidationConfig(**commands))


def test_validator_reports_structured_failure(tmp_path: Path):
    validator = _validator(
        tmp_path, lint_command=["sh", "-c", "echo 'src/app.py:1:1: E999 boom'; exit 1", "lint"],
    )
    result = validator.run(["src/app.py"])

    assert not result.success
    assert "[sh FAIL]" in result.output
    [error] = result.errors
    assert (error.file, error.code, error.message) == ("src/app.py", "E999", "boom")
    with pytest.raises(ValidationFailure):
        result.raise_for_failure()


def test_validator_passes_clean_run(tmp_path: Path):
    result = _validator(tmp_path, lint_command=["sh", "-c", "exit 0", "lint"]).run(["src/app.py"])
    assert result.success
    assert result.errors == []
    result.raise_for_failure()


def test_missing_tool_is_skipped(tmp_path: Path):
    validator = _validator(tmp_path, lint_command=["forgeline-no-such-linter"])
    result = validator.run(["src/app.py"])
    assert result.success
    assert "SKIPPED" in result.output


def test_nonzero_exit_without_output_counts_as_warnings_only(tmp_path: Path):
    result = _validator(tmp_path, lint_command=["sh", "-c", "exit 1", "lint"]).run(["src/app.py"])
    assert result.success
    assert "OK (warnings only)" in result.output


def test_related_tests_without_runner(tmp_path: Path):
    (tmp_path / "tests").mkdir()
    (tmp_path / "tests" / "test_app.py").write_text("def test_x(): pass\n")

    result = _validator(tmp_path).run_related_tests(["src/app.py"])
    assert result.success
    assert "no test runner" in result.output

    none_found = _validator(tmp_path).run_related_tests(["src/other.py"])
    assert "No related test files" in none_found.output
