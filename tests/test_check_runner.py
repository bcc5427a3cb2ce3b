"""
Tests for the local check runner and its cycle decisions.
"""

import json
import tempfile
from pathlib import Path

import pytest

from healforge.check_runner import (
    CheckDefinition,
    CommandResult,
    QUALITY_CHECKS,
    Signal,
    decide,
    get_applicable_checks,
    get_available_scripts,
    has_uncommitted_changes,
    run_all_checks,
)
from healforge.errors import FixApplicationFailure, UnfixableCheckFailure


# =============================================================================
# Helpers
# =============================================================================

class FakeExecutor:
    """
    Scripted command executor.

    Each command line maps to a list of exit codes consumed in order; the
    last code repeats once the list runs out. Fix commands can flip the
    state of the check they repair.
    """

    def __init__(self, scripted: dict[str, list[int]], fixes: dict[str, str] = None):
        self.scripted = {k: list(v) for k, v in scripted.items()}
        self.fixes = fixes or {}
        self.calls: list[str] = []

    def __call__(self, command, args, cwd):
        line = " ".join([command, *args])
        self.calls.append(line)
        if line in self.fixes:
            # a working fix makes the check pass from now on
            self.scripted[self.fixes[line]] = [0]
            return CommandResult(0, "fixed")
        codes = self.scripted.get(line, [0])
        code = codes.pop(0) if len(codes) > 1 else codes[0]
        output = "ok" if code == 0 else f"{line} failed: error TS2304"
        return CommandResult(code, output, "" if code == 0 else output)


def silent(message, kind):
    pass


TYPECHECK = CheckDefinition("typecheck", "Type Check", "pnpm", ["typecheck"])
LINT = CheckDefinition("lint", "Lint", "pnpm", ["lint"], fix_command="pnpm", fix_args=["lint", "--fix"], can_auto_fix=True)
FORMAT = CheckDefinition("format", "Format", "pnpm", ["format", "--check"], fix_command="pnpm", fix_args=["format"], can_auto_fix=True)
TEST = CheckDefinition("test", "Tests", "pnpm", ["test"])


def run(checks, executor, **kwargs):
    with tempfile.TemporaryDirectory() as tmpdir:
        return run_all_checks(Path(tmpdir), checks=checks, executor=executor, on_progress=silent, **kwargs)


# =============================================================================
# decide()
# =============================================================================

def test_decide_passed_continues():
    assert decide(True, fixable=False, dry_run=False).signal is Signal.CONTINUE


def test_decide_unfixable_aborts():
    signal = decide(False, fixable=False, dry_run=False)
    assert signal.signal is Signal.ABORT
    assert signal.reason == "requires manual fix"


def test_decide_fix_outcomes():
    """A working fix restarts the cycle, a broken one aborts it."""
    assert decide(False, fixable=True, dry_run=False, fix_succeeded=True).signal is Signal.RESTART
    failed = decide(False, fixable=True, dry_run=False, fix_succeeded=False)
    assert failed.signal is Signal.ABORT
    assert failed.reason == "auto-fix failed"


def test_decide_dry_run_never_stops():
    """Dry-run records failures and moves on."""
    assert decide(False, fixable=True, dry_run=True).signal is Signal.CONTINUE
    assert decide(False, fixable=False, dry_run=True).signal is Signal.CONTINUE


def test_decide_requires_fix_outcome():
    with pytest.raises(ValueError):
        decide(False, fixable=True, dry_run=False)


# =============================================================================
# run_all_checks
# =============================================================================

def test_unfixable_failure_stops_first_cycle():
    """A failing check that cannot be fixed ends the run after one cycle."""
    executor = FakeExecutor({"pnpm typecheck": [1]})

    result = run([TYPECHECK], executor)

    assert result.success is False
    assert result.total_attempts == 1
    assert result.fixes_applied == 0
    assert isinstance(result.error, UnfixableCheckFailure)
    assert "error TS2304" in result.results[0].error


def test_fix_restarts_from_first_check():
    """After a fix every check runs again from the top."""
    executor = FakeExecutor({"pnpm lint": [1]}, fixes={"pnpm lint --fix": "pnpm lint"})

    result = run([LINT, FORMAT], executor)

    assert result.success is True
    assert result.total_attempts == 2
    assert result.fixes_applied == 1
    assert [f.check_name for f in result.applied_fixes] == ["lint"]
    assert executor.calls == ["pnpm lint", "pnpm lint --fix", "pnpm lint", "pnpm format --check"]


def test_fix_on_later_check_reruns_earlier_ones():
    """A format fix restarts the cycle, re-running typecheck and lint too."""
    executor = FakeExecutor({"pnpm format --check": [1]}, fixes={"pnpm format": "pnpm format --check"})

    result = run([TYPECHECK, LINT, FORMAT], executor)

    assert result.success is True
    assert result.total_attempts == 2
    assert executor.calls.count("pnpm typecheck") == 2
    assert executor.calls.count("pnpm lint") == 2


def test_dry_run_never_runs_fixes():
    """Dry-run lists the fixable failures without running any fix command."""
    executor = FakeExecutor({"pnpm lint": [1], "pnpm test": [1]})

    result = run([LINT, TEST], executor, dry_run=True)

    assert result.success is False
    assert "pnpm lint --fix" not in executor.calls
    assert [p.check.name for p in result.pending_fixes] == ["lint"]
    assert result.pending_fixes[0].command == "pnpm lint --fix"
    assert result.fixes_applied == 0


def test_dry_run_with_only_unfixable_failures():
    """Nothing fixable failed, so the pending list is empty rather than missing."""
    executor = FakeExecutor({"pnpm typecheck": [1], "pnpm test": [1]})

    result = run([TYPECHECK, LINT, TEST], executor, dry_run=True)

    assert result.success is False
    assert result.pending_fixes == []
    assert [r.success for r in result.results] == [False, True, False]
    assert isinstance(result.error, UnfixableCheckFailure)


def test_dry_run_all_passing():
    result = run([LINT, TEST], FakeExecutor({}), dry_run=True)

    assert result.success is True
    assert result.pending_fixes == []
    assert result.error is None


def test_failed_fix_aborts():
    """A fix command that fails ends the run with a fix failure."""
    executor = FakeExecutor({"pnpm lint": [1], "pnpm lint --fix": [1]})

    result = run([LINT], executor)

    assert result.success is False
    assert result.total_attempts == 1
    assert isinstance(result.error, FixApplicationFailure)


def test_no_fix_reports_failure():
    """With auto-fix disabled a fixable failure is reported, not repaired."""
    executor = FakeExecutor({"pnpm lint": [1]})

    result = run([LINT], executor, auto_fix=False)

    assert result.success is False
    assert "pnpm lint --fix" not in executor.calls


def test_max_retries_bounds_cycles():
    """A fix that never sticks stops after max_retries cycles."""
    # the fix command succeeds but the lint keeps failing
    executor = FakeExecutor({"pnpm lint": [1], "pnpm lint --fix": [0]})

    result = run([LINT], executor, max_retries=3)

    assert result.success is False
    assert result.total_attempts == 3
    assert result.fixes_applied == 3
    assert isinstance(result.error, FixApplicationFailure)


def test_no_applicable_checks_is_success():
    """A project without any check scripts has nothing to fail."""
    executor = FakeExecutor({})

    result = run([], executor)

    assert result.success is True
    assert result.total_attempts == 0
    assert executor.calls == []


# =============================================================================
# Check discovery
# =============================================================================

def test_applicable_checks_follow_package_scripts():
    """Checks run only when package.json defines their script."""
    with tempfile.TemporaryDirectory() as tmpdir:
        cwd = Path(tmpdir)
        (cwd / "package.json").write_text(json.dumps({"scripts": {"lint": "eslint .", "test": "vitest"}}))

        assert get_available_scripts(cwd) == {"lint", "test"}
        checks = get_applicable_checks(cwd, command_exists=lambda cmd: False)

    assert [c.name for c in checks] == ["lint", "test"]


def test_typecheck_falls_back_to_tsc():
    """Without a typecheck script, tsc --noEmit is used when available."""
    with tempfile.TemporaryDirectory() as tmpdir:
        cwd = Path(tmpdir)
        (cwd / "package.json").write_text(json.dumps({"scripts": {"build": "tsc"}}))

        checks = get_applicable_checks(cwd, command_exists=lambda cmd: cmd == "tsc")

    assert [c.name for c in checks] == ["typecheck", "build"]
    assert checks[0].command == "tsc"
    assert checks[0].args == ["--noEmit"]


def test_no_package_json():
    with tempfile.TemporaryDirectory() as tmpdir:
        assert get_available_scripts(tmpdir) == set()
        assert get_applicable_checks(tmpdir, command_exists=lambda cmd: False) == []


def test_quality_checks_order():
    """Type errors first, build last."""
    assert [c.name for c in QUALITY_CHECKS] == ["typecheck", "lint", "format", "test", "build"]


def test_has_uncommitted_changes():
    """git status --porcelain output means the tree is dirty."""
    dirty = lambda command, args, cwd: CommandResult(0, " M src/app.ts\n")
    clean = lambda command, args, cwd: CommandResult(0, "")
    broken = lambda command, args, cwd: CommandResult(128, "fatal: not a git repository")

    assert has_uncommitted_changes(".", executor=dirty) is True
    assert has_uncommitted_changes(".", executor=clean) is False
    assert has_uncommitted_changes(".", executor=broken) is False
