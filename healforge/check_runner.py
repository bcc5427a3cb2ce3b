"""
Check Runner
============

Runs ordered quality checks with the fix-and-revalidate pattern:

    run check -> if it fails and can be fixed, fix -> re-run ALL checks

Checks run strictly in order (typecheck -> lint -> format -> test -> build)
because a later check may depend on an earlier one's side effects, and any
applied fix restarts the sequence from the first check so a fix can never
silently break an earlier check.

Usage:
    from healforge.check_runner import run_all_checks

    result = run_all_checks(Path("."), max_retries=5)
    if not result.success:
        ...
"""

import json
import logging
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

from healforge.errors import FixApplicationFailure, HealForgeError, UnfixableCheckFailure
from healforge.output import (
    icon,
    print_error,
    print_info,
    print_success,
    print_warning,
)

logger = logging.getLogger(__name__)

ERROR_PREVIEW_CHARS = 500
DEFAULT_COMMAND_TIMEOUT = 600.0


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class CheckDefinition:
    """One quality gate."""
    name: str
    display_name: str
    command: str
    args: list[str] = field(default_factory=list)
    fix_command: Optional[str] = None
    fix_args: list[str] = field(default_factory=list)
    can_auto_fix: bool = False
    required_script: Optional[str] = None  # package.json script this check runs
    fallback_command: Optional[list[str]] = None  # used when the script is missing

    @property
    def fix_command_line(self) -> str:
        if not self.fix_command:
            return ""
        return " ".join([self.fix_command, *self.fix_args])


@dataclass
class CheckResult:
    check: CheckDefinition
    success: bool
    output: str
    error: Optional[str] = None
    duration_ms: int = 0


@dataclass
class AppliedFix:
    check_name: str
    display_name: str
    command: str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "check_name": self.check_name,
            "display_name": self.display_name,
            "command": self.command,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PendingFix:
    check: CheckDefinition
    command: str


@dataclass
class RunAllChecksResult:
    success: bool
    results: list[CheckResult]
    total_attempts: int
    fixes_applied: int
    applied_fixes: list[AppliedFix] = field(default_factory=list)
    pending_fixes: list[PendingFix] = field(default_factory=list)
    error: Optional[HealForgeError] = None  # why the run stopped, when it failed


@dataclass
class CommandResult:
    exit_code: int
    output: str  # stdout and stderr combined
    stderr: str = ""


CommandExecutor = Callable[[str, list[str], Path], CommandResult]
ProgressCallback = Callable[[str, str], None]


# =============================================================================
# Standard checks
# =============================================================================

# Type errors cascade, so they come first.
QUALITY_CHECKS: list[CheckDefinition] = [
    CheckDefinition(
        name="typecheck",
        display_name="Type Check",
        command="pnpm",
        args=["typecheck"],
        can_auto_fix=False,
        required_script="typecheck",
        fallback_command=["tsc", "--noEmit"],
    ),
    CheckDefinition(
        name="lint",
        display_name="Lint",
        command="pnpm",
        args=["lint"],
        fix_command="pnpm",
        fix_args=["lint", "--fix"],
        can_auto_fix=True,
        required_script="lint",
    ),
    CheckDefinition(
        name="format",
        display_name="Format",
        command="pnpm",
        args=["format", "--check"],
        fix_command="pnpm",
        fix_args=["format"],
        can_auto_fix=True,
        required_script="format",
    ),
    CheckDefinition(
        name="test",
        display_name="Tests",
        command="pnpm",
        args=["test"],
        can_auto_fix=False,
        required_script="test",
    ),
    CheckDefinition(
        name="build",
        display_name="Build",
        command="pnpm",
        args=["build"],
        can_auto_fix=False,
        required_script="build",
    ),
]


# =============================================================================
# Command execution
# =============================================================================

class SubprocessExecutor:
    """Runs a command with a timeout and captures its combined output."""

    def __init__(self, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.timeout = timeout

    def __call__(self, command: str, args: list[str], cwd: Path) -> CommandResult:
        try:
            proc = subprocess.run(
                [command, *args],
                cwd=str(cwd),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            return CommandResult(127, f"Command not found: {command}", f"Command not found: {command}")
        except subprocess.TimeoutExpired:
            message = f"{command} {' '.join(args)} timed out after {self.timeout:.0f}s"
            return CommandResult(124, message, message)
        return CommandResult(proc.returncode, (proc.stdout or "") + (proc.stderr or ""), proc.stderr or "")


def get_available_scripts(cwd: Union[str, Path]) -> set[str]:
    """Script names from the project's package.json (empty when absent or unreadable)."""
    package_json = Path(cwd) / "package.json"
    if not package_json.exists():
        return set()
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read %s: %s", package_json, e)
        return set()
    return set((data.get("scripts") or {}).keys())


def get_applicable_checks(
    cwd: Union[str, Path],
    checks: Optional[list[CheckDefinition]] = None,
    command_exists: Callable[[str], bool] = lambda cmd: shutil.which(cmd) is not None,
) -> list[CheckDefinition]:
    """
    Drop checks whose script is missing, switching to the fallback command
    when one is on PATH.
    """
    scripts = get_available_scripts(cwd)
    applicable = []
    for check in checks if checks is not None else QUALITY_CHECKS:
        if not check.required_script or check.required_script in scripts:
            applicable.append(check)
        elif check.fallback_command and command_exists(check.fallback_command[0]):
            applicable.append(CheckDefinition(
                name=check.name,
                display_name=check.display_name,
                command=check.fallback_command[0],
                args=list(check.fallback_command[1:]),
                fix_command=check.fix_command,
                fix_args=list(check.fix_args),
                can_auto_fix=check.can_auto_fix,
                required_script=check.required_script,
                fallback_command=check.fallback_command,
            ))
    return applicable


def run_check(check: CheckDefinition, cwd: Path, executor: CommandExecutor) -> CheckResult:
    started = time.monotonic()
    result = executor(check.command, check.args, cwd)
    duration_ms = int((time.monotonic() - started) * 1000)
    if result.exit_code == 0:
        return CheckResult(check, True, result.output, duration_ms=duration_ms)
    return CheckResult(
        check, False, result.output,
        error=result.stderr or result.output or "Check failed",
        duration_ms=duration_ms,
    )


def apply_fix(check: CheckDefinition, cwd: Path, executor: CommandExecutor) -> tuple[bool, str]:
    if not check.can_auto_fix or not check.fix_command:
        return False, "Check does not support auto-fix"
    result = executor(check.fix_command, check.fix_args, cwd)
    return result.exit_code == 0, result.output


# =============================================================================
# Cycle decisions
# =============================================================================

class Signal(Enum):
    CONTINUE = "continue"   # go on to the next check
    RESTART = "restart"     # a fix was applied, start a new cycle
    ABORT = "abort"         # stop the whole run


@dataclass(frozen=True)
class CycleSignal:
    signal: Signal
    reason: str = ""


def decide(
    passed: bool,
    fixable: bool,
    dry_run: bool,
    fix_succeeded: Optional[bool] = None,
) -> CycleSignal:
    """
    What to do after one check ran.

    fix_succeeded is the outcome of the fix command when one was run for a
    fixable failure outside dry-run.
    """
    if passed:
        return CycleSignal(Signal.CONTINUE)
    if dry_run:
        return CycleSignal(Signal.CONTINUE, "pending fix" if fixable else "requires manual fix")
    if not fixable:
        return CycleSignal(Signal.ABORT, "requires manual fix")
    if fix_succeeded is None:
        raise ValueError("fix_succeeded is required for a fixable failure")
    if fix_succeeded:
        return CycleSignal(Signal.RESTART, "fix applied")
    return CycleSignal(Signal.ABORT, "auto-fix failed")


# =============================================================================
# Runner
# =============================================================================

def _default_progress(message: str, kind: str) -> None:
    printer = {
        "success": print_success,
        "error": print_error,
        "warning": print_warning,
    }.get(kind, print_info)
    printer(message)


def _report_error(log: ProgressCallback, result: CheckResult) -> None:
    if not result.error:
        return
    log(result.error[:ERROR_PREVIEW_CHARS], "error")
    if len(result.error) > ERROR_PREVIEW_CHARS:
        log(f"... ({len(result.error) - ERROR_PREVIEW_CHARS} more characters)", "error")


def run_all_checks(
    cwd: Union[str, Path],
    checks: Optional[list[CheckDefinition]] = None,
    max_retries: int = 10,
    auto_fix: bool = True,
    dry_run: bool = False,
    on_progress: Optional[ProgressCallback] = None,
    executor: Optional[CommandExecutor] = None,
) -> RunAllChecksResult:
    """
    Run all checks, fixing and restarting from the first check after every fix.

    Stops when every check passes, a failure cannot be fixed, a fix fails, a
    cycle ends with failures but no fix, or max_retries cycles are used.
    In dry-run no fix command is ever run; pending_fixes lists what would run.
    """
    cwd = Path(cwd)
    log = on_progress or _default_progress
    executor = executor or SubprocessExecutor()

    if checks is None:
        checks = get_applicable_checks(cwd)
        skipped = [c.display_name for c in QUALITY_CHECKS if c.name not in {a.name for a in checks}]
        if skipped:
            log(f"{icon('skip')} Skipping checks (scripts not found): {', '.join(skipped)}", "warning")

    if not checks:
        log("No applicable checks found. Add scripts to package.json: typecheck, lint, format, test, build", "warning")
        return RunAllChecksResult(success=True, results=[], total_attempts=0, fixes_applied=0)

    attempt = 0
    fixes_applied = 0
    applied_fixes: list[AppliedFix] = []
    pending_fixes: list[PendingFix] = []

    while attempt < max_retries:
        attempt += 1
        log(f"{icon('cycle')} Validation cycle {attempt}/{max_retries}", "info")

        results: list[CheckResult] = []
        all_passed = True
        fix_applied_this_cycle = False

        for step, check in enumerate(checks, 1):
            log(f"{icon('clipboard')} Step {step}/{len(checks)}: {check.display_name}...", "info")
            result = run_check(check, cwd, executor)
            results.append(result)

            if result.success:
                log(f"{check.display_name} passed ({result.duration_ms}ms)", "success")
                continue

            all_passed = False
            log(f"{check.display_name} failed", "error")
            fixable = auto_fix and check.can_auto_fix and bool(check.fix_command)

            fix_succeeded = None
            if fixable and not dry_run:
                log(f"{icon('wrench')} Attempting auto-fix for {check.display_name}...", "warning")
                fix_succeeded, _ = apply_fix(check, cwd, executor)

            signal = decide(False, fixable, dry_run, fix_succeeded)

            if signal.signal is Signal.CONTINUE:
                if fixable:
                    log(f"{icon('wrench')} [DRY-RUN] Would run: {check.fix_command_line}", "warning")
                    pending_fixes.append(PendingFix(check, check.fix_command_line))
                else:
                    _report_unfixable(log, check)
                    _report_error(log, result)
                continue

            if signal.signal is Signal.RESTART:
                fixes_applied += 1
                fix_applied_this_cycle = True
                applied_fixes.append(AppliedFix(
                    check_name=check.name,
                    display_name=check.display_name,
                    command=check.fix_command_line,
                    timestamp=datetime.now(timezone.utc),
                ))
                log(f"{icon('sparkle')} Auto-fix applied for {check.display_name}", "success")
                log(f"{icon('cycle')} Fix applied - restarting all checks to verify...", "warning")
                break

            # ABORT
            if fixable:
                log(f"Auto-fix failed for {check.display_name}. Manual intervention required", "error")
                error: HealForgeError = FixApplicationFailure(f"{check.display_name}: {signal.reason}")
            else:
                _report_unfixable(log, check)
                error = UnfixableCheckFailure(f"{check.display_name}: {signal.reason}")
            _report_error(log, result)
            return RunAllChecksResult(
                success=False,
                results=results,
                total_attempts=attempt,
                fixes_applied=fixes_applied,
                applied_fixes=applied_fixes,
                error=error,
            )

        if dry_run:
            if pending_fixes:
                log("The following fixes would be applied:", "warning")
                for fix in pending_fixes:
                    log(f"  {icon('bullet')} {fix.check.display_name}: {fix.command}", "info")
                log("Run without --dry-run to apply fixes.", "info")
            stuck = not all_passed and not pending_fixes
            return RunAllChecksResult(
                success=all_passed,
                results=results,
                total_attempts=attempt,
                fixes_applied=0,
                applied_fixes=[],
                pending_fixes=pending_fixes,
                error=UnfixableCheckFailure("Checks failed and no fix could be applied") if stuck else None,
            )

        if all_passed:
            return RunAllChecksResult(
                success=True,
                results=results,
                total_attempts=attempt,
                fixes_applied=fixes_applied,
                applied_fixes=applied_fixes,
            )

        if not fix_applied_this_cycle:
            return RunAllChecksResult(
                success=False,
                results=results,
                total_attempts=attempt,
                fixes_applied=fixes_applied,
                applied_fixes=applied_fixes,
                error=UnfixableCheckFailure("Checks failed and no fix could be applied"),
            )

    log(f"Maximum retries ({max_retries}) exceeded", "error")
    return RunAllChecksResult(
        success=False,
        results=[],
        total_attempts=attempt,
        fixes_applied=fixes_applied,
        applied_fixes=applied_fixes,
        error=FixApplicationFailure(f"Checks still failing after {max_retries} cycles"),
    )


def _report_unfixable(log: ProgressCallback, check: CheckDefinition) -> None:
    if check.can_auto_fix and check.fix_command:
        log(f"{check.display_name} can be fixed with: {check.fix_command_line}", "warning")
    else:
        log(f"{check.display_name} requires manual fix", "error")


# =============================================================================
# Git helpers
# =============================================================================

def has_uncommitted_changes(cwd: Union[str, Path], executor: Optional[CommandExecutor] = None) -> bool:
    executor = executor or SubprocessExecutor(timeout=30)
    result = executor("git", ["status", "--porcelain"], Path(cwd))
    return result.exit_code == 0 and bool(result.output.strip())


def stage_all_changes(cwd: Union[str, Path], executor: Optional[CommandExecutor] = None) -> bool:
    executor = executor or SubprocessExecutor(timeout=30)
    result = executor("git", ["add", "-A"], Path(cwd))
    if result.exit_code != 0:
        logger.warning("git add failed: %s", result.output.strip())
    return result.exit_code == 0
