"""
Test result aggregation and test output parsing.

summarize() reduces TestResult records into a TestSummary. parse_test_output()
turns raw runner output into TestResult records.

Parsing supports:
- pytest output (-rA / -ra short summary lines)
- Go test output (go test -v, build failures)
"""

import re

from storypipe.lib.models import TestResult, TestSummary


def summarize(results: list[TestResult]) -> TestSummary:
    """Reduce test results into a summary.

    existing_tests_failed counts failures of tests that are not new; any such
    failure makes the run a breaking change.
    """
    summary = TestSummary()
    for r in results:
        summary.total_tests += 1
        summary.total_duration += r.duration or 0.0

        if r.skipped:
            summary.skipped += 1
            continue

        if r.passed:
            summary.passed += 1
            if r.is_new_test:
                summary.new_tests_passed += 1
            else:
                summary.existing_tests_passed += 1
        else:
            summary.failed += 1
            summary.failed_tests.append(r)
            if r.is_new_test:
                summary.new_tests_failed += 1
            else:
                summary.existing_tests_failed += 1

    return summary


def format_summary(summary: TestSummary) -> str:
    """Format a summary as markdown for logs and fix task descriptions."""
    parts = [f"**{summary.passed}/{summary.total_tests} tests passed**"
             + (f", {summary.failed} failed" if summary.failed else "")
             + (f", {summary.skipped} skipped" if summary.skipped else "")]

    if summary.is_breaking_change:
        parts.append(f"\n**BREAKING CHANGE:** {summary.existing_tests_failed} existing test(s) now failing")

    if summary.failed_tests:
        parts.append("\n**Failed tests:**")
        for t in summary.failed_tests[:10]:
            name = f"{t.class_name}.{t.test_name}" if t.class_name else t.test_name
            tag = "new" if t.is_new_test else "existing"
            parts.append(f"- `{name}` ({tag})")
            if t.error_message:
                msg = t.error_message[:150] + "..." if len(t.error_message) > 150 else t.error_message
                parts.append(f"  {msg}")
        if len(summary.failed_tests) > 10:
            parts.append(f"- ... and {len(summary.failed_tests) - 10} more")

    return "\n".join(parts)


def parse_test_output(stdout: str, stderr: str = "", new_tests: set[str] | None = None) -> list[TestResult]:
    """
    Parse test runner output into TestResult records.

    Tries Go first, then pytest. Returns an empty list when nothing matched.
    new_tests holds names (test name or class.test) that were added by this
    story; matching results get is_new_test=True.
    """
    new_tests = new_tests or set()

    results = _parse_go_test(stdout, stderr)
    if not results:
        results = _parse_pytest(stdout, stderr)

    for r in results:
        qualified = f"{r.class_name}.{r.test_name}" if r.class_name else r.test_name
        if r.test_name in new_tests or qualified in new_tests:
            r.is_new_test = True

    return results


def parse_build_errors(stdout: str, stderr: str = "") -> list[dict]:
    """Extract compile errors as {file, line, message} dicts."""
    errors = []
    seen: set[tuple[str, int, str]] = set()
    pattern = re.compile(
        r'^([^\s:]+\.(?:go|py|cs|ts|rs)):(\d+)(?::(\d+))?:\s*(?:error:?\s*)?(.+)$',
        re.MULTILINE,
    )
    for source in [stderr, stdout]:
        for match in pattern.finditer(source):
            filepath, line, _col, message = match.groups()
            key = (filepath, int(line), message.strip())
            if key in seen:
                continue
            seen.add(key)
            errors.append({"file": filepath, "line": int(line), "message": message.strip()})
    return errors


def _parse_go_test(stdout: str, stderr: str) -> list[TestResult]:
    """Parse `go test -v` output."""
    results = []

    # --- PASS: TestName (0.00s) / --- FAIL: TestName (0.00s) / --- SKIP: ...
    outcome_pattern = re.compile(
        r'^\s*--- (PASS|FAIL|SKIP): (\S+)\s+\(([\d.]+)s\)\n((?:[ \t]+.*\n)*)',
        re.MULTILINE
    )
    for match in outcome_pattern.finditer(stdout + "\n"):
        outcome, name, duration, detail_block = match.groups()

        file_path = None
        message = None
        if outcome == "FAIL" and detail_block:
            lines = [line for line in detail_block.split('\n') if line.strip()]
            if lines:
                detail_match = re.match(r'^\s+([^\s:]+\.go):(\d+):\s*(.*)$', lines[0])
                if detail_match:
                    file_path = detail_match.group(1)
                    message = detail_match.group(3).strip()
                    if not message and len(lines) > 1:
                        parts = []
                        for line in lines[1:6]:
                            stripped = line.strip()
                            if stripped.startswith('Error Trace:'):
                                continue
                            if stripped.startswith('Error:'):
                                stripped = stripped[6:].strip()
                            parts.append(stripped)
                        message = ' '.join(parts)[:200]
                else:
                    message = lines[0].strip()[:200]

        class_name, _, test_name = name.rpartition("/")
        results.append(TestResult(
            test_name=test_name or name,
            class_name=class_name,
            file_path=file_path,
            passed=outcome != "FAIL",
            skipped=outcome == "SKIP",
            error_message=message,
            stack_trace=detail_block.strip() if outcome == "FAIL" and detail_block else None,
            duration=float(duration),
        ))

    # FAIL package [build failed] has no per-test lines
    for match in re.finditer(r'^FAIL\s+(\S+)\s+\[build failed\]', stdout, re.MULTILINE):
        results.append(TestResult(
            test_name="build",
            class_name=match.group(1),
            passed=False,
            error_message="Build failed",
        ))

    return results


def _parse_pytest(stdout: str, stderr: str) -> list[TestResult]:
    """Parse pytest short test summary lines (PASSED/FAILED/SKIPPED/ERROR)."""
    results = []
    combined = f"{stdout}\n{stderr}"

    # Assertion messages in traceback order: E   AssertionError: message
    assertion_pattern = re.compile(r'^E\s+(?:AssertionError:\s*)?(.+)$', re.MULTILINE)
    assertion_messages = [m.group(1).strip() for m in assertion_pattern.finditer(combined)]

    line_pattern = re.compile(
        r'^(PASSED|FAILED|SKIPPED|ERROR)\s+([^:\s]+)((?:::[^\s:]+)+)(?:\s+-\s+(.+))?$',
        re.MULTILINE
    )
    for match in line_pattern.finditer(combined):
        outcome, filepath, node, message = match.groups()
        parts = [p for p in node.split("::") if p]
        test_name = parts[-1]
        class_name = ".".join(parts[:-1])

        failed = outcome in ("FAILED", "ERROR")
        if failed and not message and assertion_messages:
            message = assertion_messages.pop(0)

        results.append(TestResult(
            test_name=test_name,
            class_name=class_name,
            file_path=filepath,
            passed=not failed,
            skipped=outcome == "SKIPPED",
            error_message=message if failed else None,
        ))

    if not results and ("ERROR collecting" in combined or "ModuleNotFoundError" in combined):
        import_error_match = re.search(
            r"ModuleNotFoundError: No module named ['\"]([^'\"]+)['\"]",
            combined
        )
        msg = f"Missing module: {import_error_match.group(1)}" if import_error_match else "Import error"
        results.append(TestResult(test_name="collection", passed=False, error_message=msg))

    return results
