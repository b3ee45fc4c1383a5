"""
Fix task synthesis.

Used when no fix agent is configured, or the fix agent returned nothing:
one fix task per failed test, else one per build error, else a single
generic task describing the failure.
"""

from typing import Optional

from storypipe.lib.models import FixTask, FixTaskType, PipelinePhase, RetryReason, TestSummary
from storypipe.lib.test_results import format_summary

MAX_ERROR_LENGTH = 2000


def _truncate(text: Optional[str], limit: int = MAX_ERROR_LENGTH) -> str:
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + "\n...(truncated)"


def _fix_type(reason: RetryReason) -> FixTaskType:
    if reason == RetryReason.TESTS_FAILED:
        return FixTaskType.TEST_FAILURE
    if reason == RetryReason.INTEGRATION_FAILED:
        return FixTaskType.INTEGRATION_ERROR
    return FixTaskType.BUILD_ERROR


def synthesize_fix_tasks(phase: PipelinePhase, reason: RetryReason, error: str,
                         test_summary: Optional[TestSummary] = None,
                         build_errors: Optional[list[dict]] = None,
                         existing_code: Optional[str] = None) -> list[FixTask]:
    fixes: list[FixTask] = []

    if test_summary and test_summary.failed_tests:
        for test in test_summary.failed_tests:
            name = f"{test.class_name}.{test.test_name}" if test.class_name else test.test_name
            kind = "new" if test.is_new_test else "existing"
            description = (
                f"The {kind} test `{name}` fails after the {phase.label} phase.\n\n"
                f"Error: {test.error_message or 'no message'}\n\n"
                + ("Existing tests must keep passing: change the implementation, not the test.\n"
                   if not test.is_new_test else
                   "Fix the implementation or the new test, whichever is wrong.\n")
            )
            fixes.append(FixTask(
                index=len(fixes) + 1,
                title=f"Fix failing test {name}",
                description=description,
                target_file=test.file_path or "",
                type=FixTaskType.TEST_FAILURE,
                error_message=test.error_message or "",
                error_location=test.file_path,
                stack_trace=_truncate(test.stack_trace) or None,
                existing_code=existing_code,
            ))
        return fixes

    if build_errors:
        for err in build_errors:
            location = f"{err.get('file', '')}:{err.get('line', '')}".strip(":")
            fixes.append(FixTask(
                index=len(fixes) + 1,
                title=f"Fix build error in {err.get('file') or 'project'}",
                description=f"Build failed in the {phase.label} phase at {location}:\n\n{err.get('message', '')}",
                target_file=err.get("file") or "",
                type=FixTaskType.BUILD_ERROR,
                error_message=err.get("message", ""),
                error_location=location or None,
                existing_code=existing_code,
            ))
        return fixes

    description = f"The {phase.label} phase failed ({reason.label}).\n\n{_truncate(error)}"
    if test_summary:
        description += "\n\n" + format_summary(test_summary)
    return [FixTask(
        index=1,
        title=f"Fix {phase.label} failure",
        description=description,
        type=_fix_type(reason),
        error_message=_truncate(error),
        existing_code=existing_code,
    )]
