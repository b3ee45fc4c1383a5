"""Tests for storypipe.lib.test_results module."""

import pytest

from storypipe.lib.models import TestResult
from storypipe.lib.test_results import (
    format_summary,
    parse_build_errors,
    parse_test_output,
    summarize,
)


class TestSummarize:
    """Tests for summarize()."""

    def test_empty(self):
        summary = summarize([])
        assert summary.total_tests == 0
        assert summary.failed == 0
        assert not summary.is_breaking_change

    def test_counts_new_and_existing(self):
        results = [
            TestResult("test_a", passed=True, duration=0.5),
            TestResult("test_b", passed=False, error_message="boom", duration=0.25),
            TestResult("test_c", passed=True, is_new_test=True),
            TestResult("test_d", passed=False, is_new_test=True),
        ]
        summary = summarize(results)
        assert summary.total_tests == 4
        assert summary.passed == 2
        assert summary.failed == 2
        assert summary.existing_tests_passed == 1
        assert summary.existing_tests_failed == 1
        assert summary.new_tests_passed == 1
        assert summary.new_tests_failed == 1
        assert summary.total_duration == pytest.approx(0.75)
        assert [t.test_name for t in summary.failed_tests] == ["test_b", "test_d"]

    def test_existing_failure_is_breaking(self):
        summary = summarize([TestResult("test_old", passed=False)])
        assert summary.is_breaking_change

    def test_new_failure_is_not_breaking(self):
        summary = summarize([TestResult("test_new", passed=False, is_new_test=True)])
        assert summary.failed == 1
        assert not summary.is_breaking_change

    def test_skipped_excluded_from_pass_fail(self):
        summary = summarize([
            TestResult("test_skip", passed=True, skipped=True),
            TestResult("test_ok", passed=True),
        ])
        assert summary.total_tests == 2
        assert summary.skipped == 1
        assert summary.passed == 1
        assert summary.passed + summary.failed + summary.skipped == summary.total_tests


class TestFormatSummary:
    """Tests for format_summary()."""

    def test_all_passed(self):
        text = format_summary(summarize([TestResult("test_a")]))
        assert "1/1 tests passed" in text
        assert "BREAKING" not in text

    def test_breaking_change_called_out(self):
        text = format_summary(summarize([
            TestResult("test_login", class_name="TestAuth", passed=False, error_message="assert 1 == 2"),
        ]))
        assert "BREAKING CHANGE" in text
        assert "`TestAuth.test_login` (existing)" in text
        assert "assert 1 == 2" in text

    def test_truncates_long_failure_list(self):
        results = [TestResult(f"test_{i}", passed=False, is_new_test=True) for i in range(12)]
        text = format_summary(summarize(results))
        assert "... and 2 more" in text


class TestGoTestParser:
    """Tests for Go test output parsing."""

    def test_parses_build_failures(self):
        stdout = """
FAIL	github.com/example/pkg1 [build failed]
ok  	github.com/example/pkg2	(cached)
FAIL	github.com/example/pkg3 [build failed]
"""
        results = parse_test_output(stdout, "")
        assert len(results) == 2
        assert all(not r.passed for r in results)
        assert "pkg1" in results[0].class_name
        assert "pkg3" in results[1].class_name

    def test_parses_test_failures_with_details(self):
        stdout = """
--- FAIL: TestSomething (0.01s)
    foo_test.go:42: Expected 1, got 2
--- PASS: TestOther (0.00s)
--- FAIL: TestAnotherThing (0.00s)
    bar_test.go:56: assertion failed
FAIL
"""
        results = parse_test_output(stdout, "")
        assert [r.test_name for r in results] == ["TestSomething", "TestOther", "TestAnotherThing"]

        first = results[0]
        assert not first.passed
        assert first.file_path == "foo_test.go"
        assert "Expected 1, got 2" in first.error_message
        assert first.duration == pytest.approx(0.01)

        assert results[1].passed
        assert results[2].file_path == "bar_test.go"

    def test_parses_testify_style_output(self):
        stdout = """
--- FAIL: TestComplex (0.00s)
    complex_test.go:100:
        	Error Trace:	complex_test.go:100
        	Error:      	Not equal:
        	            	expected: "foo"
        	            	actual  : "bar"
FAIL
"""
        results = parse_test_output(stdout, "")
        assert len(results) == 1
        assert results[0].file_path == "complex_test.go"
        # The message comes from the Error: line, not the trace
        assert "Not equal:" in results[0].error_message
        assert "Error Trace" not in results[0].error_message

    def test_parses_subtests(self):
        stdout = """
--- FAIL: TestParent/subtest_case (0.00s)
    parent_test.go:30: subtest failed
FAIL
"""
        results = parse_test_output(stdout, "")
        assert len(results) == 1
        assert results[0].class_name == "TestParent"
        assert results[0].test_name == "subtest_case"

    def test_skip(self):
        results = parse_test_output("--- SKIP: TestSlow (0.00s)\n", "")
        assert results[0].skipped
        assert results[0].passed


class TestPytestParser:
    """Tests for pytest output parsing."""

    def test_parses_short_summary(self):
        stdout = """
PASSED tests/test_foo.py::test_ok
FAILED tests/test_foo.py::test_something - AssertionError: bad value
FAILED tests/test_bar.py::TestBar::test_other
SKIPPED tests/test_bar.py::test_later
"""
        results = parse_test_output(stdout, "")
        assert len(results) == 4
        by_name = {r.test_name: r for r in results}

        assert by_name["test_ok"].passed
        assert by_name["test_something"].error_message == "AssertionError: bad value"
        assert by_name["test_something"].file_path == "tests/test_foo.py"
        assert by_name["test_other"].class_name == "TestBar"
        assert not by_name["test_other"].passed
        assert by_name["test_later"].skipped

    def test_message_taken_from_assertion_lines(self):
        stdout = """
E   AssertionError: expected 3
FAILED tests/test_math.py::test_add
"""
        results = parse_test_output(stdout, "")
        assert results[0].error_message == "expected 3"

    def test_collection_error(self):
        stdout = """
ERROR collecting tests/test_foo.py
ModuleNotFoundError: No module named 'requests'
"""
        results = parse_test_output(stdout, "")
        assert len(results) == 1
        assert not results[0].passed
        assert "requests" in results[0].error_message

    def test_unrecognized_output(self):
        assert parse_test_output("nothing to see here", "") == []


class TestNewTestTagging:
    """new_tests marks results added by the story."""

    def test_plain_name(self):
        results = parse_test_output("PASSED tests/test_a.py::test_new\nPASSED tests/test_a.py::test_old\n",
                                    "", new_tests={"test_new"})
        flags = {r.test_name: r.is_new_test for r in results}
        assert flags == {"test_new": True, "test_old": False}

    def test_qualified_name(self):
        results = parse_test_output("FAILED tests/test_a.py::TestLogin::test_token\n",
                                    "", new_tests={"TestLogin.test_token"})
        assert results[0].is_new_test
        assert not summarize(results).is_breaking_change


class TestParseBuildErrors:
    """Tests for parse_build_errors()."""

    def test_parses_compile_errors(self):
        stderr = """
# github.com/example/pkg
file.go:14:2: undefined: foo
file.go:20:5: cannot use x (type int) as type string
"""
        errors = parse_build_errors("", stderr)
        assert len(errors) == 2
        assert errors[0] == {"file": "file.go", "line": 14, "message": "undefined: foo"}
        assert errors[1]["line"] == 20

    def test_deduplicates(self):
        """Same error in both stdout and stderr should only appear once."""
        error = "file.go:10:5: undefined: x"
        errors = parse_build_errors(f"# pkg\n{error}", f"# pkg\n{error}")
        assert len(errors) == 1

    def test_python_syntax_location(self):
        errors = parse_build_errors("", "app/main.py:3: error: invalid syntax")
        assert errors == [{"file": "app/main.py", "line": 3, "message": "invalid syntax"}]
