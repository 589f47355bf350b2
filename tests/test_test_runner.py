"""Tests for running a project's test command."""

from opensprint.core.test_runner import parse_test_counts, run_tests


class TestParseCounts:
    def test_pytest_summary(self):
        assert parse_test_counts("==== 3 failed, 12 passed, 1 skipped in 0.4s ====") == {
            "passed": 12,
            "failed": 3,
            "skipped": 1,
        }

    def test_mocha_style(self):
        assert parse_test_counts("  5 passing (20ms)\n  2 pending\n") == {"passed": 5, "skipped": 2}

    def test_last_summary_wins(self):
        assert parse_test_counts("1 passed\n...\n7 passed")["passed"] == 7

    def test_no_counts(self):
        assert parse_test_counts("Segmentation fault") == {}


class TestRunTests:
    def test_no_command(self, tmp_dir):
        outcome = run_tests(None, tmp_dir)
        assert outcome.status == "passed"
        assert outcome.results == {"skipped": True}

    def test_passing(self, tmp_dir):
        outcome = run_tests("echo '4 passed'", tmp_dir)
        assert outcome.status == "passed"
        assert outcome.results == {"passed": 4, "exit_code": 0}
        assert "4 passed" in outcome.raw_output

    def test_failing(self, tmp_dir):
        outcome = run_tests("echo '1 failed' >&2; exit 1", tmp_dir)
        assert outcome.status == "failed"
        assert outcome.results["failed"] == 1
        assert outcome.results["exit_code"] == 1

    def test_runs_in_cwd(self, tmp_dir):
        (tmp_dir / "marker").write_text("")
        assert run_tests("test -f marker", tmp_dir).status == "passed"

    def test_timeout(self, tmp_dir):
        outcome = run_tests("sleep 2", tmp_dir, timeout=0.2)
        assert outcome.status == "error"
        assert outcome.error_message == "Test command timed out after 0s"
