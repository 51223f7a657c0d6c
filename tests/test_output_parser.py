"""Tests for AzCopy output parsing."""

import pytest

from media_uploader.services.errors import JOB_STATUS_FAILURE_CODE
from media_uploader.services.output_parser import (
    DATA_FAILURE_MESSAGE,
    LISTING_FAILURE_MESSAGE,
    METADATA_FAILURE_MESSAGE,
    REMOVE_FAILURE_MESSAGE,
    LineAccumulator,
    count_listing_entries,
    parse_job_status,
    parse_output,
    parse_progress,
    parse_result,
)
from media_uploader.services.upload_task import TaskKind

PROGRESS_LINE = (
    "40.2 %, 12 Done, 0 Failed, 30 Pending, 0 Skipped, 42 Total, "
    "2-sec Throughput (Mb/s): 81.3\n"
)


class TestParseProgress:
    """Tests for the progress percentage rule."""

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("40.2 %", 41),
            ("40.20 %", 41),
            ("0.0 %", 1),
            ("99.6 %", 101),
            ("100.0 %", 101),
            ("12.5 %", 13),
        ],
    )
    def test_biased_ceiling(self, text: str, expected: int) -> None:
        """Test that the value is reported as ceil(value + 0.5), unclamped."""
        assert parse_progress(text) == expected

    def test_full_progress_line(self) -> None:
        """Test parsing a real AzCopy progress line."""
        assert parse_progress(PROGRESS_LINE) == 41

    def test_leading_whitespace_and_carriage_return(self) -> None:
        """Test that the match is anchored after blanks and carriage returns."""
        assert parse_progress("\r  55.1 %, 3 Done") == 56

    def test_first_match_wins(self) -> None:
        """Test that the first percentage line in a block is used."""
        assert parse_progress("10.0 %, a\n20.0 %, b\n") == 11

    def test_not_anchored(self) -> None:
        """Test that a percentage in the middle of a line is ignored."""
        assert parse_progress("throughput was 40.2 % of link") is None

    def test_integer_percent_ignored(self) -> None:
        """Test that percentages without a fraction are not progress lines."""
        assert parse_progress("40 %") is None

    def test_no_progress(self) -> None:
        """Test text without progress."""
        assert parse_progress("INFO: Scanning...\n") is None


class TestParseJobStatus:
    """Tests for the final job status rule."""

    def test_completed(self) -> None:
        """Test a completed job status line."""
        assert parse_job_status("Final Job Status: Completed\n") == "Completed"

    def test_failed_in_summary_block(self) -> None:
        """Test a status line inside a summary block."""
        text = (
            "Job abc summary\n"
            "Number of Transfers Failed: 2\n"
            "Final Job Status: CompletedWithErrors\r\n"
        )
        assert parse_job_status(text) == "CompletedWithErrors"

    def test_requires_newline(self) -> None:
        """Test that a status word not yet terminated by a newline is ignored."""
        assert parse_job_status("Final Job Status: Compl") is None

    def test_indented(self) -> None:
        """Test that leading blanks are allowed."""
        assert parse_job_status("  Final Job Status:\tFailed \n") == "Failed"

    def test_absent(self) -> None:
        """Test text without a status line."""
        assert parse_job_status(PROGRESS_LINE) is None


class TestParseResult:
    """Tests for reconciling a parsed job status into a status code."""

    def test_completed_is_zero(self) -> None:
        """Test that Completed is not a failure."""
        assert parse_result("Final Job Status: Completed\n", TaskKind.DATA_UPLOAD) == (0, "")

    def test_no_status_is_undetermined(self) -> None:
        """Test that output without a status line is not a failure."""
        assert parse_result(PROGRESS_LINE, TaskKind.DATA_UPLOAD) == (0, "")

    def test_data_failure_message(self) -> None:
        """Test the fixed message for a failed data upload."""
        code, message = parse_result("Final Job Status: Failed\n", TaskKind.DATA_UPLOAD)
        assert code == JOB_STATUS_FAILURE_CODE
        assert message == DATA_FAILURE_MESSAGE

    def test_metadata_failure_message(self) -> None:
        """Test the fixed message for a failed metadata upload."""
        code, message = parse_result(
            "Final Job Status: CompletedWithErrors\n", TaskKind.METADATA_UPLOAD
        )
        assert code == JOB_STATUS_FAILURE_CODE
        assert message == METADATA_FAILURE_MESSAGE

    @pytest.mark.parametrize(
        ("kind", "expected"),
        [
            (TaskKind.DATA_REMOVE, REMOVE_FAILURE_MESSAGE),
            (TaskKind.EXISTENCE_CHECK, LISTING_FAILURE_MESSAGE),
        ],
    )
    def test_non_upload_failure_messages(self, kind: TaskKind, expected: str) -> None:
        """Test that removals and listings are not described as uploads."""
        code, message = parse_result("Final Job Status: Failed\n", kind)
        assert code == JOB_STATUS_FAILURE_CODE
        assert message == expected
        assert "Upload" not in message

    def test_parse_output_combines_rules(self) -> None:
        """Test that parse_output reports progress and status together."""
        parsed = parse_output(PROGRESS_LINE + "Final Job Status: Failed\n", TaskKind.DATA_UPLOAD)
        assert parsed.progress == 41
        assert parsed.job_status == "Failed"
        assert parsed.failed
        assert parsed.error_message == DATA_FAILURE_MESSAGE


class TestListing:
    """Tests for counting azcopy list entries."""

    def test_counts_entries(self) -> None:
        """Test that each blob line is counted."""
        text = (
            "INFO: A001/clip1.mov;  Content Length: 10.00 MiB\n"
            "INFO: A001/clip2.mov;  Content Length: 2.00 KiB\n"
            "INFO: Authenticating to destination using Azure AD\n"
        )
        assert count_listing_entries(text) == 2

    def test_empty_listing(self) -> None:
        """Test that an empty container has no entries."""
        assert count_listing_entries("") == 0


class TestLineAccumulator:
    """Tests for re-assembling chunked output into whole lines."""

    def test_split_status_word(self) -> None:
        """Test that a status line split across chunks is only released when complete."""
        acc = LineAccumulator()
        assert acc.feed("Final Job Status: Compl") == ""
        assert acc.feed("eted\nnext") == "Final Job Status: Completed\n"
        assert acc.flush() == "next\n"

    def test_multiple_lines_in_one_chunk(self) -> None:
        """Test that every complete line of a chunk is returned at once."""
        acc = LineAccumulator()
        assert acc.feed("a\nb\nc") == "a\nb\n"
        assert acc.feed("\n") == "c\n"

    def test_flush_empty(self) -> None:
        """Test flushing with nothing buffered."""
        assert LineAccumulator().flush() == ""

    def test_status_found_after_reassembly(self) -> None:
        """Test that the parser sees the status only once the line is whole."""
        acc = LineAccumulator()
        chunks = ["40.2 %, 1 Done\nFinal Job St", "atus: Fai", "led\n"]
        statuses = [parse_job_status(acc.feed(c)) for c in chunks]
        assert statuses == [None, None, "Failed"]
