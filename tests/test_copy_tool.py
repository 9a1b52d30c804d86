"""
Unit tests for copy_tool.py
"""
import subprocess
from unittest.mock import Mock, patch

import pytest

from chunksync.copy_tool import CopyLaunchError, RobocopyTool, parse_summary_text
from chunksync.models import Chunk, CopySummary, JobHandle, RetryPolicy


SAMPLE_LOG = """
-------------------------------------------------------------------------------
   ROBOCOPY     ::     Robust File Copy for Windows
-------------------------------------------------------------------------------

  Source : C:\\Data\\
    Dest : E:\\Backup\\

    Files : *.*

-------------------------------------------------------------------------------

               Total    Copied   Skipped  Mismatch    FAILED    Extras
    Dirs :         3         3         0         0         0         0
   Files :        10         7         2         0         1         0
   Bytes :   1500000   1200000    300000         0         0         0
   Times :   0:00:01   0:00:01                       0:00:00   0:00:00
"""


@pytest.fixture
def chunk():
    return Chunk(source_path="C:\\Data\\Sub", destination_path="E:\\Backup\\Sub", estimated_size=100)


def test_parse_summary_text():
    """Test the copied/skipped/failed columns are read from the summary table."""
    summary = parse_summary_text(SAMPLE_LOG)
    assert summary == CopySummary(bytes_copied=1200000, files_copied=7, files_skipped=2, files_failed=1)


def test_parse_summary_text_with_units():
    text = "   Bytes :    1.50 m    1.00 m         0         0         0         0\n"
    assert parse_summary_text(text).bytes_copied == 1024 ** 2


def test_parse_summary_text_missing():
    """Test a log without a summary yields zeros."""
    assert parse_summary_text("ERROR 5 (0x00000005) Accessing Source Directory") == CopySummary()
    assert parse_summary_text("") == CopySummary()


def test_build_arguments_recursive(chunk):
    tool = RobocopyTool(executable="robocopy.exe")
    args = tool.build_arguments(chunk, RetryPolicy(2, 5), 41, log_path="job.log")
    assert args == [
        "robocopy.exe", "C:\\Data\\Sub", "E:\\Backup\\Sub",
        "/E", "/R:2", "/W:5", "/IPG:41", "/BYTES", "/NP", "/LOG:job.log",
    ]


def test_build_arguments_files_only():
    """Test files-only chunks are copied without recursion and without throttling when unlimited."""
    chunk = Chunk(
        source_path="C:\\Data",
        destination_path="E:\\Backup",
        is_files_only=True,
        extra_args=["/LEV:1"],
    )
    args = RobocopyTool().build_arguments(chunk, RetryPolicy(0, 1), 0)
    assert "/LEV:1" in args
    assert "/E" not in args
    assert not any(a.startswith("/IPG") for a in args)
    assert "/R:0" in args and "/W:1" in args


def test_start_launches_process(chunk, tmp_path):
    process = Mock(pid=4242)
    popen = Mock(return_value=process)
    tool = RobocopyTool(log_dir=tmp_path / "logs", popen=popen)

    handle = tool.start(chunk, RetryPolicy(), 10)

    assert handle.pid == 4242
    assert handle.chunk is chunk
    assert handle.throttle_ms == 10
    assert handle.log_path.startswith(str(tmp_path / "logs"))
    launched = popen.call_args[0][0]
    assert launched[1:3] == ["C:\\Data\\Sub", "E:\\Backup\\Sub"]
    assert launched[-1] == f"/LOG:{handle.log_path}"


def test_start_launch_failure(chunk, tmp_path):
    """Test a missing executable surfaces as a launch error."""
    popen = Mock(side_effect=FileNotFoundError("robocopy not found"))
    tool = RobocopyTool(log_dir=tmp_path, popen=popen)

    with pytest.raises(CopyLaunchError, match="Failed to launch"):
        tool.start(chunk, RetryPolicy(), 0)


def test_poll(chunk):
    process = Mock()
    handle = JobHandle(chunk=chunk, pid=1, process=process)
    tool = RobocopyTool()

    process.poll.return_value = None
    assert tool.poll(handle) == (False, None)

    process.poll.return_value = 3
    assert tool.poll(handle) == (True, 3)


def test_parse_summary_reads_job_log(chunk, tmp_path):
    log_path = tmp_path / "job.log"
    log_path.write_text(SAMPLE_LOG)
    tool = RobocopyTool()

    summary = tool.parse_summary(JobHandle(chunk=chunk, pid=1, log_path=str(log_path)))

    assert summary.files_copied == 7


def test_parse_summary_missing_log(chunk, tmp_path):
    """Test a missing log yields zeros instead of an error."""
    tool = RobocopyTool()
    assert tool.parse_summary(JobHandle(chunk=chunk, pid=1, log_path=str(tmp_path / "none.log"))) == CopySummary()
    assert tool.parse_summary(JobHandle(chunk=chunk, pid=1)) == CopySummary()


def test_terminate_kills_running_process(chunk):
    process = Mock()
    process.poll.return_value = None
    RobocopyTool().terminate(JobHandle(chunk=chunk, pid=1, process=process))
    process.kill.assert_called_once()
    process.wait.assert_called_once_with(timeout=10)


def test_terminate_ignores_finished_process(chunk):
    process = Mock()
    process.poll.return_value = 0
    RobocopyTool().terminate(JobHandle(chunk=chunk, pid=1, process=process))
    process.kill.assert_not_called()


def test_terminate_survives_hung_process(chunk):
    process = Mock()
    process.poll.return_value = None
    process.wait.side_effect = subprocess.TimeoutExpired("robocopy", 10)
    RobocopyTool().terminate(JobHandle(chunk=chunk, pid=1, process=process))
    process.kill.assert_called_once()


def test_list_directory():
    completed = Mock(returncode=1, stdout="\t                   2\tC:\\Data\\\n")
    with patch("subprocess.run", return_value=completed) as mock_run:
        listing = RobocopyTool().list_directory("C:\\Data")

    assert listing == completed.stdout
    args = mock_run.call_args[0][0]
    assert args[1:4] == ["C:\\Data", "NULL", "/L"]


def test_list_directory_failure():
    with patch("subprocess.run", return_value=Mock(returncode=16, stdout="")):
        with pytest.raises(RuntimeError, match="exit code 16"):
            RobocopyTool().list_directory("C:\\Data")
