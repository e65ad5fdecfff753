"""Tests for the top and pidstat metrics sources."""

import pytest

from threadmon.errors import MetricsSourceError
from threadmon.models import SampleMode
from threadmon.sources import (
    PidstatSource,
    TopSource,
    make_source,
    parse_pidstat_output,
    parse_top_output,
    run_command,
)

TOP_THREADS = """\
top - 17:38:48 up 4 days,  6:23, 10 users,  load average: 1.91, 2.20, 2.16
Threads: 812 total,   1 running, 811 sleeping,   0 stopped,   0 zombie
%Cpu(s):  1.8 us,  1.1 sy,  0.3 ni, 96.6 id,  0.1 wa,  0.0 hi,  0.0 si,  0.0 st
MiB Mem :  16075.9 total,    120.1 free,  15956.3 used,    132.6 buff/cache
MiB Swap:  47095.0 total,  47095.0 free,      0.0 used.   7018.2 avail Mem

    PID USER      PR  NI    VIRT    RES    SHR S  %CPU  %MEM     TIME+ COMMAND
  24665 fmont     20   0    3.5g   3.4g   1024 S  12.3  22.3   0:12.34 mythread_2
  24663 fmont     20   0    3.5g   3.4g   1024 R  12.3  22.3   0:12.30 mythread_0
  24664 fmont     20   0    3.5g   3.4g   1024 S  10.6  22.3   0:11.02 mythread_1
   1021 root      20   0  235124  13116   9000 S   0.0   0.1   0:01.00 systemd-journal
  31000 fmont     20   0   9040m  812m   1024 S   4.2   5.1   1:02.00 Web Content
"""

TOP_CUSTOM_FIELDS = """\
top - 17:38:48 up 4 days,  6:23, 10 users,  load average: 1.91, 2.20, 2.16
Tasks:   3 total,   0 running,   3 sleeping,   0 stopped,   0 zombie

  PID  VIRT %CPU %MEM COMMAND
23548 3.5g 81.9 22.3 AuxProcess1
24878 1.9g 67.9 11.9 AuxProcess3
24844 235m 33.9  1.5 AuxProcess2
"""

PIDSTAT_THREADS = """\
Linux 2.6.32.12-0.7-default (lab1) 	03/02/15 	_x86_64_	(40 CPU)

08:48:18 PM       PID       TID    %usr %system  %guest    %CPU   CPU  Command
08:48:08 PM    158500         -    0.90    0.04    0.00    0.94    12  mythread
08:48:08 PM         -    158508    0.23    0.00    0.00    0.23    14  |__mythread/1
08:48:08 PM         -    158507    0.22    0.01    0.00    0.22    31  |__mythread/0
08:48:08 PM         -    158516    0.49    0.03    0.00    0.52    38  |__mythread_aux/0

08:51:46 PM       PID       TID  minflt/s  majflt/s      VSZ      RSS   %MEM  Command
08:48:08 PM    158500         -      0.80      0.00 41627892 41549992  20.96  mythread
08:48:08 PM         -    158507      0.13      0.00 41627892 41549992  20.96  |__mythread/0
08:48:08 PM         -    158508      0.05      0.00 41627892 41549992  20.96  |__mythread/1
08:48:08 PM         -    158516      0.62      0.00 41627892 41549992  20.96  |__mythread_aux/0
"""

PIDSTAT_TGID = """\
Linux 5.15.0-91-generic (lab1) 	10/17/2026 	_x86_64_	(8 CPU)

20:48:18      UID      TGID       TID    %usr %system  %guest   %wait    %CPU   CPU  Command
20:48:18     1000      4242         -    1.00    0.50    0.00    0.00    1.50     3  server
20:48:18     1000         -      4243    0.70    0.30    0.00    0.00    1.00     3  |__worker/0

20:48:18      UID      TGID       TID  minflt/s  majflt/s     VSZ     RSS   %MEM  Command
20:48:18     1000      4242         -      0.10      0.00  123456   45678   0.30  server
20:48:18     1000         -      4243      0.00      0.00  123456   45678   0.30  |__worker/0
"""

PIDSTAT_PROCESSES = """\
Linux 5.15.0-91-generic (lab1) 	10/17/2026 	_x86_64_	(8 CPU)

20:48:18      UID       PID    %usr %system  %guest   %wait    %CPU   CPU  Command
20:48:18     1000      4242    1.00    0.50    0.00    0.00    1.50     3  server
20:48:18      999      5151    2.00    0.25    0.00    0.00    2.25     1  postgres

20:48:18      UID       PID  minflt/s  majflt/s     VSZ     RSS   %MEM  Command
20:48:18     1000      4242      0.10      0.00  123456   45678   0.30  server
20:48:18      999      5151      0.00      0.00  654321   11111   0.10  postgres

Average:      UID       PID    %usr %system  %guest   %wait    %CPU   CPU  Command
Average:     1000      4242    1.00    0.50    0.00    0.00    1.50     -  server
"""


class TestParseTop:
    """Tests for parse_top_output."""

    def test_threads_filtered_and_sorted(self):
        """Test matching threads are returned ordered by id."""
        snapshot = parse_top_output(TOP_THREADS, "mythread")

        assert [entry.id for entry in snapshot] == [24663, 24664, 24665]
        assert [entry.display_name for entry in snapshot] == ["mythread_0", "mythread_1", "mythread_2"]
        assert [entry.cpu_percent for entry in snapshot] == [12.3, 10.6, 12.3]
        assert {entry.memory_raw for entry in snapshot} == {"3.5g"}

    def test_regex_alternation(self):
        """Test the filter is a regular expression."""
        snapshot = parse_top_output(TOP_THREADS, "mythread_0|journal")
        assert [entry.id for entry in snapshot] == [1021, 24663]

    def test_command_with_spaces(self):
        """Test the last column keeps embedded spaces."""
        snapshot = parse_top_output(TOP_THREADS, "Web")
        assert snapshot[0].display_name == "Web Content"
        assert snapshot[0].memory_raw == "9040m"

    def test_custom_field_layout(self):
        """Test columns are found by header name, not position."""
        snapshot = parse_top_output(TOP_CUSTOM_FIELDS)

        assert [(e.id, e.memory_raw, e.cpu_percent) for e in snapshot] == [
            (23548, "3.5g", 81.9),
            (24844, "235m", 33.9),
            (24878, "1.9g", 67.9),
        ]

    def test_no_match_is_empty(self):
        """Test an unmatched filter gives an empty snapshot."""
        assert parse_top_output(TOP_THREADS, "nothing-like-this") == ()
        assert parse_top_output("") == ()

    def test_missing_header_is_an_error(self):
        """Test output without a task header is rejected."""
        with pytest.raises(MetricsSourceError):
            parse_top_output("top: failed tty get\n")


class TestParsePidstat:
    """Tests for parse_pidstat_output."""

    def test_thread_lines(self):
        """Test thread mode keeps thread lines and joins CPU with memory."""
        snapshot = parse_pidstat_output(PIDSTAT_THREADS, SampleMode.PER_THREAD, "mythread")

        assert [(e.id, e.display_name, e.cpu_percent, e.memory_raw) for e in snapshot] == [
            (158507, "mythread/0", 0.22, "41627892"),
            (158508, "mythread/1", 0.23, "41627892"),
            (158516, "mythread_aux/0", 0.52, "41627892"),
        ]

    def test_thread_filter(self):
        """Test the thread regex applies to thread names."""
        snapshot = parse_pidstat_output(PIDSTAT_THREADS, SampleMode.PER_THREAD, "mythread/")
        assert [e.id for e in snapshot] == [158507, 158508]

    def test_tgid_header(self):
        """Test the newer TGID/TID header layout."""
        threads = parse_pidstat_output(PIDSTAT_TGID, SampleMode.PER_THREAD)
        processes = parse_pidstat_output(PIDSTAT_TGID, SampleMode.PER_PROCESS)

        assert [(e.id, e.display_name, e.cpu_percent) for e in threads] == [(4243, "worker/0", 1.0)]
        assert [(e.id, e.display_name, e.memory_raw) for e in processes] == [(4242, "server", "123456")]

    def test_process_lines_ignore_average(self):
        """Test process mode and that Average lines are skipped."""
        snapshot = parse_pidstat_output(PIDSTAT_PROCESSES, SampleMode.PER_PROCESS)

        assert [(e.id, e.display_name, e.cpu_percent, e.memory_raw) for e in snapshot] == [
            (4242, "server", 1.5, "123456"),
            (5151, "postgres", 2.25, "654321"),
        ]

    def test_mismatching_sections(self):
        """Test a CPU line without its memory line is an error."""
        truncated = PIDSTAT_THREADS.rsplit("\n", 2)[0] + "\n"
        with pytest.raises(MetricsSourceError):
            parse_pidstat_output(truncated, SampleMode.PER_THREAD)


class FakeRunner:
    """Records commands and answers like a procps-ng top."""

    def __init__(self, version: str = "top from procps-ng 3.3.17", secure: bool = False) -> None:
        self.version = version
        self.secure = secure
        self.calls: list[list[str]] = []

    def __call__(self, args):
        args = list(args)
        self.calls.append(args)
        if args == ["top", "-v"]:
            if not self.version:
                raise MetricsSourceError("top exited with status 1")
            return self.version
        if self.secure and "-d" in args:
            raise MetricsSourceError("top exited with status 1")
        return TOP_THREADS


class TestTopSource:
    """Tests for TopSource command lines."""

    def test_procps_ng_threads(self):
        """Test procps-ng shows threads with -H and accepts the delay."""
        runner = FakeRunner()
        source = TopSource(delay=5, runner=runner)

        snapshot = source.sample("mythread", SampleMode.PER_THREAD)

        assert len(snapshot) == 3
        assert runner.calls[-1] == ["top", "-b", "-n", "1", "-H", "-d", "5", "-w", "512"]

    def test_procps_ng_processes_with_pids(self):
        """Test per-process mode lists the requested pids."""
        runner = FakeRunner()
        source = TopSource(delay=2.5, runner=runner)

        source.sample("", SampleMode.PER_PROCESS, [10, 11])

        assert runner.calls[-1] == ["top", "-b", "-n", "1", "-d", "2.5", "-w", "512", "-p", "10", "-p", "11"]

    def test_old_top_inverts_thread_flag(self):
        """Test older top toggles -H the other way round."""
        runner = FakeRunner(version="")
        source = TopSource(runner=runner)

        assert "-H" not in source.command(SampleMode.PER_THREAD)
        assert "-H" in source.command(SampleMode.PER_PROCESS)
        assert "-w" not in source.command(SampleMode.PER_THREAD)

    def test_secure_mode_drops_delay(self):
        """Test the delay is omitted when top refuses it."""
        runner = FakeRunner(secure=True)
        source = TopSource(runner=runner)

        assert "-d" not in source.command(SampleMode.PER_THREAD)

    def test_probe_runs_once(self):
        """Test top is probed only on first use."""
        runner = FakeRunner()
        source = TopSource(runner=runner)

        source.sample("mythread", SampleMode.PER_THREAD)
        source.sample("mythread", SampleMode.PER_THREAD)

        assert runner.calls.count(["top", "-v"]) == 1


class TestPidstatSource:
    """Tests for PidstatSource command lines."""

    def test_thread_command(self):
        """Test thread mode uses -t and the command filter."""
        calls = []

        def runner(args):
            calls.append(list(args))
            return PIDSTAT_THREADS

        snapshot = PidstatSource(runner=runner).sample("mythread", SampleMode.PER_THREAD)

        assert calls == [["pidstat", "-u", "-r", "-t", "-I", "-C", "mythread"]]
        assert len(snapshot) == 3

    def test_pid_command_skips_name_filter(self):
        """Test explicit pids replace the name filter."""
        calls = []

        def runner(args):
            calls.append(list(args))
            return PIDSTAT_PROCESSES

        snapshot = PidstatSource(runner=runner).sample("nomatch", SampleMode.PER_PROCESS, [4242, 5151])

        assert calls == [["pidstat", "-u", "-r", "-I", "-p", "4242,5151"]]
        assert len(snapshot) == 2


def test_make_source():
    """Test back-ends are chosen by name."""
    assert isinstance(make_source("top"), TopSource)
    assert isinstance(make_source("pidstat"), PidstatSource)
    with pytest.raises(ValueError):
        make_source("ps")


def test_run_command_missing_binary():
    """Test a missing utility raises MetricsSourceError."""
    with pytest.raises(MetricsSourceError):
        run_command(["threadmon-no-such-binary-for-tests"])
