"""Tests for the job log stream, retention and the logs reader."""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

import pytest

from ezcron.core.bus import EventBus
from ezcron.core.events import Event, EventType
from ezcron.logs.setup import DatedFileHandler, LineFormatter, log_file_for, setup_logging, timestamp
from ezcron.logs.sink import EventLogSink, format_line, purge_old_logs, read_log_lines

MOMENT = datetime(2024, 5, 1, 9, 30, 5).astimezone()


class TestFormatLine:
    def test_shape(self):
        line = format_line(
            "INFO",
            {"event": "start", "trigger": "schedule", "command": "/bin/echo"},
            job_id="backup",
            run_id="r1",
            moment=MOMENT,
        )
        assert line == (
            f"{timestamp(MOMENT)} INFO job_id=backup run_id=r1 "
            "event=start trigger=schedule command=/bin/echo"
        )
        assert line.startswith("2024-05-01 09:30:05")

    def test_values_with_spaces_are_quoted_and_none_skipped(self):
        line = format_line("ERROR", {"event": "failed", "exit_code": None, "message": 'disk "full"'}, moment=MOMENT)
        assert line.endswith('ERROR event=failed message="disk \\"full\\""')
        assert "exit_code" not in line
        assert "job_id" not in line

    def test_timestamp_has_offset(self):
        stamp = timestamp(MOMENT)
        assert len(stamp) == 25
        assert stamp[19] in "+-"


@pytest.mark.asyncio
async def test_sink_writes_start_and_finish(tmp_path):
    bus = EventBus()
    sink = EventLogSink(tmp_path)
    sink.attach(bus)

    await bus.emit(Event(type=EventType.RUN_START, data={
        "job_id": "a", "run_id": "r1", "trigger": "manual", "command": "/bin/false",
    }))
    await bus.emit(Event(type=EventType.RUN_DISPATCH, data={"job_id": "a"}))
    await bus.emit(Event(type=EventType.RUN_FINISH, level="ERROR", data={
        "job_id": "a", "run_id": "r1", "status": "failed", "exit_code": 1,
        "duration": 0.012, "message": "exit code 1",
    }))
    sink.detach(bus)
    await bus.emit(Event(type=EventType.RUN_START, data={"job_id": "a", "run_id": "r2"}))

    lines = log_file_for(tmp_path, "job").read_text().splitlines()
    assert sink.lines_written == 2
    assert len(lines) == 2
    assert " INFO job_id=a run_id=r1 event=start trigger=manual command=/bin/false" in lines[0]
    assert ' ERROR job_id=a run_id=r1 event=failed exit_code=1 duration=0.012 message="exit code 1"' in lines[1]


class TestPurge:
    def test_removes_only_expired_dated_files(self, tmp_path):
        today = date(2024, 5, 31)
        names = [
            "daemon-2024-04-30.log",  # 31 days old
            "job-2024-04-30.log",
            "job-2024-05-01.log",  # exactly 30 days old, kept
            "daemon-2024-05-31.log",
            "notes-2020-01-01.log",
            "job-2024-13-01.log",  # not a date
        ]
        for name in names:
            (tmp_path / name).write_text("x\n")

        removed = purge_old_logs(tmp_path, keep_days=30, today=today)

        assert sorted(p.name for p in removed) == ["daemon-2024-04-30.log", "job-2024-04-30.log"]
        assert sorted(p.name for p in tmp_path.iterdir()) == [
            "daemon-2024-05-31.log", "job-2024-05-01.log", "job-2024-13-01.log", "notes-2020-01-01.log",
        ]

    def test_missing_directory(self, tmp_path):
        assert purge_old_logs(tmp_path / "absent") == []


class TestReadLogLines:
    @pytest.fixture
    def logs(self, tmp_path):
        yesterday = MOMENT - timedelta(days=1)
        (tmp_path / f"job-{yesterday:%Y-%m-%d}.log").write_text(
            format_line("INFO", {"event": "start"}, "a", "r0", yesterday) + "\n"
        )
        (tmp_path / f"daemon-{MOMENT:%Y-%m-%d}.log").write_text(
            format_line("INFO", {"msg": "daemon started"}, moment=MOMENT) + "\n"
            + format_line("WARNING", {"msg": "late"}, moment=MOMENT + timedelta(seconds=3)) + "\n"
        )
        (tmp_path / f"job-{MOMENT:%Y-%m-%d}.log").write_text(
            format_line("INFO", {"event": "start"}, "a", "r1", MOMENT + timedelta(seconds=1)) + "\n"
            + format_line("INFO", {"event": "start"}, "ab", "r2", MOMENT + timedelta(seconds=2)) + "\n"
        )
        return tmp_path

    def test_merged_by_time_oldest_first(self, logs):
        lines = read_log_lines(logs, tail=10)
        assert len(lines) == 5
        assert "run_id=r0" in lines[0]
        assert "daemon started" in lines[1]
        assert "run_id=r1" in lines[2]
        assert "run_id=r2" in lines[3]
        assert "late" in lines[4]

    def test_tail(self, logs):
        lines = read_log_lines(logs, tail=2)
        assert "run_id=r2" in lines[0]
        assert "late" in lines[1]

    def test_filter_by_job_is_exact(self, logs):
        lines = read_log_lines(logs, job_id="a", tail=10)
        assert [line.split(" run_id=")[1].split()[0] for line in lines] == ["r0", "r1"]

    def test_unknown_job_and_empty_dir(self, logs, tmp_path):
        assert read_log_lines(logs, job_id="zzz") == []
        assert read_log_lines(tmp_path / "none") == []
        assert read_log_lines(logs, tail=0) == []


def test_setup_logging_writes_daemon_file(tmp_path):
    logger = setup_logging(tmp_path, console_level=logging.CRITICAL, file_level=logging.INFO)
    try:
        logging.getLogger("ezcron.test").info("hello from test")
        for handler in logger.handlers:
            handler.flush()
        content = log_file_for(tmp_path, "daemon").read_text()
        assert " INFO hello from test" in content
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()


def test_dated_handler_switches_file_on_new_day(tmp_path):
    handler = DatedFileHandler(tmp_path)
    handler.setFormatter(LineFormatter())
    try:
        record = logging.LogRecord("ezcron", logging.INFO, __file__, 1, "tomorrow", None, None)
        record.created = (datetime.now() + timedelta(days=1)).timestamp()
        handler.emit(record)
        handler.flush()
    finally:
        handler.close()
    tomorrow = log_file_for(tmp_path, "daemon", datetime.now() + timedelta(days=1))
    assert "tomorrow" in tomorrow.read_text()
