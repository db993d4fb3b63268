"""Tests for the state store."""

from __future__ import annotations

import logging
from datetime import datetime

import pytest

from longrun.exceptions import StateCorrupted, StateNotFound
from longrun.models import RunStatus, TaskStatus, new_run
from longrun.state import (
    FileStateStore,
    MemoryStateStore,
    append_lines,
    atomic_write_text,
    copy_tail,
    validate_run,
)


@pytest.fixture
def run(make_specs):
    return new_run(make_specs("a", ("b", ["a"]), ("c", ["b"])))


class TestAtomicWrite:
    """Tests for temp-then-rename writes."""

    def test_writes_and_replaces(self, tmp_path):
        path = tmp_path / "nested" / "file.json"
        atomic_write_text(path, "one")
        atomic_write_text(path, "two")
        assert path.read_text() == "two"

    def test_no_temp_files_left(self, tmp_path):
        path = tmp_path / "file.json"
        atomic_write_text(path, "{}")
        assert sorted(p.name for p in tmp_path.iterdir()) == ["file.json"]


class TestJournalFiles:
    """Tests for bounded append-only files."""

    def test_append_without_limit(self, tmp_path):
        path = tmp_path / "events.jsonl"
        for i in range(5):
            append_lines(path, [f"line {i}"])
        assert len(path.read_text().splitlines()) == 5

    def test_trims_to_newest_lines(self, tmp_path):
        path = tmp_path / "events.jsonl"
        for i in range(10):
            append_lines(path, [f"line {i}"], max_lines=6, keep_lines=3)
        lines = path.read_text().splitlines()
        assert len(lines) <= 6
        assert lines[-1] == "line 9"

    def test_trim_keeps_half_by_default(self, tmp_path):
        path = tmp_path / "events.jsonl"
        append_lines(path, [f"line {i}" for i in range(11)], max_lines=10)
        assert path.read_text().splitlines() == [f"line {i}" for i in range(6, 11)]

    def test_copy_whole_file_under_limit(self, tmp_path):
        source = tmp_path / "run.log"
        source.write_text("a\nb\n")
        copy_tail(source, tmp_path / "copy.log", max_bytes=100)
        assert (tmp_path / "copy.log").read_text() == "a\nb\n"

    def test_copy_tail_starts_at_full_line(self, tmp_path):
        source = tmp_path / "run.log"
        source.write_text("".join(f"entry {i:03d}\n" for i in range(100)))
        copy_tail(source, tmp_path / "copy.log", max_bytes=25)
        copied = (tmp_path / "copy.log").read_text()
        assert copied == "entry 098\nentry 099\n"


class TestFileStateStore:
    """Tests for the JSON file store."""

    def test_round_trip(self, tmp_path, run):
        store = FileStateStore(tmp_path)
        run.status = RunStatus.RUNNING
        store.save(run)

        loaded = store.load()
        assert loaded.run_id == run.run_id
        assert loaded.status == RunStatus.RUNNING
        assert [t.id for t in loaded.tasks] == ["a", "b", "c"]

    def test_save_writes_primary_and_backup(self, tmp_path, run):
        store = FileStateStore(tmp_path)
        store.save(run)
        assert store.primary_path.exists()
        assert store.backup_path.exists()
        assert store.backup_path.name == "state.json.bak"

    def test_missing_state(self, tmp_path):
        store = FileStateStore(tmp_path / "empty")
        assert not store.exists()
        assert store.last_modified() is None
        with pytest.raises(StateNotFound):
            store.load()

    def test_falls_back_to_backup(self, tmp_path, run, caplog):
        """A corrupted primary is replaced by the backup, with a warning."""
        store = FileStateStore(tmp_path)
        run.tasks[0].status = TaskStatus.COMPLETED
        run.tasks[0].finished_at = datetime.now()
        store.save(run)
        store.primary_path.write_text('{"run_id": "abc", "tasks": [')

        with caplog.at_level(logging.WARNING, logger="longrun"):
            loaded = store.load()

        assert loaded.completed_count == 1
        assert "backup" in caplog.text

    def test_falls_back_when_primary_missing(self, tmp_path, run):
        store = FileStateStore(tmp_path)
        store.save(run)
        store.primary_path.unlink()
        assert store.load().run_id == run.run_id

    def test_falls_back_when_primary_inconsistent(self, tmp_path, run):
        store = FileStateStore(tmp_path)
        store.save(run)
        bad = run.model_copy(deep=True)
        bad.current_task = "ghost"
        store.primary_path.write_text(bad.model_dump_json())
        assert store.load().current_task == "a"

    def test_both_corrupted(self, tmp_path, run):
        store = FileStateStore(tmp_path)
        store.save(run)
        store.primary_path.write_text("not json")
        store.backup_path.write_text("[]")

        with pytest.raises(StateCorrupted) as exc_info:
            store.load()
        assert len(exc_info.value.problems) == 2
        assert "primary" in str(exc_info.value)

    def test_refuses_inconsistent_save(self, tmp_path, run):
        store = FileStateStore(tmp_path)
        run.current_task = "ghost"
        with pytest.raises(StateCorrupted):
            store.save(run)
        assert not store.exists()

    def test_save_refreshes_counts(self, tmp_path, run):
        store = FileStateStore(tmp_path)
        run.tasks[0].status = TaskStatus.NEEDS_REVIEW
        store.save(run)
        assert store.load().failed_count == 1

    def test_reader_is_read_only(self, tmp_path, run):
        store = FileStateStore(tmp_path)
        store.save(run)
        reader = store.reader()
        assert reader.load().run_id == run.run_id
        assert reader.last_modified() is not None
        assert not hasattr(reader, "save")


class TestMemoryStateStore:
    """Tests for the in-process store."""

    def test_round_trip_returns_copies(self, run):
        store = MemoryStateStore(run)
        first = store.load()
        first.tasks[0].status = TaskStatus.COMPLETED
        assert store.load().tasks[0].status == TaskStatus.PENDING

    def test_missing(self):
        with pytest.raises(StateNotFound):
            MemoryStateStore().load()

    def test_unreadable(self, run):
        store = MemoryStateStore(run)
        store._data = "{broken"
        with pytest.raises(StateCorrupted):
            store.load()


class TestValidateRun:
    """Tests for the consistency rules."""

    def test_consistent_run(self, run):
        assert validate_run(run) == []

    def test_duplicate_ids(self, run):
        run.tasks.append(run.tasks[0].model_copy())
        run.refresh_counts()
        fields = [p.field for p in validate_run(run)]
        assert "tasks" in fields

    def test_total_mismatch(self, run):
        run.total_tasks = 5
        assert any(p.field == "total_tasks" for p in validate_run(run))

    def test_counts_disagree_with_statuses(self, run):
        run.completed_count = 2
        problems = validate_run(run)
        assert any(p.field == "completed_count" for p in problems)

    def test_counts_exceed_total(self, run):
        run.completed_count = 2
        run.failed_count = 2
        assert any(p.field == "counts" for p in validate_run(run))

    def test_negative_counter(self, run):
        run.global_retries = -1
        assert any(p.field == "global_retries" for p in validate_run(run))

    def test_unknown_current_task(self, run):
        run.current_task = "ghost"
        assert any(p.field == "current_task" for p in validate_run(run))

    def test_two_tasks_in_progress(self, run):
        run.tasks[0].status = TaskStatus.IN_PROGRESS
        run.tasks[1].status = TaskStatus.IN_PROGRESS
        assert any("more than one" in p.message for p in validate_run(run))

    def test_in_progress_must_be_current(self, run):
        run.tasks[1].status = TaskStatus.IN_PROGRESS
        assert any(p.field == "current_task" for p in validate_run(run))

    def test_completed_needs_finish_time(self, run):
        run.tasks[0].status = TaskStatus.COMPLETED
        run.refresh_counts()
        problems = validate_run(run)
        assert [p.field for p in problems] == ["tasks.a"]

    def test_unknown_dependency(self, run):
        run.tasks[2].depends_on.append("nowhere")
        assert any("unknown task 'nowhere'" in p.message for p in validate_run(run))
