"""Tests for HEARTBEAT.md task parsing and status rewrites."""

from __future__ import annotations

from mnemo.scheduler.tasks import TaskStatus, parse_tasks, set_task_status

HEARTBEAT = """\
# Heartbeat tasks

Some notes that are not tasks.

- [ ] Summarize yesterday's daily log
- [x] Water the plants
- [!] Check the build server
* [ ] Draft the weekly review
- [] not a task
"""


class TestParse:
    def test_tasks_and_statuses(self):
        task_file = parse_tasks(HEARTBEAT)
        assert [(t.description, t.status) for t in task_file.tasks] == [
            ("Summarize yesterday's daily log", TaskStatus.PENDING),
            ("Water the plants", TaskStatus.DONE),
            ("Check the build server", TaskStatus.FAILED),
            ("Draft the weekly review", TaskStatus.PENDING),
        ]
        assert [t.description for t in task_file.pending] == [
            "Summarize yesterday's daily log",
            "Draft the weekly review",
        ]
        assert not task_file.paused

    def test_line_numbers(self):
        task_file = parse_tasks(HEARTBEAT)
        lines = HEARTBEAT.splitlines()
        for task in task_file.tasks:
            assert lines[task.line_no] == task.raw_text

    def test_empty(self):
        task_file = parse_tasks("")
        assert task_file.tasks == []
        assert task_file.pending == []

    def test_paused_frontmatter(self):
        text = "---\npaused: true\n---\n# Tasks\n\n- [ ] something\n"
        task_file = parse_tasks(text)
        assert task_file.paused
        assert len(task_file.tasks) == 1

    def test_invalid_frontmatter_not_paused(self):
        text = "---\n: : bad yaml [\n---\n- [ ] task\n"
        task_file = parse_tasks(text)
        assert not task_file.paused
        assert [t.description for t in task_file.tasks] == ["task"]


class TestSetStatus:
    def test_marks_done_and_preserves_other_lines(self):
        task = parse_tasks(HEARTBEAT).pending[0]
        updated = set_task_status(HEARTBEAT, task, TaskStatus.DONE)
        assert "- [x] Summarize yesterday's daily log\n" in updated
        assert updated.replace("- [x] Summarize", "- [ ] Summarize") == HEARTBEAT

    def test_marks_failed_with_star_bullet(self):
        task = parse_tasks(HEARTBEAT).pending[1]
        updated = set_task_status(HEARTBEAT, task, TaskStatus.FAILED)
        assert "* [!] Draft the weekly review\n" in updated

    def test_task_moved_by_concurrent_edit(self):
        task = parse_tasks(HEARTBEAT).pending[0]
        edited = "# Added heading\n\n" + HEARTBEAT
        updated = set_task_status(edited, task, TaskStatus.DONE)
        assert "- [x] Summarize yesterday's daily log" in updated
        assert updated.startswith("# Added heading\n\n")

    def test_task_removed_returns_none(self):
        task = parse_tasks(HEARTBEAT).pending[0]
        edited = HEARTBEAT.replace("- [ ] Summarize yesterday's daily log\n", "")
        assert set_task_status(edited, task, TaskStatus.DONE) is None

    def test_crlf_preserved(self):
        text = "- [ ] one\r\n- [ ] two\r\n"
        task = parse_tasks(text).tasks[1]
        assert set_task_status(text, task, TaskStatus.DONE) == "- [ ] one\r\n- [x] two\r\n"
