"""HEARTBEAT.md task list parsing and in-place status rewrites.

Format, one task per line::

    - [ ] pending task
    - [x] finished task
    - [!] failed task

Any other line (headings, notes, comments) is preserved verbatim. A YAML
frontmatter block with ``paused: true`` suspends autonomous execution.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

import frontmatter

_TASK_RE = re.compile(r"^(?P<prefix>\s*[-*]\s+\[)(?P<mark>[ xX!])(?P<suffix>\]\s+)(?P<text>\S.*?)\s*$")


class TaskStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


_MARK_TO_STATUS = {
    " ": TaskStatus.PENDING,
    "x": TaskStatus.DONE,
    "X": TaskStatus.DONE,
    "!": TaskStatus.FAILED,
}
_STATUS_TO_MARK = {
    TaskStatus.PENDING: " ",
    TaskStatus.DONE: "x",
    TaskStatus.FAILED: "!",
}


@dataclass
class HeartbeatTask:
    description: str
    status: TaskStatus
    raw_text: str
    line_no: int


@dataclass
class TaskFile:
    tasks: list[HeartbeatTask] = field(default_factory=list)
    paused: bool = False

    @property
    def pending(self) -> list[HeartbeatTask]:
        return [t for t in self.tasks if t.status is TaskStatus.PENDING]


def parse_tasks(text: str) -> TaskFile:
    try:
        metadata = frontmatter.loads(text).metadata
    except Exception:
        metadata = {}

    lines = text.splitlines(keepends=True)
    task_file = TaskFile(paused=bool(metadata.get("paused", False)))
    for line_no, line in enumerate(lines):
        match = _TASK_RE.match(line.rstrip("\r\n"))
        if not match:
            continue
        task_file.tasks.append(
            HeartbeatTask(
                description=match.group("text"),
                status=_MARK_TO_STATUS[match.group("mark")],
                raw_text=line.rstrip("\r\n"),
                line_no=line_no,
            )
        )
    return task_file


def _with_status(raw_text: str, status: TaskStatus) -> str:
    match = _TASK_RE.match(raw_text)
    if not match:
        return raw_text
    return (
        raw_text[: match.start("mark")]
        + _STATUS_TO_MARK[status]
        + raw_text[match.end("mark") :]
    )


def set_task_status(text: str, task: HeartbeatTask, status: TaskStatus) -> str | None:
    """Rewrite one task's marker in ``text``.

    The task is looked up at its original line first and then by its exact
    raw text, so edits made elsewhere in the file while the task ran are
    kept. Returns None if the task line no longer exists.
    """
    lines = text.splitlines(keepends=True)

    def rewrite(index: int) -> str:
        line = lines[index]
        ending = line[len(line.rstrip("\r\n")) :]
        lines[index] = _with_status(task.raw_text, status) + ending
        return "".join(lines)

    if task.line_no < len(lines) and lines[task.line_no].rstrip("\r\n") == task.raw_text:
        return rewrite(task.line_no)
    for index, line in enumerate(lines):
        if line.rstrip("\r\n") == task.raw_text:
            return rewrite(index)
    return None
