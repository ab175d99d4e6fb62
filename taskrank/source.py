from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from datetime import date, datetime
from pathlib import Path
from typing import Any, Protocol

import yaml

from taskrank.types import Task, TaskRankError

logger = logging.getLogger(__name__)

TaskPredicate = Callable[[Task], bool]


class TaskSource(Protocol):
    """Supplies a fresh snapshot of tasks for one query."""

    supports_pushdown: bool

    def load(self, predicate: TaskPredicate | None = None) -> list[Task]: ...


class InMemoryTaskSource:
    """Task source over a fixed list. Applies pushed-down predicates itself."""

    def __init__(self, tasks: Iterable[Task], supports_pushdown: bool = True):
        self._tasks = tuple(tasks)
        self.supports_pushdown = supports_pushdown

    def load(self, predicate: TaskPredicate | None = None) -> list[Task]:
        if predicate is None or not self.supports_pushdown:
            return list(self._tasks)
        return [t for t in self._tasks if predicate(t)]

    def __len__(self) -> int:
        return len(self._tasks)


def _as_date(v: Any) -> date | None:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    return date.fromisoformat(str(v).strip()[:10])


def _as_priority(v: Any) -> int | None:
    if v is None or v == "":
        return None
    p = int(v)
    if not 1 <= p <= 4:
        raise ValueError(f"priority out of range: {p}")
    return p


def task_from_dict(raw: dict[str, Any], index: int = 0) -> Task:
    tags = raw.get("tags") or []
    if isinstance(tags, str):
        tags = [t for t in tags.replace(",", " ").split() if t]
    return Task(
        id=str(raw.get("id") or f"task-{index + 1}"),
        text=str(raw.get("text") or raw.get("title") or ""),
        priority=_as_priority(raw.get("priority")),
        due_date=_as_date(raw.get("due_date") or raw.get("due")),
        status=str(raw.get("status") if raw.get("status") is not None else "open"),
        folder=str(raw.get("folder") or ""),
        tags=tuple(str(t).lstrip("#") for t in tags),
        created_date=_as_date(raw.get("created_date") or raw.get("created")),
    )


def load_tasks_file(path: str | Path) -> list[Task]:
    """Read tasks from a YAML or JSON file holding a list (or {tasks: [...]})."""
    p = Path(path)
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if isinstance(data, dict):
        data = data.get("tasks")
    if not isinstance(data, list):
        raise TaskRankError(f"{p}: expected a list of tasks")

    tasks: list[Task] = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            logger.warning("skipping non-mapping task entry %d in %s", i, p)
            continue
        try:
            tasks.append(task_from_dict(item, i))
        except ValueError as e:
            raise TaskRankError(f"{p}: task {i}: {e}") from e
    return tasks
