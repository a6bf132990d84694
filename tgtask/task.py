"""Task metadata: the schema stored in the task database and sent to clients."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


class State(str, Enum):
    """Last known state of a task."""

    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETE = "complete"
    CANCELED = "canceled"


class Outcome(str, Enum):
    """Outcome of a finished task."""

    UNKNOWN = "unknown"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELED = "canceled"


class TaskType(str, Enum):
    """Kind of activity a task performs."""

    BUILD = "build"
    RUN = "run"


_TIME_RE = re.compile(r"^(?P<main>[^.Z+]+?(?:-\d{2})?)(?:\.(?P<frac>\d+))?(?P<tz>Z|[+-]\d{2}:\d{2})?$")


def _format_time(moment: datetime) -> str:
    text = moment.isoformat()
    if text.endswith("+00:00"):
        text = text[: -len("+00:00")] + "Z"
    return text


def _parse_time(text: str) -> datetime:
    match = _TIME_RE.match(text)
    if match is None:
        raise ValueError(f"invalid timestamp: {text!r}")
    normalized = match["main"]
    if match["frac"]:
        normalized += "." + match["frac"][:6].ljust(6, "0")
    tz = match["tz"]
    if tz:
        normalized += "+00:00" if tz == "Z" else tz
    moment = datetime.fromisoformat(normalized)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


@dataclass
class DatedState:
    """A task state with the moment it was entered."""

    created: datetime
    state: State

    def to_dict(self) -> dict[str, Any]:
        return {"created": _format_time(self.created), "state": State(self.state).value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DatedState:
        return cls(created=_parse_time(data["created"]), state=State(data["state"]))


@dataclass
class CreatedBy:
    """Who created a task, and from which repository state."""

    user: str = ""
    repo: str = ""
    branch: str = ""
    commit: str = ""

    def to_dict(self) -> dict[str, str]:
        fields = {"user": self.user, "repo": self.repo, "branch": self.branch, "commit": self.commit}
        return {key: value for key, value in fields.items() if value}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CreatedBy:
        data = data or {}
        return cls(
            user=data.get("user") or "",
            repo=data.get("repo") or "",
            branch=data.get("branch") or "",
            commit=data.get("commit") or "",
        )


def _parse_type(value: Any) -> TaskType | str | None:
    if not value:
        return None
    try:
        return TaskType(value)
    except ValueError:
        return value


@dataclass
class Task:
    """Metadata about a task, as stored and as reported to clients."""

    version: int = 0
    priority: int = 0
    id: str = ""
    runner: str = ""
    plan: str = ""
    case: str = ""
    states: list[DatedState] = field(default_factory=list)
    type: TaskType | str | None = None
    composition: Any = None
    input: Any = None
    result: Any = None
    error: str = ""
    created_by: CreatedBy = field(default_factory=CreatedBy)

    def created(self) -> datetime:
        """Moment the task entered its first state."""
        if not self.states:
            raise ValueError("task must have a state")
        return self.states[0].created

    def state(self) -> DatedState:
        """The most recent state of the task."""
        if not self.states:
            raise ValueError("task must have a state")
        return self.states[-1]

    def is_canceled(self) -> bool:
        return self.state().state == State.CANCELED

    def name(self) -> str:
        if self.type == TaskType.BUILD:
            return "build"
        if self.type == TaskType.RUN:
            return f"{self.plan}:{self.case}"
        return "not supported"

    def took(self) -> timedelta:
        """Time between the first and last state, truncated to whole seconds."""
        delta = self.state().created - self.created()
        micros = delta // timedelta(microseconds=1)
        whole = abs(micros) // 1_000_000
        return timedelta(seconds=whole if micros >= 0 else -whole)

    def created_by_ci(self) -> bool:
        by = self.created_by
        return bool(by.repo and by.commit and by.branch)

    def render_created_by(self) -> str:
        by = self.created_by
        if self.created_by_ci():
            return (
                f'<a href="https://github.com/{by.repo}/commit/{by.commit}" target="_blank">'
                f"{by.repo}<br/>{by.branch}</a>"
            )
        return by.user

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.type, Enum):
            type_value = self.type.value
        else:
            type_value = self.type or ""
        return {
            "version": self.version,
            "priority": self.priority,
            "id": self.id,
            "runner": self.runner,
            "plan": self.plan,
            "case": self.case,
            "states": [state.to_dict() for state in self.states] if self.states else None,
            "type": type_value,
            "composition": self.composition,
            "input": self.input,
            "result": self.result,
            "error": self.error,
            "created_by": self.created_by.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            version=data.get("version") or 0,
            priority=data.get("priority") or 0,
            id=data.get("id") or "",
            runner=data.get("runner") or "",
            plan=data.get("plan") or "",
            case=data.get("case") or "",
            states=[DatedState.from_dict(item) for item in data.get("states") or []],
            type=_parse_type(data.get("type")),
            composition=data.get("composition"),
            input=data.get("input"),
            result=data.get("result"),
            error=data.get("error") or "",
            created_by=CreatedBy.from_dict(data.get("created_by")),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str | bytes) -> Task:
        return cls.from_dict(json.loads(raw))