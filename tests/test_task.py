import json
from datetime import datetime, timedelta, timezone

import pytest

from tgtask.task import CreatedBy, DatedState, State, Task, TaskType

T0 = datetime(2020, 6, 9, 0, 46, 11, 317034, tzinfo=timezone.utc)


def test_name_of_build_task():
    assert Task(type=TaskType.BUILD, plan="p", case="c").name() == "build"


def test_name_of_run_task():
    assert Task(type=TaskType.RUN, plan="network", case="ping-pong").name() == "network:ping-pong"


def test_name_of_untyped_task():
    assert Task().name() == "not supported"


def test_created_and_state_require_states():
    task = Task(id="bt4brhjpc98qra498sg0")
    with pytest.raises(ValueError):
        task.created()
    with pytest.raises(ValueError):
        task.state()


def test_created_is_first_state_and_state_is_last():
    task = Task(
        states=[
            DatedState(T0, State.SCHEDULED),
            DatedState(T0 + timedelta(seconds=3), State.PROCESSING),
            DatedState(T0 + timedelta(seconds=9), State.COMPLETE),
        ]
    )
    assert task.created() == T0
    assert task.state().state == State.COMPLETE


def test_took_truncates_to_seconds():
    task = Task(
        states=[
            DatedState(T0, State.SCHEDULED),
            DatedState(T0 + timedelta(seconds=5, milliseconds=900), State.COMPLETE),
        ]
    )
    assert task.took() == timedelta(seconds=5)


def test_is_canceled():
    task = Task(states=[DatedState(T0, State.SCHEDULED)])
    assert task.is_canceled() is False
    task.states.append(DatedState(T0, State.CANCELED))
    assert task.is_canceled() is True


def test_created_by_ci_requires_repo_commit_and_branch():
    assert Task(created_by=CreatedBy(repo="org/repo", commit="abc", branch="main")).created_by_ci()
    assert not Task(created_by=CreatedBy(repo="org/repo", branch="main")).created_by_ci()


def test_render_created_by_for_ci():
    task = Task(created_by=CreatedBy(repo="org/repo", commit="abc123", branch="main"))
    assert task.render_created_by() == (
        '<a href="https://github.com/org/repo/commit/abc123" target="_blank">org/repo<br/>main</a>'
    )


def test_render_created_by_for_user():
    assert Task(created_by=CreatedBy(user="alice")).render_created_by() == "alice"


def test_json_round_trip():
    task = Task(
        version=1,
        priority=7,
        id="bt4brhjpc98qra498sg0",
        runner="local:docker",
        plan="network",
        case="ping-pong",
        states=[DatedState(T0, State.SCHEDULED), DatedState(T0 + timedelta(seconds=1), State.PROCESSING)],
        type=TaskType.RUN,
        composition={"global": {"plan": "network"}},
        input={"a": [1, 2]},
        result={"outcome": "success"},
        error="",
        created_by=CreatedBy(user="alice", repo="org/repo"),
    )
    assert Task.from_json(task.to_json()) == task


def test_to_dict_field_names_and_omitted_created_by():
    data = Task(id="x", created_by=CreatedBy(repo="r")).to_dict()
    assert data["created_by"] == {"repo": "r"}
    assert data["type"] == ""
    assert data["states"] is None
    assert set(data) == {
        "version", "priority", "id", "runner", "plan", "case", "states",
        "type", "composition", "input", "result", "error", "created_by",
    }


def test_dated_state_serializes_utc_with_z():
    assert DatedState(T0, State.SCHEDULED).to_dict() == {
        "created": "2020-06-09T00:46:11.317034Z",
        "state": "scheduled",
    }


def test_from_json_accepts_nanosecond_timestamps_and_nulls():
    raw = json.dumps(
        {
            "id": "bt4brhjpc98qra498sg0",
            "states": [{"created": "2020-06-09T00:46:11.317034412Z", "state": "processing"}],
            "type": "build",
            "created_by": None,
        }
    )
    task = Task.from_json(raw)
    assert task.created() == T0
    assert task.type == TaskType.BUILD
    assert task.created_by == CreatedBy()


def test_from_json_with_offset_timestamp():
    raw = '{"states":[{"created":"2020-06-08T17:46:11-07:00","state":"scheduled"}]}'
    task = Task.from_json(raw)
    assert task.created() == datetime(2020, 6, 9, 0, 46, 11, tzinfo=timezone.utc)


def test_from_json_null_states():
    assert Task.from_json('{"id":"a","states":null}').states == []