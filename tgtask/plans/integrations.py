"""Small plans used to check the runner end to end: placebos and builder checks."""

from __future__ import annotations

import time

from .runenv import InitContext, RunEnv, SyncClient

_SHIM_VERSIONS = {"v14": "v14", "v16": "v16"}


def _minimal_init(runenv: RunEnv) -> None:
    """Bind a sync client and attach it, so the outcome can be reported.

    The client is left open: it is used after the case returns.
    """
    runenv.attach_sync_client(SyncClient(runenv.sync_service))


def placebo_ok(runenv: RunEnv) -> None:
    _minimal_init(runenv)


def placebo_panic(runenv: RunEnv) -> None:
    _minimal_init(runenv)
    raise RuntimeError("this is an intentional panic")


def placebo_stall(runenv: RunEnv, duration: float = 24 * 60 * 60) -> None:
    _minimal_init(runenv)
    runenv.record_message("Now stalling for 24 hours")
    time.sleep(duration)


def silent_failure(runenv: RunEnv) -> None:
    """Returns normally but never reports success."""
    runenv.record_message("This fails by NOT returning an error and NOT sending a test success status.")


def docker_customize(runenv: RunEnv) -> None:
    runenv.record_message("hi there!")


def shim_version(tag: str) -> str:
    """Version string of the shim selected by a build tag."""
    try:
        return _SHIM_VERSIONS[tag]
    except KeyError:
        raise ValueError(f"no shim for build tag {tag!r}") from None


def override_builder_configuration(runenv: RunEnv, init_ctx: InitContext, implementation: str) -> None:
    """Check that the instance was built by the expected builder."""
    expected = runenv.string_param("expected_implementation")
    runenv.record_message(
        "Builder Configuration run with implementation: %s, expected implementation: %s",
        implementation,
        expected,
    )
    if expected != implementation:
        raise RuntimeError("expected version does not match")


def _override_builder_version(runenv: RunEnv, init_ctx: InitContext, tag: str) -> None:
    """Check that the instance was built with the expected shim version."""
    version = shim_version(tag)
    expected = runenv.string_param("expected_version")
    runenv.record_message("Builder Configuration run with version: %s, expected version: %s", version, expected)
    if expected != version:
        raise RuntimeError("expected version does not match")


def noop(runenv: RunEnv, init_ctx: InitContext) -> None:
    """Does nothing and succeeds."""