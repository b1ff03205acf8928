"""Unit tests for the command-backed code-change and review actors."""

from __future__ import annotations

import json
import sys
from typing import TYPE_CHECKING

import pytest

from tdd_orchestrator.control_plane.actors import (
    ActorError,
    ActorTimeoutError,
    ChangeRequest,
    CommandCodeChangeActor,
    CommandReviewActor,
    review_from_mapping,
)
from tdd_orchestrator.domain.models import Phase, Severity

from tests.unit import make_work_item

if TYPE_CHECKING:
    from pathlib import Path

_ECHO_REQUEST = """
import json, sys
request = json.load(sys.stdin)
print("thinking...")
print(json.dumps({"change_set_applied": True, "summary": request["phase"]}))
"""

_REVIEW = """
import json, sys
request = json.load(sys.stdin)
print(json.dumps({"issues": [
    {"severity": "HIGH", "message": "ref " + request["changeset_ref"], "location": "app.py:3"},
    {"severity": "info", "message": "style"},
]}))
"""


def _python(script: str) -> list[str]:
    return [sys.executable, "-c", script]


@pytest.mark.asyncio
async def test_code_actor_sends_request_and_reads_last_json_line() -> None:
    actor = CommandCodeChangeActor(_python(_ECHO_REQUEST), timeout_seconds=30)
    request = ChangeRequest(
        phase=Phase.GREEN, work_item=make_work_item(), signal_context=("a", "b")
    )

    result = await actor.act(request)

    assert result.change_set_applied is True
    assert result.summary == "green"


@pytest.mark.asyncio
async def test_code_actor_runs_in_the_given_directory(tmp_path: Path) -> None:
    script = (
        "import json, os; "
        "open('touched.txt', 'w').write('x'); "
        "print(json.dumps({'change_set_applied': False}))"
    )
    actor = CommandCodeChangeActor(_python(script), cwd=tmp_path, timeout_seconds=30)

    result = await actor.act(ChangeRequest(phase=Phase.RED, work_item=make_work_item()))

    assert result.change_set_applied is False
    assert (tmp_path / "touched.txt").read_text() == "x"


@pytest.mark.asyncio
async def test_code_actor_rejects_non_boolean_flag() -> None:
    script = "import json; print(json.dumps({'change_set_applied': 'yes'}))"
    actor = CommandCodeChangeActor(_python(script), timeout_seconds=30)

    with pytest.raises(ActorError, match="boolean"):
        await actor.act(ChangeRequest(phase=Phase.RED, work_item=make_work_item()))


@pytest.mark.asyncio
async def test_nonzero_exit_is_an_actor_error() -> None:
    script = "import sys; sys.stderr.write('model overloaded'); sys.exit(3)"
    actor = CommandCodeChangeActor(_python(script), timeout_seconds=30)

    with pytest.raises(ActorError, match="exited with 3: model overloaded"):
        await actor.act(ChangeRequest(phase=Phase.RED, work_item=make_work_item()))


@pytest.mark.asyncio
async def test_missing_binary_is_an_actor_error(tmp_path: Path) -> None:
    actor = CommandCodeChangeActor([str(tmp_path / "no-such-tool")], timeout_seconds=30)

    with pytest.raises(ActorError, match="cannot start actor"):
        await actor.act(ChangeRequest(phase=Phase.RED, work_item=make_work_item()))


@pytest.mark.asyncio
async def test_slow_actor_times_out() -> None:
    actor = CommandReviewActor(_python("import time; time.sleep(30)"), timeout_seconds=0.2)

    with pytest.raises(ActorTimeoutError, match="timed out"):
        await actor.review("wi-x/snap-y")


@pytest.mark.asyncio
async def test_non_json_output_is_rejected() -> None:
    actor = CommandReviewActor(_python("print('LGTM')"), timeout_seconds=30)

    with pytest.raises(ActorError, match="not a JSON object"):
        await actor.review("wi-x/snap-y")


@pytest.mark.asyncio
async def test_review_actor_parses_issues() -> None:
    actor = CommandReviewActor(_python(_REVIEW), timeout_seconds=30)

    completed = await actor.review("wi-x/snap-y")

    assert [issue.severity for issue in completed.issues] == [Severity.HIGH, Severity.INFO]
    assert completed.issues[0].message == "ref wi-x/snap-y"
    assert completed.issues[0].location == "app.py:3"
    assert completed.issues[1].location is None
    assert len(completed.blocking_issues(Severity.HIGH)) == 1


def test_review_from_mapping_rejects_bad_shapes() -> None:
    with pytest.raises(ActorError, match="must be a list"):
        review_from_mapping({"issues": "none"})
    with pytest.raises(ActorError, match=r"issues\[0\] must be an object"):
        review_from_mapping({"issues": ["bad"]})
    with pytest.raises(ActorError, match=r"issues\[0\]\.severity"):
        review_from_mapping({"issues": [{"severity": "blocker", "message": "x"}]})


def test_review_from_mapping_defaults_to_no_issues() -> None:
    assert review_from_mapping({}).issues == ()


def test_change_request_payload_is_json_ready() -> None:
    item = make_work_item()
    context = tuple(f"signal-{index}" for index in range(30))

    payload = ChangeRequest(phase=Phase.REFACTOR, work_item=item, signal_context=context).to_dict()

    encoded = json.loads(json.dumps(payload))
    assert encoded["phase"] == "refactor"
    assert encoded["work_item"]["id"] == item.id
    assert encoded["signal_context"] == list(context[-20:])
