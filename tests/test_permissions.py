import pytest
from pydantic import ValidationError

from agent_client.core import StalePermissionError
from agent_client.events import PermissionChoice
from agent_client.permissions import PermissionGate, cancelled_outcome, select_auto_option, selected_outcome


def _params(tool_call_id="t1", options=None):
    return {
        "sessionId": "sess-1",
        "toolCall": {"toolCallId": tool_call_id, "title": f"Edit {tool_call_id}"},
        "options": options
        if options is not None
        else [
            {"optionId": "no", "name": "Reject", "kind": "reject_once"},
            {"optionId": "yes", "name": "Allow", "kind": "allow_once"},
            {"optionId": "always", "name": "Always", "kind": "allow_always"},
        ],
    }


def test_outcome_payloads():
    assert selected_outcome("yes") == {"outcome": {"outcome": "selected", "optionId": "yes"}}
    assert cancelled_outcome() == {"outcome": {"outcome": "cancelled"}}


def test_auto_option_prefers_first_allow_kind():
    options = (PermissionChoice("no", "Reject", "reject_once"), PermissionChoice("yes", "Allow", "allow_once"))
    assert select_auto_option(options) == "yes"
    assert select_auto_option(options[:1]) == "no"
    assert select_auto_option(()) is None


def test_auto_allow_resolves_without_queueing():
    gate = PermissionGate(auto_allow=True)
    request, option_id = gate.open(10, _params())
    assert option_id == "yes"
    assert request.resolved
    assert gate.pending is None


def test_manual_requests_queue_in_order():
    gate = PermissionGate()
    first, auto = gate.open(10, _params("t1"))
    second, _ = gate.open(11, _params("t2"))
    assert auto is None
    assert gate.pending is first
    assert len(gate) == 2

    with pytest.raises(StalePermissionError):
        gate.settle(11, "yes")
    with pytest.raises(ValueError):
        gate.settle(10, "bogus")
    assert gate.pending is first

    assert gate.settle(10, "always") == selected_outcome("always")
    assert first.resolved
    assert gate.pending is second
    with pytest.raises(StalePermissionError):
        gate.settle(10, "yes")


def test_choose_allow_and_reject():
    gate = PermissionGate()
    gate.open(1, _params("t1"))
    gate.open(2, _params("t2", options=[{"optionId": "ok", "name": "Allow", "kind": "allow_once"}]))
    request, outcome = gate.choose_reject()
    assert request.request_id == 1
    assert outcome == selected_outcome("no")
    # no reject option offered: the request is cancelled instead
    request, outcome = gate.choose_reject()
    assert request.request_id == 2
    assert outcome == cancelled_outcome()
    assert gate.choose_allow() is None


def test_cancel_all_answers_everything():
    gate = PermissionGate()
    gate.open(1, _params("t1"))
    gate.open(2, _params("t2"))
    cancelled = gate.cancel_all()
    assert [r.request_id for r, _ in cancelled] == [1, 2]
    assert all(outcome == cancelled_outcome() for _, outcome in cancelled)
    assert gate.pending is None


def test_malformed_request_is_rejected():
    gate = PermissionGate()
    with pytest.raises(ValidationError):
        gate.open(1, {"sessionId": "sess-1", "options": []})
    assert gate.pending is None
