import queue

import pytest

from siptx import timing
from siptx.layer import Layer
from siptx.message import (
    CSeqHeader,
    Params,
    Request,
    RequestMethod,
    Response,
    SipUri,
    ViaHeader,
    ViaHop,
    generate_branch,
)
from siptx.mock_transport import MockTransportLayer
from siptx.transaction import make_client_tx_key, make_server_tx_key

WAIT = 3.0


def _headers(branch, seq_method):
    hop = ViaHop(host="localhost", port=9001, transport="UDP", params=Params().add("branch", branch))
    return [ViaHeader([hop]), CSeqHeader(seq_no=1, method_name=seq_method)]


def _request(method, branch, seq_method=None):
    return Request(
        method=method,
        recipient=SipUri(user="bob", host="example.com"),
        sip_version="SIP/2.0",
        headers=_headers(branch, seq_method or method),
        body="",
    )


def _response(code, reason, branch, seq_method=RequestMethod.INVITE):
    return Response(
        status_code=code,
        reason=reason,
        sip_version="SIP/2.0",
        headers=_headers(branch, seq_method),
        body="",
    )


def _next_out(tpl, skip_provisional=False):
    while True:
        msg = tpl.out_msgs.get(timeout=WAIT)
        if skip_provisional and isinstance(msg, Response) and msg.is_provisional():
            continue
        return msg


@pytest.fixture
def tpl():
    timing.set_mock_mode(False)
    transport = MockTransportLayer()
    yield transport
    transport.cancel()


@pytest.fixture
def txl(tpl):
    layer = Layer(tpl)
    yield layer
    layer.cancel()
    layer.done.wait(WAIT)


@pytest.fixture
def branch():
    return generate_branch()


def test_layer_has_transport(txl, tpl):
    assert txl.transport is tpl


def test_sends_invite_request(txl, tpl, branch):
    invite = _request(RequestMethod.INVITE, branch)
    tx = txl.request(invite)
    sent = _next_out(tpl)
    assert sent.is_invite()
    assert make_client_tx_key(sent) == make_client_tx_key(invite)
    assert tx.key == make_client_tx_key(invite)


def test_client_receives_trying_and_ok(txl, tpl, branch):
    invite = _request(RequestMethod.INVITE, branch)
    tx = txl.request(invite)
    _next_out(tpl)
    tpl.in_msgs.put(_response(100, "Trying", branch))
    tpl.in_msgs.put(_response(200, "OK", branch))
    first = tx.responses.get(timeout=WAIT)
    second = tx.responses.get(timeout=WAIT)
    assert first.start_line() == "SIP/2.0 100 Trying"
    assert second.start_line() == "SIP/2.0 200 OK"


def test_client_receives_bad_request_and_sends_ack(txl, tpl, branch):
    tx = txl.request(_request(RequestMethod.INVITE, branch))
    _next_out(tpl)
    tpl.in_msgs.put(_response(100, "Trying", branch))
    assert tx.responses.get(timeout=WAIT).start_line() == "SIP/2.0 100 Trying"
    tpl.in_msgs.put(_response(400, "Bad Request", branch))
    assert tx.responses.get(timeout=WAIT).start_line() == "SIP/2.0 400 Bad Request"
    ack = _next_out(tpl)
    assert isinstance(ack, Request)
    assert ack.is_ack()


def test_client_cancel_invite(txl, tpl, branch):
    tx = txl.request(_request(RequestMethod.INVITE, branch))
    _next_out(tpl)
    tpl.in_msgs.put(_response(100, "Trying", branch))
    assert tx.responses.get(timeout=WAIT).start_line() == "SIP/2.0 100 Trying"

    tx.cancel()
    cancel = _next_out(tpl)
    assert isinstance(cancel, Request)
    assert cancel.is_cancel()

    tpl.in_msgs.put(_response(487, "Request Terminated", branch))
    assert tx.responses.get(timeout=WAIT).start_line() == "SIP/2.0 487 Request Terminated"
    ack = _next_out(tpl)
    assert ack.is_ack()


def test_request_rejects_ack(txl, branch):
    with pytest.raises(ValueError):
        txl.request(_request(RequestMethod.ACK, branch))


def test_request_after_cancel_fails(txl, branch):
    txl.cancel()
    with pytest.raises(RuntimeError):
        txl.request(_request(RequestMethod.INVITE, branch))


def test_non_matched_response_is_passed_up(txl, tpl, branch):
    res = _response(200, "OK", branch)
    tpl.in_msgs.put(res)
    assert txl.responses.get(timeout=WAIT) is res


def test_respond_without_transaction_fails(txl, branch):
    with pytest.raises(LookupError):
        txl.respond(_response(200, "OK", branch))


def test_server_opens_transaction(txl, tpl, branch):
    invite = _request(RequestMethod.INVITE, branch)
    tpl.in_msgs.put(invite)
    tx = txl.requests.get(timeout=WAIT)
    assert tx.origin.is_invite()
    assert tx.key == make_server_tx_key(invite)


def test_server_sends_trying_after_timer(txl, tpl, branch):
    tpl.in_msgs.put(_request(RequestMethod.INVITE, branch))
    txl.requests.get(timeout=WAIT)
    msg = _next_out(tpl)
    assert msg.start_line() == "SIP/2.0 100 Trying"


def test_server_respond_ok_and_ack_passed_up(txl, tpl, branch):
    tpl.in_msgs.put(_request(RequestMethod.INVITE, branch))
    tx = txl.requests.get(timeout=WAIT)
    returned = txl.respond(_response(200, "OK", branch))
    assert returned is tx
    assert _next_out(tpl, skip_provisional=True).start_line() == "SIP/2.0 200 OK"

    ack = _request(RequestMethod.ACK, generate_branch())
    tpl.in_msgs.put(ack)
    assert txl.acks.get(timeout=WAIT) is ack


def test_server_gets_ack_inside_invite_tx_after_error_response(txl, tpl, branch):
    tpl.in_msgs.put(_request(RequestMethod.INVITE, branch))
    txl.requests.get(timeout=WAIT)
    tx = txl.respond(_response(400, "Bad Request", branch))
    assert _next_out(tpl, skip_provisional=True).start_line() == "SIP/2.0 400 Bad Request"

    ack = _request(RequestMethod.ACK, branch)
    tpl.in_msgs.put(ack)
    received = tx.acks.get(timeout=WAIT)
    assert received is ack
    assert received.is_ack()


def test_non_matched_cancel_gets_481(txl, tpl, branch):
    tpl.in_msgs.put(_request(RequestMethod.CANCEL, branch))
    res = _next_out(tpl)
    assert res.start_line() == "SIP/2.0 481 Transaction Does Not Exist"