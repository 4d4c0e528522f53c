import pytest

from siptx.message import CSeqHeader, Request, RequestMethod, SipUri
from siptx.mock_transport import MockTransportLayer


def _request():
    return Request(
        RequestMethod.INVITE,
        SipUri("example.com", user="bob"),
        headers=[CSeqHeader(1, RequestMethod.INVITE)],
    )


def test_send_puts_message_into_out_queue():
    tpl = MockTransportLayer()
    request = _request()
    tpl.send(request)
    assert tpl.out_msgs.get_nowait() is request


def test_messages_and_errors_are_inbound_queues():
    tpl = MockTransportLayer()
    request = _request()
    tpl.in_msgs.put(request)
    assert tpl.messages.get_nowait() is request
    err = OSError("boom")
    tpl.in_errs.put(err)
    assert tpl.errors.get_nowait() is err


def test_reliable_and_streamed():
    tpl = MockTransportLayer()
    assert tpl.is_reliable("udp") is True
    assert tpl.is_streamed("udp") is True


def test_listen_accepts_anything():
    tpl = MockTransportLayer()
    assert tpl.listen("udp", "127.0.0.1:5060") is None
    assert tpl.out_msgs.empty()


def test_host_and_text():
    tpl = MockTransportLayer()
    assert tpl.host == "127.0.0.1"
    assert "127.0.0.1" in str(tpl)


def test_cancel_stops_sending_and_wakes_readers():
    tpl = MockTransportLayer()
    tpl.cancel()
    assert tpl.done.is_set()
    with pytest.raises(EOFError):
        tpl.send(_request())
    assert tpl.in_msgs.get_nowait() is None
    assert tpl.in_errs.get_nowait() is None
    assert tpl.out_msgs.get_nowait() is None


def test_cancel_is_idempotent():
    tpl = MockTransportLayer()
    tpl.cancel()
    tpl.cancel()
    assert tpl.in_msgs.qsize() == 1
    assert tpl.out_msgs.qsize() == 1