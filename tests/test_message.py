import pytest

from siptx.message import (
    DEFAULT_PROTOCOL,
    MTU,
    RFC3261_BRANCH_MAGIC_COOKIE,
    AddressHeader,
    CSeqHeader,
    GenericHeader,
    Params,
    Request,
    RequestMethod,
    Response,
    RouteHeader,
    SipUri,
    Transport,
    ViaHeader,
    ViaHop,
    copy_headers,
    copy_request,
    copy_response,
    default_port,
    generate_branch,
    new_ack_request,
    new_cancel_request,
    new_response_from_request,
    next_message_id,
)

CLIENT_HOST = "127.0.0.1"
CLIENT_PORT = 9001


def make_invite(transport="UDP", branch=None, recipient=None, body="", extra=()):
    branch = branch or generate_branch()
    hop = ViaHop(host=CLIENT_HOST, port=CLIENT_PORT, transport=transport,
                 params=Params().add("branch", branch))
    headers = [
        ViaHeader([hop]),
        AddressHeader("From", SipUri(host="example.com", user="alice"), params=Params().add("tag", "abc")),
        AddressHeader("To", SipUri(host="example.com", user="bob")),
        GenericHeader("Call-ID", "call-1"),
        CSeqHeader(1, RequestMethod.INVITE),
        *extra,
    ]
    return Request(RequestMethod.INVITE, recipient or SipUri(host="example.com", user="bob", port=5080),
                   headers=headers, body=body)


def test_request_start_line():
    uri = SipUri(host="example.com", user="bob")
    req = Request(RequestMethod.INVITE, uri, sip_version="SIP/2.0")
    assert req.start_line() == f"INVITE {uri} SIP/2.0"
    assert str(uri) == "sip:bob@example.com"


def test_response_start_line():
    res = Response(200, "OK", sip_version="SIP/2.0")
    assert res.start_line() == "SIP/2.0 200 OK"


@pytest.mark.parametrize("code,flags", [
    (100, (True, False, False, False, False, False)),
    (200, (False, True, False, False, False, False)),
    (302, (False, False, True, False, False, False)),
    (487, (False, False, False, True, False, False)),
    (503, (False, False, False, False, True, False)),
    (603, (False, False, False, False, False, True)),
])
def test_response_classification(code, flags):
    res = Response(code)
    got = (res.is_provisional(), res.is_success(), res.is_redirection(),
           res.is_client_error(), res.is_server_error(), res.is_global_error())
    assert got == flags


def test_header_rendering():
    assert str(CSeqHeader(1, RequestMethod.INVITE)) == "CSeq: 1 INVITE"
    hop = ViaHop(host=CLIENT_HOST, port=CLIENT_PORT, params=Params().add("branch", "z9hG4bKabc"))
    assert str(ViaHeader([hop])) == f"Via: SIP/2.0/UDP {CLIENT_HOST}:{CLIENT_PORT};branch=z9hG4bKabc"


def test_message_string_layout():
    req = make_invite(body="hello")
    text = str(req)
    assert text.startswith(req.start_line() + "\r\n")
    assert text.endswith("\r\n\r\nhello")
    assert str(req.cseq()) in text


def test_get_headers_is_case_insensitive():
    req = make_invite()
    assert req.get_headers("call-id") == req.get_headers("Call-ID")
    assert req.call_id() == "call-1"
    assert req.cseq().seq_no == 1
    assert req.from_header().params.get("tag") == "abc"
    assert req.contact() is None


def test_prepend_and_append_header():
    req = make_invite()
    first = ViaHeader([ViaHop(host="first.example.com")])
    req.prepend_header(first)
    assert req.via_hop().host == "first.example.com"
    req.append_header(GenericHeader("Subject", "x"))
    assert req.headers[-1].name == "Subject"


def test_set_body_keeps_single_content_length():
    req = make_invite()
    req.set_body("hello", True)
    req.set_body("hi", True)
    lengths = req.get_headers("Content-Length")
    assert len(lengths) == 1
    assert lengths[0].contents == str(len("hi"))
    assert req.body == "hi"


def test_set_body_without_content_length():
    req = make_invite()
    req.set_body("data", False)
    assert req.get_headers("Content-Length") == []
    assert req.body == "data"


def test_params_add_replaces_and_clone_is_independent():
    params = Params().add("branch", "a").add("rport")
    params.add("branch", "b")
    assert params.get("branch") == "b"
    assert params.has("rport") and params.get("rport") is None
    copy = params.clone()
    copy.add("branch", "c")
    assert params.get("branch") == "b"
    assert str(params) == ";branch=b;rport"


def test_request_transport_rules():
    assert make_invite(transport="TCP").transport == "TCP"
    secure = make_invite(transport="TCP", recipient=SipUri(host="example.com", encrypted=True))
    assert secure.transport == "TLS"
    ws = make_invite(recipient=SipUri(host="example.com", uri_params=Params().add("transport", "ws")))
    assert ws.transport == "WS"
    big = make_invite(body="x" * MTU)
    assert big.transport == "TCP"
    override = make_invite()
    override.transport = "tls"
    assert override.transport == "TLS"


def test_request_source_uses_via():
    req = make_invite()
    assert req.source == f"{CLIENT_HOST}:{CLIENT_PORT}"
    hop = req.via_hop()
    hop.params.add("received", "192.0.2.5").add("rport", "6000")
    assert req.source == "192.0.2.5:6000"


def test_request_source_without_via_is_empty():
    req = Request(RequestMethod.OPTIONS, SipUri(host="example.com"))
    assert req.source == ""


def test_request_destination():
    req = make_invite()
    assert req.destination == "example.com:5080"
    no_port = make_invite(recipient=SipUri(host="example.com"))
    assert no_port.destination == f"example.com:{default_port(no_port.transport)}"
    routed = make_invite(extra=[RouteHeader([SipUri(host="proxy.example.com", port=5090)])])
    assert routed.destination == "proxy.example.com:5090"


def test_default_port():
    assert default_port("udp") == 5060
    assert default_port("TLS") == default_port("tls")
    assert default_port("unknown") == default_port("UDP")


def test_response_transport_and_destination():
    res = Response(200, "OK")
    assert res.transport == DEFAULT_PROTOCOL
    assert res.destination == ""
    hop = ViaHop(host=CLIENT_HOST, port=CLIENT_PORT, transport="TCP",
                 params=Params().add("received", "192.0.2.7").add("rport", "7000"))
    res.append_header(ViaHeader([hop]))
    assert res.transport == "TCP"
    assert res.destination == "192.0.2.7:7000"


def test_new_response_from_request():
    req = make_invite(extra=[GenericHeader("Timestamp", "54")])
    res = new_response_from_request(None, req, 100, "Trying", "")
    assert res.status_code == 100
    assert res.via_hop().params.get("branch") == req.via_hop().params.get("branch")
    assert res.call_id() == req.call_id()
    assert res.get_headers("Timestamp")[0].contents == "54"
    assert res.get_headers("Content-Length")[0].contents == "0"
    assert res.source == req.destination
    assert res.destination == req.source
    assert res.transport == req.transport


def test_new_response_from_request_skips_timestamp_for_final():
    req = make_invite(extra=[GenericHeader("Timestamp", "54")])
    res = new_response_from_request("res-1", req, 200, "OK", "body")
    assert res.get_headers("Timestamp") == []
    assert res.message_id == "res-1"
    assert res.body == "body"


def test_new_ack_request_for_success_uses_new_branch():
    req = make_invite()
    res = new_response_from_request(None, req, 200, "OK", "")
    ack = new_ack_request(None, req, res, "", {"k": "v"})
    assert ack.is_ack()
    assert ack.cseq().method_name == RequestMethod.ACK
    assert ack.cseq().seq_no == req.cseq().seq_no
    assert ack.via_hop().params.get("branch") != req.via_hop().params.get("branch")
    assert ack.via_hop().params.get("branch").startswith(RFC3261_BRANCH_MAGIC_COOKIE)
    assert ack.get_headers("Max-Forwards")[0].contents == "70"
    assert ack.fields["invite_request_id"] == req.message_id
    assert ack.fields["k"] == "v"
    assert req.cseq().method_name == RequestMethod.INVITE


def test_new_ack_request_for_failure_keeps_branch():
    req = make_invite()
    res = new_response_from_request(None, req, 400, "Bad Request", "")
    ack = new_ack_request(None, req, res, "", None)
    assert ack.via_hop().params.get("branch") == req.via_hop().params.get("branch")
    assert ack.source == req.source
    assert ack.destination == req.destination


def test_new_ack_request_uses_contact_and_reverses_record_route():
    req = make_invite()
    res = new_response_from_request(None, req, 200, "OK", "")
    contact = SipUri(host="uas.example.com", user="bob")
    res.append_header(AddressHeader("Contact", contact))
    a, b, c, d = (SipUri(host=f"{n}.example.com") for n in "abcd")
    res.append_header(RouteHeader([a, b], name="Record-Route"))
    res.append_header(RouteHeader([c, d], name="Record-Route"))
    ack = new_ack_request(None, req, res, "", None)
    assert ack.recipient == contact
    routes = ack.get_headers("Route")
    assert [[u.host for u in r.addresses] for r in routes] == [[d.host, c.host], [b.host, a.host]]


def test_new_ack_request_keeps_ws_recipient():
    recipient = SipUri(host="example.com", uri_params=Params().add("transport", "ws"))
    req = make_invite(recipient=recipient)
    res = new_response_from_request(None, req, 200, "OK", "")
    res.append_header(AddressHeader("Contact", SipUri(host="uas.example.com")))
    ack = new_ack_request(None, req, res, "", None)
    assert ack.recipient == recipient


def test_new_cancel_request():
    route = RouteHeader([SipUri(host="proxy.example.com")])
    req = make_invite(extra=[route])
    cancel = new_cancel_request(None, req, None)
    assert cancel.is_cancel()
    assert cancel.recipient == req.recipient
    assert cancel.via_hop().params.get("branch") == req.via_hop().params.get("branch")
    assert cancel.via_hop() is not req.via_hop()
    assert cancel.cseq().method_name == RequestMethod.CANCEL
    assert cancel.get_headers("Route")[0].addresses == route.addresses
    assert cancel.fields["cancelling_request_id"] == req.message_id


def test_response_is_cancel_and_ack_follow_cseq():
    req = make_invite()
    cancel = new_cancel_request(None, req, None)
    res = new_response_from_request(None, cancel, 200, "OK", "")
    assert res.is_cancel()
    assert not res.is_ack()


def test_copy_request_keeps_id_and_clone_gets_new_one():
    req = make_invite(body="payload")
    copied = copy_request(req)
    assert copied.message_id == req.message_id
    assert str(copied) == str(req)
    cloned = req.clone()
    assert cloned.message_id != req.message_id
    assert str(cloned) == str(req)
    cloned.via_hop().params.add("branch", "changed")
    assert req.via_hop().params.get("branch") != "changed"


def test_copy_response_keeps_previous():
    res = Response(200, "OK", headers=[CSeqHeader(1, RequestMethod.INVITE)])
    provisional = Response(180, "Ringing")
    res.previous = [provisional]
    copied = copy_response(res)
    assert copied.message_id == res.message_id
    assert copied.previous == [provisional]
    assert str(copied) == str(res)


def test_copy_headers_clones():
    req = make_invite()
    target = Request(RequestMethod.BYE, SipUri(host="example.com"))
    copy_headers("From", req, target)
    assert target.from_header() == req.from_header()
    assert target.from_header() is not req.from_header()


def test_with_fields_and_short():
    req = make_invite()
    assert req.with_fields({"k": "v"}) is req
    assert req.fields["k"] == "v"
    assert req.fields["request_id"] == req.message_id
    assert "INVITE" in req.short()
    res = Response(486, "Busy Here", headers=[CSeqHeader(2, RequestMethod.INVITE)])
    assert "Busy Here" in res.short()
    assert res.fields["response_id"] == res.message_id


def test_generate_branch_and_ids_are_unique():
    branches = {generate_branch() for _ in range(50)}
    assert len(branches) == 50
    assert all(b.startswith(RFC3261_BRANCH_MAGIC_COOKIE) for b in branches)
    assert next_message_id() != next_message_id()


def test_transport_is_abstract():
    with pytest.raises(TypeError):
        Transport()


def test_request_method_in_start_line():
    req = Request(RequestMethod.CANCEL, SipUri(host="example.com", user="bob"), sip_version="SIP/2.0")
    assert req.start_line() == "CANCEL sip:bob@example.com SIP/2.0"
    assert req.is_cancel()
    assert not req.is_ack()