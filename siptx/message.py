"""SIP requests and responses with the header model the transaction layer relies on."""

from __future__ import annotations

import abc
import enum
import queue
import secrets
import string
import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

RFC3261_BRANCH_MAGIC_COOKIE = "z9hG4bK"
DEFAULT_PROTOCOL = "UDP"
DEFAULT_SIP_VERSION = "SIP/2.0"
MTU = 1500

MessageID = str
TransactionKey = str
Fields = Dict[str, Any]

_BRANCH_ALPHABET = string.ascii_letters + string.digits
_BRANCH_RANDOM_LENGTH = 16


class RequestMethod(str, enum.Enum):
    """SIP request methods."""

    INVITE = "INVITE"
    ACK = "ACK"
    CANCEL = "CANCEL"
    BYE = "BYE"
    REGISTER = "REGISTER"
    OPTIONS = "OPTIONS"
    SUBSCRIBE = "SUBSCRIBE"
    NOTIFY = "NOTIFY"
    REFER = "REFER"
    INFO = "INFO"
    MESSAGE = "MESSAGE"
    PRACK = "PRACK"
    UPDATE = "UPDATE"
    PUBLISH = "PUBLISH"

    def __str__(self) -> str:
        return self.value


def next_message_id() -> MessageID:
    """Return a new unique message identifier."""
    return str(uuid.uuid4())


def generate_branch() -> str:
    """Return a new RFC 3261 branch value starting with the magic cookie."""
    suffix = "".join(secrets.choice(_BRANCH_ALPHABET) for _ in range(_BRANCH_RANDOM_LENGTH))
    return f"{RFC3261_BRANCH_MAGIC_COOKIE}.{suffix}"


def default_port(protocol: str) -> int:
    """Default port of a transport protocol."""
    return {
        "tls": 5061,
        "tcp": 5060,
        "udp": 5060,
        "ws": 80,
        "wss": 443,
    }.get((protocol or "").lower(), 5060)


def _format_fields(fields: Mapping[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in sorted(fields.items()))


class Params:
    """Ordered parameters; a value of None marks a parameter given without a value."""

    def __init__(self, items: Optional[Mapping[str, Optional[str]]] = None) -> None:
        self._items: Dict[str, Optional[str]] = {}
        for name, value in (items or {}).items():
            self.add(name, value)

    def get(self, name: str) -> Optional[str]:
        """Value of ``name``, or None if it is missing or has no value."""
        return self._items.get(name)

    def add(self, name: str, value: Optional[str] = None) -> "Params":
        """Set ``name`` to ``value``, keeping its position if already present."""
        self._items[name] = None if value is None else str(value)
        return self

    def has(self, name: str) -> bool:
        return name in self._items

    def clone(self) -> "Params":
        return Params(self._items)

    def _render(self, prefix: str, separator: str) -> str:
        if not self._items:
            return ""
        parts = [name if value is None else f"{name}={value}" for name, value in self._items.items()]
        return prefix + separator.join(parts)

    def __contains__(self, name: object) -> bool:
        return name in self._items

    def __iter__(self) -> Iterator[Tuple[str, Optional[str]]]:
        return iter(list(self._items.items()))

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Params):
            return NotImplemented
        return list(self._items.items()) == list(other._items.items())

    def __str__(self) -> str:
        return self._render(";", ";")

    def __repr__(self) -> str:
        return f"Params({self._items!r})"


@dataclass
class SipUri:
    """A sip: or sips: URI."""

    host: str
    user: str = ""
    port: Optional[int] = None
    encrypted: bool = False
    uri_params: Params = field(default_factory=Params)
    headers: Params = field(default_factory=Params)

    def clone(self) -> "SipUri":
        return SipUri(
            host=self.host,
            user=self.user,
            port=self.port,
            encrypted=self.encrypted,
            uri_params=self.uri_params.clone(),
            headers=self.headers.clone(),
        )

    def __str__(self) -> str:
        scheme = "sips" if self.encrypted else "sip"
        user = f"{self.user}@" if self.user else ""
        port = f":{self.port}" if self.port is not None else ""
        return (
            f"{scheme}:{user}{self.host}{port}"
            f"{self.uri_params._render(';', ';')}{self.headers._render('?', '&')}"
        )


@dataclass
class ViaHop:
    """One hop of a Via header."""

    host: str
    port: Optional[int] = None
    transport: str = DEFAULT_PROTOCOL
    protocol_name: str = "SIP"
    protocol_version: str = "2.0"
    params: Params = field(default_factory=Params)

    def clone(self) -> "ViaHop":
        return ViaHop(
            host=self.host,
            port=self.port,
            transport=self.transport,
            protocol_name=self.protocol_name,
            protocol_version=self.protocol_version,
            params=self.params.clone(),
        )

    def __str__(self) -> str:
        port = f":{self.port}" if self.port is not None else ""
        return (
            f"{self.protocol_name}/{self.protocol_version}/{self.transport} "
            f"{self.host}{port}{self.params}"
        )


@dataclass
class ViaHeader:
    """A Via header holding one or more hops."""

    hops: List[ViaHop] = field(default_factory=list)
    name: ClassVar[str] = "Via"

    def clone(self) -> "ViaHeader":
        return ViaHeader([hop.clone() for hop in self.hops])

    def __str__(self) -> str:
        return f"{self.name}: " + ", ".join(str(hop) for hop in self.hops)


@dataclass
class CSeqHeader:
    """The CSeq header."""

    seq_no: int
    method_name: Union[RequestMethod, str]
    name: ClassVar[str] = "CSeq"

    def clone(self) -> "CSeqHeader":
        return CSeqHeader(self.seq_no, self.method_name)

    def __str__(self) -> str:
        return f"{self.name}: {self.seq_no} {self.method_name}"


@dataclass
class AddressHeader:
    """A name-addr header such as From, To or Contact."""

    name: str
    address: SipUri
    display_name: str = ""
    params: Params = field(default_factory=Params)

    def clone(self) -> "AddressHeader":
        return AddressHeader(self.name, self.address.clone(), self.display_name, self.params.clone())

    def __str__(self) -> str:
        display = f'"{self.display_name}" ' if self.display_name else ""
        return f"{self.name}: {display}<{self.address}>{self.params}"


@dataclass
class RouteHeader:
    """A Route or Record-Route header."""

    addresses: List[SipUri] = field(default_factory=list)
    name: str = "Route"

    def clone(self) -> "RouteHeader":
        return RouteHeader([address.clone() for address in self.addresses], self.name)

    def __str__(self) -> str:
        return f"{self.name}: " + ", ".join(f"<{address}>" for address in self.addresses)


@dataclass
class GenericHeader:
    """Any header carried as plain text, e.g. Call-ID or Max-Forwards."""

    name: str
    contents: str

    def clone(self) -> "GenericHeader":
        return GenericHeader(self.name, self.contents)

    def __str__(self) -> str:
        return f"{self.name}: {self.contents}"


Header = Union[ViaHeader, CSeqHeader, AddressHeader, RouteHeader, GenericHeader]


class Transport(abc.ABC):
    """What the transaction layer needs from a transport."""

    @property
    @abc.abstractmethod
    def messages(self) -> "queue.Queue[Message]":
        """Queue of incoming messages."""

    @abc.abstractmethod
    def send(self, msg: "Message") -> None:
        """Send a message; raises on failure."""

    @abc.abstractmethod
    def is_reliable(self, network: str) -> bool:
        """Whether the network retransmits on its own."""

    @abc.abstractmethod
    def is_streamed(self, network: str) -> bool:
        """Whether the network is stream oriented."""


class Message(abc.ABC):
    """Common part of SIP requests and responses."""

    def __init__(
        self,
        sip_version: str,
        headers: Optional[Iterable[Header]],
        body: str,
        fields: Optional[Mapping[str, Any]],
        message_id: Optional[MessageID],
        id_field: str,
    ) -> None:
        self.message_id: MessageID = message_id or next_message_id()
        self.sip_version = sip_version
        self.headers: List[Header] = list(headers or [])
        self.body = body
        self._fields: Fields = dict(fields or {})
        self._fields[id_field] = self.message_id
        self._transport = ""
        self._source = ""
        self._destination = ""

    @abc.abstractmethod
    def start_line(self) -> str:
        """First line of the message."""

    @abc.abstractmethod
    def clone(self) -> "Message":
        """Deep copy with a new message id."""

    @abc.abstractmethod
    def short(self) -> str:
        """One-line description."""

    @abc.abstractmethod
    def is_ack(self) -> bool:
        """Whether the message belongs to an ACK."""

    @abc.abstractmethod
    def is_cancel(self) -> bool:
        """Whether the message belongs to a CANCEL."""

    def _compute_transport(self) -> str:
        return self._transport

    def _compute_source(self) -> str:
        return self._source

    def _compute_destination(self) -> str:
        return self._destination

    @property
    def transport(self) -> str:
        return self._compute_transport()

    @transport.setter
    def transport(self, value: str) -> None:
        self._transport = value

    @property
    def source(self) -> str:
        return self._compute_source()

    @source.setter
    def source(self, value: str) -> None:
        self._source = value

    @property
    def destination(self) -> str:
        return self._compute_destination()

    @destination.setter
    def destination(self, value: str) -> None:
        self._destination = value

    @property
    def fields(self) -> Fields:
        """Log fields of the message, including its addressing."""
        return {
            **self._fields,
            "transport": self.transport,
            "source": self.source,
            "destination": self.destination,
        }

    def with_fields(self, fields: Mapping[str, Any]) -> "Message":
        """Merge ``fields`` into the log fields and return the message itself."""
        self._fields.update(fields)
        return self

    def get_headers(self, name: str) -> List[Header]:
        """All headers called ``name``, compared case-insensitively."""
        wanted = name.lower()
        return [header for header in self.headers if header.name.lower() == wanted]

    def append_header(self, header: Header) -> None:
        self.headers.append(header)

    def prepend_header(self, header: Header) -> None:
        self.headers.insert(0, header)

    def _replace_headers(self, name: str, replacement: Iterable[Header]) -> None:
        wanted = name.lower()
        self.headers = [header for header in self.headers if header.name.lower() != wanted]
        self.headers.extend(replacement)

    def _first(self, name: str, kind: type) -> Any:
        for header in self.get_headers(name):
            if isinstance(header, kind):
                return header
        return None

    def via_hop(self) -> Optional[ViaHop]:
        """Top hop of the first Via header."""
        via = self._first("Via", ViaHeader)
        if via is None or not via.hops:
            return None
        return via.hops[0]

    def cseq(self) -> Optional[CSeqHeader]:
        return self._first("CSeq", CSeqHeader)

    def call_id(self) -> Optional[str]:
        header = self._first("Call-ID", GenericHeader)
        return None if header is None else header.contents

    def from_header(self) -> Optional[AddressHeader]:
        return self._first("From", AddressHeader)

    def contact(self) -> Optional[AddressHeader]:
        return self._first("Contact", AddressHeader)

    def set_body(self, body: str, set_content_length: bool = True) -> None:
        """Replace the body, optionally keeping Content-Length in step with it."""
        self.body = body
        if set_content_length:
            length = GenericHeader("Content-Length", str(len(body.encode("utf-8"))))
            if self.get_headers("Content-Length"):
                self._replace_headers("Content-Length", [length])
            else:
                self.append_header(length)

    def _via_address(self, hop: ViaHop) -> str:
        host = hop.host
        port = hop.port if hop.port is not None else default_port(self.transport)
        received = hop.params.get("received")
        if received:
            host = received
        rport = hop.params.get("rport")
        if rport:
            try:
                port = int(rport) & 0xFFFF
            except ValueError:
                pass
        return f"{host}:{port}"

    def __str__(self) -> str:
        headers = "\r\n".join(str(header) for header in self.headers)
        return f"{self.start_line()}\r\n{headers}\r\n\r\n{self.body}"


class Request(Message):
    """A SIP request."""

    def __init__(
        self,
        method: Union[RequestMethod, str],
        recipient: SipUri,
        sip_version: str = DEFAULT_SIP_VERSION,
        headers: Optional[Iterable[Header]] = None,
        body: str = "",
        fields: Optional[Mapping[str, Any]] = None,
        message_id: Optional[MessageID] = None,
    ) -> None:
        super().__init__(sip_version, headers, body, fields, message_id, "request_id")
        self.method = method
        self.recipient = recipient

    def start_line(self) -> str:
        return f"{self.method} {self.recipient} {self.sip_version}"

    def is_invite(self) -> bool:
        return self.method == RequestMethod.INVITE

    def is_ack(self) -> bool:
        return self.method == RequestMethod.ACK

    def is_cancel(self) -> bool:
        return self.method == RequestMethod.CANCEL

    def clone(self) -> "Request":
        return _clone_request(self, None, None)

    def short(self) -> str:
        fields: Fields = {
            "method": self.method,
            "recipient": self.recipient,
            "transport": self.transport,
            "source": self.source,
            "destination": self.destination,
        }
        cseq = self.cseq()
        if cseq is not None:
            fields["sequence"] = cseq.seq_no
        return f"Request<{_format_fields({**self.fields, **fields})}>"

    def _first_route_address(self) -> Optional[SipUri]:
        routes = self.get_headers("Route")
        if routes and isinstance(routes[0], RouteHeader) and routes[0].addresses:
            return routes[0].addresses[0]
        return None

    def _compute_transport(self) -> str:
        if self._transport:
            return self._transport.upper()
        hop = self.via_hop()
        tp = hop.transport if hop is not None and hop.transport else DEFAULT_PROTOCOL
        uri = self._first_route_address() or self.recipient
        if isinstance(uri, SipUri):
            value = uri.uri_params.get("transport")
            if value:
                tp = value.upper()
            if uri.encrypted:
                if tp == "TCP":
                    tp = "TLS"
                elif tp == "WS":
                    tp = "WSS"
        if tp == "UDP" and len(str(self)) > MTU - 200:
            tp = "TCP"
        return tp

    def _compute_source(self) -> str:
        if self._source:
            return self._source
        hop = self.via_hop()
        if hop is None:
            return ""
        return self._via_address(hop)

    def _compute_destination(self) -> str:
        if self._destination:
            return self._destination
        uri = self._first_route_address()
        if uri is None:
            if not isinstance(self.recipient, SipUri):
                return ""
            uri = self.recipient
        port = uri.port if uri.port is not None else default_port(self.transport)
        return f"{uri.host}:{port}"


class Response(Message):
    """A SIP response."""

    def __init__(
        self,
        status_code: int,
        reason: str = "",
        sip_version: str = DEFAULT_SIP_VERSION,
        headers: Optional[Iterable[Header]] = None,
        body: str = "",
        fields: Optional[Mapping[str, Any]] = None,
        message_id: Optional[MessageID] = None,
    ) -> None:
        super().__init__(sip_version, headers, body, fields, message_id, "response_id")
        self.status_code = status_code
        self.reason = reason
        self.previous: List[Response] = []

    def start_line(self) -> str:
        return f"{self.sip_version} {self.status_code} {self.reason}"

    def is_provisional(self) -> bool:
        return self.status_code < 200

    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    def is_redirection(self) -> bool:
        return 300 <= self.status_code < 400

    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500

    def is_server_error(self) -> bool:
        return 500 <= self.status_code < 600

    def is_global_error(self) -> bool:
        return self.status_code >= 600

    def is_ack(self) -> bool:
        cseq = self.cseq()
        return cseq is not None and cseq.method_name == RequestMethod.ACK

    def is_cancel(self) -> bool:
        cseq = self.cseq()
        return cseq is not None and cseq.method_name == RequestMethod.CANCEL

    def clone(self) -> "Response":
        return _clone_response(self, None, None)

    def short(self) -> str:
        fields: Fields = {
            "status": self.status_code,
            "reason": self.reason,
            "transport": self.transport,
            "source": self.source,
            "destination": self.destination,
        }
        cseq = self.cseq()
        if cseq is not None:
            fields["method"] = cseq.method_name
            fields["sequence"] = cseq.seq_no
        return f"Response<{_format_fields({**self.fields, **fields})}>"

    def _compute_transport(self) -> str:
        if self._transport:
            return self._transport.upper()
        hop = self.via_hop()
        if hop is not None and hop.transport:
            return hop.transport
        return DEFAULT_PROTOCOL

    def _compute_destination(self) -> str:
        if self._destination:
            return self._destination
        hop = self.via_hop()
        if hop is None:
            return ""
        return self._via_address(hop)


def copy_headers(name: str, source: Message, target: Message) -> None:
    """Append clones of every ``name`` header of ``source`` to ``target``."""
    for header in source.get_headers(name):
        target.append_header(header.clone())


def new_ack_request(
    ack_id: Optional[MessageID],
    invite_request: Request,
    invite_response: Response,
    body: str = "",
    fields: Optional[Mapping[str, Any]] = None,
) -> Request:
    """Build the ACK for a final response to an INVITE (RFC 3261 13.2.2.4)."""
    recipient = invite_request.recipient
    contact = invite_response.contact()
    if contact is not None and "transport=ws" not in str(recipient).lower():
        recipient = contact.address

    ack = Request(
        RequestMethod.ACK,
        recipient,
        sip_version=invite_request.sip_version,
        body=body,
        fields={
            **invite_request.fields,
            **(fields or {}),
            "invite_request_id": invite_request.message_id,
            "invite_response_id": invite_response.message_id,
        },
        message_id=ack_id,
    )

    copy_headers("Via", invite_request, ack)
    if invite_response.is_success():
        hop = ack.via_hop()
        if hop is not None:
            hop.params.add("branch", generate_branch())

    if invite_request.get_headers("Route"):
        copy_headers("Route", invite_request, ack)
    else:
        for header in reversed(invite_response.get_headers("Record-Route")):
            if isinstance(header, RouteHeader):
                addresses = [address.clone() for address in reversed(header.addresses)]
                ack.append_header(RouteHeader(addresses))

    ack.append_header(GenericHeader("Max-Forwards", "70"))
    copy_headers("From", invite_request, ack)
    copy_headers("To", invite_response, ack)
    copy_headers("Call-ID", invite_request, ack)
    copy_headers("CSeq", invite_request, ack)
    cseq = ack.cseq()
    if cseq is not None:
        cseq.method_name = RequestMethod.ACK

    ack.set_body("", True)
    ack.transport = invite_request.transport
    ack.source = invite_request.source
    ack.destination = invite_request.destination
    return ack


def new_cancel_request(
    cancel_id: Optional[MessageID],
    request: Request,
    fields: Optional[Mapping[str, Any]] = None,
) -> Request:
    """Build a CANCEL for ``request``."""
    cancel = Request(
        RequestMethod.CANCEL,
        request.recipient,
        sip_version=request.sip_version,
        fields={
            **request.fields,
            **(fields or {}),
            "cancelling_request_id": request.message_id,
        },
        message_id=cancel_id,
    )

    hop = request.via_hop()
    if hop is not None:
        cancel.append_header(ViaHeader([hop.clone()]))
    copy_headers("Route", request, cancel)
    cancel.append_header(GenericHeader("Max-Forwards", "70"))
    copy_headers("From", request, cancel)
    copy_headers("To", request, cancel)
    copy_headers("Call-ID", request, cancel)
    copy_headers("CSeq", request, cancel)
    cseq = cancel.cseq()
    if cseq is not None:
        cseq.method_name = RequestMethod.CANCEL

    cancel.set_body("", True)
    cancel.transport = request.transport
    cancel.source = request.source
    cancel.destination = request.destination
    return cancel


def new_response_from_request(
    res_id: Optional[MessageID],
    request: Request,
    status_code: int,
    reason: str,
    body: str = "",
) -> Response:
    """Build a response to ``request`` (RFC 3261 8.2.6)."""
    response = Response(
        status_code,
        reason,
        sip_version=request.sip_version,
        fields=request.fields,
        message_id=res_id,
    )
    for name in ("Record-Route", "Via", "From", "To", "Call-ID", "CSeq"):
        copy_headers(name, request, response)
    if status_code == 100:
        copy_headers("Timestamp", request, response)

    response.set_body(body, True)
    response.transport = request.transport
    response.source = request.destination
    response.destination = request.source
    return response


def _clone_request(
    request: Request, message_id: Optional[MessageID], fields: Optional[Mapping[str, Any]]
) -> Request:
    new_fields = request.fields
    if fields is not None:
        new_fields = {**new_fields, **fields}
    clone = Request(
        request.method,
        request.recipient.clone(),
        sip_version=request.sip_version,
        headers=[header.clone() for header in request.headers],
        body=request.body,
        fields=new_fields,
        message_id=message_id,
    )
    clone.transport = request.transport
    clone.source = request.source
    clone.destination = request.destination
    return clone


def _clone_response(
    response: Response, message_id: Optional[MessageID], fields: Optional[Mapping[str, Any]]
) -> Response:
    new_fields = response.fields
    if fields is not None:
        new_fields = {**new_fields, **fields}
    clone = Response(
        response.status_code,
        response.reason,
        sip_version=response.sip_version,
        headers=[header.clone() for header in response.headers],
        body=response.body,
        fields=new_fields,
        message_id=message_id,
    )
    clone.previous = response.previous
    clone.transport = response.transport
    clone.source = response.source
    clone.destination = response.destination
    return clone


def copy_request(request: Request) -> Request:
    """Deep copy of ``request`` keeping its message id."""
    return _clone_request(request, request.message_id, None)


def copy_response(response: Response) -> Response:
    """Deep copy of ``response`` keeping its message id."""
    return _clone_response(response, response.message_id, None)