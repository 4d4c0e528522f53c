"""Transaction keys, timer values, errors and the state machine shared by SIP transactions."""

from __future__ import annotations

import abc
import logging
import queue
import threading
from typing import Any, Callable, Dict, Hashable, Mapping, Optional, Tuple, Union

from .message import (
    RFC3261_BRANCH_MAGIC_COOKIE,
    Message,
    Request,
    RequestMethod,
    Response,
    Transport,
    default_port,
)

TxKey = str

# RFC 3261 timer values, in seconds.
T1 = 0.5
T2 = 4.0
T4 = 5.0
TIMER_A = T1
TIMER_B = 64 * T1
TIMER_D = 32.0
TIMER_E = T1
TIMER_F = 64 * T1
TIMER_G = T1
TIMER_H = 64 * T1
TIMER_I = T4
TIMER_J = 64 * T1
TIMER_K = T4
TIMER_1XX = 0.2
TIMER_L = 64 * T1
TIMER_M = 64 * T1

_KEY_SEPARATOR = "__"
_CHANNEL_SIZE = 64
_DELIVERY_POLL = 0.05


def _format_fields(fields: Mapping[str, Any]) -> str:
    return " ".join(f"{name}={value}" for name, value in sorted(fields.items()))


class TxError(Exception):
    """Failure of a transaction, carrying the transaction key and identity."""

    terminated = False
    timeout = False
    transport = False

    def __init__(self, err: Union[str, BaseException], key: TxKey = "", tx_ptr: str = "") -> None:
        super().__init__(str(err))
        self.err = err
        self.key = key
        self.tx_ptr = tx_ptr
        if isinstance(err, BaseException):
            self.__cause__ = err

    def __str__(self) -> str:
        fields = {
            "transaction_key": self.key or "???",
            "transaction_ptr": self.tx_ptr or "???",
        }
        return f"{type(self).__name__}<{_format_fields(fields)}>: {self.err}"


class TxTerminatedError(TxError):
    """The transaction was terminated."""

    terminated = True


class TxTimeoutError(TxError):
    """The transaction timed out."""

    timeout = True


class TxTransportError(TxError):
    """The transport failed to deliver a transaction message."""

    transport = True


class TxKeyError(ValueError):
    """A message cannot be matched to a transaction key."""


Action = Callable[[], Optional[Hashable]]
Outcome = Tuple[Hashable, Optional[Action]]


class StateMachine:
    """Finite state machine whose actions may produce a follow-up input.

    ``states`` maps every state to the outcomes of the inputs it handles;
    an outcome is the next state and an optional action. An action returns
    the next input to process, or None to stop.
    """

    def __init__(self, initial: Hashable, states: Mapping[Hashable, Mapping[Hashable, Outcome]]) -> None:
        if initial not in states:
            raise ValueError(f"initial state {initial!r} is not defined")
        for state, outcomes in states.items():
            for event, (target, _action) in outcomes.items():
                if target not in states:
                    raise ValueError(
                        f"state {state!r} leads to undefined state {target!r} on input {event!r}"
                    )
        self._states: Dict[Hashable, Dict[Hashable, Outcome]] = {
            state: dict(outcomes) for state, outcomes in states.items()
        }
        self._current = initial
        self._lock = threading.RLock()

    @property
    def state(self) -> Hashable:
        """The current state."""
        return self._current

    def spin(self, event: Optional[Hashable]) -> None:
        """Feed ``event`` and every input the actions produce in turn.

        Raises ValueError if the current state has no outcome for an input.
        """
        with self._lock:
            while event is not None:
                outcomes = self._states[self._current]
                try:
                    target, action = outcomes[event]
                except KeyError:
                    raise ValueError(
                        f"state {self._current!r} has no outcome for input {event!r}"
                    ) from None
                self._current = target
                event = action() if action is not None else None


class CommonTx(abc.ABC):
    """State and plumbing shared by client and server transactions."""

    log_prefix = "transaction.Tx"

    def __init__(self, origin: Request, key: TxKey, transport: Transport) -> None:
        self._key = key
        self._tpl = transport
        self._ptr = f"{id(self):#x}"
        tx_fields = {"transaction_ptr": self._ptr, "transaction_key": key}
        self._log_fields: Dict[str, Any] = {**origin.fields, **tx_fields}
        self._origin: Request = origin.with_fields(tx_fields)  # type: ignore[assignment]
        self._lock = threading.RLock()
        self._fsm: Optional[StateMachine] = None
        self._last_response: Optional[Response] = None
        self._last_error: Optional[BaseException] = None
        self._errors: "queue.Queue[Optional[BaseException]]" = queue.Queue(maxsize=_CHANNEL_SIZE)
        self._done = threading.Event()
        self._reliable = transport.is_reliable(origin.transport)
        self.log = logging.LoggerAdapter(logging.getLogger(f"siptx.{self.log_prefix}"), self._log_fields)

    @abc.abstractmethod
    def init(self) -> None:
        """Start the transaction."""

    @abc.abstractmethod
    def receive(self, msg: Message) -> None:
        """Handle a message arriving from the transport."""

    @abc.abstractmethod
    def terminate(self) -> None:
        """Stop the transaction at once."""

    @property
    def key(self) -> TxKey:
        return self._key

    @property
    def origin(self) -> Request:
        return self._origin

    @property
    def transport(self) -> Transport:
        return self._tpl

    @property
    def errors(self) -> "queue.Queue[Optional[BaseException]]":
        """Errors of the transaction; None is put in when it is done."""
        return self._errors

    @property
    def done(self) -> threading.Event:
        """Set once the transaction has finished."""
        return self._done

    @property
    def fields(self) -> Dict[str, Any]:
        return dict(self._log_fields)

    @property
    def state(self) -> Optional[Hashable]:
        """Current state of the state machine, None before initialisation."""
        return None if self._fsm is None else self._fsm.state

    def _spin(self, event: Hashable) -> None:
        if self._fsm is None:
            raise RuntimeError(f"{self} is not initialised")
        self._fsm.spin(event)

    def _spin_logged(self, event: Hashable) -> None:
        try:
            self._spin(event)
        except (ValueError, RuntimeError) as exc:
            self.log.error("spin FSM to %s failed: %s", event, exc)

    def _deliver(self, channel: "queue.Queue[Any]", item: Any) -> bool:
        """Put ``item`` into ``channel`` unless the transaction finishes first."""
        while not self._done.is_set():
            try:
                channel.put(item, timeout=_DELIVERY_POLL)
            except queue.Full:
                continue
            return True
        return False

    def _send_error(self, err: BaseException) -> bool:
        return self._deliver(self._errors, err)

    def _close(self, *channels: "queue.Queue[Any]") -> bool:
        """Mark the transaction done and wake readers of its channels with None."""
        with self._lock:
            if self._done.is_set():
                return False
            self._done.set()
        for channel in (self._errors, *channels):
            try:
                channel.put_nowait(None)
            except queue.Full:
                pass
        self.log.debug("transaction done")
        return True

    def __str__(self) -> str:
        return f"{self.log_prefix}<{_format_fields({**self._log_fields, 'key': self._key})}>"


def _normalized_method(method: Union[RequestMethod, str]) -> Union[RequestMethod, str]:
    if method in (RequestMethod.ACK, RequestMethod.CANCEL):
        return RequestMethod.INVITE
    return method


def _rfc3261_branch(branch: Optional[str]) -> bool:
    return bool(
        branch
        and branch.startswith(RFC3261_BRANCH_MAGIC_COOKIE)
        and branch[len(RFC3261_BRANCH_MAGIC_COOKIE):]
    )


def make_server_tx_key(msg: Message) -> TxKey:
    """Key matching requests and responses to a server transaction (RFC 3261 17.2.3)."""
    hop = msg.via_hop()
    if hop is None:
        raise TxKeyError(f"'Via' header not found or empty in message '{msg.short()}'")
    cseq = msg.cseq()
    if cseq is None:
        raise TxKeyError(f"'CSeq' header not found in message '{msg.short()}'")
    method = _normalized_method(cseq.method_name)

    branch = hop.params.get("branch")
    if _rfc3261_branch(branch):
        port = hop.port if hop.port is not None else default_port(hop.transport)
        return _KEY_SEPARATOR.join([str(branch), hop.host, str(port), str(method)])

    from_header = msg.from_header()
    if from_header is None:
        raise TxKeyError(f"'From' header not found in message '{msg.short()}'")
    if not from_header.params.has("tag"):
        raise TxKeyError(f"'tag' param not found in 'From' header of message '{msg.short()}'")
    call_id = msg.call_id()
    if call_id is None:
        raise TxKeyError(f"'Call-ID' header not found in message '{msg.short()}'")
    return _KEY_SEPARATOR.join(
        [
            from_header.params.get("tag") or "",
            call_id,
            str(method),
            str(cseq.seq_no),
            str(hop),
        ]
    )


def make_client_tx_key(msg: Message) -> TxKey:
    """Key matching responses to a client transaction (RFC 3261 17.1.3)."""
    cseq = msg.cseq()
    if cseq is None:
        raise TxKeyError(f"'CSeq' header not found in message '{msg.short()}'")
    method = _normalized_method(cseq.method_name)

    hop = msg.via_hop()
    if hop is None:
        raise TxKeyError(f"'Via' header not found or empty in message '{msg.short()}'")
    branch = hop.params.get("branch")
    if not _rfc3261_branch(branch):
        raise TxKeyError(f"'branch' not found or empty in 'Via' header of message '{msg.short()}'")
    return _KEY_SEPARATOR.join([str(branch), str(method)])