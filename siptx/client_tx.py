"""Client transactions (RFC 3261 17.1) for INVITE and non-INVITE requests."""

from __future__ import annotations

import datetime
import enum
import queue
import threading
from typing import Callable, Dict, Hashable, Optional, Union

from . import timing
from .message import (
    Message,
    Params,
    Request,
    Response,
    Transport,
    ViaHeader,
    ViaHop,
    generate_branch,
    new_ack_request,
    new_cancel_request,
)
from .transaction import (
    T2,
    TIMER_A,
    TIMER_B,
    TIMER_D,
    TIMER_M,
    CommonTx,
    StateMachine,
    TxTimeoutError,
    TxTransportError,
    make_client_tx_key,
)

_RESPONSES_SIZE = 64

Timer = Union[timing.RealTimer, timing.MockTimer]


class _State(enum.Enum):
    CALLING = "calling"
    PROCEEDING = "proceeding"
    COMPLETED = "completed"
    ACCEPTED = "accepted"
    TERMINATED = "terminated"


class _Input(enum.Enum):
    PROVISIONAL = "1xx"
    SUCCESS = "2xx"
    FAILURE = "300+"
    TIMER_A = "timer_a"
    TIMER_B = "timer_b"
    TIMER_D = "timer_d"
    TIMER_M = "timer_m"
    TRANSPORT_ERROR = "transport_err"
    DELETE = "delete"
    CANCEL = "cancel"
    CANCELED = "canceled"


def prepare_client_request(origin: Request) -> Request:
    """Make sure the top Via hop of ``origin`` carries a branch, adding a Via if needed."""
    hop = origin.via_hop()
    if hop is not None:
        if not hop.params.has("branch"):
            hop.params.add("branch", generate_branch())
    else:
        hop = ViaHop(host="", params=Params().add("branch", generate_branch()))
        origin.prepend_header(ViaHeader([hop]))
    return origin


class ClientTx(CommonTx):
    """A client transaction: sends a request and passes up the responses matched to it."""

    log_prefix = "transaction.ClientTx"

    def __init__(self, origin: Request, transport: Transport) -> None:
        origin = prepare_client_request(origin)
        key = make_client_tx_key(origin)
        super().__init__(origin, key, transport)
        self._responses: "queue.Queue[Optional[Response]]" = queue.Queue(maxsize=_RESPONSES_SIZE)
        self._timer_a_time = 0.0
        self._timer_d_time = 0.0
        self._timer_a: Optional[Timer] = None
        self._timer_b: Optional[Timer] = None
        self._timer_d: Optional[Timer] = None
        self._timer_m: Optional[Timer] = None

    @property
    def responses(self) -> "queue.Queue[Optional[Response]]":
        """Responses passed up by the transaction; None is put in when it is done."""
        return self._responses

    def init(self) -> None:
        """Send the request and start the timers; re-raises a failure of the transport."""
        self._init_fsm()
        try:
            self._tpl.send(self.origin)
        except Exception as exc:
            with self._lock:
                self._last_error = exc
            self._spin_logged(_Input.TRANSPORT_ERROR)
            raise

        with self._lock:
            if self._reliable:
                self._timer_d_time = 0.0
            else:
                # RFC 3261 17.1.1.2: timer A only runs over unreliable transports.
                self.log.debug("timer_a set to %s", TIMER_A)
                self._timer_a_time = TIMER_A
                self._timer_a = self._start_timer(TIMER_A, _Input.TIMER_A)
                self._timer_d_time = TIMER_D
            self.log.debug("timer_b set to %s", TIMER_B)
            self._timer_b = self._start_timer(TIMER_B, _Input.TIMER_B)

    def receive(self, msg: Message) -> None:
        """Feed a response matched to this transaction."""
        if not isinstance(msg, Response):
            raise TypeError(f"{self} received unexpected {msg.short()}")
        msg.with_fields({"request_id": self.origin.message_id})

        if msg.is_cancel():
            event = _Input.CANCELED
        else:
            with self._lock:
                self._last_response = msg
            if msg.is_provisional():
                event = _Input.PROVISIONAL
            elif msg.is_success():
                event = _Input.SUCCESS
            else:
                event = _Input.FAILURE
        self._spin(event)

    def cancel(self) -> None:
        """Cancel the transaction; an INVITE is followed by a CANCEL request."""
        self._spin(_Input.CANCEL)

    def terminate(self) -> None:
        """Stop the transaction at once."""
        if self._done.is_set():
            return
        self._delete()

    # state machines

    def _init_fsm(self) -> None:
        if self.origin.is_invite():
            self._init_invite_fsm()
        else:
            self._init_non_invite_fsm()

    def _init_invite_fsm(self) -> None:
        self.log.debug("initialising INVITE transaction FSM")
        s, i = _State, _Input

        def trans_err_keep() -> None:
            self._act_trans_err()
            return None

        states: Dict[Hashable, Dict[Hashable, tuple]] = {
            s.CALLING: {
                i.PROVISIONAL: (s.PROCEEDING, self._act_invite_proceeding),
                i.SUCCESS: (s.ACCEPTED, self._act_passup_accept),
                i.FAILURE: (s.COMPLETED, self._act_invite_final),
                i.CANCEL: (s.CALLING, self._act_cancel),
                i.CANCELED: (s.CALLING, self._act_invite_canceled),
                i.TIMER_A: (s.CALLING, self._act_invite_resend),
                i.TIMER_B: (s.TERMINATED, self._act_timeout),
                i.TRANSPORT_ERROR: (s.TERMINATED, self._act_trans_err),
            },
            s.PROCEEDING: {
                i.PROVISIONAL: (s.PROCEEDING, self._act_passup),
                i.SUCCESS: (s.ACCEPTED, self._act_passup_accept),
                i.FAILURE: (s.COMPLETED, self._act_invite_final),
                i.CANCEL: (s.PROCEEDING, self._act_cancel_timeout),
                i.CANCELED: (s.PROCEEDING, self._act_invite_canceled),
                i.TIMER_A: (s.PROCEEDING, None),
                i.TIMER_B: (s.TERMINATED, self._act_timeout),
                i.TRANSPORT_ERROR: (s.TERMINATED, self._act_trans_err),
            },
            s.COMPLETED: {
                i.PROVISIONAL: (s.COMPLETED, None),
                i.SUCCESS: (s.COMPLETED, None),
                i.FAILURE: (s.COMPLETED, self._act_ack),
                i.CANCEL: (s.COMPLETED, None),
                i.CANCELED: (s.COMPLETED, None),
                i.TRANSPORT_ERROR: (s.TERMINATED, self._act_trans_err),
                i.TIMER_A: (s.COMPLETED, None),
                i.TIMER_B: (s.COMPLETED, None),
                i.TIMER_D: (s.TERMINATED, self._act_delete),
            },
            s.ACCEPTED: {
                i.PROVISIONAL: (s.ACCEPTED, None),
                i.SUCCESS: (s.ACCEPTED, self._act_passup),
                i.FAILURE: (s.ACCEPTED, None),
                i.CANCEL: (s.ACCEPTED, None),
                i.CANCELED: (s.ACCEPTED, None),
                i.TRANSPORT_ERROR: (s.ACCEPTED, trans_err_keep),
                i.TIMER_A: (s.ACCEPTED, None),
                i.TIMER_B: (s.ACCEPTED, None),
                i.TIMER_M: (s.TERMINATED, self._act_delete),
            },
            s.TERMINATED: {
                i.PROVISIONAL: (s.TERMINATED, None),
                i.SUCCESS: (s.TERMINATED, None),
                i.FAILURE: (s.TERMINATED, None),
                i.CANCEL: (s.TERMINATED, None),
                i.CANCELED: (s.TERMINATED, None),
                i.TIMER_A: (s.TERMINATED, None),
                i.TIMER_B: (s.TERMINATED, None),
                i.TIMER_D: (s.TERMINATED, None),
                i.TIMER_M: (s.TERMINATED, None),
                i.DELETE: (s.TERMINATED, self._act_delete),
                i.TRANSPORT_ERROR: (s.TERMINATED, None),
            },
        }
        self._fsm = StateMachine(s.CALLING, states)

    def _init_non_invite_fsm(self) -> None:
        self.log.debug("initialising non-INVITE transaction FSM")
        s, i = _State, _Input
        states: Dict[Hashable, Dict[Hashable, tuple]] = {
            s.CALLING: {
                i.PROVISIONAL: (s.PROCEEDING, self._act_passup),
                i.SUCCESS: (s.COMPLETED, self._act_non_invite_final),
                i.FAILURE: (s.COMPLETED, self._act_non_invite_final),
                i.TIMER_A: (s.CALLING, self._act_non_invite_resend),
                i.TIMER_B: (s.TERMINATED, self._act_timeout),
                i.TRANSPORT_ERROR: (s.TERMINATED, self._act_trans_err),
                i.CANCEL: (s.CALLING, None),
            },
            s.PROCEEDING: {
                i.PROVISIONAL: (s.PROCEEDING, self._act_passup),
                i.SUCCESS: (s.COMPLETED, self._act_non_invite_final),
                i.FAILURE: (s.COMPLETED, self._act_non_invite_final),
                i.TIMER_A: (s.PROCEEDING, self._act_non_invite_resend),
                i.TIMER_B: (s.TERMINATED, self._act_timeout),
                i.TRANSPORT_ERROR: (s.TERMINATED, self._act_trans_err),
                i.CANCEL: (s.PROCEEDING, None),
            },
            s.COMPLETED: {
                i.PROVISIONAL: (s.COMPLETED, None),
                i.SUCCESS: (s.COMPLETED, None),
                i.FAILURE: (s.COMPLETED, None),
                i.TIMER_A: (s.COMPLETED, None),
                i.TIMER_B: (s.COMPLETED, None),
                i.TIMER_D: (s.TERMINATED, self._act_delete),
                i.CANCEL: (s.COMPLETED, None),
            },
            s.TERMINATED: {
                i.PROVISIONAL: (s.TERMINATED, None),
                i.SUCCESS: (s.TERMINATED, None),
                i.FAILURE: (s.TERMINATED, None),
                i.TIMER_A: (s.TERMINATED, None),
                i.TIMER_B: (s.TERMINATED, None),
                i.TIMER_D: (s.TERMINATED, None),
                i.DELETE: (s.TERMINATED, self._act_delete),
                i.CANCEL: (s.TERMINATED, None),
            },
        }
        self._fsm = StateMachine(s.CALLING, states)

    # plumbing

    def _start_timer(self, duration: float, event: _Input) -> Timer:
        return timing.after_func(duration, lambda: self._on_timer(event))

    def _on_timer(self, event: _Input) -> None:
        if self._done.is_set():
            return
        self.log.debug("%s fired", event.value)
        self._spin_logged(event)

    def _spin_in_background(self, event: _Input) -> None:
        threading.Thread(target=self._spin_logged, args=(event,), daemon=True).start()

    def _stop_timers(self, *names: str) -> None:
        with self._lock:
            for name in names:
                timer = getattr(self, name)
                if timer is not None:
                    timer.stop()
                    setattr(self, name, None)

    def _send_or_fail(self, msg: Message, what: str) -> None:
        try:
            self._tpl.send(msg)
        except Exception as exc:
            self.log.error("send %s failed: %s", what, exc)
            with self._lock:
                self._last_error = exc
            self._spin_in_background(_Input.TRANSPORT_ERROR)

    def _send_cancel(self) -> None:
        if not self.origin.is_invite():
            return
        cancel = new_cancel_request(
            None, self.origin, {"sent_at": datetime.datetime.now(datetime.timezone.utc)}
        )
        self._send_or_fail(cancel, "CANCEL request")

    def _send_ack(self) -> None:
        with self._lock:
            last_response = self._last_response
        if last_response is None:
            return
        ack = new_ack_request(
            None,
            self.origin,
            last_response,
            "",
            {"sent_at": datetime.datetime.now(datetime.timezone.utc)},
        )
        self._send_or_fail(ack, "ACK request")

    def _resend(self) -> None:
        if self._done.is_set():
            return
        self.log.debug("resend origin request")
        with self._lock:
            self._last_error = None
        self._send_or_fail(self.origin, "origin request")

    def _pass_up(self) -> None:
        with self._lock:
            last_response = self._last_response
        if last_response is not None:
            self._deliver(self._responses, last_response)

    def _transport_error(self) -> None:
        with self._lock:
            last_error = self._last_error
        err = TxTransportError(
            f"transaction failed to send {self.origin.short()}: {last_error}",
            self.key,
            self._ptr,
        )
        if last_error is not None:
            err.__cause__ = last_error
        self._send_error(err)

    def _timeout_error(self) -> None:
        self._send_error(TxTimeoutError("transaction timed out", self.key, self._ptr))

    def _delete(self) -> None:
        if not self._close(self._responses):
            return
        self._stop_timers("_timer_a", "_timer_b", "_timer_d", "_timer_m")

    def _start_timer_d(self) -> None:
        with self._lock:
            self.log.debug("timer_d set to %s", self._timer_d_time)
            self._timer_d = self._start_timer(self._timer_d_time, _Input.TIMER_D)

    # actions

    def _act_invite_resend(self) -> None:
        self.log.debug("act_invite_resend")
        with self._lock:
            self._timer_a_time *= 2
            if self._timer_a is not None:
                self._timer_a.reset(self._timer_a_time)
        self._resend()
        return None

    def _act_invite_canceled(self) -> None:
        self.log.debug("act_invite_canceled")
        return None

    def _act_non_invite_resend(self) -> None:
        self.log.debug("act_non_invite_resend")
        with self._lock:
            # Non-INVITE retransmissions are capped at T2.
            self._timer_a_time = min(self._timer_a_time * 2, T2)
            if self._timer_a is not None:
                self._timer_a.reset(self._timer_a_time)
        self._resend()
        return None

    def _act_passup(self) -> None:
        self.log.debug("act_passup")
        self._pass_up()
        self._stop_timers("_timer_a")
        return None

    def _act_invite_proceeding(self) -> None:
        self.log.debug("act_invite_proceeding")
        self._pass_up()
        self._stop_timers("_timer_a", "_timer_b")
        return None

    def _act_invite_final(self) -> None:
        self.log.debug("act_invite_final")
        self._send_ack()
        self._pass_up()
        self._stop_timers("_timer_a", "_timer_b")
        self._start_timer_d()
        return None

    def _act_non_invite_final(self) -> None:
        self.log.debug("act_non_invite_final")
        self._pass_up()
        self._stop_timers("_timer_a", "_timer_b")
        self._start_timer_d()
        return None

    def _act_cancel(self) -> None:
        self.log.debug("act_cancel")
        self._send_cancel()
        return None

    def _act_cancel_timeout(self) -> None:
        self.log.debug("act_cancel_timeout")
        self._send_cancel()
        with self._lock:
            if self._timer_b is not None:
                self._timer_b.stop()
            self.log.debug("timer_b set to %s", TIMER_B)
            self._timer_b = self._start_timer(TIMER_B, _Input.TIMER_B)
        return None

    def _act_ack(self) -> None:
        self.log.debug("act_ack")
        self._send_ack()
        return None

    def _act_trans_err(self) -> _Input:
        self.log.debug("act_trans_err")
        self._transport_error()
        self._stop_timers("_timer_a")
        return _Input.DELETE

    def _act_timeout(self) -> _Input:
        self.log.debug("act_timeout")
        self._timeout_error()
        self._stop_timers("_timer_a")
        return _Input.DELETE

    def _act_passup_accept(self) -> None:
        self.log.debug("act_passup_accept")
        self._pass_up()
        self._stop_timers("_timer_a", "_timer_b")
        with self._lock:
            self.log.debug("timer_m set to %s", TIMER_M)
            self._timer_m = self._start_timer(TIMER_M, _Input.TIMER_M)
        return None

    def _act_delete(self) -> None:
        self.log.debug("act_delete")
        self._delete()
        return None


__all__: list = ["ClientTx", "prepare_client_request"]

_ActionType = Callable[[], Optional[_Input]]