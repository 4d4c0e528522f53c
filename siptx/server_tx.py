"""Server transactions (RFC 3261 17.2) for INVITE and non-INVITE requests."""

from __future__ import annotations

import enum
import queue
import threading
from typing import Dict, Hashable, Optional, Union

from . import timing
from .message import Message, Request, Response, Transport, new_response_from_request
from .transaction import (
    T2,
    TIMER_1XX,
    TIMER_G,
    TIMER_H,
    TIMER_I,
    TIMER_J,
    TIMER_L,
    CommonTx,
    StateMachine,
    TxTransportError,
    make_server_tx_key,
)

_CHANNEL_SIZE = 64

Timer = Union[timing.RealTimer, timing.MockTimer]


class _State(enum.Enum):
    TRYING = "trying"
    PROCEEDING = "proceeding"
    COMPLETED = "completed"
    CONFIRMED = "confirmed"
    ACCEPTED = "accepted"
    TERMINATED = "terminated"


class _Input(enum.Enum):
    REQUEST = "request"
    ACK = "ack"
    CANCEL = "cancel"
    USER_1XX = "user_1xx"
    USER_2XX = "user_2xx"
    USER_300_PLUS = "user_300_plus"
    TIMER_G = "timer_g"
    TIMER_H = "timer_h"
    TIMER_I = "timer_i"
    TIMER_J = "timer_j"
    TIMER_L = "timer_l"
    TRANSPORT_ERROR = "transport_err"
    DELETE = "delete"


class ServerTx(CommonTx):
    """A server transaction: absorbs retransmitted requests and sends the user's responses."""

    log_prefix = "transaction.ServerTx"

    def __init__(self, origin: Request, transport: Transport) -> None:
        key = make_server_tx_key(origin)
        super().__init__(origin, key, transport)
        self._acks: "queue.Queue[Optional[Request]]" = queue.Queue(maxsize=_CHANNEL_SIZE)
        self._cancels: "queue.Queue[Optional[Request]]" = queue.Queue(maxsize=_CHANNEL_SIZE)
        self._last_ack: Optional[Request] = None
        self._last_cancel: Optional[Request] = None
        self._timer_g_time = 0.0
        self._timer_g: Optional[Timer] = None
        self._timer_h: Optional[Timer] = None
        self._timer_i: Optional[Timer] = None
        self._timer_j: Optional[Timer] = None
        self._timer_1xx: Optional[Timer] = None
        self._timer_l: Optional[Timer] = None

    @property
    def acks(self) -> "queue.Queue[Optional[Request]]":
        """ACK requests matched to this transaction; None is put in when it is done."""
        return self._acks

    @property
    def cancels(self) -> "queue.Queue[Optional[Request]]":
        """CANCEL requests matched to this transaction; None is put in when it is done."""
        return self._cancels

    def init(self) -> None:
        """Build the state machine and, for INVITE, schedule the automatic 100 Trying."""
        self._init_fsm()
        with self._lock:
            if not self._reliable:
                self._timer_g_time = TIMER_G

        # RFC 3261 17.2.1
        if self.origin.is_invite():
            self.log.debug("set timer_1xx to %s", TIMER_1XX)
            with self._lock:
                self._timer_1xx = timing.after_func(TIMER_1XX, self._send_trying)

    def receive(self, msg: Message) -> None:
        """Feed a request matched to this transaction."""
        if not isinstance(msg, Request):
            raise TypeError(f"{self} received unexpected {msg.short()}")

        self._stop_timers("_timer_1xx")

        if msg.method == self.origin.method:
            event = _Input.REQUEST
        elif msg.is_ack():
            # ACK for a non-2xx response
            event = _Input.ACK
            with self._lock:
                self._last_ack = msg
        elif msg.is_cancel():
            event = _Input.CANCEL
            with self._lock:
                self._last_cancel = msg
        else:
            raise ValueError(f"invalid {msg.short()} correlated to {self}")
        self._spin(event)

    def respond(self, res: Response) -> None:
        """Send a response of the user through the transaction."""
        if res.is_cancel():
            try:
                self._tpl.send(res)
            except Exception as exc:
                self.log.debug("send response to CANCEL failed: %s", exc)
            return

        with self._lock:
            self._last_response = res
        self._stop_timers("_timer_1xx")

        if res.is_provisional():
            event = _Input.USER_1XX
        elif res.is_success():
            event = _Input.USER_2XX
        else:
            event = _Input.USER_300_PLUS
        self._spin(event)

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
        states: Dict[Hashable, Dict[Hashable, tuple]] = {
            s.PROCEEDING: {
                i.REQUEST: (s.PROCEEDING, self._act_respond),
                i.CANCEL: (s.PROCEEDING, self._act_cancel),
                i.USER_1XX: (s.PROCEEDING, self._act_respond),
                i.USER_2XX: (s.ACCEPTED, self._act_respond_accept),
                i.USER_300_PLUS: (s.COMPLETED, self._act_respond_complete),
                i.TRANSPORT_ERROR: (s.TERMINATED, self._act_trans_err),
            },
            s.COMPLETED: {
                i.REQUEST: (s.COMPLETED, self._act_respond),
                i.ACK: (s.CONFIRMED, self._act_confirm),
                i.CANCEL: (s.COMPLETED, None),
                i.USER_1XX: (s.COMPLETED, None),
                i.USER_2XX: (s.COMPLETED, None),
                i.USER_300_PLUS: (s.COMPLETED, None),
                i.TIMER_G: (s.COMPLETED, self._act_respond_complete),
                i.TIMER_H: (s.TERMINATED, self._act_delete),
                i.TRANSPORT_ERROR: (s.TERMINATED, self._act_trans_err),
            },
            s.CONFIRMED: {
                i.REQUEST: (s.CONFIRMED, None),
                i.ACK: (s.CONFIRMED, None),
                i.CANCEL: (s.CONFIRMED, None),
                i.USER_1XX: (s.CONFIRMED, None),
                i.USER_2XX: (s.CONFIRMED, None),
                i.USER_300_PLUS: (s.CONFIRMED, None),
                i.TIMER_I: (s.TERMINATED, self._act_delete),
                i.TIMER_G: (s.CONFIRMED, None),
                i.TIMER_H: (s.CONFIRMED, None),
            },
            s.ACCEPTED: {
                i.REQUEST: (s.ACCEPTED, None),
                i.ACK: (s.ACCEPTED, self._act_passup_ack),
                i.CANCEL: (s.ACCEPTED, None),
                i.USER_1XX: (s.ACCEPTED, None),
                i.USER_2XX: (s.ACCEPTED, self._act_respond),
                i.USER_300_PLUS: (s.ACCEPTED, None),
                i.TRANSPORT_ERROR: (s.ACCEPTED, None),
                i.TIMER_L: (s.TERMINATED, self._act_delete),
            },
            s.TERMINATED: {
                i.REQUEST: (s.TERMINATED, None),
                i.ACK: (s.TERMINATED, None),
                i.CANCEL: (s.TERMINATED, None),
                i.USER_1XX: (s.TERMINATED, None),
                i.USER_2XX: (s.TERMINATED, None),
                i.USER_300_PLUS: (s.TERMINATED, None),
                i.DELETE: (s.TERMINATED, self._act_delete),
                i.TIMER_I: (s.TERMINATED, None),
                i.TIMER_L: (s.TERMINATED, None),
            },
        }
        self._fsm = StateMachine(s.PROCEEDING, states)

    def _init_non_invite_fsm(self) -> None:
        self.log.debug("initialising non-INVITE transaction FSM")
        s, i = _State, _Input
        states: Dict[Hashable, Dict[Hashable, tuple]] = {
            s.TRYING: {
                i.REQUEST: (s.TRYING, None),
                i.CANCEL: (s.TRYING, None),
                i.USER_1XX: (s.PROCEEDING, self._act_respond),
                i.USER_2XX: (s.COMPLETED, self._act_final),
                i.USER_300_PLUS: (s.COMPLETED, self._act_final),
                i.TRANSPORT_ERROR: (s.TERMINATED, self._act_trans_err),
            },
            s.PROCEEDING: {
                i.REQUEST: (s.PROCEEDING, self._act_respond),
                i.CANCEL: (s.PROCEEDING, None),
                i.USER_1XX: (s.PROCEEDING, self._act_respond),
                i.USER_2XX: (s.COMPLETED, self._act_final),
                i.USER_300_PLUS: (s.COMPLETED, self._act_final),
                i.TRANSPORT_ERROR: (s.TERMINATED, self._act_trans_err),
            },
            s.COMPLETED: {
                i.REQUEST: (s.COMPLETED, self._act_respond),
                i.CANCEL: (s.COMPLETED, None),
                i.USER_1XX: (s.COMPLETED, None),
                i.USER_2XX: (s.COMPLETED, None),
                i.USER_300_PLUS: (s.COMPLETED, None),
                i.TIMER_J: (s.TERMINATED, self._act_delete),
                i.TRANSPORT_ERROR: (s.TERMINATED, self._act_trans_err),
            },
            s.TERMINATED: {
                i.REQUEST: (s.TERMINATED, None),
                i.CANCEL: (s.TERMINATED, None),
                i.USER_1XX: (s.TERMINATED, None),
                i.USER_2XX: (s.TERMINATED, None),
                i.USER_300_PLUS: (s.TERMINATED, None),
                i.TIMER_J: (s.TERMINATED, None),
                i.DELETE: (s.TERMINATED, self._act_delete),
            },
        }
        self._fsm = StateMachine(s.TRYING, states)

    # plumbing

    def _send_trying(self) -> None:
        if self._done.is_set():
            return
        self.log.debug("timer_1xx fired")
        try:
            self.respond(new_response_from_request(None, self.origin, 100, "Trying", ""))
        except (ValueError, RuntimeError) as exc:
            self.log.error("send '100 Trying' response failed: %s", exc)

    def _start_timer(self, duration: float, event: _Input) -> Timer:
        return timing.after_func(duration, lambda: self._on_timer(event))

    def _on_timer(self, event: _Input) -> None:
        if self._done.is_set():
            return
        self.log.debug("%s fired", event.value)
        self._spin_logged(event)

    def _stop_timers(self, *names: str) -> None:
        with self._lock:
            for name in names:
                timer = getattr(self, name)
                if timer is not None:
                    timer.stop()
                    setattr(self, name, None)

    def _current_response(self) -> Optional[Response]:
        with self._lock:
            return self._last_response

    def _send(self, res: Response) -> bool:
        """Send ``res``, remembering the outcome; False if the transport failed."""
        try:
            self._tpl.send(res)
        except Exception as exc:
            with self._lock:
                self._last_error = exc
            return False
        with self._lock:
            self._last_error = None
        return True

    def _transport_error(self) -> None:
        with self._lock:
            last_response = self._last_response
            last_error = self._last_error
        res_str = last_response.short() if last_response is not None else ""
        err = TxTransportError(
            f"transaction failed to send {res_str}: {last_error}", self.key, self._ptr
        )
        if last_error is not None:
            err.__cause__ = last_error
        self._send_error(err)

    def _delete(self) -> None:
        if not self._close(self._acks, self._cancels):
            return
        self._stop_timers("_timer_i", "_timer_g", "_timer_h", "_timer_j", "_timer_1xx", "_timer_l")

    # actions

    def _act_respond(self) -> Optional[_Input]:
        last_response = self._current_response()
        if last_response is None:
            return None
        self.log.debug("act_respond")
        if not self._send(last_response):
            return _Input.TRANSPORT_ERROR
        return None

    def _act_respond_complete(self) -> Optional[_Input]:
        last_response = self._current_response()
        if last_response is None:
            return None
        self.log.debug("act_respond_complete")
        if not self._send(last_response):
            return _Input.TRANSPORT_ERROR

        with self._lock:
            if not self._reliable:
                if self._timer_g is None:
                    self.log.debug("timer_g set to %s", self._timer_g_time)
                    self._timer_g = self._start_timer(self._timer_g_time, _Input.TIMER_G)
                else:
                    self._timer_g_time = min(self._timer_g_time * 2, T2)
                    self.log.debug("timer_g reset to %s", self._timer_g_time)
                    self._timer_g.reset(self._timer_g_time)
            if self._timer_h is None:
                self.log.debug("timer_h set to %s", TIMER_H)
                self._timer_h = self._start_timer(TIMER_H, _Input.TIMER_H)
        return None

    def _act_respond_accept(self) -> Optional[_Input]:
        last_response = self._current_response()
        if last_response is None:
            return None
        self.log.debug("act_respond_accept")
        if not self._send(last_response):
            return _Input.TRANSPORT_ERROR
        with self._lock:
            self.log.debug("timer_l set to %s", TIMER_L)
            self._timer_l = self._start_timer(TIMER_L, _Input.TIMER_L)
        return None

    def _act_passup_ack(self) -> None:
        self.log.debug("act_passup_ack")
        with self._lock:
            ack = self._last_ack
        if ack is not None:
            self._deliver(self._acks, ack)
        return None

    def _act_final(self) -> Optional[_Input]:
        last_response = self._current_response()
        if last_response is None:
            return None
        self.log.debug("act_final")
        if not self._send(last_response):
            return _Input.TRANSPORT_ERROR
        with self._lock:
            self.log.debug("timer_j set to %s", TIMER_J)
            self._timer_j = self._start_timer(TIMER_J, _Input.TIMER_J)
        return None

    def _act_trans_err(self) -> _Input:
        self.log.debug("act_trans_err")
        self._transport_error()
        return _Input.DELETE

    def _act_delete(self) -> None:
        self.log.debug("act_delete")
        self._delete()
        return None

    def _act_confirm(self) -> None:
        self.log.debug("act_confirm")
        self._stop_timers("_timer_g", "_timer_h")
        with self._lock:
            self.log.debug("timer_i set to %s", TIMER_I)
            self._timer_i = self._start_timer(TIMER_I, _Input.TIMER_I)
            ack = self._last_ack
        if ack is not None:
            self._deliver(self._acks, ack)
        return None

    def _act_cancel(self) -> None:
        self.log.debug("act_cancel")
        with self._lock:
            cancel = self._last_cancel
        if cancel is not None:
            self._deliver(self._cancels, cancel)
        return None


_ThreadLock = threading.Lock