"""Transaction layer: matches SIP traffic to client and server transactions."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Dict, List, Optional, Type, TypeVar

from .client_tx import ClientTx
from .message import Message, Request, Response, Transport, new_response_from_request
from .server_tx import ServerTx
from .transaction import CommonTx, TxKey, make_client_tx_key, make_server_tx_key

_POLL = 0.05

_TxT = TypeVar("_TxT", bound=CommonTx)

_log = logging.getLogger("siptx.transaction.Layer")


class _TransactionStore:
    """Thread-safe mapping of transaction keys to transactions."""

    def __init__(self) -> None:
        self._transactions: Dict[TxKey, CommonTx] = {}
        self._lock = threading.Lock()

    def put(self, key: TxKey, tx: CommonTx) -> None:
        with self._lock:
            self._transactions[key] = tx

    def get(self, key: TxKey) -> Optional[CommonTx]:
        with self._lock:
            return self._transactions.get(key)

    def drop(self, key: TxKey) -> bool:
        with self._lock:
            return self._transactions.pop(key, None) is not None

    def all(self) -> List[CommonTx]:
        with self._lock:
            return list(self._transactions.values())


class _WaitGroup:
    """Counter that can be waited on until it drops to zero."""

    def __init__(self) -> None:
        self._count = 0
        self._cond = threading.Condition()

    def add(self) -> None:
        with self._cond:
            self._count += 1

    def done(self) -> None:
        with self._cond:
            self._count -= 1
            if self._count <= 0:
                self._cond.notify_all()

    def wait(self) -> None:
        with self._cond:
            self._cond.wait_for(lambda: self._count <= 0)


class Layer:
    """Serves client and server transactions on top of a transport.

    New server transactions appear in ``requests``, ACKs for 2xx responses in
    ``acks`` and responses matched to no transaction in ``responses``. Once the
    layer has finished, each of these queues receives None and ``done`` is set.
    """

    def __init__(self, transport: Transport) -> None:
        self._tpl = transport
        self._store = _TransactionStore()
        self.requests: "queue.Queue[Optional[ServerTx]]" = queue.Queue()
        self.acks: "queue.Queue[Optional[Request]]" = queue.Queue()
        self.responses: "queue.Queue[Optional[Response]]" = queue.Queue()
        self.errors: "queue.Queue[Optional[BaseException]]" = queue.Queue()
        self._done = threading.Event()
        self._canceled = threading.Event()
        self._serving = _WaitGroup()
        self.log = logging.LoggerAdapter(_log, {"transaction_layer_ptr": f"{id(self):#x}"})
        self._listener = threading.Thread(target=self._listen_messages, daemon=True)
        self._listener.start()

    @property
    def transport(self) -> Transport:
        return self._tpl

    @property
    def done(self) -> threading.Event:
        """Set once the layer has stopped and every transaction has finished."""
        return self._done

    def __str__(self) -> str:
        return f"transaction.Layer<transaction_layer_ptr={id(self):#x}>"

    def cancel(self) -> None:
        """Stop the layer; its transactions are terminated."""
        if not self._canceled.is_set():
            self._canceled.set()
            self.log.debug("transaction layer canceled")

    def request(self, req: Request) -> ClientTx:
        """Send ``req`` in a new client transaction and return it."""
        if self._canceled.is_set():
            raise RuntimeError("transaction layer is canceled")
        if req.is_ack():
            raise ValueError("ACK request must be sent directly through transport")

        tx = ClientTx(req, self._tpl)
        self.log.debug("client transaction created: %s", tx)
        tx.init()
        self._store.put(tx.key, tx)

        if self._canceled.is_set():
            raise RuntimeError("transaction layer is canceled")
        self._start_serving(tx)
        return tx

    def respond(self, res: Response) -> ServerTx:
        """Send ``res`` through the server transaction it belongs to and return it."""
        if self._canceled.is_set():
            raise RuntimeError("transaction layer is canceled")
        tx = self._get_tx(res, make_server_tx_key, ServerTx, "server")
        tx.respond(res)
        return tx

    # internals

    def _start_serving(self, tx: CommonTx) -> None:
        self._serving.add()
        threading.Thread(target=self._serve_transaction, args=(tx,), daemon=True).start()

    def _listen_messages(self) -> None:
        self.log.debug("start listen messages")
        try:
            while not self._canceled.is_set():
                try:
                    msg = self._tpl.messages.get(timeout=_POLL)
                except queue.Empty:
                    continue
                if msg is None:
                    continue
                try:
                    self._handle_message(msg)
                except Exception as exc:  # keep listening whatever one message does
                    self.log.error("handling SIP message failed: %s", exc)
        finally:
            self._serving.wait()
            for channel in (self.requests, self.responses, self.acks, self.errors):
                channel.put(None)
            self._done.set()
            self.log.debug("stop listen messages")

    def _serve_transaction(self, tx: CommonTx) -> None:
        try:
            while True:
                if self._canceled.is_set():
                    tx.terminate()
                    break
                if tx.done.wait(_POLL):
                    break
        finally:
            self._store.drop(tx.key)
            self.log.debug("transaction deleted: %s", tx)
            self._serving.done()

    def _handle_message(self, msg: Message) -> None:
        if self._canceled.is_set():
            return
        if isinstance(msg, Request):
            self._handle_request(msg)
        elif isinstance(msg, Response):
            self._handle_response(msg)
        else:
            self.log.error("unsupported message, skip it")

    def _handle_request(self, req: Request) -> None:
        # Retransmission, ACK on non-2xx or CANCEL of an existing transaction.
        try:
            tx = self._get_tx(req, make_server_tx_key, ServerTx, "server")
        except (LookupError, ValueError):
            tx = None
        if tx is not None:
            try:
                tx.receive(req)
            except (ValueError, TypeError, RuntimeError) as exc:
                self.log.error("%s", exc)
            return

        if req.is_ack():
            # ACK on 2xx is a transaction of its own.
            self.acks.put(req)
            return
        if req.is_cancel():
            res = new_response_from_request(None, req, 481, "Transaction Does Not Exist", "")
            try:
                self._tpl.send(res)
            except Exception as exc:
                self.log.error(
                    "respond '481 Transaction Does Not Exist' on non-matched CANCEL request: %s", exc
                )
            return

        try:
            server_tx = ServerTx(req, self._tpl)
            server_tx.init()
        except (ValueError, RuntimeError) as exc:
            self.log.error("%s", exc)
            return
        self.log.debug("new server transaction created: %s", server_tx)

        self._store.put(server_tx.key, server_tx)
        self._start_serving(server_tx)
        if not self._canceled.is_set():
            self.requests.put(server_tx)

    def _handle_response(self, res: Response) -> None:
        try:
            tx = self._get_tx(res, make_client_tx_key, ClientTx, "client")
        except (LookupError, ValueError) as exc:
            # RFC 3261 17.1.1.2: responses matched to no transaction go straight up.
            self.log.debug("passing up non-matched SIP response: %s", exc)
            self.responses.put(res)
            return
        try:
            tx.receive(res)
        except (ValueError, TypeError, RuntimeError) as exc:
            self.log.error("%s", exc)

    def _get_tx(
        self,
        msg: Message,
        make_key: Callable[[Message], TxKey],
        kind: Type[_TxT],
        label: str,
    ) -> _TxT:
        key = make_key(msg)
        tx = self._store.get(key)
        if tx is None:
            raise LookupError(
                f"{self} failed to match message '{msg.short()}' to {label} transaction: "
                f"transaction with key '{key}' not found"
            )
        if not isinstance(tx, kind):
            raise LookupError(
                f"{self} failed to match message '{msg.short()}' to {label} transaction: "
                f"found {tx} is not a {label} transaction"
            )
        return tx