"""In-memory transport layer that hands messages over through queues."""

from __future__ import annotations

import queue
import threading
from typing import Optional

from .message import Message, Transport


class MockTransportLayer(Transport):
    """Transport whose traffic is read and written by the caller through queues.

    Incoming messages are put into ``in_msgs``; sent messages appear in ``out_msgs``.
    After :meth:`cancel` every queue receives None and sending raises EOFError.
    """

    host = "127.0.0.1"

    def __init__(self) -> None:
        self.in_msgs: "queue.Queue[Optional[Message]]" = queue.Queue()
        self.in_errs: "queue.Queue[Optional[BaseException]]" = queue.Queue()
        self.out_msgs: "queue.Queue[Optional[Message]]" = queue.Queue()
        self._done = threading.Event()
        self._cancel_lock = threading.Lock()

    @property
    def messages(self) -> "queue.Queue[Optional[Message]]":
        return self.in_msgs

    @property
    def errors(self) -> "queue.Queue[Optional[BaseException]]":
        return self.in_errs

    @property
    def done(self) -> threading.Event:
        return self._done

    def listen(self, network: str, addr: str) -> None:
        """Accept any listen request without doing anything."""
        return None

    def send(self, msg: Message) -> None:
        """Hand ``msg`` to ``out_msgs``; raises EOFError once cancelled."""
        if self._done.is_set():
            raise EOFError("transport layer is cancelled")
        self.out_msgs.put(msg)

    def is_reliable(self, network: str) -> bool:
        return True

    def is_streamed(self, network: str) -> bool:
        return True

    def cancel(self) -> None:
        """Stop the layer; later calls do nothing."""
        with self._cancel_lock:
            if self._done.is_set():
                return
            self._done.set()
        for channel in (self.in_msgs, self.in_errs, self.out_msgs):
            channel.put(None)

    def __str__(self) -> str:
        return f"MockTransportLayer<host={self.host}>"