"""Timers that run either on the system clock or on a manually advanced mock clock.

In mock mode time does not pass on its own: it only moves forward when
:func:`elapse` is called, and mock timers fire at that moment.
Durations are given in seconds (int or float) or as :class:`datetime.timedelta`.
"""

from __future__ import annotations

import datetime
import queue
import threading
from typing import Callable, List, Optional, Union

Duration = Union[int, float, datetime.timedelta]

_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)

_lock = threading.RLock()
_mock_mode = False
_current_time = _EPOCH
_mock_timers: List["MockTimer"] = []


def _seconds(duration: Duration) -> float:
    if isinstance(duration, datetime.timedelta):
        return duration.total_seconds()
    return float(duration)


def _drain(channel: "queue.Queue[datetime.datetime]") -> bool:
    try:
        channel.get_nowait()
    except queue.Empty:
        return False
    return True


def _offer(channel: "queue.Queue[datetime.datetime]", value: datetime.datetime) -> None:
    """Put a value into a one-slot channel, replacing whatever is waiting there."""
    _drain(channel)
    try:
        channel.put_nowait(value)
    except queue.Full:
        pass


def _spawn(func: Callable[[], object]) -> None:
    threading.Thread(target=func, daemon=True).start()


class _Timer:
    """Common part of all timers: a one-slot channel receiving the fire time."""

    def __init__(self) -> None:
        self._channel: "queue.Queue[datetime.datetime]" = queue.Queue(maxsize=1)

    @property
    def channel(self) -> "queue.Queue[datetime.datetime]":
        """Queue that receives the current time when the timer expires."""
        return self._channel

    def reset(self, duration: Duration) -> bool:
        raise NotImplementedError

    def stop(self) -> bool:
        raise NotImplementedError


class RealTimer(_Timer):
    """Timer driven by the system clock."""

    def __init__(self, duration: Duration, func: Optional[Callable[[], object]] = None) -> None:
        super().__init__()
        self._func = func
        self._guard = threading.Lock()
        self._generation = 0
        self._active = False
        self._thread: Optional[threading.Timer] = None
        self._start(_seconds(duration))

    def _start(self, seconds: float) -> None:
        with self._guard:
            self._generation += 1
            self._active = True
            thread = threading.Timer(max(seconds, 0.0), self._fire, args=(self._generation,))
            thread.daemon = True
            self._thread = thread
        thread.start()

    def _fire(self, generation: int) -> None:
        with self._guard:
            if generation != self._generation or not self._active:
                return
            self._active = False
        if self._func is not None:
            self._func()
        else:
            _offer(self._channel, now())

    def reset(self, duration: Duration) -> bool:
        """Restart the timer to expire after ``duration``; True if it had been active."""
        was_active = self.stop()
        self._start(_seconds(duration))
        return was_active

    def stop(self) -> bool:
        """Prevent the timer from firing.

        Returns True if it was active or an undelivered fire value was discarded.
        """
        with self._guard:
            if self._active:
                self._active = False
                self._generation += 1
                if self._thread is not None:
                    self._thread.cancel()
                return True
        return _drain(self._channel)


class MockTimer(_Timer):
    """Timer that fires when the mock clock, advanced by :func:`elapse`, reaches its end time."""

    def __init__(
        self, end_time: datetime.datetime, func: Optional[Callable[[], object]] = None
    ) -> None:
        super().__init__()
        self.end_time = end_time
        self._func = func
        self._fired = False

    def reset(self, duration: Duration) -> bool:
        """Restart the timer to expire ``duration`` after the mock now; True if it had been active."""
        seconds = _seconds(duration)
        with _lock:
            was_active = _remove_mock_timer(self)
            self.end_time = _current_time + datetime.timedelta(seconds=seconds)
            if seconds > 0:
                _mock_timers.append(self)
            else:
                _offer(self._channel, _current_time)
        return was_active

    def stop(self) -> bool:
        """Prevent the timer from firing.

        Returns True if it was pending or an undelivered fire value was discarded.
        """
        if _remove_mock_timer(self):
            return True
        return _drain(self._channel)


def _remove_mock_timer(timer: MockTimer) -> bool:
    with _lock:
        for index, pending in enumerate(_mock_timers):
            if pending is timer:
                del _mock_timers[index]
                return True
    return False


def set_mock_mode(enabled: bool) -> None:
    """Switch between the mock clock and the system clock."""
    global _mock_mode
    with _lock:
        _mock_mode = bool(enabled)


def new_timer(duration: Duration) -> Union[RealTimer, MockTimer]:
    """Create a timer that puts the current time into its channel after ``duration``."""
    seconds = _seconds(duration)
    with _lock:
        if not _mock_mode:
            return RealTimer(seconds)
        timer = MockTimer(_current_time + datetime.timedelta(seconds=seconds))
        if seconds == 0:
            _offer(timer.channel, _current_time)
        else:
            _mock_timers.append(timer)
        return timer


def after(duration: Duration) -> "queue.Queue[datetime.datetime]":
    """Return a channel that receives the current time after ``duration``."""
    return new_timer(duration).channel


def after_func(duration: Duration, func: Callable[[], object]) -> Union[RealTimer, MockTimer]:
    """Call ``func`` in its own thread once ``duration`` has passed."""
    seconds = _seconds(duration)
    with _lock:
        if not _mock_mode:
            return RealTimer(seconds, func)
        timer = MockTimer(_current_time + datetime.timedelta(seconds=seconds), func)
        if seconds == 0:
            _spawn(func)
            _offer(timer.channel, _current_time)
        else:
            _mock_timers.append(timer)
        return timer


def sleep(duration: Duration) -> None:
    """Block until ``duration`` has passed on the active clock."""
    after(duration).get()


def elapse(duration: Duration) -> None:
    """Advance the mock clock and fire every timer whose time has come.

    Raises RuntimeError unless mock mode is enabled.
    """
    global _current_time, _mock_timers
    seconds = _seconds(duration)
    with _lock:
        if not _mock_mode:
            raise RuntimeError("this function requires mock mode to be enabled")
        _current_time = _current_time + datetime.timedelta(seconds=seconds)
        for timer in _mock_timers:
            timer._fired = False
            if timer.end_time <= _current_time:
                if timer._func is not None:
                    _spawn(timer._func)
                _offer(timer.channel, _current_time)
                timer._fired = True
        _mock_timers = [timer for timer in _mock_timers if not timer._fired]


def now() -> datetime.datetime:
    """Current time: the mock clock in mock mode, otherwise the system clock (UTC)."""
    with _lock:
        if _mock_mode:
            return _current_time
    return datetime.datetime.now(datetime.timezone.utc)