import os
import signal
import sys
from enum import Enum

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def block_signals(signals=SHUTDOWN_SIGNALS):
    """Hold back delivery of `signals`. Returns the previous mask, for unblock_signals()."""
    return signal.pthread_sigmask(signal.SIG_BLOCK, signals)


def unblock_signals(mask):
    signal.pthread_sigmask(signal.SIG_SETMASK, mask)


class ShutdownState(Enum):
    RUNNING = 1
    SHUTTING_DOWN = 2
    TERMINATED = 3


class SignalBridge():
    """Turns delivery of a shutdown signal into one orderly, final action.

    The handler runs `on_signal(signum)` once, then ends the process with exit status
    128 + signum. A signal that arrives while that is in progress is ignored, so the
    action never runs twice. `on_signal` must only do idempotent things: record a flag,
    forward a signal, write a log line."""
    _installed = []

    def __init__(self, on_signal, signals=SHUTDOWN_SIGNALS):
        self._on_signal = on_signal
        self._signals = tuple(signals)
        self._previous = {}
        self.state = ShutdownState.RUNNING

    @property
    def signals(self):
        """The signals this bridge handles. Read-only."""
        return self._signals

    def install(self):
        """Register the handler for every bridged signal, remembering the previous handlers.

        Must be called from the main thread, as signal.signal requires."""
        for signum in self._signals:
            self._previous[signum] = signal.signal(signum, self.handle)
        SignalBridge._installed.append(self)

    def restore(self):
        """Put back the handlers that were registered before install().

        A signal whose handler was replaced again by a later bridge is left alone; that
        bridge inherits this one's previous handler, so closing bridges in any order ends
        with the original handlers in place."""
        for signum, handler in self._previous.items():
            if handler is None:
                handler = signal.SIG_DFL
            if signal.getsignal(signum) == self.handle:
                signal.signal(signum, handler)
                continue
            for bridge in SignalBridge._installed:
                if bridge._previous.get(signum) == self.handle:
                    bridge._previous[signum] = handler
        self._previous = {}
        if self in SignalBridge._installed:
            SignalBridge._installed.remove(self)

    def handle(self, signum, frame=None):
        if self.state != ShutdownState.RUNNING:
            return
        self.state = ShutdownState.SHUTTING_DOWN
        try:
            self._on_signal(signum)
        finally:
            self.state = ShutdownState.TERMINATED
            self.terminate(signum)

    @staticmethod
    def terminate(signum):
        for stream in (sys.stdout, sys.stderr):
            try:
                stream.flush()
            except (OSError, ValueError):
                pass
        os._exit(128 + signum)

    def reset_to_default(self):
        """Give the bridged signals their default disposition (used by processes that don't supervise anything)."""
        self._previous.clear()
        SignalBridge._installed.clear()
        for signum in self._signals:
            signal.signal(signum, signal.SIG_DFL)
