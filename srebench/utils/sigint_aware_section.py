import random
import signal
import threading

from srebench.errors import ScenarioCancelled


class CancellationToken:
    """Cooperative abort flag shared by a run's controller, waits and snapshots."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled"):
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True as soon as the token is cancelled."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)

    def sleep_jittered(self, interval: float, jitter: float = 0.2) -> bool:
        spread = interval * jitter
        return self.wait(max(0.0, interval + random.uniform(-spread, spread)))

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise ScenarioCancelled(self.reason or "cancelled")


class SigintAwareSection:
    """Route SIGINT/SIGTERM into a CancellationToken for the duration of the block."""

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, token: CancellationToken):
        self.token = token
        self.original_handlers = {}

    def __enter__(self):
        # signal handlers can only be installed from the main thread
        if threading.current_thread() is threading.main_thread():
            for sig in self.SIGNALS:
                self.original_handlers[sig] = signal.signal(sig, self.signal_handler)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for sig, handler in self.original_handlers.items():
            signal.signal(sig, handler)
        self.original_handlers.clear()
        return False

    def signal_handler(self, signum, frame):
        name = signal.Signals(signum).name
        if self.token.cancelled:
            # second signal: stop waiting for a graceful teardown
            raise KeyboardInterrupt
        self.token.cancel(f"received {name}")
