import threading
import time
from typing import Callable


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class ReferenceGenerator:
    """
    Builds gateway-facing correlation refs of the form
    ``<prefix><order_id><separator><stamp>``.

    The stamp is a millisecond clock reading bumped to stay strictly
    increasing within the process, so two calls in the same millisecond
    (even for the same order) never collide. The stamp is all digits and
    always follows the last separator, which makes the order id
    recoverable with a right split regardless of what it contains.
    """

    def __init__(self, prefix: str = "LIK", separator: str = "-", clock: Callable[[], int] = _now_ms):
        if not separator or separator.isdigit():
            raise ValueError("separator must be a non-digit string")
        self.prefix = prefix
        self.separator = separator
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def _next_stamp(self) -> int:
        with self._lock:
            stamp = max(self._clock(), self._last + 1)
            self._last = stamp
            return stamp

    def generate(self, order_id: str) -> str:
        if not order_id:
            raise ValueError("order_id must not be empty")
        return f"{self.prefix}{order_id}{self.separator}{self._next_stamp()}"

    def extract_order_id(self, correlation_ref: str) -> str:
        if not correlation_ref.startswith(self.prefix):
            raise ValueError(f"ref {correlation_ref!r} does not start with {self.prefix!r}")
        body = correlation_ref[len(self.prefix):]
        order_id, sep, stamp = body.rpartition(self.separator)
        if not sep or not order_id or not stamp.isdigit():
            raise ValueError(f"ref {correlation_ref!r} is not a correlation ref")
        return order_id
