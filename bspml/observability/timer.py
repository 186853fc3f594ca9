#!filepath: bspml/observability/timer.py
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List


class Timer:
    """
    High-resolution span timer
    - start(name) / end(name) -> elapsed seconds
    - span(name) context manager; the yielded list receives the elapsed time
    Spans are keyed per thread so concurrent callers never clobber each other.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._start: Dict[tuple, float] = {}
        self._lock = threading.Lock()

    def _key(self, name: str) -> tuple:
        return (threading.get_ident(), name)

    def start(self, name: str):
        if not self.enabled:
            return
        with self._lock:
            self._start[self._key(name)] = time.perf_counter()

    def end(self, name: str) -> float:
        if not self.enabled:
            return 0.0
        with self._lock:
            started = self._start.pop(self._key(name), None)
        if started is None:
            return 0.0
        return time.perf_counter() - started

    @contextmanager
    def span(self, name: str) -> Iterator[List[float]]:
        out: List[float] = []
        self.start(name)
        try:
            yield out
        finally:
            out.append(self.end(name))
