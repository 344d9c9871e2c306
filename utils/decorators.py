# ==================================================
# ========  MODULE: decorators & timing utils  =====
# ==================================================
from __future__ import annotations

import logging
import threading
import time
from functools import wraps
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple, TypeVar

from utils.logger import get_debug_logger, get_error_logger

# Public API
__all__ = [
    "TimerManager",
    "FRAMEWORK_TIMERS",
    "log_exceptions",
    "timed_wrapper",
    "safe_timer",
]

F = TypeVar("F", bound=Callable[..., Any])


# ====[ Per-label run times ]====
class TimerManager:
    """
    Thread-safe accumulator of run times, keyed by label (one label per framework).

    Examples
    --------
    >>> timers = TimerManager()
    >>> timers.add("scan", 0.5)
    >>> timers.to_dict()["scan"]["count"]
    1.0
    """

    def __init__(self):
        self.stats: Dict[str, Dict[str, float]] = {}
        self._lock = threading.Lock()

    def add(self, name: str, elapsed: float) -> None:
        """Record one run of `name` that took `elapsed` seconds."""
        with self._lock:
            entry = self.stats.get(name)
            if entry is None:
                entry = self.stats[name] = {"total": 0.0, "count": 0}
            entry["total"] += float(elapsed)
            entry["count"] += 1

    def reset(self) -> None:
        with self._lock:
            self.stats.clear()

    def _rows(self, digits: int) -> List[Tuple[str, int, float, float]]:
        with self._lock:
            snapshot = [(name, int(e["count"]), float(e["total"])) for name, e in self.stats.items()]
        return [
            (name, count, round(total, digits), round(total / count, digits) if count else 0.0)
            for name, count, total in snapshot
        ]

    def to_dict(self, digits: int = 3) -> Dict[str, Dict[str, float]]:
        """`{label: {"total": seconds, "count": runs, "avg": seconds per run}}`."""
        return {
            name: {"total": total, "count": float(count), "avg": avg}
            for name, count, total, avg in self._rows(digits)
        }

    def to_list(
        self,
        sort_by: Literal["total", "avg"] = "total",
        descending: bool = True,
        digits: int = 3,
    ) -> List[Tuple[str, int, float, float]]:
        """
        Rows of `(label, count, total, avg)`.

        Parameters
        ----------
        sort_by : {"total", "avg"}
            Column the rows are ordered on.
        descending : bool
            Slowest first when True.
        digits : int
            Rounding of the second values.
        """
        column = {"total": 2, "avg": 3}[sort_by]
        return sorted(self._rows(digits), key=lambda row: row[column], reverse=descending)

    def to_log(
        self,
        logger: Optional[logging.Logger] = None,
        level: int = logging.INFO,
        sort_by: Literal["total", "avg"] = "total",
    ) -> None:
        """Write one line per label to `logger` (the engine logger by default)."""
        logger = logger or logging.getLogger("nd_engine")
        logger.log(level, "Framework timings:")
        for name, count, total, avg in self.to_list(sort_by=sort_by):
            logger.log(level, f"  {name:<16} runs={count:<5} total={total:.3f}s avg={avg:.3f}s")

    def decorator(self, name: Optional[str] = None) -> Callable[[F], F]:
        """Time every call of the decorated function under `name` (default: its own name)."""
        def wrap(func: F) -> F:
            label = name or func.__name__

            @wraps(func)
            def timed(*args: Any, **kwargs: Any) -> Any:
                t0 = time.perf_counter()
                try:
                    return func(*args, **kwargs)
                finally:
                    self.add(label, time.perf_counter() - t0)

            return timed
        return wrap


# Timings of every framework run in this process.
FRAMEWORK_TIMERS = TimerManager()


# ====[ Error logging ]====
def log_exceptions(logger_name: str = "nd_engine.errors") -> Callable[[F], F]:
    """Send any exception of the wrapped call to the error logger, with traceback, and re-raise it."""
    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                get_error_logger(name=logger_name).error(f"{func.__qualname__} failed: {e!r}", exc_info=True)
                raise
        return wrapper
    return decorator


# ====[ Timing core ]====
def timed_wrapper(
    func: F,
    label: str,
    log: bool = True,
    log_errors: bool = True,
    timers: Optional[TimerManager] = None,
) -> F:
    """
    Wrap `func` so that each call is timed.

    Parameters
    ----------
    func : Callable
        Function to wrap.
    label : str
        Name of the run in the debug log and in `timers`.
    log : bool
        Write the run time to the debug logger.
    log_errors : bool
        Write exceptions to the error logger before they propagate. Callers
        that log their own failures (the frameworks) switch this off.
    timers : TimerManager, optional
        Receives the run time of every call, failed calls included.

    Notes
    -----
    Exceptions are never swallowed.
    """

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        t0 = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if log_errors:
                get_error_logger().error(f"[{label}] {e!r}", exc_info=True)
            raise
        finally:
            elapsed = time.perf_counter() - t0
            if timers is not None:
                timers.add(label, elapsed)
        if log:
            get_debug_logger().debug(f"[{label}] {elapsed * 1e3:.2f} ms")
        return result

    return wrapper


def safe_timer(
    log: bool = True,
    log_errors: bool = True,
    name: Optional[str] = None,
    timers: Optional[TimerManager] = None,
) -> Callable[[F], F]:
    """
    Decorator form of `timed_wrapper`; `name` defaults to the function's name.

    Examples
    --------
    >>> @safe_timer(name="scan", timers=FRAMEWORK_TIMERS)
    ... def run(): ...
    """

    def decorator(func: F) -> F:
        return timed_wrapper(func, label=name or func.__name__, log=log, log_errors=log_errors, timers=timers)
    return decorator
