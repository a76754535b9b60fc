"""
Resource safety around foreign-owned images.

Two policies live here:

  - `MutationGuard` gives every in-place (MODIFY) operation a private
    in-memory copy of its target, so a lazily evaluated image that other
    computations still depend on is never changed underneath them.
  - `GCPolicy` forces garbage collection after writes. Writes can fail
    for lack of file descriptors, and memory can fill, when large images
    are not collected fairly soon; the Python collector cannot see
    foreign-owned memory, so it has to be nudged.
"""

import gc
import logging
import platform
import threading
from typing import Any, Callable, Optional

lib_logger = logging.getLogger("gvips")


def default_generational() -> bool:
    """CPython's collector is generational, so a young-generation pass is cheap."""
    return platform.python_implementation() == "CPython"


class GCPolicy:
    """Throttled forced collection after persist calls.

    With a generational collector, every write triggers a young-generation
    collection. Otherwise a countdown starting at `interval` is decremented
    on every write and a full collection runs, and the countdown resets,
    when it reaches zero.
    """

    def __init__(self, interval: int = 100, generational: Optional[bool] = None,
                 collect: Callable[..., Any] = gc.collect):
        if interval < 1:
            raise ValueError("gc interval must be at least 1")
        self.interval = interval
        self.generational = default_generational() if generational is None else generational
        self.collect = collect
        self.countdown = interval
        self._lock = threading.Lock()

    def after_write(self) -> None:
        if self.generational:
            self.collect(0)
            return

        with self._lock:
            self.countdown -= 1
            due = self.countdown <= 0
            if due:
                self.countdown = self.interval
        if due:
            lib_logger.debug("forcing full collection after %d writes", self.interval)
            self.collect()

    def reset(self) -> None:
        with self._lock:
            self.countdown = self.interval

    def __repr__(self) -> str:
        mode = "generational" if self.generational else f"countdown={self.countdown}"
        return f"<GCPolicy interval={self.interval} {mode}>"


class MutationGuard:
    """Copy-before-mutate for operations that modify an input image in place."""

    def __init__(self, engine):
        self.engine = engine
        self.copies = 0

    def private_copy(self, ref: Any) -> Any:
        """Return the foreign reference of a fresh in-memory copy of `ref`.

        The copy is made by the `copy_memory` operation, which evaluates the
        source once and reuses its pixels for later copies.
        """
        from gvips.gvips_image import Image  # local import to avoid cycle

        copy = self.engine.invoke("copy_memory", [Image(self.engine, ref)])
        self.copies += 1
        return copy.ref
