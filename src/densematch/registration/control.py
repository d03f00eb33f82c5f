#  Copyright (c) 2021-2025  The University of Texas Southwestern Medical Center.
#  All rights reserved.
#  Redistribution and use in source and binary forms, with or without
#  modification, are permitted for academic and research use only (subject to the
#  limitations in the disclaimer below) provided that the following conditions are met:
#       * Redistributions of source code must retain the above copyright notice,
#       this list of conditions and the following disclaimer.
#       * Redistributions in binary form must reproduce the above copyright
#       notice, this list of conditions and the following disclaimer in the
#       documentation and/or other materials provided with the distribution.
#       * Neither the name of the copyright holders nor the names of its
#       contributors may be used to endorse or promote products derived from this
#       software without specific prior written permission.
#  NO EXPRESS OR IMPLIED LICENSES TO ANY PARTY'S PATENT RIGHTS ARE GRANTED BY
#  THIS LICENSE. THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND
#  CONTRIBUTORS "AS IS" AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT
#  LIMITED TO, THE IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A
#  PARTICULAR PURPOSE ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR
#  CONTRIBUTORS BE LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL,
#  EXEMPLARY, OR CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED TO,
#  PROCUREMENT OF SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR PROFITS; OR
#  BUSINESS INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER
#  IN CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE)
#  ARISING IN ANY WAY OUT OF THE USE OF THIS SOFTWARE, EVEN IF ADVISED OF THE
#  POSSIBILITY OF SUCH DAMAGE.

"""Cancellation, progress and worker channels passed explicitly into each stage."""

# Standard Library Imports
import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, List, Optional

# Third Party Imports

# Local Imports

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

ProgressCallback = Callable[[float], None]


class CancellationToken:
    """Thread-safe abort flag shared by every stage of a run."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("Cancellation requested.")
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ProgressReporter:
    """Monotonic progress counter that notifies observers.

    Parameters
    ----------
    total : float
        Number of work units making up the whole run.
    callbacks : iterable of callable, optional
        Observers called with the completed fraction in ``[0, 1]``. They are
        invoked outside the internal lock and should return quickly.
    """

    def __init__(
        self, total: float, callbacks: Optional[Iterable[ProgressCallback]] = None
    ):
        if total < 0:
            raise ValueError(f"Progress total must be non-negative, got {total}.")

        #: float: Number of work units making up the run.
        self.total = float(total)

        #: list: Observers notified on every change.
        self._callbacks: List[ProgressCallback] = list(callbacks or [])

        self._completed = 0.0
        self._lock = threading.RLock()

    def add_callback(self, callback: ProgressCallback) -> None:
        with self._lock:
            self._callbacks.append(callback)

    @property
    def completed(self) -> float:
        with self._lock:
            return self._completed

    @property
    def fraction(self) -> float:
        with self._lock:
            if self.total == 0:
                return 1.0
            return self._completed / self.total

    def advance(self, amount: float = 1.0) -> float:
        """Advance by ``amount`` units, clamped to the total.

        Returns
        -------
        float
            The completed fraction after the update.
        """
        if amount < 0:
            raise ValueError(f"Progress can only increase, got {amount}.")

        with self._lock:
            self._completed = min(self.total, self._completed + amount)
            fraction = 1.0 if self.total == 0 else self._completed / self.total
            callbacks = list(self._callbacks)

        for callback in callbacks:
            callback(fraction)
        return fraction

    def finish(self) -> None:
        """Jump straight to the end."""
        self.advance(max(0.0, self.total - self.completed))

    def sub_reporter(self, units: float) -> "SubProgressReporter":
        """Return a view mapping ``[0, 1]`` of a stage onto ``units`` of this one."""
        return SubProgressReporter(self, units)


class SubProgressReporter:
    """Stage-local progress view on a parent :class:`ProgressReporter`."""

    def __init__(self, parent: ProgressReporter, units: float):
        self.parent = parent
        self.units = float(units)
        self._fraction = 0.0
        self._lock = threading.Lock()

    def update(self, fraction: float) -> None:
        """Report that ``fraction`` of the stage is complete.

        Values lower than an earlier report are ignored.
        """
        fraction = min(1.0, max(0.0, float(fraction)))
        with self._lock:
            delta = fraction - self._fraction
            if delta <= 0:
                return
            self._fraction = fraction
        self.parent.advance(delta * self.units)

    def finish(self) -> None:
        self.update(1.0)


@contextmanager
def worker_pool(executor: Optional[Executor], number_of_threads: int) -> Iterator[Executor]:
    """Yield ``executor`` when given, else a pool closed on exit.

    A run shares one pool across its stages; stages used on their own get a
    short-lived pool of ``number_of_threads`` workers.
    """
    if executor is not None:
        yield executor
        return
    with ThreadPoolExecutor(max_workers=max(1, int(number_of_threads))) as pool:
        yield pool
