"""Serialization gate for provisioning work.

Rooms and puppet accounts are created against a remote server that offers no
"create if absent" primitive, so two handlers must never run a provisioning
sequence at the same time. The gate admits one holder at a time in arrival
order. Relay work that only needs provisioning to be settled can wait on
`barrier()` without queueing behind later holders.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Iterator


class SerializationGate:
    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._serving = 0  # ticket allowed to hold (or holding) the gate
        self._held = False

    @property
    def locked(self) -> bool:
        with self._cond:
            return self._held

    def acquire(self) -> Callable[[], None]:
        """Block until every earlier caller has released; return the release callback."""
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while self._held or ticket != self._serving:
                self._cond.wait()
            self._held = True

        released = False

        def release() -> None:
            nonlocal released
            with self._cond:
                if released:
                    return
                released = True
                self._held = False
                self._serving += 1
                self._cond.notify_all()

        return release

    def barrier(self) -> None:
        """Return at once when unheld, else wait for the current holder to release."""
        with self._cond:
            if not self._held:
                return
            holder = self._serving
            while self._held and self._serving == holder:
                self._cond.wait()

    @contextmanager
    def held(self) -> Iterator[None]:
        release = self.acquire()
        try:
            yield
        finally:
            release()
