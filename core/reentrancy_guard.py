"""
Reentrancy protection and all-or-nothing operations.

Each component keeps a per-instance flag: while one of its guarded entry points
is running, a nested call into any guarded entry point of the same instance
fails. Components wired together share a StateJournal, which snapshots the state
of every member when the outermost guarded call starts and puts it back if an
exception escapes, so a failed operation leaves no partial effect anywhere.
"""

import copy
import functools
import logging
from contextlib import contextmanager

from protocol_errors import ReentrancyError

logger = logging.getLogger(__name__)


class StateJournal:
    """Shared undo log for a set of components taking part in one operation."""

    def __init__(self):
        self._members = []
        self._depth = 0
        self._snapshots = None

    def register(self, component):
        if component not in self._members:
            self._members.append(component)

    @contextmanager
    def atomic(self):
        if self._depth == 0:
            self._snapshots = [(member, member.snapshot_state()) for member in self._members]
        self._depth += 1
        try:
            yield
        except BaseException:
            if self._depth == 1:
                logger.debug("Operation aborted, restoring %d components", len(self._snapshots))
                for member, snapshot in self._snapshots:
                    member.restore_state(snapshot)
            raise
        finally:
            self._depth -= 1
            if self._depth == 0:
                self._snapshots = None


class GuardedComponent:
    """
    Mixin for components whose state is journaled.

    Subclasses list the attributes that make up their state in _STATE_FIELDS.
    Collaborator references and configuration are never part of the state.
    """

    _STATE_FIELDS = ()

    def _init_guard(self, journal=None):
        self._entered = False
        self.journal = journal if journal is not None else StateJournal()
        self.journal.register(self)

    def snapshot_state(self):
        return copy.deepcopy({name: getattr(self, name) for name in self._STATE_FIELDS})

    def restore_state(self, snapshot):
        for name, value in snapshot.items():
            setattr(self, name, value)


def non_reentrant(method):
    """Guards a public mutating entry point of a GuardedComponent."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if self._entered:
            raise ReentrancyError(f"{type(self).__name__}: reentrant call to {method.__name__}")
        self._entered = True
        try:
            with self.journal.atomic():
                return method(self, *args, **kwargs)
        finally:
            self._entered = False

    return wrapper
