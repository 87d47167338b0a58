"""
Sorted Troves Model for Fluid Protocol.

This module simulates the SortedTroves contract: for each collateral asset, a
doubly linked list of trove owners ordered by descending nominal collateral
ratio (NICR). The head holds the highest NICR, the tail the lowest.

NICRs are not stored in the list. They are read from the TroveManager when a
new node is placed, which keeps the list consistent with pending redistribution
rewards without ever touching every node.

Callers pass hints (the expected neighbours). Good hints make insertion O(1);
bad or stale hints are discarded and the position is found by walking the
list from the best remaining starting point.

Equal NICRs: a new node is placed after every node with the same NICR, so ties
keep insertion order no matter which hints were given.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from protocol_config import SORTED_TROVES_MAX_SIZE
from protocol_errors import AuthorizationError, ValidationError
from reentrancy_guard import GuardedComponent, non_reentrant

logger = logging.getLogger(__name__)


@dataclass
class Node:
    """A single registry entry."""
    next_id: Optional[str] = None   # neighbour towards the tail (lower NICR)
    prev_id: Optional[str] = None   # neighbour towards the head (higher NICR)


@dataclass
class SortedList:
    """Per-asset list header."""
    head: Optional[str] = None
    tail: Optional[str] = None
    size: int = 0


class SortedTroves(GuardedComponent):
    """
    Simulates the SortedTroves contract which keeps active troves ordered by NICR.
    """

    _STATE_FIELDS = ("lists", "nodes")

    def __init__(self, max_size=SORTED_TROVES_MAX_SIZE, journal=None):
        if max_size <= 0:
            raise ValidationError("SortedTroves: max size must be positive")
        self.max_size = max_size

        # asset -> SortedList
        self.lists = {}

        # asset -> {owner -> Node}
        self.nodes = {}

        # Source of NICRs; also the only caller allowed to mutate the list
        self.trove_manager = None

        self._init_guard(journal)

    # --- Mutating functions ---

    @non_reentrant
    def insert(self, caller, asset, trove_id, nicr, prev_id=None, next_id=None):
        """
        Adds a trove to the list of its asset.

        Args:
            caller: Must be the TroveManager
            asset: Collateral asset identifier
            trove_id: Owner identifier of the trove
            nicr: The trove's nominal collateral ratio
            prev_id: Hint, expected neighbour with a higher or equal NICR
            next_id: Hint, expected neighbour with a lower NICR
        """
        self._require_caller_is_trove_manager(caller)
        self._insert(asset, trove_id, nicr, prev_id, next_id)

    @non_reentrant
    def remove(self, caller, asset, trove_id):
        """Removes a trove from the list of its asset."""
        self._require_caller_is_trove_manager(caller)
        self._remove(asset, trove_id)

    @non_reentrant
    def re_insert(self, caller, asset, trove_id, new_nicr, prev_id=None, next_id=None):
        """Moves a trove to the position matching its new NICR."""
        self._require_caller_is_trove_manager(caller)
        if not self.contains(asset, trove_id):
            raise ValidationError("SortedTroves: List does not contain the id")
        if new_nicr < 0:
            raise ValidationError("SortedTroves: NICR must not be negative")

        self._remove(asset, trove_id)
        self._insert(asset, trove_id, new_nicr, prev_id, next_id)

    def _insert(self, asset, trove_id, nicr, prev_id, next_id):
        if self.is_full(asset):
            raise ValidationError("SortedTroves: List is full")
        if self.contains(asset, trove_id):
            raise ValidationError("SortedTroves: List already contains the node")
        if not trove_id:
            raise ValidationError("SortedTroves: Id cannot be empty")
        if nicr < 0:
            raise ValidationError("SortedTroves: NICR must not be negative")

        prev_id, next_id = self.find_insert_position(asset, nicr, prev_id, next_id)

        data = self.lists.setdefault(asset, SortedList())
        nodes = self.nodes.setdefault(asset, {})
        node = Node(next_id=next_id, prev_id=prev_id)

        if prev_id is None and next_id is None:
            data.head = trove_id
            data.tail = trove_id
        elif prev_id is None:
            nodes[next_id].prev_id = trove_id
            data.head = trove_id
        elif next_id is None:
            nodes[prev_id].next_id = trove_id
            data.tail = trove_id
        else:
            nodes[prev_id].next_id = trove_id
            nodes[next_id].prev_id = trove_id

        nodes[trove_id] = node
        data.size += 1

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Inserted %s into %s list between %s and %s", trove_id, asset, prev_id, next_id)

    def _remove(self, asset, trove_id):
        if not self.contains(asset, trove_id):
            raise ValidationError("SortedTroves: List does not contain the id")

        data = self.lists[asset]
        nodes = self.nodes[asset]
        node = nodes[trove_id]

        if data.size > 1:
            if trove_id == data.head:
                data.head = node.next_id
                nodes[data.head].prev_id = None
            elif trove_id == data.tail:
                data.tail = node.prev_id
                nodes[data.tail].next_id = None
            else:
                nodes[node.prev_id].next_id = node.next_id
                nodes[node.next_id].prev_id = node.prev_id
        else:
            data.head = None
            data.tail = None

        del nodes[trove_id]
        data.size -= 1

    # --- Position search ---

    def valid_insert_position(self, asset, nicr, prev_id, next_id):
        """
        Checks that (prev_id, next_id) is the place a node with this NICR belongs.

        Valid means adjacent neighbours with NICR(prev) >= nicr > NICR(next);
        None stands for "beyond the head" or "beyond the tail".
        """
        data = self.lists.get(asset, SortedList())
        if prev_id is None and next_id is None:
            return data.size == 0
        if prev_id is None:
            return data.head == next_id and nicr > self._nicr(asset, next_id)
        if next_id is None:
            return data.tail == prev_id and nicr <= self._nicr(asset, prev_id)
        return (
            self.get_next(asset, prev_id) == next_id
            and self._nicr(asset, prev_id) >= nicr > self._nicr(asset, next_id)
        )

    def find_insert_position(self, asset, nicr, prev_id=None, next_id=None):
        """
        Resolves hints into a valid (prev_id, next_id) pair.

        Returns:
            Tuple of (prev_id, next_id); either may be None at the ends
        """
        if prev_id is not None:
            if not self.contains(asset, prev_id) or nicr > self._nicr(asset, prev_id):
                # prev_id does not exist anymore or now has a smaller NICR than the new node
                prev_id = None

        if next_id is not None:
            if not self.contains(asset, next_id) or nicr <= self._nicr(asset, next_id):
                # next_id does not exist anymore or its NICR is not below the new node
                next_id = None

        if prev_id is None and next_id is None:
            return self._descend_list(asset, nicr, self.get_first(asset))
        if prev_id is None:
            return self._ascend_list(asset, nicr, next_id)
        return self._descend_list(asset, nicr, prev_id)

    def _descend_list(self, asset, nicr, start_id):
        """Walks from start_id towards the tail. Requires NICR(start_id) >= nicr."""
        data = self.lists.get(asset, SortedList())
        if start_id is None:
            return None, None
        if data.head == start_id and nicr > self._nicr(asset, start_id):
            return None, start_id

        prev_id = start_id
        next_id = self.get_next(asset, prev_id)
        while prev_id is not None and not self.valid_insert_position(asset, nicr, prev_id, next_id):
            prev_id = next_id
            next_id = self.get_next(asset, prev_id) if prev_id is not None else None
        return prev_id, next_id

    def _ascend_list(self, asset, nicr, start_id):
        """Walks from start_id towards the head. Requires nicr > NICR(start_id)."""
        data = self.lists.get(asset, SortedList())
        if data.tail == start_id and nicr <= self._nicr(asset, start_id):
            return start_id, None

        next_id = start_id
        prev_id = self.get_prev(asset, next_id)
        while next_id is not None and not self.valid_insert_position(asset, nicr, prev_id, next_id):
            next_id = prev_id
            prev_id = self.get_prev(asset, next_id) if next_id is not None else None
        return prev_id, next_id

    def _nicr(self, asset, trove_id):
        return self.trove_manager.get_nominal_icr(trove_id, asset)

    def _require_caller_is_trove_manager(self, caller):
        if caller is not self.trove_manager:
            raise AuthorizationError("SortedTroves: Caller is not the TroveManager")

    # --- Getters ---

    def contains(self, asset, trove_id):
        return trove_id in self.nodes.get(asset, {})

    def is_full(self, asset):
        return self.get_size(asset) >= self.max_size

    def is_empty(self, asset):
        return self.get_size(asset) == 0

    def get_size(self, asset):
        return self.lists.get(asset, SortedList()).size

    def get_max_size(self):
        return self.max_size

    def get_first(self, asset):
        """Trove with the highest NICR, or None."""
        return self.lists.get(asset, SortedList()).head

    def get_last(self, asset):
        """Trove with the lowest NICR, or None."""
        return self.lists.get(asset, SortedList()).tail

    def get_next(self, asset, trove_id):
        """Neighbour with the next lower NICR, or None."""
        node = self.nodes.get(asset, {}).get(trove_id)
        return node.next_id if node else None

    def get_prev(self, asset, trove_id):
        """Neighbour with the next higher NICR, or None."""
        node = self.nodes.get(asset, {}).get(trove_id)
        return node.prev_id if node else None

    def iter_troves(self, asset):
        """Yields trove owners from head (highest NICR) to tail."""
        trove_id = self.get_first(asset)
        while trove_id is not None:
            yield trove_id
            trove_id = self.get_next(asset, trove_id)
