from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, Sequence

from .attachments import AttachmentError
from .buffer import HostWriteError
from .models import HandshakeResult, LinkedStateEntry, ReconciliationOutcome, has_state
from .store import StateStoreAdapter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConflictChoice:
    """Two candidate states offered to the user; `candidate_a` is the more recent one."""

    candidate_a: LinkedStateEntry
    candidate_b: LinkedStateEntry
    own_state_available: bool


# Resolves to one of the two offered candidates (suspends until the user picks)
ConflictResolver = Callable[[ConflictChoice], Awaitable[LinkedStateEntry]]


def is_newer(a: Optional[datetime], b: Optional[datetime]) -> bool:
    """True only when both timestamps are known and `a` is strictly later."""
    if a is None or b is None:
        return False
    return a > b


def select_most_recent(entries: Sequence[LinkedStateEntry]) -> Optional[LinkedStateEntry]:
    """
    Pick the most recently updated linked state.

    When the directly linked state (first entry) reports no timestamp it is
    used as the most recent one. Otherwise the greatest `updated_at` wins,
    earlier entries win ties, and entries without a timestamp rank oldest.
    """
    if not entries:
        return None
    direct = entries[0]
    if direct.updated_at is None:
        return direct
    best = direct
    for entry in entries[1:]:
        if is_newer(entry.updated_at, best.updated_at):
            best = entry
    return best


def _picked(chosen: object, candidate: LinkedStateEntry) -> bool:
    # callbacks may hand back the entry or just its state, possibly as a copy
    if chosen is candidate or chosen is candidate.state:
        return True
    return chosen == candidate or chosen == candidate.state


class StateReconciler:
    """
    Decides which state a runtime session starts from.

    Candidates are this instance's own state and the states of linked
    instances. Ambiguous cases are escalated to `resolver` (the user); the
    store is used to clear, touch or adopt state so the same question is not
    asked again on the next load.
    """

    def __init__(self, store: StateStoreAdapter, resolver: ConflictResolver) -> None:
        self._store = store
        self._resolver = resolver

    async def reconcile(self, handshake: HandshakeResult) -> ReconciliationOutcome:
        own_state = handshake.current_state
        links = handshake.linked_states
        if handshake.mode != "runtime" or not links:
            return ReconciliationOutcome(state=own_state, instance_id=handshake.instance_id)

        own_available = has_state(own_state)
        direct = links[0]
        most_recent = select_most_recent(links) or direct

        # Own state exists but a linked state was updated after it
        if own_available and is_newer(most_recent.updated_at, handshake.updated_at):
            own = handshake.own_entry()
            chosen = await self._resolver(
                ConflictChoice(candidate_a=most_recent, candidate_b=own, own_state_available=True)
            )
            if _picked(chosen, most_recent):
                logger.info("Using linked state from %s over own state", most_recent.instance_id)
                # next session initializes from the link unless this one saves
                try:
                    await self._store.clear()
                except HostWriteError as ex:
                    logger.warning("Could not clear own state: %s", ex)
                return ReconciliationOutcome(state=most_recent.state, instance_id=most_recent.instance_id)
            logger.info("Keeping own state over linked state from %s", most_recent.instance_id)
            try:
                await self._store.touch()
            except HostWriteError as ex:
                logger.warning("Could not touch own state: %s", ex)
            return ReconciliationOutcome(state=own_state, instance_id=handshake.instance_id)

        # No own state and a linked state newer than the directly linked one
        if (
            not own_available
            and most_recent is not direct
            and is_newer(most_recent.updated_at, direct.updated_at)
        ):
            chosen = await self._resolver(
                ConflictChoice(candidate_a=most_recent, candidate_b=direct, own_state_available=False)
            )
            picked = most_recent if _picked(chosen, most_recent) else direct
            logger.info("Using linked state from %s", picked.instance_id)
            return ReconciliationOutcome(state=picked.state, instance_id=picked.instance_id)

        # No own state: adopt the directly linked state
        if not own_available:
            logger.info("Adopting directly linked state from %s", direct.instance_id)
            # an attachment reference only resolves under its owner, so store the content itself
            content = await self._store.resolve(direct.state, direct.instance_id)
            try:
                await self._store.save(content)
            except (AttachmentError, HostWriteError) as ex:
                # the session still starts from the linked content
                logger.warning("Could not persist adopted state: %s", ex)
            return ReconciliationOutcome(state=content, instance_id=direct.instance_id)

        return ReconciliationOutcome(state=own_state, instance_id=handshake.instance_id)


__all__ = [
    "ConflictChoice",
    "ConflictResolver",
    "StateReconciler",
    "is_newer",
    "select_most_recent",
]
