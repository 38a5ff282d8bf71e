from __future__ import annotations

import copy
import logging
from typing import Any, Optional

from .attachments import AttachmentStore, detect_content_type, dump_json
from .buffer import DeferredStateWriter
from .models import InstanceId


logger = logging.getLogger(__name__)

# Leaves room to persist two copies under a 1 MiB document ceiling
DEFAULT_ATTACHMENT_THRESHOLD = 480 * 1024

# Shared-document storage has always used this name; changing it breaks existing links
DEFAULT_ATTACHMENT_NAME = "file.json"


def serialized_size(state: Any) -> int:
    """Size in bytes of the compact JSON encoding of `state`."""
    return len(dump_json(state).encode("utf-8"))


class StateStoreAdapter:
    """
    Persists and restores the current module instance's state.

    Each save decides between storing the state inline and redirecting it to
    the attachment store (persisting only a `StateReference`). The decision is
    driven by the launch directive (`always_attach`), an optional per-call
    override and the serialized size of the state. Every save, clear and touch
    is flushed to the host right away instead of waiting for the writer's timer.

    The adapter remembers the last persisted value of the session (seeded from
    the handshake), so `load()` reflects this session's own writes.
    """

    def __init__(
        self,
        writer: DeferredStateWriter,
        attachments: AttachmentStore,
        *,
        threshold: int = DEFAULT_ATTACHMENT_THRESHOLD,
        always_attach: bool = False,
        attachment_name: str = DEFAULT_ATTACHMENT_NAME,
    ) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be > 0")
        self._writer = writer
        self._attachments = attachments
        self._threshold = threshold
        self._always_attach = always_attach
        self._attachment_name = attachment_name
        self._current: Any = None

    def seed(self, value: Any) -> None:
        self._current = copy.deepcopy(value)

    def should_attach(self, state: Any, *, disable_attachment_override: bool = False) -> bool:
        if self._always_attach and not disable_attachment_override:
            return True
        return serialized_size(state) >= self._threshold

    async def save(self, state: Any, *, disable_attachment_override: bool = False) -> Any:
        """
        Persist `state` and return the value written to the host.

        Raises AttachmentWriteError when the attachment cannot be written; in
        that case nothing is persisted.
        """
        new_state = copy.deepcopy(state)
        if self.should_attach(new_state, disable_attachment_override=disable_attachment_override):
            ref = await self._attachments.write(
                self._attachment_name, new_state, detect_content_type(new_state)
            )
            persisted: Any = ref.to_value()
            logger.info("State saved as attachment %s", ref.name)
        else:
            persisted = new_state

        self._writer.set_state(persisted)
        await self._writer.flush()
        self._current = persisted
        return copy.deepcopy(persisted)

    async def clear(self) -> None:
        """Remove this instance's state so the next session starts fresh."""
        self._writer.set_state(None)
        await self._writer.flush()
        self._current = None

    async def touch(self) -> None:
        """Bump the state's timestamp without changing its content."""
        self._writer.touch()
        await self._writer.flush()

    async def load(self, owner_id: Optional[InstanceId] = None) -> Any:
        """Return the current state, reading the attachment when one is referenced."""
        return await self._attachments.resolve(self._current, owner_id)

    async def resolve(self, value: Any, owner_id: Optional[InstanceId] = None) -> Any:
        """Content of an arbitrary persisted value (e.g. another instance's state)."""
        return await self._attachments.resolve(value, owner_id)
