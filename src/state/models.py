from __future__ import annotations

from datetime import datetime, UTC
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


RunMode = Literal["authoring", "runtime", "report", "reportItem"]
InstanceId = Union[int, str]

JSON_CONTENT_TYPE = "application/json"
TEXT_CONTENT_TYPE = "text/plain"

# Key used in the persisted form of an attachment reference
ATTACHMENT_MARKER = "__attachment__"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Hosts report naive ISO strings as well as offset-aware ones
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def is_empty_object(value: Any) -> bool:
    return isinstance(value, dict) and not value


def has_state(value: Any) -> bool:
    """False for None, "" and {} (hosts report these for instances that never saved)."""
    return value is not None and value != "" and not is_empty_object(value)


class StateReference(BaseModel):
    """
    Small record persisted in place of a state that was written as an attachment.

    Persisted form (what the host stores as the module's state):
        {"__attachment__": "<name>", "contentType": "application/json" | "text/plain"}

    A reference only ever stands for a whole state; a marker nested somewhere
    inside a state is plain data.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["attachment"] = "attachment"
    name: str
    content_type: Optional[str] = None

    def to_value(self) -> Dict[str, Any]:
        return {ATTACHMENT_MARKER: self.name, "contentType": self.content_type}

    @staticmethod
    def is_reference(value: Any, name: Optional[str] = None) -> bool:
        if not isinstance(value, dict):
            return False
        marker = value.get(ATTACHMENT_MARKER)
        if not isinstance(marker, str) or not marker:
            return False
        return name is None or marker == name

    @classmethod
    def from_value(cls, value: Any) -> Optional["StateReference"]:
        if not cls.is_reference(value):
            return None
        return cls(name=value[ATTACHMENT_MARKER], content_type=value.get("contentType"))


class LinkedStateEntry(BaseModel):
    """
    A state produced by a related module instance.

    `updated_at` is None when the host does not report it, meaning the
    recency of the entry is unknown (not that it is old).
    """

    model_config = ConfigDict(frozen=True)

    instance_id: Optional[InstanceId] = None
    state: Any = None
    updated_at: Optional[datetime] = None

    @field_validator("updated_at")
    @classmethod
    def utc_updated_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @classmethod
    def from_host(cls, raw: Dict[str, Any]) -> "LinkedStateEntry":
        """Accept `{instanceId | interactiveId, state}` and LARA-style `{interactive: {id}, interactiveState}`."""
        instance_id = raw.get("instanceId")
        if instance_id is None:
            instance_id = raw.get("interactiveId")
        if instance_id is None:
            interactive = raw.get("interactive")
            if isinstance(interactive, dict):
                instance_id = interactive.get("id")
        if "state" in raw:
            state = raw.get("state")
        else:
            state = raw.get("interactiveState")
        return cls(instance_id=instance_id, state=state, updated_at=raw.get("updatedAt"))


class HandshakeResult(BaseModel):
    """
    Run context obtained once per session from the host.

    Fields
    - mode: authoring | runtime | report | reportItem
    - instance_id: identity of this module instance (runtime only)
    - current_state: raw persisted state of this instance (may be a reference)
    - linked_states: related states, the first one being the directly linked one
    - updated_at: timestamp of `current_state`, if reported
    - host_domain: domain that embedded URLs are rewritten to
    - run_remote_endpoint / class_info_url / interactive_state_url: run telemetry inputs
    """

    model_config = ConfigDict(frozen=True)

    mode: RunMode
    instance_id: Optional[InstanceId] = None
    current_state: Any = None
    linked_states: List[LinkedStateEntry] = Field(default_factory=list)
    updated_at: Optional[datetime] = None
    host_domain: Optional[str] = None
    run_remote_endpoint: Optional[str] = None
    class_info_url: Optional[str] = None
    interactive_state_url: Optional[str] = None

    @field_validator("updated_at")
    @classmethod
    def utc_updated_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @classmethod
    def from_host(cls, payload: Dict[str, Any]) -> "HandshakeResult":
        """
        Build a result from the host payload.

        Both the flat shape (`instanceId`, `currentState`, `linkedStates`,
        `hostDomain`) and the nested init-message shape (`interactive.id`,
        `interactiveState`, `allLinkedStates`, `hostFeatures.domain`) are accepted.
        """
        instance_id = payload.get("instanceId")
        if instance_id is None:
            interactive = payload.get("interactive")
            if isinstance(interactive, dict):
                instance_id = interactive.get("id")

        if "currentState" in payload:
            current = payload.get("currentState")
        else:
            current = payload.get("interactiveState")

        raw_links = payload.get("linkedStates")
        if raw_links is None:
            raw_links = payload.get("allLinkedStates")
        links = [LinkedStateEntry.from_host(item) for item in (raw_links or []) if isinstance(item, dict)]

        host_domain = payload.get("hostDomain")
        if host_domain is None:
            features = payload.get("hostFeatures")
            if isinstance(features, dict):
                host_domain = features.get("domain")

        return cls(
            mode=payload.get("mode"),
            instance_id=instance_id,
            current_state=current,
            linked_states=links,
            updated_at=payload.get("updatedAt"),
            host_domain=host_domain,
            run_remote_endpoint=payload.get("runRemoteEndpoint"),
            class_info_url=payload.get("classInfoUrl"),
            interactive_state_url=payload.get("interactiveStateUrl"),
        )

    def own_entry(self) -> LinkedStateEntry:
        """This instance's own state as a candidate comparable with linked entries."""
        return LinkedStateEntry(
            instance_id=self.instance_id, state=self.current_state, updated_at=self.updated_at
        )


class ReconciliationOutcome(BaseModel):
    """The state to start from and the instance that owns it."""

    model_config = ConfigDict(frozen=True)

    state: Any = None
    instance_id: Optional[InstanceId] = None


__all__ = [
    "ATTACHMENT_MARKER",
    "HandshakeResult",
    "InstanceId",
    "JSON_CONTENT_TYPE",
    "LinkedStateEntry",
    "ReconciliationOutcome",
    "RunMode",
    "StateReference",
    "TEXT_CONTENT_TYPE",
    "has_state",
    "is_empty_object",
]
