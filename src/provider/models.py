from __future__ import annotations

import json
from typing import Any, Dict, Literal, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field


class CloudContent(BaseModel):
    """Envelope around a module state handed to and received from the host application."""

    content: Any = None

    def get_content(self) -> Any:
        return self.content

    def get_text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content)


class CloudMetadata(BaseModel):
    type: Literal["file", "folder"] = "file"
    name: Optional[str] = None
    provider_name: Optional[str] = None
    provider_data: Dict[str, Any] = Field(default_factory=dict)


class OpenSavedParams(BaseModel):
    """
    What a session opens with.

    - interactive_state: state already resolved for this session (None => look elsewhere)
    - document_id: URL of a shared document used when there is no usable state
    """

    model_config = ConfigDict(frozen=True)

    document_id: Optional[str] = None
    interactive_state: Any = None


class RunData(BaseModel):
    """Run telemetry passed to the host application once per runtime session."""

    model_config = ConfigDict(frozen=True)

    operation: Literal["open"] = "open"
    run_state_url: Optional[str] = None
    run_remote_endpoint: str


class ProviderResult(NamedTuple):
    """`(error, value, extra)` triple returned by provider operations."""

    error: Optional[str]
    value: Any = None
    extra: Any = None


__all__ = [
    "CloudContent",
    "CloudMetadata",
    "OpenSavedParams",
    "ProviderResult",
    "RunData",
]
