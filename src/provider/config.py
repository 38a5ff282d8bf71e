from __future__ import annotations

import os
from typing import Dict, List, Optional
from urllib.parse import parse_qs, urlsplit

from pydantic import BaseModel, ConfigDict, Field

from state.buffer import DEFAULT_FLUSH_DELAY
from state.store import DEFAULT_ATTACHMENT_NAME, DEFAULT_ATTACHMENT_THRESHOLD


# Launch (query string) parameters
PARAM_INTERACTIVE_API = "interactiveApi"
PARAM_DOCUMENT_ID = "documentId"

# `?interactiveApi=attachment` always saves state as an attachment
ATTACHMENT_PARAM_VALUE = "attachment"

# Environment configuration
ENV_ATTACHMENT_THRESHOLD = "INTERACTIVE_ATTACHMENT_THRESHOLD"
ENV_FLUSH_DELAY = "INTERACTIVE_FLUSH_DELAY"
ENV_TOKEN_SERVICE_ENV = "TOKEN_SERVICE_ENV"


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    return v if v not in (None, "") else default


def _getenv_number(name: str, default: float) -> float:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as ex:
        raise RuntimeError(f"Invalid numeric configuration {name}={raw!r}") from ex


def parse_launch_params(url_or_query: Optional[str]) -> Dict[str, List[str]]:
    """
    Parse launch parameters from a full URL or a bare query string.

    Parameters present without a value (`?interactiveApi`) map to `[""]`.
    """
    if not url_or_query:
        return {}
    query = urlsplit(url_or_query).query if "://" in url_or_query else url_or_query.lstrip("?")
    return parse_qs(query, keep_blank_values=True)


class ProviderOptions(BaseModel):
    """
    Provider configuration.

    Fields
    - always_attach: launched with `interactiveApi=attachment`
    - document_id: shared document to open when the session has no state
    - attachment_threshold: serialized size (bytes) at which states go to an attachment
    - attachment_name: name of the state attachment
    - flush_delay: seconds the host writer batches writes before sending them
    - token_service_env: document storage environment (dev | staging | production)
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    always_attach: bool = False
    document_id: Optional[str] = None
    attachment_threshold: int = Field(default=DEFAULT_ATTACHMENT_THRESHOLD, gt=0)
    attachment_name: str = DEFAULT_ATTACHMENT_NAME
    flush_delay: float = Field(default=DEFAULT_FLUSH_DELAY, ge=0)
    token_service_env: str = "staging"

    @classmethod
    def from_env(cls, **overrides) -> "ProviderOptions":
        values = {
            "attachment_threshold": int(
                _getenv_number(ENV_ATTACHMENT_THRESHOLD, DEFAULT_ATTACHMENT_THRESHOLD)
            ),
            "flush_delay": _getenv_number(ENV_FLUSH_DELAY, DEFAULT_FLUSH_DELAY),
            "token_service_env": _getenv(ENV_TOKEN_SERVICE_ENV, "staging"),
        }
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_launch(cls, url_or_query: Optional[str]) -> "ProviderOptions":
        """Environment defaults combined with the launch URL's parameters."""
        params = parse_launch_params(url_or_query)
        api = params.get(PARAM_INTERACTIVE_API)
        document_ids = params.get(PARAM_DOCUMENT_ID) or []
        return cls.from_env(
            enabled=api is not None,
            always_attach=api is not None and ATTACHMENT_PARAM_VALUE in api,
            document_id=document_ids[0] if document_ids and document_ids[0] else None,
        )


__all__ = [
    "ATTACHMENT_PARAM_VALUE",
    "PARAM_DOCUMENT_ID",
    "PARAM_INTERACTIVE_API",
    "ProviderOptions",
    "parse_launch_params",
]
