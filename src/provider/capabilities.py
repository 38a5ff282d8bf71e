from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


Capability = Literal["save", "resave", "export", "load", "list", "remove", "rename", "close"]


class Capabilities(BaseModel):
    """
    Operations a storage provider supports.

    Hosts read these flags to decide which affordances to offer; invoking an
    unsupported operation is a caller error, not a provider failure.
    """

    model_config = ConfigDict(frozen=True)

    save: bool = False
    resave: bool = False
    export: bool = False
    load: bool = False
    list: bool = False
    remove: bool = False
    rename: bool = False
    close: bool = False

    def supports(self, capability: Capability) -> bool:
        return bool(getattr(self, capability, False))


INTERACTIVE_API_CAPABILITIES = Capabilities(
    save=True,
    resave=True,
    export=False,
    load=True,
    list=False,
    remove=False,
    rename=False,
    close=False,
)


__all__ = ["Capabilities", "Capability", "INTERACTIVE_API_CAPABILITIES"]
