from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

from common.documents import DocumentClient, DocumentFetchError, legacy_document_url
from common.rewriter import rewrite_state
from state.attachments import AttachmentBackend, AttachmentError, AttachmentStore
from state.buffer import DeferredStateWriter, HostWriteError
from state.models import LinkedStateEntry, is_empty_object
from state.reconciler import ConflictChoice, StateReconciler
from state.store import StateStoreAdapter

from .capabilities import Capabilities, INTERACTIVE_API_CAPABILITIES
from .config import PARAM_INTERACTIVE_API, ProviderOptions, parse_launch_params
from .handshake import HandshakeError, HostChannel, InitializationHandshake, RunDataCallback
from .models import CloudContent, CloudMetadata, OpenSavedParams, ProviderResult


logger = logging.getLogger(__name__)


class ProviderClient(Protocol):
    """Host application side: dialogs and document opening."""

    async def select_interactive_state(self, choice: ConflictChoice) -> LinkedStateEntry: ...

    def open_provider_file_when_connected(self, provider_name: str, params: OpenSavedParams) -> Any: ...


class InteractiveApiProvider:
    """
    Storage provider that keeps a module's state in its embedding host.

    Notes
    - The host handshake runs once per provider; `ready()` resolves after the
      initial state has been reconciled and handed to the client.
    - Large states (or every state, when launched with `interactiveApi=attachment`)
      are stored as attachments with only a reference kept inline.
    - Operations return `ProviderResult(error, ...)`; transport failures are
      reported in `error` with the backend's message.
    """

    name = "interactiveApi"

    def __init__(
        self,
        host: HostChannel,
        attachments: AttachmentBackend,
        *,
        client: ProviderClient,
        options: Optional[ProviderOptions] = None,
        documents: Optional[DocumentClient] = None,
        on_run_data: Optional[RunDataCallback] = None,
    ) -> None:
        self.options = options or ProviderOptions.from_env()
        self.capabilities: Capabilities = INTERACTIVE_API_CAPABILITIES
        self._client = client
        self._documents = documents or DocumentClient()
        writer = DeferredStateWriter(host, delay=self.options.flush_delay)
        self._store = StateStoreAdapter(
            writer,
            AttachmentStore(attachments),
            threshold=self.options.attachment_threshold,
            always_attach=self.options.always_attach,
            attachment_name=self.options.attachment_name,
        )
        self._handshake = InitializationHandshake(
            host,
            store=self._store,
            reconciler=StateReconciler(self._store, client.select_interactive_state),
            documents=self._documents,
            document_id=self.options.document_id,
            on_run_data=on_run_data,
            on_initial_state=self._open_initial_state,
        )

    @property
    def handshake(self) -> InitializationHandshake:
        return self._handshake

    async def aclose(self) -> None:
        await self._documents.aclose()

    def ready(self) -> "asyncio.Task[OpenSavedParams]":
        """Start (once) and return the initialization of this session."""
        return self._handshake.ready()

    @staticmethod
    def handle_url_params(url_or_query: Optional[str]) -> bool:
        """True when the launch URL asks for this provider (`?interactiveApi[=...]`)."""
        return PARAM_INTERACTIVE_API in parse_launch_params(url_or_query)

    # --------------- Provider API ---------------
    async def load(self, metadata: CloudMetadata) -> ProviderResult:
        """Current state of this instance, wrapped in a `CloudContent` envelope."""
        try:
            await self._handshake.begin()
            raw = await self._store.load(self._handshake.instance_id)
        except (HandshakeError, AttachmentError) as ex:
            return ProviderResult(str(ex))
        content = CloudContent(content=self._rewrite(raw))
        return ProviderResult(None, content, metadata)

    async def save(
        self,
        content: Any,
        metadata: Optional[CloudMetadata] = None,
        *,
        disable_attachment_override: bool = False,
    ) -> ProviderResult:
        """Persist new content; returns `(None, 200, new_state)` on success."""
        try:
            await self._handshake.begin()
        except HandshakeError as ex:
            return ProviderResult(str(ex))
        new_state = content.get_content() if isinstance(content, CloudContent) else content
        try:
            await self._store.save(new_state, disable_attachment_override=disable_attachment_override)
        except (AttachmentError, HostWriteError) as ex:
            logger.warning("Save failed: %s", ex)
            return ProviderResult(str(ex))
        return ProviderResult(None, 200, new_state)

    def can_open_saved(self) -> bool:
        return True

    def get_open_saved_params(self, metadata: CloudMetadata) -> OpenSavedParams:
        return OpenSavedParams(**metadata.provider_data)

    async def open_saved(self, params: OpenSavedParams) -> ProviderResult:
        """
        Open the session's document.

        - A non-empty initial state is used as-is (URLs rewritten).
        - Otherwise the shared document is fetched and becomes this instance's state.
        - Otherwise the document starts as an empty string.
        """
        try:
            await self._handshake.begin()
        except HandshakeError as ex:
            return ProviderResult(str(ex))

        initial = params.interactive_state
        # a failed attachment save can leave `{}` behind; that is not a state
        if initial is not None and not is_empty_object(initial):
            return self._opened(self._rewrite(initial), params)

        if params.document_id:
            try:
                document = await self._documents.fetch_json(self._document_url(params.document_id))
            except DocumentFetchError as ex:
                logger.warning("Unable to fetch shared document %s: %s", params.document_id, ex)
            else:
                state = self._rewrite(document)
                if state:
                    try:
                        await self._store.save(state)
                    except (AttachmentError, HostWriteError) as ex:
                        return ProviderResult(str(ex))
                    return self._opened(state, params)
            return ProviderResult(f"Unable to open saved document: {params.document_id}!")

        try:
            await self._store.save("")
        except (AttachmentError, HostWriteError) as ex:
            return ProviderResult(str(ex))
        return self._opened("", params)

    # --------------- Internal ---------------
    def _opened(self, state: Any, params: OpenSavedParams) -> ProviderResult:
        metadata = CloudMetadata(
            type="file",
            provider_name=self.name,
            provider_data=params.model_dump(exclude={"interactive_state"}),
        )
        return ProviderResult(None, CloudContent(content=state), metadata)

    def _document_url(self, document_id: str) -> str:
        if "://" in document_id:
            return document_id
        return legacy_document_url(document_id, self.options.token_service_env)

    def _rewrite(self, state: Any) -> Any:
        return rewrite_state(state, self._handshake.host_domain)

    async def _open_initial_state(self, params: OpenSavedParams) -> None:
        ret = self._client.open_provider_file_when_connected(self.name, params)
        if asyncio.iscoroutine(ret):
            await ret


__all__ = ["InteractiveApiProvider", "ProviderClient"]
