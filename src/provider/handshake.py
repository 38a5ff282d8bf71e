from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

from pydantic import ValidationError

from common.documents import DocumentClient
from state.attachments import AttachmentError
from state.buffer import HostStateChannel
from state.models import HandshakeResult, InstanceId, ReconciliationOutcome
from state.reconciler import StateReconciler
from state.store import StateStoreAdapter

from .models import OpenSavedParams, RunData


logger = logging.getLogger(__name__)


class HandshakeError(RuntimeError):
    """The host's run context could not be obtained or understood."""


class HostChannel(HostStateChannel, Protocol):
    """Host environment the module is embedded in."""

    async def init_interactive(self) -> Dict[str, Any]: ...


RunDataCallback = Callable[[RunData], Any]
InitialStateCallback = Callable[[OpenSavedParams], Union[None, Awaitable[None]]]


class InitializationHandshake:
    """
    One-time startup exchange with the host, owned by a single provider session.

    - `begin()` requests the run context once; later calls return the same
      in-flight or finished task.
    - `ready()` runs the second stage once: run telemetry and initial state
      resolution run concurrently, and the stage completes when both finish.
      Telemetry failures are logged and never reach the caller.
    """

    def __init__(
        self,
        host: HostChannel,
        *,
        store: StateStoreAdapter,
        reconciler: StateReconciler,
        documents: DocumentClient,
        document_id: Optional[str] = None,
        on_run_data: Optional[RunDataCallback] = None,
        on_initial_state: Optional[InitialStateCallback] = None,
    ) -> None:
        self._host = host
        self._store = store
        self._reconciler = reconciler
        self._documents = documents
        self._document_id = document_id
        self._on_run_data = on_run_data
        self._on_initial_state = on_initial_state
        self._task: Optional[asyncio.Task] = None
        self._ready_task: Optional[asyncio.Task] = None
        self._result: Optional[HandshakeResult] = None

    @property
    def host_domain(self) -> Optional[str]:
        return self._result.host_domain if self._result else None

    @property
    def instance_id(self) -> Optional[InstanceId]:
        """Identity used for this instance's attachments (runtime only)."""
        if self._result is None or self._result.mode != "runtime":
            return None
        return self._result.instance_id

    def begin(self) -> "asyncio.Task[HandshakeResult]":
        if self._task is None:
            self._task = asyncio.ensure_future(self._request())
        return self._task

    def ready(self) -> "asyncio.Task[OpenSavedParams]":
        if self._ready_task is None:
            self._ready_task = asyncio.ensure_future(self._complete())
        return self._ready_task

    async def initial_outcome(self, result: HandshakeResult) -> Optional[ReconciliationOutcome]:
        """Starting state by run mode; None when the mode has no state at all."""
        if result.mode in ("authoring", "reportItem"):
            return None
        if result.mode == "report":
            # reports are static snapshots
            return ReconciliationOutcome(state=result.current_state)
        return await self._reconciler.reconcile(result)

    # --------------- Internal ---------------
    async def _request(self) -> HandshakeResult:
        try:
            payload = await self._host.init_interactive()
        except Exception as ex:
            raise HandshakeError(str(ex)) from ex
        if not isinstance(payload, dict):
            raise HandshakeError("Malformed init message from host")
        try:
            result = HandshakeResult.from_host(payload)
        except ValidationError as ve:
            raise HandshakeError(f"Invalid init message from host: {ve}") from ve
        self._store.seed(result.current_state)
        self._result = result
        logger.debug("Handshake complete: mode=%s instance=%s", result.mode, result.instance_id)
        return result

    async def _complete(self) -> OpenSavedParams:
        result = await self.begin()
        _, params = await asyncio.gather(
            self._report_run_data(result),
            self._resolve_initial_state(result),
        )
        return params

    async def _resolve_initial_state(self, result: HandshakeResult) -> OpenSavedParams:
        state: Any = None
        try:
            outcome = await self.initial_outcome(result)
            if outcome is not None:
                state = await self._store.resolve(outcome.state, outcome.instance_id)
        except AttachmentError as ex:
            # start empty rather than fail the session
            logger.warning("Ignoring unreadable initial state: %s", ex)
        params = OpenSavedParams(document_id=self._document_id, interactive_state=state)
        if self._on_initial_state is not None:
            ret = self._on_initial_state(params)
            if inspect.isawaitable(ret):
                await ret
        return params

    async def _report_run_data(self, result: HandshakeResult) -> None:
        if result.mode != "runtime" or self._on_run_data is None:
            return
        try:
            if result.run_remote_endpoint:
                self._emit_run_data(result.interactive_state_url, result.run_remote_endpoint)
            elif result.class_info_url and result.interactive_state_url:
                # logged-in runs expose the endpoint only through the run state
                run_state = await self._documents.fetch_json(result.interactive_state_url)
                endpoint = run_state.get("run_remote_endpoint") if isinstance(run_state, dict) else None
                self._emit_run_data(result.interactive_state_url, endpoint)
        except Exception as ex:
            logger.debug("Run endpoint lookup failed: %s", ex)

    def _emit_run_data(self, run_state_url: Optional[str], endpoint: Optional[str]) -> None:
        if not endpoint or self._on_run_data is None:
            return
        self._on_run_data(RunData(run_state_url=run_state_url, run_remote_endpoint=endpoint))


__all__ = [
    "HandshakeError",
    "HostChannel",
    "InitializationHandshake",
    "InitialStateCallback",
    "RunDataCallback",
]
