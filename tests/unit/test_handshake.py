from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import httpx
import pytest

from common.documents import DocumentClient
from provider.handshake import HandshakeError, InitializationHandshake
from provider.models import OpenSavedParams, RunData
from state.attachments import AttachmentResponse, AttachmentStore
from state.buffer import DeferredStateWriter
from state.models import HandshakeResult, LinkedStateEntry
from state.reconciler import ConflictChoice, StateReconciler
from state.store import StateStoreAdapter


class _FakeHost:
    def __init__(self, payload: Any) -> None:
        self.payload = payload
        self.init_calls = 0
        self.writes: List[Any] = []
        self.touches = 0

    async def init_interactive(self) -> Dict[str, Any]:
        self.init_calls += 1
        await asyncio.sleep(0)
        return self.payload

    async def write_state(self, state: Any) -> None:
        self.writes.append(state)

    async def touch_state(self) -> None:
        self.touches += 1


class _MemoryBackend:
    def __init__(self) -> None:
        self.objects: Dict[tuple, str] = {}

    async def write(self, name: str, content: str, content_type: str) -> AttachmentResponse:
        self.objects[("self", name)] = content
        return AttachmentResponse(ok=True)

    async def read(self, name: str, owner_id=None) -> AttachmentResponse:
        body = self.objects.get((str(owner_id or "self"), name))
        if body is None:
            return AttachmentResponse(ok=False, status_text="Not Found")
        return AttachmentResponse(ok=True, body=body)


def _documents(handler=None) -> DocumentClient:
    def default(_: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler or default))
    return DocumentClient(client=client)


def _make(payload: Any, *, handler=None, on_run_data=None, document_id: Optional[str] = None):
    host = _FakeHost(payload)
    backend = _MemoryBackend()
    store = StateStoreAdapter(DeferredStateWriter(host), AttachmentStore(backend))
    prompts: List[ConflictChoice] = []
    opened: List[OpenSavedParams] = []

    async def resolver(choice: ConflictChoice):
        prompts.append(choice)
        return choice.candidate_a

    handshake = InitializationHandshake(
        host,
        store=store,
        reconciler=StateReconciler(store, resolver),
        documents=_documents(handler),
        document_id=document_id,
        on_run_data=on_run_data,
        on_initial_state=opened.append,
    )
    return handshake, host, backend, store, prompts, opened


def test_from_host_accepts_nested_init_message():
    result = HandshakeResult.from_host(
        {
            "mode": "runtime",
            "interactive": {"id": 42},
            "interactiveState": {"a": 1},
            "updatedAt": "2024-09-01T10:00:00",
            "hostFeatures": {"domain": "host.example.com"},
            "allLinkedStates": [
                {"interactive": {"id": 7}, "interactiveState": {"b": 2}, "updatedAt": "2024-09-02T10:00:00Z"},
                {"instanceId": 8, "state": "text"},
            ],
        }
    )

    assert result.instance_id == 42
    assert result.current_state == {"a": 1}
    assert result.host_domain == "host.example.com"
    assert result.updated_at is not None and result.updated_at.tzinfo is not None
    assert [e.instance_id for e in result.linked_states] == [7, 8]
    assert result.linked_states[0].state == {"b": 2}
    assert result.linked_states[1].updated_at is None
    assert result.linked_states[0].updated_at > result.updated_at


@pytest.mark.asyncio
async def test_begin_is_memoized():
    handshake, host, *_ = _make({"mode": "runtime", "instanceId": 1})

    first = handshake.begin()
    second = handshake.begin()
    assert first is second

    r1 = await first
    r2 = await handshake.begin()
    assert r1 is r2
    assert host.init_calls == 1
    assert handshake.instance_id == 1


@pytest.mark.asyncio
async def test_ready_is_memoized_and_reuses_handshake():
    handshake, host, _backend, _store, _prompts, opened = _make({"mode": "runtime", "instanceId": 1})

    p1 = await handshake.ready()
    p2 = await handshake.ready()

    assert p1 is p2
    assert host.init_calls == 1
    assert len(opened) == 1


@pytest.mark.asyncio
async def test_invalid_payload_raises_handshake_error():
    handshake, *_ = _make({"mode": "sideways"})
    with pytest.raises(HandshakeError):
        await handshake.begin()

    handshake, *_ = _make(["not", "a", "dict"])
    with pytest.raises(HandshakeError):
        await handshake.begin()


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["authoring", "reportItem"])
async def test_modes_without_state(mode: str):
    handshake, _host, _backend, _store, prompts, opened = _make(
        {"mode": mode, "currentState": {"a": 1}}, document_id="https://docs.example.com/doc.json"
    )

    params = await handshake.ready()

    assert params.interactive_state is None
    assert params.document_id == "https://docs.example.com/doc.json"
    assert opened == [params]
    assert prompts == []


@pytest.mark.asyncio
async def test_report_mode_uses_reported_state_without_reconciling():
    payload = {
        "mode": "report",
        "instanceId": 1,
        "currentState": {"report": True},
        "updatedAt": "2024-09-01T00:00:00Z",
        "linkedStates": [{"instanceId": 2, "state": {"linked": True}, "updatedAt": "2024-09-05T00:00:00Z"}],
    }
    handshake, host, _backend, _store, prompts, _opened = _make(payload)

    params = await handshake.ready()

    assert params.interactive_state == {"report": True}
    assert prompts == []
    assert host.writes == [] and host.touches == 0
    assert handshake.instance_id is None


@pytest.mark.asyncio
async def test_runtime_reconciles_and_resolves_linked_attachment():
    payload = {
        "mode": "runtime",
        "instanceId": 1,
        "currentState": {"own": True},
        "updatedAt": "2024-09-01T00:00:00Z",
        "linkedStates": [
            {
                "instanceId": 2,
                "state": {"__attachment__": "file.json", "contentType": "application/json"},
                "updatedAt": "2024-09-05T00:00:00Z",
            }
        ],
    }
    handshake, host, backend, store, prompts, _opened = _make(payload)
    backend.objects[("2", "file.json")] = '{"linked": "big"}'

    params = await handshake.ready()

    assert len(prompts) == 1
    assert params.interactive_state == {"linked": "big"}
    # picking the linked state clears this instance's own state
    assert host.writes == [None]
    assert await store.load() is None


@pytest.mark.asyncio
async def test_unreadable_initial_attachment_starts_empty():
    payload = {
        "mode": "runtime",
        "instanceId": 1,
        "currentState": {"__attachment__": "file.json", "contentType": "application/json"},
    }
    handshake, *_rest = _make(payload)

    params = await handshake.ready()

    assert params.interactive_state is None


@pytest.mark.asyncio
async def test_run_data_reported_from_init_message():
    reported: List[RunData] = []
    payload = {
        "mode": "runtime",
        "instanceId": 1,
        "runRemoteEndpoint": "https://portal.example.com/runs/abc",
        "interactiveStateUrl": "https://host.example.com/states/1",
    }
    handshake, *_ = _make(payload, on_run_data=reported.append)

    await handshake.ready()

    assert reported == [
        RunData(run_state_url="https://host.example.com/states/1", run_remote_endpoint="https://portal.example.com/runs/abc")
    ]


@pytest.mark.asyncio
async def test_run_data_looked_up_from_run_state():
    reported: List[RunData] = []
    requests: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(str(request.url))
        return httpx.Response(200, json={"run_remote_endpoint": "https://portal.example.com/runs/xyz"})

    payload = {
        "mode": "runtime",
        "instanceId": 1,
        "classInfoUrl": "https://portal.example.com/classes/5",
        "interactiveStateUrl": "https://host.example.com/states/1",
    }
    handshake, *_ = _make(payload, handler=handler, on_run_data=reported.append)

    await handshake.ready()

    assert requests == ["https://host.example.com/states/1"]
    assert [r.run_remote_endpoint for r in reported] == ["https://portal.example.com/runs/xyz"]


@pytest.mark.asyncio
async def test_run_data_lookup_failure_is_swallowed():
    reported: List[RunData] = []

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    payload = {
        "mode": "runtime",
        "instanceId": 1,
        "currentState": {"own": 1},
        "classInfoUrl": "https://portal.example.com/classes/5",
        "interactiveStateUrl": "https://host.example.com/states/1",
    }
    handshake, *_ = _make(payload, handler=handler, on_run_data=reported.append)

    params = await handshake.ready()

    assert reported == []
    assert params.interactive_state == {"own": 1}


@pytest.mark.asyncio
async def test_run_data_skipped_outside_runtime():
    reported: List[RunData] = []
    payload = {"mode": "report", "runRemoteEndpoint": "https://portal.example.com/runs/abc"}
    handshake, *_ = _make(payload, on_run_data=reported.append)

    await handshake.ready()

    assert reported == []


@pytest.mark.asyncio
async def test_host_init_failure_becomes_handshake_error():
    handshake, host, *_ = _make({"mode": "runtime", "instanceId": 1})

    async def unreachable() -> Dict[str, Any]:
        raise ConnectionError("no host")

    host.init_interactive = unreachable

    with pytest.raises(HandshakeError, match="no host"):
        await handshake.begin()


@pytest.mark.asyncio
async def test_unreadable_direct_link_attachment_starts_empty():
    payload = {
        "mode": "runtime",
        "instanceId": 1,
        "linkedStates": [{"instanceId": 2, "state": {"__attachment__": "file.json"}}],
    }
    handshake, host, _backend, _store, _prompts, opened = _make(payload)

    params = await handshake.ready()

    assert params.interactive_state is None
    assert opened == [params]
    assert host.writes == []


def test_linked_entry_accepts_interactive_id_key():
    entry = LinkedStateEntry.from_host({"interactiveId": "abc", "interactiveState": {"x": 1}})

    assert entry.instance_id == "abc"
    assert entry.state == {"x": 1}
