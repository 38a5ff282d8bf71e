from __future__ import annotations

from typing import Any, Optional

import httpx


STAGING_DOCUMENT_BASE = "https://token-service-files.concordqa.org"
PRODUCTION_DOCUMENT_BASE = "https://models-resources.concord.org"
LEGACY_DOCUMENT_PATH = "legacy-document-store"


class DocumentFetchError(RuntimeError):
    """A shared document or run state could not be fetched or decoded."""


def base_document_url(env: str = "staging") -> str:
    return PRODUCTION_DOCUMENT_BASE if env == "production" else STAGING_DOCUMENT_BASE


def legacy_document_url(document_id: str, env: str = "staging") -> str:
    """
    Location of a document shared through the legacy document store.

    Migrated legacy document ids live under a dedicated folder whose objects
    redirect to the document's current location.
    """
    return f"{base_document_url(env)}/{LEGACY_DOCUMENT_PATH}/{document_id}"


class DocumentClient:
    """
    Minimal async client for JSON documents served over plain HTTP GET.

    Notes
    - Used for shared documents (opened by reference) and for run state lookups.
    - Failures are reported as `DocumentFetchError`; there are no retries,
      timeouts are left to the transport.
    """

    def __init__(
        self,
        *,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "DocumentClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def fetch_json(self, url: str, *, headers: Optional[dict] = None) -> Any:
        """GET `url` and return the decoded JSON body."""
        try:
            resp = await self._client.get(url, headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise DocumentFetchError(f"Request to {url} failed: {exc}") from exc

        if not resp.is_success:
            raise DocumentFetchError(f"HTTP {resp.status_code} from {url}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as exc:
            raise DocumentFetchError(f"Failed to parse JSON from {url}") from exc


__all__ = [
    "DocumentClient",
    "DocumentFetchError",
    "base_document_url",
    "legacy_document_url",
]
