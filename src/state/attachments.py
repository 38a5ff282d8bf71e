from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

import boto3
from botocore.exceptions import ClientError

from .models import InstanceId, JSON_CONTENT_TYPE, StateReference, TEXT_CONTENT_TYPE


logger = logging.getLogger(__name__)

# Environment variable names for the S3 backend
ENV_BUCKET = "INTERACTIVE_ATTACHMENT_BUCKET"
ENV_PREFIX = "INTERACTIVE_ATTACHMENT_PREFIX"
ENV_OWNER = "INTERACTIVE_ATTACHMENT_OWNER"


class AttachmentError(RuntimeError):
    """Base error for attachment storage."""


class AttachmentWriteError(AttachmentError):
    """The backend refused or failed an attachment write."""


class AttachmentReadError(AttachmentError):
    """The backend could not return the attachment contents."""


@dataclass
class AttachmentResponse:
    ok: bool
    status_text: Optional[str] = None
    body: Union[bytes, str, None] = None

    def text(self) -> str:
        if self.body is None:
            return ""
        if isinstance(self.body, bytes):
            return self.body.decode("utf-8")
        return self.body

    def json(self) -> Any:
        return json.loads(self.text())


class AttachmentBackend(Protocol):
    async def write(self, name: str, content: str, content_type: str) -> AttachmentResponse: ...

    async def read(self, name: str, owner_id: Optional[InstanceId] = None) -> AttachmentResponse: ...


def detect_content_type(value: Any) -> str:
    """Plain strings are stored as text; everything else as JSON."""
    return TEXT_CONTENT_TYPE if isinstance(value, str) else JSON_CONTENT_TYPE


def dump_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


class AttachmentStore:
    """
    Auxiliary storage for states too large to keep inline.

    - `write()` stores the content and returns the `StateReference` to persist
      in place of the state.
    - `read()` returns parsed JSON or text according to the declared content type.
    - `resolve()` turns a persisted value into real content, reading the
      attachment when the value is a reference.
    """

    def __init__(self, backend: AttachmentBackend) -> None:
        self._backend = backend

    async def write(self, name: str, content: Any, content_type: Optional[str] = None) -> StateReference:
        ctype = content_type or detect_content_type(content)
        payload = dump_json(content) if ctype == JSON_CONTENT_TYPE else str(content)
        resp = await self._backend.write(name, payload, ctype)
        if not resp.ok:
            raise AttachmentWriteError(resp.status_text or "Attachment write failed")
        logger.debug("Wrote attachment %s (%s, %d chars)", name, ctype, len(payload))
        return StateReference(name=name, content_type=ctype)

    async def read(
        self,
        name: str,
        owner_id: Optional[InstanceId] = None,
        *,
        content_type: Optional[str] = JSON_CONTENT_TYPE,
    ) -> Any:
        resp = await self._backend.read(name, owner_id)
        if not resp.ok:
            raise AttachmentReadError(f'Error reading attachment contents! ["{resp.status_text}"]')
        if content_type == JSON_CONTENT_TYPE:
            try:
                return resp.json()
            except ValueError as ex:
                raise AttachmentReadError(f"Attachment {name} is not valid JSON") from ex
        return resp.text()

    async def resolve(self, value: Any, owner_id: Optional[InstanceId] = None) -> Any:
        ref = StateReference.from_value(value)
        if ref is None:
            return copy.deepcopy(value)
        return await self.read(ref.name, owner_id, content_type=ref.content_type)


class S3AttachmentBackend:
    """
    S3-backed attachment storage keyed to a module instance.

    Objects live at `<prefix>/<owner_id>/<name>`. Reads for another instance
    (e.g. a linked state) pass that instance's id as `owner_id`; writes always
    go to this backend's own instance.

    Environment variables (optional)
    - `INTERACTIVE_ATTACHMENT_BUCKET`: S3 bucket
    - `INTERACTIVE_ATTACHMENT_PREFIX`: key prefix (default "attachments")
    - `INTERACTIVE_ATTACHMENT_OWNER`:  instance id used for writes
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        owner_id: InstanceId,
        prefix: str = "attachments",
        region_name: Optional[str] = None,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._bucket = bucket
        self._owner_id = owner_id
        self._prefix = prefix.strip("/")

    @classmethod
    def from_env(cls, *, owner_id: Optional[InstanceId] = None) -> "S3AttachmentBackend":
        bucket = os.environ.get(ENV_BUCKET)
        owner = owner_id if owner_id is not None else os.environ.get(ENV_OWNER)
        if not bucket or owner in (None, ""):
            missing = [name for name, val in [(ENV_BUCKET, bucket), (ENV_OWNER, owner)] if val in (None, "")]
            raise RuntimeError(
                f"Missing required environment variables for S3 attachments: {', '.join(missing)}"
            )
        prefix = os.environ.get(ENV_PREFIX) or "attachments"
        return cls(bucket=bucket, owner_id=owner, prefix=prefix)

    def key_for(self, name: str, owner_id: Optional[InstanceId] = None) -> str:
        owner = self._owner_id if owner_id is None else owner_id
        parts = [p for p in (self._prefix, str(owner), name) if p]
        return "/".join(parts)

    async def write(self, name: str, content: str, content_type: str) -> AttachmentResponse:
        key = self.key_for(name)

        def _put() -> None:
            self._s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=content.encode("utf-8"),
                ContentType=content_type,
                CacheControl="no-cache",
            )

        try:
            await asyncio.to_thread(_put)
        except ClientError as e:
            return AttachmentResponse(ok=False, status_text=_client_error_text(e))
        return AttachmentResponse(ok=True, status_text="OK")

    async def read(self, name: str, owner_id: Optional[InstanceId] = None) -> AttachmentResponse:
        key = self.key_for(name, owner_id)

        def _get() -> bytes:
            resp = self._s3.get_object(Bucket=self._bucket, Key=key)
            return resp["Body"].read()

        try:
            body = await asyncio.to_thread(_get)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                return AttachmentResponse(ok=False, status_text="Not Found")
            return AttachmentResponse(ok=False, status_text=_client_error_text(e))
        return AttachmentResponse(ok=True, status_text="OK", body=body)


def _client_error_text(e: ClientError) -> str:
    err = e.response.get("Error", {})
    code = err.get("Code") or "Error"
    message = err.get("Message")
    return f"{code}: {message}" if message else str(code)


__all__ = [
    "AttachmentBackend",
    "AttachmentError",
    "AttachmentReadError",
    "AttachmentResponse",
    "AttachmentStore",
    "AttachmentWriteError",
    "S3AttachmentBackend",
    "detect_content_type",
    "dump_json",
]
