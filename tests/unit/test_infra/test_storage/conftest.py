"""Shared fixtures for storage tests.

``FakeDescriptorApi`` is an in-memory descriptor storage API served through
``httpx.MockTransport``. It answers both the metadata API
(``https://api.test/api/v1/storage``) and the presigned object host
(``https://objects.test``), and records every request for assertions.
"""

from __future__ import annotations

from datetime import UTC, datetime
import json
import re

import httpx
import pytest

from storage_gateway.core.settings.credentials import CredentialSettings
from storage_gateway.core.settings.storage import StorageSettings
from storage_gateway.infra.storage.backends.descriptor import DescriptorBackend
from storage_gateway.infra.storage.service import StorageService

API_URL = "https://api.test"
API_KEY = "sk_test_123"
PROJECT_ID = "proj_1"
OBJECT_HOST = "objects.test"

_FILE_PATH = re.compile(r"^/api/v1/storage/files/(?P<id>[^/]+)(?P<rest>/upload|/download|/visibility)?$")
_BY_EXTERNAL = re.compile(r"^/api/v1/storage/files/by-external-id/(?P<ext>[^/]+)$")


class FakeDescriptorApi:
    """In-memory descriptor API plus presigned object store."""

    def __init__(self) -> None:
        self.files: dict[str, dict] = {}
        self.blobs: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.fail: dict[str, int] = {}
        self.html: dict[str, str] = {}
        self.signed_url_payload: dict | None = None
        self._next_id = 1

    # Helpers ---------------------------------------------------------------

    def seed(self, external_id: str, key: str, content: bytes = b"", **fields) -> dict:
        """Insert a completed record directly."""
        file_id = f"f_{self._next_id}"
        self._next_id += 1
        now = datetime(2024, 1, 1, tzinfo=UTC).isoformat()
        record = {
            "file_id": file_id,
            "external_id": external_id,
            "storage_key": key,
            "original_filename": key.rsplit("/", 1)[-1],
            "content_type": fields.pop("content_type", "application/octet-stream"),
            "expected_file_size": len(content),
            "actual_file_size": len(content),
            "upload_status": fields.pop("upload_status", "completed"),
            "metadata": fields.pop("metadata", {}),
            "created_at": now,
            "updated_at": now,
            "uploaded_at": now,
            **fields,
        }
        self.files[file_id] = record
        self.blobs[file_id] = content
        return record

    def _json(self, status: int, data) -> httpx.Response:
        return httpx.Response(status, json={"data": data})

    def _not_found(self) -> httpx.Response:
        return httpx.Response(404, json={"error": "not found"})

    def _by_external(self, external_id: str) -> dict | None:
        return next((f for f in self.files.values() if f["external_id"] == external_id), None)

    # Transport -------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == OBJECT_HOST:
            return self._object_store(request)

        path = request.url.path
        for prefix, status in self.fail.items():
            if f"{request.method} {path}".startswith(prefix):
                return httpx.Response(status, text="injected failure")
        for prefix, body in self.html.items():
            if f"{request.method} {path}".startswith(prefix):
                return httpx.Response(200, text=body, headers={"Content-Type": "text/html"})

        if request.headers.get("X-API-Key") != API_KEY:
            return httpx.Response(401, json={"error": "unauthorized"})

        if path == "/api/v1/storage/files" and request.method == "POST":
            return self._create(json.loads(request.content))
        if path == "/api/v1/storage/files" and request.method == "GET":
            return self._list(request.url.params)

        match = _BY_EXTERNAL.match(path)
        if match:
            record = self._by_external(match["ext"])
            if record is None:
                return self._not_found()
            if request.method == "DELETE":
                del self.files[record["file_id"]]
                return httpx.Response(204)
            return self._json(200, record)

        match = _FILE_PATH.match(path)
        if match is None:
            return self._not_found()
        record = self.files.get(match["id"])
        if record is None:
            return self._not_found()

        rest = match["rest"]
        if rest == "/upload":
            body = json.loads(request.content)
            record["actual_file_size"] = body["actual_file_size"]
            record["upload_status"] = "completed"
            record["uploaded_at"] = datetime.now(UTC).isoformat()
            return self._json(200, record)
        if rest == "/download":
            if self.signed_url_payload is not None:
                return self._json(200, self.signed_url_payload)
            disposition = request.url.params.get("disposition", "attachment")
            return self._json(
                200,
                {"signedUrl": f"https://{OBJECT_HOST}/download/{record['file_id']}?disposition={disposition}&sig=abc"},
            )
        if rest == "/visibility":
            body = json.loads(request.content)
            record["metadata"] = {**record["metadata"], "visibility": body["visibility"]}
            return self._json(200, record)
        if request.method == "DELETE":
            del self.files[record["file_id"]]
            return httpx.Response(204)
        return self._json(200, record)

    def _create(self, body: dict) -> httpx.Response:
        file_id = f"f_{self._next_id}"
        self._next_id += 1
        now = datetime.now(UTC).isoformat()
        self.files[file_id] = {
            "file_id": file_id,
            "external_id": body["external_id"],
            "storage_key": body["file_path"],
            "original_filename": body["original_filename"],
            "content_type": body["content_type"],
            "expected_file_size": body["file_size"],
            "actual_file_size": None,
            "upload_status": "pending",
            "metadata": body.get("metadata") or {},
            "project_id": body.get("project_id"),
            "created_at": now,
            "updated_at": now,
        }
        return self._json(
            201,
            {"file_id": file_id, "upload_url": f"https://{OBJECT_HOST}/upload/{file_id}?sig=put"},
        )

    def _list(self, params: httpx.QueryParams) -> httpx.Response:
        records = sorted(self.files.values(), key=lambda f: f["file_id"])
        if params.get("path_prefix"):
            records = [f for f in records if f["storage_key"].startswith(params["path_prefix"])]
        if params.get("external_id"):
            records = [f for f in records if f["external_id"] == params["external_id"]]
        offset = int(params.get("offset", 0))
        limit = int(params.get("limit", 100))
        page = records[offset : offset + limit]
        return self._json(
            200,
            {"files": page, "total_count": len(records), "has_more": offset + limit < len(records)},
        )

    def _object_store(self, request: httpx.Request) -> httpx.Response:
        kind, _, file_id = request.url.path.strip("/").partition("/")
        if kind == "upload" and request.method == "PUT":
            self.blobs[file_id] = request.content
            return httpx.Response(200)
        if kind != "download" or file_id not in self.blobs:
            return httpx.Response(404, text="NoSuchKey")

        data = self.blobs[file_id]
        content_type = self.files.get(file_id, {}).get("content_type", "application/octet-stream")
        headers = {"Content-Type": content_type, "Accept-Ranges": "bytes", "ETag": f'"etag-{file_id}"'}
        range_header = request.headers.get("Range")
        if not range_header:
            return httpx.Response(200, content=data, headers=headers)

        start_s, _, end_s = range_header.removeprefix("bytes=").partition("-")
        start = int(start_s)
        end = int(end_s) if end_s else len(data) - 1
        if start >= len(data):
            return httpx.Response(416, headers={"Content-Range": f"bytes */{len(data)}"})
        end = min(end, len(data) - 1)
        headers["Content-Range"] = f"bytes {start}-{end}/{len(data)}"
        return httpx.Response(206, content=data[start : end + 1], headers=headers)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def fake_api() -> FakeDescriptorApi:
    """In-memory descriptor API."""
    return FakeDescriptorApi()


@pytest.fixture
def credential_settings() -> CredentialSettings:
    """Credential settings with keychain and CLI lookups disabled."""
    return CredentialSettings(keychain_enabled=False, cli_enabled=False)


@pytest.fixture
def descriptor_settings() -> StorageSettings:
    """Descriptor provider settings with explicit credentials."""
    return StorageSettings(
        provider="descriptor",
        api_url=API_URL,
        api_key=API_KEY,
        project_id=PROJECT_ID,
        list_page_size=10,
    )


@pytest.fixture
def descriptor_backend(fake_api, descriptor_settings, credential_settings) -> DescriptorBackend:
    """Descriptor backend wired to the fake API (not started)."""
    transport = httpx.MockTransport(fake_api.handler)
    return DescriptorBackend(
        descriptor_settings,
        credential_settings=credential_settings,
        transport=transport,
        content_transport=transport,
    )


@pytest.fixture
async def descriptor_service(descriptor_settings, descriptor_backend):
    """Started StorageService over the fake descriptor API."""
    service = StorageService(descriptor_settings, backend=descriptor_backend)
    await service.startup()
    yield service
    await service.shutdown()
