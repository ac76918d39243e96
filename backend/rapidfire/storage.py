from __future__ import annotations

import asyncio
import json
from typing import Any

from azure.core.exceptions import ResourceExistsError
from azure.storage.blob import BlobServiceClient, ContentSettings

from .db import settings

_blob_service_client: BlobServiceClient | None = None
_container_initialised = False


def is_configured() -> bool:
    return bool(settings.AZURE_STORAGE_CONNECTION_STRING)


def _get_blob_service() -> BlobServiceClient:
    global _blob_service_client
    if _blob_service_client is None:
        if not settings.AZURE_STORAGE_CONNECTION_STRING:
            raise RuntimeError("Azure Blob Storage is not configured")
        _blob_service_client = BlobServiceClient.from_connection_string(
            settings.AZURE_STORAGE_CONNECTION_STRING
        )
    return _blob_service_client


async def archive_document(round_number: int, kind: str, name: str, document: dict[str, Any]) -> str:
    """Upload a JSON copy of a round record and return the blob URL.

    Blobs are laid out as ``round-<n>/<kind>/<name>.json``; re-archiving the
    same record overwrites it.
    """

    if not name:
        raise ValueError("Archive name must not be empty")

    service = _get_blob_service()
    container_client = service.get_container_client(settings.AZURE_STORAGE_CONTAINER)

    global _container_initialised
    if not _container_initialised:
        try:
            await asyncio.to_thread(container_client.create_container)
        except ResourceExistsError:
            pass
        _container_initialised = True

    blob_name = f"round-{round_number}/{kind}/{name}.json"
    blob_client = container_client.get_blob_client(blob_name)
    body = json.dumps(document, default=str).encode("utf-8")

    await asyncio.to_thread(
        blob_client.upload_blob,
        body,
        overwrite=True,
        content_settings=ContentSettings(content_type="application/json"),
    )
    return blob_client.url
