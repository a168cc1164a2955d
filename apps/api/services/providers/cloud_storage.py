"""Google Cloud Storage upload of finished videos."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

from google.cloud import storage
from google.oauth2 import service_account

from services.errors import StorageUploadError
from services.providers.types import ObjectStorage

logger = logging.getLogger(__name__)


def public_url(bucket_name: str, object_name: str) -> str:
    return f"https://storage.googleapis.com/{bucket_name}/{object_name}"


class GcsObjectStorage(ObjectStorage):
    def __init__(
        self,
        bucket_name: str,
        *,
        client: Optional[storage.Client] = None,
        content_type: str = "video/mp4",
        cache_control: str = "public, max-age=31536000",
    ) -> None:
        self._bucket_name = bucket_name
        self._client = client
        self._content_type = content_type
        self._cache_control = cache_control

    @classmethod
    def from_settings(cls, settings) -> "GcsObjectStorage":
        client = None
        if settings.SERVICE_ACCOUNT_JSON.strip():
            info = json.loads(settings.SERVICE_ACCOUNT_JSON)
            credentials = service_account.Credentials.from_service_account_info(info)
            client = storage.Client(
                project=info.get("project_id") or settings.VERTEX_AI_PROJECT_ID or None,
                credentials=credentials,
            )
        return cls(settings.GCS_BUCKET_NAME, client=client)

    def _get_client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client()
        return self._client

    def _upload_sync(self, local_path: str, destination_key: str) -> None:
        blob = self._get_client().bucket(self._bucket_name).blob(destination_key)
        blob.cache_control = self._cache_control
        blob.upload_from_filename(local_path, content_type=self._content_type)

    async def upload(self, local_path: str, destination_key: str) -> str:
        logger.info("Uploading video to GCS: %s", destination_key)
        try:
            await asyncio.to_thread(self._upload_sync, local_path, destination_key)
        except Exception as exc:
            logger.exception("GCS upload of %s failed", destination_key)
            raise StorageUploadError(f"Failed to upload video to cloud storage: {exc}") from exc
        url = public_url(self._bucket_name, destination_key)
        logger.info("Video uploaded: %s", url)
        return url
