"""Vertex AI Veo adapter: submit image-to-video jobs and poll their operations."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import httpx
import google.auth
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from config import require_vertex_project
from services.errors import PollTransientError, ProviderConfigError, ProviderRequestError
from services.providers.types import GeneratedVideo, GenerationRequest, PollResult, VideoProvider

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


class GoogleTokenProvider:
    """Bearer tokens from a service-account JSON blob or application-default credentials."""

    def __init__(self, service_account_json: str = "") -> None:
        self._service_account_info: Optional[Dict[str, Any]] = None
        if service_account_json.strip():
            try:
                self._service_account_info = json.loads(service_account_json)
            except ValueError as exc:
                raise ProviderConfigError("SERVICE_ACCOUNT_JSON is not valid JSON") from exc
        self._credentials = None
        self._lock = asyncio.Lock()

    @property
    def project_id(self) -> Optional[str]:
        if self._service_account_info:
            return self._service_account_info.get("project_id")
        return None

    def _load_credentials(self):
        if self._service_account_info:
            return service_account.Credentials.from_service_account_info(
                self._service_account_info,
                scopes=[CLOUD_PLATFORM_SCOPE],
            )
        credentials, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
        return credentials

    async def token(self) -> str:
        async with self._lock:
            if self._credentials is None:
                self._credentials = self._load_credentials()
            if not self._credentials.valid:
                # google-auth refreshes with a blocking HTTP call.
                await asyncio.to_thread(self._credentials.refresh, GoogleAuthRequest())
            if not self._credentials.token:
                raise ProviderConfigError("Failed to get service account access token")
            return self._credentials.token


def _error_message(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            status = error.get("status")
            return f"{status}: {error['message']}" if status else str(error["message"])
        if isinstance(error, str) and error:
            return error
        if payload.get("message"):
            return str(payload["message"])
    return fallback


def _parse_videos(response: Dict[str, Any]) -> List[GeneratedVideo]:
    samples: Sequence[Any] = response.get("videos") or []
    if not samples:
        # Older model versions nest samples under generatedSamples[].video.
        samples = [
            sample.get("video") or {}
            for sample in (response.get("generatedSamples") or [])
            if isinstance(sample, dict)
        ]
    videos: List[GeneratedVideo] = []
    for sample in samples:
        if not isinstance(sample, dict):
            continue
        videos.append(
            GeneratedVideo(
                bytes_base64=sample.get("bytesBase64Encoded"),
                uri=sample.get("gcsUri") or sample.get("uri"),
                mime_type=sample.get("mimeType") or "video/mp4",
            )
        )
    return videos


class VeoVideoProvider(VideoProvider):
    """Talks to the ``predictLongRunning`` / ``fetchPredictOperation`` endpoints."""

    def __init__(
        self,
        *,
        project_id: str,
        location: str,
        model: str,
        token_provider: GoogleTokenProvider,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        if not project_id:
            raise ProviderConfigError("Vertex AI project id is not configured")
        self._project_id = project_id
        self._location = location
        self._model = model
        self._token_provider = token_provider
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = http_client is None

    @property
    def _model_path(self) -> str:
        return (
            f"projects/{self._project_id}/locations/{self._location}"
            f"/publishers/google/models/{self._model}"
        )

    @property
    def _base_url(self) -> str:
        return f"https://{self._location}-aiplatform.googleapis.com/v1"

    def full_operation_name(self, operation_name: str) -> str:
        """Expand short or model-relative operation handles to the full resource path."""
        if operation_name.startswith("projects/"):
            return operation_name
        if operation_name.startswith("models/"):
            return (
                f"projects/{self._project_id}/locations/{self._location}"
                f"/publishers/google/{operation_name}"
            )
        return f"{self._model_path}/operations/{operation_name}"

    async def _headers(self, error_cls=ProviderRequestError) -> Dict[str, str]:
        """Auth headers. Credential failures surface as ``error_cls``."""
        try:
            token = await self._token_provider.token()
        except (google_auth_exceptions.GoogleAuthError, ProviderConfigError) as exc:
            raise error_cls(f"Could not obtain provider credentials: {exc}") from exc
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    async def submit(self, request: GenerationRequest) -> str:
        body = {
            "instances": [
                {
                    "prompt": request.prompt,
                    "image": {
                        "bytesBase64Encoded": request.image_base64,
                        "mimeType": request.mime_type,
                    },
                }
            ],
            "parameters": {
                "aspectRatio": request.aspect_ratio,
                "durationSeconds": int(request.duration_seconds),
                "generateAudio": bool(request.generate_audio),
                "sampleCount": 1,
            },
        }
        url = f"{self._base_url}/{self._model_path}:predictLongRunning"
        headers = await self._headers()
        try:
            response = await self._client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderRequestError(f"Video provider unreachable: {exc}") from exc

        if response.status_code >= 400:
            raw = response.text
            try:
                payload = response.json()
            except ValueError:
                payload = {"message": raw}
            message = _error_message(payload, f"API request failed: {response.status_code}")
            raise ProviderRequestError(message, status_code=response.status_code, raw=raw)

        try:
            operation = response.json()
        except ValueError as exc:
            raise ProviderRequestError("Video provider returned an unreadable response", raw=response.text) from exc
        name = operation.get("name") if isinstance(operation, dict) else None
        if not name:
            raise ProviderRequestError("Video provider returned no operation name", raw=response.text)
        logger.info("Veo operation started: %s", name)
        return str(name)

    async def poll(self, operation_name: str) -> PollResult:
        url = f"{self._base_url}/{self._model_path}:fetchPredictOperation"
        body = {"operationName": self.full_operation_name(operation_name)}
        headers = await self._headers(PollTransientError)
        try:
            response = await self._client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise PollTransientError(f"Operation poll failed: {exc}") from exc

        if response.status_code >= 400:
            logger.warning("Operation poll returned %s: %s", response.status_code, response.text)
            raise PollTransientError(f"Operation poll failed: {response.status_code}")

        try:
            operation = response.json()
        except ValueError as exc:
            raise PollTransientError("Operation poll returned an unreadable body") from exc
        if not isinstance(operation, dict):
            raise PollTransientError("Operation poll returned an unexpected body")
        if not operation.get("done"):
            return PollResult(done=False)

        error = operation.get("error")
        if error:
            message = error if isinstance(error, str) else error.get("message") or "Video generation failed"
            return PollResult(done=True, error_message=str(message))

        result = operation.get("response") or {}
        videos = _parse_videos(result)
        if not videos and result.get("raiMediaFilteredReasons"):
            reasons = "; ".join(str(reason) for reason in result["raiMediaFilteredReasons"])
            return PollResult(done=True, error_message=reasons)
        return PollResult(done=True, videos=videos)

    async def fetch_video(self, video: GeneratedVideo) -> bytes:
        if video.bytes_base64:
            return base64.b64decode(video.bytes_base64)
        if not video.uri:
            raise ProviderRequestError("Generated video has no payload")

        if video.uri.startswith("gs://"):
            bucket, _, blob_name = video.uri[len("gs://"):].partition("/")
            url = (
                f"https://storage.googleapis.com/storage/v1/b/{bucket}"
                f"/o/{quote(blob_name, safe='')}?alt=media"
            )
        else:
            url = video.uri

        headers = await self._headers(PollTransientError)
        try:
            response = await self._client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise PollTransientError(f"Video download failed: {exc}") from exc
        if response.status_code >= 400:
            raise PollTransientError(f"Video download failed: {response.status_code}")
        return response.content

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_veo_provider(settings) -> VeoVideoProvider:
    token_provider = GoogleTokenProvider(settings.SERVICE_ACCOUNT_JSON)
    project_id = token_provider.project_id or require_vertex_project()
    return VeoVideoProvider(
        project_id=project_id,
        location=settings.VERTEX_AI_LOCATION,
        model=settings.VEO_MODEL,
        token_provider=token_provider,
        timeout_seconds=float(settings.VEO_REQUEST_TIMEOUT_SECONDS),
    )
