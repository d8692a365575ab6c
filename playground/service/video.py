from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from playground.config import Settings
from playground.logging import get_logger
from playground.service.errors import (
    RemoteNotFoundError,
    RemoteUnavailableError,
    ValidationError,
)

logger = get_logger(__name__)

MEBIBYTE = 1024 * 1024
DRIVE_FILE_FIELDS = "name,size,videoMediaMetadata,mimeType"

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)
_SHARE_LINK_RE = re.compile(r"file/d/([^/?#]+)")


@dataclass(frozen=True)
class RemoteVideo:
    """Canonical metadata for a remotely hosted video."""

    remote_id: str
    default_name: str
    duration_millis: int
    width: int
    height: int
    mime_type: str
    size_bytes: int
    default_thumbnail: Optional[str] = None


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int

    def header(self) -> str:
        return f"bytes={self.start}-{self.end}"


@dataclass
class VideoChunk:
    content: bytes
    content_type: str
    content_length: int
    content_range: Optional[str] = None
    partial: bool = False


class VideoProvider(Protocol):
    async def fetch_video_metadata(self, remote_id: str) -> RemoteVideo: ...

    async def open_video_stream(self, remote_id: str, byte_range: ByteRange) -> VideoChunk: ...


def parse_range(
    header: Optional[str],
    *,
    first_chunk: int = 16 * MEBIBYTE,
    chunk: int = 10 * MEBIBYTE,
) -> ByteRange:
    """Turn a ``Range`` header into an inclusive byte window.

    No header asks for the first chunk. An open end reads one chunk from the
    start, using the larger first-chunk size when starting at zero. Suffix
    ranges (``bytes=-N``) need the file size and are refused.
    """
    if not header:
        return ByteRange(0, first_chunk - 1)
    match = _RANGE_RE.match(header)
    raw_start, raw_end = match.groups() if match else ("", "")
    if raw_end and not raw_start:
        raise ValidationError("suffix byte ranges are not supported", detail={"range": header})
    start = int(raw_start) if raw_start else 0
    if raw_end:
        end = int(raw_end)
        if end < start:
            raise ValidationError("invalid byte range", detail={"range": header})
        return ByteRange(start, end)
    return ByteRange(start, start + (first_chunk if start == 0 else chunk) - 1)


def extract_drive_file_id(value: str) -> str:
    """Accept a bare Drive file id or a ``.../file/d/<id>/...`` share link."""
    value = value.strip()
    if "/" not in value:
        if not value:
            raise ValidationError("video id is required")
        return value
    match = _SHARE_LINK_RE.search(value)
    if not match:
        raise ValidationError(
            "could not get a file id from the link", detail={"link": value}
        )
    return match.group(1)


def thumbnail_url(remote_id: str) -> str:
    return f"https://drive.google.com/thumbnail?id={remote_id}"


class GoogleDriveVideoProvider:
    """Google Drive backed video host: metadata over the Drive API, bytes over the download URL."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.api_key = settings.google_api_key
        self.api_base = settings.drive_api_base_url.rstrip("/")
        self.download_url = settings.drive_download_url
        self._transport = transport

    def _client(self, **kwargs) -> httpx.AsyncClient:
        # A fresh client per call; Drive throttles long-lived download connections
        return httpx.AsyncClient(
            timeout=self.settings.provider_timeout_seconds,
            transport=self._transport,
            **kwargs,
        )

    def _raise_for_status(self, response: httpx.Response, remote_id: str) -> None:
        if response.status_code == 404:
            raise RemoteNotFoundError(
                "video not found on provider", detail={"remote_id": remote_id}
            )
        if response.status_code == 416:
            raise ValidationError(
                "requested range not satisfiable", detail={"remote_id": remote_id}
            )
        if response.is_error:
            logger.warning(
                "video_provider_error",
                remote_id=remote_id,
                status_code=response.status_code,
            )
            raise RemoteUnavailableError(
                "video provider unavailable",
                detail={"remote_id": remote_id, "status": response.status_code},
            )

    async def fetch_video_metadata(self, remote_id: str) -> RemoteVideo:
        params = {"fields": DRIVE_FILE_FIELDS}
        if self.api_key:
            params["key"] = self.api_key
        try:
            async with self._client() as client:
                response = await client.get(f"{self.api_base}/files/{remote_id}", params=params)
        except httpx.TransportError as exc:
            logger.warning("video_metadata_transport_error", remote_id=remote_id, error=str(exc))
            raise RemoteUnavailableError(
                "video provider unavailable", detail={"remote_id": remote_id}
            ) from exc
        self._raise_for_status(response, remote_id)
        try:
            data = response.json()
        except ValueError as exc:
            raise RemoteUnavailableError(
                "video provider returned malformed metadata", detail={"remote_id": remote_id}
            ) from exc

        media = data.get("videoMediaMetadata")
        if not media:
            raise ValidationError(
                f"file {data.get('name')!r} is not a video", detail={"remote_id": remote_id}
            )
        return RemoteVideo(
            remote_id=remote_id,
            default_name=data.get("name") or remote_id,
            duration_millis=int(media.get("durationMillis") or 0),
            width=int(media.get("width") or 0),
            height=int(media.get("height") or 0),
            mime_type=data.get("mimeType") or "application/octet-stream",
            size_bytes=int(data.get("size") or 0),
            default_thumbnail=thumbnail_url(remote_id),
        )

    async def open_video_stream(self, remote_id: str, byte_range: ByteRange) -> VideoChunk:
        params = {"export": "download", "confirm": "yTib", "id": remote_id}
        try:
            async with self._client(follow_redirects=True) as client:
                response = await client.get(
                    self.download_url, params=params, headers={"Range": byte_range.header()}
                )
        except httpx.TransportError as exc:
            logger.warning("video_stream_transport_error", remote_id=remote_id, error=str(exc))
            raise RemoteUnavailableError(
                "video provider unavailable", detail={"remote_id": remote_id}
            ) from exc
        self._raise_for_status(response, remote_id)
        content = response.content
        return VideoChunk(
            content=content,
            content_type=response.headers.get("content-type", "application/octet-stream"),
            content_length=len(content),
            content_range=response.headers.get("content-range"),
            partial=response.status_code == 206,
        )
