from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import ClassVar, List, Optional, Union

# Reserved folder id addressing the top of every user's tree. Never a stored node.
ROOT_FOLDER_ID = "root"

MAX_NAME_LENGTH = 255


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def format_identity(provider: str, external_id: str) -> str:
    """Namespace an external account id as ``provider@externalId``."""
    return f"{provider}@{external_id}"


@dataclass
class User:
    id: str
    name: str
    picture: Optional[str] = None
    # Append-only; an identity is never attached to more than one user.
    linked_identities: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: Optional[datetime] = None

    @classmethod
    def new(cls, user_id: str, ttl_minutes: Optional[int] = None) -> "Session":
        now = utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes) if ttl_minutes else None,
        )

    def is_stale(self, max_age: timedelta, *, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if self.expires_at is not None and self.expires_at <= now:
            return True
        return self.created_at + max_age <= now


@dataclass(frozen=True)
class FolderMetadata:
    kind: ClassVar[str] = "folder"


@dataclass(frozen=True)
class VideoMetadata:
    play_id: str
    duration_millis: int
    width: int
    height: int
    thumbnail: Optional[str]
    mime_type: str
    size_bytes: int
    kind: ClassVar[str] = "video"


FileMetadata = Union[FolderMetadata, VideoMetadata]


def metadata_to_dict(metadata: FileMetadata) -> dict:
    if isinstance(metadata, FolderMetadata):
        return {"type": FolderMetadata.kind}
    if isinstance(metadata, VideoMetadata):
        return {
            "type": VideoMetadata.kind,
            "play_id": metadata.play_id,
            "duration_millis": metadata.duration_millis,
            "width": metadata.width,
            "height": metadata.height,
            "thumbnail": metadata.thumbnail,
            "mime_type": metadata.mime_type,
            "size_bytes": metadata.size_bytes,
        }
    raise TypeError(f"unsupported file metadata: {metadata!r}")


def metadata_from_dict(data: dict) -> FileMetadata:
    kind = data.get("type")
    if kind == FolderMetadata.kind:
        return FolderMetadata()
    if kind == VideoMetadata.kind:
        return VideoMetadata(
            play_id=str(data["play_id"]),
            duration_millis=int(data.get("duration_millis") or 0),
            width=int(data.get("width") or 0),
            height=int(data.get("height") or 0),
            thumbnail=data.get("thumbnail"),
            mime_type=data.get("mime_type") or "application/octet-stream",
            size_bytes=int(data.get("size_bytes") or 0),
        )
    raise ValueError(f"unknown file metadata type: {kind!r}")


@dataclass
class UserFile:
    id: str
    user_id: str
    folder_id: str
    name: str
    metadata: FileMetadata
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_folder(self) -> bool:
        return isinstance(self.metadata, FolderMetadata)

    @property
    def is_video(self) -> bool:
        return isinstance(self.metadata, VideoMetadata)
