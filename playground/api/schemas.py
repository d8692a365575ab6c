from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from playground.storage.models import (
    MAX_NAME_LENGTH,
    ROOT_FOLDER_ID,
    User,
    UserFile,
    metadata_to_dict,
)

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "identity_conflict",
    "name_conflict",
    "folder_not_empty",
    "cycle_detected",
    "remote_not_found",
    "upstream_error",
    "remote_unavailable",
})

# Upper bound for one moveMany batch
MAX_FILE_BATCH = 1000


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class OAuthStartRequest(BaseModel):
    redirect_uri: Optional[str] = Field(default=None, max_length=2048)


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    session_expires_at: Optional[datetime] = None
    access_token: str
    token_type: str = "bearer"


class LogoutAllResponse(BaseModel):
    revoked_sessions: int


class UserResponse(BaseModel):
    id: str
    name: str
    picture: Optional[str] = None
    linked_identities: List[str]
    created_at: datetime

    @classmethod
    def from_model(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            picture=user.picture,
            linked_identities=list(user.linked_identities),
            created_at=user.created_at,
        )


class UserFileResponse(BaseModel):
    id: str
    folder_id: str
    name: str
    type: str
    metadata: dict
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, node: UserFile) -> "UserFileResponse":
        metadata = metadata_to_dict(node.metadata)
        return cls(
            id=node.id,
            folder_id=node.folder_id,
            name=node.name,
            type=metadata.pop("type"),
            metadata=metadata,
            created_at=node.created_at,
            updated_at=node.updated_at,
        )


class FileListResponse(BaseModel):
    folder_id: str
    items: List[UserFileResponse]


class FolderFamilyResponse(BaseModel):
    folder: Optional[UserFileResponse] = None
    ancestors: List[UserFileResponse]
    children: List[UserFileResponse]


class CreateFolderRequest(BaseModel):
    folder_id: str = Field(default=ROOT_FOLDER_ID, max_length=128)
    name: str = Field(..., max_length=MAX_NAME_LENGTH)


class CreateVideoRequest(BaseModel):
    folder_id: str = Field(default=ROOT_FOLDER_ID, max_length=128)
    name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    thumbnail: Optional[str] = Field(default=None, max_length=2048)


class UpdateFileRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    folder_id: Optional[str] = Field(default=None, max_length=128)


class MoveFilesRequest(BaseModel):
    file_ids: List[str] = Field(..., max_length=MAX_FILE_BATCH)
    folder_id: str = Field(default=ROOT_FOLDER_ID, max_length=128)


class MoveFilesResponse(BaseModel):
    moved_count: int
    moved_ids: List[str]


class DeleteFilesResponse(BaseModel):
    deleted_count: int
    deleted_ids: List[str]


class VideoPreviewResponse(BaseModel):
    remote_id: str
    name: str
    duration_millis: int
    width: int
    height: int
    mime_type: str
    size_bytes: int
    thumbnail: Optional[str] = None
