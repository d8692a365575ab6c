from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Protocol

from playground.logging import get_logger
from playground.service.errors import (
    ConflictError,
    CycleDetectedError,
    FolderNotEmptyError,
    NameConflictError,
    NotFoundError,
    ReadOnlyRootError,
    ServiceError,
    ValidationError,
)
from playground.service.video import (
    ByteRange,
    RemoteVideo,
    VideoChunk,
    VideoProvider,
    extract_drive_file_id,
    parse_range,
)
from playground.storage import errors as store_errors
from playground.storage.errors import ConstraintViolation
from playground.storage.models import (
    MAX_NAME_LENGTH,
    ROOT_FOLDER_ID,
    FileMetadata,
    FolderMetadata,
    UserFile,
    VideoMetadata,
)

logger = get_logger(__name__)


class FileStore(Protocol):
    def get_file(self, user_id: str, file_id: str) -> Optional[UserFile]: ...

    def list_files(self, user_id: str, folder_id: str) -> List[UserFile]: ...

    def list_ancestors(self, user_id: str, folder_id: str) -> List[UserFile]: ...

    def create_file(
        self, user_id: str, folder_id: str, name: str, metadata: FileMetadata
    ) -> UserFile: ...

    def update_file(
        self,
        user_id: str,
        file_id: str,
        *,
        name: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> Optional[UserFile]: ...

    def move_files(
        self, user_id: str, file_ids: Iterable[str], folder_id: str
    ) -> List[UserFile]: ...

    def delete_file(self, user_id: str, file_id: str) -> Optional[UserFile]: ...

    def delete_files(self, user_id: str, file_ids: Iterable[str]) -> List[UserFile]: ...


@dataclass
class FolderFamily:
    """A folder with its breadcrumb trail and direct children."""

    folder: Optional[UserFile]
    ancestors: List[UserFile] = field(default_factory=list)
    children: List[UserFile] = field(default_factory=list)


@dataclass
class MoveResult:
    moved_count: int
    moved_ids: List[str] = field(default_factory=list)


@dataclass
class DeleteResult:
    deleted_count: int
    deleted_ids: List[str] = field(default_factory=list)


def _translate(exc: ConstraintViolation) -> ServiceError:
    detail = dict(exc.detail)
    constraint = exc.constraint
    if constraint == store_errors.UNIQUE_NAME:
        return NameConflictError("a file with that name already exists in the folder", detail=detail)
    if constraint == store_errors.ACYCLIC:
        return CycleDetectedError("a folder cannot be moved into itself or a descendant", detail=detail)
    if constraint == store_errors.FOLDER_NOT_EMPTY:
        return FolderNotEmptyError("folder is not empty", detail=detail)
    if constraint == store_errors.PARENT_MISSING:
        return NotFoundError("folder not found", detail=detail)
    if constraint == store_errors.DEPTH_EXCEEDED:
        return ValidationError("folder tree is too deep", detail=detail)
    return ConflictError(exc.message, detail=detail)


def validate_name(name: Optional[str]) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("name must not be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(
            f"name must be at most {MAX_NAME_LENGTH} characters",
            detail={"length": len(name)},
        )
    return name


class FileSystemService:
    """Per-user virtual tree of folders and remote video references.

    Every operation is scoped to ``user_id``: files owned by someone else are
    reported exactly like files that do not exist.
    """

    def __init__(
        self,
        store: FileStore,
        videos: VideoProvider,
        *,
        first_chunk_bytes: int,
        chunk_bytes: int,
    ) -> None:
        self.store = store
        self.videos = videos
        self.first_chunk_bytes = first_chunk_bytes
        self.chunk_bytes = chunk_bytes

    def _get_owned(self, user_id: str, file_id: str) -> UserFile:
        if file_id == ROOT_FOLDER_ID:
            raise ReadOnlyRootError("the root folder is read-only")
        node = self.store.get_file(user_id, file_id)
        if node is None:
            raise NotFoundError("file not found", detail={"file_id": file_id})
        return node

    def _require_folder(self, user_id: str, folder_id: str) -> Optional[UserFile]:
        if folder_id == ROOT_FOLDER_ID:
            return None
        node = self.store.get_file(user_id, folder_id)
        if node is None:
            raise NotFoundError("folder not found", detail={"folder_id": folder_id})
        if not node.is_folder:
            raise ValidationError("target is not a folder", detail={"folder_id": folder_id})
        return node

    async def list_files(self, user_id: str, folder_id: str = ROOT_FOLDER_ID) -> List[UserFile]:
        self._require_folder(user_id, folder_id)
        return self.store.list_files(user_id, folder_id)

    async def get_folder(self, user_id: str, folder_id: str = ROOT_FOLDER_ID) -> FolderFamily:
        folder = self._require_folder(user_id, folder_id)
        try:
            ancestors = self.store.list_ancestors(user_id, folder_id)
        except ConstraintViolation as exc:
            raise _translate(exc) from exc
        # list_ancestors ends with the folder itself
        return FolderFamily(
            folder=folder,
            ancestors=ancestors[:-1],
            children=self.store.list_files(user_id, folder_id),
        )

    async def create_folder(self, user_id: str, parent_id: str, name: str) -> UserFile:
        name = validate_name(name)
        self._require_folder(user_id, parent_id)
        try:
            node = self.store.create_file(user_id, parent_id, name, FolderMetadata())
        except ConstraintViolation as exc:
            raise _translate(exc) from exc
        logger.info("folder_created", user_id=user_id, file_id=node.id, folder_id=parent_id)
        return node

    async def preview_video(self, remote_ref: str) -> RemoteVideo:
        """Provider metadata for a video id or share link, without persisting anything."""
        return await self.videos.fetch_video_metadata(extract_drive_file_id(remote_ref))

    async def create_video(
        self,
        user_id: str,
        parent_id: str,
        remote_id: str,
        *,
        name: Optional[str] = None,
        thumbnail: Optional[str] = None,
    ) -> UserFile:
        if name is not None:
            name = validate_name(name)
        remote_id = extract_drive_file_id(remote_id)
        self._require_folder(user_id, parent_id)
        # Nothing is written until the provider has answered
        remote = await self.videos.fetch_video_metadata(remote_id)
        metadata = VideoMetadata(
            play_id=remote.remote_id,
            duration_millis=remote.duration_millis,
            width=remote.width,
            height=remote.height,
            thumbnail=thumbnail or remote.default_thumbnail,
            mime_type=remote.mime_type,
            size_bytes=remote.size_bytes,
        )
        final_name = validate_name(name if name is not None else remote.default_name)
        try:
            node = self.store.create_file(user_id, parent_id, final_name, metadata)
        except ConstraintViolation as exc:
            raise _translate(exc) from exc
        logger.info(
            "video_created",
            user_id=user_id,
            file_id=node.id,
            folder_id=parent_id,
            remote_id=remote.remote_id,
        )
        return node

    async def update(
        self,
        user_id: str,
        file_id: str,
        *,
        name: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> UserFile:
        """Rename and/or move one file in a single step."""
        if name is None and folder_id is None:
            raise ValidationError("nothing to update")
        if name is not None:
            name = validate_name(name)
        self._get_owned(user_id, file_id)
        if folder_id is not None:
            self._require_folder(user_id, folder_id)
        try:
            node = self.store.update_file(user_id, file_id, name=name, folder_id=folder_id)
        except ConstraintViolation as exc:
            raise _translate(exc) from exc
        if node is None:
            raise NotFoundError("file not found", detail={"file_id": file_id})
        logger.info("file_updated", user_id=user_id, file_id=file_id, folder_id=node.folder_id)
        return node

    async def rename(self, user_id: str, file_id: str, name: str) -> UserFile:
        return await self.update(user_id, file_id, name=name)

    async def move_one(self, user_id: str, file_id: str, folder_id: str) -> UserFile:
        return await self.update(user_id, file_id, folder_id=folder_id)

    async def move_many(
        self, user_id: str, file_ids: Iterable[str], folder_id: str
    ) -> MoveResult:
        """Move files into ``folder_id``; entries that cannot be placed are skipped.

        Ids that are missing, foreign, already in the destination or whose name
        is taken there do not count towards ``moved_count``. A cycle fails the
        whole batch before anything moves.
        """
        ids = list(file_ids)
        if ROOT_FOLDER_ID in ids:
            raise ReadOnlyRootError("the root folder is read-only")
        self._require_folder(user_id, folder_id)
        try:
            moved = self.store.move_files(user_id, ids, folder_id)
        except ConstraintViolation as exc:
            raise _translate(exc) from exc
        moved_ids = [node.id for node in moved]
        logger.info(
            "files_moved",
            user_id=user_id,
            folder_id=folder_id,
            requested=len(ids),
            moved=len(moved_ids),
        )
        return MoveResult(moved_count=len(moved_ids), moved_ids=moved_ids)

    async def delete(self, user_id: str, file_id: str) -> UserFile:
        """Delete a video or an empty folder; non-empty folders are refused."""
        self._get_owned(user_id, file_id)
        try:
            node = self.store.delete_file(user_id, file_id)
        except ConstraintViolation as exc:
            raise _translate(exc) from exc
        if node is None:
            raise NotFoundError("file not found", detail={"file_id": file_id})
        logger.info("file_deleted", user_id=user_id, file_id=file_id)
        return node

    async def delete_many(self, user_id: str, file_ids: Iterable[str]) -> DeleteResult:
        """Delete a batch of files without cascading.

        Folders whose other children stay behind are skipped, like missing or
        foreign ids; ``deleted_count`` reports what was actually removed.
        """
        ids = list(file_ids)
        if ROOT_FOLDER_ID in ids:
            raise ReadOnlyRootError("the root folder is read-only")
        deleted_ids = [node.id for node in self.store.delete_files(user_id, ids)]
        logger.info(
            "files_deleted", user_id=user_id, requested=len(ids), deleted=len(deleted_ids)
        )
        return DeleteResult(deleted_count=len(deleted_ids), deleted_ids=deleted_ids)

    def parse_range(self, header: Optional[str]) -> ByteRange:
        return parse_range(header, first_chunk=self.first_chunk_bytes, chunk=self.chunk_bytes)

    async def stream_video(
        self, user_id: str, file_id: str, range_header: Optional[str] = None
    ) -> VideoChunk:
        node = self._get_owned(user_id, file_id)
        if not isinstance(node.metadata, VideoMetadata):
            raise ValidationError("file is not a video", detail={"file_id": file_id})
        byte_range = self.parse_range(range_header)
        return await self.videos.open_video_stream(node.metadata.play_id, byte_range)
