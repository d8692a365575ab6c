from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from playground.logging import get_logger
from playground.storage.errors import (
    ACYCLIC,
    DEPTH_EXCEEDED,
    FOLDER_NOT_EMPTY,
    IDENTITY_LINKED,
    PARENT_MISSING,
    UNIQUE_NAME,
    ConstraintViolation,
)
from playground.storage.models import (
    ROOT_FOLDER_ID,
    FileMetadata,
    Session,
    User,
    UserFile,
    metadata_from_dict,
    metadata_to_dict,
    new_id,
    utcnow,
)


def sort_children(files: Iterable[UserFile]) -> List[UserFile]:
    """Order siblings case-insensitively by name, ties broken by id."""
    return sorted(files, key=lambda f: (f.name.casefold(), f.name, f.id))


class MemoryStore:
    """In-process backing store persisted as a JSON snapshot under ``fs_root``.

    Every public method holds ``_data_lock`` for its whole body, so each call is
    a single atomic step with respect to every other call on the same store.
    """

    def __init__(self, fs_root: str = "/tmp/playground", *, max_folder_depth: int = 100) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.identities: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.files: Dict[str, UserFile] = {}
        # (user_id, folder_id, name) -> file_id; the per-folder uniqueness constraint
        self._names: Dict[Tuple[str, str, str], str] = {}
        self.max_folder_depth = max_folder_depth
        # RLock so helpers can re-enter from public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- users -------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_identity(self, identity: str) -> Optional[User]:
        with self._data_lock:
            user_id = self.identities.get(identity)
            return self.users.get(user_id) if user_id else None

    def create_user(
        self, identity: str, name: str, picture: Optional[str] = None
    ) -> User:
        with self._data_lock:
            owner = self.identities.get(identity)
            if owner is not None or identity in self.users:
                raise ConstraintViolation(
                    "identity already linked",
                    {"constraint": IDENTITY_LINKED, "identity": identity, "user_id": owner},
                )
            user = User(id=identity, name=name, picture=picture, linked_identities=[identity])
            self.users[user.id] = user
            self.identities[identity] = user.id
            self._persist_state()
            return user

    def link_identity(self, user_id: str, identity: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            owner = self.identities.get(identity)
            if owner == user_id:
                return user
            if owner is not None:
                raise ConstraintViolation(
                    "identity already linked",
                    {"constraint": IDENTITY_LINKED, "identity": identity, "user_id": owner},
                )
            user.linked_identities.append(identity)
            self.identities[identity] = user_id
            self._persist_state()
            return user

    def update_user_profile(
        self, user_id: str, *, name: Optional[str] = None, picture: Optional[str] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            if name:
                user.name = name
            if picture is not None:
                user.picture = picture
            self._persist_state()
            return user

    # -- sessions ----------------------------------------------------------

    def create_session(self, user_id: str, ttl_minutes: Optional[int] = None) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(user_id, ttl_minutes)
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def sweep_sessions(self, max_age: timedelta) -> int:
        with self._data_lock:
            now = utcnow()
            stale = [sid for sid, sess in self.sessions.items() if sess.is_stale(max_age, now=now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- files -------------------------------------------------------------

    def _owned(self, user_id: str, file_id: str) -> Optional[UserFile]:
        node = self.files.get(file_id)
        if node is None or node.user_id != user_id:
            return None
        return node

    def _ancestor_chain(self, user_id: str, folder_id: str) -> List[UserFile]:
        """Folders from ``folder_id`` up to (excluding) root, nearest first."""
        chain: List[UserFile] = []
        current = folder_id
        while current != ROOT_FOLDER_ID:
            if len(chain) >= self.max_folder_depth:
                raise ConstraintViolation(
                    "folder tree too deep",
                    {"constraint": DEPTH_EXCEEDED, "max_depth": self.max_folder_depth},
                )
            node = self._owned(user_id, current)
            if node is None or not node.is_folder:
                raise ConstraintViolation(
                    "parent folder missing",
                    {"constraint": PARENT_MISSING, "folder_id": current},
                )
            chain.append(node)
            current = node.folder_id
        return chain

    def _claim_name(self, node: UserFile, folder_id: str, name: str) -> None:
        key = (node.user_id, folder_id, name)
        holder = self._names.get(key)
        if holder is not None and holder != node.id:
            raise ConstraintViolation(
                "name already exists in folder",
                {"constraint": UNIQUE_NAME, "folder_id": folder_id, "name": name},
            )
        self._names.pop((node.user_id, node.folder_id, node.name), None)
        self._names[key] = node.id
        node.folder_id = folder_id
        node.name = name
        node.updated_at = utcnow()

    def get_file(self, user_id: str, file_id: str) -> Optional[UserFile]:
        with self._data_lock:
            return self._owned(user_id, file_id)

    def list_files(self, user_id: str, folder_id: str) -> List[UserFile]:
        with self._data_lock:
            return sort_children(
                f for f in self.files.values()
                if f.user_id == user_id and f.folder_id == folder_id
            )

    def list_ancestors(self, user_id: str, folder_id: str) -> List[UserFile]:
        """Root-most first, ending with ``folder_id`` itself."""
        with self._data_lock:
            return list(reversed(self._ancestor_chain(user_id, folder_id)))

    def create_file(
        self, user_id: str, folder_id: str, name: str, metadata: FileMetadata
    ) -> UserFile:
        with self._data_lock:
            if len(self._ancestor_chain(user_id, folder_id)) >= self.max_folder_depth:
                raise ConstraintViolation(
                    "folder tree too deep",
                    {"constraint": DEPTH_EXCEEDED, "max_depth": self.max_folder_depth},
                )
            key = (user_id, folder_id, name)
            if key in self._names:
                raise ConstraintViolation(
                    "name already exists in folder",
                    {"constraint": UNIQUE_NAME, "folder_id": folder_id, "name": name},
                )
            node = UserFile(
                id=new_id(), user_id=user_id, folder_id=folder_id, name=name, metadata=metadata
            )
            self.files[node.id] = node
            self._names[key] = node.id
            self._persist_state()
            return node

    def update_file(
        self,
        user_id: str,
        file_id: str,
        *,
        name: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> Optional[UserFile]:
        with self._data_lock:
            node = self._owned(user_id, file_id)
            if node is None:
                return None
            target_folder = folder_id if folder_id is not None else node.folder_id
            target_name = name if name is not None else node.name
            if target_folder != node.folder_id:
                chain = self._ancestor_chain(user_id, target_folder)
                if target_folder == node.id or any(a.id == node.id for a in chain):
                    raise ConstraintViolation(
                        "cannot move a folder into itself or a descendant",
                        {"constraint": ACYCLIC, "file_id": node.id, "folder_id": target_folder},
                    )
            if (target_folder, target_name) != (node.folder_id, node.name):
                self._claim_name(node, target_folder, target_name)
                self._persist_state()
            return node

    def move_files(
        self, user_id: str, file_ids: Iterable[str], folder_id: str
    ) -> List[UserFile]:
        """Relocate every movable file into ``folder_id`` in one atomic step.

        Missing or foreign ids, files already in the destination and files whose
        name is taken there are skipped. A cycle anywhere fails the whole batch.
        """
        with self._data_lock:
            ids = list(dict.fromkeys(file_ids))
            blocked = {folder_id} | {a.id for a in self._ancestor_chain(user_id, folder_id)}
            looping = [fid for fid in ids if fid in blocked]
            if looping:
                raise ConstraintViolation(
                    "cannot move a folder into itself or a descendant",
                    {"constraint": ACYCLIC, "file_ids": looping, "folder_id": folder_id},
                )
            moved: List[UserFile] = []
            for fid in ids:
                node = self._owned(user_id, fid)
                if node is None or node.folder_id == folder_id:
                    continue
                if (user_id, folder_id, node.name) in self._names:
                    continue
                self._claim_name(node, folder_id, node.name)
                moved.append(node)
            if moved:
                self._persist_state()
            return moved

    def delete_file(self, user_id: str, file_id: str) -> Optional[UserFile]:
        with self._data_lock:
            node = self._owned(user_id, file_id)
            if node is None:
                return None
            if node.is_folder and any(
                f.folder_id == node.id and f.user_id == user_id for f in self.files.values()
            ):
                raise ConstraintViolation(
                    "folder is not empty",
                    {"constraint": FOLDER_NOT_EMPTY, "file_id": node.id},
                )
            del self.files[node.id]
            self._names.pop((user_id, node.folder_id, node.name), None)
            self._persist_state()
            return node

    def delete_files(self, user_id: str, file_ids: Iterable[str]) -> List[UserFile]:
        """Delete every file of the batch that has nothing left inside it.

        Folders are removed after their batched children. A folder still holding
        anything outside the batch is skipped, as are missing or foreign ids.
        """
        with self._data_lock:
            pending = [fid for fid in dict.fromkeys(file_ids) if self._owned(user_id, fid)]
            deleted: List[UserFile] = []
            progress = True
            while pending and progress:
                progress = False
                for fid in list(pending):
                    node = self.files[fid]
                    if node.is_folder and any(
                        f.folder_id == node.id and f.user_id == user_id
                        for f in self.files.values()
                    ):
                        continue
                    del self.files[fid]
                    self._names.pop((user_id, node.folder_id, node.name), None)
                    pending.remove(fid)
                    deleted.append(node)
                    progress = True
            if deleted:
                self._persist_state()
            return deleted

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "files": [self._serialize_file(f) for f in self.files.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.identities = {
            identity: user.id
            for user in self.users.values()
            for identity in user.linked_identities
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.files = {f["id"]: self._deserialize_file(f) for f in data.get("files", [])}
        self._names = {
            (f.user_id, f.folder_id, f.name): f.id for f in self.files.values()
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            files=len(self.files),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "name": user.name,
            "picture": user.picture,
            "linked_identities": list(user.linked_identities),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            name=data.get("name") or str(data["id"]),
            picture=data.get("picture"),
            linked_identities=list(data.get("linked_identities") or [data["id"]]),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data.get("expires_at")),
        )

    def _serialize_file(self, node: UserFile) -> dict:
        return {
            "id": node.id,
            "user_id": node.user_id,
            "folder_id": node.folder_id,
            "name": node.name,
            "metadata": metadata_to_dict(node.metadata),
            "created_at": self._serialize_datetime(node.created_at),
            "updated_at": self._serialize_datetime(node.updated_at),
        }

    def _deserialize_file(self, data: dict) -> UserFile:
        created = self._deserialize_datetime(data.get("created_at")) or utcnow()
        return UserFile(
            id=data["id"],
            user_id=data["user_id"],
            folder_id=data.get("folder_id") or ROOT_FOLDER_ID,
            name=data["name"],
            metadata=metadata_from_dict(data["metadata"]),
            created_at=created,
            updated_at=self._deserialize_datetime(data.get("updated_at")) or created,
        )
