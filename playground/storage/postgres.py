from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
from playground.storage.memory import sort_children
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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        picture TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_identity (
        identity TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS user_file (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        parent_id TEXT REFERENCES user_file(id) ON DELETE RESTRICT,
        name TEXT NOT NULL CHECK (name <> ''),
        kind TEXT NOT NULL CHECK (kind IN ('folder', 'video')),
        metadata JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS user_file_name_uniq
        ON user_file (user_id, COALESCE(parent_id, ''), name)
    """,
)


def _parent_param(folder_id: str) -> Optional[str]:
    return None if folder_id == ROOT_FOLDER_ID else folder_id


class PostgresStore:
    """Postgres-backed store for users, the session registry and file trees.

    Name uniqueness is the ``user_file_name_uniq`` index and folder emptiness on
    delete is the self-referencing foreign key; tree-shape changes for one user
    are serialized with a transaction-scoped advisory lock.
    """

    def __init__(self, dsn: str, fs_root: str, *, max_folder_depth: int = 100) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.max_folder_depth = max_folder_depth
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # -- row mapping -------------------------------------------------------

    def _user_from_row(self, conn, row: dict) -> User:
        identities = conn.execute(
            "SELECT identity FROM user_identity WHERE user_id = %s ORDER BY created_at, identity",
            (row["id"],),
        ).fetchall()
        return User(
            id=row["id"],
            name=row["name"],
            picture=row.get("picture"),
            linked_identities=[r["identity"] for r in identities],
            created_at=row["created_at"],
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            created_at=row["created_at"],
            expires_at=row.get("expires_at"),
        )

    @staticmethod
    def _file_from_row(row: dict) -> UserFile:
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return UserFile(
            id=row["id"],
            user_id=row["user_id"],
            folder_id=row.get("parent_id") or ROOT_FOLDER_ID,
            name=row["name"],
            metadata=metadata_from_dict(metadata),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # -- users -------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
            return self._user_from_row(conn, row) if row else None

    def get_user_by_identity(self, identity: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT u.* FROM app_user u
                JOIN user_identity i ON i.user_id = u.id
                WHERE i.identity = %s
                """,
                (identity,),
            ).fetchone()
            return self._user_from_row(conn, row) if row else None

    def create_user(
        self, identity: str, name: str, picture: Optional[str] = None
    ) -> User:
        now = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO app_user (id, name, picture, created_at) VALUES (%s, %s, %s, %s)",
                    (identity, name, picture, now),
                )
                conn.execute(
                    "INSERT INTO user_identity (identity, user_id, created_at) VALUES (%s, %s, %s)",
                    (identity, identity, now),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "identity already linked",
                {"constraint": IDENTITY_LINKED, "identity": identity},
            )
        return User(id=identity, name=name, picture=picture, linked_identities=[identity], created_at=now)

    def link_identity(self, user_id: str, identity: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
            if not row:
                return None
            conn.execute(
                """
                INSERT INTO user_identity (identity, user_id) VALUES (%s, %s)
                ON CONFLICT (identity) DO NOTHING
                """,
                (identity, user_id),
            )
            owner = conn.execute(
                "SELECT user_id FROM user_identity WHERE identity = %s", (identity,)
            ).fetchone()
            if owner and owner["user_id"] != user_id:
                raise ConstraintViolation(
                    "identity already linked",
                    {"constraint": IDENTITY_LINKED, "identity": identity, "user_id": owner["user_id"]},
                )
            return self._user_from_row(conn, row)

    def update_user_profile(
        self, user_id: str, *, name: Optional[str] = None, picture: Optional[str] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET name = COALESCE(NULLIF(%s, ''), name), picture = COALESCE(%s, picture)
                WHERE id = %s
                RETURNING *
                """,
                (name, picture, user_id),
            ).fetchone()
            return self._user_from_row(conn, row) if row else None

    # -- sessions ----------------------------------------------------------

    def create_session(self, user_id: str, ttl_minutes: Optional[int] = None) -> Session:
        sess = Session.new(user_id, ttl_minutes)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (sess.id, sess.user_id, sess.created_at, sess.expires_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return cur.rowcount > 0

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def sweep_sessions(self, max_age: timedelta) -> int:
        now = utcnow()
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM auth_session
                WHERE created_at <= %s OR (expires_at IS NOT NULL AND expires_at <= %s)
                """,
                (now - max_age, now),
            )
            return cur.rowcount

    # -- files -------------------------------------------------------------

    def _lock_user_tree(self, conn, user_id: str) -> None:
        conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (user_id,))

    def _ancestor_chain(self, conn, user_id: str, folder_id: str) -> List[UserFile]:
        """Folders from ``folder_id`` up to (excluding) root, nearest first."""
        if folder_id == ROOT_FOLDER_ID:
            return []
        rows = conn.execute(
            """
            WITH RECURSIVE chain AS (
                SELECT f.*, 1 AS depth FROM user_file f
                WHERE f.id = %s AND f.user_id = %s
                UNION ALL
                SELECT f.*, c.depth + 1 FROM user_file f
                JOIN chain c ON f.id = c.parent_id
                WHERE c.depth <= %s
            )
            SELECT * FROM chain ORDER BY depth
            """,
            (folder_id, user_id, self.max_folder_depth),
        ).fetchall()
        if not rows or any(r["kind"] != "folder" for r in rows):
            raise ConstraintViolation(
                "parent folder missing",
                {"constraint": PARENT_MISSING, "folder_id": folder_id},
            )
        if len(rows) > self.max_folder_depth:
            raise ConstraintViolation(
                "folder tree too deep",
                {"constraint": DEPTH_EXCEEDED, "max_depth": self.max_folder_depth},
            )
        return [self._file_from_row(r) for r in rows]

    def get_file(self, user_id: str, file_id: str) -> Optional[UserFile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_file WHERE id = %s AND user_id = %s", (file_id, user_id)
            ).fetchone()
        return self._file_from_row(row) if row else None

    def list_files(self, user_id: str, folder_id: str) -> List[UserFile]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_file
                WHERE user_id = %s AND parent_id IS NOT DISTINCT FROM %s
                """,
                (user_id, _parent_param(folder_id)),
            ).fetchall()
        return sort_children(self._file_from_row(r) for r in rows)

    def list_ancestors(self, user_id: str, folder_id: str) -> List[UserFile]:
        with self._connect() as conn:
            return list(reversed(self._ancestor_chain(conn, user_id, folder_id)))

    def create_file(
        self, user_id: str, folder_id: str, name: str, metadata: FileMetadata
    ) -> UserFile:
        now = utcnow()
        node = UserFile(
            id=new_id(),
            user_id=user_id,
            folder_id=folder_id,
            name=name,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._connect() as conn:
                if folder_id != ROOT_FOLDER_ID:
                    # Holds the parent row against a concurrent delete until commit
                    parent = conn.execute(
                        "SELECT kind FROM user_file WHERE id = %s AND user_id = %s FOR SHARE",
                        (folder_id, user_id),
                    ).fetchone()
                    if not parent or parent["kind"] != "folder":
                        raise ConstraintViolation(
                            "parent folder missing",
                            {"constraint": PARENT_MISSING, "folder_id": folder_id},
                        )
                    if len(self._ancestor_chain(conn, user_id, folder_id)) >= self.max_folder_depth:
                        raise ConstraintViolation(
                            "folder tree too deep",
                            {"constraint": DEPTH_EXCEEDED, "max_depth": self.max_folder_depth},
                        )
                conn.execute(
                    """
                    INSERT INTO user_file (id, user_id, parent_id, name, kind, metadata, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        node.id,
                        user_id,
                        _parent_param(folder_id),
                        name,
                        metadata.kind,
                        json.dumps(metadata_to_dict(metadata)),
                        now,
                        now,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "name already exists in folder",
                {"constraint": UNIQUE_NAME, "folder_id": folder_id, "name": name},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "parent folder missing",
                {"constraint": PARENT_MISSING, "folder_id": folder_id},
            )
        return node

    def update_file(
        self,
        user_id: str,
        file_id: str,
        *,
        name: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> Optional[UserFile]:
        target_folder, target_name = folder_id, name
        try:
            with self._connect() as conn:
                self._lock_user_tree(conn, user_id)
                row = conn.execute(
                    "SELECT * FROM user_file WHERE id = %s AND user_id = %s FOR UPDATE",
                    (file_id, user_id),
                ).fetchone()
                if not row:
                    return None
                node = self._file_from_row(row)
                target_folder = folder_id if folder_id is not None else node.folder_id
                target_name = name if name is not None else node.name
                if target_folder != node.folder_id:
                    chain = self._ancestor_chain(conn, user_id, target_folder)
                    if target_folder == node.id or any(a.id == node.id for a in chain):
                        raise ConstraintViolation(
                            "cannot move a folder into itself or a descendant",
                            {"constraint": ACYCLIC, "file_id": node.id, "folder_id": target_folder},
                        )
                if (target_folder, target_name) == (node.folder_id, node.name):
                    return node
                updated = conn.execute(
                    """
                    UPDATE user_file SET parent_id = %s, name = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (_parent_param(target_folder), target_name, file_id),
                ).fetchone()
                return self._file_from_row(updated)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "name already exists in folder",
                {"constraint": UNIQUE_NAME, "folder_id": target_folder, "name": target_name},
            )

    def move_files(
        self, user_id: str, file_ids: Iterable[str], folder_id: str
    ) -> List[UserFile]:
        ids = list(dict.fromkeys(file_ids))
        moved: List[UserFile] = []
        with self._connect() as conn:
            self._lock_user_tree(conn, user_id)
            blocked = {folder_id} | {a.id for a in self._ancestor_chain(conn, user_id, folder_id)}
            looping = [fid for fid in ids if fid in blocked]
            if looping:
                raise ConstraintViolation(
                    "cannot move a folder into itself or a descendant",
                    {"constraint": ACYCLIC, "file_ids": looping, "folder_id": folder_id},
                )
            for fid in ids:
                try:
                    with conn.transaction():
                        row = conn.execute(
                            """
                            UPDATE user_file SET parent_id = %s, updated_at = now()
                            WHERE id = %s AND user_id = %s
                              AND parent_id IS DISTINCT FROM %s
                            RETURNING *
                            """,
                            (_parent_param(folder_id), fid, user_id, _parent_param(folder_id)),
                        ).fetchone()
                except errors.UniqueViolation:
                    self.logger.debug("move_skipped_name_taken", file_id=fid, folder_id=folder_id)
                    continue
                if row:
                    moved.append(self._file_from_row(row))
        return moved

    def delete_file(self, user_id: str, file_id: str) -> Optional[UserFile]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "DELETE FROM user_file WHERE id = %s AND user_id = %s RETURNING *",
                    (file_id, user_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "folder is not empty",
                {"constraint": FOLDER_NOT_EMPTY, "file_id": file_id},
            )
        return self._file_from_row(row) if row else None

    def delete_files(self, user_id: str, file_ids: Iterable[str]) -> List[UserFile]:
        pending = list(dict.fromkeys(file_ids))
        deleted: List[UserFile] = []
        with self._connect() as conn:
            self._lock_user_tree(conn, user_id)
            # Repeat passes so folders go once their batched children are gone
            progress = True
            while pending and progress:
                progress = False
                for fid in list(pending):
                    try:
                        with conn.transaction():
                            row = conn.execute(
                                "DELETE FROM user_file WHERE id = %s AND user_id = %s RETURNING *",
                                (fid, user_id),
                            ).fetchone()
                    except errors.ForeignKeyViolation:
                        continue
                    pending.remove(fid)
                    if row:
                        deleted.append(self._file_from_row(row))
                        progress = True
        return deleted

    def verify_connection(self) -> Any:
        with self._connect() as conn:
            return conn.execute("SELECT 1 AS ok").fetchone()
