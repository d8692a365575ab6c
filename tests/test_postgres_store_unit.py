"""PostgresStore logic exercised against scripted connections, no database needed."""

import contextlib
from datetime import datetime, timezone
from pathlib import Path

import pytest
from psycopg import errors

from playground.logging import get_logger
from playground.storage.errors import (
    ACYCLIC,
    FOLDER_NOT_EMPTY,
    IDENTITY_LINKED,
    PARENT_MISSING,
    UNIQUE_NAME,
    ConstraintViolation,
)
from playground.storage.models import ROOT_FOLDER_ID, FolderMetadata
from playground.storage.postgres import PostgresStore, _parent_param

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Answers each statement through ``responder(sql, params)``."""

    def __init__(self, responder):
        self.responder = responder
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.responder(" ".join(sql.split()), params)
        if isinstance(result, Exception):
            raise result
        if isinstance(result, FakeCursor):
            return result
        return FakeCursor(result)

    @contextlib.contextmanager
    def transaction(self):
        yield self


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


def create_test_store(tmp_path: Path, responder=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.fs_root = tmp_path
    store.max_folder_depth = 100
    store.logger = get_logger(__name__)
    if responder is None:
        store.pool = DummyPool()
    else:
        store.conn = FakeConnection(responder)
        store.pool = FakePool(store.conn)
    return store


def _file_row(file_id, parent_id=None, name=None, kind="folder", user_id="u1"):
    return {
        "id": file_id,
        "user_id": user_id,
        "parent_id": parent_id,
        "name": name or file_id,
        "kind": kind,
        "metadata": {"type": kind} if kind == "folder" else {
            "type": "video",
            "play_id": "vid",
            "duration_millis": 1,
            "width": 1,
            "height": 1,
            "mime_type": "video/mp4",
            "size_bytes": 1,
        },
        "created_at": NOW,
        "updated_at": NOW,
    }


def test_root_is_stored_as_null_parent():
    assert _parent_param(ROOT_FOLDER_ID) is None
    assert _parent_param("abc") == "abc"


def test_file_row_mapping_handles_json_text(tmp_path):
    store = create_test_store(tmp_path)
    row = _file_row("f1")
    row["metadata"] = '{"type": "folder"}'

    node = store._file_from_row(row)

    assert node.folder_id == ROOT_FOLDER_ID
    assert isinstance(node.metadata, FolderMetadata)


def test_create_user_maps_unique_violation(tmp_path):
    def responder(sql, params):
        if sql.startswith("INSERT INTO app_user"):
            return errors.UniqueViolation("duplicate key")
        return []

    store = create_test_store(tmp_path, responder)

    with pytest.raises(ConstraintViolation) as exc:
        store.create_user("google@alice", "Alice")
    assert exc.value.constraint == IDENTITY_LINKED


def test_link_identity_refuses_foreign_owner(tmp_path):
    def responder(sql, params):
        if sql.startswith("SELECT * FROM app_user"):
            return [{"id": "google@bob", "name": "Bob", "picture": None, "created_at": NOW}]
        if sql.startswith("SELECT user_id FROM user_identity"):
            return [{"user_id": "google@alice"}]
        return []

    store = create_test_store(tmp_path, responder)

    with pytest.raises(ConstraintViolation) as exc:
        store.link_identity("google@bob", "google@alice")
    assert exc.value.constraint == IDENTITY_LINKED


def test_create_file_name_collision(tmp_path):
    def responder(sql, params):
        if sql.startswith("INSERT INTO user_file"):
            return errors.UniqueViolation("user_file_name_uniq")
        return []

    store = create_test_store(tmp_path, responder)

    with pytest.raises(ConstraintViolation) as exc:
        store.create_file("u1", ROOT_FOLDER_ID, "Movies", FolderMetadata())
    assert exc.value.constraint == UNIQUE_NAME


def test_create_file_under_video_is_parent_missing(tmp_path):
    def responder(sql, params):
        if "FOR SHARE" in sql:
            return [{"kind": "video"}]
        raise AssertionError(f"unexpected statement {sql}")

    store = create_test_store(tmp_path, responder)

    with pytest.raises(ConstraintViolation) as exc:
        store.create_file("u1", "clip", "inner", FolderMetadata())
    assert exc.value.constraint == PARENT_MISSING


def test_delete_non_empty_folder(tmp_path):
    def responder(sql, params):
        return errors.ForeignKeyViolation("user_file_parent_id_fkey")

    store = create_test_store(tmp_path, responder)

    with pytest.raises(ConstraintViolation) as exc:
        store.delete_file("u1", "f1")
    assert exc.value.constraint == FOLDER_NOT_EMPTY


def test_update_file_rejects_cycle(tmp_path):
    def responder(sql, params):
        if "pg_advisory_xact_lock" in sql:
            return []
        if "FOR UPDATE" in sql:
            return [_file_row("a")]
        if sql.startswith("WITH RECURSIVE"):
            # chain of b: b -> a -> root
            return [_file_row("b", parent_id="a"), _file_row("a")]
        raise AssertionError(f"unexpected statement {sql}")

    store = create_test_store(tmp_path, responder)

    with pytest.raises(ConstraintViolation) as exc:
        store.update_file("u1", "a", folder_id="b")
    assert exc.value.constraint == ACYCLIC


def test_rename_collision_reports_resolved_target(tmp_path):
    def responder(sql, params):
        if "pg_advisory_xact_lock" in sql:
            return []
        if "FOR UPDATE" in sql:
            return [_file_row("a", parent_id="p", name="Old")]
        if sql.startswith("UPDATE user_file"):
            return errors.UniqueViolation("user_file_name_uniq")
        raise AssertionError(f"unexpected statement {sql}")

    store = create_test_store(tmp_path, responder)

    with pytest.raises(ConstraintViolation) as exc:
        store.update_file("u1", "a", name="Taken")
    assert exc.value.constraint == UNIQUE_NAME
    assert exc.value.detail["folder_id"] == "p"
    assert exc.value.detail["name"] == "Taken"


def test_move_files_skips_name_collisions(tmp_path):
    def responder(sql, params):
        if "pg_advisory_xact_lock" in sql:
            return []
        if sql.startswith("WITH RECURSIVE"):
            return [_file_row("dest")]
        if sql.startswith("UPDATE user_file"):
            fid = params[1]
            if fid == "clash":
                return errors.UniqueViolation("user_file_name_uniq")
            if fid == "ok":
                return [_file_row("ok", parent_id="dest")]
            return []
        raise AssertionError(f"unexpected statement {sql}")

    store = create_test_store(tmp_path, responder)

    moved = store.move_files("u1", ["ok", "clash", "missing", "ok"], "dest")

    assert [f.id for f in moved] == ["ok"]
    updates = [p for s, p in store.conn.statements if s.startswith("UPDATE user_file")]
    assert [p[1] for p in updates] == ["ok", "clash", "missing"]


def test_move_files_cycle_issues_no_updates(tmp_path):
    def responder(sql, params):
        if "pg_advisory_xact_lock" in sql:
            return []
        if sql.startswith("WITH RECURSIVE"):
            return [_file_row("b", parent_id="a"), _file_row("a")]
        raise AssertionError(f"unexpected statement {sql}")

    store = create_test_store(tmp_path, responder)

    with pytest.raises(ConstraintViolation) as exc:
        store.move_files("u1", ["loose", "a"], "b")
    assert exc.value.constraint == ACYCLIC
    assert not any(s.startswith("UPDATE") for s, _ in store.conn.statements)


def test_revoke_session_reports_removal(tmp_path):
    def responder(sql, params):
        return FakeCursor(rowcount=1 if params == ("s1",) else 0)

    store = create_test_store(tmp_path, responder)

    assert store.revoke_session("s1") is True
    assert store.revoke_session("s2") is False


def test_delete_files_retries_folders_after_children(tmp_path):
    gone = set()

    def responder(sql, params):
        if "pg_advisory_xact_lock" in sql:
            return []
        if sql.startswith("DELETE FROM user_file"):
            fid = params[0]
            if fid == "parent" and "child" not in gone:
                return errors.ForeignKeyViolation("user_file_parent_id_fkey")
            if fid == "busy":
                return errors.ForeignKeyViolation("user_file_parent_id_fkey")
            if fid == "missing":
                return []
            gone.add(fid)
            return [_file_row(fid)]
        raise AssertionError(f"unexpected statement {sql}")

    store = create_test_store(tmp_path, responder)

    deleted = store.delete_files("u1", ["parent", "busy", "child", "missing"])

    assert [f.id for f in deleted] == ["child", "parent"]
