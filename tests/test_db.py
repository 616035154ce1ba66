"""Tests for the database layer and Store."""

import sqlite3

import pytest
import pytest_asyncio

from parley import db
from parley.errors import TransientStoreFailure
from parley.metrics import Metrics

NOW = "2025-01-01T12:00:00.000000+00:00"


@pytest_asyncio.fixture
async def store():
    s = db.Store(":memory:", retry_backoff=0)
    yield s
    await s.aclose()


async def make_room(store, room_id="room-1", workspace_id="ws-1", kind="group"):
    return await store.run(
        db.create_room,
        room_id,
        workspace_id,
        kind,
        "design",
        None,
        "alice",
        [("alice", "admin"), ("bob", "member")],
        b"sealed",
        "hash",
        NOW,
    )


class TestMigrations:
    def test_fresh_database(self):
        conn = db.connect(":memory:")
        assert db.run_migrations(conn) == [1, 2, 3]
        assert db.get_schema_version(conn=conn) == db.SCHEMA_VERSION

    def test_idempotent(self):
        conn = db.connect(":memory:")
        db.run_migrations(conn)
        assert db.run_migrations(conn) == []

    def test_upgrade_backfills_invitation_tokens(self):
        conn = db.connect(":memory:")
        db._ensure_schema_version_table(conn)
        for version, description, migrate_fn in db.MIGRATIONS[:2]:
            migrate_fn(conn)
            conn.execute(
                "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                (version, description),
            )
        conn.execute(
            "INSERT INTO rooms (room_id, workspace_id, kind, name, created_by, created_at, updated_at) "
            "VALUES ('room-1', 'ws-1', 'group', 'design', 'alice', ?, ?)",
            (NOW, NOW),
        )
        conn.execute(
            "INSERT INTO invitations (invitation_id, room_id, invitee_id, inviter_id, created_at, expires_at) "
            "VALUES ('inv-1', 'room-1', 'bob', 'alice', ?, '2099-01-01')",
            (NOW,),
        )
        conn.commit()

        assert db.run_migrations(conn) == [3]
        token = db.get_invitation("inv-1", conn=conn)["token"]
        assert token
        assert db.get_invitation_by_token(token, conn=conn)["invitation_id"] == "inv-1"

    def test_file_database_persists(self, tmp_path):
        path = str(tmp_path / "parley.db")
        conn = db.connect(path)
        db.run_migrations(conn)
        conn.close()

        conn = db.connect(path)
        assert db.get_schema_version(conn=conn) == db.SCHEMA_VERSION
        assert db.run_migrations(conn) == []


class TestStoreRetries:
    @pytest.mark.asyncio
    async def test_retries_busy_then_succeeds(self):
        metrics = Metrics()
        store = db.Store(":memory:", retry_attempts=3, retry_backoff=0, metrics=metrics)
        calls = []

        def flaky(*, conn):
            calls.append(1)
            if len(calls) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "ok"

        try:
            assert await store.run(flaky) == "ok"
        finally:
            await store.aclose()
        assert len(calls) == 3
        assert metrics.store_retries["flaky"] == 2

    @pytest.mark.asyncio
    async def test_gives_up_with_transient_failure(self):
        store = db.Store(":memory:", retry_attempts=2, retry_backoff=0)
        calls = []

        def always_busy(*, conn):
            calls.append(1)
            raise sqlite3.OperationalError("database is busy")

        try:
            with pytest.raises(TransientStoreFailure) as exc_info:
                await store.run(always_busy)
        finally:
            await store.aclose()
        assert len(calls) == 3
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, store):
        def broken(*, conn):
            conn.execute("SELECT * FROM no_such_table")

        with pytest.raises(sqlite3.OperationalError, match="no such table"):
            await store.run(broken)

    @pytest.mark.asyncio
    async def test_calls_are_timed(self, store):
        await store.run(db.get_room, "missing")
        assert store.metrics.operations["store.get_room"].count == 1

    @pytest.mark.asyncio
    async def test_closed_store_rejects_calls(self):
        store = db.Store(":memory:")
        await store.aclose()
        await store.aclose()
        with pytest.raises(RuntimeError, match="closed"):
            await store.run(db.get_room, "room-1")


class TestRooms:
    @pytest.mark.asyncio
    async def test_create_room_with_members_and_epoch(self, store):
        room = await make_room(store)

        assert room["status"] == "active"
        assert room["last_seq"] == 0
        assert room["current_epoch"] == 0
        assert await store.run(db.active_member_ids, "room-1") == ["alice", "bob"]
        epoch = await store.run(db.get_epoch, "room-1", 0)
        assert epoch["reason"] == "created"
        assert epoch["sealed_key"] == b"sealed"

    @pytest.mark.asyncio
    async def test_one_general_room_per_workspace(self, store):
        await make_room(store, "general-1", kind="general")
        with pytest.raises(sqlite3.IntegrityError):
            await make_room(store, "general-2", kind="general")
        # Rolled back entirely
        assert await store.run(db.get_room, "general-2") is None
        # Other workspaces and other kinds are unaffected
        await make_room(store, "general-3", workspace_id="ws-2", kind="general")
        await make_room(store, "group-1", kind="group")

    @pytest.mark.asyncio
    async def test_set_room_status_stamps_column(self, store):
        await make_room(store)
        room = await store.run(db.set_room_status, "room-1", "archived", NOW)
        assert room["status"] == "archived"
        assert room["archived_at"] == NOW
        assert room["deleted_at"] is None


class TestMessages:
    @pytest.mark.asyncio
    async def test_sequence_numbers_are_gapless(self, store):
        await make_room(store)
        seqs = []
        for i in range(5):
            row, created = await store.run(
                db.insert_message, "room-1", "alice", b"c", b"n", 0, None, None, NOW
            )
            assert created
            seqs.append(row["seq"])
        assert seqs == [1, 2, 3, 4, 5]
        assert (await store.run(db.get_room, "room-1"))["last_seq"] == 5

    @pytest.mark.asyncio
    async def test_client_token_deduplicates(self, store):
        await make_room(store)
        first, created = await store.run(
            db.insert_message, "room-1", "alice", b"c", b"n", 0, None, "tok-1", NOW
        )
        again, created_again = await store.run(
            db.insert_message, "room-1", "alice", b"other", b"n", 0, None, "tok-1", NOW
        )

        assert created and not created_again
        assert again["message_id"] == first["message_id"]
        assert again["ciphertext"] == b"c"
        assert (await store.run(db.get_room, "room-1"))["last_seq"] == 1

    @pytest.mark.asyncio
    async def test_same_token_different_sender(self, store):
        await make_room(store)
        a, _ = await store.run(db.insert_message, "room-1", "alice", b"c", b"n", 0, None, "t", NOW)
        b, created = await store.run(db.insert_message, "room-1", "bob", b"c", b"n", 0, None, "t", NOW)
        assert created
        assert a["message_id"] != b["message_id"]

    @pytest.mark.asyncio
    async def test_tombstone_batches(self, store):
        await make_room(store)
        for _ in range(5):
            await store.run(db.insert_message, "room-1", "alice", b"c", b"n", 0, None, None, NOW)

        batches = []
        after = 0
        while True:
            count, last = await store.run(db.tombstone_message_batch, "room-1", after, 5, 2, NOW)
            if last is None:
                break
            batches.append((count, last))
            after = last

        assert batches == [(2, 2), (2, 4), (1, 5)]
        rows = await store.run(db.list_messages, "room-1", 0, 6, 10)
        assert all(r["status"] == "deleted" and r["ciphertext"] == b"" for r in rows)

    @pytest.mark.asyncio
    async def test_tombstone_drops_reactions(self, store):
        await make_room(store)
        row, _ = await store.run(db.insert_message, "room-1", "alice", b"c", b"n", 0, None, None, NOW)
        await store.run(db.add_reaction, row["message_id"], "bob", "+1", NOW)

        deleted = await store.run(db.tombstone_message, row["message_id"], NOW)

        assert deleted["status"] == "deleted"
        assert deleted["seq"] == 1
        assert await store.run(db.list_reactions, row["message_id"]) == []


class TestReactionsAndReceipts:
    @pytest.mark.asyncio
    async def test_reaction_unique_per_triple(self, store):
        await make_room(store)
        row, _ = await store.run(db.insert_message, "room-1", "alice", b"c", b"n", 0, None, None, NOW)
        mid = row["message_id"]

        assert await store.run(db.add_reaction, mid, "bob", "+1", NOW) is True
        assert await store.run(db.add_reaction, mid, "bob", "+1", NOW) is False
        assert await store.run(db.add_reaction, mid, "bob", "heart", NOW) is True
        assert len(await store.run(db.list_reactions, mid)) == 2
        assert await store.run(db.remove_reaction, mid, "bob", "+1") is True
        assert await store.run(db.remove_reaction, mid, "bob", "+1") is False

    @pytest.mark.asyncio
    async def test_unread_count_uses_highest_read_seq(self, store):
        await make_room(store)
        ids = []
        for _ in range(4):
            row, _ = await store.run(db.insert_message, "room-1", "alice", b"c", b"n", 0, None, None, NOW)
            ids.append(row["message_id"])

        assert await store.run(db.unread_count, "room-1", "bob") == 4
        await store.run(db.upsert_read_receipt, ids[2], "room-1", "bob", 3, NOW)
        assert await store.run(db.unread_count, "room-1", "bob") == 1
        await store.run(db.upsert_read_receipt, ids[0], "room-1", "bob", 1, NOW)
        assert await store.run(db.unread_count, "room-1", "bob") == 1


class TestInvitations:
    @pytest.mark.asyncio
    async def test_accept_is_exactly_once(self, store):
        await make_room(store)
        inv = await store.run(db.create_invitation, "room-1", "carol", "alice", NOW, "2099-01-01")

        first = await store.run(db.accept_invitation, inv["invitation_id"], "member", NOW)
        second = await store.run(db.accept_invitation, inv["invitation_id"], "member", NOW)

        assert first["status"] == "active"
        assert first["invited_by"] == "alice"
        assert second is None
        assert (await store.run(db.get_invitation, inv["invitation_id"]))["status"] == "accepted"

    @pytest.mark.asyncio
    async def test_invitation_tokens_are_unique(self, store):
        await make_room(store)
        one = await store.run(db.create_invitation, "room-1", "carol", "alice", NOW, "2099-01-01")
        two = await store.run(db.create_invitation, "room-1", "dave", "alice", NOW, "2099-01-01")

        assert one["token"] != two["token"]
        found = await store.run(db.get_invitation_by_token, two["token"])
        assert found["invitation_id"] == two["invitation_id"]
        assert await store.run(db.get_invitation_by_token, "not-a-token") is None

    @pytest.mark.asyncio
    async def test_expire_overdue(self, store):
        await make_room(store)
        await store.run(db.create_invitation, "room-1", "carol", "alice", NOW, "2025-01-01T13")
        await store.run(db.create_invitation, "room-1", "dave", "alice", NOW, "2099-01-01")

        assert await store.run(db.expire_overdue_invitations, "2025-01-02") == 1
        assert await store.run(db.find_pending_invitation, "room-1", "carol", "2025-01-02") is None
        assert await store.run(db.find_pending_invitation, "room-1", "dave", "2025-01-02") is not None


class TestExportSnapshot:
    @pytest.mark.asyncio
    async def test_missing_room(self, store):
        snapshot = await store.run(db.read_export_snapshot, "missing")
        assert snapshot["room"] is None

    @pytest.mark.asyncio
    async def test_excludes_tombstones(self, store):
        await make_room(store)
        kept, _ = await store.run(db.insert_message, "room-1", "alice", b"a", b"n", 0, None, None, NOW)
        gone, _ = await store.run(db.insert_message, "room-1", "alice", b"b", b"n", 0, None, None, NOW)
        await store.run(db.tombstone_message, gone["message_id"], NOW)

        snapshot = await store.run(db.read_export_snapshot, "room-1")

        assert snapshot["watermark"] == 2
        assert [m["message_id"] for m in snapshot["messages"]] == [kept["message_id"]]
        assert {p["user_id"] for p in snapshot["participants"]} == {"alice", "bob"}
