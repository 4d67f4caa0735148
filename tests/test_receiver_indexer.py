"""
Tests for the receiver indexer: Transfer blocks -> users rows, cursor handling.
"""

import asyncio
import copy
from datetime import datetime, timezone

import receiver_indexer
from receiver_indexer import ReceiverIndexer

SELECTOR = "0x99cd8bde557814842a3121e8ddfd433a539b8c9f14bf31ebf108d12e6196e9"


def make_block(number, receivers, timestamp=1735171200):
    return {
        "header": {"blockNumber": number, "timestamp": timestamp},
        "events": [
            {
                "keys": [SELECTOR, "0x1", receiver],
                "transactionIndex": i,
                "eventIndex": i,
                "transactionHash": hex((number or 0) * 100 + i),
            }
            for i, receiver in enumerate(receivers)
        ],
    }


class FakeStream:
    """Serves pre-decoded blocks by number"""

    def __init__(self, blocks, head):
        self.blocks_by_number = {b["header"]["blockNumber"]: b for b in blocks}
        self.head = head
        self.windows = []

    async def block_number(self):
        return self.head

    async def blocks(self, from_block, to_block):
        self.windows.append((from_block, to_block))
        for number in sorted(self.blocks_by_number):
            if from_block <= number <= to_block:
                yield self.blocks_by_number[number]


class ListStream(FakeStream):
    """Yields its blocks as given, pending ones included"""

    def __init__(self, blocks, head):
        self.block_list = list(blocks)
        self.head = head
        self.windows = []

    async def blocks(self, from_block, to_block):
        self.windows.append((from_block, to_block))
        for block in self.block_list:
            yield block


class TestTransform:
    """Test one block -> rows."""

    def test_dedup_within_block(self, make_db, transfer_block):
        """Same receiver in two spellings is stored once, first occurrence wins."""
        db = make_db()
        indexer = ReceiverIndexer(db, dedup=True)

        inserted = asyncio.run(indexer.transform(transfer_block))

        assert inserted == 2
        assert len(db.insert_users_calls) == 1
        first, second = db.users
        assert first["user_address"] == "0xabc"
        assert first["tx_hash"] == "0xaaa"
        assert first["event_index"] == 3
        assert first["tx_index"] == 0
        assert first["block_number"] == 1000
        assert first["timestamp"] == 1735171200
        assert first["_cursor"] == 1000
        assert second["user_address"] == "0xdef"
        assert second["event_index"] == 9

    def test_without_dedup_every_event_is_kept(self, make_db, transfer_block):
        db = make_db(dedup_users=False)
        indexer = ReceiverIndexer(db, dedup=False)

        assert asyncio.run(indexer.transform(transfer_block)) == 3
        assert [u["user_address"] for u in db.users] == ["0xabc", "0xabc", "0xdef"]

    def test_pending_block_is_skipped(self, make_db, transfer_block):
        db = make_db()
        indexer = ReceiverIndexer(db, dedup=True)
        block = copy.deepcopy(transfer_block)
        block["header"]["blockNumber"] = None

        assert asyncio.run(indexer.transform(block)) == 0
        assert db.insert_users_calls == []
        assert indexer.stats["skipped_pending"] == 1

    def test_redelivered_block_inserts_nothing(self, make_db, transfer_block):
        db = make_db(dedup_users=False)
        indexer = ReceiverIndexer(db, dedup=False)

        asyncio.run(indexer.transform(transfer_block))
        assert asyncio.run(indexer.transform(transfer_block)) == 0
        assert len(db.users) == 3

    def test_block_zero_is_not_pending(self, make_db):
        db = make_db()
        indexer = ReceiverIndexer(db, dedup=True)

        assert asyncio.run(indexer.transform(make_block(0, ["0xabc"]))) == 1
        assert db.users[0]["block_number"] == 0
        assert indexer.stats["skipped_pending"] == 0

    def test_known_user_in_later_block_is_not_duplicated(self, make_db):
        db = make_db(dedup_users=True)
        indexer = ReceiverIndexer(db, dedup=True)

        asyncio.run(indexer.transform(make_block(1, ["0xabc"])))
        inserted = asyncio.run(indexer.transform(make_block(2, ["0xABC", "0x123"])))

        assert inserted == 1
        assert [u["user_address"] for u in db.users] == ["0xabc", "0x123"]

    def test_datetime_timestamp(self, make_db, transfer_block):
        block = copy.deepcopy(transfer_block)
        block["header"]["timestamp"] = datetime(2024, 12, 26, tzinfo=timezone.utc)
        db = make_db()

        asyncio.run(ReceiverIndexer(db, dedup=True).transform(block))

        assert {u["timestamp"] for u in db.users} == {1735171200}

    def test_empty_block_writes_nothing(self, make_db):
        db = make_db()
        indexer = ReceiverIndexer(db, dedup=True)

        assert asyncio.run(indexer.transform(make_block(5, []))) == 0
        assert db.insert_users_calls == []


class TestRun:
    """Test the polling loop and cursor persistence."""

    def test_catches_up_and_saves_cursor(self, make_db):
        db = make_db()
        stream = FakeStream([make_block(10, ["0x1"]), make_block(12, ["0x2", "0x3"])], head=15)
        indexer = ReceiverIndexer(
            db, stream, dedup=True, indexer_name="test", starting_block=10, block_range=100
        )

        asyncio.run(indexer.run(follow=False))

        assert [u["user_address"] for u in db.users] == ["0x1", "0x2", "0x3"]
        assert db.cursors["test"] == 15
        assert stream.windows == [(10, 15)]

    def test_resumes_after_saved_cursor(self, make_db):
        db = make_db()
        db.cursors["test"] = 10
        stream = FakeStream([make_block(10, ["0x1"]), make_block(12, ["0x2"])], head=12)
        indexer = ReceiverIndexer(db, stream, dedup=True, indexer_name="test", starting_block=0)

        asyncio.run(indexer.run(follow=False))

        assert stream.windows == [(11, 12)]
        assert [u["user_address"] for u in db.users] == ["0x2"]

    def test_windows_are_bounded_by_block_range(self, make_db):
        db = make_db()
        stream = FakeStream([make_block(3, ["0x1"]), make_block(7, ["0x2"])], head=9)
        indexer = ReceiverIndexer(
            db, stream, dedup=True, indexer_name="test", starting_block=0, block_range=4
        )

        asyncio.run(indexer.run(follow=False))

        assert stream.windows == [(0, 3), (4, 7), (8, 9)]
        assert db.cursors["test"] == 9
        assert len(db.users) == 2

    def test_nothing_to_do_when_caught_up(self, make_db):
        db = make_db()
        db.cursors["test"] = 20
        stream = FakeStream([], head=20)
        indexer = ReceiverIndexer(db, stream, dedup=True, indexer_name="test")

        asyncio.run(indexer.run(follow=False))

        assert stream.windows == []
        assert db.cursors["test"] == 20

    def test_pending_block_in_window_is_skipped(self, make_db):
        """A pending block mid-window neither stops the run nor moves the cursor."""
        db = make_db()
        stream = ListStream(
            [make_block(3, ["0x1"]), make_block(None, ["0x2"]), make_block(5, ["0x3"])],
            head=6,
        )
        indexer = ReceiverIndexer(db, stream, dedup=True, indexer_name="test", starting_block=0)

        asyncio.run(indexer.run(follow=False))

        assert [u["user_address"] for u in db.users] == ["0x1", "0x3"]
        assert db.cursors["test"] == 6
        assert indexer.stats["skipped_pending"] == 1


class TestMain:
    """Process exit status."""

    def test_fatal_error_exits_non_zero(self, monkeypatch):
        async def broken(follow=True, starting_block=None):
            raise ConnectionError("could not connect to server")

        monkeypatch.setattr(receiver_indexer, "run_indexer", broken)
        assert receiver_indexer.main(["--once"]) == 1

    def test_once_flag(self, monkeypatch):
        seen = {}

        async def ok(follow=True, starting_block=None):
            seen.update(follow=follow, starting_block=starting_block)

        monkeypatch.setattr(receiver_indexer, "run_indexer", ok)
        assert receiver_indexer.main(["--once", "--starting-block", "42"]) == 0
        assert seen == {"follow": False, "starting_block": 42}
