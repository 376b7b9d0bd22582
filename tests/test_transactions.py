"""Tests for current-thread and background-thread transactions."""

import threading

import pytest

from devicestore.db import Commit, ErrorKind, Rollback
from tests.conftest import CACHE_DDL, count_rows


class TestCurrentThread:
    def test_commit_persists(self, storage):
        storage.create_table("Cache", CACHE_DDL)
        r = storage.run_in_transaction_current(
            lambda cur: cur.execute("INSERT INTO Cache VALUES (1, 0, 'x')")
        )
        assert r.ok
        assert r.committed
        assert r.value is None
        assert count_rows(storage, "Cache") == 1

    def test_commit_value_returned(self, storage):
        r = storage.run_in_transaction_current(lambda cur: Commit(cur.execute("SELECT 42").fetchone()[0]))
        assert r.unwrap() == 42
        assert r.committed

    def test_plain_return_value_commits(self, storage):
        r = storage.run_in_transaction_current(lambda cur: "done")
        assert r.value == "done"
        assert r.committed

    def test_rollback_leaves_state_unchanged(self, storage):
        storage.create_table("Cache", CACHE_DDL)
        storage.run_in_transaction_current(lambda cur: cur.execute("INSERT INTO Cache VALUES (1, 0, 'keep')"))
        before = storage.query("SELECT * FROM Cache ORDER BY id").unwrap()

        def block(cur):
            cur.execute("INSERT INTO Cache VALUES (2, 0, 'gone')")
            cur.execute("UPDATE Cache SET val = 'changed' WHERE id = 1")
            return Rollback("abandoned")

        r = storage.run_in_transaction_current(block)
        assert r.ok
        assert not r.committed
        assert r.value == "abandoned"
        assert storage.query("SELECT * FROM Cache ORDER BY id").unwrap() == before

    def test_sql_error_rolls_back_earlier_writes(self, storage):
        storage.create_table("Cache", CACHE_DDL)

        def block(cur):
            cur.execute("INSERT INTO Cache VALUES (1, 0, 'x')")
            cur.execute("INSERT INTO Missing VALUES (1)")

        r = storage.run_in_transaction_current(block)
        assert not r.ok
        assert r.error.kind == ErrorKind.MISUSE
        assert count_rows(storage, "Cache") == 0

    def test_python_exception_propagates_and_rolls_back(self, storage):
        storage.create_table("Cache", CACHE_DDL)

        def block(cur):
            cur.execute("INSERT INTO Cache VALUES (1, 0, 'x')")
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            storage.run_in_transaction_current(block)
        assert count_rows(storage, "Cache") == 0

    def test_concurrent_write_conflict_rolls_back_loser(self, storage):
        storage.create_table("Cache", CACHE_DDL)
        storage.run_in_transaction_current(lambda cur: cur.execute("INSERT INTO Cache VALUES (1, 0, 'orig')"))
        first_wrote = threading.Event()
        second_done = threading.Event()
        results = {}

        def first(cur):
            cur.execute("UPDATE Cache SET val = 'first' WHERE id = 1")
            first_wrote.set()
            second_done.wait(timeout=10)

        def second(cur):
            try:
                first_wrote.wait(timeout=10)
                cur.execute("INSERT INTO Cache VALUES (2, 0, 'partial')")
                cur.execute("UPDATE Cache SET val = 'second' WHERE id = 1")
            finally:
                second_done.set()

        t = threading.Thread(target=lambda: results.setdefault("first", storage.run_in_transaction_current(first)))
        t.start()
        results["second"] = storage.run_in_transaction_current(second)
        t.join(timeout=10)

        assert results["first"].ok and results["first"].committed
        assert not results["second"].ok
        assert results["second"].error.kind == ErrorKind.CONFLICT
        rows = storage.query("SELECT id, val FROM Cache ORDER BY id").unwrap()
        assert rows == [{"id": 1, "val": "first"}]

    def test_runs_on_calling_thread(self, storage):
        r = storage.run_in_transaction_current(lambda cur: threading.get_ident())
        assert r.value == threading.get_ident()


class TestBackgroundThread:
    def test_runs_off_calling_thread(self, storage):
        future = storage.run_in_transaction_background(lambda cur: threading.current_thread().name)
        r = future.result(timeout=10)
        assert r.ok
        assert r.value.startswith("devicestore-tx")
        assert r.value != threading.current_thread().name

    def test_does_not_block_caller(self, storage):
        release = threading.Event()

        def block(cur):
            release.wait(timeout=10)
            return "released"

        future = storage.run_in_transaction_background(block)
        assert not future.done()
        release.set()
        assert future.result(timeout=10).value == "released"

    def test_commit_visible_after_completion(self, storage):
        storage.create_table("Cache", CACHE_DDL)
        future = storage.run_in_transaction_background(
            lambda cur: cur.execute("INSERT INTO Cache VALUES (1, 0, 'x')")
        )
        assert future.result(timeout=10).committed
        assert count_rows(storage, "Cache") == 1

    def test_rollback_in_background(self, storage):
        storage.create_table("Cache", CACHE_DDL)

        def block(cur):
            cur.execute("INSERT INTO Cache VALUES (1, 0, 'x')")
            return Rollback()

        r = storage.run_in_transaction_background(block).result(timeout=10)
        assert r.ok and not r.committed
        assert count_rows(storage, "Cache") == 0

    def test_fifo_and_no_interleaving(self, storage):
        storage.create_table("Log", "CREATE TABLE Log (seq INTEGER, phase VARCHAR)")
        events = []
        lock = threading.Lock()
        futures = []

        def make_block(seq):
            def block(cur):
                with lock:
                    events.append(("start", seq))
                cur.execute("INSERT INTO Log VALUES (?, 'start')", [seq])
                cur.execute("INSERT INTO Log VALUES (?, 'end')", [seq])
                with lock:
                    events.append(("end", seq))
            return block

        def submitter(start):
            for seq in range(start, start + 10):
                with lock:
                    futures.append((seq, storage.run_in_transaction_background(make_block(seq))))

        threads = [threading.Thread(target=submitter, args=(n * 10,)) for n in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        for _, f in futures:
            assert f.result(timeout=10).ok

        submitted = [seq for seq, _ in futures]
        expected = []
        for seq in submitted:
            expected.extend([("start", seq), ("end", seq)])
        assert events == expected
        assert count_rows(storage, "Log") == 60

    def test_exception_lands_on_future(self, storage):
        def block(cur):
            raise RuntimeError("bad block")

        future = storage.run_in_transaction_background(block)
        with pytest.raises(RuntimeError, match="bad block"):
            future.result(timeout=10)
        # worker keeps serving after a failed job
        assert storage.run_in_transaction_background(lambda cur: 1).result(timeout=10).value == 1

    def test_close_drains_pending_jobs(self, tmp_path):
        from devicestore.db import Storage

        s = Storage(str(tmp_path / "drain.duckdb"))
        s.prepare_on_launch()
        s.create_table("Cache", CACHE_DDL)
        futures = [
            s.run_in_transaction_background(
                lambda cur, i=i: cur.execute("INSERT INTO Cache VALUES (?, 0, 'x')", [i])
            )
            for i in range(5)
        ]
        s.close()
        assert all(f.result(timeout=10).ok for f in futures)

        reopened = Storage(str(tmp_path / "drain.duckdb"))
        reopened.prepare_on_launch()
        try:
            assert count_rows(reopened, "Cache") == 5
        finally:
            reopened.close()

    def test_close_without_wait_still_runs_queued_jobs(self, tmp_path):
        from devicestore.db import Storage

        path = str(tmp_path / "nowait.duckdb")
        s = Storage(path)
        s.prepare_on_launch()
        s.create_table("Cache", CACHE_DDL)
        gate = threading.Event()

        def gated(cur):
            gate.wait(timeout=10)
            cur.execute("INSERT INTO Cache VALUES (0, 0, 'gated')")

        futures = [s.run_in_transaction_background(gated)]
        futures += [
            s.run_in_transaction_background(
                lambda cur, i=i: cur.execute("INSERT INTO Cache VALUES (?, 0, 'x')", [i])
            )
            for i in range(1, 4)
        ]
        s.close(wait=False)
        assert not futures[0].done()
        gate.set()

        results = [f.result(timeout=10) for f in futures]
        assert all(r.ok and r.committed for r in results)
        assert s.run_in_transaction_background(lambda cur: None).result().error.kind == ErrorKind.MISUSE

        reopened = Storage(path)
        reopened.prepare_on_launch()
        try:
            assert count_rows(reopened, "Cache") == 4
        finally:
            reopened.close()
