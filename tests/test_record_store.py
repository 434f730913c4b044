"""
Tests for the record store

Covers:
- Namespaced kinds and isolation between namespaces sharing a file
- Equality filters, insertion ordering, find_one semantics
- Partial-field updates
- Transactions and savepoints rolling back on abort
- Storage failures surfacing as IO_ERROR results
"""

import sqlite3
import threading
import pytest
from unittest.mock import MagicMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from paychan.errors import ErrorKind, StoreAbort, StoreError, invariant_violation
from paychan.record_store import RecordStore


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def mock_plugin():
    """Create a mock plugin for logging."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    return plugin


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "records.db")


@pytest.fixture
def store(db_path, mock_plugin):
    """Create an initialized store without a namespace."""
    s = RecordStore(db_path, mock_plugin)
    s.initialize()
    yield s
    s.close()


# =============================================================================
# NAMESPACE TESTS
# =============================================================================

class TestNamespaces:
    """Kind qualification and isolation."""

    def test_ns_without_namespace(self, store):
        assert store.ns('channel') == 'channel'

    def test_ns_with_namespace(self, db_path):
        s = RecordStore(db_path, namespace='alice')
        assert s.ns('channel') == 'alice:channel'

    def test_namespaces_do_not_see_each_other(self, db_path, mock_plugin):
        a = RecordStore(db_path, mock_plugin, namespace='A')
        b = RecordStore(db_path, mock_plugin, namespace='B')
        a.initialize()

        assert a.insert('token', {'token': 't1', 'channel_id': 'c1'}).ok

        assert b.find('token', {'token': 't1'}).value == []
        assert b.find_one('token', {'token': 't1'}).is_not_found
        assert len(a.find('token', {'token': 't1'}).value) == 1

    def test_unnamespaced_store_does_not_see_namespaced(self, db_path, store):
        ns_store = RecordStore(db_path, namespace='A')
        ns_store.insert('channel', {'channel_id': 'c1'})

        assert store.find('channel').value == []


# =============================================================================
# QUERY TESTS
# =============================================================================

class TestQueries:
    """find / find_one behaviour."""

    def test_find_filters_by_all_fields(self, store):
        store.insert('channel', {'sender': '0xA', 'receiver': '0xB', 'channel_id': 'c1'})
        store.insert('channel', {'sender': '0xA', 'receiver': '0xC', 'channel_id': 'c2'})
        store.insert('channel', {'sender': '0xD', 'receiver': '0xB', 'channel_id': 'c3'})

        result = store.find('channel', {'sender': '0xA', 'receiver': '0xB'})

        assert result.ok
        assert [d['channel_id'] for d in result.value] == ['c1']

    def test_find_filters_by_kind(self, store):
        store.insert('channel', {'channel_id': 'c1'})
        store.insert('payment', {'channel_id': 'c1', 'value': 5})

        assert len(store.find('payment', {'channel_id': 'c1'}).value) == 1

    def test_find_returns_insertion_order(self, store):
        for value in (30, 10, 20):
            store.insert('payment', {'channel_id': 'c1', 'value': value})

        values = [d['value'] for d in store.find('payment', {'channel_id': 'c1'}).value]

        assert values == [30, 10, 20]

    def test_find_matches_integers_exactly(self, store):
        store.insert('payment', {'channel_id': 'c1', 'value': 10})
        store.insert('payment', {'channel_id': 'c1', 'value': 100})

        docs = store.find('payment', {'value': 10}).value

        assert len(docs) == 1
        assert docs[0]['value'] == 10

    def test_find_one_returns_first_inserted(self, store):
        store.insert('channel', {'channel_id': 'dup', 'spent': 1})
        store.insert('channel', {'channel_id': 'dup', 'spent': 2})

        result = store.find_one('channel', {'channel_id': 'dup'})

        assert result.ok
        assert result.value['spent'] == 1

    def test_find_one_not_found(self, store):
        result = store.find_one('channel', {'channel_id': 'missing'})

        assert not result.ok
        assert result.error.kind == ErrorKind.NOT_FOUND

    def test_documents_carry_id(self, store):
        doc_id = store.insert('token', {'token': 't'}).value

        assert store.find_one('token', {'token': 't'}).value['_id'] == doc_id

    def test_invalid_field_name_rejected(self, store):
        with pytest.raises(ValueError):
            store.find('channel', {"x') OR 1=1 --": 'y'})


# =============================================================================
# WRITE TESTS
# =============================================================================

class TestWrites:
    """insert / update behaviour."""

    def test_update_changes_only_named_fields(self, store):
        store.insert('channel', {'channel_id': 'c1', 'sender': '0xA', 'value': 100, 'spent': 0})

        result = store.update('channel', {'channel_id': 'c1'}, {'spent': 40})

        assert result.ok
        assert result.value == 1
        doc = store.find_one('channel', {'channel_id': 'c1'}).value
        assert doc['spent'] == 40
        assert doc['sender'] == '0xA'
        assert doc['value'] == 100

    def test_update_no_match(self, store):
        result = store.update('channel', {'channel_id': 'nope'}, {'spent': 1})

        assert result.ok
        assert result.value == 0

    def test_update_respects_namespace(self, db_path, store):
        other = RecordStore(db_path, namespace='other')
        other.insert('channel', {'channel_id': 'c1', 'spent': 0})
        store.insert('channel', {'channel_id': 'c1', 'spent': 0})

        other.update('channel', {'channel_id': 'c1'}, {'spent': 9})

        assert store.find_one('channel', {'channel_id': 'c1'}).value['spent'] == 0

    def test_storage_failure_is_io_error(self, db_path, mock_plugin):
        # Table never created
        s = RecordStore(db_path, mock_plugin)

        result = s.insert('token', {'token': 't'})

        assert result.is_io_error
        assert isinstance(result.error.cause, sqlite3.Error)
        levels = [c.kwargs.get('level') for c in mock_plugin.log.call_args_list]
        assert 'error' in levels


# =============================================================================
# TRANSACTION TESTS
# =============================================================================

class TestTransactions:
    """atomic() / transaction() semantics."""

    def test_atomic_commits(self, store):
        result = store.atomic(
            lambda: store.insert('token', {'token': 't1'}).unwrap(), "insert t1"
        )

        assert result.ok
        assert store.find_one('token', {'token': 't1'}).ok

    def test_atomic_abort_rolls_back(self, store):
        def operation():
            store.insert('token', {'token': 't1'}).unwrap()
            invariant_violation("no").unwrap()

        result = store.atomic(operation, "doomed")

        assert result.is_invariant_violation
        assert store.find_one('token', {'token': 't1'}).is_not_found

    def test_nested_abort_only_rolls_back_inner(self, store):
        def inner():
            store.insert('token', {'token': 'inner'}).unwrap()
            raise StoreAbort(StoreError(ErrorKind.INVARIANT_VIOLATION, "inner fails"))

        def outer():
            store.insert('token', {'token': 'outer'}).unwrap()
            nested = store.atomic(inner, "inner")
            assert nested.is_invariant_violation

        assert store.atomic(outer, "outer").ok
        assert store.find_one('token', {'token': 'outer'}).ok
        assert store.find_one('token', {'token': 'inner'}).is_not_found

    def test_outer_abort_rolls_back_committed_inner(self, store):
        def outer():
            assert store.atomic(
                lambda: store.insert('token', {'token': 'inner'}).unwrap(), "inner"
            ).ok
            raise StoreAbort(StoreError(ErrorKind.IO_ERROR, "outer fails"))

        assert store.atomic(outer, "outer").is_io_error
        assert store.find_one('token', {'token': 'inner'}).is_not_found

    def test_unexpected_exception_rolls_back_and_propagates(self, store):
        def operation():
            store.insert('token', {'token': 't1'}).unwrap()
            raise RuntimeError("bug")

        with pytest.raises(RuntimeError):
            store.atomic(operation, "buggy")

        assert store.find_one('token', {'token': 't1'}).is_not_found
        # Connection is usable again
        assert store.atomic(lambda: None, "noop").ok

    def test_locked_database_is_io_error(self, db_path, store):
        blocker = sqlite3.connect(db_path, isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        try:
            fast = RecordStore(db_path, busy_timeout_seconds=0.1)
            result = fast.atomic(lambda: None, "blocked")
            assert result.is_io_error
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()


# =============================================================================
# LARGE INTEGER TESTS
# =============================================================================

class TestLargeIntegers:
    """Wei-sized amounts exceed SQLite's 64-bit integers."""

    def test_insert_and_update_beyond_64_bits(self, store):
        deposit = 20 * 10 ** 18 + 1
        store.insert('channel', {'channel_id': 'c1', 'value': deposit, 'spent': 0})

        result = store.update('channel', {'channel_id': 'c1'}, {'spent': 10 ** 19 + 7})

        assert result.ok
        assert result.value == 1
        doc = store.find_one('channel', {'channel_id': 'c1'}).value
        assert doc['spent'] == 10 ** 19 + 7
        assert doc['value'] == deposit

    def test_update_string_and_null_values(self, store):
        store.insert('payment', {'channel_id': 'c1', 'token': None})

        store.update('payment', {'channel_id': 'c1'}, {'token': 'tok', 'note': None})

        doc = store.find_one('payment', {'channel_id': 'c1'}).value
        assert doc['token'] == 'tok'
        assert doc['note'] is None

    def test_filter_beyond_64_bits_is_rejected(self, store):
        result = store.find('payment', {'value': 10 ** 19})

        assert result.is_invariant_violation
        assert store.find_one('payment', {'value': -2 ** 64}).is_invariant_violation
        assert store.update('payment', {'value': 2 ** 63}, {'x': 1}).is_invariant_violation


# =============================================================================
# CONNECTION LIFECYCLE TESTS
# =============================================================================

class TestClose:

    def test_close_reaches_worker_thread_connections(self, store):
        opened = []

        def worker():
            store.find('channel')
            opened.append(store._get_connection())

        t = threading.Thread(target=worker)
        t.start()
        t.join()

        store.close()

        with pytest.raises(sqlite3.ProgrammingError):
            opened[0].execute("SELECT 1")

    def test_store_reopens_after_close(self, store):
        store.insert('token', {'token': 't1'})
        store.close()

        assert store.find_one('token', {'token': 't1'}).ok

    def test_worker_reopens_after_close(self, store):
        results = []

        def worker():
            results.append(store.find('channel'))

        t = threading.Thread(target=worker)
        t.start()
        t.join()
        store.close()

        t = threading.Thread(target=worker)
        t.start()
        t.join()

        assert all(r.ok for r in results)
