"""
In-process document store with Firestore-style optimistic transactions.

Used for tests and single-process development (HANDBACK_STORE=memory).
Each document carries a version; a transaction records the version of every
document it reads, buffers its writes, and commits only if none of those
versions changed in the meantime. Otherwise the transaction function is run
again, like the Firestore SDK does on contention.
"""
import copy
import itertools
import logging
import threading

from .errors import DocumentExistsError, StorageError

_logger = logging.getLogger(__name__)

_MISSING = object()


class ReadAfterWriteError(StorageError):
    """Raised when a transaction reads after it has started writing."""


class _Contention(Exception):
    pass


def _field_value(doc, field):
    value = doc
    for part in field.split('.'):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _matches(doc, field, op, expected):
    actual = _field_value(doc, field)
    if actual is _MISSING:
        return False
    try:
        if op == '==':
            return actual == expected
        if op == '!=':
            return actual != expected
        if op == '<':
            return actual < expected
        if op == '<=':
            return actual <= expected
        if op == '>':
            return actual > expected
        if op == '>=':
            return actual >= expected
        if op == 'in':
            return actual in expected
        if op == 'not-in':
            return actual not in expected
        if op == 'array_contains':
            return isinstance(actual, list) and expected in actual
    except TypeError:
        # Firestore never matches across value types
        return False
    raise StorageError(f'Unsupported query operator: {op}')


def _next_data(op, key, data, current):
    """Document contents after applying one write to `current` (None when absent)."""
    if op == 'create':
        if current is not None:
            raise DocumentExistsError(f'Document {key[0]}/{key[1]} already exists')
        return data
    if op == 'set':
        return data
    if op == 'merge':
        merged = dict(current or {})
        merged.update(data)
        return merged
    if op == 'update':
        if current is None:
            raise StorageError(f'No document to update: {key[0]}/{key[1]}')
        updated = dict(current)
        updated.update(data)
        return updated
    if op == 'delete':
        return None
    raise StorageError(f'Unknown write operation: {op}')


class MemoryTransaction:
    def __init__(self, store):
        self._store = store
        self._read_versions = {}
        self._writes = []

    def get(self, collection, doc_id):
        if self._writes:
            raise ReadAfterWriteError('Transactions require all reads before writes')
        key = (collection, doc_id)
        version, data = self._store._read_entry(key)
        self._read_versions.setdefault(key, version)
        return data

    def create(self, collection, doc_id, data):
        self._writes.append(('create', (collection, doc_id), copy.deepcopy(data)))

    def set(self, collection, doc_id, data, merge=False):
        op = 'merge' if merge else 'set'
        self._writes.append((op, (collection, doc_id), copy.deepcopy(data)))

    def update(self, collection, doc_id, fields):
        self._writes.append(('update', (collection, doc_id), copy.deepcopy(fields)))

    def delete(self, collection, doc_id):
        self._writes.append(('delete', (collection, doc_id), None))

    def _commit(self):
        store = self._store
        with store._lock:
            for key, version in self._read_versions.items():
                if store._version_of(key) != version:
                    raise _Contention()
            # Stage every write first so a failing create/update leaves nothing applied
            staged = {}
            for op, key, data in self._writes:
                current = staged[key] if key in staged else store._data_of(key)
                staged[key] = _next_data(op, key, data, current)
            for key, data in staged.items():
                store._write(key, data)


class MemoryStore:
    """Thread-safe in-memory document store."""

    def __init__(self, max_attempts: int = 50):
        self._docs = {}
        self._lock = threading.RLock()
        self._versions = itertools.count(1)
        self._max_attempts = max_attempts

    def _version_of(self, key):
        entry = self._docs.get(key)
        return entry[0] if entry else 0

    def _data_of(self, key):
        entry = self._docs.get(key)
        return entry[1] if entry else None

    def _read_entry(self, key):
        with self._lock:
            entry = self._docs.get(key)
            if entry is None:
                return 0, None
            version, data = entry
            return version, copy.deepcopy(data)

    def _write(self, key, data):
        # Deleted documents keep a tombstone version so concurrent readers see the change
        self._docs[key] = (next(self._versions), data)

    def _apply(self, op, key, data):
        with self._lock:
            self._write(key, _next_data(op, key, data, self._data_of(key)))

    def run_transaction(self, fn):
        """Run fn(txn) optimistically, retrying when a read document changed before commit."""
        for attempt in range(1, self._max_attempts + 1):
            txn = MemoryTransaction(self)
            result = fn(txn)
            try:
                txn._commit()
                return result
            except _Contention:
                _logger.debug('Transaction contention, retrying (attempt %d)', attempt)
        raise StorageError(f'Transaction did not commit after {self._max_attempts} attempts')

    def get(self, collection, doc_id):
        return self._read_entry((collection, doc_id))[1]

    def set(self, collection, doc_id, data, merge=False):
        self._apply('merge' if merge else 'set', (collection, doc_id), copy.deepcopy(data))

    def update(self, collection, doc_id, fields):
        self._apply('update', (collection, doc_id), copy.deepcopy(fields))

    def delete(self, collection, doc_id):
        self._apply('delete', (collection, doc_id), None)

    def query(self, collection, filters=()):
        """Return document dicts matching all (field, op, value) filters, ordered by document id."""
        with self._lock:
            rows = []
            for (coll, doc_id), (_, data) in sorted(self._docs.items(), key=lambda kv: kv[0][1]):
                if coll != collection or data is None:
                    continue
                if all(_matches(data, field, op, value) for field, op, value in filters):
                    rows.append(copy.deepcopy(data))
            return rows
