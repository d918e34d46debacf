import os
import logging
import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core import exceptions as gcp_exceptions
from google.cloud import firestore as gc_firestore

from . import config
from .errors import DocumentExistsError, StorageError

_logger = logging.getLogger(__name__)

_store = None


def _resolve_credentials_path():
    project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
    # Preferred config path under /config/credentials
    config_credentials_path = os.path.join(project_root, 'config', 'credentials', 'firebaseAdminKey.json')
    default_path = os.path.join(project_root, 'firebaseAdminKey.json')
    # Resolve path from environment first
    path = os.environ.get('GOOGLE_APPLICATION_CREDENTIALS') or os.environ.get('FIREBASE_ADMIN_KEY_PATH')
    # Fallbacks: config folder, project root
    if not path:
        if os.path.isfile(config_credentials_path):
            path = config_credentials_path
        elif os.path.isfile(default_path):
            path = default_path
    # Last resort: write JSON from env to config path
    if not path or not os.path.isfile(path):
        env_json = os.environ.get('FIREBASE_ADMIN_KEY_JSON')
        if env_json:
            os.makedirs(os.path.dirname(config_credentials_path), exist_ok=True)
            with open(config_credentials_path, 'w', encoding='utf-8') as f:
                f.write(env_json)
            path = config_credentials_path
    if not path:
        raise StorageError('Firebase credentials not configured')
    return path


def initialize_firebase():
    """Initialize Firebase Admin SDK with the provided credentials"""
    try:
        firebase_admin.get_app()
    except ValueError:
        # No default app yet
        cred = credentials.Certificate(_resolve_credentials_path())
        firebase_admin.initialize_app(cred)
    return firestore.client()


class FirestoreTransaction:
    """Collection/document view over a Firestore transaction. All reads must precede writes."""

    def __init__(self, client, transaction):
        self._db = client
        self._txn = transaction

    def _ref(self, collection, doc_id):
        return self._db.collection(collection).document(doc_id)

    def get(self, collection, doc_id):
        snap = self._ref(collection, doc_id).get(transaction=self._txn)
        return snap.to_dict() if snap.exists else None

    def create(self, collection, doc_id, data):
        self._txn.create(self._ref(collection, doc_id), data)

    def set(self, collection, doc_id, data, merge=False):
        self._txn.set(self._ref(collection, doc_id), data, merge=merge)

    def update(self, collection, doc_id, fields):
        self._txn.update(self._ref(collection, doc_id), fields)

    def delete(self, collection, doc_id):
        self._txn.delete(self._ref(collection, doc_id))


class FirestoreStore:
    """Document store backed by Cloud Firestore."""

    def __init__(self, client=None, max_attempts: int = 5):
        self._db = client or initialize_firebase()
        self._max_attempts = max_attempts

    def run_transaction(self, fn):
        """Run fn(txn) in a Firestore transaction, retrying on contention."""
        transaction = self._db.transaction(max_attempts=self._max_attempts)

        @gc_firestore.transactional
        def _run(txn):
            return fn(FirestoreTransaction(self._db, txn))

        try:
            return _run(transaction)
        except gcp_exceptions.AlreadyExists as e:
            raise DocumentExistsError(str(e)) from e
        except (gcp_exceptions.GoogleAPICallError, ValueError) as e:
            # ValueError is raised by the SDK when the retry budget is exhausted
            raise StorageError(f'Firestore transaction failed: {e}') from e

    def get(self, collection, doc_id):
        try:
            snap = self._db.collection(collection).document(doc_id).get()
        except gcp_exceptions.GoogleAPICallError as e:
            raise StorageError(str(e)) from e
        return snap.to_dict() if snap.exists else None

    def set(self, collection, doc_id, data, merge=False):
        try:
            self._db.collection(collection).document(doc_id).set(data, merge=merge)
        except gcp_exceptions.GoogleAPICallError as e:
            raise StorageError(str(e)) from e

    def update(self, collection, doc_id, fields):
        try:
            self._db.collection(collection).document(doc_id).update(fields)
        except gcp_exceptions.GoogleAPICallError as e:
            raise StorageError(str(e)) from e

    def delete(self, collection, doc_id):
        try:
            self._db.collection(collection).document(doc_id).delete()
        except gcp_exceptions.GoogleAPICallError as e:
            raise StorageError(str(e)) from e

    def query(self, collection, filters=()):
        """Return document dicts matching all (field, op, value) filters."""
        query = self._db.collection(collection)
        for field, op, value in filters:
            query = query.where(field, op, value)
        try:
            return [snap.to_dict() for snap in query.stream()]
        except gcp_exceptions.GoogleAPICallError as e:
            raise StorageError(str(e)) from e


def get_store():
    """Return the process-wide store, creating it from config on first use."""
    global _store
    if _store is None:
        if config.STORE_BACKEND == 'memory':
            from .memory_store import MemoryStore
            _store = MemoryStore()
            _logger.warning('Using in-memory store; data will not survive a restart')
        else:
            _store = FirestoreStore()
    return _store


def set_store(store):
    """Install a store explicitly (tests, alternative deployments)."""
    global _store
    _store = store
