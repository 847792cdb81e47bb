"""
Remote document store for per-user sync data.

Layout under Firestore::

    users/{uid}/sync_data/metadata
    users/{uid}/sync_data/collections/seen_questions/{questionId}
    users/{uid}/sync_data/collections/mistakes/{questionId}
    users/{uid}/sync_data/collections/settings/{user_preferences|filters}

The engine only talks to the `RemoteStore` interface; the Firestore
implementation translates google-api-core errors into the sync taxonomy.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import structlog
from google.api_core import exceptions as gexc
from google.auth import exceptions as auth_exceptions
from google.cloud.firestore_v1 import FieldFilter

from quizsync.exceptions import AuthError, DataError, NetworkError, QuotaError

logger = structlog.get_logger(__name__)

SEEN_QUESTIONS = 'seen_questions'
MISTAKES = 'mistakes'
SETTINGS = 'settings'
# Pseudo-collection addressing the single metadata document
METADATA = 'metadata'

COLLECTIONS = (SEEN_QUESTIONS, MISTAKES, SETTINGS)

# Firestore rejects commits with more writes than this
DEFAULT_BATCH_SIZE = 500


@dataclass
class WriteOp:
    """One write inside a batch commit."""

    collection: str
    doc_id: str
    data: Optional[Dict[str, Any]] = field(default=None)

    @property
    def is_delete(self) -> bool:
        return self.data is None

    @classmethod
    def set(cls, collection, doc_id, data):
        return cls(collection, doc_id, data)

    @classmethod
    def delete(cls, collection, doc_id):
        return cls(collection, doc_id, None)


class RemoteStore(ABC):
    """Interface the sync engine uses for the shared per-user record."""

    batch_size = DEFAULT_BATCH_SIZE

    @abstractmethod
    def get_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return the document data or None when it does not exist."""

    @abstractmethod
    def set_document(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Create or fully overwrite a document."""

    @abstractmethod
    def list_documents(self, collection: str) -> List[Tuple[str, Dict[str, Any]]]:
        """Every document of a collection as (doc_id, data) pairs."""

    @abstractmethod
    def query_since(self, collection: str, field_name: str, since: str) -> List[Tuple[str, Dict[str, Any]]]:
        """Documents whose `field_name` is strictly greater than `since`."""

    @abstractmethod
    def list_document_ids(self, collection: str, limit: int) -> List[str]:
        """Up to `limit` document ids of a collection."""

    @abstractmethod
    def commit(self, ops: List[WriteOp]) -> None:
        """Apply all ops atomically. At most `batch_size` ops."""

    def document_exists(self, collection, doc_id):
        return self.get_document(collection, doc_id) is not None

    def _check_batch(self, ops):
        if len(ops) > self.batch_size:
            raise QuotaError(
                f'Batch of {len(ops)} writes exceeds the limit of {self.batch_size}',
                code='batch_too_large',
            )


# ---------------------------------------------------------------------------
# Firestore
# ---------------------------------------------------------------------------

def _doc_to_dict(doc_snapshot):
    """Convert a Firestore DocumentSnapshot to a dict, None if missing."""
    if not doc_snapshot.exists:
        return None
    return doc_snapshot.to_dict() or {}


def _query_to_pairs(query_ref):
    """Run a query and return (doc_id, data) pairs."""
    return [(doc.id, doc.to_dict() or {}) for doc in query_ref.stream()]


@contextmanager
def _translate_errors(action):
    """Re-raise Firestore client errors as sync errors."""
    try:
        yield
    except (gexc.Unauthenticated, gexc.PermissionDenied,
            auth_exceptions.DefaultCredentialsError,
            auth_exceptions.RefreshError) as e:
        raise AuthError(f'{action}: not authorized', original_error=e) from e
    except (gexc.ResourceExhausted, gexc.TooManyRequests) as e:
        raise QuotaError(f'{action}: quota exceeded', original_error=e) from e
    except (gexc.InvalidArgument, gexc.FailedPrecondition) as e:
        raise DataError(f'{action}: rejected by the store', original_error=e) from e
    except (gexc.GoogleAPICallError, gexc.RetryError,
            auth_exceptions.TransportError, ConnectionError, TimeoutError) as e:
        raise NetworkError(f'{action}: remote store unreachable', original_error=e) from e


class FirestoreRemoteStore(RemoteStore):
    """RemoteStore backed by the sub-collections of one Firestore user."""

    def __init__(self, db, uid, batch_size=DEFAULT_BATCH_SIZE):
        self.db = db
        self.uid = uid
        self.batch_size = batch_size

    def _sync_root(self):
        if not self.uid:
            raise AuthError('User not signed in', code='not_signed_in')
        return self.db.collection('users').document(self.uid).collection('sync_data')

    def _collection(self, name):
        return self._sync_root().document('collections').collection(name)

    def _document(self, collection, doc_id):
        if collection == METADATA:
            return self._sync_root().document(doc_id)
        return self._collection(collection).document(doc_id)

    def get_document(self, collection, doc_id):
        ref = self._document(collection, doc_id)
        with _translate_errors(f'read {collection}/{doc_id}'):
            return _doc_to_dict(ref.get())

    def set_document(self, collection, doc_id, data):
        ref = self._document(collection, doc_id)
        with _translate_errors(f'write {collection}/{doc_id}'):
            ref.set(data)

    def list_documents(self, collection):
        query = self._collection(collection)
        with _translate_errors(f'list {collection}'):
            return _query_to_pairs(query)

    def query_since(self, collection, field_name, since):
        query = self._collection(collection).where(
            filter=FieldFilter(field_name, '>', since)
        )
        with _translate_errors(f'query {collection} since {since}'):
            return _query_to_pairs(query)

    def list_document_ids(self, collection, limit):
        query = self._collection(collection).limit(limit)
        with _translate_errors(f'page {collection}'):
            return [doc.id for doc in query.stream()]

    def commit(self, ops):
        self._check_batch(ops)
        if not ops:
            return
        batch = self.db.batch()
        for op in ops:
            ref = self._document(op.collection, op.doc_id)
            if op.is_delete:
                batch.delete(ref)
            else:
                batch.set(ref, op.data)
        with _translate_errors(f'commit {len(ops)} writes'):
            batch.commit()
        logger.debug('batch committed', uid=self.uid, writes=len(ops))
