"""
Synchronization engine between the device-local record and the shared
per-user remote record.

Incremental operations (push after a user action, pull since the last
cursor) never raise for expected failures: they log and return a
SyncOutcome. Full operations (backup, restore, clear) raise SyncError so
the caller can report a terminal failure.

Callers must not run overlapping full operations for the same user.
"""

from __future__ import annotations

import enum
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

import structlog

from quizsync.exceptions import DataError, SyncError
from quizsync.local_store import LocalStore
from quizsync.models import (
    Mistake, MistakeEntry, SeenQuestionEntry, SyncMetadata, UserFilters,
    UserSettings, _now, format_timestamp,
)
from quizsync.question_lookup import MistakeRehydrator, QuestionLookup
from quizsync.remote_store import (
    COLLECTIONS, METADATA, MISTAKES, SEEN_QUESTIONS, SETTINGS, RemoteStore,
    WriteOp,
)
from quizsync.restoration import RestorationTracker

logger = structlog.get_logger(__name__)

DEFERRED_MISTAKES_MESSAGE = 'Restoring your mistakes...'


class SyncResult(enum.Enum):
    SUCCESS = 'success'
    CONFLICT_DETECTED = 'conflict_detected'
    FAILED = 'failed'


@dataclass
class SyncOutcome:
    result: SyncResult
    error: Optional[SyncError] = None
    detail: str = ''

    @property
    def ok(self) -> bool:
        return self.result is SyncResult.SUCCESS

    def to_dict(self):
        data = {'result': self.result.value}
        if self.detail:
            data['detail'] = self.detail
        if self.error is not None:
            data['error'] = self.error.message
            data['code'] = self.error.code
        return data


@dataclass
class RestoreSummary:
    seen_questions: int = 0
    mistakes: int = 0
    skipped_mistakes: List[str] = field(default_factory=list)
    mistakes_deferred: bool = False

    def to_dict(self):
        return {
            'seen_questions': self.seen_questions,
            'mistakes': self.mistakes,
            'skipped_mistakes': list(self.skipped_mistakes),
            'mistakes_deferred': self.mistakes_deferred,
        }


def latest_mistakes_by_key(mistakes: List[Mistake]) -> Dict[str, Mistake]:
    """One mistake per natural key, the most recent winning."""
    latest: Dict[str, Mistake] = {}
    for mistake in mistakes:
        current = latest.get(mistake.key)
        if current is None or mistake.timestamp >= current.timestamp:
            latest[mistake.key] = mistake
    return latest


class SyncEngine:
    """Keeps one user's LocalStore and RemoteStore consistent."""

    def __init__(self, remote: RemoteStore, local: LocalStore, lookup: QuestionLookup,
                 restoration: Optional[RestorationTracker] = None,
                 device_id: Optional[str] = None,
                 executor: Optional[ThreadPoolExecutor] = None,
                 max_workers: int = 4,
                 clock: Callable[[], datetime] = _now):
        self.remote = remote
        self.local = local
        self.lookup = lookup
        self.restoration = restoration or RestorationTracker()
        self.device_id = device_id
        self.executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix='quizsync'
        )
        self.rehydrator = MistakeRehydrator(lookup, self.executor)
        self.clock = clock

    @property
    def batch_size(self) -> int:
        return self.remote.batch_size

    def now(self) -> datetime:
        return self.clock()

    def close(self):
        self.executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def get_sync_metadata(self) -> Optional[SyncMetadata]:
        data = self.remote.get_document(METADATA, SyncMetadata.DOCUMENT_ID)
        if data is None:
            return None
        return SyncMetadata.from_dict(data)

    def has_cloud_data(self) -> bool:
        metadata = self.get_sync_metadata()
        return metadata is not None and metadata.has_data

    def _metadata_or_empty(self, now):
        return self.get_sync_metadata() or SyncMetadata.empty(now)

    def _write_metadata(self, metadata):
        self.remote.set_document(METADATA, SyncMetadata.DOCUMENT_ID, metadata.to_dict())

    @staticmethod
    def metadata_op(metadata: SyncMetadata) -> WriteOp:
        return WriteOp.set(METADATA, SyncMetadata.DOCUMENT_ID, metadata.to_dict())

    # ------------------------------------------------------------------
    # Incremental push
    # ------------------------------------------------------------------

    def _attempt(self, action, operation, **context) -> SyncOutcome:
        try:
            operation()
        except SyncError as e:
            logger.warning(f'{action} failed', error=e.message, code=e.code, **context)
            return SyncOutcome(SyncResult.FAILED, error=e)
        logger.debug(f'{action} completed', **context)
        return SyncOutcome(SyncResult.SUCCESS)

    def sync_seen_question(self, question_id: str) -> SyncOutcome:
        """Push one seen question. Re-pushing an id leaves the document and
        the count unchanged."""

        def push():
            now = self.now()
            existing = self.remote.get_document(SEEN_QUESTIONS, question_id)
            if existing is None:
                entry = SeenQuestionEntry(question_id, timestamp=now, device_id=self.device_id)
            else:
                entry = SeenQuestionEntry.from_dict(existing, question_id)
                if entry.timestamp is None:
                    entry.timestamp = now
            self.remote.set_document(SEEN_QUESTIONS, entry.document_id, entry.to_dict())

            metadata = self._metadata_or_empty(now)
            self._write_metadata(replace(
                metadata,
                last_updated=now,
                seen_questions_count=metadata.seen_questions_count + (1 if existing is None else 0),
                last_seen_question_sync=now,
            ))

        return self._attempt('seen question push', push, question_id=question_id)

    def sync_mistake(self, mistake: Mistake) -> SyncOutcome:
        """Push one mistake, overwriting any earlier mistake on the same question."""
        entry = MistakeEntry.from_mistake(mistake, device_id=self.device_id)

        def push():
            now = self.now()
            is_new = not self.remote.document_exists(MISTAKES, entry.document_id)
            self.remote.set_document(MISTAKES, entry.document_id, entry.to_dict())

            metadata = self._metadata_or_empty(now)
            self._write_metadata(replace(
                metadata,
                last_updated=now,
                mistakes_count=metadata.mistakes_count + (1 if is_new else 0),
                last_mistake_sync=now,
            ))

        return self._attempt('mistake push', push, question_id=entry.question_id)

    def sync_settings(self, settings: Optional[UserSettings] = None) -> SyncOutcome:
        def push():
            now = self.now()
            if settings is None:
                current = replace(self.local.get_settings(), last_updated=now,
                                  device_id=self.device_id)
            else:
                current = replace(settings, device_id=self.device_id)
            self.remote.set_document(SETTINGS, UserSettings.DOCUMENT_ID, current.to_dict())
            metadata = self._metadata_or_empty(now)
            self._write_metadata(replace(metadata, last_updated=now, last_settings_sync=now))

        return self._attempt('settings push', push)

    def sync_filters(self, filters: Optional[UserFilters] = None) -> SyncOutcome:
        def push():
            now = self.now()
            if filters is None:
                current = replace(self.local.get_filters(), last_updated=now,
                                  device_id=self.device_id)
            else:
                current = replace(filters, device_id=self.device_id)
            self.remote.set_document(SETTINGS, UserFilters.DOCUMENT_ID, current.to_dict())
            metadata = self._metadata_or_empty(now)
            self._write_metadata(replace(metadata, last_updated=now, last_settings_sync=now))

        return self._attempt('filters push', push)

    # User-action hooks: record locally first, then push best effort.

    def record_seen_question(self, question_id: str) -> Optional[SyncOutcome]:
        """Returns None when the id was already seen or caching is off."""
        if not self.local.record_seen_question(question_id):
            return None
        return self.sync_seen_question(question_id)

    def record_mistake(self, mistake: Mistake) -> SyncOutcome:
        self.local.add_mistake(mistake)
        return self.sync_mistake(mistake)

    def update_settings(self, settings: UserSettings) -> SyncOutcome:
        settings = replace(settings, last_updated=self.now())
        self.local.save_settings(settings)
        return self.sync_settings(settings)

    def update_filters(self, filters: UserFilters) -> SyncOutcome:
        filters = replace(filters, last_updated=self.now())
        self.local.save_filters(filters)
        return self.sync_filters(filters)

    # ------------------------------------------------------------------
    # Remote reads
    # ------------------------------------------------------------------

    def fetch_seen_entries(self, since: Optional[str] = None) -> List[SeenQuestionEntry]:
        if since is None:
            pairs = self.remote.list_documents(SEEN_QUESTIONS)
        else:
            pairs = self.remote.query_since(SEEN_QUESTIONS, 'timestamp', since)
        return [SeenQuestionEntry.from_dict(data, doc_id) for doc_id, data in pairs]

    def fetch_mistake_entries(self, since: Optional[str] = None) -> List[MistakeEntry]:
        if since is None:
            pairs = self.remote.list_documents(MISTAKES)
        else:
            pairs = self.remote.query_since(MISTAKES, 'timestamp', since)
        entries = []
        for doc_id, data in pairs:
            try:
                entries.append(MistakeEntry.from_dict(data, doc_id))
            except DataError as e:
                logger.warning('skipping malformed mistake document',
                               doc_id=doc_id, error=e.message)
        return entries

    def fetch_settings(self) -> Optional[UserSettings]:
        data = self.remote.get_document(SETTINGS, UserSettings.DOCUMENT_ID)
        return UserSettings.from_dict(data) if data is not None else None

    def fetch_filters(self) -> Optional[UserFilters]:
        data = self.remote.get_document(SETTINGS, UserFilters.DOCUMENT_ID)
        return UserFilters.from_dict(data) if data is not None else None

    # ------------------------------------------------------------------
    # Applying remote state locally
    # ------------------------------------------------------------------

    def absorb_mistake_entries(self, entries: List[MistakeEntry]):
        """Rehydrate entries this device does not hold yet and store them in
        place of any local mistake on the same question. Returns (stored
        mistakes, skipped question ids)."""
        held = {(m.key, format_timestamp(m.timestamp)) for m in self.local.get_mistakes()}
        fresh = [e for e in entries
                 if (e.question_id, format_timestamp(e.timestamp)) not in held]
        if not fresh:
            return [], []
        mistakes, skipped = self.rehydrator.rehydrate(fresh)
        self.local.upsert_mistakes(mistakes)
        return mistakes, skipped

    def _apply_settings(self, settings: Optional[UserSettings], cursor: Optional[datetime]):
        if settings is None:
            return False
        local = self.local.get_settings()
        newer_than_cursor = cursor is None or settings.last_updated > cursor
        if newer_than_cursor and settings.last_updated > local.last_updated:
            logger.debug('applying newer settings from cloud')
            self.local.save_settings(settings)
            return True
        return False

    def _apply_filters(self, filters: Optional[UserFilters], cursor: Optional[datetime]):
        if filters is None:
            return False
        local = self.local.get_filters()
        newer_than_cursor = cursor is None or filters.last_updated > cursor
        if newer_than_cursor and filters.last_updated > local.last_updated:
            logger.debug('applying newer filters from cloud')
            self.local.save_filters(filters)
            return True
        return False

    def adopt_cloud_preferences(self):
        """Replace local settings and filters with the cloud copies that exist.
        Failures are logged and swallowed."""
        for name, fetch, save in (
            ('settings', self.fetch_settings, self.local.save_settings),
            ('filters', self.fetch_filters, self.local.save_filters),
        ):
            try:
                document = fetch()
                if document is not None:
                    save(document)
            except SyncError as e:
                logger.warning(f'{name} sync from cloud failed', error=e.message, code=e.code)

    # ------------------------------------------------------------------
    # Incremental pull
    # ------------------------------------------------------------------

    def sync_from_cloud(self) -> SyncOutcome:
        return self.pull_since(self.local.get_last_sync_timestamp())

    def pull_since(self, cursor: Optional[datetime]) -> SyncOutcome:
        """Pull everything changed after `cursor` (everything when None).
        The cursor only advances when seen questions and mistakes both
        succeeded."""
        started = self.now()
        since = format_timestamp(cursor) if cursor is not None else None
        logger.info('pulling changes from cloud', since=since)

        futures = {
            'seen': self.executor.submit(self.fetch_seen_entries, since),
            'mistakes': self.executor.submit(self.fetch_mistake_entries, since),
            'settings': self.executor.submit(self.fetch_settings),
            'filters': self.executor.submit(self.fetch_filters),
        }
        wait(futures.values())

        errors = []
        try:
            seen = futures['seen'].result()
            added = self.local.add_seen_question_ids(e.question_id for e in seen)
            logger.debug('seen questions pulled', fetched=len(seen), added=len(added))
        except SyncError as e:
            logger.error('seen question pull failed', error=e.message, code=e.code)
            errors.append(e)

        try:
            entries = futures['mistakes'].result()
            stored, skipped = self.absorb_mistake_entries(entries)
            logger.debug('mistakes pulled', fetched=len(entries), stored=len(stored),
                         skipped=len(skipped))
        except SyncError as e:
            logger.error('mistake pull failed', error=e.message, code=e.code)
            errors.append(e)

        for name, apply in (('settings', self._apply_settings), ('filters', self._apply_filters)):
            try:
                apply(futures[name].result(), cursor)
            except SyncError as e:
                logger.warning(f'{name} pull failed', error=e.message, code=e.code)

        if errors:
            return SyncOutcome(SyncResult.FAILED, error=errors[0], detail='pull')

        self.local.set_last_sync_timestamp(started)
        logger.info('pull from cloud completed', cursor=format_timestamp(started))
        return SyncOutcome(SyncResult.SUCCESS, detail='pulled')

    # ------------------------------------------------------------------
    # Batched writes and clears
    # ------------------------------------------------------------------

    def commit_in_batches(self, ops: List[WriteOp]):
        """Commit ops in chunks of at most batch_size. A single chunk is
        atomic; keep the metadata op last so it lands only with the data."""
        for start in range(0, len(ops), self.batch_size):
            self.remote.commit(ops[start:start + self.batch_size])

    def clear_collection(self, collection: str) -> int:
        """Delete every document of a collection page by page. Returns the
        number of documents deleted."""
        deleted = 0
        while True:
            doc_ids = self.remote.list_document_ids(collection, self.batch_size)
            if doc_ids:
                self.remote.commit([WriteOp.delete(collection, doc_id) for doc_id in doc_ids])
                deleted += len(doc_ids)
                logger.debug('deleted page', collection=collection, count=len(doc_ids))
            if len(doc_ids) < self.batch_size:
                break
        logger.info('collection cleared', collection=collection, deleted=deleted)
        return deleted

    def clear_all(self) -> Dict[str, int]:
        """Clear all collections concurrently, then zero the metadata."""
        futures = {name: self.executor.submit(self.clear_collection, name)
                   for name in COLLECTIONS}
        wait(futures.values())

        deleted = {}
        first_error = None
        for name, future in futures.items():
            try:
                deleted[name] = future.result()
            except SyncError as e:
                logger.error('collection clear failed', collection=name, error=e.message)
                first_error = first_error or e
        if first_error is not None:
            raise first_error

        now = self.now()
        self._write_metadata(SyncMetadata(
            last_updated=now,
            last_seen_question_sync=now,
            last_mistake_sync=now,
            last_settings_sync=now,
        ))
        logger.info('all cloud data cleared', **deleted)
        return deleted

    def clear_seen_questions(self) -> int:
        deleted = self.clear_collection(SEEN_QUESTIONS)
        now = self.now()
        metadata = self._metadata_or_empty(now)
        self._write_metadata(replace(metadata, last_updated=now, seen_questions_count=0,
                                     last_seen_question_sync=now))
        return deleted

    def clear_mistakes(self) -> int:
        deleted = self.clear_collection(MISTAKES)
        now = self.now()
        metadata = self._metadata_or_empty(now)
        self._write_metadata(replace(metadata, last_updated=now, mistakes_count=0,
                                     last_mistake_sync=now))
        return deleted

    # ------------------------------------------------------------------
    # Full backup / restore
    # ------------------------------------------------------------------

    def backup_to_cloud(self) -> SyncMetadata:
        """Replace the remote record with this device's record."""
        logger.info('starting full backup to cloud')
        self.clear_all()

        now = self.now()
        seen_ids = self.local.get_seen_question_ids()
        mistakes = latest_mistakes_by_key(self.local.get_mistakes())
        settings = replace(self.local.get_settings(), last_updated=now, device_id=self.device_id)
        filters = replace(self.local.get_filters(), last_updated=now, device_id=self.device_id)

        ops = [
            WriteOp.set(SEEN_QUESTIONS, question_id,
                        SeenQuestionEntry(question_id, timestamp=now,
                                          device_id=self.device_id).to_dict())
            for question_id in seen_ids
        ]
        for key, mistake in mistakes.items():
            entry = MistakeEntry.from_mistake(mistake, device_id=self.device_id)
            ops.append(WriteOp.set(MISTAKES, key, entry.to_dict()))
        ops.append(WriteOp.set(SETTINGS, UserSettings.DOCUMENT_ID, settings.to_dict()))
        ops.append(WriteOp.set(SETTINGS, UserFilters.DOCUMENT_ID, filters.to_dict()))

        metadata = SyncMetadata(
            last_updated=now,
            seen_questions_count=len(seen_ids),
            mistakes_count=len(mistakes),
            last_seen_question_sync=now,
            last_mistake_sync=now,
            last_settings_sync=now,
        )
        ops.append(self.metadata_op(metadata))
        self.commit_in_batches(ops)

        self.local.set_last_sync_timestamp(now)
        self.local.set_restore_pending_since(None)
        logger.info('full backup to cloud completed', seen=len(seen_ids),
                    mistakes=len(mistakes), writes=len(ops))
        return metadata

    def _restore_base(self, summary: RestoreSummary):
        """Replace local seen questions and preferences with the cloud copy."""
        futures = {
            'seen': self.executor.submit(self.fetch_seen_entries),
            'settings': self.executor.submit(self.fetch_settings),
            'filters': self.executor.submit(self.fetch_filters),
        }
        wait(futures.values())
        seen = futures['seen'].result()
        settings = futures['settings'].result()
        filters = futures['filters'].result()

        self.local.clear_seen_questions()
        summary.seen_questions = len(self.local.add_seen_question_ids(e.question_id for e in seen))
        # No cloud copy means defaults
        self.local.save_settings(settings or UserSettings(last_updated=self.now()))
        self.local.save_filters(filters or UserFilters(last_updated=self.now()))

    def _restore_mistakes(self, summary: RestoreSummary):
        entries = self.fetch_mistake_entries()
        mistakes, skipped = self.rehydrator.rehydrate(entries)
        self.local.clear_mistakes()
        self.local.add_mistakes(mistakes)
        summary.mistakes = len(mistakes)
        summary.skipped_mistakes = skipped

    def restore_from_cloud(self) -> RestoreSummary:
        """Replace this device's record with the remote record."""
        logger.info('starting full restore from cloud')
        started = self.now()
        summary = RestoreSummary()
        self._restore_base(summary)
        self._restore_mistakes(summary)
        self.local.set_last_sync_timestamp(started)
        self.local.set_restore_pending_since(None)
        logger.info('full restore from cloud completed', **summary.to_dict())
        return summary

    def restore_without_mistakes(self) -> RestoreSummary:
        """First phase of a two-phase restore, for when question content is
        not available yet. Finish with `restore_mistakes_only`.

        The pending mistakes phase is recorded in the local store, so a new
        session resumes it instead of mistaking the restored seen questions
        for unsynced local data.
        """
        logger.info('starting restore without mistakes')
        started = self.now()
        self.restoration.start(DEFERRED_MISTAKES_MESSAGE)
        summary = RestoreSummary(mistakes_deferred=True)
        try:
            self._restore_base(summary)
        except Exception:
            self.restoration.complete()
            raise
        self.local.set_restore_pending_since(started)
        logger.info('restore without mistakes completed', seen=summary.seen_questions)
        return summary

    def restore_mistakes_only(self) -> RestoreSummary:
        """Replace local mistakes with the remote ones. Always leaves the
        restoration state idle."""
        logger.info('starting mistakes-only restoration')
        started = self.now()
        pending_since = self.local.get_restore_pending_since()
        summary = RestoreSummary()
        try:
            self._restore_mistakes(summary)
            self.local.set_last_sync_timestamp(pending_since or started)
            self.local.set_restore_pending_since(None)
        finally:
            self.restoration.complete()
        logger.info('mistakes-only restoration completed', restored=summary.mistakes,
                    skipped=len(summary.skipped_mistakes))
        return summary

    # ------------------------------------------------------------------
    # Session start
    # ------------------------------------------------------------------

    def _resume_pending_restore(self) -> SyncOutcome:
        if self.lookup.is_ready:
            logger.info('resuming pending mistakes restoration')
            self.restore_mistakes_only()
            return SyncOutcome(SyncResult.SUCCESS, detail='restored')
        self.restoration.start(DEFERRED_MISTAKES_MESSAGE)
        return SyncOutcome(SyncResult.SUCCESS, detail='mistakes_deferred')

    def check_initial_sync(self) -> SyncOutcome:
        """Decide what a newly started, signed-in session has to do."""
        try:
            if not self.has_cloud_data():
                logger.info('no cloud data found, backing up local data')
                self.backup_to_cloud()
                return SyncOutcome(SyncResult.SUCCESS, detail='backed_up')

            if self.local.get_restore_pending_since() is not None:
                return self._resume_pending_restore()

            cursor = self.local.get_last_sync_timestamp()
            if cursor is not None:
                return self.pull_since(cursor)

            if self.local.has_data():
                logger.info('local and cloud data both present, conflict detected')
                return SyncOutcome(SyncResult.CONFLICT_DETECTED, detail='conflict')

            if self.lookup.is_ready:
                self.restore_from_cloud()
                return SyncOutcome(SyncResult.SUCCESS, detail='restored')

            logger.info('question catalog not loaded, deferring mistake restoration')
            self.restore_without_mistakes()
            return SyncOutcome(SyncResult.SUCCESS, detail='mistakes_deferred')
        except SyncError as e:
            logger.warning('initial sync failed', error=e.message, code=e.code)
            return SyncOutcome(SyncResult.FAILED, error=e, detail='initial')
