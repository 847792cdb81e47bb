"""
On-device key/value storage for sync state.

The engine only talks to the `LocalStore` interface. `JsonFileLocalStore`
keeps every key in a single JSON document on disk and rewrites it
atomically on each change.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import structlog

from quizsync.models import (
    Mistake, UserFilters, UserSettings, _parse_datetime, format_timestamp,
)

logger = structlog.get_logger(__name__)

SEEN_QUESTIONS_KEY = 'seen_questions'
CACHING_ENABLED_KEY = 'caching_enabled'
LAST_SYNC_KEY = 'last_sync_timestamp'
MISTAKES_KEY = 'mistakes'
OLED_MODE_KEY = 'oled_mode'
EXCLUDE_ACTIVE_KEY = 'exclude_active_questions'
ACTIVE_FILTERS_KEY = 'active_filters'
ACTIVE_DIFFICULTY_FILTERS_KEY = 'active_difficulty_filters'
SETTINGS_UPDATED_KEY = 'settings_updated_at'
FILTERS_UPDATED_KEY = 'filters_updated_at'
RESTORE_PENDING_KEY = 'mistakes_restore_pending_since'

# Local settings that were never changed compare older than any remote copy
_NEVER = datetime(1970, 1, 1, tzinfo=timezone.utc)


class LocalStore(ABC):
    """Interface the sync engine uses for the device-local record."""

    # -- Seen questions ------------------------------------------------------

    @abstractmethod
    def get_seen_question_ids(self) -> List[str]:
        """Seen question ids in the order they were first seen."""

    @abstractmethod
    def add_seen_question_ids(self, question_ids: Iterable[str]) -> List[str]:
        """Add ids not already present. Returns the ids that were new."""

    @abstractmethod
    def clear_seen_questions(self) -> None:
        ...

    # -- Mistakes ------------------------------------------------------------

    @abstractmethod
    def get_mistakes(self) -> List[Mistake]:
        ...

    @abstractmethod
    def add_mistakes(self, mistakes: Iterable[Mistake]) -> None:
        ...

    @abstractmethod
    def clear_mistakes(self) -> None:
        ...

    # -- Settings and filters ------------------------------------------------

    @abstractmethod
    def get_settings(self) -> UserSettings:
        ...

    @abstractmethod
    def save_settings(self, settings: UserSettings) -> None:
        ...

    @abstractmethod
    def get_filters(self) -> UserFilters:
        ...

    @abstractmethod
    def save_filters(self, filters: UserFilters) -> None:
        ...

    # -- Sync cursor ---------------------------------------------------------

    @abstractmethod
    def get_last_sync_timestamp(self) -> Optional[datetime]:
        """None means this device has never completed a sync."""

    @abstractmethod
    def set_last_sync_timestamp(self, timestamp: datetime) -> None:
        ...

    @abstractmethod
    def get_restore_pending_since(self) -> Optional[datetime]:
        """Start time of a restore whose mistakes phase has not run yet."""

    @abstractmethod
    def set_restore_pending_since(self, timestamp: Optional[datetime]) -> None:
        """Mark a mistakes restore as pending; None clears the mark."""

    # -- Derived helpers -----------------------------------------------------

    def is_caching_enabled(self) -> bool:
        return self.get_settings().caching_enabled

    def record_seen_question(self, question_id: str) -> bool:
        """Record a question the user was just shown. Honors the caching
        toggle; returns True only when the id was new."""
        if not self.is_caching_enabled():
            return False
        return bool(self.add_seen_question_ids([question_id]))

    def add_mistake(self, mistake: Mistake) -> None:
        self.add_mistakes([mistake])

    def upsert_mistakes(self, mistakes: Iterable[Mistake]) -> None:
        """Add mistakes, dropping stored ones that share a question key."""
        mistakes = list(mistakes)
        keys = {mistake.key for mistake in mistakes}
        kept = [m for m in self.get_mistakes() if m.key not in keys]
        self.clear_mistakes()
        self.add_mistakes(kept + mistakes)

    def has_data(self) -> bool:
        return bool(self.get_seen_question_ids()) or bool(self.get_mistakes())


class JsonFileLocalStore(LocalStore):
    """LocalStore persisted as one JSON file."""

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._data = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open('r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning('local store unreadable, starting empty',
                           path=str(self.path), error=str(e))
            return {}
        return data if isinstance(data, dict) else {}

    def _flush(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix='.local-store-', dir=str(self.path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self._data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _set(self, **values):
        with self._lock:
            self._data.update(values)
            self._flush()

    def _remove(self, *keys):
        with self._lock:
            for key in keys:
                self._data.pop(key, None)
            self._flush()

    # -- Seen questions ------------------------------------------------------

    def get_seen_question_ids(self):
        with self._lock:
            return list(self._data.get(SEEN_QUESTIONS_KEY, []))

    def add_seen_question_ids(self, question_ids):
        with self._lock:
            seen = list(self._data.get(SEEN_QUESTIONS_KEY, []))
            known = set(seen)
            added = []
            for question_id in question_ids:
                if question_id not in known:
                    known.add(question_id)
                    seen.append(question_id)
                    added.append(question_id)
            if added:
                self._set(**{SEEN_QUESTIONS_KEY: seen})
            return added

    def clear_seen_questions(self):
        self._remove(SEEN_QUESTIONS_KEY)

    # -- Mistakes ------------------------------------------------------------

    def get_mistakes(self):
        with self._lock:
            return [Mistake.from_dict(item) for item in self._data.get(MISTAKES_KEY, [])]

    def add_mistakes(self, mistakes):
        with self._lock:
            stored = list(self._data.get(MISTAKES_KEY, []))
            new_items = [mistake.to_dict() for mistake in mistakes]
            if new_items:
                self._set(**{MISTAKES_KEY: stored + new_items})

    def upsert_mistakes(self, mistakes):
        mistakes = list(mistakes)
        if not mistakes:
            return
        keys = {mistake.key for mistake in mistakes}
        with self._lock:
            kept = [item for item in self._data.get(MISTAKES_KEY, [])
                    if Mistake.from_dict(item).key not in keys]
            self._set(**{MISTAKES_KEY: kept + [mistake.to_dict() for mistake in mistakes]})

    def clear_mistakes(self):
        self._remove(MISTAKES_KEY)

    # -- Settings and filters ------------------------------------------------

    def get_settings(self):
        with self._lock:
            return UserSettings(
                oled_mode=bool(self._data.get(OLED_MODE_KEY, False)),
                exclude_active_questions=bool(self._data.get(EXCLUDE_ACTIVE_KEY, False)),
                caching_enabled=bool(self._data.get(CACHING_ENABLED_KEY, True)),
                last_updated=_parse_datetime(self._data.get(SETTINGS_UPDATED_KEY)) or _NEVER,
            )

    def save_settings(self, settings):
        self._set(**{
            OLED_MODE_KEY: settings.oled_mode,
            EXCLUDE_ACTIVE_KEY: settings.exclude_active_questions,
            CACHING_ENABLED_KEY: settings.caching_enabled,
            SETTINGS_UPDATED_KEY: format_timestamp(settings.last_updated),
        })

    def get_filters(self):
        with self._lock:
            return UserFilters(
                active_filters=set(self._data.get(ACTIVE_FILTERS_KEY, [])),
                active_difficulty_filters=set(self._data.get(ACTIVE_DIFFICULTY_FILTERS_KEY, [])),
                last_updated=_parse_datetime(self._data.get(FILTERS_UPDATED_KEY)) or _NEVER,
            )

    def save_filters(self, filters):
        self._set(**{
            ACTIVE_FILTERS_KEY: sorted(filters.active_filters),
            ACTIVE_DIFFICULTY_FILTERS_KEY: sorted(filters.active_difficulty_filters),
            FILTERS_UPDATED_KEY: format_timestamp(filters.last_updated),
        })

    # -- Sync cursor ---------------------------------------------------------

    def get_last_sync_timestamp(self):
        with self._lock:
            return _parse_datetime(self._data.get(LAST_SYNC_KEY))

    def set_last_sync_timestamp(self, timestamp):
        self._set(**{LAST_SYNC_KEY: format_timestamp(timestamp)})

    def get_restore_pending_since(self):
        with self._lock:
            return _parse_datetime(self._data.get(RESTORE_PENDING_KEY))

    def set_restore_pending_since(self, timestamp):
        if timestamp is None:
            self._remove(RESTORE_PENDING_KEY)
        else:
            self._set(**{RESTORE_PENDING_KEY: format_timestamp(timestamp)})
