"""
Resolution of the first-sync conflict: this device and the cloud both
hold data and the device has never synced.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from quizsync.exceptions import DataError
from quizsync.models import (
    MistakeEntry, SeenQuestionEntry, SyncMetadata, is_legacy_question_key,
)
from quizsync.remote_store import MISTAKES, SEEN_QUESTIONS, WriteOp
from quizsync.sync_engine import SyncEngine, latest_mistakes_by_key

logger = structlog.get_logger(__name__)


class ConflictResolution(enum.Enum):
    KEEP_LOCAL = 'keep_local'
    USE_CLOUD = 'use_cloud'
    MERGE = 'merge'

    @classmethod
    def parse(cls, value):
        try:
            return cls(value)
        except ValueError as e:
            raise DataError(f'Unknown conflict resolution {value!r}',
                            code='bad_resolution', original_error=e) from e


@dataclass
class MergeReport:
    unique_local_seen: List[str] = field(default_factory=list)
    unique_cloud_seen: List[str] = field(default_factory=list)
    unique_local_mistakes: List[str] = field(default_factory=list)
    unique_cloud_mistakes: List[str] = field(default_factory=list)
    skipped_mistakes: List[str] = field(default_factory=list)
    metadata_written: bool = False

    @property
    def is_noop(self) -> bool:
        return not (self.unique_local_seen or self.unique_cloud_seen
                    or self.unique_local_mistakes or self.unique_cloud_mistakes)

    def to_dict(self):
        return {
            'unique_local_seen': len(self.unique_local_seen),
            'unique_cloud_seen': len(self.unique_cloud_seen),
            'unique_local_mistakes': len(self.unique_local_mistakes),
            'unique_cloud_mistakes': len(self.unique_cloud_mistakes),
            'skipped_mistakes': list(self.skipped_mistakes),
        }


class ConflictResolver:
    """Applies the user's choice between local, cloud and merged data."""

    def __init__(self, engine: SyncEngine):
        self.engine = engine

    def resolve(self, resolution) -> Optional[dict]:
        if not isinstance(resolution, ConflictResolution):
            resolution = ConflictResolution.parse(resolution)
        logger.info('resolving sync conflict', resolution=resolution.value)

        if resolution is ConflictResolution.KEEP_LOCAL:
            metadata = self.engine.backup_to_cloud()
            return metadata.to_dict()
        if resolution is ConflictResolution.USE_CLOUD:
            return self.engine.restore_from_cloud().to_dict()
        return self.merge().to_dict()

    def merge(self) -> MergeReport:
        """Union both sides by natural key without deleting anything.

        Cloud-only items are added locally, local-only items are pushed.
        When a mistake exists on both sides the cloud copy stays. Settings
        and filters take the cloud copy if there is one. Running merge
        again right after is a no-op.
        """
        engine = self.engine
        now = engine.now()

        seen_future = engine.executor.submit(engine.fetch_seen_entries)
        mistakes_future = engine.executor.submit(engine.fetch_mistake_entries)
        cloud_seen = {entry.question_id for entry in seen_future.result()}
        cloud_mistakes = {entry.question_id: entry for entry in mistakes_future.result()}
        metadata = engine.get_sync_metadata()

        local_seen = engine.local.get_seen_question_ids()
        local_seen_set = set(local_seen)
        local_mistakes = latest_mistakes_by_key(engine.local.get_mistakes())
        # Legacy keys can never be rehydrated, so they never count as differences
        legacy = {k for k in cloud_mistakes if is_legacy_question_key(k)}

        report = MergeReport(
            unique_local_seen=[q for q in local_seen if q not in cloud_seen],
            unique_cloud_seen=sorted(cloud_seen - local_seen_set),
            unique_local_mistakes=[k for k in local_mistakes if k not in cloud_mistakes],
            unique_cloud_mistakes=sorted(k for k in cloud_mistakes
                                         if k not in local_mistakes and k not in legacy),
            skipped_mistakes=sorted(legacy),
        )
        logger.info('merge differences computed', **report.to_dict())

        # Cloud -> local
        if report.unique_cloud_seen:
            engine.local.add_seen_question_ids(report.unique_cloud_seen)
        if report.unique_cloud_mistakes:
            restored, skipped = engine.rehydrator.rehydrate(
                [cloud_mistakes[key] for key in report.unique_cloud_mistakes]
            )
            engine.local.add_mistakes(restored)
            report.skipped_mistakes.extend(skipped)

        # Local -> cloud
        ops = [
            WriteOp.set(SEEN_QUESTIONS, question_id,
                        SeenQuestionEntry(question_id, timestamp=now,
                                          device_id=engine.device_id).to_dict())
            for question_id in report.unique_local_seen
        ]
        for key in report.unique_local_mistakes:
            entry = MistakeEntry.from_mistake(local_mistakes[key], device_id=engine.device_id)
            ops.append(WriteOp.set(MISTAKES, key, entry.to_dict()))

        seen_count = len(cloud_seen) + len(report.unique_local_seen)
        mistakes_count = len(cloud_mistakes) + len(report.unique_local_mistakes)
        counts_stale = (metadata is None
                        or metadata.seen_questions_count != seen_count
                        or metadata.mistakes_count != mistakes_count)
        if ops or counts_stale:
            base = metadata or SyncMetadata.empty(now)
            ops.append(engine.metadata_op(SyncMetadata(
                last_updated=now,
                seen_questions_count=seen_count,
                mistakes_count=mistakes_count,
                last_seen_question_sync=now if report.unique_local_seen else base.last_seen_question_sync,
                last_mistake_sync=now if report.unique_local_mistakes else base.last_mistake_sync,
                last_settings_sync=base.last_settings_sync,
            )))
            engine.commit_in_batches(ops)
            report.metadata_written = True

        engine.adopt_cloud_preferences()
        engine.local.set_last_sync_timestamp(now)
        logger.info('merge completed', pushed=len(ops),
                    skipped=len(report.skipped_mistakes))
        return report
