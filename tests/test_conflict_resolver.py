"""Tests for first-sync conflict resolution."""

import pytest

from conftest import make_mistake
from quizsync.conflict_resolver import ConflictResolution, ConflictResolver
from quizsync.exceptions import DataError
from quizsync.models import MistakeEntry, UserSettings
from quizsync.remote_store import MISTAKES
from quizsync.sync_engine import SyncResult


@pytest.fixture
def conflicting(engine, other_engine):
    """Local {A,B}; cloud {B,C} plus mistake Q2."""
    other_engine.local.add_seen_question_ids(['B', 'C'])
    other_engine.local.add_mistake(make_mistake('Q2', other_engine.now()))
    other_engine.backup_to_cloud()
    engine.local.add_seen_question_ids(['A', 'B'])
    return engine


class TestMerge:
    """Union merge by natural key."""

    def test_conflict_then_merge_converges(self, conflicting, remote):
        assert conflicting.check_initial_sync().result is SyncResult.CONFLICT_DETECTED

        report = ConflictResolver(conflicting).merge()

        assert set(conflicting.local.get_seen_question_ids()) == {'A', 'B', 'C'}
        assert [m.key for m in conflicting.local.get_mistakes()] == ['Q2']
        assert remote.seen_ids() == {'A', 'B', 'C'}
        assert remote.mistake_ids() == {'Q2'}
        assert report.unique_local_seen == ['A']
        assert report.unique_cloud_seen == ['C']
        assert report.unique_cloud_mistakes == ['Q2']
        remote.assert_metadata_accurate()
        assert conflicting.local.get_last_sync_timestamp() is not None

    def test_second_merge_is_noop(self, conflicting, remote):
        resolver = ConflictResolver(conflicting)
        resolver.merge()
        commits = len(remote.commits)
        mistakes = len(conflicting.local.get_mistakes())

        report = resolver.merge()

        assert report.is_noop
        assert not report.metadata_written
        assert len(remote.commits) == commits
        assert len(conflicting.local.get_mistakes()) == mistakes

    def test_local_mistakes_are_pushed(self, conflicting, remote):
        conflicting.local.add_mistake(make_mistake('Q1', conflicting.now()))

        report = ConflictResolver(conflicting).merge()

        assert report.unique_local_mistakes == ['Q1']
        assert remote.mistake_ids() == {'Q1', 'Q2'}
        assert remote.metadata().mistakes_count == 2

    def test_cloud_copy_wins_for_shared_mistake(self, conflicting, remote):
        cloud_document = remote.get_document(MISTAKES, 'Q2')
        local_copy = make_mistake('Q2', conflicting.now())
        local_copy.user_answer_label = 'B'
        conflicting.local.add_mistake(local_copy)

        report = ConflictResolver(conflicting).merge()

        assert report.unique_local_mistakes == []
        assert remote.get_document(MISTAKES, 'Q2') == cloud_document

    def test_legacy_cloud_mistake_is_skipped(self, conflicting, remote, clock):
        entry = MistakeEntry(question_id='987654321', question_type='mcq', timestamp=clock())
        remote.set_document(MISTAKES, entry.question_id, entry.to_dict())

        resolver = ConflictResolver(conflicting)
        report = resolver.merge()

        assert report.skipped_mistakes == ['987654321']
        assert report.unique_cloud_mistakes == ['Q2']
        assert [m.key for m in conflicting.local.get_mistakes()] == ['Q2']
        remote.assert_metadata_accurate()

        again = resolver.merge()

        assert again.is_noop
        assert not again.metadata_written
        assert again.skipped_mistakes == ['987654321']

    def test_cloud_settings_win(self, engine, other_engine):
        other_engine.update_settings(UserSettings(oled_mode=True))
        engine.local.save_settings(UserSettings(oled_mode=False, last_updated=engine.now()))

        ConflictResolver(engine).merge()

        assert engine.local.get_settings().oled_mode is True

    def test_merge_repairs_stale_counts(self, conflicting, remote):
        resolver = ConflictResolver(conflicting)
        resolver.merge()
        metadata = remote.metadata()
        metadata.seen_questions_count = 99
        remote.set_document('metadata', 'metadata', metadata.to_dict())

        report = resolver.merge()

        assert report.is_noop
        assert report.metadata_written
        remote.assert_metadata_accurate()


class TestResolve:
    """Dispatch on the user's choice."""

    def test_keep_local_overwrites_cloud(self, conflicting, remote):
        ConflictResolver(conflicting).resolve('keep_local')

        assert remote.seen_ids() == {'A', 'B'}
        assert remote.mistake_ids() == set()
        remote.assert_metadata_accurate()

    def test_use_cloud_overwrites_local(self, conflicting):
        ConflictResolver(conflicting).resolve(ConflictResolution.USE_CLOUD)

        assert conflicting.local.get_seen_question_ids() == ['B', 'C']
        assert [m.key for m in conflicting.local.get_mistakes()] == ['Q2']

    def test_merge_returns_report(self, conflicting):
        result = ConflictResolver(conflicting).resolve('merge')

        assert result['unique_local_seen'] == 1
        assert result['unique_cloud_seen'] == 1

    def test_unknown_resolution(self, conflicting):
        with pytest.raises(DataError) as excinfo:
            ConflictResolver(conflicting).resolve('both')

        assert excinfo.value.code == 'bad_resolution'
