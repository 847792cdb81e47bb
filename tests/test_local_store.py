"""Tests for the JSON file local store."""

import json
from datetime import datetime, timezone

from conftest import make_mistake
from quizsync.local_store import JsonFileLocalStore, SEEN_QUESTIONS_KEY
from quizsync.models import UserFilters, UserSettings

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_seen_ids_keep_first_seen_order(tmp_path):
    store = JsonFileLocalStore(tmp_path / 'store.json')

    assert store.add_seen_question_ids(['Q2', 'Q1', 'Q2']) == ['Q2', 'Q1']
    assert store.add_seen_question_ids(['Q1', 'Q3']) == ['Q3']
    assert store.get_seen_question_ids() == ['Q2', 'Q1', 'Q3']


def test_data_survives_reopening(tmp_path):
    path = tmp_path / 'store.json'
    store = JsonFileLocalStore(path)
    store.add_seen_question_ids(['Q1'])
    store.add_mistake(make_mistake('Q1', NOW))
    store.set_last_sync_timestamp(NOW)

    reopened = JsonFileLocalStore(path)

    assert reopened.get_seen_question_ids() == ['Q1']
    assert reopened.get_mistakes() == [make_mistake('Q1', NOW)]
    assert reopened.get_last_sync_timestamp() == NOW


def test_file_is_plain_json(tmp_path):
    path = tmp_path / 'store.json'
    JsonFileLocalStore(path).add_seen_question_ids(['Q1'])

    assert json.loads(path.read_text())[SEEN_QUESTIONS_KEY] == ['Q1']
    assert [p.name for p in tmp_path.iterdir()] == ['store.json']


def test_unreadable_file_starts_empty(tmp_path):
    path = tmp_path / 'store.json'
    path.write_text('{not json')

    store = JsonFileLocalStore(path)

    assert store.get_seen_question_ids() == []
    assert not store.has_data()


def test_never_synced_cursor_is_none(tmp_path):
    assert JsonFileLocalStore(tmp_path / 'store.json').get_last_sync_timestamp() is None


def test_caching_toggle(tmp_path):
    store = JsonFileLocalStore(tmp_path / 'store.json')
    assert store.record_seen_question('Q1') is True
    assert store.record_seen_question('Q1') is False

    store.save_settings(UserSettings(caching_enabled=False, last_updated=NOW))

    assert store.record_seen_question('Q2') is False
    assert store.get_seen_question_ids() == ['Q1']


def test_default_preferences_are_older_than_anything(tmp_path):
    store = JsonFileLocalStore(tmp_path / 'store.json')

    assert store.get_settings().last_updated < NOW
    assert store.get_filters().last_updated < NOW
    assert store.get_settings().caching_enabled is True


def test_preferences_round_trip(tmp_path):
    store = JsonFileLocalStore(tmp_path / 'store.json')
    store.save_settings(UserSettings(oled_mode=True, last_updated=NOW))
    store.save_filters(UserFilters(active_filters={'Algebra'},
                                   active_difficulty_filters={'E', 'H'}, last_updated=NOW))

    settings = store.get_settings()
    filters = store.get_filters()

    assert settings.oled_mode is True
    assert settings.last_updated == NOW
    assert filters.active_filters == {'Algebra'}
    assert filters.active_difficulty_filters == {'E', 'H'}


def test_clears(tmp_path):
    store = JsonFileLocalStore(tmp_path / 'store.json')
    store.add_seen_question_ids(['Q1'])
    store.add_mistake(make_mistake('Q1', NOW))

    store.clear_seen_questions()
    store.clear_mistakes()

    assert not store.has_data()


def test_upsert_replaces_same_question(tmp_path):
    store = JsonFileLocalStore(tmp_path / 'store.json')
    store.add_mistakes([make_mistake('Q1', NOW), make_mistake('Q2', NOW)])
    replacement = make_mistake('Q1', NOW.replace(hour=13))

    store.upsert_mistakes([replacement])

    assert store.get_mistakes() == [make_mistake('Q2', NOW), replacement]


def test_restore_pending_mark_survives_reopening(tmp_path):
    path = tmp_path / 'store.json'
    store = JsonFileLocalStore(path)
    assert store.get_restore_pending_since() is None

    store.set_restore_pending_since(NOW)

    assert JsonFileLocalStore(path).get_restore_pending_since() == NOW
    store.set_restore_pending_since(None)
    assert JsonFileLocalStore(path).get_restore_pending_since() is None
