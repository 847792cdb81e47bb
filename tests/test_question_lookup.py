"""Tests for question lookup and mistake rehydration."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from conftest import FakeQuestionLookup
from quizsync.exceptions import DataError, QuestionLookupError, QuestionNotFound
from quizsync.models import MistakeEntry, Question, QuestionIdentifier, QuestionMetadata
from quizsync.question_lookup import (
    HttpQuestionLookup, MistakeRehydrator, build_mistake, parse_catalog_domains,
)

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

QBANK_QUESTION = {
    'externalid': 'ext-1',
    'stimulus': '<p>Read this.</p>',
    'stem': '<p>Which choice?</p>',
    'answerOptions': [
        {'id': 'opt-a', 'content': 'alpha'},
        {'id': 'opt-b', 'content': 'beta'},
        {'id': 'opt-c', 'content': 'gamma'},
    ],
    'keys': ['opt-c'],
    'rationale': 'Choice C is the best answer.',
    'type': 'mcq',
}


def response(status_code=200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def http_lookup(session):
    return HttpQuestionLookup('https://qbank.test/api/', 'https://saic.test/disclosed',
                              timeout=5, session=session)


class TestHttpQuestionLookup:
    """Question bank requests and error mapping."""

    def test_external_id_request(self, http_lookup, session):
        session.request.return_value = response(payload=[QBANK_QUESTION])

        question = http_lookup.resolve('ext-1', 'external')

        session.request.assert_called_once_with(
            'post', 'https://qbank.test/api/pdf-download', timeout=5,
            json={'external_ids': ['ext-1']},
        )
        assert question.correct_key == 'opt-c'
        assert len(question.answer_options) == 3

    def test_ibn_payload_is_normalized(self, http_lookup, session):
        session.request.return_value = response(payload=[{
            'item_id': 'ibn-9',
            'body': 'Passage',
            'prompt': 'Pick one',
            'answer': {
                'style': 'Multiple Choice',
                'choices': {'a': {'body': 'first'}, 'b': {'body': 'second'}},
                'correct_choice': 'b',
                'rationale': 'Because.',
            },
        }])

        question = http_lookup.resolve('ibn-9', 'ibn')

        session.request.assert_called_once_with('get', 'https://saic.test/disclosed/ibn-9.json',
                                                timeout=5)
        assert question.type == 'mcq'
        assert [o.content for o in question.answer_options] == ['first', 'second']
        assert question.correct_key == 'b'
        assert question.stimulus == 'Passage'

    def test_not_found(self, http_lookup, session):
        session.request.return_value = response(status_code=404)

        with pytest.raises(QuestionNotFound):
            http_lookup.resolve('ext-1', 'external')

    def test_empty_payload_is_not_found(self, http_lookup, session):
        session.request.return_value = response(payload=[])

        with pytest.raises(QuestionNotFound):
            http_lookup.resolve('ext-1', 'external')

    @pytest.mark.parametrize('raised, code', [
        (requests.Timeout('slow'), 'lookup_timeout'),
        (requests.ConnectionError('offline'), 'lookup_network'),
    ])
    def test_transport_errors(self, http_lookup, session, raised, code):
        session.request.side_effect = raised

        with pytest.raises(QuestionLookupError) as excinfo:
            http_lookup.resolve('ext-1', 'external')

        assert excinfo.value.code == code

    def test_server_error(self, http_lookup, session):
        session.request.return_value = response(status_code=503)

        with pytest.raises(QuestionLookupError) as excinfo:
            http_lookup.resolve('ext-1', 'external')

        assert excinfo.value.code == 'lookup_http'

    def test_invalid_json(self, http_lookup, session):
        resp = response()
        resp.json.side_effect = ValueError('not json')
        session.request.return_value = resp

        with pytest.raises(QuestionLookupError) as excinfo:
            http_lookup.resolve('ext-1', 'external')

        assert excinfo.value.code == 'lookup_payload'

    def test_catalog_supplies_metadata(self, http_lookup, session):
        http_lookup.load_catalog([QuestionIdentifier(
            id='ext-1', metadata=QuestionMetadata(skill_description='Inferences'),
        )])
        session.request.return_value = response(payload=[QBANK_QUESTION])

        question = http_lookup.resolve('ext-1', 'external')

        assert http_lookup.is_ready
        assert question.metadata.skill_description == 'Inferences'

    def test_ready_without_catalog_by_default(self, http_lookup):
        assert http_lookup.is_ready

    def test_required_catalog_gates_readiness(self, session):
        lookup = HttpQuestionLookup(session=session, catalog_required=True)
        assert not lookup.is_ready

        lookup.load_catalog([QuestionIdentifier(id='ext-1')])

        assert lookup.is_ready

    def test_load_domains_skips_failing_domain(self, session):
        lookup = HttpQuestionLookup(session=session, catalog_required=True)
        session.request.side_effect = [
            response(status_code=500),
            response(payload=[{'external_id': 'ext-1'}]),
        ]

        size = lookup.load_domains([(1, 'INI'), (2, 'H')])

        assert size == 1
        assert lookup.is_ready
        assert session.request.call_args.kwargs['json'] == {
            'asmtEventId': 99, 'test': 2, 'domain': 'H',
        }

    def test_parse_catalog_domains(self):
        assert parse_catalog_domains(' 1:INI, 2:H ,') == [(1, 'INI'), (2, 'H')]
        assert parse_catalog_domains('') == []
        with pytest.raises(DataError):
            parse_catalog_domains('INI')

    def test_fetch_identifiers(self, http_lookup, session):
        session.request.return_value = response(payload=[
            {'external_id': 'ext-1', 'skill_desc': 'Inferences', 'difficulty': 'H'},
            {'ibn': 'ibn-2'},
            {'unrelated': True},
        ])

        identifiers = http_lookup.fetch_identifiers(1, 'INI')

        assert [(i.id, i.type) for i in identifiers] == [('ext-1', 'external'), ('ibn-2', 'ibn')]
        assert identifiers[0].metadata.difficulty == 'H'
        assert http_lookup.is_ready


class TestBuildMistake:
    """Combining a bare entry with question content."""

    def test_multiple_choice(self, http_lookup, session):
        session.request.return_value = response(payload=[QBANK_QUESTION])
        question = http_lookup.resolve('ext-1', 'external')
        entry = MistakeEntry(question_id='ext-1', question_type='mcq', timestamp=NOW,
                             user_choice='B')

        mistake = build_mistake(entry, question)

        assert mistake.user_answer == 'beta'
        assert mistake.correct_answer == 'gamma'
        assert mistake.correct_answer_label == 'C'
        assert [o.label for o in mistake.answer_options] == ['A', 'B', 'C']
        assert mistake.question == '<p>Read this.</p><p>Which choice?</p>'
        assert mistake.key == 'ext-1'
        assert mistake.timestamp == NOW

    def test_free_response(self):
        question = Question(stem='Solve', rationale='The correct answer is 12. Since...', type='spr')
        question.correct_key = '12'
        entry = MistakeEntry(question_id='ext-2', question_type='spr', timestamp=NOW,
                             user_input='10')

        mistake = build_mistake(entry, question)

        assert mistake.user_answer == '10'
        assert mistake.correct_answer == '12'
        assert mistake.answer_options == []
        assert mistake.subject == 'Unknown'


class TestMistakeRehydrator:
    """Bulk rehydration."""

    def entries(self, *question_ids):
        return [MistakeEntry(question_id=q, question_type='mcq', timestamp=NOW, user_choice='A')
                for q in question_ids]

    @pytest.mark.parametrize('use_executor', [True, False])
    def test_keeps_order_and_skips_failures(self, use_executor):
        lookup = FakeQuestionLookup()
        lookup.add('Q1', 'Q2', 'Q3')
        executor = ThreadPoolExecutor(max_workers=3) if use_executor else None
        try:
            mistakes, skipped = MistakeRehydrator(lookup, executor).rehydrate(
                self.entries('Q3', 'Q404', '5000000', 'Q1', 'Q2')
            )
        finally:
            if executor is not None:
                executor.shutdown()

        assert [m.key for m in mistakes] == ['Q3', 'Q1', 'Q2']
        assert sorted(skipped) == ['5000000', 'Q404']
        assert ('5000000', 'external') not in lookup.calls

    def test_nothing_to_do(self):
        lookup = FakeQuestionLookup()

        assert MistakeRehydrator(lookup).rehydrate([]) == ([], [])
