"""Shared fixtures: in-memory remote store, fake question lookup, engines."""

import copy
import threading
from datetime import datetime, timedelta, timezone

import pytest

from quizsync.exceptions import QuestionNotFound
from quizsync.local_store import JsonFileLocalStore
from quizsync.models import (
    AnswerOption, Mistake, MistakeAnswerOption, Question, QuestionMetadata,
    SyncMetadata,
)
from quizsync.question_lookup import QuestionLookup
from quizsync.remote_store import (
    DEFAULT_BATCH_SIZE, METADATA, MISTAKES, SEEN_QUESTIONS, RemoteStore,
)
from quizsync.sync_engine import SyncEngine


class MemoryRemoteStore(RemoteStore):
    """RemoteStore over a dict, enforcing the batch limit."""

    def __init__(self, batch_size=DEFAULT_BATCH_SIZE):
        self.batch_size = batch_size
        self.docs = {}
        self.commits = []
        # (method, collection) -> exception to raise
        self.failures = {}
        self._lock = threading.Lock()

    def _maybe_fail(self, method, collection):
        error = self.failures.get((method, collection))
        if error is not None:
            raise error

    def collection(self, name):
        with self._lock:
            return {doc_id: copy.deepcopy(data)
                    for (coll, doc_id), data in self.docs.items() if coll == name}

    def get_document(self, collection, doc_id):
        self._maybe_fail('get_document', collection)
        with self._lock:
            data = self.docs.get((collection, doc_id))
            return copy.deepcopy(data) if data is not None else None

    def set_document(self, collection, doc_id, data):
        self._maybe_fail('set_document', collection)
        with self._lock:
            self.docs[(collection, doc_id)] = copy.deepcopy(data)

    def list_documents(self, collection):
        self._maybe_fail('list_documents', collection)
        return sorted(self.collection(collection).items())

    def query_since(self, collection, field_name, since):
        self._maybe_fail('query_since', collection)
        return [(doc_id, data) for doc_id, data in sorted(self.collection(collection).items())
                if data.get(field_name) is not None and data[field_name] > since]

    def list_document_ids(self, collection, limit):
        self._maybe_fail('list_document_ids', collection)
        return sorted(self.collection(collection))[:limit]

    def commit(self, ops):
        self._check_batch(ops)
        self._maybe_fail('commit', None)
        with self._lock:
            for op in ops:
                key = (op.collection, op.doc_id)
                if op.is_delete:
                    self.docs.pop(key, None)
                else:
                    self.docs[key] = copy.deepcopy(op.data)
            self.commits.append([(op.collection, op.doc_id, op.is_delete) for op in ops])

    # -- assertions helpers --------------------------------------------

    def metadata(self):
        data = self.get_document(METADATA, SyncMetadata.DOCUMENT_ID)
        return SyncMetadata.from_dict(data) if data is not None else None

    def seen_ids(self):
        return set(self.collection(SEEN_QUESTIONS))

    def mistake_ids(self):
        return set(self.collection(MISTAKES))

    def assert_metadata_accurate(self):
        metadata = self.metadata()
        assert metadata is not None
        assert metadata.seen_questions_count == len(self.seen_ids())
        assert metadata.mistakes_count == len(self.mistake_ids())


class FakeQuestionLookup(QuestionLookup):
    """Serves questions from a dict; unknown ids are not found."""

    def __init__(self, questions=None, ready=True):
        self.questions = dict(questions or {})
        self.ready = ready
        self.calls = []
        self._lock = threading.Lock()

    @property
    def is_ready(self):
        return self.ready

    def add(self, *question_ids):
        for question_id in question_ids:
            self.questions[question_id] = make_question(question_id)

    def resolve(self, question_id, id_type):
        with self._lock:
            self.calls.append((question_id, id_type))
        if question_id not in self.questions:
            raise QuestionNotFound(f'Question {question_id} not found')
        return self.questions[question_id]


class TickingClock:
    """Strictly increasing clock, one millisecond per call."""

    def __init__(self, start=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.current = start
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.current += timedelta(milliseconds=1)
            return self.current


def make_question(question_id):
    return Question(
        external_id=question_id,
        stimulus='',
        stem=f'Question {question_id}',
        answer_options=[AnswerOption(id='a1', content='one'), AnswerOption(id='a2', content='two')],
        correct_key='a2',
        rationale='Choice B is correct.',
        metadata=QuestionMetadata(skill_description='Algebra', primary_class_description='Math',
                                  difficulty='E'),
    )


def make_mistake(question_id, timestamp):
    return Mistake(
        question=f'Question {question_id}',
        user_answer='one',
        correct_answer='two',
        timestamp=timestamp,
        rationale='Choice B is correct.',
        user_answer_label='A',
        correct_answer_label='B',
        difficulty='E',
        category='Math',
        subject='Algebra',
        answer_options=[MistakeAnswerOption('A', 'one'), MistakeAnswerOption('B', 'two')],
        question_id=question_id,
        question_type='mcq',
        question_id_type='external',
    )


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def remote():
    return MemoryRemoteStore()


@pytest.fixture
def lookup():
    fake = FakeQuestionLookup()
    fake.add('Q1', 'Q2', 'Q3', 'Q4', 'Q5')
    return fake


@pytest.fixture
def make_engine(tmp_path, remote, lookup, clock):
    """Build engines sharing one remote store, one per simulated device."""
    engines = []

    def factory(device_id='device-a', store=None, lookup_override=None):
        engine = SyncEngine(
            remote=store or remote,
            local=JsonFileLocalStore(tmp_path / f'{device_id}.json'),
            lookup=lookup_override or lookup,
            device_id=device_id,
            max_workers=4,
            clock=clock,
        )
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.close()


@pytest.fixture
def engine(make_engine):
    return make_engine('device-a')


@pytest.fixture
def other_engine(make_engine):
    return make_engine('device-b')
