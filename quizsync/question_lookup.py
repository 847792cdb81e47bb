"""
Question content lookup and mistake rehydration.

Remote mistake documents only carry the question id and the user's
answer. Turning them back into displayable mistakes needs the question
content, fetched one question at a time from the question bank. This is
the slowest and least reliable step of any pull, restore or merge, so
`MistakeRehydrator` fans the lookups out on a thread pool and drops
individual failures instead of failing the batch.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional, Tuple

import requests
import structlog

from quizsync.exceptions import DataError, QuestionLookupError, QuestionNotFound
from quizsync.models import (
    ID_TYPE_EXTERNAL, ID_TYPE_IBN, QUESTION_TYPE_MCQ, QUESTION_TYPE_SPR,
    AnswerOption, Mistake, MistakeAnswerOption, MistakeEntry, Question,
    QuestionIdentifier, QuestionMetadata, is_legacy_question_key,
)

logger = structlog.get_logger(__name__)

QBANK_BASE_URL = 'https://qbank-api.collegeboard.org/msreportingquestionbank-prod/questionbank'
SAIC_BASE_URL = 'https://saic.collegeboard.org/disclosed'


class QuestionLookup(ABC):
    """Resolves a question id to its full content."""

    @property
    def is_ready(self) -> bool:
        """False while the question catalog has not been loaded yet."""
        return True

    @abstractmethod
    def resolve(self, question_id: str, id_type: str) -> Question:
        """Return the question or raise QuestionLookupError."""


class HttpQuestionLookup(QuestionLookup):
    """QuestionLookup over the question bank HTTP API."""

    def __init__(self, qbank_base_url=QBANK_BASE_URL, saic_base_url=SAIC_BASE_URL,
                 timeout=30, session=None, catalog_required=False):
        self.qbank_base_url = qbank_base_url.rstrip('/')
        self.saic_base_url = saic_base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.catalog_required = catalog_required
        self._catalog: Dict[str, QuestionIdentifier] = {}

    @property
    def is_ready(self):
        """Questions resolve without a catalog; when one is required the
        lookup is ready once it has identifiers."""
        return not self.catalog_required or bool(self._catalog)

    def load_catalog(self, identifiers: Iterable[QuestionIdentifier]):
        """Register identifiers whose metadata fills gaps in fetched questions."""
        self._catalog.update({identifier.id: identifier for identifier in identifiers})

    def load_domains(self, domains: Iterable[Tuple[int, str]]) -> int:
        """Fetch identifiers for every (test, domain) pair. A failing domain
        is logged and skipped. Returns the catalog size."""
        for test, domain in domains:
            try:
                self.fetch_identifiers(test, domain)
            except (QuestionLookupError, DataError) as e:
                logger.warning('question catalog domain failed', test=test, domain=domain,
                               error=e.message, code=e.code)
        logger.info('question catalog loaded', size=len(self._catalog))
        return len(self._catalog)

    def fetch_identifiers(self, test: int, domain: str) -> List[QuestionIdentifier]:
        """Fetch the identifiers of one test/domain and add them to the catalog."""
        data = self._request_json(
            'post', f'{self.qbank_base_url}/digital/get-questions',
            f'{test}/{domain}',
            json={'asmtEventId': 99, 'test': test, 'domain': domain},
        )
        if not isinstance(data, list):
            raise QuestionLookupError('Question list payload is not a list',
                                      code='lookup_payload')
        identifiers = []
        for item in data:
            identifier = _identifier_from_json(item)
            if identifier is not None:
                identifiers.append(identifier)
        if data and not identifiers:
            raise DataError('No valid question identifiers in response')
        self.load_catalog(identifiers)
        logger.info('question identifiers fetched', test=test, domain=domain,
                    count=len(identifiers), skipped=len(data) - len(identifiers))
        return identifiers

    def resolve(self, question_id, id_type):
        if id_type == ID_TYPE_IBN:
            question = self._fetch_by_ibn(question_id)
        else:
            question = self._fetch_by_external_id(question_id)

        identifier = self._catalog.get(question_id)
        if question.metadata is None and identifier is not None:
            question.metadata = identifier.metadata
        return question

    def _fetch_by_external_id(self, external_id):
        data = self._request_json(
            'post', f'{self.qbank_base_url}/pdf-download', external_id,
            json={'external_ids': [external_id]},
        )
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            raise QuestionNotFound(f'No question for external_id {external_id}')
        return Question.from_dict(data[0])

    def _fetch_by_ibn(self, ibn):
        data = self._request_json('get', f'{self.saic_base_url}/{ibn}.json', ibn)
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            raise QuestionNotFound(f'No question for ibn {ibn}')
        return Question.from_dict(_normalize_ibn_payload(data[0]))

    def _request_json(self, method, url, question_id, **kwargs):
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise QuestionLookupError(f'Timed out fetching {question_id}',
                                      code='lookup_timeout', original_error=e) from e
        except requests.RequestException as e:
            raise QuestionLookupError(f'Network error fetching {question_id}',
                                      code='lookup_network', original_error=e) from e

        if response.status_code == 404:
            raise QuestionNotFound(f'Question {question_id} not found')
        if response.status_code != 200:
            raise QuestionLookupError(
                f'HTTP {response.status_code} fetching {question_id}',
                code='lookup_http',
            )
        try:
            return response.json()
        except ValueError as e:
            raise QuestionLookupError(f'Invalid JSON for {question_id}',
                                      code='lookup_payload', original_error=e) from e


def parse_catalog_domains(value) -> List[Tuple[int, str]]:
    """Parse 'test:domain' pairs separated by commas, e.g. '1:INI,2:H'."""
    domains = []
    for part in (value or '').split(','):
        part = part.strip()
        if not part:
            continue
        test, sep, domain = part.partition(':')
        if not sep or not test.strip().isdigit() or not domain.strip():
            raise DataError(f'Invalid question catalog domain {part!r}', code='bad_config')
        domains.append((int(test), domain.strip()))
    return domains


def _identifier_from_json(item):
    if not isinstance(item, dict) or not item:
        return None
    if item.get('external_id') is not None:
        question_id, id_type = str(item['external_id']).strip(), ID_TYPE_EXTERNAL
    elif item.get('ibn') is not None:
        question_id, id_type = str(item['ibn']).strip(), ID_TYPE_IBN
    else:
        return None
    if not question_id:
        return None

    metadata = None
    if QuestionMetadata.present_in(item):
        has_values = any(item.get(key) for key in ('skill_desc', 'primary_class_cd_desc',
                                                    'primary_class_cd'))
        if has_values:
            metadata = QuestionMetadata.from_dict(item)
    return QuestionIdentifier(id=question_id, type=id_type, metadata=metadata)


def _normalize_ibn_payload(ibn_json):
    """Reshape the disclosed-item format into the question bank format."""
    answer = ibn_json.get('answer') or {}
    choices = answer.get('choices') or {}
    options = [
        {'id': key, 'content': (value or {}).get('body', '')}
        for key, value in choices.items()
    ]

    style = str(answer.get('style') or '').lower()
    if style == 'multiple choice':
        question_type = QUESTION_TYPE_MCQ
    elif style:
        question_type = style
    else:
        question_type = QUESTION_TYPE_MCQ if options else QUESTION_TYPE_SPR

    correct_choice = answer.get('correct_choice')
    return {
        'externalid': ibn_json.get('item_id') or ibn_json.get('ibn') or '',
        'stimulus': ibn_json.get('body') or '',
        'stem': ibn_json.get('prompt') or '',
        'answerOptions': options,
        'keys': [correct_choice] if correct_choice is not None else [],
        'rationale': answer.get('rationale') or 'No rationale provided.',
        'type': question_type,
    }


# ---------------------------------------------------------------------------
# Rehydration
# ---------------------------------------------------------------------------

def _option_label(index):
    return chr(65 + index) if 0 <= index < 26 else '?'


def build_mistake(entry: MistakeEntry, question: Question) -> Mistake:
    """Combine a bare mistake record with its question content."""
    meta = question.metadata
    difficulty = meta.difficulty if meta else 'Unknown'
    category = meta.primary_class_description if meta else 'Unknown'
    subject = meta.skill_description if meta else 'Unknown'

    common = dict(
        question=question.stimulus + question.stem,
        timestamp=entry.timestamp,
        rationale=question.rationale,
        difficulty=difficulty,
        category=category,
        subject=subject,
        question_id=entry.question_id,
        question_type=entry.question_type,
        question_id_type=entry.question_id_type,
    )

    if entry.question_type == QUESTION_TYPE_SPR:
        return Mistake(
            user_answer=entry.user_input or '',
            correct_answer=question.correct_key.strip() or 'See explanation',
            user_answer_label='',
            correct_answer_label='',
            answer_options=[],
            **common,
        )

    options = question.answer_options
    correct_index = next(
        (i for i, option in enumerate(options) if option.id == question.correct_key), -1
    )
    correct_option = (options[correct_index] if correct_index != -1
                      else AnswerOption(id=question.correct_key, content=''))

    user_index = ord(entry.user_choice[0]) - 65 if entry.user_choice else -1
    user_option = (options[user_index] if 0 <= user_index < len(options)
                   else AnswerOption(id='', content='Unknown'))

    return Mistake(
        user_answer=user_option.content or 'N/A',
        correct_answer=correct_option.content or 'N/A',
        user_answer_label=entry.user_choice or '?',
        correct_answer_label=_option_label(correct_index),
        answer_options=[
            MistakeAnswerOption(label=_option_label(i), content=option.content)
            for i, option in enumerate(options)
        ],
        **common,
    )


class MistakeRehydrator:
    """Converts remote mistake entries to full mistakes via a lookup."""

    def __init__(self, lookup: QuestionLookup, executor: Optional[ThreadPoolExecutor] = None):
        self.lookup = lookup
        self.executor = executor

    def _convert(self, entry):
        question = self.lookup.resolve(entry.question_id, entry.question_id_type)
        return build_mistake(entry, question)

    def rehydrate(self, entries: List[MistakeEntry]) -> Tuple[List[Mistake], List[str]]:
        """Return (mistakes, skipped question ids). Output keeps input order."""
        skipped = []
        pending = []
        for entry in entries:
            if is_legacy_question_key(entry.question_id):
                logger.warning('skipping mistake with hash-based question id',
                               question_id=entry.question_id)
                skipped.append(entry.question_id)
            else:
                pending.append(entry)

        if not pending:
            return [], skipped

        logger.info('rehydrating mistakes', count=len(pending),
                    catalog_ready=self.lookup.is_ready)

        results: Dict[int, Mistake] = {}
        if self.executor is None:
            for index, entry in enumerate(pending):
                mistake = self._convert_or_skip(entry, lambda e=entry: self._convert(e))
                if mistake is not None:
                    results[index] = mistake
        else:
            futures = {
                self.executor.submit(self._convert, entry): (index, entry)
                for index, entry in enumerate(pending)
            }
            for future in as_completed(futures):
                index, entry = futures[future]
                mistake = self._convert_or_skip(entry, future.result)
                if mistake is not None:
                    results[index] = mistake

        for index, entry in enumerate(pending):
            if index not in results:
                skipped.append(entry.question_id)

        logger.info('mistakes rehydrated', restored=len(results), requested=len(entries))
        return [results[index] for index in sorted(results)], skipped

    @staticmethod
    def _convert_or_skip(entry, produce):
        try:
            return produce()
        except (QuestionLookupError, DataError) as e:
            logger.warning('dropping mistake that could not be rehydrated',
                           question_id=entry.question_id, error=str(e))
            return None
