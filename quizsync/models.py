"""
Sync document models using Python dataclasses.

Remote documents mirror the field names other clients write to Firestore
(camelCase, ISO-8601 timestamps). Each remote model includes:
  - A `to_dict()` instance method for serialization
  - A `from_dict(data, doc_id)` classmethod for deserialization
  - A `document_id` property giving the stable per-entity document key

The local full `Mistake` record and the question content types live here
as well, since rehydration converts between them.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from quizsync.exceptions import DataError


ID_TYPE_EXTERNAL = "external"
ID_TYPE_IBN = "ibn"

QUESTION_TYPE_MCQ = "mcq"
QUESTION_TYPE_SPR = "spr"

METADATA_VERSION = "2.0"

# Numeric question keys above this are hash fallbacks written for mistakes
# that had no question id; the question bank cannot resolve them.
LEGACY_KEY_THRESHOLD = 1_000_000


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value) -> Optional[datetime]:
    """Convert a value to an aware UTC datetime. Accepts datetime objects,
    ISO-format strings, and Firestore DatetimeWithNanoseconds objects."""
    if value is None:
        return None
    if isinstance(value, str):
        # Handle ISO format strings (with or without trailing Z)
        value = value.replace("Z", "+00:00")
        try:
            value = datetime.fromisoformat(value)
        except (ValueError, TypeError):
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _require_datetime(data: Dict[str, Any], key: str) -> datetime:
    parsed = _parse_datetime(data.get(key))
    if parsed is None:
        raise DataError(f"Missing or invalid '{key}' in document",
                        code="missing_field")
    return parsed


def format_timestamp(value: datetime) -> str:
    """Render a datetime as the fixed-width UTC ISO-8601 string stored
    remotely, so string order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _optional_timestamp(value: Optional[datetime]) -> Optional[str]:
    return format_timestamp(value) if value is not None else None


def is_legacy_question_key(question_id: str) -> bool:
    try:
        return int(question_id) > LEGACY_KEY_THRESHOLD
    except (TypeError, ValueError):
        return False


def legacy_question_key(question_text: str) -> str:
    digest = hashlib.sha1(question_text.encode("utf-8")).hexdigest()
    return str(int(digest[:12], 16))


# ===========================================================================
# 1. SeenQuestionEntry
# ===========================================================================

@dataclass
class SeenQuestionEntry:
    question_id: str
    timestamp: Optional[datetime] = None
    device_id: Optional[str] = None

    @property
    def document_id(self) -> str:
        return self.question_id

    def to_dict(self) -> Dict[str, Any]:
        data = {"questionId": self.question_id}
        if self.timestamp is not None:
            data["timestamp"] = format_timestamp(self.timestamp)
        if self.device_id is not None:
            data["deviceId"] = self.device_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> SeenQuestionEntry:
        question_id = data.get("questionId") or doc_id
        if not question_id:
            raise DataError("Seen question document has no questionId",
                            code="missing_field")
        return cls(
            question_id=str(question_id),
            timestamp=_parse_datetime(data.get("timestamp")),
            device_id=data.get("deviceId"),
        )


# ===========================================================================
# 2. MistakeEntry
# ===========================================================================

@dataclass
class MistakeEntry:
    question_id: str
    question_type: str
    timestamp: datetime
    question_id_type: str = ID_TYPE_EXTERNAL
    user_choice: Optional[str] = None
    user_input: Optional[str] = None
    device_id: Optional[str] = None

    @property
    def document_id(self) -> str:
        return self.question_id

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "questionId": self.question_id,
            "questionIdType": self.question_id_type,
            "questionType": self.question_type,
            "timestamp": format_timestamp(self.timestamp),
        }
        if self.user_choice is not None:
            data["userChoice"] = self.user_choice
        if self.user_input is not None:
            data["userInput"] = self.user_input
        if self.device_id is not None:
            data["deviceId"] = self.device_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> MistakeEntry:
        question_id = data.get("questionId") or doc_id
        if not question_id:
            raise DataError("Mistake document has no questionId",
                            code="missing_field")
        question_type = data.get("questionType")
        if not question_type:
            raise DataError(f"Mistake {question_id} has no questionType",
                            code="missing_field")
        return cls(
            question_id=str(question_id),
            question_id_type=data.get("questionIdType") or ID_TYPE_EXTERNAL,
            question_type=question_type,
            timestamp=_require_datetime(data, "timestamp"),
            user_choice=data.get("userChoice"),
            user_input=data.get("userInput"),
            device_id=data.get("deviceId"),
        )

    @classmethod
    def from_mistake(cls, mistake: Mistake, device_id: Optional[str] = None) -> MistakeEntry:
        """Reduce a full local mistake to the bare record stored remotely.
        Multiple choice keeps the chosen label, free response the typed
        input."""
        has_options = bool(mistake.answer_options)
        return cls(
            question_id=mistake.key,
            question_id_type=mistake.question_id_type or ID_TYPE_EXTERNAL,
            question_type=mistake.inferred_question_type,
            timestamp=mistake.timestamp,
            user_choice=mistake.user_answer_label if has_options else None,
            user_input=None if has_options else mistake.user_answer,
            device_id=device_id,
        )


# ===========================================================================
# 3. UserSettings
# ===========================================================================

@dataclass
class UserSettings:
    oled_mode: bool = False
    exclude_active_questions: bool = False
    caching_enabled: bool = True
    last_updated: datetime = field(default_factory=_now)
    device_id: Optional[str] = None

    DOCUMENT_ID = "user_preferences"

    @property
    def document_id(self) -> str:
        return self.DOCUMENT_ID

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "oledMode": self.oled_mode,
            "excludeActiveQuestions": self.exclude_active_questions,
            "cachingEnabled": self.caching_enabled,
            "lastUpdated": format_timestamp(self.last_updated),
        }
        if self.device_id is not None:
            data["deviceId"] = self.device_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> UserSettings:
        return cls(
            oled_mode=bool(data.get("oledMode", False)),
            exclude_active_questions=bool(data.get("excludeActiveQuestions", False)),
            caching_enabled=bool(data.get("cachingEnabled", True)),
            last_updated=_require_datetime(data, "lastUpdated"),
            device_id=data.get("deviceId"),
        )


# ===========================================================================
# 4. UserFilters
# ===========================================================================

@dataclass
class UserFilters:
    active_filters: Set[str] = field(default_factory=set)
    active_difficulty_filters: Set[str] = field(default_factory=set)
    last_updated: datetime = field(default_factory=_now)
    device_id: Optional[str] = None

    DOCUMENT_ID = "filters"

    @property
    def document_id(self) -> str:
        return self.DOCUMENT_ID

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "activeFilters": sorted(self.active_filters),
            "activeDifficultyFilters": sorted(self.active_difficulty_filters),
            "lastUpdated": format_timestamp(self.last_updated),
        }
        if self.device_id is not None:
            data["deviceId"] = self.device_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> UserFilters:
        return cls(
            active_filters=set(data.get("activeFilters") or []),
            active_difficulty_filters=set(data.get("activeDifficultyFilters") or []),
            last_updated=_require_datetime(data, "lastUpdated"),
            device_id=data.get("deviceId"),
        )


# ===========================================================================
# 5. SyncMetadata
# ===========================================================================

@dataclass
class SyncMetadata:
    last_updated: datetime
    seen_questions_count: int = 0
    mistakes_count: int = 0
    version: str = METADATA_VERSION
    last_seen_question_sync: Optional[datetime] = None
    last_mistake_sync: Optional[datetime] = None
    last_settings_sync: Optional[datetime] = None

    DOCUMENT_ID = "metadata"

    @property
    def has_data(self) -> bool:
        return self.seen_questions_count > 0 or self.mistakes_count > 0

    @classmethod
    def empty(cls, now: datetime) -> SyncMetadata:
        return cls(last_updated=now)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "lastUpdated": format_timestamp(self.last_updated),
            "seenQuestionsCount": self.seen_questions_count,
            "mistakesCount": self.mistakes_count,
            "version": self.version,
        }
        optional = {
            "lastSeenQuestionSync": self.last_seen_question_sync,
            "lastMistakeSync": self.last_mistake_sync,
            "lastSettingsSync": self.last_settings_sync,
        }
        for key, value in optional.items():
            if value is not None:
                data[key] = format_timestamp(value)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> SyncMetadata:
        try:
            seen_count = int(data.get("seenQuestionsCount") or 0)
            mistakes_count = int(data.get("mistakesCount") or 0)
        except (TypeError, ValueError) as e:
            raise DataError("Sync metadata counts are not integers",
                            code="bad_field", original_error=e)
        return cls(
            last_updated=_require_datetime(data, "lastUpdated"),
            seen_questions_count=seen_count,
            mistakes_count=mistakes_count,
            version=data.get("version") or METADATA_VERSION,
            last_seen_question_sync=_parse_datetime(data.get("lastSeenQuestionSync")),
            last_mistake_sync=_parse_datetime(data.get("lastMistakeSync")),
            last_settings_sync=_parse_datetime(data.get("lastSettingsSync")),
        )


# ===========================================================================
# 6. Question content
# ===========================================================================

@dataclass
class QuestionMetadata:
    skill_description: str = "Unknown Skill"
    primary_class_description: str = "Unknown Category"
    difficulty: str = "M"
    skill_code: str = ""
    primary_class_code: str = ""

    FIELDS = ("skill_desc", "primary_class_cd_desc", "difficulty",
              "skill_cd", "primary_class_cd")

    @classmethod
    def present_in(cls, data: Dict[str, Any]) -> bool:
        return any(key in data for key in cls.FIELDS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "skill_desc": self.skill_description,
            "primary_class_cd_desc": self.primary_class_description,
            "difficulty": self.difficulty,
            "skill_cd": self.skill_code,
            "primary_class_cd": self.primary_class_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> QuestionMetadata:
        def _text(key, default):
            value = data.get(key)
            return str(value) if value is not None else default

        return cls(
            skill_description=_text("skill_desc", "Unknown Skill"),
            primary_class_description=_text("primary_class_cd_desc", "Unknown Category"),
            difficulty=_text("difficulty", "M"),
            skill_code=_text("skill_cd", ""),
            primary_class_code=_text("primary_class_cd", ""),
        )


@dataclass
class QuestionIdentifier:
    id: str
    type: str = ID_TYPE_EXTERNAL
    metadata: Optional[QuestionMetadata] = None


@dataclass
class AnswerOption:
    id: str = ""
    content: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AnswerOption:
        return cls(
            id=str(data.get("id") or ""),
            content=str(data.get("content") or ""),
        )


_CORRECT_ANSWER_RE = re.compile(r"The correct answer is ((?:(?!\.\s).)+)\.\s")


@dataclass
class Question:
    external_id: str = ""
    stimulus: str = ""
    stem: str = ""
    answer_options: List[AnswerOption] = field(default_factory=list)
    correct_key: str = ""
    rationale: str = "No rationale provided."
    type: str = QUESTION_TYPE_MCQ
    metadata: Optional[QuestionMetadata] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Question:
        options = [
            AnswerOption.from_dict(item)
            for item in (data.get("answerOptions") or [])
            if isinstance(item, dict)
        ]

        keys = data.get("keys") or []
        correct_key = str(keys[0]) if keys and keys[0] is not None else ""
        rationale = str(data.get("rationale") or "No rationale provided.")
        if not correct_key:
            # Free-response payloads only state the answer in the rationale
            match = _CORRECT_ANSWER_RE.search(rationale)
            if match:
                correct_key = match.group(1).strip()

        metadata = None
        if QuestionMetadata.present_in(data):
            metadata = QuestionMetadata.from_dict(data)

        return cls(
            external_id=str(data.get("externalid") or ""),
            stimulus=str(data.get("stimulus") or ""),
            stem=str(data.get("stem") or ""),
            answer_options=options,
            correct_key=correct_key,
            rationale=rationale,
            type=str(data.get("type") or QUESTION_TYPE_MCQ).lower(),
            metadata=metadata,
        )


# ===========================================================================
# 7. Mistake (local full record)
# ===========================================================================

@dataclass
class MistakeAnswerOption:
    label: str
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> MistakeAnswerOption:
        return cls(label=data.get("label", ""), content=data.get("content", ""))


@dataclass
class Mistake:
    question: str
    user_answer: str
    correct_answer: str
    timestamp: datetime
    rationale: str = ""
    user_answer_label: str = ""
    correct_answer_label: str = ""
    difficulty: str = "Unknown"
    category: str = "Unknown"
    subject: str = "Unknown"
    answer_options: List[MistakeAnswerOption] = field(default_factory=list)
    question_id: Optional[str] = None
    question_type: Optional[str] = None
    question_id_type: Optional[str] = None

    @property
    def key(self) -> str:
        """Natural key shared with the remote mistake document."""
        if self.question_id:
            return self.question_id
        return legacy_question_key(self.question)

    @property
    def inferred_question_type(self) -> str:
        if self.question_type:
            return self.question_type
        return QUESTION_TYPE_MCQ if self.answer_options else QUESTION_TYPE_SPR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "user_answer": self.user_answer,
            "correct_answer": self.correct_answer,
            "timestamp": format_timestamp(self.timestamp),
            "rationale": self.rationale,
            "user_answer_label": self.user_answer_label,
            "correct_answer_label": self.correct_answer_label,
            "difficulty": self.difficulty,
            "category": self.category,
            "subject": self.subject,
            "answer_options": [option.to_dict() for option in self.answer_options],
            "question_id": self.question_id,
            "question_type": self.question_type,
            "question_id_type": self.question_id_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Mistake:
        return cls(
            question=data.get("question", ""),
            user_answer=data.get("user_answer", ""),
            correct_answer=data.get("correct_answer", ""),
            timestamp=_parse_datetime(data.get("timestamp")) or _now(),
            rationale=data.get("rationale", ""),
            user_answer_label=data.get("user_answer_label", ""),
            correct_answer_label=data.get("correct_answer_label", ""),
            difficulty=data.get("difficulty", "Unknown"),
            category=data.get("category", "Unknown"),
            subject=data.get("subject", "Unknown"),
            answer_options=[
                MistakeAnswerOption.from_dict(option)
                for option in data.get("answer_options") or []
            ],
            question_id=data.get("question_id"),
            question_type=data.get("question_type"),
            question_id_type=data.get("question_id_type"),
        )
