"""Questionnaire models normalized at the backend boundary."""

from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

_KIND_BY_SOURCE_TYPE = {
    "": "single_choice",
    "single_choice": "single_choice",
    "multiple_choice": "single_choice",
    "radio": "single_choice",
    "select": "single_choice",
    "multi_select": "multiple_choice",
    "multiple_choice_multi": "multiple_choice",
    "checkbox": "multiple_choice",
    "text": "text",
    "free_text": "text",
    "textarea": "text",
    "rating": "rating",
    "scale": "rating",
}

LEGACY_ANSWER_KEYS = {
    "quiz1": "energy",
    "quiz2": "focus",
    "quiz3": "element",
    "quiz4": "intentions",
    "quiz5": "future_goals",
}


class _QuestionBase(BaseModel):
    id: str
    text: str = ""
    position: int = Field(ge=1)
    source_type: str = ""
    category: str = ""
    category_map: list[str] = Field(default_factory=list)


class SingleChoiceQuestion(_QuestionBase):
    """Pick exactly one option."""

    kind: Literal["single_choice"] = "single_choice"
    options: list[str] = Field(default_factory=list)


class MultipleChoiceQuestion(_QuestionBase):
    """Pick any number of options."""

    kind: Literal["multiple_choice"] = "multiple_choice"
    options: list[str] = Field(default_factory=list)


class TextQuestion(_QuestionBase):
    """Free text answer."""

    kind: Literal["text"] = "text"


class RatingQuestion(_QuestionBase):
    """Numeric rating answer."""

    kind: Literal["rating"] = "rating"
    min_value: int = 1
    max_value: int = 5


Question = Annotated[
    SingleChoiceQuestion | MultipleChoiceQuestion | TextQuestion | RatingQuestion,
    Field(discriminator="kind"),
]

_QUESTION_ADAPTER: TypeAdapter[Question] = TypeAdapter(Question)


def normalize_question(raw: dict[str, object], position: int) -> Question:
    """Convert a loosely shaped backend question into the closed union."""
    source_type = str(raw.get("type") or raw.get("question_type") or "").strip()
    kind = _KIND_BY_SOURCE_TYPE.get(source_type.lower(), "single_choice")
    question_id = str(raw.get("id") or raw.get("question_id") or f"quiz_{position}")
    data: dict[str, object] = {
        "kind": kind,
        "id": question_id,
        "text": str(raw.get("question") or raw.get("question_text") or ""),
        "position": _coerce_position(raw.get("position"), position),
        "source_type": source_type,
        "category": str(raw.get("category") or ""),
        "category_map": [str(item) for item in _as_list(raw.get("category_map"))],
    }
    if kind in {"single_choice", "multiple_choice"}:
        data["options"] = _option_labels(raw.get("options"))
    if kind == "rating":
        low = _coerce_int(raw.get("min"), 1)
        high = _coerce_int(raw.get("max"), 5)
        if high <= low:
            low, high = 1, 5
        data["min_value"] = low
        data["max_value"] = high
    return _QUESTION_ADAPTER.validate_python(data)


def normalize_questions(raw_questions: list[dict[str, object]]) -> list[Question]:
    """Normalize an ordered question list."""
    return [
        normalize_question(raw, index + 1)
        for index, raw in enumerate(raw_questions)
        if isinstance(raw, dict)
    ]


def coerce_answer(question: Question, raw_answer: object) -> object:
    """Coerce a raw answer into the shape the question kind expects."""
    if isinstance(question, MultipleChoiceQuestion):
        if isinstance(raw_answer, list | tuple):
            return [str(value) for value in raw_answer]
        return [str(raw_answer)] if raw_answer else []
    if isinstance(question, RatingQuestion):
        if isinstance(raw_answer, int | float):
            return raw_answer
        try:
            return float(str(raw_answer or 0))
        except ValueError:
            return 0
    if isinstance(raw_answer, list | tuple):
        return [str(value) for value in raw_answer]
    return "" if raw_answer is None else str(raw_answer)


def is_blank_answer(question: Question, answer: object) -> bool:
    """Return True when an answer should count as missing."""
    if isinstance(answer, list):
        return not answer
    if isinstance(question, RatingQuestion):
        return False
    return answer in {"", None}


def answer_payload(question: Question, raw_answer: object) -> dict[str, object]:
    """Build the save-answers entry for one question."""
    answer = coerce_answer(question, raw_answer)
    options = getattr(question, "options", [])
    category = question.category
    if not category and question.category_map and isinstance(answer, str):
        try:
            index = options.index(answer)
        except ValueError:
            index = -1
        if 0 <= index < len(question.category_map):
            category = question.category_map[index]
    return {
        "position": question.position,
        "question_id": question.id,
        "question_text": question.text,
        "question_type": question.source_type or question.kind,
        "category": category,
        "options": list(options),
        "answer": answer,
    }


def legacy_answers_payload(answers: dict[str, object]) -> dict[str, object]:
    """Map static quiz step answers to the backend's named fields."""
    return {name: answers.get(step_id) for step_id, name in LEGACY_ANSWER_KEYS.items()}


def _option_labels(raw_options: object) -> list[str]:
    labels: list[str] = []
    for option in _as_list(raw_options):
        if isinstance(option, str):
            label = option
        elif isinstance(option, dict):
            label = str(
                option.get("label") or option.get("value") or option.get("id") or ""
            )
        else:
            label = ""
        if label:
            labels.append(label)
    return labels


def _as_list(value: object) -> list[object]:
    return list(value) if isinstance(value, list | tuple) else []


def _coerce_position(raw: object, fallback: int) -> int:
    if isinstance(raw, int) and raw >= 1:
        return raw
    return fallback


def _coerce_int(raw: object, fallback: int) -> int:
    if isinstance(raw, bool) or raw is None:
        return fallback
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw) if raw.is_integer() else fallback
    if isinstance(raw, str):
        try:
            return int(raw.strip())
        except ValueError:
            return fallback
    return fallback
