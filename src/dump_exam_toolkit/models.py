from __future__ import annotations
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from dump_exam_toolkit.errors import ValidationError

OPTION_KEYS = ("A", "B", "C", "D")
TRUE_FALSE_OPTIONS = {"A": "True|Đúng", "B": "False|Sai"}

_ANSWER_SPLIT = re.compile(r"[\s,;|/]+")


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_text(value) -> str:
    """None → ""，其余转为去首尾空白的字符串（保留 "0" 之类的合法值）"""
    if value is None:
        return ""
    return str(value).strip()


def split_answer_keys(raw) -> list[str]:
    """"a, C" / ["A", "c"] → ["A", "C"]，保持顺序并去重"""
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set)):
        parts = [_as_text(p) for p in raw]
    else:
        parts = _ANSWER_SPLIT.split(_as_text(raw))
    keys: list[str] = []
    for p in parts:
        k = p.upper()
        if k and k not in keys:
            keys.append(k)
    return keys


class QuestionType(str, Enum):
    SINGLE = "multiple_choice_single"
    MULTIPLE = "multiple_choice_multiple"
    TRUE_FALSE = "true_false"
    SHORT_ANSWER = "short_answer"
    HTML_FIELD = "html_field"

    @property
    def is_choice(self) -> bool:
        return self in (QuestionType.SINGLE, QuestionType.MULTIPLE, QuestionType.TRUE_FALSE)

    @property
    def is_multiple(self) -> bool:
        return self is QuestionType.MULTIPLE


@dataclass
class Question:
    """题库中的一道题"""
    text: str
    type: QuestionType = QuestionType.SINGLE
    options: dict[str, str] = field(default_factory=dict)        # A..D → 选项文本
    correct_answers: list[str] = field(default_factory=list)     # 选择题的正确选项（有序）
    accepted_answers: list[str] = field(default_factory=list)    # 填空题可接受答案
    explanation: str = ""
    id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        if not isinstance(self.type, QuestionType):
            self.type = QuestionType(self.type)
        if self.type is QuestionType.TRUE_FALSE and not self.options:
            self.options = dict(TRUE_FALSE_OPTIONS)

    @property
    def correct_answer(self) -> str:
        """导出用的答案串，如 "A" 或 "A,C" """
        return ",".join(self.correct_answers)

    def option_text(self, key: str) -> str:
        return self.options.get(key, "")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "question": self.text,
            "options": dict(self.options),
            "correctAnswers": list(self.correct_answers),
            "correctAnswer": self.correct_answer,
            "acceptedAnswers": list(self.accepted_answers),
            "explanation": self.explanation,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Question:
        """兼容旧数据：只有 correctAnswer、没有 type 的题目按内容推断题型"""
        raw_options = data.get("options") or {}
        if not isinstance(raw_options, dict):
            raise ValidationError(f"options 应为对象: {raw_options!r}")
        options = {str(k).strip().upper(): _as_text(v) for k, v in raw_options.items()}
        answers = data.get("correctAnswers")
        if answers is None:
            answers = data.get("correctAnswer")
        keys = split_answer_keys(answers)
        raw_accepted = data.get("acceptedAnswers") or []
        if isinstance(raw_accepted, str):
            raw_accepted = raw_accepted.split("|")
        elif not isinstance(raw_accepted, (list, tuple)):
            raise ValidationError(f"acceptedAnswers 应为数组: {raw_accepted!r}")
        accepted = [_as_text(a) for a in raw_accepted if _as_text(a)]

        raw_type = _as_text(data.get("type"))
        qtype = parse_type(raw_type) if raw_type else infer_type(options, keys, accepted)
        if not qtype.is_choice:
            keys = []

        text = data.get("question")
        if text is None:
            text = data.get("text")
        kwargs = {}
        if data.get("id") is not None:
            kwargs["id"] = str(data["id"])
        return cls(
            text=_as_text(text),
            type=qtype,
            options=options if qtype.is_choice else {},
            correct_answers=keys,
            accepted_answers=accepted,
            explanation=_as_text(data.get("explanation")),
            **kwargs,
        )


def parse_type(raw: str) -> QuestionType:
    try:
        return QuestionType(raw)
    except ValueError:
        names = ", ".join(t.value for t in QuestionType)
        raise ValidationError(f"未知题型: {raw!r}，支持: {names}") from None


def infer_type(options: dict[str, str], keys: list[str], accepted: list[str]) -> QuestionType:
    if accepted and not keys:
        return QuestionType.SHORT_ANSWER
    if len(keys) > 1:
        return QuestionType.MULTIPLE
    if options and options == TRUE_FALSE_OPTIONS:
        return QuestionType.TRUE_FALSE
    return QuestionType.SINGLE


def validate_question(q: Question, label: str = "") -> None:
    """检查题目不变量，不合法时抛出 ValidationError"""
    where = f"{label}: " if label else ""
    if not _as_text(q.text):
        raise ValidationError(f"{where}题目文本为空")

    if q.type.is_choice:
        if not q.correct_answers:
            raise ValidationError(f"{where}选择题缺少正确答案")
        bad = [k for k in q.options if k not in OPTION_KEYS]
        if bad:
            raise ValidationError(f"{where}无效的选项键: {bad}")
        missing = [k for k in q.correct_answers if k not in q.options]
        if missing:
            raise ValidationError(f"{where}正确答案 {missing} 不在选项中")
        if q.type is not QuestionType.MULTIPLE and len(q.correct_answers) != 1:
            raise ValidationError(f"{where}单选题只能有一个正确答案")
        if q.type is QuestionType.TRUE_FALSE and q.options != TRUE_FALSE_OPTIONS:
            raise ValidationError(f"{where}判断题选项必须是 {TRUE_FALSE_OPTIONS}")
    else:
        if q.options:
            raise ValidationError(f"{where}{q.type.value} 题不应有选项")
        if q.type is QuestionType.SHORT_ANSWER and not any(_as_text(a) for a in q.accepted_answers):
            raise ValidationError(f"{where}填空题缺少可接受答案")


@dataclass
class DumpSettings:
    is_public: bool = False
    time_limit: int = 0                  # 分钟，0 = 不限时
    show_answer_immediately: bool = True
    category: str = "Uncategorized"

    def to_dict(self) -> dict:
        return {
            "isPublic": self.is_public,
            "timeLimit": self.time_limit,
            "showAnswerImmediately": self.show_answer_immediately,
            "category": self.category,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DumpSettings:
        defaults = cls()
        time_limit = data.get("timeLimit")
        if time_limit in (None, ""):
            time_limit = defaults.time_limit
        else:
            try:
                time_limit = int(time_limit)
            except (TypeError, ValueError):
                raise ValidationError(f"timeLimit 应为整数分钟: {time_limit!r}") from None
            if time_limit < 0:
                raise ValidationError(f"timeLimit 不能为负数: {time_limit}")
        show = data.get("showAnswerImmediately")
        return cls(
            is_public=bool(data.get("isPublic", defaults.is_public)),
            time_limit=time_limit,
            show_answer_immediately=defaults.show_answer_immediately if show is None else bool(show),
            category=_as_text(data.get("category")) or defaults.category,
        )


@dataclass
class Dump:
    """题库（dump）：有序题目 + 配置"""
    name: str
    owner_id: str
    questions: list[Question] = field(default_factory=list)
    settings: DumpSettings = field(default_factory=DumpSettings)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self, with_questions: bool = True) -> dict:
        d = {
            "id": self.id,
            "name": self.name,
            "ownerId": self.owner_id,
            "questionCount": len(self.questions),
            "createdAt": self.created_at.isoformat(),
            **self.settings.to_dict(),
        }
        if with_questions:
            d["questions"] = [q.to_dict() for q in self.questions]
        return d


@dataclass
class AnswerRecord:
    """一次作答中单道题的答案"""
    selected: list[str] = field(default_factory=list)
    text: str = ""
    html: str = ""
    is_correct: bool = False

    def to_dict(self) -> dict:
        return {
            "selected": list(self.selected),
            "text": self.text,
            "html": self.html,
            "isCorrect": self.is_correct,
        }

    @classmethod
    def from_dict(cls, data: dict) -> AnswerRecord:
        return cls(
            selected=split_answer_keys(data.get("selected")),
            text=data.get("text") or "",
            html=data.get("html") or "",
            is_correct=bool(data.get("isCorrect", False)),
        )


def answers_to_dict(answers: dict[int, AnswerRecord]) -> dict[str, dict]:
    return {str(i): rec.to_dict() for i, rec in sorted(answers.items())}


def answers_from_dict(data: dict | None) -> dict[int, AnswerRecord]:
    return {int(k): AnswerRecord.from_dict(v) for k, v in (data or {}).items()}


@dataclass(frozen=True)
class Attempt:
    """已完成的一次作答（历史记录），创建后不再修改"""
    dump_id: str
    dump_name: str
    score: int
    total: int
    answers: dict[int, AnswerRecord] = field(default_factory=dict)
    user_id: str = ""
    id: str = ""
    created_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "dumpId": self.dump_id,
            "dumpName": self.dump_name,
            "score": self.score,
            "total": self.total,
            "answers": answers_to_dict(self.answers),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
