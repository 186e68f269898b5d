"""作答会话状态机

一次作答 = 有序题目 + 答案表 + 模式（作答 / 回顾）+ 可选倒计时。
会话本身是纯内存对象，不做任何 I/O；加载题库和写历史记录由调用方负责。
UI 触发的非法操作（回顾中选选项、越界下标等）一律按 no-op 处理并返回 False。
"""
from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable

from bs4 import BeautifulSoup

from dump_exam_toolkit.errors import StateError, ValidationError
from dump_exam_toolkit.models import (
    AnswerRecord,
    Attempt,
    Question,
    QuestionType,
    answers_from_dict,
    answers_to_dict,
    validate_question,
)

logger = logging.getLogger(__name__)


class SessionMode(str, Enum):
    ANSWERING = "answering"
    REVIEWING = "reviewing"


class QuestionStatus(str, Enum):
    UNANSWERED = "unanswered"
    ANSWERED = "answered"
    CORRECT = "correct"
    WRONG = "wrong"


@dataclass(frozen=True)
class ProgressSummary:
    total: int
    answered: int
    correct: int | None = None      # 不公开正确性时为 None


def html_has_content(markup: str) -> bool:
    """去标签后有文字，或含图片"""
    if not markup:
        return False
    soup = BeautifulSoup(markup, "html.parser")
    if soup.find("img"):
        return True
    return bool(soup.get_text(strip=True))


def _normalize_answer(text: str) -> str:
    return (text or "").strip().lower()


class QuizSession:

    def __init__(
        self,
        questions: Iterable[Question],
        time_limit: int = 0,
        show_answer_immediately: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.questions = self.validate_questions(questions)
        self.time_limit = time_limit or 0
        self.show_answer_immediately = show_answer_immediately

        self.current_index = 0
        self.answers: dict[int, AnswerRecord] = {}
        self.mode = SessionMode.ANSWERING
        self.finished = False
        self.score: int | None = None
        self.review_closed = False
        self.time_remaining: int | None = (
            int(self.time_limit * 60) if self.time_limit > 0 else None
        )

        self._clock = clock
        self._last_sync = clock()
        self._lock = threading.RLock()

    @staticmethod
    def validate_questions(questions: Iterable[Question] | None) -> list[Question]:
        qs = list(questions or [])
        if not qs:
            raise ValidationError("题集为空，无法开始作答")
        for i, q in enumerate(qs, 1):
            validate_question(q, f"第 {i} 题")
        return qs

    # ── 查询 ──

    @property
    def total(self) -> int:
        return len(self.questions)

    @property
    def reveals_correctness(self) -> bool:
        return self.mode is SessionMode.REVIEWING or self.show_answer_immediately

    @property
    def locked(self) -> bool:
        return self.mode is SessionMode.REVIEWING or self.finished

    @property
    def timer_suspended(self) -> bool:
        return self.finished or self.mode is SessionMode.REVIEWING

    def in_range(self, index) -> bool:
        return isinstance(index, int) and not isinstance(index, bool) and 0 <= index < self.total

    def current_question(self) -> Question:
        return self.questions[self.current_index]

    def is_finished(self) -> bool:
        return self.finished

    def final_score(self) -> int:
        return sum(1 for rec in self.answers.values() if rec.is_correct)

    def question_status(self, index: int) -> QuestionStatus:
        if not self.in_range(index):
            logger.debug("question_status: 下标越界 %r", index)
            return QuestionStatus.UNANSWERED
        rec = self.answers.get(index)
        if rec is None:
            return QuestionStatus.UNANSWERED
        if self.questions[index].type is QuestionType.HTML_FIELD or not self.reveals_correctness:
            return QuestionStatus.ANSWERED
        return QuestionStatus.CORRECT if rec.is_correct else QuestionStatus.WRONG

    def progress_summary(self) -> ProgressSummary:
        correct = self.final_score() if self.reveals_correctness else None
        return ProgressSummary(total=self.total, answered=len(self.answers), correct=correct)

    # ── 作答 ──

    def _editable(self, index, op: str) -> bool:
        if self.locked:
            logger.debug("%s: 会话已锁定 (mode=%s, finished=%s)", op, self.mode.value, self.finished)
            return False
        if not self.in_range(index):
            logger.debug("%s: 下标越界 %r", op, index)
            return False
        return True

    def select_option(self, index: int, option_key: str) -> bool:
        with self._lock:
            if not self._editable(index, "select_option"):
                return False
            q = self.questions[index]
            key = str(option_key).strip().upper()
            if not q.type.is_choice or key not in q.options:
                logger.debug("select_option: 第 %d 题不接受选项 %r", index, option_key)
                return False

            prev = self.answers.get(index)
            selected = list(prev.selected) if prev else []
            if q.type.is_multiple:
                if key in selected:
                    selected.remove(key)
                else:
                    selected.append(key)
            else:
                selected = [key]

            if not selected:
                # 多选题全部取消 → 回到未作答
                self.answers.pop(index, None)
                return True
            self.answers[index] = AnswerRecord(
                selected=selected,
                is_correct=set(selected) == set(q.correct_answers),
            )
            return True

    def set_short_answer(self, index: int, text: str) -> bool:
        with self._lock:
            if not self._editable(index, "set_short_answer"):
                return False
            q = self.questions[index]
            if q.type is not QuestionType.SHORT_ANSWER:
                return False
            text = "" if text is None else text
            if not isinstance(text, str):
                logger.debug("set_short_answer: 非文本输入 %r", text)
                return False
            if not text.strip():
                self.answers.pop(index, None)
                return True
            accepted = {_normalize_answer(a) for a in q.accepted_answers}
            self.answers[index] = AnswerRecord(
                text=text,
                is_correct=_normalize_answer(text) in accepted,
            )
            return True

    def set_html_field(self, index: int, html: str) -> bool:
        with self._lock:
            if not self._editable(index, "set_html_field"):
                return False
            q = self.questions[index]
            if q.type is not QuestionType.HTML_FIELD:
                return False
            if html is not None and not isinstance(html, str):
                logger.debug("set_html_field: 非文本输入 %r", html)
                return False
            if not html_has_content(html):
                self.answers.pop(index, None)
                return True
            # 自评题：有内容即视为完成
            self.answers[index] = AnswerRecord(html=html, is_correct=True)
            return True

    # ── 导航 ──

    def go_next(self) -> None:
        with self._lock:
            if self.current_index < self.total - 1:
                self.current_index += 1
            elif self.mode is SessionMode.REVIEWING:
                self.exit_review()
            else:
                self.finish()

    def go_previous(self) -> None:
        with self._lock:
            if self.current_index > 0:
                self.current_index -= 1

    def jump_to(self, index: int) -> bool:
        with self._lock:
            if not self.in_range(index):
                return False
            self.current_index = index
            return True

    # ── 状态迁移 ──

    def finish(self) -> int:
        """结束作答并计分；重复调用返回首次的分数"""
        with self._lock:
            if self.finished:
                return self.score
            self.finished = True
            self.score = self.final_score()
            logger.info("作答结束: %d/%d (已答 %d)", self.score, self.total, len(self.answers))
            return self.score

    def enter_review(self) -> None:
        with self._lock:
            self.mode = SessionMode.REVIEWING
            self.current_index = 0
            self.review_closed = False

    def exit_review(self) -> None:
        with self._lock:
            if self.mode is SessionMode.REVIEWING:
                self.review_closed = True

    # ── 计时 ──

    def tick(self, seconds: int = 1) -> bool:
        """倒计时前进 seconds 秒；本次调用导致超时结束时返回 True"""
        with self._lock:
            if self.time_remaining is None or self.timer_suspended or seconds <= 0:
                return False
            self.time_remaining = max(0, self.time_remaining - int(seconds))
            if self.time_remaining == 0:
                logger.info("倒计时结束，自动交卷")
                self.finish()
                return True
            return False

    def sync_clock(self) -> int:
        """按挂钟时间补齐自上次同步以来的整秒数（服务端会话用）"""
        with self._lock:
            elapsed = int(self._clock() - self._last_sync)
            if elapsed <= 0:
                return 0
            self._last_sync += elapsed
            if self.timer_suspended:
                return 0
            self.tick(elapsed)
            return elapsed

    # ── 序列化 ──

    def to_dict(self) -> dict:
        return {
            "currentIndex": self.current_index,
            "mode": self.mode.value,
            "answers": answers_to_dict(self.answers),
            "timeLimit": self.time_limit,
            "timeRemaining": self.time_remaining,
            "showAnswerImmediately": self.show_answer_immediately,
            "finished": self.finished,
            "score": self.score,
            "reviewClosed": self.review_closed,
        }

    @classmethod
    def from_dict(cls, questions: Iterable[Question], data: dict, **kwargs) -> QuizSession:
        s = cls(
            questions,
            time_limit=data.get("timeLimit") or 0,
            show_answer_immediately=bool(data.get("showAnswerImmediately", True)),
            **kwargs,
        )
        s.answers = {i: rec for i, rec in answers_from_dict(data.get("answers")).items() if s.in_range(i)}
        index = data.get("currentIndex", 0)
        s.current_index = index if s.in_range(index) else 0
        s.mode = SessionMode(data.get("mode", SessionMode.ANSWERING.value))
        s.time_remaining = data.get("timeRemaining", s.time_remaining)
        s.finished = bool(data.get("finished", False))
        s.score = data.get("score")
        s.review_closed = bool(data.get("reviewClosed", False))
        return s

    @classmethod
    def review_attempt(cls, questions: Iterable[Question], answers: dict[int, AnswerRecord]) -> QuizSession:
        """只读回放一次历史作答"""
        s = cls(questions)
        s.answers = {i: copy.deepcopy(rec) for i, rec in answers.items() if s.in_range(i)}
        s.finish()
        s.enter_review()
        return s

    def to_attempt(self, dump_id: str, dump_name: str, user_id: str = "") -> Attempt:
        if not self.finished:
            raise StateError("作答尚未结束，不能生成历史记录")
        return Attempt(
            dump_id=dump_id,
            dump_name=dump_name,
            score=self.score,
            total=self.total,
            answers=copy.deepcopy(self.answers),
            user_id=user_id,
        )


class SessionTimer:
    """后台线程每 interval 秒调用一次 session.tick()，会话结束或进入回顾后自动退出"""

    def __init__(
        self,
        session: QuizSession,
        interval: float = 1.0,
        on_expire: Callable[[QuizSession], None] | None = None,
    ):
        self.session = session
        self.interval = interval
        self.on_expire = on_expire
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="quiz-timer", daemon=True)

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> SessionTimer:
        if self.session.time_remaining is not None:
            self._thread.start()
        return self

    def cancel(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread.is_alive():
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            if self.session.timer_suspended:
                break
            if self.session.tick():
                if self.on_expire is not None:
                    self.on_expire(self.session)
                break
