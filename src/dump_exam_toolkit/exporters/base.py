from __future__ import annotations
from abc import ABC, abstractmethod
from pathlib import Path
from dump_exam_toolkit.models import OPTION_KEYS, Question

OPTION_COLUMNS = [f"option{k}" for k in OPTION_KEYS]

# 与导入端的列名一致，导出后可直接重新导入
CORE_COLUMNS = ["question", *OPTION_COLUMNS, "correctAnswer"]
EXTRA_COLUMNS = ["type", "acceptedAnswers", "explanation"]


class BaseExporter(ABC):

    @abstractmethod
    def export(self, questions: list[Question], output_path: Path, **kwargs) -> Path:
        ...

    @staticmethod
    def to_row(q: Question) -> dict:
        row = {
            "question":        q.text,
            "correctAnswer":   q.correct_answer,
            "type":            q.type.value,
            "acceptedAnswers": "|".join(q.accepted_answers),
            "explanation":     q.explanation,
        }
        for key, col in zip(OPTION_KEYS, OPTION_COLUMNS):
            row[col] = q.option_text(key)
        return row

    @staticmethod
    def flatten(questions: list[Question]) -> tuple[list[dict], list[str]]:
        """
        展平为行记录。

        核心列（题目、四个选项、答案）始终保留；
        type / acceptedAnswers / explanation 全空时不输出。
        """
        rows = [BaseExporter.to_row(q) for q in questions]
        extra = [col for col in EXTRA_COLUMNS if any(r[col] for r in rows)]
        # 题型全是单选时省略 type 列，保持与旧版表格一致
        if "type" in extra and all(q.type.value == "multiple_choice_single" for q in questions):
            extra.remove("type")
        return rows, CORE_COLUMNS + extra
