"""题库与作答统计"""
from __future__ import annotations
from collections import Counter
import unicodedata
from dump_exam_toolkit.models import Attempt, Question

TYPE_LABELS = {
    "multiple_choice_single":   "单选题",
    "multiple_choice_multiple": "多选题",
    "true_false":               "判断题",
    "short_answer":             "填空题",
    "html_field":               "自评题",
}


def _display_width(s: str) -> int:
    """计算字符串在终端的显示宽度"""
    return sum(2 if unicodedata.east_asian_width(c) in ("F", "W") else 1 for c in s)


def _pad_right(s: str, width: int) -> str:
    """按显示宽度右补空格"""
    return s + " " * (width - _display_width(s))


def summarize(questions: list[Question]) -> dict:
    by_type = Counter(q.type.value for q in questions)
    by_answer = Counter(k for q in questions for k in q.correct_answers)
    return {
        "total": len(questions),
        "by_type": dict(by_type.most_common()),
        "by_answer": dict(sorted(by_answer.items())),
        "with_explanation": sum(1 for q in questions if q.explanation),
    }


def summarize_history(attempts: list[Attempt]) -> dict:
    pcts = [a.score / a.total * 100 for a in attempts if a.total]
    return {
        "attempts": len(attempts),
        "best": max(pcts) if pcts else 0.0,
        "average": sum(pcts) / len(pcts) if pcts else 0.0,
        "by_dump": dict(Counter(a.dump_name for a in attempts).most_common()),
    }


def _print_section(title: str, data: dict, total: int):
    print(f"\n{title}:")
    if not data:
        print("  (无数据)")
        return
    labels = {k: (k if str(k).strip() else "未知") for k in data}
    col_width = max(_display_width(str(v)) for v in labels.values()) + 2
    max_count = max(data.values())
    for key, count in data.items():
        padded = _pad_right(str(labels[key]), col_width)
        bar = "■" * round(count / max_count * 20)
        print(f"  {padded} {count:>5d} ({count / total * 100:>5.1f}%) {bar}")


def print_summary(questions: list[Question], name: str = "") -> None:
    """打印统计摘要到终端"""
    s = summarize(questions)
    total = s["total"] or 1
    print(f"\n{'='*50}")
    print(f"📊 题库统计{f': {name}' if name else ''}")
    print(f"{'='*50}")
    print(f"总题数: {s['total']}    含解析: {s['with_explanation']}")

    _print_section("按题型", {TYPE_LABELS.get(k, k): v for k, v in s["by_type"].items()}, total)
    _print_section("答案分布", s["by_answer"], total)
    print(f"{'='*50}\n")
