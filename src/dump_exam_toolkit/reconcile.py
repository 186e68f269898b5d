"""导入去重与合并：把表格中的候选题目与题库现有题目对齐"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum

from dump_exam_toolkit.errors import ValidationError
from dump_exam_toolkit.models import OPTION_KEYS, Question, validate_question

logger = logging.getLogger(__name__)

MERGE_SUFFIX = " (imported)"


def normalize_text(text: str) -> str:
    """仅用于匹配：去首尾空白并转小写，展示文本保持原样"""
    return (text or "").strip().lower()


class MergePolicy(str, Enum):
    DETECT = "detect"     # 只报告，不修改
    SKIP = "skip"         # 保留现有，仅追加新题
    REPLACE = "replace"   # 原位覆盖重复题，追加新题
    MERGE = "merge"       # 重复题加后缀后追加，两版并存

    @classmethod
    def parse(cls, value: MergePolicy | str | None) -> MergePolicy:
        if value is None or value == "":
            return cls.DETECT
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            names = ", ".join(p.value for p in cls)
            raise ValidationError(f"未知的合并策略: {value!r}，支持: {names}") from None


@dataclass
class Duplicate:
    candidate: Question
    existing: Question
    index: int                  # existing 在现有列表中的位置
    has_changes: bool

    def to_dict(self) -> dict:
        return {
            "question": self.candidate.text,
            "index": self.index,
            "hasChanges": self.has_changes,
            "existing": self.existing.to_dict(),
            "incoming": self.candidate.to_dict(),
        }


@dataclass
class ImportReport:
    new: list[Question] = field(default_factory=list)
    duplicates: list[Duplicate] = field(default_factory=list)
    skipped: int = 0            # 解析阶段丢弃的无效行

    @property
    def new_count(self) -> int:
        return len(self.new)

    @property
    def has_duplicates(self) -> bool:
        return bool(self.duplicates)

    @property
    def message(self) -> str:
        return f"Found {len(self.duplicates)} duplicate(s) and {self.new_count} new question(s)"

    def to_dict(self) -> dict:
        return {
            "newQuestions": self.new_count,
            "duplicates": [d.to_dict() for d in self.duplicates],
            "skipped": self.skipped,
            "message": self.message,
        }


@dataclass
class ImportResult:
    report: ImportReport
    policy: MergePolicy
    questions: list[Question] | None = None     # 未应用时为 None
    applied: bool = False


def has_changes(candidate: Question, existing: Question) -> bool:
    """四个选项文本或正确答案集合有任一不同"""
    for key in OPTION_KEYS:
        if candidate.option_text(key) != existing.option_text(key):
            return True
    return set(candidate.correct_answers) != set(existing.correct_answers)


def classify(
    candidates: list[Question],
    existing: list[Question],
    skipped: int = 0,
) -> ImportReport:
    """逐个候选线性扫描现有题目，按归一化文本精确匹配，取首个命中"""
    keys = [normalize_text(q.text) for q in existing]
    report = ImportReport(skipped=skipped)
    for cand in candidates:
        key = normalize_text(cand.text)
        idx = next((i for i, k in enumerate(keys) if k == key), -1)
        if idx == -1:
            report.new.append(cand)
            continue
        report.duplicates.append(Duplicate(
            candidate=cand,
            existing=existing[idx],
            index=idx,
            has_changes=has_changes(cand, existing[idx]),
        ))
    logger.info(
        "导入分类: 候选 %d 题 → 新增 %d, 重复 %d (有改动 %d), 跳过无效行 %d",
        len(candidates), report.new_count, len(report.duplicates),
        sum(1 for d in report.duplicates if d.has_changes), skipped,
    )
    return report


def _replaced(existing: Question, candidate: Question) -> Question:
    """用候选内容覆盖，保留原题 id"""
    q = copy.deepcopy(candidate)
    q.id = existing.id
    return q


def _suffixed(candidate: Question, suffix: str) -> Question:
    q = copy.deepcopy(candidate)
    q.text = f"{q.text}{suffix}"
    return q


def apply_policy(
    policy: MergePolicy | str,
    existing: list[Question],
    report: ImportReport,
    suffix: str = MERGE_SUFFIX,
) -> list[Question]:
    """按策略生成合并后的新列表，不修改 existing"""
    policy = MergePolicy.parse(policy)
    if policy is MergePolicy.DETECT:
        raise ValidationError("detect 策略不产生合并结果，请选择 skip / replace / merge")

    merged = list(existing)
    new = [copy.deepcopy(q) for q in report.new]

    if policy is MergePolicy.SKIP:
        return merged + new

    if policy is MergePolicy.REPLACE:
        for dup in report.duplicates:
            merged[dup.index] = _replaced(merged[dup.index], dup.candidate)
        return merged + new

    # MERGE
    return merged + [_suffixed(d.candidate, suffix) for d in report.duplicates] + new


def _valid_candidates(candidates: list[Question]) -> tuple[list[Question], int]:
    valid: list[Question] = []
    dropped = 0
    for i, cand in enumerate(candidates, 1):
        try:
            validate_question(cand, f"候选第 {i} 题")
        except ValidationError as e:
            logger.warning("丢弃 %s", e)
            dropped += 1
            continue
        valid.append(cand)
    return valid, dropped


def reconcile(
    candidates: list[Question],
    existing: list[Question],
    policy: MergePolicy | str | None = MergePolicy.DETECT,
    skipped: int = 0,
    suffix: str = MERGE_SUFFIX,
) -> ImportResult:
    """
    分类并（在策略允许时）合并。

    - 缺题目文本或正确答案的候选直接丢弃，计入 skipped
    - 无有效候选 → ValidationError
    - detect 且存在重复 → 只返回分类报告，等待调用方选定策略后重新调用
    - detect 且无重复 → 没有需要决定的内容，按 skip 直接应用
    """
    candidates, dropped = _valid_candidates(candidates)
    skipped += dropped
    if not candidates:
        raise ValidationError(f"no valid rows: 没有可导入的有效题目（跳过 {skipped} 行）")

    policy = MergePolicy.parse(policy)
    report = classify(candidates, existing, skipped=skipped)

    if policy is MergePolicy.DETECT:
        if report.has_duplicates:
            return ImportResult(report=report, policy=policy)
        policy = MergePolicy.SKIP

    merged = apply_policy(policy, existing, report, suffix=suffix)
    logger.info("导入完成 (%s): %d → %d 题", policy.value, len(existing), len(merged))
    return ImportResult(report=report, policy=policy, questions=merged, applied=True)
