"""表格导入：读取 xlsx/csv/json 行记录并转换为候选题目"""
from __future__ import annotations

import csv
import io
import json
import logging
import zipfile
from pathlib import Path
from typing import IO

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from dump_exam_toolkit.errors import NotFoundError, ValidationError
from dump_exam_toolkit.models import (
    OPTION_KEYS,
    TRUE_FALSE_OPTIONS,
    Question,
    QuestionType,
    infer_type,
    split_answer_keys,
    validate_question,
)

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".xlsx", ".xlsm", ".csv", ".json")

# 列名候选（按优先级），匹配时大小写不敏感
QUESTION_KEYS = ("question", "Question", "text")
OPTION_COLUMNS = {
    "A": ("optionA", "OptionA", "A", "a"),
    "B": ("optionB", "OptionB", "B", "b"),
    "C": ("optionC", "OptionC", "C", "c"),
    "D": ("optionD", "OptionD", "D", "d"),
}
ANSWER_KEYS = ("correctAnswers", "correctAnswer", "CorrectAnswer", "correctanswer", "Answer", "answer")
TYPE_KEYS = ("type", "Type")
ACCEPTED_KEYS = ("acceptedAnswers", "AcceptedAnswers", "accepted")
EXPLANATION_KEYS = ("explanation", "Explanation")


def _present(value) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, tuple, dict)):
        return bool(value)
    return str(value).strip() != ""


def _text(value) -> str:
    return str(value).strip() if value is not None else ""


def get_value(row: dict, keys: tuple[str, ...]):
    """按候选列名取值：先精确匹配，再大小写不敏感匹配；空值视为缺失"""
    for key in keys:
        if _present(row.get(key)):
            return row[key]
        lower = key.lower()
        for row_key, val in row.items():
            if str(row_key).lower() == lower and _present(val):
                return val
    return None


def _split_accepted(raw) -> list[str]:
    if raw is None:
        return []
    parts = raw if isinstance(raw, (list, tuple)) else str(raw).split("|")
    return [_text(p) for p in parts if _text(p)]


def _nested_options(row: dict) -> dict[str, str]:
    """JSON 导出的 options 字段可能是对象或 JSON 字符串"""
    nested = row.get("options")
    if isinstance(nested, str) and nested.strip().startswith("{"):
        try:
            nested = json.loads(nested)
        except json.JSONDecodeError:
            return {}
    if not isinstance(nested, dict):
        return {}
    return {k: _text(nested[k]) for k in OPTION_KEYS if _present(nested.get(k))}


def row_to_question(row: dict, row_no: int = 0) -> Question | None:
    """单行 → Question；缺题目文本或无法解析答案时返回 None"""
    text = _text(get_value(row, QUESTION_KEYS))
    if not text:
        logger.warning("跳过第 %d 行: 缺少题目文本", row_no)
        return None

    options = {k: _text(get_value(row, keys)) for k, keys in OPTION_COLUMNS.items()}
    options.update(_nested_options(row))
    options = {k: v for k, v in options.items() if v}

    raw_answer = get_value(row, ANSWER_KEYS)
    keys = split_answer_keys(raw_answer)
    accepted = _split_accepted(get_value(row, ACCEPTED_KEYS))
    raw_type = _text(get_value(row, TYPE_KEYS)).lower()

    try:
        qtype = QuestionType(raw_type) if raw_type else infer_type(options, keys, accepted)
    except ValueError:
        logger.warning("跳过第 %d 行: 未知题型 %r", row_no, raw_type)
        return None

    if qtype is QuestionType.SHORT_ANSWER:
        accepted = accepted or _split_accepted(raw_answer)
        if not accepted:
            logger.warning("跳过第 %d 行: 填空题缺少可接受答案", row_no)
            return None
        options, keys = {}, []
    elif qtype is QuestionType.HTML_FIELD:
        options, keys, accepted = {}, [], []
    else:
        if not keys:
            logger.warning("跳过第 %d 行: 缺少正确答案", row_no)
            return None
        bad = [k for k in keys if k not in OPTION_KEYS]
        if bad:
            logger.warning("跳过第 %d 行: 无效答案 %r，必须是 A/B/C/D", row_no, raw_answer)
            return None
        if qtype is QuestionType.TRUE_FALSE:
            options = dict(TRUE_FALSE_OPTIONS)
        accepted = []

    q = Question(
        text=text,
        type=qtype,
        options=options,
        correct_answers=keys,
        accepted_answers=accepted,
        explanation=_text(get_value(row, EXPLANATION_KEYS)),
    )
    try:
        validate_question(q, f"第 {row_no} 行")
    except ValidationError as e:
        logger.warning("跳过 %s", e)
        return None
    return q


# ── 读取 ──

def _read_xlsx(source: Path | IO[bytes]) -> list[dict]:
    try:
        wb = load_workbook(source, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as e:
        raise ValidationError(f"无法解析 Excel 文件: {e}") from e
    try:
        it = wb.worksheets[0].iter_rows(values_only=True)
        header = next(it, None)
        if header is None:
            return []
        columns = [_text(h) for h in header]
        rows = []
        for values in it:
            if not values or not any(_present(v) for v in values):
                continue
            rows.append({col: val for col, val in zip(columns, values) if col})
        return rows
    finally:
        wb.close()


def _read_csv(fh: IO[str]) -> list[dict]:
    return [
        row for row in csv.DictReader(fh)
        if any(_present(v) for v in row.values())
    ]


def _read_json(raw: str) -> list[dict]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"无法解析 JSON 文件: {e}") from e
    if isinstance(data, dict):
        data = data.get("questions", [])
    if not isinstance(data, list):
        raise ValidationError("JSON 文件应为题目数组或含 questions 字段的对象")
    return [r for r in data if isinstance(r, dict)]


def _check_suffix(name: str) -> str:
    suffix = Path(name).suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise ValidationError(f"不支持的文件类型: {suffix or name}，支持: {', '.join(SUPPORTED_SUFFIXES)}")
    return suffix


def read_rows(path: str | Path) -> list[dict]:
    p = Path(path)
    if not p.exists():
        raise NotFoundError(f"文件不存在: {p}")
    suffix = _check_suffix(p.name)
    if suffix == ".csv":
        with open(p, newline="", encoding="utf-8-sig") as fh:
            return _read_csv(fh)
    if suffix == ".json":
        return _read_json(p.read_text(encoding="utf-8"))
    return _read_xlsx(p)


def read_rows_from_bytes(data: bytes, filename: str) -> list[dict]:
    """上传文件（内存）版本"""
    suffix = _check_suffix(filename)
    if suffix == ".csv":
        return _read_csv(io.StringIO(data.decode("utf-8-sig"), newline=""))
    if suffix == ".json":
        return _read_json(data.decode("utf-8"))
    return _read_xlsx(io.BytesIO(data))


def rows_to_candidates(rows: list[dict]) -> tuple[list[Question], int]:
    """返回 (有效候选, 跳过行数)。行号按表格习惯从 2 开始（第 1 行为表头）"""
    if not rows:
        raise ValidationError("表格为空或没有数据行")
    candidates: list[Question] = []
    skipped = 0
    for row_no, row in enumerate(rows, 2):
        q = row_to_question(row, row_no)
        if q is None:
            skipped += 1
        else:
            candidates.append(q)
    logger.info("解析完成: %d 题, 跳过 %d 行", len(candidates), skipped)
    return candidates, skipped


def load_candidates(path: str | Path) -> tuple[list[Question], int]:
    return rows_to_candidates(read_rows(path))
