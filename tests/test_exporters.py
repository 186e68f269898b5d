import csv
import json
import tempfile
from pathlib import Path

import pytest
from openpyxl import load_workbook

from dump_exam_toolkit.exporters import available, get_exporter
from dump_exam_toolkit.exporters.base import BaseExporter, CORE_COLUMNS
from dump_exam_toolkit.loader import load_candidates
from dump_exam_toolkit.models import Question, QuestionType
from dump_exam_toolkit.reconcile import reconcile

SINGLE_ONLY = [
    Question(text="Capital of France?", options={"A": "Paris", "B": "Rome", "C": "Oslo", "D": "Bern"},
             correct_answers=["A"]),
    Question(text="1 + 1 = ?", options={"A": "1", "B": "2"}, correct_answers=["B"]),
]

MIXED = SINGLE_ONLY + [
    Question(text="Primes", type=QuestionType.MULTIPLE,
             options={"A": "2", "B": "4", "C": "5"}, correct_answers=["A", "C"],
             explanation="4 = 2 × 2"),
    Question(text="Sky is blue", type=QuestionType.TRUE_FALSE, correct_answers=["A"]),
    Question(text="2 + 2", type=QuestionType.SHORT_ANSWER, accepted_answers=["4", "four"]),
]


def test_registry_lists_formats():
    assert {"xlsx", "csv", "json"} <= set(available())
    with pytest.raises(KeyError):
        get_exporter("docx")


def test_flatten_omits_empty_extras():
    rows, columns = BaseExporter.flatten(SINGLE_ONLY)
    assert columns == CORE_COLUMNS
    assert rows[1]["optionC"] == ""
    assert rows[1]["correctAnswer"] == "B"

    _, columns = BaseExporter.flatten(MIXED)
    assert columns == CORE_COLUMNS + ["type", "acceptedAnswers", "explanation"]


def test_xlsx_header_and_rows():
    with tempfile.TemporaryDirectory() as tmpdir:
        fp = get_exporter("xlsx").export(SINGLE_ONLY, Path(tmpdir) / "out" / "dump_questions")
        assert fp.suffix == ".xlsx"
        wb = load_workbook(fp)
        ws = wb["Questions"]
        header = [c.value for c in ws[1]]
        assert header == CORE_COLUMNS
        assert ws.cell(row=2, column=1).value == "Capital of France?"
        assert ws.cell(row=3, column=6).value == "B"
        wb.close()


def test_xlsx_reimport_finds_only_unchanged_duplicates():
    with tempfile.TemporaryDirectory() as tmpdir:
        fp = get_exporter("xlsx").export(MIXED, Path(tmpdir) / "mixed")
        candidates, skipped = load_candidates(fp)
    assert skipped == 0
    result = reconcile(candidates, MIXED, policy="skip")
    assert result.report.new_count == 0
    assert len(result.report.duplicates) == len(MIXED)
    assert not any(d.has_changes for d in result.report.duplicates)
    assert len(result.questions) == len(MIXED)


def test_csv_export_round_trip():
    with tempfile.TemporaryDirectory() as tmpdir:
        fp = get_exporter("csv").export(MIXED, Path(tmpdir) / "mixed")
        with open(fp, newline="", encoding="utf-8-sig") as fh:
            rows = list(csv.DictReader(fh))
        assert rows[2]["correctAnswer"] == "A,C"
        assert rows[4]["acceptedAnswers"] == "4|four"
        candidates, _ = load_candidates(fp)
    assert [q.type for q in candidates] == [q.type for q in MIXED]


def test_json_export_has_no_ids():
    with tempfile.TemporaryDirectory() as tmpdir:
        fp = get_exporter("json").export(MIXED, Path(tmpdir) / "mixed", name="Geo")
        data = json.loads(fp.read_text(encoding="utf-8"))
    assert data["name"] == "Geo"
    assert len(data["questions"]) == len(MIXED)
    assert all("id" not in q for q in data["questions"])
