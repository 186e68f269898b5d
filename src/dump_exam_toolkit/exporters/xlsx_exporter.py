from __future__ import annotations
import logging
from pathlib import Path
from openpyxl import Workbook
from openpyxl.styles import Font, Alignment, PatternFill
from openpyxl.utils import get_column_letter
from dump_exam_toolkit.models import Question
from dump_exam_toolkit.exporters import register
from dump_exam_toolkit.exporters.base import BaseExporter, OPTION_COLUMNS

logger = logging.getLogger(__name__)

SHEET_TITLE = "Questions"

COL_WIDTHS = {
    "question":        60,
    "correctAnswer":   14,
    "type":            26,
    "acceptedAnswers": 30,
    "explanation":     50,
}
for _col in OPTION_COLUMNS:
    COL_WIDTHS[_col] = 28

_HEADER_FILL = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")


@register("xlsx")
class XlsxExporter(BaseExporter):

    def export(self, questions: list[Question], output_path: Path, **kwargs) -> Path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fp = output_path.with_suffix(".xlsx")
        wb = self.build_workbook(questions)
        wb.save(fp)
        logger.info("XLSX 导出完成: %s (%d 行)", fp, len(questions))
        return fp

    def build_workbook(self, questions: list[Question]) -> Workbook:
        rows, columns = self.flatten(questions)

        wb = Workbook()
        ws = wb.active
        ws.title = SHEET_TITLE

        # 表头保持原始列名（导入端按列名匹配）
        header_font = Font(bold=True, color="FFFFFF")
        for col_idx, col_key in enumerate(columns, 1):
            cell = ws.cell(row=1, column=col_idx, value=col_key)
            cell.font = header_font
            cell.fill = _HEADER_FILL
            cell.alignment = Alignment(horizontal="center")

        for row_idx, row in enumerate(rows, 2):
            for col_idx, col_key in enumerate(columns, 1):
                cell = ws.cell(row=row_idx, column=col_idx, value=row.get(col_key, ""))
                cell.alignment = Alignment(wrap_text=True, vertical="top")

        for col_idx, col_key in enumerate(columns, 1):
            ws.column_dimensions[get_column_letter(col_idx)].width = COL_WIDTHS.get(col_key, 14)

        ws.freeze_panes = "A2"
        last_col = get_column_letter(len(columns))
        ws.auto_filter.ref = f"A1:{last_col}{len(rows) + 1}"
        return wb
