from __future__ import annotations
import json
import logging
from pathlib import Path
from dump_exam_toolkit.models import Question
from dump_exam_toolkit.exporters import register
from dump_exam_toolkit.exporters.base import BaseExporter

logger = logging.getLogger(__name__)


@register("json")
class JsonExporter(BaseExporter):

    def export(self, questions: list[Question], output_path: Path, **kwargs) -> Path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fp = output_path.with_suffix(".json")

        # 导出时不带 id，重新导入会生成新 id
        data = []
        for q in questions:
            d = q.to_dict()
            d.pop("id", None)
            data.append(d)

        payload = {"name": kwargs.get("name", ""), "questions": data}
        fp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        logger.info("JSON 导出完成: %s (%d 题)", fp, len(data))
        return fp
