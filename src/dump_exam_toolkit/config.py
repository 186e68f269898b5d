"""应用配置（config.yaml）"""
from __future__ import annotations
import logging
from dataclasses import dataclass, fields
from pathlib import Path

import yaml

from dump_exam_toolkit.reconcile import MERGE_SUFFIX
from dump_exam_toolkit.store import DEFAULT_DB_URL


@dataclass
class AppConfig:
    db_url: str = DEFAULT_DB_URL
    data_dir: str = "./data"
    output_dir: str = "./data/output"
    host: str = "127.0.0.1"
    quiz_port: int = 5174
    editor_port: int = 5173
    default_time_limit: int = 0              # 分钟
    merge_suffix: str = MERGE_SUFFIX
    session_ttl: int = 3600                  # 秒，空闲作答会话的保留时间
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, raw: dict | None) -> AppConfig:
        raw = raw or {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known})


def load_config(path: str | Path | None) -> AppConfig:
    """文件不存在时使用默认值"""
    if path is None:
        return AppConfig()
    p = Path(path)
    if p.exists():
        return AppConfig.from_dict(yaml.safe_load(p.read_text(encoding="utf-8")))
    return AppConfig()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="[%(levelname)s] %(name)s: %(message)s",
    )
