"""题库归档: 加密序列化, 便于离线备份和迁移"""
from __future__ import annotations
import base64
import hashlib
import pickle
import time
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from dump_exam_toolkit.errors import NotFoundError, ValidationError
from dump_exam_toolkit.models import Dump

MAGIC = b"QDP1"
DEFAULT_SUFFIX = ".qdump"


def _derive_key(password: str) -> bytes:
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), b"dump_exam_salt", 100_000)
    return base64.urlsafe_b64encode(dk)


def save_archive(
    items: list[Dump],
    output: Path,
    password: str | None = None,
) -> Path:
    fp = Path(output).with_suffix(DEFAULT_SUFFIX)
    fp.parent.mkdir(parents=True, exist_ok=True)

    payload = pickle.dumps(items, protocol=pickle.HIGHEST_PROTOCOL)

    meta = {
        "count": len(items),
        "questions": sum(len(d.questions) for d in items),
        "created": time.time(),
        "encrypted": bool(password),
    }
    meta_bytes = pickle.dumps(meta)

    if password:
        payload = Fernet(_derive_key(password)).encrypt(payload)

    with open(fp, "wb") as fh:
        fh.write(MAGIC)
        fh.write(len(meta_bytes).to_bytes(4, "big"))
        fh.write(meta_bytes)
        fh.write(payload)

    return fp


def read_meta(path: Path) -> dict:
    meta, _ = _read(path)
    return meta


def _read(path: Path) -> tuple[dict, bytes]:
    path = Path(path)
    if not path.exists():
        raise NotFoundError(f"归档文件不存在: {path}")
    with open(path, "rb") as fh:
        if fh.read(4) != MAGIC:
            raise ValidationError(f"不是有效的 {DEFAULT_SUFFIX} 文件: {path}")
        meta_len = int.from_bytes(fh.read(4), "big")
        meta = pickle.loads(fh.read(meta_len))
        payload = fh.read()
    return meta, payload


def load_archive(path: Path, password: str | None = None) -> list[Dump]:
    meta, payload = _read(path)

    if meta.get("encrypted"):
        if not password:
            raise ValidationError("该归档已加密，请提供 --password")
        try:
            payload = Fernet(_derive_key(password)).decrypt(payload)
        except InvalidToken:
            raise ValidationError("密码错误或文件损坏") from None

    return pickle.loads(payload)
