"""Flask 应用共用的部分：身份解析、错误映射"""
from __future__ import annotations

import logging

from flask import Flask, current_app, jsonify, request

from dump_exam_toolkit.access import Identity
from dump_exam_toolkit.errors import (
    DumpKitError, ForbiddenError, NotFoundError, StateError, ValidationError,
)
from dump_exam_toolkit.store import DumpStore

logger = logging.getLogger(__name__)

EXT_KEY = "dump_exam"
USER_HEADER = "X-User-Id"

_STATUS = {
    ValidationError: 400,
    StateError: 409,
    ForbiddenError: 403,
    NotFoundError: 404,
}


def get_store() -> DumpStore:
    return current_app.extensions[EXT_KEY]["store"]


def current_identity() -> Identity | None:
    """请求头中的用户 id → Identity；未携带时为匿名"""
    uid = (request.headers.get(USER_HEADER) or "").strip()
    if not uid:
        return None
    try:
        return get_store().get_user(uid)
    except NotFoundError:
        raise ForbiddenError("无效的用户身份") from None


def require_identity() -> Identity:
    identity = current_identity()
    if identity is None:
        raise ForbiddenError("需要登录")
    return identity


def require_admin() -> Identity:
    identity = require_identity()
    if not identity.is_admin:
        raise ForbiddenError("需要管理员权限")
    return identity


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _handle(err: DumpKitError):
    status = next((code for cls, code in _STATUS.items() if isinstance(err, cls)), 500)
    if status == 500:
        logger.error("未处理的业务错误: %s", err)
    return jsonify({"error": str(err)}), status


def create_base_app(name: str, store: DumpStore, **extra) -> Flask:
    app = Flask(name)
    app.json.ensure_ascii = False
    app.extensions[EXT_KEY] = {"store": store, **extra}
    app.register_error_handler(DumpKitError, _handle)
    return app
