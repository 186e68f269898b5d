"""题库管理 Web 服务：增删改查、表格导入/导出、群组共享、账号与管理员接口"""
from __future__ import annotations

import io
import logging

from flask import Blueprint, Flask, current_app, jsonify, request, send_file

from dump_exam_toolkit.access import Permission
from dump_exam_toolkit.config import AppConfig
from dump_exam_toolkit.errors import ForbiddenError, ValidationError
from dump_exam_toolkit.exporters.xlsx_exporter import XlsxExporter
from dump_exam_toolkit.loader import read_rows_from_bytes, rows_to_candidates
from dump_exam_toolkit.models import Dump, DumpSettings, Question, validate_question
from dump_exam_toolkit.reconcile import reconcile
from dump_exam_toolkit.store import DumpStore
from dump_exam_toolkit.web import (
    EXT_KEY, create_base_app, current_identity, get_store, json_body, require_admin,
    require_identity,
)

logger = logging.getLogger(__name__)

bp = Blueprint("editor", __name__)


def _config() -> AppConfig:
    return current_app.extensions[EXT_KEY]["config"]


def _parse_questions(raw) -> list[Question]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("questions 应为数组")
    questions = []
    for i, item in enumerate(raw, 1):
        if not isinstance(item, dict):
            raise ValidationError(f"第 {i} 题格式错误")
        q = Question.from_dict(item)
        validate_question(q, f"第 {i} 题")
        questions.append(q)
    return questions


def _parse_permission(raw) -> Permission:
    try:
        return Permission(raw or Permission.READ.value)
    except ValueError:
        raise ValidationError(f"未知权限: {raw!r}，支持: read / edit") from None


@bp.get("/api/dumps")
def api_list():
    kind = request.args.get("type", "mine")
    search = request.args.get("search", "").strip()
    category = request.args.get("category", "").strip()
    store = get_store()
    if kind == "public":
        items = store.list_dumps(public=True, search=search, category=category)
    elif kind == "group":
        identity = require_identity()
        items = [
            d for d in store.list_group_dumps(identity.user_id)
            if (not search or search.lower() in d.name.lower())
            and (not category or category == "All" or d.settings.category == category)
        ]
    else:
        identity = require_identity()
        items = store.list_dumps(owner_id=identity.user_id, search=search, category=category)
    return jsonify([d.to_dict(with_questions=False) for d in items])


@bp.post("/api/dumps")
def api_create():
    identity = require_identity()
    data = json_body()
    settings = DumpSettings.from_dict(data)
    if data.get("timeLimit") in (None, ""):
        settings.time_limit = _config().default_time_limit
    dump = Dump(
        name=(data.get("name") or "").strip(),
        owner_id=identity.user_id,
        questions=_parse_questions(data.get("questions")),
        settings=settings,
    )
    get_store().create_dump(dump)
    return jsonify(dump.to_dict()), 201


@bp.get("/api/dumps/<dump_id>")
def api_get(dump_id: str):
    dump = get_store().load_question_set(dump_id, current_identity())
    return jsonify(dump.to_dict())


@bp.get("/api/dumps/shared/<dump_id>")
def api_shared(dump_id: str):
    dump = get_store().get_dump(dump_id)
    if not dump.settings.is_public:
        raise ForbiddenError("该题库未公开，无法分享")
    return jsonify(dump.to_dict())


@bp.put("/api/dumps/<dump_id>")
def api_update(dump_id: str):
    store = get_store()
    dump = store.load_for_edit(dump_id, require_identity())
    data = json_body()
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("题库名称不能为空")
        dump.name = name
    if "questions" in data:
        dump.questions = _parse_questions(data["questions"])
    merged = {**dump.settings.to_dict(), **{k: v for k, v in data.items() if k in dump.settings.to_dict()}}
    dump.settings = DumpSettings.from_dict(merged)
    store.update_dump(dump)
    return jsonify(dump.to_dict())


@bp.delete("/api/dumps/<dump_id>")
def api_delete(dump_id: str):
    identity = require_identity()
    store = get_store()
    dump = store.get_dump(dump_id)
    if dump.owner_id != identity.user_id and not identity.is_admin:
        raise ForbiddenError("只有所有者或管理员可以删除题库")
    store.delete_dump(dump_id)
    return jsonify({"message": "Dump deleted"})


@bp.post("/api/dumps/<dump_id>/import")
def api_import(dump_id: str):
    store = get_store()
    dump = store.load_for_edit(dump_id, require_identity())
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        raise ValidationError("未上传文件")

    rows = read_rows_from_bytes(upload.read(), upload.filename)
    candidates, skipped = rows_to_candidates(rows)
    result = reconcile(
        candidates, dump.questions,
        policy=request.form.get("action"),
        skipped=skipped,
        suffix=_config().merge_suffix,
    )

    if not result.applied:
        return jsonify({"status": "duplicates_found", **result.report.to_dict()})

    dump.questions = result.questions
    store.update_dump(dump)
    report = result.report
    return jsonify({
        "status": "success",
        "policy": result.policy.value,
        "message": (
            f"Import completed. Added {report.new_count} new question(s), "
            f"{len(report.duplicates)} duplicate(s) handled."
        ),
        "skipped": report.skipped,
        "totalQuestions": len(dump.questions),
    })


@bp.get("/api/dumps/<dump_id>/export")
def api_export(dump_id: str):
    dump = get_store().load_question_set(dump_id, current_identity())
    fmt = request.args.get("format", "xlsx")
    if fmt == "json":
        return jsonify({"name": dump.name, "questions": [q.to_dict() for q in dump.questions]})
    if fmt != "xlsx":
        raise ValidationError(f"不支持的导出格式: {fmt}")
    buf = io.BytesIO()
    XlsxExporter().build_workbook(dump.questions).save(buf)
    buf.seek(0)
    return send_file(
        buf,
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        as_attachment=True,
        download_name=f"{dump.name}_questions.xlsx",
    )


@bp.get("/api/dumps/<dump_id>/groups")
def api_dump_groups(dump_id: str):
    store = get_store()
    store.load_for_edit(dump_id, require_identity())
    grants = store.dump_grants(dump_id)
    return jsonify([{"groupId": gid, "permission": p.value} for gid, p in sorted(grants.items())])


@bp.put("/api/dumps/<dump_id>/share/groups")
def api_share(dump_id: str):
    identity = require_identity()
    store = get_store()
    dump = store.get_dump(dump_id)
    if dump.owner_id != identity.user_id and not identity.is_admin:
        raise ForbiddenError("只有所有者或管理员可以共享题库")
    member = store.group_ids_for(identity.user_id)
    grants = {}
    for item in json_body().get("groups", []):
        gid = item.get("groupId")
        if not gid:
            raise ValidationError("缺少 groupId")
        if gid not in member and not identity.is_admin:
            raise ForbiddenError(f"不是群组成员: {gid}")
        grants[gid] = _parse_permission(item.get("permission"))
    store.replace_grants(dump_id, grants)
    return jsonify({"ok": True, "groups": len(grants)})


@bp.delete("/api/dumps/<dump_id>/share/groups/<group_id>")
def api_unshare(dump_id: str, group_id: str):
    identity = require_identity()
    store = get_store()
    dump = store.get_dump(dump_id)
    if dump.owner_id != identity.user_id and not identity.is_admin:
        raise ForbiddenError("只有所有者或管理员可以取消共享")
    store.unshare_dump(dump_id, group_id)
    return jsonify({"ok": True})


@bp.post("/api/groups")
def api_group_create():
    identity = require_identity()
    gid = get_store().create_group(json_body().get("name", ""), identity.user_id)
    return jsonify(get_store().get_group(gid)), 201


@bp.post("/api/groups/<group_id>/members")
def api_group_add_member(group_id: str):
    identity = require_identity()
    store = get_store()
    group = store.get_group(group_id)
    if group["ownerId"] != identity.user_id and not identity.is_admin:
        raise ForbiddenError("只有群组所有者可以添加成员")
    user = store.get_user(json_body().get("userId", ""))
    store.add_member(group_id, user.user_id)
    return jsonify(store.get_group(group_id))


@bp.delete("/api/groups/<group_id>/members/<user_id>")
def api_group_remove_member(group_id: str, user_id: str):
    identity = require_identity()
    store = get_store()
    group = store.get_group(group_id)
    if group["ownerId"] != identity.user_id and not identity.is_admin:
        raise ForbiddenError("只有群组所有者可以移除成员")
    if user_id == group["ownerId"]:
        raise ValidationError("不能移除群组所有者")
    store.remove_member(group_id, user_id)
    return jsonify(store.get_group(group_id))


@bp.get("/api/categories")
def api_categories():
    return jsonify(get_store().list_categories())


# ── 账号 ──

def _user_json(identity) -> dict:
    return {"id": identity.user_id, "username": identity.username, "role": identity.role}


@bp.post("/api/auth/login")
def api_login():
    data = json_body()
    identity = get_store().authenticate(data.get("username") or "", data.get("password") or "")
    return jsonify(_user_json(identity))


@bp.put("/api/users/me/password")
def api_change_password():
    identity = require_identity()
    data = json_body()
    get_store().change_password(
        identity.user_id, data.get("oldPassword") or "", data.get("newPassword") or "",
    )
    return jsonify({"message": "Password updated"})


# ── 管理员 ──

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


@admin_bp.before_request
def _admin_only():
    require_admin()


@admin_bp.get("/users")
def admin_users():
    return jsonify(get_store().list_users())


@admin_bp.put("/users/<user_id>/role")
def admin_set_role(user_id: str):
    identity = get_store().set_role(user_id, json_body().get("role") or "")
    return jsonify(_user_json(identity))


@admin_bp.delete("/users/<user_id>")
def admin_delete_user(user_id: str):
    if user_id == current_identity().user_id:
        raise ValidationError("不能删除自己的账号")
    get_store().delete_user(user_id)
    return jsonify({"message": "User deleted"})


@admin_bp.get("/categories")
def admin_categories():
    return jsonify(get_store().list_categories())


@admin_bp.post("/categories")
def admin_create_category():
    data = json_body()
    store = get_store()
    cid = store.create_category(
        data.get("code") or "", data.get("name") or "", data.get("description") or "",
    )
    return jsonify(store.get_category(cid)), 201


@admin_bp.put("/categories/<category_id>")
def admin_update_category(category_id: str):
    data = json_body()
    return jsonify(get_store().update_category(
        category_id,
        code=data.get("code"),
        name=data.get("name"),
        description=data.get("description"),
    ))


@admin_bp.delete("/categories/<category_id>")
def admin_delete_category(category_id: str):
    get_store().delete_category(category_id)
    return jsonify({"message": "Category deleted"})


@admin_bp.get("/groups")
def admin_groups():
    return jsonify(get_store().list_groups())


@admin_bp.put("/groups/<group_id>/active")
def admin_group_active(group_id: str):
    active = json_body().get("isActive")
    if not isinstance(active, bool):
        raise ValidationError("isActive 应为布尔值")
    store = get_store()
    store.set_group_active(group_id, active)
    return jsonify(store.get_group(group_id))


@admin_bp.delete("/groups/<group_id>")
def admin_delete_group(group_id: str):
    get_store().delete_group(group_id)
    return jsonify({"message": "Group deleted"})


def create_app(store: DumpStore, cfg: AppConfig | None = None) -> Flask:
    app = create_base_app(__name__, store, config=cfg or AppConfig())
    app.register_blueprint(bp)
    app.register_blueprint(admin_bp)
    return app


def start_editor(cfg: AppConfig, port: int | None = None, host: str | None = None) -> None:
    """启动题库管理 Web 服务"""
    store = DumpStore(cfg.db_url)
    app = create_app(store, cfg)
    host = host or cfg.host
    port = port or cfg.editor_port
    logger.info("编辑器启动: http://%s:%d", host, port)
    app.run(host=host, port=port, debug=False, use_reloader=False)
