"""持久化：用户 / 题库 / 作答历史 / 群组 / 分类（SQLAlchemy Core）"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, MetaData, String, Table, Text,
    create_engine, delete, func, select, update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from dump_exam_toolkit.access import ADMIN_ROLE, AccessPolicy, Identity, Permission
from dump_exam_toolkit.errors import ForbiddenError, NotFoundError, ValidationError
from dump_exam_toolkit.models import (
    Attempt, Dump, DumpSettings, Question, answers_from_dict, answers_to_dict,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_URL = "sqlite:///data/dumps.db"
_PBKDF2_ROUNDS = 100_000
ROLES = ("user", ADMIN_ROLE)

metadata = MetaData()

users = Table(
    "users", metadata,
    Column("id",            String(32), primary_key=True),
    Column("username",      String(128), unique=True, nullable=False, index=True),
    Column("password_hash", String(256), nullable=False),
    Column("role",          String(16), default="user"),
    Column("created_at",    DateTime),
)

dumps = Table(
    "dumps", metadata,
    Column("id",                      String(32), primary_key=True),
    Column("name",                    String(256), nullable=False),
    Column("owner_id",                String(32), ForeignKey("users.id"), index=True),
    Column("questions",               Text, default="[]"),
    Column("is_public",               Boolean, default=False),
    Column("time_limit",              Integer, default=0),
    Column("show_answer_immediately", Boolean, default=True),
    Column("category",                String(128), default="Uncategorized"),
    Column("created_at",              DateTime),
    Column("updated_at",              DateTime),
)

history = Table(
    "history", metadata,
    Column("id",         String(32), primary_key=True),
    Column("user_id",    String(32), ForeignKey("users.id"), index=True),
    Column("dump_id",    String(32), index=True),
    Column("dump_name",  String(256)),
    Column("score",      Integer, nullable=False),
    Column("total",      Integer, nullable=False),
    Column("answers",    Text),
    Column("created_at", DateTime),
)

groups = Table(
    "groups", metadata,
    Column("id",         String(32), primary_key=True),
    Column("name",       String(256), nullable=False),
    Column("owner_id",   String(32), ForeignKey("users.id")),
    Column("is_active",  Boolean, default=True),
    Column("created_at", DateTime),
)

group_members = Table(
    "group_members", metadata,
    Column("group_id", String(32), ForeignKey("groups.id"), primary_key=True),
    Column("user_id",  String(32), ForeignKey("users.id"), primary_key=True),
)

group_dumps = Table(
    "group_dumps", metadata,
    Column("group_id",   String(32), ForeignKey("groups.id"), primary_key=True),
    Column("dump_id",    String(32), ForeignKey("dumps.id"), primary_key=True),
    Column("permission", String(8), default="read"),
)

categories = Table(
    "categories", metadata,
    Column("id",          String(32), primary_key=True),
    Column("code",        String(64), unique=True, nullable=False),
    Column("name",        String(128), nullable=False),
    Column("description", String(512), default=""),
)


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uid() -> str:
    return uuid.uuid4().hex


def hash_password(password: str, salt: str | None = None) -> str:
    salt = salt or secrets.token_hex(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), _PBKDF2_ROUNDS)
    return f"pbkdf2_sha256${_PBKDF2_ROUNDS}${salt}${dk.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        _, rounds, salt, digest = stored.split("$")
    except ValueError:
        return False
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(rounds))
    return hmac.compare_digest(dk.hex(), digest)


def _engine(url: str):
    if url.startswith("sqlite:///") and url != "sqlite:///:memory:":
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    if url in ("sqlite://", "sqlite:///:memory:"):
        # 内存库需要共享单连接，否则每个连接都是空库
        return create_engine(
            url, echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, echo=False)


class DumpStore:

    def __init__(self, url: str = DEFAULT_DB_URL, policy: AccessPolicy | None = None):
        self.url = url
        self.engine = _engine(url)
        self.policy = policy or AccessPolicy()
        metadata.create_all(self.engine)

    # ── 用户 ──

    def create_user(self, username: str, password: str, role: str = "user") -> Identity:
        username = (username or "").strip()
        if not username or not password:
            raise ValidationError("用户名和密码不能为空")
        if role not in ROLES:
            raise ValidationError(f"无效角色: {role!r}，支持: {', '.join(ROLES)}")
        uid = _uid()
        try:
            with Session(self.engine) as session:
                session.execute(users.insert().values(
                    id=uid, username=username, password_hash=hash_password(password),
                    role=role, created_at=_now(),
                ))
                session.commit()
        except IntegrityError:
            raise ValidationError(f"用户名已存在: {username}") from None
        logger.info("新建用户: %s (%s)", username, role)
        return Identity(user_id=uid, role=role, username=username)

    def authenticate(self, username: str, password: str) -> Identity:
        with Session(self.engine) as session:
            row = session.execute(select(users).where(users.c.username == username)).first()
        if row is None or not verify_password(password, row.password_hash):
            raise ForbiddenError("用户名或密码错误")
        return Identity(user_id=row.id, role=row.role, username=row.username)

    def find_user(self, username: str) -> Identity:
        with Session(self.engine) as session:
            row = session.execute(select(users).where(users.c.username == username)).first()
        if row is None:
            raise NotFoundError(f"用户不存在: {username}")
        return Identity(user_id=row.id, role=row.role, username=row.username)

    def get_user(self, user_id: str) -> Identity:
        with Session(self.engine) as session:
            row = session.execute(select(users).where(users.c.id == user_id)).first()
        if row is None:
            raise NotFoundError(f"用户不存在: {user_id}")
        return Identity(user_id=row.id, role=row.role, username=row.username)

    def list_users(self) -> list[dict]:
        """管理端用户列表，附带题库数、作答次数和平均得分率"""
        with Session(self.engine) as session:
            rows = session.execute(select(users).order_by(users.c.username)).all()
            dump_counts = dict(session.execute(
                select(dumps.c.owner_id, func.count()).group_by(dumps.c.owner_id)
            ).all())
            scores = session.execute(select(history.c.user_id, history.c.score, history.c.total)).all()
        pcts: dict[str, list[float]] = {}
        for uid, score, total in scores:
            if total:
                pcts.setdefault(uid, []).append(score / total * 100)
        return [
            {
                "id": r.id,
                "username": r.username,
                "role": r.role,
                "createdAt": r.created_at.isoformat() if r.created_at else None,
                "dumpCount": dump_counts.get(r.id, 0),
                "quizCount": len(pcts.get(r.id, [])),
                "avgScore": round(sum(pcts[r.id]) / len(pcts[r.id])) if pcts.get(r.id) else 0,
            }
            for r in rows
        ]

    def set_role(self, user_id: str, role: str) -> Identity:
        if role not in ROLES:
            raise ValidationError(f"无效角色: {role!r}，支持: {', '.join(ROLES)}")
        with Session(self.engine) as session:
            result = session.execute(update(users).where(users.c.id == user_id).values(role=role))
            if result.rowcount == 0:
                raise NotFoundError(f"用户不存在: {user_id}")
            session.commit()
        logger.info("用户角色变更: %s → %s", user_id, role)
        return self.get_user(user_id)

    def change_password(self, user_id: str, old_password: str, new_password: str) -> None:
        if not new_password:
            raise ValidationError("新密码不能为空")
        with Session(self.engine) as session:
            row = session.execute(select(users).where(users.c.id == user_id)).first()
            if row is None:
                raise NotFoundError(f"用户不存在: {user_id}")
            if not verify_password(old_password or "", row.password_hash):
                raise ForbiddenError("原密码错误")
            session.execute(
                update(users).where(users.c.id == user_id).values(password_hash=hash_password(new_password))
            )
            session.commit()

    def delete_user(self, user_id: str) -> None:
        """删除用户及其题库、作答历史、群组成员关系和名下群组"""
        self.get_user(user_id)
        with Session(self.engine) as session:
            owned_dumps = select(dumps.c.id).where(dumps.c.owner_id == user_id)
            owned_groups = select(groups.c.id).where(groups.c.owner_id == user_id)
            session.execute(delete(group_dumps).where(group_dumps.c.dump_id.in_(owned_dumps)))
            session.execute(delete(group_dumps).where(group_dumps.c.group_id.in_(owned_groups)))
            session.execute(delete(group_members).where(group_members.c.group_id.in_(owned_groups)))
            session.execute(delete(groups).where(groups.c.owner_id == user_id))
            session.execute(delete(group_members).where(group_members.c.user_id == user_id))
            session.execute(delete(dumps).where(dumps.c.owner_id == user_id))
            session.execute(delete(history).where(history.c.user_id == user_id))
            session.execute(delete(users).where(users.c.id == user_id))
            session.commit()
        logger.info("已删除用户: %s", user_id)

    # ── 题库 ──

    @staticmethod
    def _row_to_dump(row) -> Dump:
        return Dump(
            id=row.id,
            name=row.name,
            owner_id=row.owner_id,
            questions=[Question.from_dict(d) for d in json.loads(row.questions or "[]")],
            settings=DumpSettings(
                is_public=bool(row.is_public),
                time_limit=row.time_limit or 0,
                show_answer_immediately=bool(row.show_answer_immediately),
                category=row.category or "Uncategorized",
            ),
            created_at=row.created_at or _now(),
        )

    @staticmethod
    def _dump_values(dump: Dump) -> dict:
        return {
            "name": dump.name,
            "owner_id": dump.owner_id,
            "questions": json.dumps([q.to_dict() for q in dump.questions], ensure_ascii=False),
            "is_public": dump.settings.is_public,
            "time_limit": dump.settings.time_limit,
            "show_answer_immediately": dump.settings.show_answer_immediately,
            "category": dump.settings.category,
            "updated_at": _now(),
        }

    def create_dump(self, dump: Dump) -> Dump:
        if not (dump.name or "").strip():
            raise ValidationError("题库名称不能为空")
        with Session(self.engine) as session:
            session.execute(dumps.insert().values(
                id=dump.id, created_at=dump.created_at.replace(tzinfo=None), **self._dump_values(dump),
            ))
            session.commit()
        logger.info("新建题库: %s (%d 题)", dump.name, len(dump.questions))
        return dump

    def get_dump(self, dump_id: str) -> Dump:
        with Session(self.engine) as session:
            row = session.execute(select(dumps).where(dumps.c.id == dump_id)).first()
        if row is None:
            raise NotFoundError(f"题库不存在: {dump_id}")
        return self._row_to_dump(row)

    def update_dump(self, dump: Dump) -> Dump:
        with Session(self.engine) as session:
            result = session.execute(
                update(dumps).where(dumps.c.id == dump.id).values(**self._dump_values(dump))
            )
            if result.rowcount == 0:
                raise NotFoundError(f"题库不存在: {dump.id}")
            session.commit()
        return dump

    def delete_dump(self, dump_id: str) -> None:
        with Session(self.engine) as session:
            session.execute(delete(group_dumps).where(group_dumps.c.dump_id == dump_id))
            result = session.execute(delete(dumps).where(dumps.c.id == dump_id))
            if result.rowcount == 0:
                raise NotFoundError(f"题库不存在: {dump_id}")
            session.commit()

    def list_dumps(
        self,
        owner_id: str | None = None,
        public: bool | None = None,
        search: str = "",
        category: str = "",
    ) -> list[Dump]:
        stmt = select(dumps).order_by(dumps.c.created_at.desc())
        if owner_id is not None:
            stmt = stmt.where(dumps.c.owner_id == owner_id)
        if public is not None:
            stmt = stmt.where(dumps.c.is_public == public)
        if category and category != "All":
            stmt = stmt.where(dumps.c.category == category)
        with Session(self.engine) as session:
            rows = session.execute(stmt).all()
        result = [self._row_to_dump(r) for r in rows]
        if search:
            kw = search.lower()
            result = [d for d in result if kw in (d.name or "").lower()]
        return result

    def list_group_dumps(self, user_id: str) -> list[Dump]:
        """用户所在（启用中）群组共享的题库"""
        gids = self.group_ids_for(user_id)
        if not gids:
            return []
        stmt = (
            select(dumps)
            .join(group_dumps, group_dumps.c.dump_id == dumps.c.id)
            .where(group_dumps.c.group_id.in_(gids))
            .distinct()
        )
        with Session(self.engine) as session:
            rows = session.execute(stmt).all()
        return [self._row_to_dump(r) for r in rows]

    # ── 访问控制下的加载（题集加载器） ──

    def _access_context(self, dump_id: str, identity: Identity | None):
        grants = self.dump_grants(dump_id)
        member = self.group_ids_for(identity.user_id) if identity else set()
        return grants, member

    def load_question_set(self, dump_id: str, identity: Identity | None) -> Dump:
        dump = self.get_dump(dump_id)
        self.policy.require_read(dump, identity, *self._access_context(dump_id, identity))
        return dump

    def load_for_edit(self, dump_id: str, identity: Identity | None) -> Dump:
        dump = self.get_dump(dump_id)
        self.policy.require_edit(dump, identity, *self._access_context(dump_id, identity))
        return dump

    # ── 作答历史 ──

    def record_attempt(self, attempt: Attempt) -> str:
        hid = attempt.id or _uid()
        with Session(self.engine) as session:
            session.execute(history.insert().values(
                id=hid,
                user_id=attempt.user_id or None,
                dump_id=attempt.dump_id,
                dump_name=attempt.dump_name,
                score=attempt.score,
                total=attempt.total,
                answers=json.dumps(answers_to_dict(attempt.answers), ensure_ascii=False),
                created_at=_now(),
            ))
            session.commit()
        logger.info("记录作答: %s %d/%d", attempt.dump_name, attempt.score, attempt.total)
        return hid

    @staticmethod
    def _row_to_attempt(row) -> Attempt:
        return Attempt(
            id=row.id,
            user_id=row.user_id or "",
            dump_id=row.dump_id,
            dump_name=row.dump_name or "",
            score=row.score,
            total=row.total,
            answers=answers_from_dict(json.loads(row.answers or "{}")),
            created_at=row.created_at,
        )

    def list_history(self, user_id: str, search: str = "") -> list[Attempt]:
        stmt = (
            select(history)
            .where(history.c.user_id == user_id)
            .order_by(history.c.created_at.desc())
        )
        if search:
            stmt = stmt.where(history.c.dump_name.contains(search, autoescape=True))
        with Session(self.engine) as session:
            rows = session.execute(stmt).all()
        return [self._row_to_attempt(r) for r in rows]

    def get_attempt(self, attempt_id: str) -> Attempt:
        with Session(self.engine) as session:
            row = session.execute(select(history).where(history.c.id == attempt_id)).first()
        if row is None:
            raise NotFoundError(f"作答记录不存在: {attempt_id}")
        return self._row_to_attempt(row)

    def delete_attempt(self, attempt_id: str, identity: Identity) -> None:
        attempt = self.get_attempt(attempt_id)
        if attempt.user_id != identity.user_id and not identity.is_admin:
            raise ForbiddenError("只能删除自己的作答记录")
        with Session(self.engine) as session:
            session.execute(delete(history).where(history.c.id == attempt_id))
            session.commit()

    # ── 群组 ──

    def create_group(self, name: str, owner_id: str) -> str:
        if not (name or "").strip():
            raise ValidationError("群组名称不能为空")
        gid = _uid()
        with Session(self.engine) as session:
            session.execute(groups.insert().values(
                id=gid, name=name.strip(), owner_id=owner_id, is_active=True, created_at=_now(),
            ))
            session.execute(group_members.insert().values(group_id=gid, user_id=owner_id))
            session.commit()
        return gid

    def get_group(self, group_id: str) -> dict:
        with Session(self.engine) as session:
            row = session.execute(select(groups).where(groups.c.id == group_id)).first()
            if row is None:
                raise NotFoundError(f"群组不存在: {group_id}")
            members = session.execute(
                select(group_members.c.user_id).where(group_members.c.group_id == group_id)
            ).scalars().all()
        return {
            "id": row.id,
            "name": row.name,
            "ownerId": row.owner_id,
            "isActive": bool(row.is_active),
            "members": sorted(members),
        }

    def set_group_active(self, group_id: str, active: bool) -> None:
        with Session(self.engine) as session:
            result = session.execute(
                update(groups).where(groups.c.id == group_id).values(is_active=active)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"群组不存在: {group_id}")
            session.commit()

    def list_groups(self) -> list[dict]:
        with Session(self.engine) as session:
            rows = session.execute(
                select(groups, users.c.username)
                .join(users, users.c.id == groups.c.owner_id, isouter=True)
                .order_by(groups.c.created_at)
            ).all()
        return [
            {
                "id": r.id,
                "name": r.name,
                "ownerId": r.owner_id,
                "ownerName": r.username or "",
                "isActive": bool(r.is_active),
            }
            for r in rows
        ]

    def delete_group(self, group_id: str) -> None:
        with Session(self.engine) as session:
            session.execute(delete(group_members).where(group_members.c.group_id == group_id))
            session.execute(delete(group_dumps).where(group_dumps.c.group_id == group_id))
            result = session.execute(delete(groups).where(groups.c.id == group_id))
            if result.rowcount == 0:
                raise NotFoundError(f"群组不存在: {group_id}")
            session.commit()
        logger.info("已删除群组: %s", group_id)

    def add_member(self, group_id: str, user_id: str) -> None:
        with Session(self.engine) as session:
            exists = session.execute(
                select(group_members).where(
                    group_members.c.group_id == group_id,
                    group_members.c.user_id == user_id,
                )
            ).first()
            if exists is None:
                session.execute(group_members.insert().values(group_id=group_id, user_id=user_id))
                session.commit()

    def remove_member(self, group_id: str, user_id: str) -> None:
        with Session(self.engine) as session:
            result = session.execute(delete(group_members).where(
                group_members.c.group_id == group_id,
                group_members.c.user_id == user_id,
            ))
            if result.rowcount == 0:
                raise NotFoundError(f"不是群组成员: {user_id}")
            session.commit()

    def share_dump(self, dump_id: str, group_id: str, permission: Permission | str = Permission.READ) -> None:
        perm = Permission(permission)
        with Session(self.engine) as session:
            session.execute(delete(group_dumps).where(
                group_dumps.c.dump_id == dump_id,
                group_dumps.c.group_id == group_id,
            ))
            session.execute(group_dumps.insert().values(
                dump_id=dump_id, group_id=group_id, permission=perm.value,
            ))
            session.commit()

    def unshare_dump(self, dump_id: str, group_id: str) -> None:
        with Session(self.engine) as session:
            session.execute(delete(group_dumps).where(
                group_dumps.c.dump_id == dump_id,
                group_dumps.c.group_id == group_id,
            ))
            session.commit()

    def replace_grants(self, dump_id: str, grants: dict[str, Permission | str]) -> None:
        """整体替换题库的群组授权"""
        with Session(self.engine) as session:
            session.execute(delete(group_dumps).where(group_dumps.c.dump_id == dump_id))
            for gid, perm in grants.items():
                session.execute(group_dumps.insert().values(
                    dump_id=dump_id, group_id=gid, permission=Permission(perm).value,
                ))
            session.commit()

    def group_ids_for(self, user_id: str) -> set[str]:
        stmt = (
            select(group_members.c.group_id)
            .join(groups, groups.c.id == group_members.c.group_id)
            .where(group_members.c.user_id == user_id, groups.c.is_active.is_(True))
        )
        with Session(self.engine) as session:
            return {r.group_id for r in session.execute(stmt)}

    def dump_grants(self, dump_id: str) -> dict[str, Permission]:
        stmt = (
            select(group_dumps.c.group_id, group_dumps.c.permission)
            .join(groups, groups.c.id == group_dumps.c.group_id)
            .where(group_dumps.c.dump_id == dump_id, groups.c.is_active.is_(True))
        )
        with Session(self.engine) as session:
            return {r.group_id: Permission(r.permission) for r in session.execute(stmt)}

    # ── 分类 ──

    def create_category(self, code: str, name: str, description: str = "") -> str:
        if not (code or "").strip() or not (name or "").strip():
            raise ValidationError("分类代码和名称不能为空")
        cid = _uid()
        try:
            with Session(self.engine) as session:
                session.execute(categories.insert().values(
                    id=cid, code=code, name=name, description=description,
                ))
                session.commit()
        except IntegrityError:
            raise ValidationError(f"分类代码已存在: {code}") from None
        return cid

    def update_category(
        self,
        category_id: str,
        code: str | None = None,
        name: str | None = None,
        description: str | None = None,
    ) -> dict:
        values = {k: v for k, v in (("code", code), ("name", name), ("description", description)) if v is not None}
        if any(not str(values[k]).strip() for k in ("code", "name") if k in values):
            raise ValidationError("分类代码和名称不能为空")
        try:
            with Session(self.engine) as session:
                if values:
                    result = session.execute(
                        update(categories).where(categories.c.id == category_id).values(**values)
                    )
                    if result.rowcount == 0:
                        raise NotFoundError(f"分类不存在: {category_id}")
                session.commit()
        except IntegrityError:
            raise ValidationError(f"分类代码已存在: {code}") from None
        return self.get_category(category_id)

    def get_category(self, category_id: str) -> dict:
        with Session(self.engine) as session:
            r = session.execute(select(categories).where(categories.c.id == category_id)).first()
        if r is None:
            raise NotFoundError(f"分类不存在: {category_id}")
        return {"id": r.id, "code": r.code, "name": r.name, "description": r.description or ""}

    def delete_category(self, category_id: str) -> None:
        with Session(self.engine) as session:
            result = session.execute(delete(categories).where(categories.c.id == category_id))
            if result.rowcount == 0:
                raise NotFoundError(f"分类不存在: {category_id}")
            session.commit()

    def list_categories(self) -> list[dict]:
        with Session(self.engine) as session:
            rows = session.execute(select(categories).order_by(categories.c.code)).all()
        return [
            {"id": r.id, "code": r.code, "name": r.name, "description": r.description or ""}
            for r in rows
        ]
