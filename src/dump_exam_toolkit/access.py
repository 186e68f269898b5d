"""题库访问控制：所有者、管理员、公开标记、群组授权"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping

from dump_exam_toolkit.errors import ForbiddenError
from dump_exam_toolkit.models import Dump

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Identity:
    """调用方身份，由调用方显式传入"""
    user_id: str
    role: str = "user"
    username: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


class Permission(str, Enum):
    READ = "read"
    EDIT = "edit"


class AccessPolicy:
    """
    grants:        {group_id: Permission}，题库被共享到的（启用中的）群组
    member_groups: 当前用户所在的群组 id
    """

    @staticmethod
    def _privileged(dump: Dump, identity: Identity | None) -> bool:
        return identity is not None and (identity.is_admin or dump.owner_id == identity.user_id)

    @staticmethod
    def _granted(
        grants: Mapping[str, Permission] | None,
        member_groups: Iterable[str],
        need: Permission,
    ) -> bool:
        if not grants:
            return False
        for gid in member_groups:
            perm = grants.get(gid)
            if perm is None:
                continue
            if need is Permission.READ or Permission(perm) is Permission.EDIT:
                return True
        return False

    def can_read(
        self,
        dump: Dump,
        identity: Identity | None,
        grants: Mapping[str, Permission] | None = None,
        member_groups: Iterable[str] = (),
    ) -> bool:
        if dump.settings.is_public or self._privileged(dump, identity):
            return True
        if identity is None:
            return False
        return self._granted(grants, member_groups, Permission.READ)

    def can_edit(
        self,
        dump: Dump,
        identity: Identity | None,
        grants: Mapping[str, Permission] | None = None,
        member_groups: Iterable[str] = (),
    ) -> bool:
        if self._privileged(dump, identity):
            return True
        if identity is None:
            return False
        return self._granted(grants, member_groups, Permission.EDIT)

    def require_read(self, dump: Dump, identity: Identity | None, grants=None, member_groups=()) -> None:
        if not self.can_read(dump, identity, grants, member_groups):
            raise ForbiddenError(f"无权查看题库: {dump.name}")

    def require_edit(self, dump: Dump, identity: Identity | None, grants=None, member_groups=()) -> None:
        if not self.can_edit(dump, identity, grants, member_groups):
            raise ForbiddenError(f"无权修改题库: {dump.name}")
