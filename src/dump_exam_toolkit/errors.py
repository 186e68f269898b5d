"""错误分类"""
from __future__ import annotations


class DumpKitError(Exception):
    """所有业务错误的基类"""


class ValidationError(DumpKitError):
    """输入不合法：空题集、题目缺字段、导入无有效行等"""


class StateError(DumpKitError):
    """操作与当前状态不符。会话内的 UI 操作不抛出，直接作为 no-op 处理"""


class NotFoundError(DumpKitError):
    """引用的题库/题目/记录不存在"""


class ForbiddenError(DumpKitError):
    """无权访问"""
