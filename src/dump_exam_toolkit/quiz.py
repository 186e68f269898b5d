"""做题 Web 服务 - 服务端会话"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable

from flask import Blueprint, Flask, current_app, jsonify, request

from dump_exam_toolkit.access import Identity
from dump_exam_toolkit.config import AppConfig
from dump_exam_toolkit.errors import ForbiddenError, NotFoundError, ValidationError
from dump_exam_toolkit.session import QuestionStatus, QuizSession, SessionMode
from dump_exam_toolkit.store import DumpStore
from dump_exam_toolkit.web import (
    EXT_KEY, create_base_app, current_identity, get_store, json_body, require_identity,
)

logger = logging.getLogger(__name__)

bp = Blueprint("quiz", __name__)


@dataclass
class LiveSession:
    id: str
    dump_id: str
    dump_name: str
    user_id: str
    session: QuizSession
    record_history: bool = True
    attempt_id: str | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)
    touched: float = 0.0


class SessionRegistry:
    """
    会话 id → LiveSession；同一会话的请求通过各自的锁串行化。

    空闲超过 ttl 秒的会话在下次 add() 时清理；回顾结束的会话由调用方 remove()。
    """

    def __init__(self, ttl: float = 3600, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._sessions: dict[str, LiveSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, sid: str) -> bool:
        return sid in self._sessions

    def add(self, live: LiveSession) -> LiveSession:
        with self._lock:
            self._sweep()
            live.touched = self._clock()
            self._sessions[live.id] = live
        return live

    def get(self, sid: str) -> LiveSession:
        with self._lock:
            live = self._sessions.get(sid)
            if live is not None:
                live.touched = self._clock()
        if live is None:
            raise NotFoundError(f"会话不存在: {sid}")
        return live

    def remove(self, sid: str) -> None:
        with self._lock:
            self._sessions.pop(sid, None)

    def _sweep(self) -> None:
        if not self.ttl or self.ttl <= 0:
            return
        cutoff = self._clock() - self.ttl
        stale = [sid for sid, live in self._sessions.items() if live.touched < cutoff]
        for sid in stale:
            del self._sessions[sid]
        if stale:
            logger.info("清理空闲会话 %d 个", len(stale))


def _registry() -> SessionRegistry:
    return current_app.extensions[EXT_KEY]["sessions"]


def _question_view(s: QuizSession, index: int) -> dict:
    q = s.questions[index]
    rec = s.answers.get(index)
    view = {
        "index": index,
        "id": q.id,
        "type": q.type.value,
        "question": q.text,
        "options": dict(q.options),
        "status": s.question_status(index).value,
        "answer": None,
    }
    if rec is not None:
        view["answer"] = {"selected": list(rec.selected), "text": rec.text, "html": rec.html}
    # 回顾模式始终显示答案；练习模式作答后显示
    if s.mode is SessionMode.REVIEWING or (rec is not None and s.show_answer_immediately):
        view["correctAnswers"] = list(q.correct_answers)
        view["acceptedAnswers"] = list(q.accepted_answers)
        view["explanation"] = q.explanation
    return view


def _state(live: LiveSession) -> dict:
    s = live.session
    p = s.progress_summary()
    return {
        "id": live.id,
        "dumpId": live.dump_id,
        "dumpName": live.dump_name,
        "mode": s.mode.value,
        "finished": s.finished,
        "score": s.score if s.finished else None,
        "total": s.total,
        "currentIndex": s.current_index,
        "timeRemaining": s.time_remaining,
        "reviewClosed": s.review_closed,
        "progress": {"total": p.total, "answered": p.answered, "correct": p.correct},
        "statuses": [s.question_status(i).value for i in range(s.total)],
        "question": _question_view(s, s.current_index),
        "attemptId": live.attempt_id,
    }


def _settle(live: LiveSession) -> None:
    """同步倒计时；会话已结束且未入库时写入历史"""
    live.session.sync_clock()
    if live.session.finished and live.record_history and live.attempt_id is None:
        attempt = live.session.to_attempt(live.dump_id, live.dump_name, live.user_id)
        live.attempt_id = get_store().record_attempt(attempt)


def _owned(sid: str, identity: Identity | None) -> LiveSession:
    live = _registry().get(sid)
    if live.user_id and (identity is None or identity.user_id != live.user_id):
        raise ForbiddenError("不能操作他人的作答会话")
    return live


@bp.post("/api/sessions")
def api_start():
    identity = current_identity()
    data = json_body()
    dump_id = data.get("dumpId")
    if not dump_id:
        raise ValidationError("缺少 dumpId")
    dump = get_store().load_question_set(dump_id, identity)
    session = QuizSession(
        dump.questions,
        time_limit=dump.settings.time_limit,
        show_answer_immediately=dump.settings.show_answer_immediately,
    )
    live = _registry().add(LiveSession(
        id=uuid.uuid4().hex,
        dump_id=dump.id,
        dump_name=dump.name,
        user_id=identity.user_id if identity else "",
        session=session,
        record_history=identity is not None,
    ))
    logger.info("开始作答: %s (%d 题) session=%s", dump.name, session.total, live.id)
    return jsonify(_state(live)), 201


@bp.get("/api/sessions/<sid>")
def api_get(sid: str):
    live = _owned(sid, current_identity())
    with live.lock:
        _settle(live)
        return jsonify(_state(live))


@bp.delete("/api/sessions/<sid>")
def api_discard(sid: str):
    _owned(sid, current_identity())
    _registry().remove(sid)
    return jsonify({"ok": True})


@bp.post("/api/sessions/<sid>/answer")
def api_answer(sid: str):
    live = _owned(sid, current_identity())
    data = json_body()
    with live.lock:
        _settle(live)
        s = live.session
        index = data.get("index", s.current_index)
        if "option" in data:
            ok = s.select_option(index, data["option"])
        elif "text" in data:
            ok = s.set_short_answer(index, data["text"])
        elif "html" in data:
            ok = s.set_html_field(index, data["html"])
        else:
            raise ValidationError("需要 option / text / html 之一")
        return jsonify({"ok": ok, "state": _state(live)})


@bp.post("/api/sessions/<sid>/navigate")
def api_navigate(sid: str):
    live = _owned(sid, current_identity())
    data = json_body()
    action = data.get("action", "next")
    with live.lock:
        _settle(live)
        s = live.session
        if action == "next":
            s.go_next()
        elif action in ("prev", "previous"):
            s.go_previous()
        elif action == "jump":
            s.jump_to(data.get("index"))
        else:
            raise ValidationError(f"未知的导航动作: {action}")
        _settle(live)
        state = _state(live)
    if s.review_closed:
        _registry().remove(live.id)
    return jsonify(state)


@bp.post("/api/sessions/<sid>/finish")
def api_finish(sid: str):
    live = _owned(sid, current_identity())
    with live.lock:
        _settle(live)
        live.session.finish()
        _settle(live)
        return jsonify(_state(live))


@bp.post("/api/sessions/<sid>/review")
def api_review(sid: str):
    live = _owned(sid, current_identity())
    with live.lock:
        _settle(live)
        live.session.enter_review()
        return jsonify(_state(live))


@bp.get("/api/history")
def api_history():
    identity = require_identity()
    search = request.args.get("search", "").strip()
    items = get_store().list_history(identity.user_id, search=search)
    return jsonify([a.to_dict() for a in items])


@bp.get("/api/history/<hid>/review")
def api_history_review(hid: str):
    identity = require_identity()
    store = get_store()
    attempt = store.get_attempt(hid)
    if attempt.user_id != identity.user_id and not identity.is_admin:
        raise ForbiddenError("只能回顾自己的作答记录")
    dump = store.load_question_set(attempt.dump_id, identity)
    session = QuizSession.review_attempt(dump.questions, attempt.answers)
    live = _registry().add(LiveSession(
        id=uuid.uuid4().hex,
        dump_id=dump.id,
        dump_name=attempt.dump_name,
        user_id=identity.user_id,
        session=session,
        record_history=False,
        attempt_id=attempt.id,
    ))
    return jsonify(_state(live)), 201


@bp.delete("/api/history/<hid>")
def api_history_delete(hid: str):
    identity = require_identity()
    get_store().delete_attempt(hid, identity)
    return jsonify({"ok": True})


@bp.get("/api/info")
def api_info():
    return jsonify({
        "sessions": len(_registry()),
        "statuses": [s.value for s in QuestionStatus],
    })


def create_app(store: DumpStore, cfg: AppConfig | None = None) -> Flask:
    cfg = cfg or AppConfig()
    app = create_base_app(__name__, store, sessions=SessionRegistry(ttl=cfg.session_ttl), config=cfg)
    app.register_blueprint(bp)
    return app


def start_quiz(cfg: AppConfig, port: int | None = None, host: str | None = None) -> None:
    """启动做题 Web 服务"""
    store = DumpStore(cfg.db_url)
    app = create_app(store, cfg)
    host = host or cfg.host
    port = port or cfg.quiz_port
    logger.info("做题服务已启动: http://%s:%d", host, port)
    app.run(host=host, port=port, debug=False, use_reloader=False)
