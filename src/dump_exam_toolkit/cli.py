from __future__ import annotations
import sys
from pathlib import Path

import click

from dump_exam_toolkit.access import Identity
from dump_exam_toolkit.bank import load_archive, save_archive
from dump_exam_toolkit.config import AppConfig, configure_logging, load_config
from dump_exam_toolkit.errors import DumpKitError
from dump_exam_toolkit.exporters import available as available_exporters, get_exporter
from dump_exam_toolkit.loader import load_candidates
from dump_exam_toolkit.models import Dump, DumpSettings, QuestionType
from dump_exam_toolkit.reconcile import MergePolicy, reconcile
from dump_exam_toolkit.session import QuestionStatus, QuizSession, SessionTimer
from dump_exam_toolkit.stats import print_summary, summarize_history
from dump_exam_toolkit.store import DumpStore

W = 60

_STATUS_MARKS = {
    QuestionStatus.UNANSWERED: "·",
    QuestionStatus.ANSWERED:   "○",
    QuestionStatus.CORRECT:    "✓",
    QuestionStatus.WRONG:      "✗",
}


def _store(ctx) -> DumpStore:
    obj = ctx.obj
    if "store" not in obj:
        obj["store"] = DumpStore(obj["config"].db_url)
    return obj["store"]


def _fail(msg: str, code: int = 1):
    click.echo(f"[ERROR] {msg}")
    sys.exit(code)


def _fmt_time(seconds: int | None) -> str:
    if seconds is None:
        return "不限时"
    return f"{seconds // 60}:{seconds % 60:02d}"


def _trunc(s: str, n: int = 40) -> str:
    s = (s or "").replace("\n", " ").strip()
    return s[:n] + "…" if len(s) > n else s


class DumpGroup(click.Group):
    """业务错误统一转为 [ERROR] 输出"""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except DumpKitError as e:
            _fail(str(e))


@click.group(cls=DumpGroup)
@click.option("-c", "--config", "config_path", default="config.yaml", help="配置文件路径")
@click.option("--db-url", default=None, help="数据库连接字符串（覆盖配置文件）")
@click.pass_context
def cli(ctx, config_path, db_url):
    """题库练习平台：导入、合并、导出、做题"""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    if db_url:
        cfg.db_url = db_url
    configure_logging(cfg.log_level)
    ctx.obj["config"] = cfg


@cli.command("init-db")
@click.pass_context
def init_db(ctx):
    """创建数据库表"""
    _store(ctx)
    click.echo(f"✅ 数据库已就绪: {ctx.obj['config'].db_url}")


@cli.command("add-user")
@click.argument("username")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
@click.option("--role", default="user", type=click.Choice(["user", "admin"]))
@click.pass_context
def add_user(ctx, username, password, role):
    """新建用户"""
    identity = _store(ctx).create_user(username, password, role)
    click.echo(f"✅ 用户已创建: {identity.username} ({identity.role}) id={identity.user_id}")


@cli.command()
@click.pass_context
def users(ctx):
    """列出用户及作答统计"""
    rows = _store(ctx).list_users()
    if not rows:
        click.echo("没有用户。")
        return
    for u in rows:
        click.echo(
            f"  {u['id']}  {_trunc(u['username'], 20):<20}  {u['role']:<5}  "
            f"题库 {u['dumpCount']:>3}  作答 {u['quizCount']:>3}  平均 {u['avgScore']:>3}%"
        )


@cli.command("set-role")
@click.argument("username")
@click.argument("role", type=click.Choice(["user", "admin"]))
@click.pass_context
def set_role(ctx, username, role):
    """修改用户角色"""
    store = _store(ctx)
    identity = store.set_role(store.find_user(username).user_id, role)
    click.echo(f"✅ {identity.username} → {identity.role}")


@cli.command("delete-user")
@click.argument("username")
@click.confirmation_option(prompt="将同时删除该用户的题库和作答历史，确定？")
@click.pass_context
def delete_user(ctx, username):
    """删除用户"""
    store = _store(ctx)
    store.delete_user(store.find_user(username).user_id)
    click.echo(f"✅ 已删除用户: {username}")


@cli.command()
@click.argument("username")
@click.option("--old-password", prompt=True, hide_input=True)
@click.option("--new-password", prompt=True, hide_input=True, confirmation_prompt=True)
@click.pass_context
def passwd(ctx, username, old_password, new_password):
    """修改密码"""
    store = _store(ctx)
    store.change_password(store.find_user(username).user_id, old_password, new_password)
    click.echo("✅ 密码已更新")


@cli.command()
@click.argument("name")
@click.option("-i", "--input", "input_file", required=True, type=click.Path(exists=True), help="xlsx/csv/json 文件")
@click.option("--owner", required=True, help="所有者用户名")
@click.option("--public/--private", default=False, help="是否公开")
@click.option("--time-limit", default=None, type=int, help="限时（分钟），0=不限时")
@click.option("--immediate/--exam", "show_answer", default=True, help="练习模式（即时反馈）/ 考试模式")
@click.option("--category", default="Uncategorized", help="分类")
@click.pass_context
def create(ctx, name, input_file, owner, public, time_limit, show_answer, category):
    """从表格新建题库"""
    cfg: AppConfig = ctx.obj["config"]
    store = _store(ctx)
    user = store.find_user(owner)

    click.echo("📂 解析表格...")
    candidates, skipped = load_candidates(input_file)
    if not candidates:
        _fail(f"没有有效题目（跳过 {skipped} 行）")

    dump = Dump(
        name=name,
        owner_id=user.user_id,
        questions=candidates,
        settings=DumpSettings(
            is_public=public,
            time_limit=cfg.default_time_limit if time_limit is None else time_limit,
            show_answer_immediately=show_answer,
            category=category,
        ),
    )
    store.create_dump(dump)
    click.echo(f"✅ 题库已创建: {dump.name}  id={dump.id}  ({len(candidates)} 题, 跳过 {skipped} 行)")


@cli.command("import")
@click.argument("dump_id")
@click.option("-i", "--input", "input_file", required=True, type=click.Path(exists=True), help="xlsx/csv/json 文件")
@click.option("--policy", default="detect", type=click.Choice([p.value for p in MergePolicy]),
              help="重复题处理: detect=仅报告, skip=跳过, replace=覆盖, merge=并存")
@click.pass_context
def import_(ctx, dump_id, input_file, policy):
    """把表格题目导入已有题库"""
    cfg: AppConfig = ctx.obj["config"]
    store = _store(ctx)
    dump = store.get_dump(dump_id)

    click.echo("📂 解析表格...")
    candidates, skipped = load_candidates(input_file)
    click.echo("🔍 比对现有题目...")
    result = reconcile(candidates, dump.questions, policy=policy, skipped=skipped, suffix=cfg.merge_suffix)
    report = result.report

    click.echo(f"\n{'─' * W}")
    click.echo(f"  新题: {report.new_count}    重复: {len(report.duplicates)}    跳过无效行: {report.skipped}")
    for dup in report.duplicates:
        flag = "  (有改动)" if dup.has_changes else ""
        click.echo(f"    #{dup.index + 1:<4} {_trunc(dup.candidate.text, 50)}{flag}")
    click.echo(f"{'─' * W}")

    if not result.applied:
        click.echo(f"⚠️  {report.message}")
        click.echo("   请用 --policy skip / replace / merge 重新执行")
        sys.exit(2)

    before = len(dump.questions)
    dump.questions = result.questions
    store.update_dump(dump)
    click.echo(f"✅ 导入完成 ({result.policy.value}): {before} → {len(dump.questions)} 题")


@cli.command()
@click.argument("dump_id")
@click.option("-o", "--output", default=None, help="输出路径（不含扩展名）")
@click.option("-f", "--format", "formats", multiple=True, help="导出格式: xlsx/csv/json")
@click.pass_context
def export(ctx, dump_id, output, formats):
    """导出题库题目"""
    cfg: AppConfig = ctx.obj["config"]
    dump = _store(ctx).get_dump(dump_id)
    formats = formats or ("xlsx",)
    base = Path(output) if output else Path(cfg.output_dir) / f"{dump.name}_questions"

    for fmt in formats:
        click.echo(f"📤 导出 {fmt.upper()}...")
        try:
            exporter = get_exporter(fmt)
        except KeyError as e:
            click.echo(f"[ERROR] {e.args[0]}  可用: {', '.join(available_exporters())}")
            continue
        fp = exporter.export(dump.questions, base, name=dump.name)
        click.echo(f"   {fp}")

    click.echo(f"✅ 完成! 共 {len(dump.questions)} 题")


@cli.command("list")
@click.option("--owner", default=None, help="只列出该用户的题库")
@click.option("--public", "only_public", is_flag=True, help="只列出公开题库")
@click.option("--search", default="", help="名称关键词")
@click.pass_context
def list_(ctx, owner, only_public, search):
    """列出题库"""
    store = _store(ctx)
    owner_id = store.find_user(owner).user_id if owner else None
    items = store.list_dumps(owner_id=owner_id, public=True if only_public else None, search=search)
    if not items:
        click.echo("没有题库。")
        return
    for d in items:
        vis = "公开" if d.settings.is_public else "私有"
        click.echo(f"  {d.id}  {_trunc(d.name, 30):<30}  {len(d.questions):>4} 题  {vis}  {d.settings.category}")


@cli.command()
@click.argument("dump_id")
@click.pass_context
def info(ctx, dump_id):
    """查看题库统计"""
    dump = _store(ctx).get_dump(dump_id)
    s = dump.settings
    click.echo(f"题库: {dump.name}  分类: {s.category}  {'公开' if s.is_public else '私有'}")
    click.echo(f"限时: {s.time_limit or '不限'} 分钟  模式: {'练习' if s.show_answer_immediately else '考试'}")
    print_summary(dump.questions, name=dump.name)


def _render_question(session: QuizSession) -> None:
    i = session.current_index
    q = session.current_question()
    rec = session.answers.get(i)
    click.echo(f"\n{'─' * W}")
    timer = f"  ⏱ {_fmt_time(session.time_remaining)}" if session.time_remaining is not None else ""
    click.echo(f"  [{i + 1}/{session.total}] {session.question_status(i).value}{timer}")
    click.echo(f"  {q.text}")
    selected = rec.selected if rec else []
    for key, text in q.options.items():
        mark = "●" if key in selected else "○"
        click.echo(f"    {mark} {key}. {text}")
    if q.type is QuestionType.SHORT_ANSWER and rec:
        click.echo(f"    已填: {rec.text}")
    if rec and session.show_answer_immediately and q.type is not QuestionType.HTML_FIELD:
        shown = q.correct_answer or " | ".join(q.accepted_answers)
        click.echo(f"    {'✅ 正确' if rec.is_correct else '❌ 错误'}  答案: {shown}")


def _apply_input(session: QuizSession, raw: str) -> bool:
    """处理一条输入；返回 False 表示放弃作答"""
    cmd = raw.strip()
    lower = cmd.lower()
    if lower in ("q", "quit", "exit"):
        return False
    if lower in ("n", "next", ""):
        session.go_next()
    elif lower in ("p", "prev"):
        session.go_previous()
    elif lower in ("f", "finish", "submit"):
        session.finish()
    elif lower.startswith("g ") and lower[2:].strip().isdigit():
        session.jump_to(int(lower[2:].strip()) - 1)
    else:
        i = session.current_index
        q = session.current_question()
        if q.type.is_choice:
            for key in cmd.replace(",", " ").split():
                for ch in key.upper():
                    session.select_option(i, ch)
        elif q.type is QuestionType.SHORT_ANSWER:
            session.set_short_answer(i, cmd)
        else:
            session.set_html_field(i, cmd)
    return True


def _print_review(session: QuizSession) -> None:
    session.enter_review()
    click.echo(f"\n{'═' * W}")
    click.echo("  📋 回顾")
    for i, q in enumerate(session.questions):
        rec = session.answers.get(i)
        status = session.question_status(i)
        yours = ""
        if rec:
            yours = ",".join(rec.selected) or rec.text or ("(已作答)" if rec.html else "")
        answer = q.correct_answer or " | ".join(q.accepted_answers) or "-"
        click.echo(f"  {_STATUS_MARKS[status]} {i + 1:>3}. {_trunc(q.text, 36):<36}  你的: {yours or '-':<6} 答案: {answer}")
    click.echo(f"{'═' * W}")


@cli.command()
@click.argument("dump_id")
@click.option("--user", "username", default=None, help="以该用户身份作答并记录历史（不指定时只能做公开题库）")
@click.option("--time-limit", default=None, type=int, help="覆盖题库限时（分钟）")
@click.option("--review/--no-review", default=True, help="交卷后显示回顾")
@click.pass_context
def take(ctx, dump_id, username, time_limit, review):
    """在终端做题

    \b
    输入选项字母作答（多选可输入 AC），n 下一题，p 上一题，
    g N 跳到第 N 题，f 交卷，q 放弃。
    """
    store = _store(ctx)
    identity: Identity | None = store.find_user(username) if username else None
    dump = store.load_question_set(dump_id, identity)

    session = QuizSession(
        dump.questions,
        time_limit=dump.settings.time_limit if time_limit is None else time_limit,
        show_answer_immediately=dump.settings.show_answer_immediately,
    )
    timer = SessionTimer(session, on_expire=lambda s: click.echo("\n⏰ 时间到，自动交卷")).start()
    click.echo(f"📝 {dump.name}: {session.total} 题, 限时 {_fmt_time(session.time_remaining)}")

    try:
        while not session.finished:
            _render_question(session)
            raw = click.prompt(">", default="", show_default=False)
            if session.finished:
                break
            if not _apply_input(session, raw):
                click.echo("已放弃作答，不记录成绩。")
                return
    finally:
        timer.cancel()

    score = session.final_score()
    click.echo(f"\n🏁 得分: {score}/{session.total}")
    if identity is not None:
        attempt = session.to_attempt(dump.id, dump.name, identity.user_id)
        store.record_attempt(attempt)
        click.echo("   已记录到作答历史")
    if review:
        _print_review(session)


@cli.command()
@click.option("--user", "username", required=True, help="用户名")
@click.option("--search", default="", help="题库名称关键词")
@click.pass_context
def history(ctx, username, search):
    """查看作答历史"""
    store = _store(ctx)
    user = store.find_user(username)
    attempts = store.list_history(user.user_id, search=search)
    if not attempts:
        click.echo("暂无作答记录。")
        return
    for a in attempts:
        when = a.created_at.strftime("%Y-%m-%d %H:%M") if a.created_at else ""
        click.echo(f"  {when}  {_trunc(a.dump_name, 30):<30}  {a.score:>3}/{a.total:<3}  id={a.id}")
    s = summarize_history(attempts)
    click.echo(f"\n  共 {s['attempts']} 次  最高 {s['best']:.1f}%  平均 {s['average']:.1f}%")
    for name, count in s["by_dump"].items():
        click.echo(f"    {_trunc(name, 30):<30}  {count:>3} 次")


@cli.command()
@click.argument("dump_ids", nargs=-1)
@click.option("-o", "--output", required=True, help="输出路径 (.qdump)")
@click.option("--owner", default=None, help="打包该用户的全部题库")
@click.option("--password", default=None, help="加密密码 (留空则不加密)")
@click.pass_context
def pack(ctx, dump_ids, output, owner, password):
    """打包题库为归档文件"""
    store = _store(ctx)
    items = [store.get_dump(d) for d in dump_ids]
    if owner:
        items += store.list_dumps(owner_id=store.find_user(owner).user_id)
    if not items:
        _fail("没有要打包的题库")
    fp = save_archive(items, Path(output), password)
    click.echo(f"✅ 已打包 {len(items)} 个题库: {fp}")


@cli.command()
@click.argument("archive", type=click.Path(exists=True))
@click.option("--owner", required=True, help="导入后的所有者用户名")
@click.option("--password", default=None, help="归档密码")
@click.pass_context
def unpack(ctx, archive, owner, password):
    """从归档恢复题库（生成新的题库 id）"""
    store = _store(ctx)
    user = store.find_user(owner)
    restored = 0
    for d in load_archive(Path(archive), password):
        store.create_dump(Dump(
            name=d.name,
            owner_id=user.user_id,
            questions=d.questions,
            settings=d.settings,
        ))
        restored += 1
    click.echo(f"✅ 已恢复 {restored} 个题库")


# ── 分类 ──

@cli.group()
def category():
    """管理题库分类"""


@category.command("list")
@click.pass_context
def category_list(ctx):
    rows = _store(ctx).list_categories()
    if not rows:
        click.echo("没有分类。")
        return
    for c in rows:
        click.echo(f"  {c['id']}  {c['code']:<12}  {c['name']}  {c['description']}")


@category.command("add")
@click.argument("code")
@click.argument("name")
@click.option("--description", default="")
@click.pass_context
def category_add(ctx, code, name, description):
    cid = _store(ctx).create_category(code, name, description)
    click.echo(f"✅ 分类已创建: {code}  id={cid}")


@category.command("update")
@click.argument("category_id")
@click.option("--code", default=None)
@click.option("--name", default=None)
@click.option("--description", default=None)
@click.pass_context
def category_update(ctx, category_id, code, name, description):
    c = _store(ctx).update_category(category_id, code=code, name=name, description=description)
    click.echo(f"✅ 分类已更新: {c['code']}  {c['name']}")


@category.command("delete")
@click.argument("category_id")
@click.pass_context
def category_delete(ctx, category_id):
    _store(ctx).delete_category(category_id)
    click.echo(f"✅ 已删除分类: {category_id}")


# ── 群组 ──

@cli.group()
def group():
    """管理群组与题库共享"""


@group.command("list")
@click.pass_context
def group_list(ctx):
    rows = _store(ctx).list_groups()
    if not rows:
        click.echo("没有群组。")
        return
    for g in rows:
        state = "启用" if g["isActive"] else "停用"
        click.echo(f"  {g['id']}  {_trunc(g['name'], 24):<24}  所有者 {g['ownerName']:<12}  {state}")


@group.command("create")
@click.argument("name")
@click.option("--owner", required=True, help="所有者用户名")
@click.pass_context
def group_create(ctx, name, owner):
    store = _store(ctx)
    gid = store.create_group(name, store.find_user(owner).user_id)
    click.echo(f"✅ 群组已创建: {name}  id={gid}")


@group.command("add-member")
@click.argument("group_id")
@click.argument("username")
@click.pass_context
def group_add_member(ctx, group_id, username):
    store = _store(ctx)
    store.get_group(group_id)
    store.add_member(group_id, store.find_user(username).user_id)
    click.echo(f"✅ {username} 已加入群组")


@group.command("remove-member")
@click.argument("group_id")
@click.argument("username")
@click.pass_context
def group_remove_member(ctx, group_id, username):
    store = _store(ctx)
    store.remove_member(group_id, store.find_user(username).user_id)
    click.echo(f"✅ {username} 已移出群组")


@group.command("set-active")
@click.argument("group_id")
@click.option("--on/--off", "active", default=True, help="启用（默认）/ 停用")
@click.pass_context
def group_set_active(ctx, group_id, active):
    _store(ctx).set_group_active(group_id, active)
    click.echo(f"✅ 群组已{'启用' if active else '停用'}")


@group.command("delete")
@click.argument("group_id")
@click.pass_context
def group_delete(ctx, group_id):
    _store(ctx).delete_group(group_id)
    click.echo(f"✅ 已删除群组: {group_id}")


@group.command("share")
@click.argument("dump_id")
@click.argument("group_id")
@click.option("--permission", default="read", type=click.Choice(["read", "edit"]))
@click.pass_context
def group_share(ctx, dump_id, group_id, permission):
    """把题库共享给群组"""
    store = _store(ctx)
    store.get_dump(dump_id)
    store.get_group(group_id)
    store.share_dump(dump_id, group_id, permission)
    click.echo(f"✅ 已共享 ({permission})")


@group.command("unshare")
@click.argument("dump_id")
@click.argument("group_id")
@click.pass_context
def group_unshare(ctx, dump_id, group_id):
    """取消题库对群组的共享"""
    _store(ctx).unshare_dump(dump_id, group_id)
    click.echo("✅ 已取消共享")


@cli.command("serve-quiz")
@click.option("--host", default=None)
@click.option("--port", default=None, type=int)
@click.pass_context
def serve_quiz(ctx, host, port):
    """启动做题 Web 服务"""
    from dump_exam_toolkit.quiz import start_quiz
    start_quiz(ctx.obj["config"], port=port, host=host)


@cli.command("serve-editor")
@click.option("--host", default=None)
@click.option("--port", default=None, type=int)
@click.pass_context
def serve_editor(ctx, host, port):
    """启动题库管理 Web 服务"""
    from dump_exam_toolkit.editor import start_editor
    start_editor(ctx.obj["config"], port=port, host=host)


def main():
    cli()


if __name__ == "__main__":
    main()
