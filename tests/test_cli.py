from pathlib import Path

import pytest
from click.testing import CliRunner
from openpyxl import Workbook

from dump_exam_toolkit.cli import cli
from dump_exam_toolkit.store import DumpStore

HEADER = ["question", "optionA", "optionB", "optionC", "optionD", "correctAnswer"]


def _xlsx(path: Path, rows) -> Path:
    wb = Workbook()
    ws = wb.active
    ws.append(HEADER)
    for r in rows:
        ws.append(r)
    wb.save(path)
    return path


@pytest.fixture
def env(tmp_path):
    db_url = f"sqlite:///{tmp_path / 'dumps.db'}"
    runner = CliRunner()

    def run(*args, **kwargs):
        base = ["-c", str(tmp_path / "missing.yaml"), "--db-url", db_url]
        return runner.invoke(cli, [*base, *args], **kwargs)

    src = _xlsx(tmp_path / "geo.xlsx", [
        ["Capital of France?", "Paris", "Rome", "Oslo", "Bern", "A"],
        ["Capital of Italy?", "Paris", "Rome", "", "", "B"],
    ])
    assert run("init-db").exit_code == 0
    assert run("add-user", "alice", "--password", "pw").exit_code == 0
    r = run("create", "Geography", "-i", str(src), "--owner", "alice")
    assert r.exit_code == 0, r.output
    dump = DumpStore(db_url).list_dumps()[0]
    return {"run": run, "tmp": tmp_path, "db_url": db_url, "dump_id": dump.id}


def _questions(env):
    return DumpStore(env["db_url"]).get_dump(env["dump_id"]).questions


def test_create_and_list(env):
    assert len(_questions(env)) == 2
    r = env["run"]("list", "--owner", "alice")
    assert "Geography" in r.output
    r = env["run"]("info", env["dump_id"])
    assert r.exit_code == 0
    assert "Geography" in r.output


def test_duplicate_user_reports_error(env):
    r = env["run"]("add-user", "alice", "--password", "pw")
    assert r.exit_code == 1
    assert "[ERROR]" in r.output


def test_import_detect_exits_2_then_merge(env):
    src = _xlsx(env["tmp"] / "more.xlsx", [
        ["Capital of France?", "Paris", "Rome", "Oslo", "Berlin", "A"],
        ["Capital of Spain?", "Madrid", "Rome", "", "", "A"],
    ])
    r = env["run"]("import", env["dump_id"], "-i", str(src))
    assert r.exit_code == 2
    assert "Found 1 duplicate(s) and 1 new question(s)" in r.output
    assert len(_questions(env)) == 2

    r = env["run"]("import", env["dump_id"], "-i", str(src), "--policy", "merge")
    assert r.exit_code == 0, r.output
    texts = [q.text for q in _questions(env)]
    assert texts == ["Capital of France?", "Capital of Italy?", "Capital of France? (imported)", "Capital of Spain?"]


def test_import_new_only_applies_without_policy(env):
    src = _xlsx(env["tmp"] / "new.xlsx", [["Capital of Spain?", "Madrid", "Rome", "", "", "A"]])
    r = env["run"]("import", env["dump_id"], "-i", str(src))
    assert r.exit_code == 0, r.output
    assert len(_questions(env)) == 3


def test_export_formats(env):
    out = env["tmp"] / "export" / "geo"
    r = env["run"]("export", env["dump_id"], "-o", str(out), "-f", "xlsx", "-f", "json", "-f", "docx")
    assert r.exit_code == 0, r.output
    assert out.with_suffix(".xlsx").exists()
    assert out.with_suffix(".json").exists()
    assert "[ERROR]" in r.output


def test_take_records_history(env):
    r = env["run"]("take", env["dump_id"], "--user", "alice", input="A\nn\nA\nf\n")
    assert r.exit_code == 0, r.output
    assert "得分: 1/2" in r.output

    r = env["run"]("history", "--user", "alice")
    assert "Geography" in r.output
    assert "1/2" in r.output.replace(" ", "")


def test_take_quit_discards(env):
    r = env["run"]("take", env["dump_id"], "--user", "alice", input="A\nq\n")
    assert r.exit_code == 0
    r = env["run"]("history", "--user", "alice")
    assert "暂无作答记录" in r.output


def test_pack_and_unpack(env):
    archive = env["tmp"] / "backup"
    r = env["run"]("pack", env["dump_id"], "-o", str(archive), "--password", "s3cret")
    assert r.exit_code == 0, r.output
    fp = archive.with_suffix(".qdump")
    assert fp.exists()

    r = env["run"]("unpack", str(fp), "--owner", "alice", "--password", "wrong")
    assert r.exit_code == 1
    r = env["run"]("unpack", str(fp), "--owner", "alice", "--password", "s3cret")
    assert r.exit_code == 0, r.output
    dumps = DumpStore(env["db_url"]).list_dumps()
    assert len(dumps) == 2
    assert len({d.id for d in dumps}) == 2


def test_missing_dump(env):
    r = env["run"]("info", "nope")
    assert r.exit_code == 1
    assert "[ERROR]" in r.output


def test_anonymous_take_needs_public_dump(env):
    r = env["run"]("take", env["dump_id"], input="q\n")
    assert r.exit_code == 1
    assert "[ERROR]" in r.output

    store = DumpStore(env["db_url"])
    dump = store.get_dump(env["dump_id"])
    dump.settings.is_public = True
    store.update_dump(dump)
    r = env["run"]("take", env["dump_id"], input="A\nf\n")
    assert r.exit_code == 0, r.output
    assert "得分: 1/2" in r.output
    assert "已记录" not in r.output


def test_history_counts_per_dump(env):
    for _ in range(2):
        r = env["run"]("take", env["dump_id"], "--user", "alice", "--no-review", input="f\n")
        assert r.exit_code == 0, r.output
    r = env["run"]("history", "--user", "alice")
    per_dump = [line for line in r.output.splitlines() if line.startswith("    Geography")]
    assert len(per_dump) == 1
    assert per_dump[0].endswith("2 次")


def test_user_admin_commands(env):
    run = env["run"]
    assert run("add-user", "bob", "--password", "pw").exit_code == 0
    r = run("users")
    assert "alice" in r.output and "bob" in r.output

    r = run("set-role", "bob", "admin")
    assert r.exit_code == 0, r.output
    assert DumpStore(env["db_url"]).find_user("bob").is_admin

    r = run("passwd", "alice", "--old-password", "nope", "--new-password", "new")
    assert r.exit_code == 1
    r = run("passwd", "alice", "--old-password", "pw", "--new-password", "new")
    assert r.exit_code == 0, r.output
    DumpStore(env["db_url"]).authenticate("alice", "new")

    r = run("delete-user", "alice", "--yes")
    assert r.exit_code == 0, r.output
    assert DumpStore(env["db_url"]).list_dumps() == []
    assert run("delete-user", "alice", "--yes").exit_code == 1


def test_category_commands(env):
    run = env["run"]
    assert run("category", "add", "GEO", "Geography").exit_code == 0
    assert run("category", "add", "GEO", "Again").exit_code == 1
    cid = DumpStore(env["db_url"]).list_categories()[0]["id"]
    r = run("category", "update", cid, "--name", "World geography")
    assert r.exit_code == 0, r.output
    assert "World geography" in run("category", "list").output
    assert run("category", "delete", cid).exit_code == 0
    assert "没有分类" in run("category", "list").output


def test_group_commands(env):
    run = env["run"]
    run("add-user", "bob", "--password", "pw")
    r = run("group", "create", "Class A", "--owner", "alice")
    assert r.exit_code == 0, r.output
    store = DumpStore(env["db_url"])
    gid = store.list_groups()[0]["id"]
    bob = store.find_user("bob")

    assert run("group", "add-member", gid, "bob").exit_code == 0
    assert run("group", "share", env["dump_id"], gid, "--permission", "edit").exit_code == 0
    assert store.load_for_edit(env["dump_id"], bob).id == env["dump_id"]

    assert run("group", "set-active", gid, "--off").exit_code == 0
    assert "停用" in run("group", "list").output
    assert store.group_ids_for(bob.user_id) == set()
    assert run("group", "set-active", gid, "--on").exit_code == 0

    assert run("group", "unshare", env["dump_id"], gid).exit_code == 0
    assert store.dump_grants(env["dump_id"]) == {}
    assert run("group", "remove-member", gid, "bob").exit_code == 0
    assert run("group", "remove-member", gid, "bob").exit_code == 1
    assert run("group", "delete", gid).exit_code == 0
    assert "没有群组" in run("group", "list").output
