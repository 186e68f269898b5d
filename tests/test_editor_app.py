import io

import pytest
from openpyxl import Workbook, load_workbook

from dump_exam_toolkit.config import AppConfig
from dump_exam_toolkit.editor import create_app
from dump_exam_toolkit.store import DumpStore
from dump_exam_toolkit.web import USER_HEADER

QUESTIONS = [
    {"question": "Capital of France?", "options": {"A": "Paris", "B": "Rome", "C": "Oslo", "D": "Bern"},
     "correctAnswer": "A"},
    {"question": "Capital of Italy?", "options": {"A": "Paris", "B": "Rome"}, "correctAnswers": ["B"]},
]


@pytest.fixture
def env():
    store = DumpStore("sqlite:///:memory:")
    alice = store.create_user("alice", "pw")
    bob = store.create_user("bob", "pw")
    app = create_app(store, AppConfig(default_time_limit=15))
    return {
        "client": app.test_client(),
        "store": store,
        "alice_id": alice.user_id,
        "bob_id": bob.user_id,
        "alice": {USER_HEADER: alice.user_id},
        "bob": {USER_HEADER: bob.user_id},
    }


def _create(env, **extra):
    body = {"name": "Geography", "questions": QUESTIONS, **extra}
    r = env["client"].post("/api/dumps", json=body, headers=env["alice"])
    assert r.status_code == 201
    return r.get_json()


def _xlsx(rows):
    wb = Workbook()
    ws = wb.active
    ws.append(["question", "optionA", "optionB", "optionC", "optionD", "correctAnswer"])
    for r in rows:
        ws.append(r)
    buf = io.BytesIO()
    wb.save(buf)
    buf.seek(0)
    return buf


def _upload(env, dump_id, rows, action=None, who="alice"):
    data = {"file": (_xlsx(rows), "questions.xlsx")}
    if action:
        data["action"] = action
    return env["client"].post(
        f"/api/dumps/{dump_id}/import",
        data=data,
        headers=env[who],
        content_type="multipart/form-data",
    )


def test_create_and_get(env):
    d = _create(env)
    assert d["timeLimit"] == 15
    assert d["questionCount"] == 2
    assert d["questions"][1]["correctAnswers"] == ["B"]

    r = env["client"].get(f"/api/dumps/{d['id']}", headers=env["alice"])
    assert r.get_json()["name"] == "Geography"
    assert env["client"].get(f"/api/dumps/{d['id']}", headers=env["bob"]).status_code == 403


def test_create_rejects_invalid_question(env):
    body = {"name": "Bad", "questions": [{"question": "Q", "options": {"A": "x"}, "correctAnswer": "C"}]}
    r = env["client"].post("/api/dumps", json=body, headers=env["alice"])
    assert r.status_code == 400
    assert env["client"].post("/api/dumps", json={"name": "x"}).status_code == 403


def test_list_kinds(env):
    _create(env, isPublic=True, category="GEO")
    _create(env, name="History")
    c = env["client"]
    assert len(c.get("/api/dumps", headers=env["alice"]).get_json()) == 2
    public = c.get("/api/dumps?type=public").get_json()
    assert [d["name"] for d in public] == ["Geography"]
    assert "questions" not in public[0]
    assert c.get("/api/dumps?type=group", headers=env["bob"]).get_json() == []


def test_update_and_delete(env):
    d = _create(env)
    c = env["client"]
    r = c.put(f"/api/dumps/{d['id']}", json={"name": "Geo", "isPublic": True}, headers=env["alice"])
    body = r.get_json()
    assert body["name"] == "Geo" and body["isPublic"]
    assert body["timeLimit"] == 15
    assert c.put(f"/api/dumps/{d['id']}", json={"name": ""}, headers=env["alice"]).status_code == 400
    assert c.put(f"/api/dumps/{d['id']}", json={"name": "x"}, headers=env["bob"]).status_code == 403
    assert c.delete(f"/api/dumps/{d['id']}", headers=env["bob"]).status_code == 403
    assert c.delete(f"/api/dumps/{d['id']}", headers=env["alice"]).status_code == 200
    assert c.get(f"/api/dumps/{d['id']}", headers=env["alice"]).status_code == 404


def test_shared_link_only_for_public(env):
    d = _create(env)
    c = env["client"]
    assert c.get(f"/api/dumps/shared/{d['id']}").status_code == 403
    c.put(f"/api/dumps/{d['id']}", json={"isPublic": True}, headers=env["alice"])
    assert c.get(f"/api/dumps/shared/{d['id']}").get_json()["questionCount"] == 2


def test_import_detect_then_merge(env):
    d = _create(env)
    rows = [
        ["capital of france? ", "Paris", "Rome", "Oslo", "Berlin", "A"],
        ["Capital of Spain?", "Madrid", "Rome", "", "", "A"],
        ["", "x", "y", "", "", "A"],
    ]
    r = _upload(env, d["id"], rows).get_json()
    assert r["status"] == "duplicates_found"
    assert r["newQuestions"] == 1
    assert r["skipped"] == 1
    assert r["duplicates"][0]["hasChanges"]
    assert r["message"] == "Found 1 duplicate(s) and 1 new question(s)"
    assert env["store"].get_dump(d["id"]).questions[0].option_text("D") == "Bern"

    r = _upload(env, d["id"], rows, action="merge").get_json()
    assert r["status"] == "success"
    assert r["totalQuestions"] == 4
    texts = [q.text for q in env["store"].get_dump(d["id"]).questions]
    assert texts[2] == "capital of france? (imported)"
    assert texts[3] == "Capital of Spain?"


def test_import_replace(env):
    d = _create(env)
    rows = [["Capital of France?", "Paris", "Rome", "Oslo", "Berlin", "A"]]
    r = _upload(env, d["id"], rows, action="replace").get_json()
    assert r["status"] == "success"
    questions = env["store"].get_dump(d["id"]).questions
    assert len(questions) == 2
    assert questions[0].option_text("D") == "Berlin"
    assert questions[0].id == d["questions"][0]["id"]


def test_import_errors(env):
    d = _create(env)
    c = env["client"]
    r = c.post(f"/api/dumps/{d['id']}/import", data={}, headers=env["alice"],
               content_type="multipart/form-data")
    assert r.status_code == 400
    assert _upload(env, d["id"], [["", "x", "y", "", "", "A"]]).status_code == 400
    assert _upload(env, d["id"], [["Q", "x", "y", "", "", "A"]], action="wipe").status_code == 400
    assert _upload(env, d["id"], [["Q", "x", "y", "", "", "A"]], who="bob").status_code == 403


def test_export_xlsx_and_json(env):
    d = _create(env)
    c = env["client"]
    r = c.get(f"/api/dumps/{d['id']}/export", headers=env["alice"])
    assert r.status_code == 200
    ws = load_workbook(io.BytesIO(r.data))["Questions"]
    assert ws.cell(row=2, column=1).value == "Capital of France?"

    data = c.get(f"/api/dumps/{d['id']}/export?format=json", headers=env["alice"]).get_json()
    assert len(data["questions"]) == 2
    assert c.get(f"/api/dumps/{d['id']}/export?format=pdf", headers=env["alice"]).status_code == 400


def test_group_share_flow(env):
    d = _create(env)
    c = env["client"]
    group = c.post("/api/groups", json={"name": "Class A"}, headers=env["alice"]).get_json()
    gid = group["id"]
    c.post(f"/api/groups/{gid}/members", json={"userId": env["bob_id"]}, headers=env["alice"])
    assert c.post(f"/api/groups/{gid}/members", json={"userId": env["bob_id"]},
                  headers=env["bob"]).status_code == 403

    r = c.put(f"/api/dumps/{d['id']}/share/groups",
              json={"groups": [{"groupId": gid, "permission": "read"}]}, headers=env["alice"])
    assert r.get_json()["groups"] == 1
    assert c.get(f"/api/dumps/{d['id']}", headers=env["bob"]).status_code == 200
    assert c.put(f"/api/dumps/{d['id']}", json={"name": "x"}, headers=env["bob"]).status_code == 403
    assert [x["name"] for x in c.get("/api/dumps?type=group", headers=env["bob"]).get_json()] == ["Geography"]

    grants = c.get(f"/api/dumps/{d['id']}/groups", headers=env["alice"]).get_json()
    assert grants == [{"groupId": gid, "permission": "read"}]

    bad = c.put(f"/api/dumps/{d['id']}/share/groups",
                json={"groups": [{"groupId": gid, "permission": "own"}]}, headers=env["alice"])
    assert bad.status_code == 400


def test_categories(env):
    env["store"].create_category("GEO", "Geography")
    assert env["client"].get("/api/categories").get_json()[0]["code"] == "GEO"


def test_bad_fields_return_400(env):
    c = env["client"]
    body = {"name": "Bad", "questions": [{"question": "Q", "type": "bogus"}]}
    assert c.post("/api/dumps", json=body, headers=env["alice"]).status_code == 400
    body = {"name": "Bad", "questions": QUESTIONS, "timeLimit": "ten"}
    r = c.post("/api/dumps", json=body, headers=env["alice"])
    assert r.status_code == 400
    assert "timeLimit" in r.get_json()["error"]
    assert env["store"].list_dumps() == []


@pytest.fixture
def admin(env):
    root = env["store"].create_user("root", "pw", role="admin")
    return {USER_HEADER: root.user_id, "id": root.user_id}


def _as(headers):
    return {USER_HEADER: headers[USER_HEADER]}


def test_admin_routes_require_admin(env, admin):
    c = env["client"]
    assert c.get("/api/admin/users").status_code == 403
    assert c.get("/api/admin/users", headers=env["alice"]).status_code == 403
    users = c.get("/api/admin/users", headers=_as(admin)).get_json()
    assert [u["username"] for u in users] == ["alice", "bob", "root"]


def test_admin_user_management(env, admin):
    c = env["client"]
    _create(env)
    r = c.put(f"/api/admin/users/{env['bob_id']}/role", json={"role": "admin"}, headers=_as(admin))
    assert r.get_json()["role"] == "admin"
    r = c.put(f"/api/admin/users/{env['bob_id']}/role", json={"role": "root"}, headers=_as(admin))
    assert r.status_code == 400
    assert c.delete(f"/api/admin/users/{admin['id']}", headers=_as(admin)).status_code == 400

    assert c.delete(f"/api/admin/users/{env['alice_id']}", headers=_as(admin)).status_code == 200
    assert env["store"].list_dumps() == []
    assert c.get("/api/dumps", headers=env["alice"]).status_code == 403
    assert c.delete("/api/admin/users/ghost", headers=_as(admin)).status_code == 404


def test_admin_categories(env, admin):
    c = env["client"]
    r = c.post("/api/admin/categories", json={"code": "GEO", "name": "Geography"}, headers=_as(admin))
    assert r.status_code == 201
    cid = r.get_json()["id"]
    assert c.post("/api/admin/categories", json={"code": "GEO", "name": "Dup"}, headers=_as(admin)).status_code == 400
    assert c.post("/api/admin/categories", json={"code": "X"}, headers=_as(admin)).status_code == 400

    r = c.put(f"/api/admin/categories/{cid}", json={"name": "World geography"}, headers=_as(admin))
    assert r.get_json() == {"id": cid, "code": "GEO", "name": "World geography", "description": ""}
    assert c.get("/api/categories").get_json()[0]["name"] == "World geography"

    assert c.delete(f"/api/admin/categories/{cid}", headers=_as(admin)).status_code == 200
    assert c.delete(f"/api/admin/categories/{cid}", headers=_as(admin)).status_code == 404
    assert c.post("/api/admin/categories", json={"code": "A", "name": "B"}, headers=env["alice"]).status_code == 403


def test_admin_groups(env, admin):
    c = env["client"]
    gid = c.post("/api/groups", json={"name": "Class A"}, headers=env["alice"]).get_json()["id"]
    groups = c.get("/api/admin/groups", headers=_as(admin)).get_json()
    assert groups[0]["ownerName"] == "alice"
    assert groups[0]["isActive"] is True

    r = c.put(f"/api/admin/groups/{gid}/active", json={"isActive": False}, headers=_as(admin))
    assert r.get_json()["isActive"] is False
    r = c.put(f"/api/admin/groups/{gid}/active", json={"isActive": "no"}, headers=_as(admin))
    assert r.status_code == 400

    assert c.delete(f"/api/admin/groups/{gid}", headers=_as(admin)).status_code == 200
    assert c.get("/api/admin/groups", headers=_as(admin)).get_json() == []
    assert c.delete(f"/api/admin/groups/{gid}", headers=_as(admin)).status_code == 404


def test_member_removal_and_unshare(env):
    c = env["client"]
    dump = _create(env)
    gid = c.post("/api/groups", json={"name": "Class A"}, headers=env["alice"]).get_json()["id"]
    c.post(f"/api/groups/{gid}/members", json={"userId": env["bob_id"]}, headers=env["alice"])
    c.put(f"/api/dumps/{dump['id']}/share/groups", json={"groups": [{"groupId": gid}]}, headers=env["alice"])
    assert c.get(f"/api/dumps/{dump['id']}", headers=env["bob"]).status_code == 200

    url = f"/api/groups/{gid}/members/{env['bob_id']}"
    assert c.delete(url, headers=env["bob"]).status_code == 403
    assert c.delete(f"/api/groups/{gid}/members/{env['alice_id']}", headers=env["alice"]).status_code == 400
    r = c.delete(url, headers=env["alice"])
    assert r.get_json()["members"] == [env["alice_id"]]
    assert c.delete(url, headers=env["alice"]).status_code == 404
    assert c.get(f"/api/dumps/{dump['id']}", headers=env["bob"]).status_code == 403

    url = f"/api/dumps/{dump['id']}/share/groups/{gid}"
    assert c.delete(url, headers=env["bob"]).status_code == 403
    assert c.delete(url, headers=env["alice"]).status_code == 200
    assert c.get(f"/api/dumps/{dump['id']}/groups", headers=env["alice"]).get_json() == []


def test_login_and_password_change(env):
    c = env["client"]
    r = c.post("/api/auth/login", json={"username": "alice", "password": "pw"})
    assert r.get_json() == {"id": env["alice_id"], "username": "alice", "role": "user"}
    assert c.post("/api/auth/login", json={"username": "alice", "password": "no"}).status_code == 403

    url = "/api/users/me/password"
    assert c.put(url, json={"oldPassword": "pw", "newPassword": "x"}).status_code == 403
    assert c.put(url, json={"oldPassword": "bad", "newPassword": "x"}, headers=env["alice"]).status_code == 403
    assert c.put(url, json={"oldPassword": "pw", "newPassword": ""}, headers=env["alice"]).status_code == 400
    assert c.put(url, json={"oldPassword": "pw", "newPassword": "new"}, headers=env["alice"]).status_code == 200
    assert c.post("/api/auth/login", json={"username": "alice", "password": "new"}).status_code == 200
