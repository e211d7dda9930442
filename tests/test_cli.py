"""Integration tests for main.py -- the command-line front end.

Each test points --database-url at a file in tmp_path so commands share
state across invocations the way real shell usage does.
"""

import json
from unittest.mock import patch

from core.errors import StoreError
from main import main


def _run(capsys, db_url, *argv):
    code = main(["--database-url", db_url, *argv])
    return code, json.loads(capsys.readouterr().out)


def test_full_flow(capsys, tmp_path, person_record):
    db_url = f"sqlite:///{tmp_path / 'cli.db'}"

    code, out = _run(capsys, db_url, "create-project", "--name", "Portal", "--site", "https://portal.example.com")
    assert code == 0
    project_id = out["data"]["projectId"]

    with patch("auth.service.fetch_person", return_value=person_record):
        code, out = _run(
            capsys, db_url,
            "register", "--tax-id", "111.444.777-35", "--birth-date", "1990-05-17",
            "--email", "a@x.com", "--password", "pw123456",
        )
    assert code == 0
    user_id = out["data"]["userId"]

    code, out = _run(capsys, db_url, "login", "--identifier", "a@x.com", "--password", "pw123456", "--project-id", project_id)
    assert code == 1
    assert out == {"code": 400, "message": "Project does not have authorization", "data": {}}

    code, _ = _run(capsys, db_url, "authorize", "--user-id", user_id, "--project-id", project_id, "--verified", "--acl", "readers")
    assert code == 0

    code, out = _run(capsys, db_url, "login", "--identifier", "a@x.com", "--password", "pw123456", "--project-id", project_id)
    assert code == 0
    token = out["data"]["token"]

    roles = tmp_path / "roles.json"
    roles.write_text(json.dumps([{"group": "readers", "permissions": [{"resource": "/users/*", "methods": ["GET"]}]}]))
    code, out = _run(
        capsys, db_url,
        "check", "--token", token, "--user-id", user_id, "--project-id", project_id,
        "--endpoint", "/users/42", "--method", "GET", "--roles", str(roles),
    )
    assert code == 0
    assert out["message"] == "User is authorized to access this endpoint"


def test_failure_exit_code(capsys, tmp_path):
    db_url = f"sqlite:///{tmp_path / 'cli.db'}"
    code, out = _run(capsys, db_url, "recovery-token", "--email", "nobody@x.com")
    assert code == 1
    assert out["message"] == "User not found"


def test_unreadable_role_table_prints_envelope(capsys, tmp_path):
    db_url = f"sqlite:///{tmp_path / 'cli.db'}"
    missing = tmp_path / "missing.json"
    code, out = _run(
        capsys, db_url,
        "check", "--token", "t", "--user-id", "u", "--project-id", "p",
        "--endpoint", "/users/42", "--method", "GET", "--roles", str(missing),
    )
    assert code == 1
    assert out == {"code": 400, "message": f"Role table could not be read: {missing}", "data": {}}


def test_malformed_role_table_prints_envelope(capsys, tmp_path):
    db_url = f"sqlite:///{tmp_path / 'cli.db'}"
    roles = tmp_path / "roles.json"
    roles.write_text("{not json")
    code, out = _run(
        capsys, db_url,
        "check", "--token", "t", "--user-id", "u", "--project-id", "p",
        "--endpoint", "/users/42", "--method", "GET", "--roles", str(roles),
    )
    assert code == 1
    assert out["message"].startswith("Role table could not be read")


def test_store_failure_prints_envelope(capsys, tmp_path):
    db_url = f"sqlite:///{tmp_path / 'cli.db'}"
    with patch("main.IdentityStore.create_project", side_effect=StoreError("Identity store is unavailable")):
        code, out = _run(capsys, db_url, "create-project", "--name", "Portal", "--site", "https://portal.example.com")
    assert code == 1
    assert out == {"code": 400, "message": "Identity store is unavailable", "data": {}}
