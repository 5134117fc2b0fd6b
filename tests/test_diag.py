from __future__ import annotations

import argparse
import importlib.util
import json
from pathlib import Path

import pytest

from remote_agent_mcp.storage import ArtifactKeys, TaskRecord

FIRST_ID = "abc12345-0000-4000-8000-000000000001"
SECOND_ID = "def67890-0000-4000-8000-000000000002"


def _load_diag(name: str):
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "remote_agent_diag.py"
    spec = importlib.util.spec_from_file_location(name, module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


@pytest.fixture
def diag(monkeypatch, settings, store):
    module = _load_diag("remote_agent_diag_test_module")
    monkeypatch.setattr(module, "load_settings", lambda: settings)
    monkeypatch.setattr(module, "load_store", lambda _settings: store)
    store.put_metadata(
        FIRST_ID,
        TaskRecord(task_id=FIRST_ID, status="completed", prompt="first task", started_at="2025-01-01T00:00:00+00:00"),
    )
    store.put_metadata(
        SECOND_ID,
        TaskRecord(
            task_id=SECOND_ID,
            status="running",
            prompt="second task",
            started_at="2025-01-02T00:00:00+00:00",
            unit_id="arn:aws:ecs:task/cluster/unit2",
        ),
    )
    return module


def test_tasks_lists_newest_first(diag, capsys) -> None:
    diag.cmd_tasks(argparse.Namespace(json=False, limit=20, status=None))

    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        "def67890 [running] 2025-01-02T00:00:00+00:00 second task",
        "abc12345 [completed] 2025-01-01T00:00:00+00:00 first task",
    ]


def test_tasks_json_with_status_filter(diag, capsys) -> None:
    diag.cmd_tasks(argparse.Namespace(json=True, limit=20, status="completed"))

    payload = json.loads(capsys.readouterr().out)
    assert [item["taskId"] for item in payload] == [FIRST_ID]


def test_show_reports_patch_presence(diag, store, capsys) -> None:
    store.put_artifact(ArtifactKeys(FIRST_ID).patch, "diff --git a/x b/x\n+y\n", "text/plain")

    diag.cmd_show(argparse.Namespace(task_id="abc"))

    payload = json.loads(capsys.readouterr().out)
    assert payload["taskId"] == FIRST_ID
    assert payload["hasPatch"] is True


def test_show_unknown_task_exits(diag, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        diag.cmd_show(argparse.Namespace(task_id="zzz"))

    assert excinfo.value.code == 1
    assert "No task found with ID: zzz" in capsys.readouterr().out


def test_logs_uses_recorded_unit(diag, monkeypatch, capsys) -> None:
    calls = []

    class StubLogSource:
        def fetch_recent(self, task_id, *, unit_id=None, limit=100):
            calls.append((task_id, unit_id, limit))
            return ["[t] === Running OpenCode ==="]

    monkeypatch.setattr(diag, "load_log_source", lambda _settings: StubLogSource())

    diag.main(["logs", "def6", "--lines", "5"])

    assert calls == [(SECOND_ID, "arn:aws:ecs:task/cluster/unit2", 5)]
    assert capsys.readouterr().out.strip() == "[t] === Running OpenCode ==="


def test_missing_bucket_reports_store_unavailable(settings, capsys) -> None:
    module = _load_diag("remote_agent_diag_missing_bucket")

    with pytest.raises(SystemExit):
        module.load_store(settings.model_copy(update={"bucket_name": ""}))

    assert "Store unavailable" in capsys.readouterr().out
