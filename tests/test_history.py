from __future__ import annotations

import json

from mindshell.history import COMMAND_HISTORY_LIMIT, HISTORY_LIMIT, HistoryStore
from mindshell.models import CommandOutput


def test_interaction_log_keeps_the_latest_entries(tmp_path) -> None:
    store = HistoryStore(tmp_path)

    for index in range(HISTORY_LIMIT + 5):
        store.append(CommandOutput(prompt=f"p{index}", command=f"echo {index}", output=str(index)))

    loaded = store.load_history()
    assert len(loaded) == HISTORY_LIMIT
    assert loaded[0].prompt == "p5"
    assert loaded[-1].output == str(HISTORY_LIMIT + 4)


def test_records_use_the_log_shape(tmp_path) -> None:
    store = HistoryStore(tmp_path)
    store.append(
        CommandOutput(prompt="show", command="cat x", output="", error="ENOENT", exit_code=1)
    )
    store.append(CommandOutput(prompt="why", command="", output="Because", type="explanation"))

    records = json.loads((tmp_path / "history.json").read_text(encoding="utf-8"))

    assert records[0]["exitCode"] == 1
    assert records[0]["error"] == "ENOENT"
    assert "command" not in records[1]
    assert records[1]["type"] == "explanation"
    assert store.load_history()[0].exit_code == 1


def test_command_history_is_capped(tmp_path) -> None:
    store = HistoryStore(tmp_path)

    store.save_command_history([f"cmd {n}" for n in range(COMMAND_HISTORY_LIMIT + 20)])
    store.remember_command("latest")

    history = store.load_command_history()
    assert len(history) == COMMAND_HISTORY_LIMIT
    assert history[-1] == "latest"


def test_ask_history_round_trip(tmp_path) -> None:
    store = HistoryStore(tmp_path)

    store.remember_ask("how do I list files")

    assert store.load_ask_history() == ["how do I list files"]


def test_corrupt_files_read_as_empty(tmp_path) -> None:
    (tmp_path / "history.json").write_text("{oops", encoding="utf-8")
    (tmp_path / "commandhistory.json").write_text('[1, 2, "three"]', encoding="utf-8")
    store = HistoryStore(tmp_path)

    assert store.load_history() == []
    assert store.load_command_history() == []

    store.append(CommandOutput(prompt="p", command="ls", output="ok"))
    assert [entry.command for entry in store.load_history()] == ["ls"]


def test_default_storage_is_the_nearest_metadata_dir(tmp_path, monkeypatch) -> None:
    project = tmp_path / "proj"
    (project / ".mindshell").mkdir(parents=True)
    nested = project / "src"
    nested.mkdir()
    monkeypatch.chdir(nested)

    HistoryStore().remember_command("ls")

    assert json.loads((project / ".mindshell" / "commandhistory.json").read_text(encoding="utf-8")) == ["ls"]
