import json
from pathlib import Path

from papercheck import config


def test_bootstrap_runtime_dirs_creates_paths(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(config, "TEMP_DIR", tmp_path / "artifacts")
    config.bootstrap_runtime_dirs()
    assert (tmp_path / "artifacts").is_dir()


def test_main_analyzes_offline(monkeypatch, tmp_path, capsys) -> None:
    doc = tmp_path / "paper.txt"
    doc.write_text(
        "My Paper\n\nAbstract\nWe study X.\n\nIntroduction\nScientific writing matters. We test a checker.\n",
        encoding="utf-8",
    )
    out = tmp_path / "out"

    monkeypatch.setenv("OFFLINE_MODE", "0")
    monkeypatch.setenv("LLM_PROVIDER", "openai")
    monkeypatch.setattr(config, "TEMP_DIR", tmp_path / "tmp")

    import papercheck.main as main_mod

    main_mod.main(["analyze", str(doc), "--offline", "--output", str(out)])
    payload = json.loads(capsys.readouterr().out)
    assert payload["title"] == "My Paper"
    assert payload["submissionId"].startswith("sub_")
    assert Path(payload["reportLinks"]["json"]).exists()
    assert Path(payload["reportLinks"]["report"]).parent == out.resolve()
