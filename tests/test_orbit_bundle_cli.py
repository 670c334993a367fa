from __future__ import annotations

from pathlib import Path

import pytest

from orbit_assessment.application import api
from orbit_assessment.infrastructure.db import make_engine_and_session
from scripts import orbit_bundle


@pytest.fixture
def source_db(tmp_path: Path) -> Path:
    db_path = tmp_path / "source.db"
    engine, SessionLocal = make_engine_and_session(f"sqlite:///{db_path}")
    try:
        with SessionLocal() as s:
            a = api.start_assessment(s, "claims-payment", tags=["baseline"])
            api.record_rating(s, a.id, "capability", 3)
            api.record_rating(s, a.id, "data-quality", 4)
            api.finalize_assessment(s, a.id)
            s.commit()
    finally:
        engine.dispose()
    return db_path


def export(source_db: Path, out_dir: Path) -> Path:
    code = orbit_bundle.run(
        ["--sqlite-path", str(source_db), "export", "--out-dir", str(out_dir), "--filename", "b.json"]
    )
    assert code == 0
    return out_dir / "b.json"


def test_export_writes_bundle(source_db: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = export(source_db, tmp_path / "out")
    assert path.exists()
    assert "Bundle written to" in capsys.readouterr().out


def test_verify_reports_statistics(source_db: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = export(source_db, tmp_path / "out")
    capsys.readouterr()

    assert orbit_bundle.run(["verify", str(path)]) == 0
    out = capsys.readouterr().out
    assert " - assessments: 1" in out
    assert " - ratings: 2" in out


def test_verify_rejects_broken_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{", encoding="utf-8")

    assert orbit_bundle.run(["verify", str(path)]) == 1
    assert "Invalid JSON" in capsys.readouterr().err


def test_dry_run_import_leaves_target_empty(
    source_db: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = export(source_db, tmp_path / "out")
    target = tmp_path / "target.db"
    capsys.readouterr()

    code = orbit_bundle.run(["--sqlite-path", str(target), "import", str(path), "--dry-run"])

    out = capsys.readouterr().out
    assert code == 0
    assert "claims-payment: imported_current" in out
    assert "Dry run: 1 current" in out

    engine, SessionLocal = make_engine_and_session(f"sqlite:///{target}")
    try:
        with SessionLocal() as s:
            assert api.get_current_assessment(s, "claims-payment") is None
    finally:
        engine.dispose()


def test_import_then_replay(source_db: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = export(source_db, tmp_path / "out")
    target = tmp_path / "target.db"
    argv = ["--sqlite-path", str(target), "import", str(path)]

    assert orbit_bundle.run(argv) == 0
    capsys.readouterr()
    assert orbit_bundle.run(argv) == 0
    out = capsys.readouterr().out
    assert "0 current, 0 history, 1 skipped, 0 errors" in out
    assert "History entries: 0 added, 1 skipped" in out


def test_missing_bundle_is_an_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = orbit_bundle.run(["--sqlite-path", str(tmp_path / "t.db"), "import", str(tmp_path / "none.json")])
    assert code == 1
    assert "not found" in capsys.readouterr().err
