import os
import zipfile
from datetime import datetime, timedelta

import pytest

from holdfast import cli


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda level=None: None)


def _make_java_world(root):
    world = root / "world"
    (world / "region").mkdir(parents=True)
    (world / "level.dat").write_bytes(b"\x0a\x00\x00")
    return world


def test_pack_and_unpack(tmp_path, capsys):
    world = _make_java_world(tmp_path / "src")
    archive = tmp_path / "world.zip"

    assert cli.main(["pack", str(archive), str(world)]) == 0
    with zipfile.ZipFile(archive) as zipf:
        assert zipf.namelist() == ["world/level.dat"]

    assert cli.main(["unpack", str(archive), str(tmp_path / "restore")]) == 0
    assert (tmp_path / "restore" / "world" / "level.dat").is_file()
    assert "Unpacked world" in capsys.readouterr().out


def test_trim_dry_run_keeps_files(tmp_path):
    world = _make_java_world(tmp_path / "src")
    backups = tmp_path / "backups"
    backups.mkdir()
    template = tmp_path / "world.zip"
    cli.main(["pack", str(template), str(world)])

    old = datetime.now() - timedelta(days=30)
    files = []
    for offset in range(3):
        moment = old + timedelta(days=offset)
        target = backups / f"world.{moment:%Y%m%d-%H%M%S}.zip"
        target.write_bytes(template.read_bytes())
        os.utime(target, (moment.timestamp(), moment.timestamp()))
        files.append(target)

    assert cli.main(["trim", str(backups), "--dry-run"]) == 0
    assert all(f.exists() for f in files)

    assert cli.main(["trim", str(backups), "--min-keep", "2"]) == 0
    assert [f.exists() for f in files] == [False, True, True]


def test_trim_missing_folder_fails(tmp_path, capsys):
    assert cli.main(["trim", str(tmp_path / "missing")]) == 1
    assert "Error:" in capsys.readouterr().err


def test_unpack_bad_archive_fails(tmp_path, capsys):
    bogus = tmp_path / "broken.mcworld"
    bogus.write_bytes(b"nope")

    assert cli.main(["unpack", str(bogus), str(tmp_path / "out")]) == 1
    assert "Error:" in capsys.readouterr().err


def test_backupjob_requires_backup_path(tmp_path, capsys):
    config = tmp_path / "config.yml"
    config.write_text("schedule:\n  interval: 1h\n", encoding="utf-8")

    assert cli.main(["backupjob", str(config)]) == 1
    assert "backupPath" in capsys.readouterr().err


def test_command_is_required():
    with pytest.raises(SystemExit):
        cli.main([])
