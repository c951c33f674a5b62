import zipfile
from datetime import datetime
from pathlib import Path

import pytest

from holdfast.core.errors import InvalidExtrasArchive, WorldError
from holdfast.services.worlds import ServerExtras, World, WorldType, find_worlds

MOMENT = datetime(2024, 6, 15, 3, 0, 0)


def _make_bedrock_world(root: Path, folder: str = "abc123", name: str = "My World") -> Path:
    world = root / folder
    (world / "db").mkdir(parents=True)
    (world / "levelname.txt").write_text(name, encoding="utf-8")
    (world / "level.dat").write_bytes(b"\x08\x00\x00\x00")
    (world / "db" / "CURRENT").write_text("MANIFEST-000001", encoding="utf-8")
    return world


def _make_java_world(root: Path, name: str = "world") -> Path:
    world = root / name
    (world / "region").mkdir(parents=True)
    (world / "level.dat").write_bytes(b"\x0a\x00\x00")
    (world / "region" / "r.0.0.mca").write_bytes(b"\x00" * 32)
    return world


def test_open_bedrock_folder_uses_level_name(tmp_path):
    world = World.open(_make_bedrock_world(tmp_path))

    assert world.name == "My World"
    assert world.type == WorldType.FOLDER
    assert world.is_bedrock


def test_open_java_folder_uses_folder_name(tmp_path):
    world = World.open(_make_java_world(tmp_path, "survival"))

    assert world.name == "survival"
    assert not world.is_bedrock


def test_open_missing_world_raises(tmp_path):
    with pytest.raises(WorldError):
        World.open(tmp_path / "gone")


def test_open_rejects_non_archive(tmp_path):
    bogus = tmp_path / "broken.mcworld"
    bogus.write_bytes(b"not a zip")

    with pytest.raises(WorldError):
        World.open(bogus)


def test_bedrock_pack_puts_files_at_root(tmp_path):
    world = World.open(_make_bedrock_world(tmp_path / "src"))

    packed = world.pack(tmp_path / "out.mcworld")

    assert packed.type == WorldType.MCWORLD
    assert packed.name == "My World"
    with zipfile.ZipFile(packed.location) as zipf:
        assert sorted(zipf.namelist()) == ["db/CURRENT", "level.dat", "levelname.txt"]


def test_java_pack_nests_under_world_folder(tmp_path):
    world = World.open(_make_java_world(tmp_path / "src"))

    packed = world.pack(tmp_path / "out.zip")

    assert packed.type == WorldType.JAVA_ARCHIVE
    assert packed.name == "world"
    with zipfile.ZipFile(packed.location) as zipf:
        assert sorted(zipf.namelist()) == ["world/level.dat", "world/region/r.0.0.mca"]


def test_bedrock_unpack_into_named_folder(tmp_path):
    packed = World.open(_make_bedrock_world(tmp_path / "src")).pack(tmp_path / "out.mcworld")

    unpacked = packed.unpack(tmp_path / "restore")

    assert unpacked.location == tmp_path / "restore" / "My World"
    assert (unpacked.location / "db" / "CURRENT").read_text(encoding="utf-8") == "MANIFEST-000001"


def test_java_unpack_restores_world_folder(tmp_path):
    packed = World.open(_make_java_world(tmp_path / "src")).pack(tmp_path / "out.zip")

    unpacked = packed.unpack(tmp_path / "restore")

    assert unpacked.location == tmp_path / "restore" / "world"
    assert (unpacked.location / "region" / "r.0.0.mca").is_file()


def test_backup_names_archive_and_leaves_no_partial(tmp_path):
    world = World.open(_make_bedrock_world(tmp_path / "src"))

    backup = world.backup(tmp_path / "backups", MOMENT)

    assert backup.location.name == "My World.20240615-030000.mcworld"
    assert not list((tmp_path / "backups").glob("*.partial"))


def test_backup_of_archive_copies_it(tmp_path):
    packed = World.open(_make_java_world(tmp_path / "src")).pack(tmp_path / "world.zip")

    backup = packed.backup(tmp_path / "backups", MOMENT)

    assert backup.location.name == "world.20240615-030000.zip"
    assert backup.location.read_bytes() == packed.location.read_bytes()


def test_find_worlds_lists_folders(tmp_path):
    _make_bedrock_world(tmp_path, "a", "Alpha")
    _make_bedrock_world(tmp_path, "b", "Beta")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

    assert [w.name for w in find_worlds(tmp_path)] == ["Alpha", "Beta"]


# ==========================================
# Extras
# ==========================================

def test_extras_backup_includes_files_and_folders(tmp_path):
    (tmp_path / "allowlist.json").write_text("[]", encoding="utf-8")
    (tmp_path / "config" / "default").mkdir(parents=True)
    (tmp_path / "config" / "default" / "permissions.json").write_text("{}", encoding="utf-8")

    extras = ServerExtras.backup(
        "bedrock_private",
        [tmp_path / "allowlist.json", tmp_path / "config"],
        tmp_path / "backups",
        MOMENT,
    )

    assert extras.location.name == "bedrock_private.extras.20240615-030000.zip"
    assert extras.name == "bedrock_private"
    with zipfile.ZipFile(extras.location) as zipf:
        assert sorted(zipf.namelist()) == ["allowlist.json", "config/default/permissions.json"]


def test_extras_backup_missing_path_raises(tmp_path):
    with pytest.raises(InvalidExtrasArchive):
        ServerExtras.backup("x", [tmp_path / "missing.json"], tmp_path / "backups", MOMENT)


@pytest.mark.parametrize("file_name,name", [
    ("lobby.extras.20240615-030000.zip", "lobby"),
    ("my.server.extras.20240615-030000.ZIP", "my.server"),
])
def test_extras_open_parses_name(tmp_path, file_name, name):
    assert ServerExtras.open(tmp_path / file_name).name == name


@pytest.mark.parametrize("file_name", ["lobby.20240615-030000.zip", "lobby.extras.zip", "extras.txt"])
def test_extras_open_rejects_other_names(tmp_path, file_name):
    with pytest.raises(InvalidExtrasArchive):
        ServerExtras.open(tmp_path / file_name)
