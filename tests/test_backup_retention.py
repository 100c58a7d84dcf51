import os

from serverpanel.services.backup_retention import cleanup_old_backups, prune_backup_dir


def _make_backups(directory, count, start=1_000_000):
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for i in range(count):
        path = directory / f"backup-{i:02d}.zip"
        path.write_bytes(b"x")
        os.utime(path, (start + i, start + i))
        paths.append(path)
    return paths


def test_prune_keeps_newest(tmp_path):
    paths = _make_backups(tmp_path / "srv-1-back", 5)

    deleted = prune_backup_dir(tmp_path / "srv-1-back", keep=2)

    assert deleted == 3
    assert sorted(p.name for p in (tmp_path / "srv-1-back").iterdir()) == [paths[3].name, paths[4].name]


def test_directory_backups_are_removed_recursively(tmp_path):
    backup_dir = tmp_path / "srv-1-back"
    old = backup_dir / "2026-01-01"
    (old / "worlds").mkdir(parents=True)
    (old / "worlds" / "region.bin").write_bytes(b"x")
    os.utime(old, (1000, 1000))
    _make_backups(backup_dir, 1)

    prune_backup_dir(backup_dir, keep=1)

    assert not old.exists()
    assert len(list(backup_dir.iterdir())) == 1


def test_cleanup_only_touches_server_backup_dirs(tmp_path):
    _make_backups(tmp_path / "srv-1-back", 4)
    _make_backups(tmp_path / "srv-2-back", 2)
    _make_backups(tmp_path / "archive", 4)

    deleted = cleanup_old_backups(tmp_path, keep=2)

    assert deleted == 2
    assert len(list((tmp_path / "srv-1-back").iterdir())) == 2
    assert len(list((tmp_path / "srv-2-back").iterdir())) == 2
    assert len(list((tmp_path / "archive").iterdir())) == 4


def test_cleanup_of_missing_root_is_noop(tmp_path):
    assert cleanup_old_backups(tmp_path / "missing") == 0
