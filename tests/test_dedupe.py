"""End-to-end duplicate reclamation with an injected clone function."""
import os
import stat
import sys
import threading

import pytest

from clonededup.dedupe import (
    ALREADY_CLONED,
    ALREADY_LINKED,
    CLONE_FAILED,
    CLONED,
    CONTENT_MISMATCH,
    DATA_LOSS_RISK,
    DedupExecutor,
    build_groups,
    run_dedupe,
    select_master,
    temp_sibling,
)
from clonededup.config import ClonededupConfig
from clonededup.errors import CloneError, MissingDependencyError, UnsupportedPlatformError
from clonededup.index import DedupGroup
from clonededup.util import digest_file

from conftest import copy_clone, leftover_temps, write


def test_identical_pair_is_cloned_and_savings_counted(root, cfg):
    a = write(root / "a", b"0123456789")
    b = write(root / "sub" / "b", b"9876543210")
    c = write(root / "sub" / "deeper" / "c", b"0123456789")

    result = run_dedupe(cfg, [str(root)], clone_fn=copy_clone)

    assert result.dedupe.groups == 1
    assert result.dedupe.cloned == 1
    assert result.dedupe.bytes_reclaimed == 10
    assert [x.status for x in result.dedupe.actions] == [CLONED]
    assert result.reclaimed_mb == 0
    assert a.read_bytes() == c.read_bytes() == b"0123456789"
    assert b.read_bytes() == b"9876543210"
    assert leftover_temps(root) == []


def test_empty_files_reclaim_nothing(root, cfg):
    write(root / "e1", b"")
    write(root / "e2", b"")

    result = run_dedupe(cfg, [str(root)], clone_fn=copy_clone)

    assert result.dedupe.cloned == 1
    assert result.dedupe.bytes_reclaimed == 0


def test_unique_sizes_are_not_hashed(root, cfg):
    write(root / "x", b"1")
    write(root / "y", b"22")

    result = run_dedupe(cfg, [str(root)], clone_fn=copy_clone)

    assert result.candidates == 0
    assert result.hashing.hashed == 0
    assert result.dedupe.groups == 0


def test_hash_failure_leaves_file_alone(root, cfg, monkeypatch):
    a = write(root / "a", b"same")
    b = write(root / "b", b"same")
    def flaky(path, *args, **kwargs):
        if str(path) == str(b):
            raise PermissionError(13, "Permission denied", str(path))
        return digest_file(path, *args, **kwargs)

    monkeypatch.setattr("clonededup.hashing.digest_file", flaky)
    result = run_dedupe(cfg, [str(root)], clone_fn=copy_clone)

    assert result.hashing.errors == 1
    assert result.dedupe.groups == 0
    assert a.read_bytes() == b.read_bytes() == b"same"


def test_duplicate_metadata_is_preserved(root, cfg):
    write(root / "a", b"content!", mtime=1_500_000_000)
    dup = write(root / "b", b"content!", mtime=1_000_000_000)
    os.chmod(dup, 0o604)
    before = os.stat(dup)
    cfg.dedupe.keep_strategy = "newest"

    result = run_dedupe(cfg, [str(root)], clone_fn=copy_clone)

    assert result.dedupe.cloned == 1
    after = os.stat(dup)
    assert after.st_ino != before.st_ino
    assert stat.S_IMODE(after.st_mode) == 0o604
    assert after.st_mtime_ns == before.st_mtime_ns


def test_dry_run_touches_nothing(root, cfg):
    a = write(root / "a", b"dup")
    b = write(root / "b", b"dup")
    inodes = (os.stat(a).st_ino, os.stat(b).st_ino)
    cfg.dedupe.dry_run = True

    def never(src, dst):
        raise AssertionError("dry run must not clone")

    result = run_dedupe(cfg, [str(root)], clone_fn=never)

    assert result.dedupe.cloned == 0
    assert result.dedupe.potential_bytes == 3
    assert result.dedupe.bytes_reclaimed == 0
    assert (os.stat(a).st_ino, os.stat(b).st_ino) == inodes


def test_clone_failure_keeps_duplicate(root, cfg):
    write(root / "a", b"payload")
    write(root / "b", b"payload")

    def half_clone(src, dst):
        with open(dst, "xb") as f:
            f.write(b"pay")
        raise CloneError(f"Cannot clone {src} -> {dst}: filesystem does not support copy-on-write clones")

    result = run_dedupe(cfg, [str(root)], clone_fn=half_clone)

    assert result.dedupe.cloned == 0
    assert result.dedupe.errors == 1
    assert result.dedupe.actions[0].status == CLONE_FAILED
    assert (root / "a").read_bytes() == (root / "b").read_bytes() == b"payload"
    assert leftover_temps(root) == []


def test_vanished_duplicate_after_failed_swap_is_data_loss_risk(root, cfg, monkeypatch):
    write(root / "a", b"precious")
    write(root / "b", b"precious")

    def broken_replace(src, dst):
        os.unlink(dst)
        raise OSError(5, "Input/output error")

    monkeypatch.setattr(os, "replace", broken_replace)
    result = run_dedupe(cfg, [str(root)], clone_fn=copy_clone)
    monkeypatch.undo()

    action = result.dedupe.actions[0]
    assert action.status == DATA_LOSS_RISK
    assert result.dedupe.data_loss_risks == 1
    survivors = leftover_temps(root)
    assert len(survivors) == 1
    assert survivors[0].read_bytes() == b"precious"
    assert str(survivors[0]) in action.error


def test_verify_catches_content_mismatch(tmp_path, cfg):
    a = write(tmp_path / "a", b"aaaa")
    b = write(tmp_path / "b", b"bbbb")
    cfg.dedupe.verify_content = True
    group = DedupGroup("forged-digest", str(a), (str(b),))

    stats = DedupExecutor(cfg, clone_fn=copy_clone).run([group])

    assert stats.actions[0].status == CONTENT_MISMATCH
    assert b.read_bytes() == b"bbbb"


def test_hard_links_are_skipped(tmp_path, cfg):
    a = write(tmp_path / "a", b"linked")
    os.link(a, tmp_path / "b")
    group = DedupGroup("d", str(a), (str(tmp_path / "b"),))

    stats = DedupExecutor(cfg, clone_fn=copy_clone).run([group])

    assert stats.actions[0].status == ALREADY_LINKED
    assert stats.bytes_reclaimed == 0


def test_second_run_with_journal_clones_nothing(root, cfg):
    for name in ("a", "b", "c"):
        write(root / name, b"triplicate")

    first = run_dedupe(cfg, [str(root)], clone_fn=copy_clone)
    second = run_dedupe(cfg, [str(root)], clone_fn=copy_clone)

    assert first.dedupe.cloned == 2
    assert second.dedupe.cloned == 0
    assert [a.status for a in second.dedupe.actions] == [ALREADY_CLONED, ALREADY_CLONED]
    assert second.run_id == first.run_id + 1


def test_cancel_before_hashing_modifies_nothing(root, cfg):
    a = write(root / "a", b"dup")
    write(root / "b", b"dup")
    ino = os.stat(a).st_ino
    cancel = threading.Event()
    cancel.set()

    result = run_dedupe(cfg, [str(root)], clone_fn=copy_clone, cancel_event=cancel)

    assert result.cancelled
    assert result.dedupe.cloned == 0
    assert os.stat(a).st_ino == ino


def test_cancel_between_duplicates(tmp_path, cfg):
    paths = [str(write(tmp_path / n, b"same")) for n in ("a", "b", "c")]
    cancel = threading.Event()
    calls = []

    def clone_then_cancel(src, dst):
        calls.append(dst)
        copy_clone(src, dst)
        cancel.set()

    group = DedupGroup("d", paths[0], tuple(paths[1:]))
    stats = DedupExecutor(cfg, clone_fn=clone_then_cancel, cancel_event=cancel).run([group])

    assert len(calls) == 1
    assert stats.cloned == 1
    assert stats.cancelled


def test_unsupported_platform_fails_before_scanning(root, cfg, monkeypatch):
    monkeypatch.setattr("sys.platform", "sunos5")
    logs = []
    with pytest.raises(UnsupportedPlatformError):
        run_dedupe(cfg, [str(root)], log_cb=logs.append)
    assert logs == []


def test_overlapping_roots_count_files_once(root, cfg):
    write(root / "sub" / "a", b"one")
    write(root / "sub" / "b", b"two")

    result = run_dedupe(cfg, [str(root), str(root / "sub")], clone_fn=copy_clone)

    assert result.scan.files_recorded == 2
    assert result.dedupe.groups == 0


def test_leftover_temp_clones_are_ignored(root, cfg):
    write(root / "a", b"data")
    write(root / ".b.clonededup-123-abcd.tmp", b"data")

    result = run_dedupe(cfg, [str(root)], clone_fn=copy_clone)

    assert result.scan.files_recorded == 1


def test_select_master_strategies(tmp_path):
    old = str(write(tmp_path / "old", b"x", mtime=1_000))
    new = str(write(tmp_path / "new", b"x", mtime=2_000))
    assert select_master([new, old], "first") == new
    assert select_master([new, old], "oldest") == old
    assert select_master([old, new], "newest") == new
    with pytest.raises(ValueError):
        select_master([old], "largest")


def test_build_groups_drops_singletons():
    groups = build_groups([("d1", ["/a", "/b", "/c"]), ("d2", ["/z"])])
    assert len(groups) == 1
    assert groups[0].master == "/a"
    assert groups[0].duplicates == ("/b", "/c")
    assert groups[0].paths == ("/a", "/b", "/c")


def test_temp_sibling_stays_in_same_directory(tmp_path):
    target = str(tmp_path / "file.bin")
    tmp = temp_sibling(target)
    assert os.path.dirname(tmp) == str(tmp_path)
    assert ".clonededup-" in tmp and tmp.endswith(".tmp")
    assert tmp != temp_sibling(target)


def test_rerun_from_another_directory_finds_the_same_journal(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "state"))
    data = tmp_path / "data"
    for name in ("a", "b", "c"):
        write(data / name, b"same data")
    runs = []
    for workdir in ("w1", "w2"):
        (tmp_path / workdir).mkdir()
        monkeypatch.chdir(tmp_path / workdir)
        cfg = ClonededupConfig()
        cfg.hashing.max_workers = 2
        runs.append(run_dedupe(cfg, [str(data)], clone_fn=copy_clone))

    assert runs[0].dedupe.cloned == 2
    assert runs[1].dedupe.cloned == 0
    assert runs[1].dedupe.bytes_reclaimed == 0
    assert (tmp_path / "state" / "clonededup" / "journal.db").exists()
    assert not (tmp_path / "w1" / "data").exists()


def test_shared_extents_are_skipped_without_journal(root, cfg, monkeypatch):
    write(root / "a", b"already")
    write(root / "b", b"already")
    cfg.journal.enabled = False
    monkeypatch.setattr("clonededup.dedupe.extents_shared", lambda a, b: True)
    logs = []

    result = run_dedupe(cfg, [str(root)], clone_fn=copy_clone, log_cb=logs.append)

    assert [a.status for a in result.dedupe.actions] == [ALREADY_CLONED]
    assert result.dedupe.bytes_reclaimed == 0
    assert any(line.startswith("[WARN] Journal disabled") for line in logs)


def test_missing_blake3_fails_before_scanning(root, cfg, monkeypatch):
    monkeypatch.setitem(sys.modules, "blake3", None)
    cfg.hashing.algorithm = "blake3"
    logs = []
    with pytest.raises(MissingDependencyError, match="blake3"):
        run_dedupe(cfg, [str(root)], clone_fn=copy_clone, log_cb=logs.append)
    assert logs == []


def test_duplicate_with_outside_hard_link_is_counted_with_warning(tmp_path, cfg):
    master = write(tmp_path / "m", b"linked data")
    dup = write(tmp_path / "d", b"linked data")
    os.link(dup, tmp_path / "elsewhere")
    logs = []

    stats = DedupExecutor(cfg, clone_fn=copy_clone, log_cb=logs.append).run(
        [DedupGroup("h", str(master), (str(dup),))]
    )

    assert stats.cloned == 1
    assert stats.bytes_reclaimed == len(b"linked data")
    assert stats.multi_link_duplicates == 1
    assert any("other hard link" in line and str(dup) in line for line in logs)
    assert (tmp_path / "elsewhere").read_bytes() == b"linked data"
