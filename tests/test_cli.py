"""Command-line entry points."""
import sys

from clonededup import cli
from clonededup.commands import dedupe as dedupe_cmd
from clonededup.commands import report as report_cmd

from conftest import write


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 1
    assert "clonededup" in capsys.readouterr().err


def test_dedupe_dry_run(tmp_path, capsys):
    root = tmp_path / "data"
    a = write(root / "a", b"same")
    b = write(root / "b", b"same")
    journal = tmp_path / "j.db"

    code = cli.main([
        "dedupe", str(root), "--dry-run", "--config", str(tmp_path / "none.yaml"),
        "--journal", str(journal), "--max-workers", "2",
    ])

    out = capsys.readouterr().out
    assert code == 0
    assert "CLONE DEDUPLICATION SUMMARY" in out
    assert "[DEDUPE] Would deduplicate" in out
    assert a.read_bytes() == b.read_bytes() == b"same"

    assert report_cmd.run_cli(["--journal", str(journal)]) == 0
    assert "dry-run" in capsys.readouterr().out


def test_overrides_apply_to_config(tmp_path):
    args = dedupe_cmd.build_parser().parse_args([
        "r", "--blake3", "--verify", "--keep", "newest", "--min-size", "10",
        "--exclude", "/.git/", "--no-journal", "--chunk-bytes", "1024",
    ])
    cfg = dedupe_cmd.apply_overrides(dedupe_cmd.load_config(tmp_path / "none.yaml"), args)
    assert cfg.hashing.algorithm == "blake3"
    assert cfg.hashing.chunk_bytes == 1024
    assert cfg.dedupe.verify_content
    assert cfg.dedupe.keep_strategy == "newest"
    assert cfg.dedupe.min_file_size == 10
    assert cfg.exclude_paths == ["/.git/"]
    assert not cfg.journal.enabled


def test_report_without_journal(tmp_path):
    assert report_cmd.run_cli(["--journal", str(tmp_path / "nope.db")]) == 1


def test_missing_blake3_is_a_clean_fatal_error(tmp_path, monkeypatch, capsys):
    monkeypatch.setitem(sys.modules, "blake3", None)
    root = tmp_path / "data"
    write(root / "a", b"same")
    write(root / "b", b"same")

    code = cli.main([
        "dedupe", str(root), "--blake3", "--dry-run", "--no-journal",
        "--config", str(tmp_path / "none.yaml"),
    ])

    assert code == 2
    assert "[FATAL] The 'blake3' package is not installed" in capsys.readouterr().err
