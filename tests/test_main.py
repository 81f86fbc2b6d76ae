"""
Tests for the command line entry point (main.py).
"""

import logging
import os
import sys
import types

import pytest

import main
from conftest import FakePolicy, completed
from snapsync.config import AppConfig


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Run in a temporary directory and drop the log handlers main() installs."""
    monkeypatch.chdir(tmp_path)
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield tmp_path
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


@pytest.fixture
def policy_module(monkeypatch):
    module = types.ModuleType("test_policies")
    module.erase_first = lambda config: FakePolicy(erase_paths={"20240101", "20240103"})
    monkeypatch.setitem(sys.modules, "test_policies", module)
    return module


def sync_config(tmp_path, **overrides):
    source = tmp_path / "srv"
    (source / "data" / "app").mkdir(parents=True)
    data = {
        "master": {"name": "master", "host": "files.example.com", "root": str(source)},
        "targets": [
            {
                "name": "offsite",
                "host": "backup.example.com",
                "root": "/backups",
                "connection_command": ["ssh", "backup.example.com"],
            }
        ],
        "directories": [{"path": "data/app"}],
    }
    data.update(overrides)
    return AppConfig(**data)


class TestSync:

    def test_successful_sync(self, tmp_path, mock_run):
        config = sync_config(tmp_path)

        assert main.run_sync(config, True, logging.getLogger("test")) == 0
        assert mock_run.call_count == 2

    def test_rotate_command_runs_after_success(self, tmp_path, mock_run):
        config = sync_config(
            tmp_path, snapshot={"rotate_command": ["snapsync", "rotate", "--root", "/backups"]}
        )

        main.run_sync(config, True, logging.getLogger("test"))

        last = mock_run.call_args_list[-1][0][0]
        assert last == ["ssh", "backup.example.com", "snapsync rotate --root /backups"]

    def test_failed_transfer_is_reported(self, tmp_path, mock_run):
        mock_run.side_effect = [completed(), completed(12)]
        config = sync_config(tmp_path)

        assert main.run_sync(config, True, logging.getLogger("test")) == 2

    def test_bad_connection_command_is_reported(self, tmp_path, mock_run):
        config = sync_config(
            tmp_path,
            method="rsync",
            targets=[{"name": "offsite", "host": "backup.example.com",
                      "connection_command": ["ssh", "other.example.com"]}],
        )

        assert main.run_sync(config, True, logging.getLogger("test")) == 2
        mock_run.assert_not_called()

    def test_missing_source_skips_target(self, tmp_path, mock_run):
        config = sync_config(tmp_path, directories=[{"path": "missing"}])

        assert main.run_sync(config, True, logging.getLogger("test")) == 2
        mock_run.assert_not_called()

    def test_no_targets(self, mock_run):
        assert main.run_sync(AppConfig(), True, logging.getLogger("test")) == 0
        mock_run.assert_not_called()

    def test_sync_requires_config_file(self, workdir):
        assert main.main(["--config", "missing.yaml", "sync"]) == 1


class TestSummary:

    def test_format(self):
        results = [
            main.SyncResult("a", True, directories=2, execution_time=1.5),
            main.SyncResult("b", False, error_message="boom"),
        ]

        summary = main.format_sync_summary(results, 3.0)

        assert "Successful: 1" in summary
        assert "[FAILED] b" in summary
        assert "Error: boom" in summary


class TestPrune:

    def make_rotations(self, root):
        for name in ("20240101", "20240102", "20240103"):
            (root / name).mkdir()
        (root / "latest").symlink_to("20240103")

    def test_dry_run_prints_partition(self, workdir, policy_module, capsys):
        self.make_rotations(workdir)

        code = main.main(["prune", "--format", "%Y%m%d", "--policy", "test_policies:erase_first", "--dry"])

        assert code == 0
        out = capsys.readouterr().out
        assert "*** Dry Run ***" in out
        keeping, erasing = out.split("Erasing:")
        assert "20240103" in keeping
        assert "20240101" in erasing
        assert (workdir / "20240101").is_dir()

    def test_prune_erases(self, workdir, policy_module):
        self.make_rotations(workdir)

        code = main.main(["prune", "--format", "%Y%m%d", "--policy", "test_policies:erase_first"])

        assert code == 0
        assert not (workdir / "20240101").exists()
        assert (workdir / "20240103").is_dir()

    def test_prune_reports_failed_erase(self, workdir, policy_module, monkeypatch):
        self.make_rotations(workdir)

        def refuse(path, *args, **kwargs):
            raise PermissionError(f"refusing to remove {path}")

        monkeypatch.setattr("snapsync.rotation.shutil.rmtree", refuse)

        code = main.main(["prune", "--format", "%Y%m%d", "--policy", "test_policies:erase_first"])

        assert code == 2
        assert (workdir / "20240101").is_dir()

    def test_prune_without_policy_fails(self, workdir):
        assert main.main(["prune"]) == 1


class TestRotate:

    def test_rotate(self, workdir):
        (workdir / "backup-inprogress").mkdir()

        assert main.main(["rotate", "--format", "%Y"]) == 0

        latest = os.readlink(workdir / "latest")
        assert (workdir / latest).is_dir()

    def test_rotate_without_snapshot(self, workdir):
        assert main.main(["rotate"]) == 1

    def test_rotate_error_is_reported_without_traceback(self, workdir, capsys, caplog):
        with caplog.at_level(logging.ERROR):
            assert main.main(["rotate"]) == 1

        err = capsys.readouterr().err
        assert "Snapshot directory not found" in err
        assert "Unexpected error" not in err
        assert "Traceback" not in caplog.text
        assert all(record.exc_info is None for record in caplog.records)
