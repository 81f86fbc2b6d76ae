"""
Shared pytest fixtures for snapsync tests.

This module provides fixtures for:
- Master and target servers
- Mocked subprocess execution
- A fake retention policy
"""

import subprocess
from unittest.mock import patch

import pytest

from snapsync.scope import Directory, Scope, Server


def completed(returncode=0, stdout="", stderr=""):
    """Build a CompletedProcess as returned by subprocess.run."""
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class FakePolicy:
    """Retention policy erasing a fixed set of rotation paths."""

    def __init__(self, erase_paths=()):
        self.erase_paths = set(erase_paths)
        self.calls = []

    def filter(self, rotations):
        rotations = list(rotations)
        self.calls.append(rotations)
        keep = [r for r in rotations if r.path not in self.erase_paths]
        erase = [r for r in rotations if r.path in self.erase_paths]
        return keep, erase


@pytest.fixture
def master():
    return Server("master", host="files.example.com", root="/srv")


@pytest.fixture
def target():
    return Server(
        "offsite",
        host="backup.example.com",
        root="/backups",
        connection_command=["ssh", "-p", "2222", "backup.example.com"],
    )


@pytest.fixture
def local_target():
    return Server("local", host="files.example.com", root="/mnt/backups")


@pytest.fixture
def directory():
    return Directory("data/app", ["--exclude", ".cache"])


@pytest.fixture
def scope(master, target, directory):
    return Scope(master, target, directory)


@pytest.fixture
def mock_run():
    """Patch subprocess.run as used by Server.run; succeeds by default."""
    with patch("snapsync.scope.subprocess.run") as run:
        run.return_value = completed()
        yield run
