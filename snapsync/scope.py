"""Servers, directories and the scope a transfer runs in."""

import logging
import posixpath
import shlex
import subprocess
from typing import List, Optional, Union

from .config import DirectoryConfig, ServerConfig
from .errors import CommandFailure

logger = logging.getLogger(__name__)


class Directory:
    """A directory, relative to the server roots, to be backed up."""

    def __init__(self, path: str, arguments: Optional[List[str]] = None):
        self.path = path.strip("/")
        self.arguments = list(arguments or [])

    @classmethod
    def from_config(cls, config: DirectoryConfig) -> "Directory":
        return cls(config.path, config.arguments)

    @staticmethod
    def depth(path: str) -> int:
        """Number of segments in a relative path."""
        return len([segment for segment in path.split("/") if segment])

    def __str__(self) -> str:
        return self.path

    def __repr__(self) -> str:
        return f"Directory({self.path!r})"


class Server:
    """
    A host taking part in a backup, either as master or as target.

    snapsync runs on the master: master paths are read locally and commands
    run without `on`, or with `on` set to the same host, execute locally.
    """

    def __init__(
        self,
        name: str,
        host: str = "localhost",
        root: str = "/",
        connection_command: Optional[List[str]] = None,
    ):
        self.name = name
        self.host = host
        self.root = root
        self.connection_command = (
            list(connection_command) if connection_command is not None else ["ssh", host]
        )

    @classmethod
    def from_config(cls, config: ServerConfig) -> "Server":
        return cls(config.name, config.host, config.root, config.command)

    def same_host(self, other: "Server") -> bool:
        return self.host == other.host

    def full_path(self, path: Union[str, Directory] = "") -> str:
        """Form an absolute path on this server from a root-relative one."""
        return posixpath.join(self.root, str(path))

    def connection_string(self, path: Union[str, Directory], on: "Server") -> str:
        """
        Location of `path` on this server as seen by rsync running on `on`.

        Directory locations end with a slash so their contents are transferred.
        """
        location = self.full_path(path)
        if not location.endswith("/"):
            location += "/"

        if self.same_host(on):
            return location
        return f"{self.host}:{location}"

    def run(self, *command, on: Optional["Server"] = None) -> str:
        """
        Run a command on this server.

        When `on` names a different host, the command is sent through this
        server's connection command. Blocks until the command exits.

        Returns:
            The command's standard output
        """
        command = [str(argument) for argument in command]
        if on is not None and not self.same_host(on):
            command = self.connection_command + [shlex.join(command)]

        logger.info(f"Running command: {' '.join(command)}")

        result = subprocess.run(command, capture_output=True, text=True)

        if result.stdout:
            logger.debug(result.stdout.rstrip())

        if result.returncode != 0:
            if result.stderr:
                logger.error(result.stderr.rstrip())
            raise CommandFailure(command, result.returncode)

        return result.stdout

    def __repr__(self) -> str:
        return f"Server({self.name!r}, host={self.host!r}, root={self.root!r})"


class Scope:
    """The master, target and directory a single transfer is about."""

    def __init__(self, master_server: Server, target_server: Server, directory: Directory):
        self.master_server = master_server
        self.target_server = target_server
        self.directory = directory
