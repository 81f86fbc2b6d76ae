"""rsync based transfer methods."""

import logging
import posixpath
import re
from typing import Any, List, Union

from .config import AppConfig, RSyncOptions, SnapshotOptions
from .errors import CommandFailure, ConfigurationError
from .scope import Directory, Scope, Server

logger = logging.getLogger(__name__)

# rsync exit status: "Partial transfer due to vanished source files". Expected
# when backing up a live filesystem.
PARTIAL_TRANSFER_VANISHED = 24

_NEEDS_QUOTING = re.compile(r"\s|\"|'")


def relative_latest_path(depth: int, latest_name: str, directory_path: str) -> str:
    """Path of a directory in the latest snapshot, relative to a destination `depth` levels deep."""
    return posixpath.join("../" * depth, latest_name, directory_path)


class RSyncMethod:
    """Transfer a directory from the master to a target with rsync."""

    def __init__(self, options: RSyncOptions = None):
        self.options = options if options is not None else RSyncOptions()
        self.command = list(self.options.command)
        self.arguments = list(self.options.arguments)

        if self.options.archive:
            self.arguments.append("--archive")

        if self.options.stats:
            self.arguments.append("--stats")

    def escape(self, value: Union[str, List[Any], Any]) -> str:
        """
        Render a token, or nested list of tokens, as a single string for rsync's -e option.

        rsync splits the -e command on spaces itself, honouring double quotes
        and treating a doubled double quote as a literal one.
        """
        if isinstance(value, (list, tuple)):
            return " ".join(self.escape(item) for item in value)
        if isinstance(value, str):
            if _NEEDS_QUOTING.search(value):
                return '"' + value.replace('"', '""') + '"'
            return value
        return self.escape(str(value))

    def connect_arguments(self, master_server: Server, target_server: Server) -> List[str]:
        """Arguments telling rsync how to reach the target from the master."""
        if master_server.same_host(target_server):
            return []

        # e.g. ["ssh", "-p", "2222", "backup.example.com"]
        command = list(target_server.connection_command)

        # rsync appends the hostname to the -e command itself.
        if not command or command[-1] != target_server.host:
            raise ConfigurationError(
                f"rsync shell requires hostname at end of command! {command!r}",
                command=command,
            )
        command.pop()

        return ["-e", self.escape(command)]

    def _transfer(self, master_server: Server, *arguments) -> None:
        try:
            master_server.run(*self.command, *self.arguments, *arguments)
        except CommandFailure as failure:
            if failure.status != PARTIAL_TRANSFER_VANISHED:
                raise
            logger.warning(f"Partial transfer, some source files vanished: {failure.command!r}")

    def call(self, scope: Scope) -> None:
        """Transfer the scope's directory to the same path on the target."""
        master_server = scope.master_server
        target_server = scope.target_server
        directory = scope.directory

        self._transfer(
            master_server,
            *directory.arguments,
            *self.connect_arguments(master_server, target_server),
            master_server.connection_string(directory, on=master_server),
            target_server.connection_string(directory, on=master_server),
        )


class RSyncSnapshotMethod(RSyncMethod):
    """Transfer into a snapshot series, hard-linking unchanged files from the latest snapshot."""

    def __init__(self, options: SnapshotOptions = None):
        super().__init__(options if options is not None else SnapshotOptions())

    @property
    def snapshot_name(self) -> str:
        return self.options.snapshot_name

    @property
    def latest_name(self) -> str:
        return self.options.latest_name

    def compute_incremental_path(self, directory: Directory) -> str:
        return posixpath.join(self.snapshot_name, directory.path)

    def compute_link_arguments(self, directory: Directory, incremental_path: str) -> List[str]:
        # --link-dest is relative to the destination directory.
        depth = Directory.depth(incremental_path)
        return ["--link-dest", relative_latest_path(depth, self.latest_name, directory.path)]

    def call(self, scope: Scope) -> None:
        master_server = scope.master_server
        target_server = scope.target_server
        directory = scope.directory

        incremental_path = self.compute_incremental_path(directory)
        link_arguments = self.compute_link_arguments(directory, incremental_path)

        # --link-dest needs the destination tree to exist.
        target_server.run("mkdir", "-p", target_server.full_path(incremental_path), on=master_server)

        self._transfer(
            master_server,
            *directory.arguments,
            *self.connect_arguments(master_server, target_server),
            *link_arguments,
            master_server.connection_string(directory, on=master_server),
            target_server.connection_string(incremental_path, on=master_server),
        )


def create_method(config: AppConfig) -> RSyncMethod:
    """Create the transfer method selected in the configuration."""
    if config.method == "snapshot":
        return RSyncSnapshotMethod(config.snapshot)
    return RSyncMethod(config.rsync)
