"""Module defining the command-line arguments and providing a parser for them."""

from __future__ import annotations

import argparse
import os
from typing import List, Optional

from blobdir.constants import STORAGE_API_VERSION, VERSION


class Arguments(argparse.Namespace):
    """Parsed command-line arguments."""

    command: str

    name: Optional[str] = None
    file: Optional[str] = None

    config: str

    account: Optional[str]
    key: Optional[str]
    container: Optional[str]
    root_folder: Optional[str]
    endpoint: Optional[str]
    cache_path: Optional[str]

    compress: Optional[bool]
    debug: bool

    @classmethod
    def parse(cls, args: Optional[List[str]] = None) -> Arguments:
        """
        Parse command-line arguments from the given list of strings.

        Defaults to sys.argv if none are specified.
        """
        return cls._get_parser().parse_args(args, namespace=cls())

    @classmethod
    def _get_parser(cls) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Manage the files of a search index stored in blob storage.",
            usage="blobdir [option...] command [arg...]",
        )

        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {VERSION} (storage api {STORAGE_API_VERSION})",
            help="show the program version and storage api version",
        )

        # Configuration and overrides
        parser.add_argument(
            "--config",
            type=str,
            default=os.path.expanduser("~/.blobdir/config"),
            help="path to config file (default: ~/.blobdir/config)",
        )
        parser.add_argument("--account", type=str, help="storage account name")
        parser.add_argument("--key", type=str, help="storage account key")
        parser.add_argument("--container", type=str, help="container of the index")
        parser.add_argument(
            "--root-folder", type=str, help="folder of the index within the container"
        )
        parser.add_argument("--endpoint", type=str, help="blob service base address")
        parser.add_argument(
            "--cache-path", type=str, help="directory to keep cached files in"
        )
        parser.add_argument(
            "--compress",
            action="store_true",
            default=None,
            help="store bulky index files compressed",
        )
        parser.add_argument(
            "--debug", action="store_true", help="enable verbose logging"
        )

        # Commands
        commands = parser.add_subparsers(dest="command", metavar="command")
        commands.required = True

        commands.add_parser("ls", help="list files")

        cat = commands.add_parser("cat", help="write the contents of a file to stdout")
        cat.add_argument("name", type=str, help="file name")

        put = commands.add_parser("put", help="upload a local file (or stdin)")
        put.add_argument("name", type=str, help="file name")
        put.add_argument("file", type=str, nargs="?", help="local file to upload")

        rm = commands.add_parser("rm", help="delete a file")
        rm.add_argument("name", type=str, help="file name")

        stat = commands.add_parser("stat", help="show length and modification time")
        stat.add_argument("name", type=str, help="file name")

        unlock = commands.add_parser("unlock", help="forcefully break a lock")
        unlock.add_argument("name", type=str, help="lock name")

        commands.add_parser("clear-cache", help="delete all locally cached files")

        return parser
