"""Module implementing the commands of the command-line interface."""

from datetime import datetime, timezone
import sys
from typing import BinaryIO, Callable, Dict, Optional, TextIO

from blobdir.args import Arguments
from blobdir.config import Config
from blobdir.directory import BlobDirectory

# Size of the chunks in which file contents are copied.
COPY_CHUNK_SIZE = 64 * 1024


def apply_overrides(config: Config, args: Arguments) -> Config:
    """Override configuration variables with those given on the command line."""
    if args.account is not None:
        config.storage.account = args.account
    if args.key is not None:
        config.storage.key = args.key
    if args.container is not None:
        config.storage.container = args.container
    if args.root_folder is not None:
        config.storage.root_folder = args.root_folder
    if args.endpoint is not None:
        config.storage.endpoint = args.endpoint
    if args.cache_path is not None:
        config.cache.path = args.cache_path
    if args.compress is not None:
        config.storage.compress = args.compress

    return config


def ls(directory: BlobDirectory, args: Arguments, out: TextIO) -> int:
    for name in sorted(directory.list_all()):
        print(name, file=out)

    return 0


def cat(directory: BlobDirectory, args: Arguments, out: TextIO) -> int:
    output = _binary(out)

    with directory.open_input(args.name) as f:
        remaining = f.length
        buffer = bytearray(COPY_CHUNK_SIZE)

        while remaining > 0:
            count = min(remaining, COPY_CHUNK_SIZE)
            f.read_bytes(buffer, 0, count)
            output.write(buffer[:count])
            remaining -= count

    output.flush()

    return 0


def put(directory: BlobDirectory, args: Arguments, out: TextIO) -> int:
    with directory.create_output(args.name) as f:
        if args.file:
            with open(args.file, "rb") as source:
                _copy(source, f.write_bytes)
        else:
            _copy(sys.stdin.buffer, f.write_bytes)

    return 0


def rm(directory: BlobDirectory, args: Arguments, out: TextIO) -> int:
    directory.delete_file(args.name)

    return 0


def stat(directory: BlobDirectory, args: Arguments, out: TextIO) -> int:
    if not directory.file_exists(args.name):
        print(f"{args.name}: no such file", file=out)
        return 1

    modified = datetime.fromtimestamp(directory.file_modified(args.name), timezone.utc)

    print(f"name:     {args.name}", file=out)
    print(f"length:   {directory.file_length(args.name)}", file=out)
    print(f"modified: {modified.isoformat()}", file=out)
    stored = "compressed" if directory.should_compress_file(args.name) else "plain"
    print(f"stored:   {stored}", file=out)

    return 0


def unlock(directory: BlobDirectory, args: Arguments, out: TextIO) -> int:
    directory.clear_lock(args.name)

    return 0


def clear_cache(directory: BlobDirectory, args: Arguments, out: TextIO) -> int:
    directory.clear_cache()

    return 0


COMMANDS: Dict[str, Callable[[BlobDirectory, Arguments, TextIO], int]] = {
    "ls": ls,
    "cat": cat,
    "put": put,
    "rm": rm,
    "stat": stat,
    "unlock": unlock,
    "clear-cache": clear_cache,
}


def run(directory: BlobDirectory, args: Arguments, out: Optional[TextIO] = None) -> int:
    """Run the command selected by the arguments and return its exit code."""
    return COMMANDS[args.command](directory, args, out or sys.stdout)


def _copy(source: BinaryIO, write: Callable[[bytes], None]) -> None:
    while True:
        chunk = source.read(COPY_CHUNK_SIZE)

        if not chunk:
            break

        write(chunk)


def _binary(out: TextIO) -> BinaryIO:
    """Return the binary stream underlying a text stream, if it has one."""
    return getattr(out, "buffer", out)
