"""
Module implementing the command-line interface of blobdir.

The command line tool gives direct access to the files of an index stored by blobdir,
which is mostly useful for inspecting an index and for recovering from a process that
crashed while holding a lock.
"""

import logging
import signal
import sys
from typing import List, NoReturn, Optional

import blobdir.commands as commands
import blobdir.constants as constants
from blobdir.config import Config
from blobdir.directory import BlobDirectory
from blobdir.logger import log
from .args import Arguments


def main(arguments: Optional[List[str]] = None) -> NoReturn:
    """
    Run the command given by the arguments.

    Defaults to parsing command-line arguments from sys.argv if none are specified.
    """
    # Parse command-line arguments.
    args = Arguments.parse(arguments)

    # Configure debug logging.
    if args.debug:
        log.setLevel(logging.DEBUG)
    else:
        log.setLevel(logging.ERROR)

    # Load configuration and apply command-line overrides.
    config = commands.apply_overrides(Config.load(args.config), args)

    try:
        with BlobDirectory.from_config(config) as directory:
            exit_code = commands.run(directory, args)
    except KeyboardInterrupt:
        exit_code = 128 + signal.SIGINT
    except Exception as e:
        log.error(f"failed to run command: {e}")
        exit_code = constants.BLOBDIR_ERROR_CODE

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
