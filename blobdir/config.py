"""Module for configuration variables with defaults that are overridable by a file."""

from __future__ import annotations

from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass, field
import os
from typing import Optional

import blobdir.constants as constants
from blobdir.logger import log


@dataclass
class StorageConfig:
    """Configuration variables related to the remote blob container."""

    account: str = ""
    key: str = constants.EMULATOR_KEY

    container: str = constants.DEFAULT_CONTAINER
    root_folder: str = ""

    compress: bool = False

    endpoint: Optional[str] = None
    timeout: float = 30.0

    @staticmethod
    def load(section: SectionProxy) -> StorageConfig:
        """Load overridden variables from a section within a config file."""
        config = StorageConfig()

        return StorageConfig(
            account=section.get("account", fallback=config.account),
            key=section.get("key", fallback=config.key),
            container=section.get("container", fallback=config.container),
            root_folder=section.get("root_folder", fallback=config.root_folder),
            compress=section.getboolean("compress", fallback=config.compress),
            endpoint=section.get("endpoint", fallback=config.endpoint),
            timeout=section.getfloat("timeout", fallback=config.timeout),
        )


@dataclass
class CacheConfig:
    """Configuration variables related to the local file cache."""

    path: str = os.path.expanduser("~/.blobdir/cache")

    @staticmethod
    def load(section: SectionProxy) -> CacheConfig:
        """Load overridden variables from a section within a config file."""
        config = CacheConfig()

        config.path = os.path.expanduser(section.get("path", fallback=config.path))

        return config


@dataclass
class LockConfig:
    """Configuration variables related to lease-based locking."""

    lease_duration: int = constants.LEASE_DURATION
    renew_interval: float = constants.RENEW_INTERVAL

    provision_attempts: int = 5
    provision_backoff: float = 0.5

    @staticmethod
    def load(section: SectionProxy) -> LockConfig:
        """Load overridden variables from a section within a config file."""
        config = LockConfig()

        config.lease_duration = section.getint(
            "lease_duration", fallback=config.lease_duration
        )
        config.renew_interval = section.getfloat(
            "renew_interval", fallback=config.renew_interval
        )
        config.provision_attempts = section.getint(
            "provision_attempts", fallback=config.provision_attempts
        )
        config.provision_backoff = section.getfloat(
            "provision_backoff", fallback=config.provision_backoff
        )

        return config


@dataclass
class Config:
    """Configuration variables."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    lock: LockConfig = field(default_factory=LockConfig)

    @staticmethod
    def load(filename: str) -> Config:
        """Load overridden configuration variables from a config file."""
        parser = ConfigParser()

        config = Config()

        try:
            with open(filename, "r") as f:
                parser.read_string(f.read(), filename)

            if "storage" in parser:
                config.storage = StorageConfig.load(parser["storage"])
            if "cache" in parser:
                config.cache = CacheConfig.load(parser["cache"])
            if "lock" in parser:
                config.lock = LockConfig.load(parser["lock"])
        except FileNotFoundError:
            log.info(f"no config file at {filename}")
        except Exception as e:
            # An unreadable config file is not considered a fatal error since we can
            # fall back to defaults.
            log.error(f"failed to read config file {filename}: {e}")
        else:
            log.info(f"loaded config for account {config.storage.account!r}")

        return config
