"""
Configuration management for the ledger exporter.

The exporter reads a declarative YAML file for the export definition
(network, destination, batch schema, ledger source) and environment
variables for deployment concerns (object-store credentials, logging).
This module provides typed configuration classes with validation, plus
the ledger range normalization applied before any export starts.

Invariants:
    - Invalid configuration raises InvalidConfigError before any I/O
    - ledgers_per_file and files_per_partition are fixed for a datalake;
      the datastore manifest enforces this across runs
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Never change defaults of the batch schema; existing datalakes rely on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import InvalidConfigError
from .keys import MAX_UINT32, object_key

logger = logging.getLogger(__name__)

# Sequence 1 is the genesis placeholder and is never exported.
MIN_LEDGER_SEQUENCE = 2


@dataclass(frozen=True)
class NetworkPreset:
    """Well-known network settings selected by the ``network`` option.

    Attributes:
        name: Preset name
        network_passphrase: Network passphrase recorded in the manifest
        rpc_url: Default RPC endpoint for the ledger source, if one is public
    """

    name: str
    network_passphrase: str
    rpc_url: Optional[str] = None


NETWORK_PRESETS: Dict[str, NetworkPreset] = {
    "pubnet": NetworkPreset(
        name="pubnet",
        network_passphrase="Public Global Stellar Network ; September 2015",
    ),
    "testnet": NetworkPreset(
        name="testnet",
        network_passphrase="Test SDF Network ; September 2015",
        rpc_url="https://soroban-testnet.stellar.org",
    ),
    "futurenet": NetworkPreset(
        name="futurenet",
        network_passphrase="Test SDF Future Network ; October 2022",
        rpc_url="https://rpc-futurenet.stellar.org",
    ),
}


@dataclass(frozen=True)
class ExporterConfig:
    """Batch schema of the datalake.

    Attributes:
        ledgers_per_file: Ledgers stored in each object (L)
        files_per_partition: Objects grouped under each partition directory (P);
            1 disables partition directories
    """

    ledgers_per_file: int = 64
    files_per_partition: int = 10

    def validate(self) -> None:
        """Validate the schema.

        Raises:
            InvalidConfigError: If either value is outside [1, 2^32 - 1]
        """
        for name in ("ledgers_per_file", "files_per_partition"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise InvalidConfigError(
                    f"exporter.{name} must be an integer, got {value!r}", field_name=name
                )
            if value < 1 or value > MAX_UINT32:
                raise InvalidConfigError(
                    f"exporter.{name} must be between 1 and {MAX_UINT32}, got {value}",
                    field_name=name,
                )

    def object_key(self, sequence: int) -> str:
        """Object key of the batch holding ``sequence``."""
        return object_key(sequence, self.ledgers_per_file, self.files_per_partition)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ExporterConfig:
        defaults = cls()
        return cls(
            ledgers_per_file=data.get("ledgers_per_file", defaults.ledgers_per_file),
            files_per_partition=data.get("files_per_partition", defaults.files_per_partition),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 connection settings for ``s3://`` destinations.

    Attributes:
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO or LocalStack)
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass(frozen=True)
class LedgerRange:
    """Inclusive range of ledger sequences to export.

    An ``end`` of 0 means the range is unbounded.
    """

    start: int
    end: int = 0

    @property
    def bounded(self) -> bool:
        return self.end != 0

    def __str__(self) -> str:
        return f"[{self.start}, {self.end if self.bounded else '∞'}]"


@dataclass
class AppConfig:
    """Complete exporter configuration.

    Attributes:
        network: Network preset name
        network_passphrase: Passphrase recorded in the datastore manifest
        destination_url: Object-store destination (s3://, file://, memory://)
        exporter: Batch schema
        ledger_source: Opaque settings handed to the ledger source factory
        s3: S3 settings (from environment)
        observability: Logging settings (from environment)
    """

    network: str = "testnet"
    network_passphrase: str = ""
    destination_url: str = ""
    exporter: ExporterConfig = field(default_factory=ExporterConfig)
    ledger_source: Dict[str, Any] = field(default_factory=dict)
    s3: S3Config = field(default_factory=S3Config)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @property
    def preset(self) -> Optional[NetworkPreset]:
        return NETWORK_PRESETS.get(self.network)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AppConfig:
        """Build configuration from a parsed config document.

        Raises:
            InvalidConfigError: If the document is malformed or invalid
        """
        if not isinstance(data, dict):
            raise InvalidConfigError("configuration must be a mapping")

        exporter_data = data.get("exporter") or {}
        source_data = data.get("ledger_source") or {}
        if not isinstance(exporter_data, dict):
            raise InvalidConfigError("exporter must be a mapping", field_name="exporter")
        if not isinstance(source_data, dict):
            raise InvalidConfigError("ledger_source must be a mapping", field_name="ledger_source")

        network = str(data.get("network", "")).lower()
        preset = NETWORK_PRESETS.get(network)
        passphrase = data.get("network_passphrase") or (preset.network_passphrase if preset else "")

        ledger_source = dict(source_data)
        if preset and preset.rpc_url:
            ledger_source.setdefault("rpc_url", preset.rpc_url)

        config = cls(
            network=network,
            network_passphrase=passphrase,
            destination_url=str(data.get("destination_url", "")),
            exporter=ExporterConfig.from_dict(exporter_data),
            ledger_source=ledger_source,
            s3=S3Config.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    @classmethod
    def from_file(cls, path: str | os.PathLike) -> AppConfig:
        """Load configuration from a YAML file.

        Raises:
            InvalidConfigError: If the file is missing, unreadable, or invalid
        """
        config_path = Path(path)
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise InvalidConfigError(f"config file not found: {config_path}", field_name="config") from e
        except (OSError, yaml.YAMLError) as e:
            raise InvalidConfigError(f"failed to read config file {config_path}: {e}", field_name="config") from e

        return cls.from_dict(data or {})

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            InvalidConfigError: If configuration is invalid.
        """
        if self.network not in NETWORK_PRESETS:
            raise InvalidConfigError(
                f"Invalid network '{self.network}'. Must be one of: {', '.join(NETWORK_PRESETS)}",
                field_name="network",
            )
        if not self.destination_url:
            raise InvalidConfigError("destination_url is required", field_name="destination_url")
        if "://" not in self.destination_url:
            raise InvalidConfigError(
                f"destination_url must include a scheme, got '{self.destination_url}'",
                field_name="destination_url",
            )
        self.exporter.validate()

        if self.observability.log_format not in ("json", "text"):
            raise InvalidConfigError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text",
                field_name="log_format",
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Exporter configuration loaded",
            extra={
                "network": self.network,
                "destination_url": self.destination_url,
                "ledgers_per_file": self.exporter.ledgers_per_file,
                "files_per_partition": self.exporter.files_per_partition,
                "ledger_source_type": self.ledger_source.get("type", "rpc"),
                "s3_region": self.s3.region,
                "s3_endpoint": self.s3.endpoint_url,
                "log_level": self.observability.log_level,
            },
        )


def _check_uint32(name: str, value: int) -> None:
    if value < 0 or value > MAX_UINT32:
        raise InvalidConfigError(
            f"{name} must be an unsigned 32-bit integer, got {value}", field_name=name
        )


def adjust_ledger_range(
    start: int,
    end: int,
    ledgers_per_file: int,
    latest_sequence: Optional[int] = None,
) -> LedgerRange:
    """Validate a requested range and align it to the batch grid.

    Args:
        start: Requested first ledger (inclusive)
        end: Requested last ledger (inclusive), 0 for unbounded
        ledgers_per_file: Ledgers per object (L)
        latest_sequence: Network tip, if known

    Returns:
        The adjusted range

    Raises:
        InvalidConfigError: If end < start (bounded), or start is past the tip
    """
    _check_uint32("start", start)
    _check_uint32("end", end)
    if ledgers_per_file < 1:
        raise InvalidConfigError(
            f"ledgers_per_file must be at least 1, got {ledgers_per_file}",
            field_name="ledgers_per_file",
        )

    logger.info(f"Requested ledger range start={start}, end={end}")

    if end != 0 and end < start:
        raise InvalidConfigError("invalid end ledger value, must be >= start ledger", field_name="end")

    start = (start // ledgers_per_file) * ledgers_per_file
    start = max(MIN_LEDGER_SEQUENCE, start)

    if end != 0 and ledgers_per_file > 1 and end % ledgers_per_file != 0:
        end = (end // ledgers_per_file + 1) * ledgers_per_file
        end = min(end, MAX_UINT32)

    if latest_sequence is not None and start > latest_sequence:
        raise InvalidConfigError(
            f"start ledger {start} is beyond the latest network ledger {latest_sequence}",
            field_name="start",
        )

    logger.info(f"Adjusted ledger range start={start}, end={end}")
    return LedgerRange(start=start, end=end)


def resolve_ledger_range(
    start: Optional[int],
    end: Optional[int],
    from_last: Optional[int],
    ledgers_per_file: int,
    latest_sequence: Optional[int] = None,
) -> LedgerRange:
    """Turn command-line range options into an adjusted LedgerRange.

    ``from_last`` exports the most recent N ledgers and then keeps following
    the tip; it excludes ``start``/``end``.

    Raises:
        InvalidConfigError: On conflicting or invalid options
    """
    if from_last is not None:
        if start is not None or end is not None:
            raise InvalidConfigError(
                "--from-last cannot be combined with --start or --end", field_name="from_last"
            )
        _check_uint32("from_last", from_last)
        if latest_sequence is None:
            raise InvalidConfigError(
                "--from-last requires a ledger source that reports the latest ledger",
                field_name="from_last",
            )
        start = max(MIN_LEDGER_SEQUENCE, latest_sequence - from_last)
        end = 0

    return adjust_ledger_range(start or 0, end or 0, ledgers_per_file, latest_sequence)
