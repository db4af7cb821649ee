"""TOML configuration loading and config file discovery."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass
from pathlib import Path

from bq_stream.credentials import DEFAULT_EXPIRY_SECONDS

CONFIG_FILENAME = "bq_stream.toml"
DEFAULT_BASE_URL = "https://www.googleapis.com/bigquery/v2"


@dataclass(frozen=True)
class ProjectConfig:
    """GCP project and default dataset/table."""

    id: str
    dataset: str
    table: str | None = None


@dataclass(frozen=True)
class CredentialsConfig:
    """Service account used to mint bearer tokens."""

    issuer: str
    key_file: str
    expiry_seconds: float = DEFAULT_EXPIRY_SECONDS


@dataclass(frozen=True)
class RequestConfig:
    """Transport and retry tuning."""

    base_url: str = DEFAULT_BASE_URL
    max_results: int | None = 100
    stop_on_error: bool = False
    max_attempts: int = 3
    base_delay_ms: int = 500
    max_insert_attempts: int | None = None


@dataclass(frozen=True)
class ClientConfig:
    """Top-level client configuration parsed from ``bq_stream.toml``."""

    project: ProjectConfig
    credentials: CredentialsConfig
    request: RequestConfig


def load_config(path: Path) -> ClientConfig:
    """Read and parse a ``bq_stream.toml`` file.

    Args:
        path: Absolute or relative path to the TOML config file.

    Returns:
        Parsed ``ClientConfig``.

    Raises:
        FileNotFoundError: If *path* does not exist.
        KeyError: If required keys are missing from the TOML.
    """
    with path.open("rb") as fh:
        raw = tomllib.load(fh)

    project_raw = raw["project"]
    project = ProjectConfig(
        id=project_raw["id"],
        dataset=project_raw["dataset"],
        table=project_raw.get("table"),
    )

    creds_raw = raw["credentials"]
    credentials = CredentialsConfig(
        issuer=creds_raw["issuer"],
        key_file=creds_raw["key_file"],
        expiry_seconds=float(creds_raw.get("expiry_seconds", DEFAULT_EXPIRY_SECONDS)),
    )

    client_raw = raw.get("client", {})
    # 0 disables the limit for either setting.
    max_results = client_raw.get("max_results", 100) or None
    max_insert_attempts = client_raw.get("max_insert_attempts", 0) or None
    request = RequestConfig(
        base_url=client_raw.get("base_url", DEFAULT_BASE_URL),
        max_results=max_results,
        stop_on_error=bool(client_raw.get("stop_on_error", False)),
        max_attempts=int(client_raw.get("max_attempts", 3)),
        base_delay_ms=int(client_raw.get("base_delay_ms", 500)),
        max_insert_attempts=max_insert_attempts,
    )

    return ClientConfig(project=project, credentials=credentials, request=request)


def discover_config(start: Path | None = None) -> Path:
    """Walk from *start* upward looking for ``bq_stream.toml``.

    Args:
        start: Directory to begin the search.  Defaults to the current
            working directory.

    Returns:
        Absolute path to the discovered config file.

    Raises:
        FileNotFoundError: If no ``bq_stream.toml`` is found between *start*
            and the filesystem root.
    """
    current = (start or Path.cwd()).resolve()

    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate

        parent = current.parent
        if parent == current:
            break
        current = parent

    msg = f"{CONFIG_FILENAME} not found (searched from {start or Path.cwd()})"
    raise FileNotFoundError(msg)


def resolve_key_path(config: ClientConfig, config_path: Path) -> Path:
    """Resolve the key file relative to the config file's directory.

    Args:
        config: Parsed client configuration.
        config_path: Path to the ``bq_stream.toml`` that was loaded.

    Returns:
        Absolute path to the service-account key.
    """
    base = config_path.resolve().parent
    return (base / config.credentials.key_file).resolve()
