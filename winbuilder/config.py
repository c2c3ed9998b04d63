"""Builder configuration.

``BuilderConfig`` holds the fixed topology (zone, instance name, image,
ports) and every timeout and poll interval. It is immutable and passed to
each component at construction.

Defaults can be overridden from TOML: ``~/.winbuilder/defaults.toml``
(global) and ``winbuilder.toml`` (project) are merged and their
``[builder]`` table is applied on top of the dataclass defaults.

``BuildRequest`` is the per-process surface: which image to run, with which
arguments, against which project, and optionally an existing host.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, TypeAlias

from winbuilder.core.exceptions import ConfigurationError

RawConfig: TypeAlias = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".winbuilder" / "defaults.toml"
PROJECT_CONFIG_NAME = "winbuilder.toml"

IMAGE_PREFIX = "https://www.googleapis.com/compute/v1/projects/"

DEFAULT_STARTUP_SCRIPT = (
    'winrm set winrm/config/Service/Auth @{Basic="true"} & '
    'winrm set winrm/config/Service @{AllowUnencrypted="true"}'
)


@dataclass(frozen=True, slots=True)
class BuilderConfig:
    """Immutable topology and timing for a Windows build.

    Args:
        zone: Compute Engine zone for the build instance.
        instance_name: Name of the build instance.
        machine_type: Machine type name within the zone.
        source_image: Boot disk image URL (Windows Server for containers).
        disk_name: Boot disk name.
        network: VPC network name.
        startup_script: ``windows-startup-script-bat`` content enabling WinRM basic auth.
        scopes: Service account scopes granted to the instance.
        firewall_rule: Name of the WinRM ingress rule.
        winrm_port: WinRM HTTPS port.
        username: Windows account to reset when provisioning.
        notification_email: Address placed in the key exchange request.
        key_validity: Seconds before a key exchange request expires.
        operation_timeout: Seconds to wait for a zone operation.
        operation_interval: Seconds between zone operation polls.
        running_timeout: Seconds to wait for the instance to be RUNNING.
        running_interval: Seconds between instance refreshes.
        handshake_timeout: Seconds to wait for a password response.
        handshake_interval: Seconds between serial port reads.
        handshake_attempts: Password reset attempts, each with a new keypair.
        connect_timeout: Seconds to keep retrying the first WinRM connection.
        connect_interval: Seconds between WinRM connection attempts.
        build_timeout: Overall build deadline in seconds (None for no deadline).
        bucket_prefix: Prefix of the workspace bucket name.
        remote_workspace: Workspace directory on the Windows host.
        remote_root: Directory on the Windows host receiving archives.
        thread_pool_size: Threads for blocking SDK calls.
    """

    zone: str = "us-central1-f"
    instance_name: str = "windows-builder"
    machine_type: str = "n1-standard-1"
    source_image: str = (
        IMAGE_PREFIX
        + "windows-cloud/global/images/windows-server-1709-dc-core-for-containers-v20180508"
    )
    disk_name: str = "windows-pd"
    network: str = "default"
    startup_script: str = DEFAULT_STARTUP_SCRIPT
    scopes: tuple[str, ...] = (
        "https://www.googleapis.com/auth/devstorage.full_control",
        "https://www.googleapis.com/auth/compute",
    )
    firewall_rule: str = "allow-winrm-ingress"
    winrm_port: int = 5986
    username: str = "builder"
    notification_email: str = "nobody@nowhere.com"
    key_validity: float = 300.0
    operation_timeout: float = 120.0
    operation_interval: float = 1.0
    running_timeout: float = 300.0
    running_interval: float = 3.0
    handshake_timeout: float = 300.0
    handshake_interval: float = 2.0
    handshake_attempts: int = 3
    connect_timeout: float = 300.0
    connect_interval: float = 5.0
    build_timeout: float | None = None
    bucket_prefix: str = "cloudbuild-windows"
    remote_workspace: str = "C:\\workspace"
    remote_root: str = "C:\\"
    thread_pool_size: int = 4

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> BuilderConfig:
        """Build a config from a ``[builder]`` table, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown builder settings: {', '.join(unknown)}. "
                f"Valid: {', '.join(sorted(known))}"
            )
        values = dict(raw)
        if "scopes" in values:
            values["scopes"] = tuple(values["scopes"])
        return cls(**values)


@dataclass(frozen=True, slots=True)
class BuildRequest:
    """What to build and where.

    When host, username and password are all present the build reuses that
    host and no instance is provisioned.
    """

    image: str
    project: str | None = None
    args: str = ""
    host: str | None = None
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    workspace: Path = Path("/workspace")

    @property
    def reuses_host(self) -> bool:
        return bool(self.host and self.username and self.password)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> BuildRequest:
        """Read the request from HOST, USERNAME, PASSWORD, NAME, ARGS, PROJECT_ID and WORKSPACE."""
        env = os.environ if env is None else env
        image = env.get("NAME", "")
        if not image:
            raise ConfigurationError("NAME must name the build step container image")
        return cls(
            image=image,
            project=env.get("PROJECT_ID") or None,
            args=env.get("ARGS", ""),
            host=env.get("HOST") or None,
            username=env.get("USERNAME") or None,
            password=env.get("PASSWORD") or None,
            workspace=Path(env.get("WORKSPACE") or "/workspace"),
        )


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        try:
            return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("builder", {})
    return merged


def resolve_builder_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> BuilderConfig:
    config = load_config(project_dir=project_dir, global_path=global_path)
    raw = config["builder"]
    if not isinstance(raw, dict):
        raise ConfigurationError("[builder] must be a table")
    return BuilderConfig.from_mapping(raw)


def resolve_project(explicit: str | None) -> str:
    """Resolve the GCP project: explicit > env > ADC."""
    if explicit:
        return explicit

    if env_project := os.environ.get("GOOGLE_CLOUD_PROJECT"):
        return env_project

    if env_project := os.environ.get("GCLOUD_PROJECT"):
        return env_project

    import google.auth
    from google.auth.exceptions import DefaultCredentialsError

    try:
        _, project = google.auth.default()
    except DefaultCredentialsError as e:
        raise ConfigurationError(f"No GCP credentials available: {e}") from e
    if project:
        return project

    raise ConfigurationError(
        "No GCP project found. Set PROJECT_ID or GOOGLE_CLOUD_PROJECT, "
        "or configure Application Default Credentials."
    )
