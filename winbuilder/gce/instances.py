"""Compute Engine instance model and resource builders.

Pure functions only: nothing here calls the Compute Engine API, so the
request shapes can be checked without credentials.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from winbuilder.config import BuilderConfig


class InstanceState(Enum):
    """Lifecycle of the build instance as seen by the builder."""

    ABSENT = "absent"
    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"


_STATUS_MAP: dict[str, InstanceState] = {
    "PROVISIONING": InstanceState.PENDING,
    "STAGING": InstanceState.PENDING,
    "REPAIRING": InstanceState.PENDING,
    "RUNNING": InstanceState.RUNNING,
    "STOPPING": InstanceState.STOPPING,
    "SUSPENDING": InstanceState.STOPPING,
    "SUSPENDED": InstanceState.STOPPING,
    "TERMINATED": InstanceState.STOPPING,
}


@dataclass(frozen=True, slots=True)
class InstanceDescriptor:
    """Snapshot of the build instance.

    Never mutated: every lifecycle transition produces a new descriptor.
    """

    name: str
    zone: str
    state: InstanceState
    status: str = ""
    external_ip: str | None = None
    fingerprint: str | None = None
    metadata: tuple[tuple[str, str], ...] = ()

    @property
    def ready(self) -> bool:
        return self.state is InstanceState.RUNNING and bool(self.external_ip)


def map_status(status: str) -> InstanceState:
    """Map a Compute Engine instance status string to an InstanceState."""
    return _STATUS_MAP.get(status.upper(), InstanceState.PENDING)


def extract_external_ip(instance: Any) -> str | None:
    """Extract the external NAT IP from a GCE instance object."""
    for iface in getattr(instance, "network_interfaces", None) or []:
        for config in getattr(iface, "access_configs", None) or []:
            if ip := getattr(config, "nat_i_p", None):
                return str(ip)
    return None


def describe(instance: Any, zone: str) -> InstanceDescriptor:
    """Build an InstanceDescriptor from a GCE instance object."""
    status = str(getattr(instance, "status", "") or "")
    metadata = getattr(instance, "metadata", None)
    items = tuple(
        (str(item.key), str(item.value))
        for item in (getattr(metadata, "items", None) or [])
    )
    return InstanceDescriptor(
        name=str(instance.name),
        zone=zone,
        state=map_status(status),
        status=status,
        external_ip=extract_external_ip(instance),
        fingerprint=getattr(metadata, "fingerprint", None) or None,
        metadata=items,
    )


def append_metadata(
    current: tuple[tuple[str, str], ...], key: str, value: str,
) -> tuple[tuple[str, str], ...]:
    """Append a metadata value, keeping every existing item.

    Metadata keys are unique, so a value for an existing key is appended to
    it as a new line (the guest agent reads ``windows-keys`` line by line).
    """
    if not any(k == key for k, _ in current):
        return (*current, (key, value))
    return tuple(
        (k, f"{v}\n{value}" if k == key else v) for k, v in current
    )


def is_operation_done(operation: Any) -> bool:
    """Check whether a zone operation reports DONE.

    ``Operation.status`` is a proto enum on real responses; plain strings are
    accepted too.
    """
    status = getattr(operation, "status", None)
    return getattr(status, "name", status) == "DONE"


def operation_error(operation: Any) -> str | None:
    """Return a readable error summary of a finished operation, if any."""
    error = getattr(operation, "error", None)
    errors = getattr(error, "errors", None) if error else None
    if not errors:
        return None
    return "; ".join(
        f"{getattr(e, 'code', '')}: {getattr(e, 'message', '')}".strip(": ")
        for e in errors
    )


def machine_type_url(project: str, zone: str, machine_type: str) -> str:
    return f"projects/{project}/zones/{zone}/machineTypes/{machine_type}"


def network_url(project: str, network: str) -> str:
    return f"projects/{project}/global/networks/{network}"


def build_instance(config: BuilderConfig, project: str) -> Any:
    """Build the ``compute_v1.Instance`` resource for the Windows build VM."""
    from google.cloud import compute_v1

    return compute_v1.Instance(
        name=config.instance_name,
        machine_type=machine_type_url(project, config.zone, config.machine_type),
        disks=[
            compute_v1.AttachedDisk(
                auto_delete=True,
                boot=True,
                type_="PERSISTENT",
                initialize_params=compute_v1.AttachedDiskInitializeParams(
                    disk_name=config.disk_name,
                    source_image=config.source_image,
                ),
            ),
        ],
        metadata=compute_v1.Metadata(
            items=[
                compute_v1.Items(
                    key="windows-startup-script-bat",
                    value=config.startup_script,
                ),
            ],
        ),
        network_interfaces=[
            compute_v1.NetworkInterface(
                network=network_url(project, config.network),
                access_configs=[
                    compute_v1.AccessConfig(
                        name="External NAT",
                        type_="ONE_TO_ONE_NAT",
                    ),
                ],
            ),
        ],
        service_accounts=[
            compute_v1.ServiceAccount(
                email="default",
                scopes=list(config.scopes),
            ),
        ],
    )


def build_firewall(config: BuilderConfig, project: str) -> Any:
    """Build the ``compute_v1.Firewall`` rule opening the WinRM port."""
    from google.cloud import compute_v1

    return compute_v1.Firewall(
        name=config.firewall_rule,
        direction="INGRESS",
        allowed=[
            compute_v1.Allowed(I_p_protocol="tcp", ports=[str(config.winrm_port)]),
        ],
        source_ranges=["0.0.0.0/0"],
        network=network_url(project, config.network),
    )


def build_metadata(
    fingerprint: str | None, items: tuple[tuple[str, str], ...],
) -> Any:
    """Build a ``compute_v1.Metadata`` carrying the optimistic-lock fingerprint."""
    from google.cloud import compute_v1

    metadata = compute_v1.Metadata(
        items=[compute_v1.Items(key=k, value=v) for k, v in items],
    )
    if fingerprint:
        metadata.fingerprint = fingerprint
    return metadata
