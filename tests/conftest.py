from __future__ import annotations

from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest

from winbuilder.config import BuilderConfig
from winbuilder.core.exceptions import TransportError
from winbuilder.gce.lifecycle import VMLifecycleManager


@pytest.fixture
def fast_config() -> BuilderConfig:
    """Default topology with intervals and timeouts short enough for tests."""
    return BuilderConfig(
        operation_timeout=0.2,
        operation_interval=0.01,
        running_timeout=0.2,
        running_interval=0.01,
        handshake_timeout=0.3,
        handshake_interval=0.01,
        handshake_attempts=2,
        connect_timeout=0.1,
        connect_interval=0.01,
    )


@pytest.fixture
def thread_pool() -> Iterator[ThreadPoolExecutor]:
    pool = ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def compute_clients() -> SimpleNamespace:
    return SimpleNamespace(
        instances=MagicMock(),
        operations=MagicMock(),
        firewalls=MagicMock(),
    )


@pytest.fixture
def lifecycle(
    fast_config: BuilderConfig,
    compute_clients: SimpleNamespace,
    thread_pool: ThreadPoolExecutor,
) -> VMLifecycleManager:
    return VMLifecycleManager(
        fast_config,
        "test-project",
        instances_client=compute_clients.instances,
        operations_client=compute_clients.operations,
        firewalls_client=compute_clients.firewalls,
        thread_pool=thread_pool,
    )


def gce_instance(
    status: str = "RUNNING",
    ip: str | None = "203.0.113.7",
    metadata: dict[str, str] | None = None,
    fingerprint: str = "fp-1",
    name: str = "windows-builder",
) -> Any:
    """A Compute Engine instance as returned by ``InstancesClient.get``."""
    access = [SimpleNamespace(nat_i_p=ip)] if ip else []
    return SimpleNamespace(
        name=name,
        status=status,
        network_interfaces=[SimpleNamespace(access_configs=access)],
        metadata=SimpleNamespace(
            fingerprint=fingerprint,
            items=[SimpleNamespace(key=k, value=v) for k, v in (metadata or {}).items()],
        ),
    )


def operation(status: str = "DONE", errors: list[tuple[str, str]] | None = None) -> Any:
    error = (
        SimpleNamespace(errors=[SimpleNamespace(code=c, message=m) for c, m in errors])
        if errors
        else None
    )
    return SimpleNamespace(name="operation-1", status=status, error=error)


class MemoryStore:
    """In-memory ObjectStore."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}

    def put(self, bucket: str, key: str, data: bytes) -> None:
        self.objects[(bucket, key)] = data

    def get(self, bucket: str, key: str) -> bytes:
        return self.objects[(bucket, key)]


class FakeTransport:
    """Records commands; exit codes are looked up by command prefix."""

    def __init__(self, exit_codes: dict[str, int] | None = None, output: str = "") -> None:
        self.exit_codes = exit_codes or {}
        self.output = output
        self.commands: list[str] = []
        self.closed = False

    def run(self, command: str, on_stdout: Any, on_stderr: Any) -> int:
        self.commands.append(command)
        if self.output:
            on_stdout(self.output)
        for prefix, code in self.exit_codes.items():
            if command.startswith(prefix):
                on_stderr(f"{prefix} failed")
                return code
        return 0

    def close(self) -> None:
        self.closed = True


class FakeFactory:
    """Transport factory that refuses the first ``failures`` connections."""

    def __init__(self, transport: FakeTransport, failures: int = 0) -> None:
        self.transport = transport
        self.failures = failures
        self.calls: list[tuple[str, int, str, str]] = []

    def __call__(self, host: str, port: int, username: str, password: str) -> FakeTransport:
        self.calls.append((host, port, username, password))
        if len(self.calls) <= self.failures:
            raise TransportError("connection refused")
        return self.transport
