"""Compute Engine lifecycle for the Windows build instance.

Uses the sync ``compute_v1`` clients dispatched to a dedicated thread pool,
so every call and every wait is awaitable and cancellable from the build.

State machine: ABSENT -> PENDING (create submitted) -> RUNNING (observed by
refresh) -> STOPPING (delete submitted) -> ABSENT.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TypeVar

from google.api_core import exceptions as gapi_exceptions
from loguru import logger

from winbuilder.config import BuilderConfig
from winbuilder.core.exceptions import (
    DeletionError,
    FirewallError,
    InstanceLookupError,
    OperationFailedError,
    OperationTimeout,
    PollTimeout,
    ProvisioningError,
)
from winbuilder.retry import any_of, on_status_code, retry
from winbuilder.wait import poll_until

from .instances import (
    InstanceDescriptor,
    InstanceState,
    build_firewall,
    build_instance,
    build_metadata,
    describe,
    is_operation_done,
    operation_error,
)

T = TypeVar("T")

log = logger.bind(component="gce")

SERIAL_PORT = 4

_transient = any_of(
    on_status_code(429, 500, 502, 503, 504),
    lambda e: isinstance(e, gapi_exceptions.ServiceUnavailable),
)


class VMLifecycleManager:
    """Creates, observes and deletes the single build instance."""

    def __init__(
        self,
        config: BuilderConfig,
        project: str,
        *,
        instances_client: Any,
        operations_client: Any,
        firewalls_client: Any,
        thread_pool: ThreadPoolExecutor,
        cancel: asyncio.Event | None = None,
    ) -> None:
        self._config = config
        self._project = project
        self._instances = instances_client
        self._operations = operations_client
        self._firewalls = firewalls_client
        self._pool = thread_pool
        self._cancel = cancel
        self._log = log.bind(instance=config.instance_name, zone=config.zone)

    @classmethod
    def create_default(
        cls,
        config: BuilderConfig,
        project: str,
        *,
        thread_pool: ThreadPoolExecutor,
        cancel: asyncio.Event | None = None,
    ) -> VMLifecycleManager:
        from google.cloud import compute_v1

        return cls(
            config,
            project,
            instances_client=compute_v1.InstancesClient(),
            operations_client=compute_v1.ZoneOperationsClient(),
            firewalls_client=compute_v1.FirewallsClient(),
            thread_pool=thread_pool,
            cancel=cancel,
        )

    @property
    def config(self) -> BuilderConfig:
        return self._config

    @property
    def project(self) -> str:
        return self._project

    async def _run(self, fn: Callable[..., T], *args: object, **kwargs: object) -> T:
        loop = asyncio.get_running_loop()
        if kwargs:
            return await loop.run_in_executor(self._pool, lambda: fn(*args, **kwargs))
        return await loop.run_in_executor(self._pool, fn, *args)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create(self) -> InstanceDescriptor:
        """Submit the instance insert. Returns a PENDING descriptor.

        Does not wait for RUNNING; use ``wait_until_running``.
        """
        from google.cloud import compute_v1

        instance = build_instance(self._config, self._project)
        self._log.info(
            "Creating instance (type={mt})", mt=self._config.machine_type,
        )
        try:
            operation = await self._run(
                self._instances.insert,
                request=compute_v1.InsertInstanceRequest(
                    project=self._project,
                    zone=self._config.zone,
                    instance_resource=instance,
                ),
            )
        except gapi_exceptions.GoogleAPICallError as e:
            self._log.error("Instance insert rejected: {err}", err=e)
            raise ProvisioningError(
                f"Instance insert for {self._config.instance_name} rejected: {e}"
            ) from e

        self._log.info("Insert acknowledged (operation={op})", op=operation.name)
        return InstanceDescriptor(
            name=self._config.instance_name,
            zone=self._config.zone,
            state=InstanceState.PENDING,
        )

    @retry(on=_transient, max_attempts=3, base_delay=1.0)
    async def _get(self) -> Any:
        from google.cloud import compute_v1

        return await self._run(
            self._instances.get,
            request=compute_v1.GetInstanceRequest(
                project=self._project,
                zone=self._config.zone,
                instance=self._config.instance_name,
            ),
        )

    async def refresh(self) -> InstanceDescriptor:
        """Read the current instance state. No local cache is trusted."""
        try:
            instance = await self._get()
        except gapi_exceptions.GoogleAPICallError as e:
            self._log.warning("Could not refresh instance: {err}", err=e)
            raise InstanceLookupError(
                f"Could not read instance {self._config.instance_name}: {e}"
            ) from e
        descriptor = describe(instance, self._config.zone)
        self._log.debug(
            "Instance status {status} (ip={ip})",
            status=descriptor.status, ip=descriptor.external_ip,
        )
        return descriptor

    async def wait_until_running(self, timeout: float | None = None) -> InstanceDescriptor:
        """Poll ``refresh`` until the instance is RUNNING with an external IP."""
        timeout = self._config.running_timeout if timeout is None else timeout
        self._log.info("Waiting for instance to reach RUNNING")
        try:
            descriptor = await poll_until(
                self.refresh,
                lambda d: d.ready,
                terminal_check=lambda d: d.state is InstanceState.STOPPING,
                timeout=timeout,
                interval=self._config.running_interval,
                cancel=self._cancel,
                description=f"instance {self._config.instance_name}",
            )
        except PollTimeout as e:
            raise OperationTimeout(f"{self._config.instance_name} RUNNING", timeout) from e
        except RuntimeError as e:
            raise ProvisioningError(str(e)) from e
        self._log.info("Instance running at {ip}", ip=descriptor.external_ip)
        return descriptor

    async def delete(self) -> None:
        """Delete the instance and wait for the operation.

        An already-absent instance is not an error.
        """
        from google.cloud import compute_v1

        self._log.info("Deleting instance")
        try:
            operation = await self._run(
                self._instances.delete,
                request=compute_v1.DeleteInstanceRequest(
                    project=self._project,
                    zone=self._config.zone,
                    instance=self._config.instance_name,
                ),
            )
        except gapi_exceptions.NotFound:
            self._log.info("Instance already absent")
            return
        except gapi_exceptions.GoogleAPICallError as e:
            self._log.error("Could not delete instance: {err}", err=e)
            raise DeletionError(
                f"Could not delete instance {self._config.instance_name}: {e}"
            ) from e

        try:
            await self.await_operation(operation.name, cancellable=False)
        except (OperationTimeout, OperationFailedError) as e:
            raise DeletionError(str(e)) from e
        self._log.info("Instance deleted")

    async def ensure_firewall(self) -> None:
        """Allow WinRM ingress from anywhere. Safe to call repeatedly."""
        from google.cloud import compute_v1

        rule = build_firewall(self._config, self._project)
        try:
            operation = await self._run(
                self._firewalls.insert,
                request=compute_v1.InsertFirewallRequest(
                    project=self._project,
                    firewall_resource=rule,
                ),
            )
        except gapi_exceptions.Conflict:
            self._log.debug("Firewall rule {name} already exists", name=self._config.firewall_rule)
            return
        except gapi_exceptions.GoogleAPICallError as e:
            self._log.error("Error setting firewall rule: {err}", err=e)
            raise FirewallError(
                f"Could not create firewall rule {self._config.firewall_rule}: {e}"
            ) from e

        self._log.info(
            "Created firewall rule {name} (tcp/{port}, operation={op})",
            name=self._config.firewall_rule, port=self._config.winrm_port, op=operation.name,
        )

    # -------------------------------------------------------------------------
    # Operations, metadata and serial port
    # -------------------------------------------------------------------------

    async def await_operation(
        self, name: str, timeout: float | None = None, *, cancellable: bool = True,
    ) -> None:
        """Poll an operation every ``operation_interval`` seconds until DONE.

        Teardown passes ``cancellable=False`` so a cancelled build still waits
        for its delete to finish.

        Raises:
            OperationTimeout: DONE was never observed within ``timeout``.
            OperationFailedError: The operation finished with an error.
        """
        timeout = self._config.operation_timeout if timeout is None else timeout
        self._log.debug("Waiting for operation {op}", op=name)

        async def _poll() -> Any:
            return await self._run(
                self._operations.get,
                project=self._project,
                zone=self._config.zone,
                operation=name,
            )

        try:
            operation = await poll_until(
                _poll,
                is_operation_done,
                timeout=timeout,
                interval=self._config.operation_interval,
                cancel=self._cancel if cancellable else None,
                description=f"operation {name}",
            )
        except PollTimeout as e:
            self._log.warning("Operation {op} timed out", op=name)
            raise OperationTimeout(name, timeout) from e

        if error := operation_error(operation):
            raise OperationFailedError(f"Operation {name} failed: {error}")

    async def set_metadata(
        self, descriptor: InstanceDescriptor, items: tuple[tuple[str, str], ...],
    ) -> str:
        """Write metadata guarded by the descriptor's fingerprint.

        Returns:
            The name of the resulting zone operation.
        """
        from google.cloud import compute_v1

        operation = await self._run(
            self._instances.set_metadata,
            request=compute_v1.SetMetadataInstanceRequest(
                project=self._project,
                zone=self._config.zone,
                instance=descriptor.name,
                metadata_resource=build_metadata(descriptor.fingerprint, items),
            ),
        )
        return operation.name

    async def serial_port_output(self, port: int = SERIAL_PORT) -> str:
        """Read the instance's serial port output."""
        from google.cloud import compute_v1

        output = await self._run(
            self._instances.get_serial_port_output,
            request=compute_v1.GetSerialPortOutputInstanceRequest(
                project=self._project,
                zone=self._config.zone,
                instance=self._config.instance_name,
                port=port,
            ),
        )
        return output.contents or ""
