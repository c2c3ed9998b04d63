"""End-to-end Windows build flow.

Provision (or reuse) a host, upload the workspace, run the build step
container over WinRM, bring the results back, and tear down what was
provisioned. Teardown policy: the instance is deleted iff this orchestrator
created it, whichever way the build ends.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import TypeAlias

from loguru import logger

from winbuilder.config import BuilderConfig, BuildRequest
from winbuilder.core.exceptions import BuildCancelled, BuilderError, HandshakeError
from winbuilder.gce.lifecycle import VMLifecycleManager
from winbuilder.gce.password import CredentialExchange
from winbuilder.remote import CommandResult, RemoteSession
from winbuilder.retry import retry
from winbuilder.storage import GCSObjectStore, ObjectStore
from winbuilder.workspace import WorkspaceTransfer, bucket_name

log = logger.bind(component="orchestrator")

SessionFactory: TypeAlias = Callable[[str, str, str], RemoteSession]


class Orchestrator:
    """Runs one build. Not reusable across builds."""

    def __init__(
        self,
        config: BuilderConfig,
        request: BuildRequest,
        project: str,
        *,
        lifecycle: VMLifecycleManager | None = None,
        store: ObjectStore | None = None,
        session_factory: SessionFactory | None = None,
        thread_pool: ThreadPoolExecutor | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        self._config = config
        self._request = request
        self._project = project
        self._pool = thread_pool
        self._cancel = cancel or asyncio.Event()
        self._lifecycle = lifecycle
        self._store = store
        self._session_factory = session_factory or self._default_session
        self._created = False
        self._task: asyncio.Task[CommandResult] | None = None

    @property
    def created(self) -> bool:
        """Whether this build provisioned the instance it runs on."""
        return self._created

    def _default_session(self, host: str, username: str, password: str) -> RemoteSession:
        return RemoteSession(
            host, username, password, self._config,
            thread_pool=self._pool, cancel=self._cancel,
        )

    def _get_lifecycle(self) -> VMLifecycleManager:
        if self._lifecycle is None:
            if self._pool is None:
                raise BuilderError("A thread pool is required to reach Compute Engine")
            self._lifecycle = VMLifecycleManager.create_default(
                self._config, self._project, thread_pool=self._pool, cancel=self._cancel,
            )
        return self._lifecycle

    def cancel(self) -> None:
        """Abort the build. Waits stop at their next wake-up; teardown still runs.

        Only the first call cancels the running task.
        """
        if self._cancel.is_set():
            log.warning("Cancellation already requested; waiting for teardown")
            return
        log.warning("Cancellation requested")
        self._cancel.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def run(self) -> CommandResult:
        """Run the build and return the build step's result.

        Raises:
            BuilderError: Any phase failed. An owned instance is deleted first.
            BuildCancelled: The build deadline passed or the build was cancelled.
        """
        self._task = asyncio.current_task()
        failed = True
        try:
            try:
                async with asyncio.timeout(self._config.build_timeout) as deadline:
                    host, username, password = await self._acquire_host()
                    result = await self._build(host, username, password)
            except TimeoutError as e:
                if deadline.expired():
                    raise BuildCancelled(
                        f"Build exceeded its {self._config.build_timeout:.0f}s deadline"
                    ) from e
                raise
            failed = False
            return result
        finally:
            if self._created:
                await self._teardown(failed)

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def _acquire_host(self) -> tuple[str, str, str]:
        request = self._request
        if request.reuses_host:
            log.info("Using existing Windows host {host}", host=request.host)
            return request.host, request.username, request.password  # type: ignore[return-value]

        lifecycle = self._get_lifecycle()
        log.info("Starting Windows VM")
        # The insert keeps running in its thread if this await is cancelled.
        self._created = True
        await lifecycle.create()
        await lifecycle.ensure_firewall()
        instance = await lifecycle.wait_until_running()

        username = request.username or self._config.username
        exchange = CredentialExchange(lifecycle, self._config, cancel=self._cancel)
        reset = retry(
            on=HandshakeError,
            max_attempts=self._config.handshake_attempts,
            base_delay=self._config.handshake_interval,
        )(exchange.reset_password)
        password = await reset(instance, username)
        return instance.external_ip or "", username, password

    async def _build(self, host: str, username: str, password: str) -> CommandResult:
        request = self._request
        store = self._store or GCSObjectStore(self._project)
        transfer = WorkspaceTransfer(
            store,
            bucket_name(self._project, self._config.bucket_prefix),
            prefix=self._config.bucket_prefix,
        )

        archive = await transfer.upload(request.workspace)
        results = transfer.location("results")

        session = self._session_factory(host, username, password)
        async with session.connect() as remote:
            await remote.pull_image(request.image)
            for step in await remote.transfer_in(archive):
                step.check()
            result = await remote.run_image(request.image, request.args)
            for step in await remote.transfer_out(results):
                step.check()

        await transfer.download(results, request.workspace)
        log.info(
            "Build step {image} finished with exit code {code}",
            image=request.image, code=result.exit_code,
        )
        return result

    async def _teardown(self, failed: bool) -> None:
        log.info("Shutting down Windows VM")
        try:
            await self._get_lifecycle().delete()
        except BuilderError as e:
            if not failed:
                raise
            # The build error is the one worth reporting.
            log.error("Teardown failed after build error: {err}", err=e)
