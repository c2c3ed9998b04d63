"""WinRM session and Windows command execution on the build host."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator, Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Protocol, TextIO, TypeAlias

import requests
from loguru import logger
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

from winbuilder.config import BuilderConfig
from winbuilder.core.exceptions import BuildCancelled, NonZeroExitError, TransportError
from winbuilder.workspace import WorkspaceArchive

log = logger.bind(component="remote")

CONFIGURE_DOCKER = "gcloud --quiet auth configure-docker"

OutputCallback: TypeAlias = Callable[[str], None]


# =============================================================================
# Command Result
# =============================================================================


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Immutable result of one remote command."""

    command: str
    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def check(self) -> CommandResult:
        """Return self, or raise NonZeroExitError if the command failed."""
        if not self.success:
            raise NonZeroExitError(self.command, self.exit_code, self.stderr)
        return self


# =============================================================================
# Command builders
# =============================================================================


def remote_path(root: str, name: str) -> str:
    """Join a file name onto a Windows directory."""
    return root.rstrip("\\") + "\\" + name


def docker_pull(name: str) -> str:
    return f"docker pull {name}"


def docker_run(name: str, args: str = "", workspace: str = "C:\\workspace") -> str:
    parts = ["docker run --rm", f"-v {workspace}:{workspace}", f"-w {workspace}", name]
    if args:
        parts.append(args)
    return " ".join(parts)


def gsutil_copy(source: str, destination: str) -> str:
    return f"gsutil cp {source} {destination}"


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _powershell(script: str) -> str:
    return f'powershell.exe -nologo -noprofile -command "& {{ {script} }}"'


def expand_archive(archive: str, destination: str) -> str:
    """PowerShell command unzipping archive into destination."""
    return _powershell(
        "Add-Type -A 'System.IO.Compression.FileSystem'; "
        f"[IO.Compression.ZipFile]::ExtractToDirectory({_ps_quote(archive)}, {_ps_quote(destination)});"
    )


def compress_directory(source: str, archive: str) -> str:
    """PowerShell command zipping source into archive."""
    return _powershell(
        "Add-Type -A 'System.IO.Compression.FileSystem'; "
        f"[IO.Compression.ZipFile]::CreateFromDirectory({_ps_quote(source)}, {_ps_quote(archive)});"
    )


# =============================================================================
# Transport
# =============================================================================


class Transport(Protocol):
    """A blocking command channel to one Windows host."""

    def run(self, command: str, on_stdout: OutputCallback, on_stderr: OutputCallback) -> int:
        """Run a command, feeding output to the callbacks. Returns the exit code."""
        ...

    def close(self) -> None: ...


def _transport_errors() -> tuple[type[BaseException], ...]:
    from winrm.exceptions import WinRMError, WinRMTransportError

    return (WinRMError, WinRMTransportError, requests.exceptions.RequestException)


class WinRMTransport:
    """One WinRM shell over HTTPS with basic auth.

    The shell is opened on construction and reused for every command until
    ``close``. Certificates are not validated: the host is ephemeral and
    its certificate self-signed.
    """

    __slots__ = ("_protocol", "_shell_id", "_host")

    def __init__(self, host: str, port: int, username: str, password: str) -> None:
        from winrm.protocol import Protocol as WinRMProtocol

        self._host = host
        log.debug("WinRM: connecting to {host}:{port} ({user})", host=host, port=port, user=username)
        self._protocol = WinRMProtocol(
            endpoint=f"https://{host}:{port}/wsman",
            transport="basic",
            username=username,
            password=password,
            server_cert_validation="ignore",
        )
        try:
            self._shell_id = self._protocol.open_shell()
        except _transport_errors() as e:
            raise TransportError(f"Could not open WinRM shell on {host}: {e}") from e
        log.debug("WinRM: shell {shell} open on {host}", shell=self._shell_id, host=host)

    def run(self, command: str, on_stdout: OutputCallback, on_stderr: OutputCallback) -> int:
        from winrm.exceptions import WinRMOperationTimeoutError

        try:
            command_id = self._protocol.run_command(self._shell_id, command)
            try:
                while True:
                    try:
                        stdout, stderr, exit_code, done = self._protocol.get_command_output_raw(
                            self._shell_id, command_id,
                        )
                    except WinRMOperationTimeoutError:
                        # Receive timed out with no output yet; keep waiting.
                        continue
                    if stdout:
                        on_stdout(stdout.decode("utf-8", errors="replace"))
                    if stderr:
                        on_stderr(stderr.decode("utf-8", errors="replace"))
                    if done:
                        return exit_code
            finally:
                self._protocol.cleanup_command(self._shell_id, command_id)
        except _transport_errors() as e:
            raise TransportError(f"WinRM command failed on {self._host}: {e}") from e

    def close(self) -> None:
        try:
            self._protocol.close_shell(self._shell_id)
        except _transport_errors() as e:
            log.warning("Error closing WinRM shell on {host}: {err}", host=self._host, err=e)


TransportFactory: TypeAlias = Callable[[str, int, str, str], Transport]


# =============================================================================
# Sessions
# =============================================================================


class RemoteSession:
    """An unconnected session to a Windows host.

    Only ``connect`` is available here; commands live on the
    ``ConnectedSession`` it yields.
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        config: BuilderConfig,
        *,
        transport_factory: TransportFactory | None = None,
        thread_pool: ThreadPoolExecutor | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        self.host = host
        self.username = username
        self._password = password
        self._config = config
        self._factory: TransportFactory = transport_factory or WinRMTransport
        self._pool = thread_pool
        self._cancel = cancel

    def __repr__(self) -> str:
        return f"RemoteSession(host={self.host!r}, username={self.username!r})"

    @property
    def port(self) -> int:
        return self._config.winrm_port

    async def _open(self) -> Transport:
        loop = asyncio.get_running_loop()
        slog = log.bind(host=self.host)

        def _log_retry(state: RetryCallState) -> None:
            err = state.outcome.exception() if state.outcome else None
            slog.warning(
                "WinRM not reachable yet (attempt {n}): {err}",
                n=state.attempt_number, err=err,
            )

        @retry(
            stop=stop_after_delay(self._config.connect_timeout),
            wait=wait_fixed(self._config.connect_interval),
            retry=retry_if_exception_type(TransportError),
            before_sleep=_log_retry,
            reraise=True,
        )
        async def _attempt() -> Transport:
            if self._cancel is not None and self._cancel.is_set():
                raise BuildCancelled("Build cancelled while connecting")
            return await loop.run_in_executor(
                self._pool, self._factory, self.host, self.port, self.username, self._password,
            )

        return await _attempt()

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[ConnectedSession]:
        """Open the transport and yield a connected session.

        The transport is closed on every exit path.

        Raises:
            TransportError: The host stayed unreachable for ``connect_timeout``.
        """
        transport = await self._open()
        log.info("Connected to {host}", host=self.host)
        try:
            yield ConnectedSession(transport, self._config, host=self.host, thread_pool=self._pool)
        finally:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(self._pool, transport.close)
            log.debug("Closed session to {host}", host=self.host)


class ConnectedSession:
    """A live session owning exactly one transport. One command at a time."""

    def __init__(
        self,
        transport: Transport,
        config: BuilderConfig,
        *,
        host: str = "",
        thread_pool: ThreadPoolExecutor | None = None,
    ) -> None:
        self._transport = transport
        self._config = config
        self._pool = thread_pool
        self._lock = asyncio.Lock()
        self._log = log.bind(host=host)

    async def run(self, command: str, stream: TextIO | None = None) -> CommandResult:
        """Run one command. Non-zero exits are logged and returned, not raised."""
        stdout: list[str] = []
        stderr: list[str] = []

        def _on_stdout(chunk: str) -> None:
            stdout.append(chunk)
            if stream is not None:
                stream.write(chunk)
                stream.flush()

        async with self._lock:
            self._log.info("Running: {cmd}", cmd=command)
            loop = asyncio.get_running_loop()
            exit_code = await loop.run_in_executor(
                self._pool, self._transport.run, command, _on_stdout, stderr.append,
            )

        result = CommandResult(
            command=command, exit_code=exit_code, stdout="".join(stdout), stderr="".join(stderr),
        )
        if not result.success:
            self._log.warning(
                "Command exited with {code}: {stderr}", code=exit_code, stderr=result.stderr.strip(),
            )
        return result

    async def pull_image(self, name: str) -> CommandResult:
        """Configure docker credentials for gcr.io, then pull the image.

        Raises:
            NonZeroExitError: The credential helper could not be configured.
        """
        (await self.run(CONFIGURE_DOCKER)).check()
        return await self.run(docker_pull(name))

    async def run_image(self, name: str, args: str = "", stream: TextIO | None = None) -> CommandResult:
        """Run the build step container over the remote workspace, streaming its output."""
        command = docker_run(name, args, self._config.remote_workspace)
        return await self.run(command, stream=stream or sys.stdout)

    async def transfer_in(self, archive: WorkspaceArchive) -> list[CommandResult]:
        """Copy the archive from storage onto the host and unzip it into the workspace."""
        local = remote_path(self._config.remote_root, archive.local_name)
        return [
            await self.run(gsutil_copy(archive.gs_url, local)),
            await self.run(expand_archive(local, self._config.remote_workspace)),
        ]

    async def transfer_out(self, archive: WorkspaceArchive) -> list[CommandResult]:
        """Zip the workspace on the host and copy it to storage."""
        local = remote_path(self._config.remote_root, archive.local_name)
        return [
            await self.run(compress_directory(self._config.remote_workspace, local)),
            await self.run(gsutil_copy(local, archive.gs_url)),
        ]
