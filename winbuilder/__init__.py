"""winbuilder - Run container build steps on an ephemeral Windows host on GCE.

Example:

    from winbuilder import BuildRequest, BuilderConfig, Orchestrator

    request = BuildRequest(image="gcr.io/my-project/msbuild", args="/p:Configuration=Release")
    with ThreadPoolExecutor(max_workers=4) as pool:
        orchestrator = Orchestrator(BuilderConfig(), request, "my-project", thread_pool=pool)
        result = asyncio.run(orchestrator.run())
"""

from winbuilder.config import BuilderConfig, BuildRequest
from winbuilder.core.exceptions import BuilderError
from winbuilder.logging import LogConfig, configure_logging, teardown_logging
from winbuilder.orchestrator import Orchestrator
from winbuilder.remote import CommandResult, RemoteSession

__version__ = "0.1.0"

__all__ = [
    "BuildRequest",
    "BuilderConfig",
    "BuilderError",
    "CommandResult",
    "LogConfig",
    "Orchestrator",
    "RemoteSession",
    "configure_logging",
    "teardown_logging",
]
