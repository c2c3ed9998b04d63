"""Process entrypoint: ``python -m winbuilder`` or ``windows-builder``.

Reads the build request from the environment (HOST, USERNAME, PASSWORD,
NAME, ARGS, PROJECT_ID, WORKSPACE); command-line flags override it.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from loguru import logger

from winbuilder.config import BuildRequest, resolve_builder_config, resolve_project
from winbuilder.core.exceptions import BuilderError
from winbuilder.logging import LogConfig, configure_logging, teardown_logging
from winbuilder.orchestrator import Orchestrator

EXIT_CANCELLED = 130

_FLAG_TO_ENV = {
    "hostname": "HOST",
    "username": "USERNAME",
    "password": "PASSWORD",
    "image": "NAME",
    "args": "ARGS",
    "project": "PROJECT_ID",
    "workspace": "WORKSPACE",
}


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="windows-builder",
        description="Run a container build step on an ephemeral Windows host",
    )
    parser.add_argument("--hostname", help="Existing Windows host (skips provisioning)")
    parser.add_argument("--username", help="Windows account on the host")
    parser.add_argument("--password", help="Password for --username")
    parser.add_argument("--image", help="Build step container image")
    parser.add_argument("--args", help="Arguments passed to the build step container")
    parser.add_argument("--project", help="GCP project id")
    parser.add_argument("--workspace", help="Local workspace directory")
    parser.add_argument(
        "--config-dir", type=Path, default=None,
        help="Directory holding winbuilder.toml (default: current directory)",
    )
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument("--log-file", default=None, help="Also write DEBUG logs to this file")
    return parser


def request_env(args: argparse.Namespace, env: dict[str, str]) -> dict[str, str]:
    """Overlay command-line flags onto the environment."""
    merged = dict(env)
    for flag, key in _FLAG_TO_ENV.items():
        value = getattr(args, flag, None)
        if value is not None:
            merged[key] = value
    return merged


async def _build(orchestrator: Orchestrator) -> int:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, orchestrator.cancel)
    result = await orchestrator.run()
    if result.success:
        return 0
    # Windows exit codes are 32-bit; keep failures non-zero after truncation.
    return result.exit_code if 0 < result.exit_code < 256 else 1


def main(argv: Sequence[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    handler_ids = configure_logging(LogConfig(level=args.log_level, file=args.log_file))
    logger.info("Starting Windows builder")
    try:
        request = BuildRequest.from_env(request_env(args, dict(os.environ)))
        config = resolve_builder_config(project_dir=args.config_dir)
        project = resolve_project(request.project)
        with ThreadPoolExecutor(
            max_workers=config.thread_pool_size, thread_name_prefix="winbuilder",
        ) as pool:
            orchestrator = Orchestrator(config, request, project, thread_pool=pool)
            return asyncio.run(_build(orchestrator))
    except BuilderError as e:
        logger.opt(exception=e).error("Build failed: {err}", err=e)
        return 1
    except asyncio.CancelledError:
        logger.warning("Build cancelled")
        return EXIT_CANCELLED
    finally:
        teardown_logging(handler_ids)


if __name__ == "__main__":
    # Run through the imported module so log records carry the
    # "winbuilder" name the sinks filter on.
    from winbuilder.__main__ import main as _main

    sys.exit(_main())
