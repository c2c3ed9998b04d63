"""Workspace archiving and transfer through Cloud Storage.

The local workspace is zipped in memory and written to
``gs://cloudbuild-windows-<project>/cloudbuild-windows-<timestamp>-<kind>.zip``.
The timestamp is RFC3339 UTC with microseconds and the ``:`` separators
dropped. The key doubles as the file name on the Windows host, so neither
builds sharing a bucket nor builds sharing a host overwrite each other.
The host copies the same object with gsutil (see ``remote``), then results
travel back the same way.
"""

from __future__ import annotations

import asyncio
import io
import os
import zipfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath

from loguru import logger

from winbuilder.core.exceptions import ArchiveError
from winbuilder.storage import ObjectStore

log = logger.bind(component="workspace")

BUCKET_PREFIX = "cloudbuild-windows"


def bucket_name(project: str, prefix: str = BUCKET_PREFIX) -> str:
    return f"{prefix}-{project}"


def key_timestamp(moment: datetime) -> str:
    """RFC3339 UTC timestamp without colons, valid in a Windows file name."""
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H%M%S.%fZ")


def object_key(kind: str, now: datetime | None = None, prefix: str = BUCKET_PREFIX) -> str:
    """Object key for one archive of a build.

    e.g. ``cloudbuild-windows-2024-03-05T070911.123456Z-workspace.zip``
    """
    return f"{prefix}-{key_timestamp(now or datetime.now(UTC))}-{kind}.zip"


def local_name(key: str) -> str:
    """File name used on the Windows host: the final segment of the key."""
    return key.rsplit("/", 1)[-1]


@dataclass(frozen=True, slots=True)
class WorkspaceArchive:
    """A zipped workspace and where it lives in Cloud Storage."""

    bucket: str
    key: str
    data: bytes = field(default=b"", repr=False)

    @property
    def local_name(self) -> str:
        return local_name(self.key)

    @property
    def gs_url(self) -> str:
        return f"gs://{self.bucket}/{self.key}"


def _raise(error: OSError) -> None:
    raise error


def zip_directory(root: Path) -> bytes:
    """Zip every file under root, with entry names relative to root.

    Any walk or read error aborts the whole archive.

    Raises:
        ArchiveError: root is missing or a file cannot be read.
    """
    root = Path(root)
    if not root.is_dir():
        raise ArchiveError(f"Workspace {root} is not a directory")

    buf = io.BytesIO()
    try:
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
                dirnames.sort()
                for filename in sorted(filenames):
                    path = Path(dirpath) / filename
                    arcname = path.relative_to(root).as_posix()
                    zf.writestr(arcname, path.read_bytes())
    except OSError as e:
        log.error("Error archiving workspace {root}: {err}", root=root, err=e)
        raise ArchiveError(f"Could not archive {root}: {e}") from e
    return buf.getvalue()


def extract_archive(data: bytes, dest: Path) -> list[str]:
    """Extract a zip into dest, refusing entries that escape it.

    Returns:
        The extracted entry names.
    """
    dest = Path(dest)
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            names = zf.namelist()
            resolved = dest.resolve()
            for name in names:
                target = (dest / PurePosixPath(name)).resolve()
                if target != resolved and resolved not in target.parents:
                    raise ArchiveError(f"Archive entry {name!r} escapes {dest}")
            dest.mkdir(parents=True, exist_ok=True)
            zf.extractall(dest)
    except zipfile.BadZipFile as e:
        raise ArchiveError(f"Invalid workspace archive: {e}") from e
    except OSError as e:
        raise ArchiveError(f"Could not extract into {dest}: {e}") from e
    return names


class WorkspaceTransfer:
    """Moves workspaces between the local tree and Cloud Storage."""

    def __init__(
        self,
        store: ObjectStore,
        bucket: str,
        *,
        started_at: datetime | None = None,
        prefix: str = BUCKET_PREFIX,
    ) -> None:
        self._store = store
        self._bucket = bucket
        self._started_at = started_at or datetime.now(UTC)
        self._prefix = prefix

    def location(self, kind: str) -> WorkspaceArchive:
        """Storage location for this build's ``kind`` archive (no data)."""
        return WorkspaceArchive(bucket=self._bucket, key=object_key(kind, self._started_at, self._prefix))

    async def upload(self, root: Path, kind: str = "workspace") -> WorkspaceArchive:
        """Zip root and write it to storage."""
        target = self.location(kind)
        data = await asyncio.to_thread(zip_directory, root)
        log.info(
            "Writing workspace {root} to {url}", root=root, url=target.gs_url,
        )
        await asyncio.to_thread(self._store.put, target.bucket, target.key, data)
        return WorkspaceArchive(bucket=target.bucket, key=target.key, data=data)

    async def download(self, archive: WorkspaceArchive, dest: Path) -> list[str]:
        """Read an archive from storage and extract it into dest."""
        data = await asyncio.to_thread(self._store.get, archive.bucket, archive.key)
        names = await asyncio.to_thread(extract_archive, data, dest)
        log.info(
            "Extracted {n} files from {url} into {dest}",
            n=len(names), url=archive.gs_url, dest=dest,
        )
        return names
