"""Cloud Storage object store for workspace archives.

The bucket must already exist: it is never created here.
"""

from __future__ import annotations

import io
from functools import cached_property
from typing import TYPE_CHECKING, Protocol

from google.api_core import exceptions as gapi_exceptions
from loguru import logger

from winbuilder.core.exceptions import StorageError

if TYPE_CHECKING:
    from google.cloud.storage import Client

log = logger.bind(component="storage")


class ObjectStore(Protocol):
    """Protocol for the object store holding workspace archives."""

    def put(self, bucket: str, key: str, data: bytes) -> None:
        """Store data."""
        ...

    def get(self, bucket: str, key: str) -> bytes:
        """Retrieve data."""
        ...


class GCSObjectStore:
    """Object store backed by Google Cloud Storage."""

    def __init__(self, project: str | None = None) -> None:
        self.project = project

    @cached_property
    def _gcs(self) -> Client:
        """Lazily initialized storage client."""
        from google.cloud import storage

        return storage.Client(project=self.project)

    def put(self, bucket: str, key: str, data: bytes) -> None:
        """Stream data into ``gs://bucket/key``.

        Raises:
            StorageError: The write failed (including a missing bucket).
        """
        log.info("Writing {n} bytes to gs://{bucket}/{key}", n=len(data), bucket=bucket, key=key)
        blob = self._gcs.bucket(bucket).blob(key)
        try:
            blob.upload_from_file(
                io.BytesIO(data),
                size=len(data),
                content_type="application/zip",
            )
        except gapi_exceptions.NotFound as e:
            raise StorageError(
                f"Bucket {bucket} does not exist; create it before building"
            ) from e
        except gapi_exceptions.GoogleAPICallError as e:
            log.error("Failed to write to GCS object: {err}", err=e)
            raise StorageError(f"Could not write gs://{bucket}/{key}: {e}") from e

    def get(self, bucket: str, key: str) -> bytes:
        """Read ``gs://bucket/key``.

        Raises:
            StorageError: The object cannot be read.
        """
        blob = self._gcs.bucket(bucket).blob(key)
        try:
            data = blob.download_as_bytes()
        except gapi_exceptions.GoogleAPICallError as e:
            log.error("Failed to read GCS object: {err}", err=e)
            raise StorageError(f"Could not read gs://{bucket}/{key}: {e}") from e
        log.info("Read {n} bytes from gs://{bucket}/{key}", n=len(data), bucket=bucket, key=key)
        return data
