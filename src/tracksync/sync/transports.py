"""
Remote transports -- where the shared snapshot file lives.

Every transport stores one named blob:

    get(name) -> bytes, or None when the blob does not exist yet
    put(name, data)

Any other failure raises TransportError. A missing blob is the normal
state before the first sync, not an error.

WebDAV: any WebDAV server (Nextcloud, ownCloud, Apache mod_dav).
S3: AWS S3 or an S3-compatible endpoint (MinIO, Backblaze B2).
Local: a plain folder. For USB drives, NAS mounts, or a folder
    another tool (Syncthing, Dropbox) already replicates.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urljoin

import requests

from ..errors import TransportError
from .models import SyncSettings, SyncTarget

logger = logging.getLogger("tracksync.sync.transports")


class RemoteTransport(ABC):
    """Abstract blob store holding the shared snapshot."""

    @abstractmethod
    def get(self, name: str) -> Optional[bytes]:
        """Download a blob.

        Args:
            name: Blob name (e.g. ``opentracker_backup.json``).

        Returns:
            The blob contents, or None if it does not exist.

        Raises:
            TransportError: On network, auth, or server failure.
        """

    @abstractmethod
    def put(self, name: str, data: bytes) -> None:
        """Upload a blob, replacing any previous version.

        Raises:
            TransportError: On network, auth, or server failure.
        """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable transport name."""


class WebDavTransport(RemoteTransport):
    """WebDAV over HTTP(S) with pre-emptive basic auth.

    Credentials go out with every request instead of waiting for a
    401 challenge, which some servers mishandle for PUT bodies.
    """

    def __init__(self, settings: SyncSettings, session: Optional[requests.Session] = None):
        if not settings.host_url:
            raise ValueError("Host URL is required for WebDAV.")
        self.base_url = self._ensure_trailing_slash(settings.host_url)
        self.timeout = settings.timeout_seconds
        self.session = session or requests.Session()
        if settings.username:
            self.session.auth = (settings.username, settings.password or "")

    @property
    def name(self) -> str:
        return "webdav"

    @staticmethod
    def _ensure_trailing_slash(url: str) -> str:
        return url if url.endswith("/") else url + "/"

    def url_for(self, name: str) -> str:
        return urljoin(self.base_url, quote(name))

    def get(self, name: str) -> Optional[bytes]:
        url = self.url_for(name)
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransportError(f"WebDAV download failed: {exc}") from exc

        if resp.status_code == 404:
            logger.info("No remote snapshot at %s", url)
            return None
        if not resp.ok:
            raise TransportError(
                f"WebDAV download failed: {resp.status_code} {resp.reason}",
                status_code=resp.status_code,
            )
        return resp.content

    def put(self, name: str, data: bytes) -> None:
        url = self.url_for(name)
        try:
            resp = self.session.put(
                url,
                data=data,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"WebDAV upload failed: {exc}") from exc

        if not resp.ok:
            raise TransportError(
                f"WebDAV upload failed: {resp.status_code} {resp.reason}",
                status_code=resp.status_code,
            )
        logger.info("Uploaded %d bytes to %s", len(data), url)


class S3Transport(RemoteTransport):
    """S3 bucket transport using boto3.

    ``username``/``password`` map to the access key pair; when unset,
    boto3's usual credential chain applies. ``host_url`` selects an
    S3-compatible endpoint.
    """

    def __init__(self, settings: SyncSettings, client=None):
        if not settings.bucket_name:
            raise ValueError("Bucket name is required for S3.")
        self.settings = settings
        self.bucket = settings.bucket_name
        self._client = client

    @property
    def name(self) -> str:
        return "s3"

    def _get_client(self):
        """Create (once) a boto3 S3 client.

        Raises:
            TransportError: If boto3 is not installed.
        """
        if self._client is None:
            try:
                import boto3
            except ImportError:
                raise TransportError(
                    "S3 transport requires boto3: pip install tracksync[s3]"
                )
            self._client = boto3.client(
                "s3",
                endpoint_url=self.settings.host_url or None,
                region_name=self.settings.region or None,
                aws_access_key_id=self.settings.username or None,
                aws_secret_access_key=self.settings.password or None,
            )
        return self._client

    @staticmethod
    def _error_code(exc: Exception) -> str:
        response = getattr(exc, "response", None) or {}
        return str(response.get("Error", {}).get("Code", ""))

    def get(self, name: str) -> Optional[bytes]:
        client = self._get_client()
        try:
            obj = client.get_object(Bucket=self.bucket, Key=name)
            return obj["Body"].read()
        except Exception as exc:
            if self._error_code(exc) in ("NoSuchKey", "404", "NotFound"):
                logger.info("No remote snapshot at s3://%s/%s", self.bucket, name)
                return None
            raise TransportError(f"S3 download failed: {exc}") from exc

    def put(self, name: str, data: bytes) -> None:
        client = self._get_client()
        try:
            client.put_object(
                Bucket=self.bucket,
                Key=name,
                Body=data,
                ContentType="application/json",
            )
        except Exception as exc:
            raise TransportError(f"S3 upload failed: {exc}") from exc
        logger.info("Uploaded %d bytes to s3://%s/%s", len(data), self.bucket, name)


class LocalTransport(RemoteTransport):
    """A plain folder acting as the remote store."""

    def __init__(self, settings: SyncSettings):
        if not settings.local_path:
            raise ValueError("Local path is required for the local transport.")
        self.target = Path(settings.local_path).expanduser()

    @property
    def name(self) -> str:
        return "local"

    def get(self, name: str) -> Optional[bytes]:
        path = self.target / name
        if not path.exists():
            logger.info("No remote snapshot at %s", path)
            return None
        try:
            return path.read_bytes()
        except OSError as exc:
            raise TransportError(f"Local read failed: {exc}") from exc

    def put(self, name: str, data: bytes) -> None:
        path = self.target / name
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            self.target.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise TransportError(f"Local write failed: {exc}") from exc
        logger.info("Snapshot written to local: %s", path)


def create_transport(settings: SyncSettings) -> RemoteTransport:
    """Factory function to create the transport for the configured target.

    Args:
        settings: Sync settings.

    Returns:
        Instantiated RemoteTransport.

    Raises:
        ValueError: If the target is NONE, unsupported, or misconfigured.
    """
    factories = {
        SyncTarget.WEBDAV: WebDavTransport,
        SyncTarget.S3: S3Transport,
        SyncTarget.LOCAL: LocalTransport,
    }
    factory = factories.get(settings.target)
    if not factory:
        raise ValueError(f"Unsupported sync target: {settings.target.value}")
    return factory(settings)
