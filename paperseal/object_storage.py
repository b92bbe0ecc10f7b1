from __future__ import annotations

import os
import re
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from hashlib import sha256
from pathlib import Path
from typing import NamedTuple

from paperseal.config import env_bool

URI_SCHEME = "object://"


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


def artifact_key(*, institute_id: str, paper_id: str, filename: str, prefix: str = "") -> str:
    """Every artifact of a paper lives under its institute and paper id."""
    key = "/".join(
        (
            "institutes",
            _clean_segment(institute_id),
            "papers",
            _clean_segment(paper_id),
            _clean_segment(filename),
        )
    )
    return f"{prefix}/{key}" if prefix else key


def build_artifact_filename(*, kind: str, attempt_id: str, content_bytes: bytes, extension: str = "pdf") -> str:
    digest = sha256(content_bytes).hexdigest()[:12]
    return f"{kind}-{attempt_id}-{digest}.{extension}"


class StorageLocation(NamedTuple):
    backend: str
    bucket: str
    key: str

    @property
    def uri(self) -> str:
        return f"{URI_SCHEME}{self.backend}/{self.bucket}/{self.key}"

    @classmethod
    def parse(cls, uri: str) -> "StorageLocation":
        if not uri.startswith(URI_SCHEME):
            raise ValueError(f"not an object storage uri: {uri}")
        parts = uri[len(URI_SCHEME) :].split("/", 2)
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"malformed object storage uri: {uri}")
        return cls(*parts)


def is_storage_uri(uri: str) -> bool:
    try:
        StorageLocation.parse(uri)
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    prefix: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ObjectStorageConfig":
        env = os.environ if environ is None else environ

        def _get(name: str, default: str = "") -> str:
            return env.get(name, default).strip() or default

        return cls(
            backend=_get("PAPERSEAL_OBJECT_STORAGE_BACKEND", "local").lower(),
            bucket=_get("OBJECT_STORAGE_BUCKET", "paperseal"),
            root=_get("OBJECT_STORAGE_ROOT", "/tmp/paperseal-object-storage"),
            prefix=_get("OBJECT_STORAGE_PREFIX"),
            endpoint=_get("OBJECT_STORAGE_ENDPOINT"),
            region=_get("OBJECT_STORAGE_REGION"),
            access_key=_get("OBJECT_STORAGE_ACCESS_KEY"),
            secret_key=_get("OBJECT_STORAGE_SECRET_KEY"),
            force_path_style=env_bool(env, "OBJECT_STORAGE_FORCE_PATH_STYLE", default=True),
        )


class ObjectStorageBackend:
    """Write-once blob store for rendered artifacts, addressed by ``object://`` uris."""

    backend_name = "base"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._bucket = config.bucket
        self._prefix = config.prefix.strip("/")

    def put_object(
        self,
        *,
        institute_id: str,
        paper_id: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        location = StorageLocation(
            backend=self.backend_name,
            bucket=self._bucket,
            key=artifact_key(institute_id=institute_id, paper_id=paper_id, filename=filename, prefix=self._prefix),
        )
        self._write(location, content_bytes, content_type or "application/octet-stream")
        return location.uri

    def get_object(self, *, storage_uri: str) -> bytes:
        return self._read(self._locate(storage_uri))

    def delete_object(self, *, storage_uri: str) -> bool:
        return self._delete(self._locate(storage_uri))

    def _locate(self, storage_uri: str) -> StorageLocation:
        location = StorageLocation.parse(storage_uri)
        if location.backend != self.backend_name:
            raise ValueError(f"uri belongs to the {location.backend} backend, not {self.backend_name}")
        return location

    def _write(self, location: StorageLocation, content_bytes: bytes, content_type: str) -> None:
        raise NotImplementedError

    def _read(self, location: StorageLocation) -> bytes:
        raise NotImplementedError

    def _delete(self, location: StorageLocation) -> bool:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorageBackend):
    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        super().__init__(config=config)
        self._root = Path(config.root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, location: StorageLocation) -> Path:
        return self._root / location.bucket / location.key

    def _write(self, location: StorageLocation, content_bytes: bytes, content_type: str) -> None:
        path = self._path(location)
        path.parent.mkdir(parents=True, exist_ok=True)
        # readers never see a half-written artifact
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
        with os.fdopen(fd, "wb") as handle:
            handle.write(content_bytes)
        os.replace(tmp_name, path)

    def _read(self, location: StorageLocation) -> bytes:
        path = self._path(location)
        if not path.exists():
            raise FileNotFoundError(location.uri)
        return path.read_bytes()

    def _delete(self, location: StorageLocation) -> bool:
        try:
            self._path(location).unlink()
        except FileNotFoundError:
            return False
        return True

    def reset(self) -> None:
        if self._root.exists():
            shutil.rmtree(self._root)
        self._root.mkdir(parents=True, exist_ok=True)


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        super().__init__(config=config)
        try:
            import boto3  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 object storage backend") from exc
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=boto3.session.Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )

    def _write(self, location: StorageLocation, content_bytes: bytes, content_type: str) -> None:
        self._client.put_object(
            Bucket=location.bucket,
            Key=location.key,
            Body=content_bytes,
            ContentType=content_type,
        )

    def _read(self, location: StorageLocation) -> bytes:
        response = self._client.get_object(Bucket=location.bucket, Key=location.key)
        return response["Body"].read()

    def _delete(self, location: StorageLocation) -> bool:
        # s3 deletes are idempotent and do not report whether the key existed
        self._client.delete_object(Bucket=location.bucket, Key=location.key)
        return True


def create_object_storage_from_env(environ: Mapping[str, str] | None = None) -> ObjectStorageBackend:
    config = ObjectStorageConfig.from_env(environ)
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    return LocalObjectStorage(config=config)
