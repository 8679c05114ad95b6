from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

_URI_SCHEME = "object://"
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _clean_segment(value: str) -> str:
    return _UNSAFE.sub("_", value.strip()) or "object"


def asset_key(*, owner_id: str, object_id: str, filename: str, prefix: str = "") -> str:
    """Key for one uploaded document; owners never share a key prefix."""
    parts = [
        "owners",
        _clean_segment(owner_id),
        "documents",
        _clean_segment(object_id),
        _clean_segment(filename),
    ]
    if prefix:
        parts.insert(0, prefix)
    return "/".join(parts)


@dataclass(frozen=True)
class StorageUri:
    backend: str
    bucket: str
    key: str

    @classmethod
    def parse(cls, raw: str) -> "StorageUri":
        if not raw.startswith(_URI_SCHEME):
            raise ValueError("invalid storage uri")
        pieces = raw[len(_URI_SCHEME) :].split("/", 2)
        if len(pieces) != 3 or not all(pieces):
            raise ValueError("invalid storage uri")
        return cls(backend=pieces[0], bucket=pieces[1], key=pieces[2])

    def __str__(self) -> str:
        return f"{_URI_SCHEME}{self.backend}/{self.bucket}/{self.key}"


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
            return str(env.get(name, default)).strip()

        return cls(
            backend=_get("TAXFLOW_OBJECT_STORAGE_BACKEND", "local").lower() or "local",
            bucket=_get("OBJECT_STORAGE_BUCKET", "taxflow") or "taxflow",
            root=_get("OBJECT_STORAGE_ROOT") or "/tmp/taxflow-object-storage",
            prefix=_get("OBJECT_STORAGE_PREFIX").strip("/"),
            endpoint=_get("OBJECT_STORAGE_ENDPOINT"),
            region=_get("OBJECT_STORAGE_REGION"),
            access_key=_get("OBJECT_STORAGE_ACCESS_KEY"),
            secret_key=_get("OBJECT_STORAGE_SECRET_KEY"),
            force_path_style=_get("OBJECT_STORAGE_FORCE_PATH_STYLE", "true").lower()
            not in {"0", "false", "no", "off"},
        )


class ObjectStorageBackend:
    """Stores the raw bytes behind withholding records.

    Every ``put_object`` returns a ``object://<backend>/<bucket>/<key>`` uri which
    is what records keep in ``file_path``; reads and deletes take that uri back.
    """

    backend_name = "base"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self.config = config

    def put_object(
        self,
        *,
        owner_id: str,
        object_id: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        raise NotImplementedError

    def get_object(self, *, storage_uri: str) -> bytes:
        raise NotImplementedError

    def delete_object(self, *, storage_uri: str) -> bool:
        raise NotImplementedError

    def _new_uri(self, *, owner_id: str, object_id: str, filename: str) -> StorageUri:
        key = asset_key(owner_id=owner_id, object_id=object_id, filename=filename, prefix=self.config.prefix)
        return StorageUri(backend=self.backend_name, bucket=self.config.bucket, key=key)

    def _own_uri(self, storage_uri: str) -> StorageUri:
        uri = StorageUri.parse(storage_uri)
        if uri.backend != self.backend_name:
            raise ValueError(f"uri belongs to {uri.backend} storage, not {self.backend_name}")
        return uri


class LocalObjectStorage(ObjectStorageBackend):
    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        super().__init__(config=config)
        self.root = Path(config.root)
        self.root.mkdir(parents=True, exist_ok=True)

    def put_object(
        self,
        *,
        owner_id: str,
        object_id: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        uri = self._new_uri(owner_id=owner_id, object_id=object_id, filename=filename)
        target = self._resolve(uri)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content_bytes)
        return str(uri)

    def get_object(self, *, storage_uri: str) -> bytes:
        target = self._resolve(self._own_uri(storage_uri))
        if not target.is_file():
            raise FileNotFoundError(storage_uri)
        return target.read_bytes()

    def delete_object(self, *, storage_uri: str) -> bool:
        target = self._resolve(self._own_uri(storage_uri))
        if not target.is_file():
            return False
        target.unlink()
        return True

    def reset(self) -> None:
        # Deepest paths first so directories are empty by the time we reach them.
        for entry in sorted(self.root.rglob("*"), key=lambda p: len(p.parts), reverse=True):
            if entry.is_dir():
                entry.rmdir()
            else:
                entry.unlink()

    def _resolve(self, uri: StorageUri) -> Path:
        return self.root.joinpath(uri.bucket, *uri.key.split("/"))


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        try:
            import boto3  # type: ignore
            from botocore.config import Config  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 object storage; install taxflow-pipeline[s3]") from exc
        super().__init__(config=config)
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        addressing = "path" if config.force_path_style else "auto"
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=Config(s3={"addressing_style": addressing}),
        )

    def put_object(
        self,
        *,
        owner_id: str,
        object_id: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        uri = self._new_uri(owner_id=owner_id, object_id=object_id, filename=filename)
        self._client.put_object(
            Bucket=uri.bucket,
            Key=uri.key,
            Body=content_bytes,
            ContentType=content_type or "application/octet-stream",
        )
        return str(uri)

    def get_object(self, *, storage_uri: str) -> bytes:
        uri = self._own_uri(storage_uri)
        response = self._client.get_object(Bucket=uri.bucket, Key=uri.key)
        return response["Body"].read()

    def delete_object(self, *, storage_uri: str) -> bool:
        # S3 deletes are idempotent; a missing key is not reported.
        uri = self._own_uri(storage_uri)
        self._client.delete_object(Bucket=uri.bucket, Key=uri.key)
        return True


def create_object_storage_from_env(environ: Mapping[str, str] | None = None) -> ObjectStorageBackend:
    config = ObjectStorageConfig.from_env(environ)
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    if config.backend != "local":
        raise RuntimeError(f"unsupported object storage backend: {config.backend}")
    return LocalObjectStorage(config=config)
