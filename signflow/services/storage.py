from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import ClientError

from signflow.core.config import settings


def resolve_storage_root() -> Path:
    """Directory that holds source documents and rendered artifacts."""
    raw = os.getenv("SIGNFLOW_STORAGE") or settings.signflow_storage or "_storage"
    return Path(raw).expanduser().resolve()


class StorageBackend(Protocol):
    def save_bytes(self, *, root: str, name: str, data: bytes) -> str:  # returns storage path/URL
        ...

    def load_bytes(self, path: str) -> bytes:
        ...

    def exists(self, path: str) -> bool:
        ...


@dataclass
class LocalStorage:
    base_dir: Path

    def __post_init__(self) -> None:
        self.base_dir = Path(self.base_dir).expanduser().resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        file_path = Path(path)
        return file_path if file_path.is_absolute() else self.base_dir / file_path

    def save_bytes(self, *, root: str, name: str, data: bytes) -> str:
        target_dir = self.base_dir / root
        target_dir.mkdir(parents=True, exist_ok=True)
        file_path = target_dir / name
        # Write-then-rename so a concurrent reader never sees a partial artifact.
        tmp_path = file_path.with_name(f"{file_path.name}.{uuid4().hex}.tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, file_path)
        return str(file_path.relative_to(self.base_dir).as_posix())

    def load_bytes(self, path: str) -> bytes:
        file_path = self._resolve(path)
        if not file_path.exists():
            raise FileNotFoundError(f"File {path!r} was not found in the configured storage.")
        return file_path.read_bytes()

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()


@dataclass
class S3Storage:
    bucket: str
    client: Any

    @staticmethod
    def _split(path: str) -> tuple[str, str]:
        if not path.startswith("s3://"):
            raise ValueError("Expected s3:// path for S3 storage")
        _, rest = path.split("s3://", 1)
        bucket, key = rest.split("/", 1)
        return bucket, key

    def save_bytes(self, *, root: str, name: str, data: bytes) -> str:
        key = f"{root.strip('/')}/{name}"
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data)
        return f"s3://{self.bucket}/{key}"

    def load_bytes(self, path: str) -> bytes:
        bucket, key = self._split(path)
        response = self.client.get_object(Bucket=bucket, Key=key)
        body = response.get("Body")
        return body.read() if body else b""

    def exists(self, path: str) -> bool:
        if not path.startswith("s3://"):
            return False
        bucket, key = self._split(path)
        try:
            self.client.head_object(Bucket=bucket, Key=key)
        except ClientError:
            return False
        return True


def get_storage() -> StorageBackend:
    # Tests and explicit local paths never reach S3.
    if os.getenv("PYTEST_CURRENT_TEST") or os.getenv("SIGNFLOW_STORAGE"):
        return LocalStorage(base_dir=resolve_storage_root())

    if settings.s3_endpoint_url and settings.s3_access_key and settings.s3_secret_key and settings.s3_bucket_artifacts:
        client = boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url,
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
            config=BotoConfig(signature_version="s3v4"),
            region_name=os.getenv("AWS_REGION", "us-east-1"),
        )
        return S3Storage(bucket=settings.s3_bucket_artifacts, client=client)

    return LocalStorage(base_dir=resolve_storage_root())
