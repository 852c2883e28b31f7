from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger
from pydantic import BaseModel

from .errors import ConnectionTestFailed, TransportError


DELIMITER = "/"
DEFAULT_REGION = "us-east-1"


class FileInfo(BaseModel):
    name: str
    path: str
    size: int = 0
    mod_time: Optional[datetime] = None
    is_dir: bool = False


def normalize_prefix(prefix: str) -> str:
    """Strip leading '/', and make a non-empty prefix end with exactly one '/'."""
    clean = prefix.lstrip(DELIMITER)
    if clean and not clean.endswith(DELIMITER):
        clean += DELIMITER
    return clean


class ObjectStoreClient:
    """
    Thin S3 client used to validate data sources and browse buckets.

    Notes
    - Pass `s3` to inject a pre-built (or fake) boto3 client; otherwise one is
      created from the endpoint/credentials.
    - Listing is one level deep: keys are grouped on '/' relative to the prefix.
    """

    def __init__(
        self,
        *,
        endpoint: str = "",
        access_key: str = "",
        secret_key: str = "",
        region: str = "",
        s3: Optional[Any] = None,
    ) -> None:
        self._s3 = s3 or boto3.client(
            "s3",
            endpoint_url=endpoint or None,
            aws_access_key_id=access_key or None,
            aws_secret_access_key=secret_key or None,
            region_name=region or DEFAULT_REGION,
            config=Config(connect_timeout=10, read_timeout=30, retries={"max_attempts": 3}),
        )

    def test_connection(self, bucket: str = "") -> None:
        """Raise ConnectionTestFailed unless the bucket (or, with no bucket, the account) is listable."""
        try:
            if not bucket:
                self._s3.list_buckets()
            else:
                self._s3.list_objects_v2(Bucket=bucket, MaxKeys=1)
        except (ClientError, BotoCoreError) as exc:
            logger.warning(f"S3 connection test failed for bucket '{bucket}': {exc}")
            raise ConnectionTestFailed(f"Connection test failed: {exc}") from exc

    def list_files(self, bucket: str, prefix: str = "") -> List[FileInfo]:
        if not bucket:
            return self._list_buckets()

        clean = normalize_prefix(prefix)
        out: List[FileInfo] = []
        try:
            paginator = self._s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=clean, Delimiter=DELIMITER):
                for cp in page.get("CommonPrefixes", []) or []:
                    full = cp["Prefix"].rstrip(DELIMITER)
                    name = full[len(clean) :] if clean and full.startswith(clean) else full
                    out.append(FileInfo(name=name, path=full, is_dir=True))
                for obj in page.get("Contents", []) or []:
                    key = obj["Key"]
                    if key.endswith(DELIMITER):
                        continue  # directory placeholder object
                    name = key[len(clean) :] if clean and key.startswith(clean) else key
                    out.append(
                        FileInfo(
                            name=name,
                            path=key,
                            size=int(obj.get("Size", 0)),
                            mod_time=obj.get("LastModified"),
                            is_dir=False,
                        )
                    )
        except (ClientError, BotoCoreError) as exc:
            raise TransportError(f"Failed to list s3://{bucket}/{clean}: {exc}") from exc
        return out

    def _list_buckets(self) -> List[FileInfo]:
        try:
            resp = self._s3.list_buckets()
        except (ClientError, BotoCoreError) as exc:
            raise TransportError(f"Failed to list buckets: {exc}") from exc
        return [
            FileInfo(name=b["Name"], path=b["Name"], is_dir=True, mod_time=b.get("CreationDate"))
            for b in resp.get("Buckets", [])
        ]
