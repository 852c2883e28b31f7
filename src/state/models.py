from __future__ import annotations

import base64
import json
import re
import time
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def default_mount_directory() -> str:
    return str(Path.home() / "mounts")


def new_source_id() -> str:
    return uuid4().hex


# rclone remote names minus spaces (the `ps` fallback splits argv on whitespace).
# No leading '-', which rclone would read as a flag.
_REMOTE_NAME = re.compile(r"[\w.+@][\w.+@-]*", re.ASCII)


def validate_remote_name(name: str) -> str:
    """Reject names that rclone, a mount path or the process table cannot carry intact."""
    if name in (".", ".."):
        raise ValueError(f"invalid data source name {name!r}")
    if not _REMOTE_NAME.fullmatch(name):
        raise ValueError(
            f"invalid data source name {name!r}: use letters, digits and _ . + @ -, "
            "not starting with '-'"
        )
    return name


class _CamelModel(BaseModel):
    # JSON uses camelCase keys; Python code uses snake_case attributes.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class S3DataSource(_CamelModel):
    """
    One configured S3-compatible endpoint usable as a mount target.

    `name` is the identity: it is the rclone remote name, the mount record key
    and the catalog key. Uniqueness is enforced by `DataSourceCatalog`.
    """

    id: str = Field(default_factory=new_source_id)
    name: str = Field(..., min_length=1)
    endpoint: str = ""
    access_key: str = ""
    secret_key: str = Field(default="", repr=False)
    region: str = ""
    bucket: str = ""
    description: str = ""

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        return validate_remote_name(v)

    _check_name = field_validator("name")(classmethod(lambda cls, v: validate_remote_name(v)))


class AppConfig(_CamelModel):
    """
    Aggregate root persisted (encrypted) by `SecureConfigStore`.

    Fields
    - mount_directory: parent directory for local mount points.
    - auto_start: whether the OS should launch rmount at login.
    - backup_token / backup_id: GitHub token and gist id for remote backup.
    - data_sources: ordered list of data sources, names unique.
    """

    mount_directory: str = Field(default_factory=default_mount_directory)
    auto_start: bool = False
    backup_token: str = Field(default="", alias="gistAPIToken", repr=False)
    backup_id: str = Field(default="", alias="gistId")
    data_sources: List[S3DataSource] = Field(default_factory=list, alias="s3DataSources")

    @classmethod
    def default(cls) -> "AppConfig":
        return cls()

    def to_json_bytes(self) -> bytes:
        # Deterministic JSON: stable key order, no extra whitespace
        return json.dumps(
            self.model_dump(by_alias=True), separators=(",", ":"), sort_keys=True
        ).encode("utf-8")

    @classmethod
    def from_json_bytes(cls, data: bytes) -> "AppConfig":
        return cls.model_validate(json.loads(data.decode("utf-8")))


class KdfParams(BaseModel):
    """
    Versioned passphrase-to-key derivation parameters, stored next to the
    encrypted config as `config.kdf.json`. Only scrypt/version 1 exists today.
    """

    version: int = 1
    algorithm: str = "scrypt"
    salt: str  # base64
    n: int = 2**15
    r: int = 8
    p: int = 1

    def salt_bytes(self) -> bytes:
        return base64.b64decode(self.salt)


BACKUP_VERSION = "1.0"


class BackupEnvelope(BaseModel):
    """Remote backup payload: base64 AppConfig JSON plus version/timestamp metadata."""

    model_config = ConfigDict(populate_by_name=True)

    app_config: str = Field(..., alias="appConfig")
    timestamp: int
    version: str = BACKUP_VERSION

    @classmethod
    def wrap(cls, cfg: AppConfig, *, now: Optional[float] = None) -> "BackupEnvelope":
        encoded = base64.b64encode(cfg.to_json_bytes()).decode("ascii")
        ts = int(now if now is not None else time.time())
        return cls(app_config=encoded, timestamp=ts)

    def unwrap(self) -> AppConfig:
        return AppConfig.from_json_bytes(base64.b64decode(self.app_config))

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True), separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "BackupEnvelope":
        return cls.model_validate(json.loads(raw))
