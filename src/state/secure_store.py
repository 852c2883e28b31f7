from __future__ import annotations

import base64
import json
import os
import threading
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from loguru import logger
from pydantic import ValidationError

from common.errors import CorruptFormat, DecryptError, NotUnlocked
from common.fsutil import atomic_write_bytes

from .models import AppConfig, KdfParams


NONCE_SIZE = 12  # AES-GCM standard nonce width
KEY_SIZE = 32  # AES-256
SALT_SIZE = 16
# Binds the ciphertext to the key-derivation scheme version it was sealed under.
_AAD = b"rmount-config:v1"


def derive_key(passphrase: str, params: KdfParams) -> bytes:
    if params.version != 1 or params.algorithm != "scrypt":
        raise CorruptFormat(
            f"Unsupported key derivation scheme: {params.algorithm} v{params.version}"
        )
    try:
        kdf = Scrypt(salt=params.salt_bytes(), length=KEY_SIZE, n=params.n, r=params.r, p=params.p)
        return kdf.derive(passphrase.encode("utf-8"))
    except (ValueError, TypeError, MemoryError) as ex:
        # n must be a power of two > 1; r*p and memory use are bounded by OpenSSL.
        raise CorruptFormat(f"Unusable key derivation parameters: {ex}") from ex


def fresh_kdf_params(*, n: int, r: int, p: int) -> KdfParams:
    salt = base64.b64encode(os.urandom(SALT_SIZE)).decode("ascii")
    return KdfParams(salt=salt, n=n, r=r, p=p)


class SecureConfigStore:
    """
    Local file persistence for `AppConfig`, sealed with AES-256-GCM.

    Usage
    - `unlock(passphrase)` derives the key (scrypt over a persisted random salt).
      Nothing is verified here; a wrong passphrase shows up as `DecryptError`
      on the first `load()`.
    - `load()` returns `AppConfig.default()` when no file exists (no unlock
      needed), otherwise decrypts `nonce || ciphertext+tag`.
    - `save(cfg)` seals with a fresh random nonce and atomically replaces the file.

    Files
    - `<path>`: 12-byte nonce followed by AES-GCM ciphertext and tag.
    - `<stem>.kdf.json`: salt and scrypt parameters (`KdfParams`). Written once,
      on the first save after unlock, and reused afterwards.

    Thread-safe within one process. There is no inter-process file lock: run a
    single rmount instance per config directory.
    """

    def __init__(
        self,
        path: Path,
        *,
        scrypt_n: int = 2**15,
        scrypt_r: int = 8,
        scrypt_p: int = 1,
    ) -> None:
        self._path = Path(path)
        self._kdf_path = self._path.with_name(self._path.stem + ".kdf.json")
        self._scrypt = (scrypt_n, scrypt_r, scrypt_p)
        self._lock = threading.Lock()
        self._aead: Optional[AESGCM] = None
        self._kdf: Optional[KdfParams] = None
        self._kdf_persisted = False

    @property
    def path(self) -> Path:
        return self._path

    # -------- Key management --------
    def unlock(self, passphrase: str) -> None:
        if not passphrase:
            raise ValueError("passphrase is required")
        with self._lock:
            params = self._read_kdf_params()
            persisted = params is not None
            if params is None:
                n, r, p = self._scrypt
                params = fresh_kdf_params(n=n, r=r, p=p)
            key = derive_key(passphrase, params)
            self._aead = AESGCM(key)
            self._kdf = params
            self._kdf_persisted = persisted
        logger.debug("Config store unlocked")

    def lock(self) -> None:
        with self._lock:
            self._aead = None
            self._kdf = None
            self._kdf_persisted = False

    def is_unlocked(self) -> bool:
        with self._lock:
            return self._aead is not None

    def exists(self) -> bool:
        return self._path.exists()

    # -------- Core operations --------
    def load(self) -> AppConfig:
        """Read and decrypt the config.

        Raises:
        - NotUnlocked if the file exists but no key is set.
        - CorruptFormat if the file is shorter than the nonce or the plaintext is not a config.
        - DecryptError if authentication fails.
        """
        with self._lock:
            try:
                data = self._path.read_bytes()
            except FileNotFoundError:
                return AppConfig.default()

            if self._aead is None:
                raise NotUnlocked(f"Config store is locked; cannot read {self._path}")
            if len(data) < NONCE_SIZE:
                raise CorruptFormat(f"{self._path} is too short ({len(data)} bytes)")

            nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
            try:
                plaintext = self._aead.decrypt(nonce, ciphertext, _AAD)
            except InvalidTag as ex:
                raise DecryptError("Failed to decrypt config: wrong passphrase or tampered file") from ex

        try:
            return AppConfig.from_json_bytes(plaintext)
        except (ValueError, ValidationError) as ex:
            raise CorruptFormat("Decrypted config is not valid JSON for AppConfig") from ex

    def save(self, cfg: AppConfig) -> None:
        plaintext = cfg.to_json_bytes()
        with self._lock:
            if self._aead is None or self._kdf is None:
                raise NotUnlocked("Config store is locked; cannot save")

            if not self._kdf_persisted:
                payload = json.dumps(self._kdf.model_dump(), sort_keys=True, indent=2).encode("utf-8")
                atomic_write_bytes(self._kdf_path, payload)
                self._kdf_persisted = True

            nonce = os.urandom(NONCE_SIZE)
            sealed = nonce + self._aead.encrypt(nonce, plaintext, _AAD)
            atomic_write_bytes(self._path, sealed)
        logger.debug(f"Saved encrypted config to {self._path} ({len(cfg.data_sources)} data sources)")

    # -------- Internal --------
    def _read_kdf_params(self) -> Optional[KdfParams]:
        try:
            raw = self._kdf_path.read_bytes()
        except FileNotFoundError:
            return None
        try:
            return KdfParams.model_validate(json.loads(raw.decode("utf-8")))
        except (ValueError, ValidationError) as ex:
            raise CorruptFormat(f"Invalid key derivation parameters in {self._kdf_path}") from ex
