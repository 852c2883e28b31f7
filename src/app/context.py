from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, TypeVar

from loguru import logger
from pydantic import ValidationError

from common.autostart import AutoStartIntegrator, default_launch_command
from common.errors import CorruptFormat, NotUnlocked, RMountError, TransportError
from common.gist import GistBackupClient
from common.log import setup_logging
from common.s3_client import FileInfo, ObjectStoreClient
from common.settings import Settings
from mounts.driver import MountDriver, RcloneDriver
from mounts.models import MountRecord
from mounts.reconciler import ReconciliationLoop
from mounts.registry import MountRegistry
from state.catalog import DataSourceCatalog
from state.models import AppConfig, BackupEnvelope, S3DataSource, default_mount_directory
from state.secure_store import SecureConfigStore


T = TypeVar("T")

ObjectStoreFactory = Callable[[S3DataSource], ObjectStoreClient]
BackupFactory = Callable[[str], GistBackupClient]


def _object_store_for(ds: S3DataSource) -> ObjectStoreClient:
    return ObjectStoreClient(
        endpoint=ds.endpoint, access_key=ds.access_key, secret_key=ds.secret_key, region=ds.region
    )


def mask_token(token: str) -> str:
    if not token:
        return ""
    if len(token) > 8:
        return f"{token[:4]}...{token[-4:]}"
    return "set"


@dataclass(frozen=True)
class BackupSettings:
    masked_token: str
    backup_id: str
    has_token: bool


class AppContext:
    """
    Everything a request handler needs, built once at startup and passed by
    reference. Nothing here is process-global.

    Locking
    - `_config_lock` guards `_config` and every store/driver-config write.
    - The registry has its own lock. The two are never held together: mount
      operations read what they need from the config, release the config
      lock, then call the registry.
    - Config mutations run on a deep copy that is persisted before it replaces
      `_config`, so a failed save leaves memory and disk in agreement.
    """

    def __init__(
        self,
        *,
        store: SecureConfigStore,
        driver: MountDriver,
        registry: MountRegistry,
        reconciler: ReconciliationLoop,
        autostart: AutoStartIntegrator,
        object_store_factory: ObjectStoreFactory = _object_store_for,
        backup_factory: BackupFactory = GistBackupClient,
    ) -> None:
        self._store = store
        self._driver = driver
        self._registry = registry
        self._reconciler = reconciler
        self._autostart = autostart
        self._object_store_factory = object_store_factory
        self._backup_factory = backup_factory
        self._config_lock = threading.Lock()
        self._config = AppConfig.default()

    @classmethod
    def create(cls, settings: Settings) -> "AppContext":
        store = SecureConfigStore(settings.config_file)
        driver = RcloneDriver(settings.config_dir, binary=settings.rclone_binary)
        registry = MountRegistry(
            driver, mount_directory=default_mount_directory(), settle_seconds=settings.settle_seconds
        )
        reconciler = ReconciliationLoop(driver, registry, interval=settings.poll_interval)
        return cls(
            store=store,
            driver=driver,
            registry=registry,
            reconciler=reconciler,
            autostart=AutoStartIntegrator(command=default_launch_command()),
        )

    # -------- Lifecycle --------
    def startup(self) -> None:
        with self._config_lock:
            try:
                cfg = self._store.load()
            except NotUnlocked:
                logger.info("Encrypted config present; waiting for passphrase")
                cfg = AppConfig.default()
            else:
                self._driver.write_config(cfg.data_sources)
            self._config = cfg
        self._reconciler.start()

    def shutdown(self) -> None:
        self._reconciler.stop()

    def __enter__(self) -> "AppContext":
        self.startup()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # -------- Passphrase --------
    def unlock(self, passphrase: str) -> None:
        """Set the passphrase and load the stored config.

        With no stored config, the current in-memory config is sealed under the
        new key. A wrong passphrase raises `DecryptError` and leaves the store locked.
        """
        with self._config_lock:
            self._store.unlock(passphrase)
            if self._store.exists():
                try:
                    cfg = self._store.load()
                except RMountError:
                    self._store.lock()
                    raise
            else:
                cfg = self._config
                self._store.save(cfg)
            self._config = cfg
            self._driver.write_config(cfg.data_sources)
        logger.info(f"Config unlocked ({len(cfg.data_sources)} data sources)")

    def is_unlocked(self) -> bool:
        return self._store.is_unlocked()

    def config_snapshot(self) -> AppConfig:
        with self._config_lock:
            return self._config.model_copy(deep=True)

    # -------- Data sources --------
    def list_data_sources(self) -> List[S3DataSource]:
        with self._config_lock:
            return DataSourceCatalog(self._config).list()

    def get_data_source(self, name: str) -> S3DataSource:
        with self._config_lock:
            return DataSourceCatalog(self._config).get(name)

    def add_data_source(self, ds: S3DataSource) -> None:
        self._mutate(lambda cfg: DataSourceCatalog(cfg).add(ds), sources_changed=True)
        logger.info(f"Added data source '{ds.name}'")

    def update_data_source(self, name: str, ds: S3DataSource) -> None:
        self._mutate(lambda cfg: DataSourceCatalog(cfg).update(name, ds), sources_changed=True)
        logger.info(f"Updated data source '{name}'")

    def remove_data_source(self, name: str) -> None:
        if self._registry.is_mounted(name):
            logger.warning(f"Removing data source '{name}' while it is mounted")
        self._mutate(lambda cfg: DataSourceCatalog(cfg).remove(name), sources_changed=True)
        logger.info(f"Removed data source '{name}'")

    def test_connection(self, ds: S3DataSource) -> None:
        self._object_store_factory(ds).test_connection(ds.bucket)

    def list_files(self, name: str, prefix: str = "") -> List[FileInfo]:
        ds = self.get_data_source(name)
        return self._object_store_factory(ds).list_files(ds.bucket, prefix)

    def set_mount_directory(self, path: str) -> None:
        def apply(cfg: AppConfig) -> None:
            cfg.mount_directory = path

        self._mutate(apply)

    # -------- Mounts --------
    def mount(self, name: str, remote_path: str = "") -> MountRecord:
        with self._config_lock:
            DataSourceCatalog(self._config).get(name)
            mount_directory = self._config.mount_directory
        return self._registry.mount(name, remote_path, mount_directory=mount_directory)

    def unmount(self, name: str) -> None:
        self._registry.unmount(name)

    def list_mounts(self) -> List[MountRecord]:
        return self._registry.list()

    def refresh_mounts(self) -> bool:
        return self._reconciler.tick()

    # -------- Backup --------
    def set_backup_config(self, token: str, backup_id: str = "") -> None:
        self._require_unlocked()
        if token:
            try:
                with self._backup_factory(token) as client:
                    client.test_access()
            except TransportError as exc:
                logger.warning(f"Backup access check failed; saving credentials anyway: {exc}")

        def apply(cfg: AppConfig) -> None:
            cfg.backup_token = token
            cfg.backup_id = backup_id

        self._mutate(apply)

    def backup_settings(self) -> BackupSettings:
        with self._config_lock:
            token, backup_id = self._config.backup_token, self._config.backup_id
        return BackupSettings(masked_token=mask_token(token), backup_id=backup_id, has_token=bool(token))

    def sync_to_backup(self) -> str:
        cfg = self.config_snapshot()
        if not cfg.backup_token:
            raise TransportError("Backup is not configured")
        blob = BackupEnvelope.wrap(cfg).to_json()
        with self._backup_factory(cfg.backup_token) as client:
            new_id = client.upload(blob, cfg.backup_id)

        def apply(c: AppConfig) -> None:
            c.backup_id = new_id

        self._mutate(apply)
        return new_id

    def restore_from_backup(self) -> AppConfig:
        """Replace the local config with the remote backup, keeping local backup credentials."""
        cfg = self.config_snapshot()
        if not cfg.backup_token or not cfg.backup_id:
            raise TransportError("Backup is not configured")
        with self._backup_factory(cfg.backup_token) as client:
            raw = client.download(cfg.backup_id)
        try:
            restored = BackupEnvelope.from_json(raw).unwrap()
        except (ValueError, ValidationError) as exc:
            raise CorruptFormat("Backup payload is not a valid config") from exc
        restored.backup_token = cfg.backup_token
        restored.backup_id = cfg.backup_id

        with self._config_lock:
            self._require_unlocked()
            self._commit(restored, sources_changed=True)
        logger.info(f"Restored config from backup {cfg.backup_id}")
        return restored.model_copy(deep=True)

    # -------- Autostart --------
    def set_auto_start(self, enabled: bool) -> None:
        """Register or remove the login item, then persist the flag.

        If the save fails the login item is put back the way it was.
        """
        self._require_unlocked()
        was_enabled = self._autostart.is_enabled()
        self._toggle_autostart(enabled)

        def apply(cfg: AppConfig) -> None:
            cfg.auto_start = enabled

        try:
            self._mutate(apply)
        except Exception:
            if was_enabled != enabled:
                try:
                    self._toggle_autostart(was_enabled)
                except (RMountError, OSError) as exc:
                    logger.error(f"Could not restore autostart state after a failed save: {exc}")
            raise

    def is_auto_start_enabled(self) -> bool:
        return self._autostart.is_enabled()

    # -------- Internal --------
    def _toggle_autostart(self, enabled: bool) -> None:
        if enabled:
            self._autostart.enable()
        else:
            self._autostart.disable()

    def _require_unlocked(self) -> None:
        if not self._store.is_unlocked():
            raise NotUnlocked("Set a passphrase before changing the configuration")

    def _commit(self, candidate: AppConfig, *, sources_changed: bool) -> None:
        # Caller holds _config_lock. Persist first; memory changes only on success.
        self._store.save(candidate)
        self._config = candidate
        if sources_changed:
            self._driver.write_config(candidate.data_sources)

    def _mutate(self, fn: Callable[[AppConfig], T], *, sources_changed: bool = False) -> T:
        with self._config_lock:
            self._require_unlocked()
            candidate = self._config.model_copy(deep=True)
            result = fn(candidate)
            self._commit(candidate, sources_changed=sources_changed)
            return result


def bootstrap(settings: Optional[Settings] = None) -> AppContext:
    """Configure logging and build the context from the environment."""
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level, settings.log_file)
    logger.info(f"rmount config directory: {settings.config_dir}")
    return AppContext.create(settings)
