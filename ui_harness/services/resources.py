from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, List, Optional

from ui_harness.constants import (
    IS_UI_TESTING_ARGUMENT,
    MEDIA_BLOB_STORAGE_PREFIX,
    SMTP_SETTINGS_PREFIX,
)

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ui_harness.schemas import ApplicationConfiguration, ResourceConfiguration

LOGGER = logging.getLogger("ui_harness.resources")


@dataclass
class BrowserLogMessage:
    level: str
    message: str
    source: str = ""
    timestamp: Optional[datetime] = None

    def __str__(self) -> str:
        stamp = self.timestamp.isoformat() if self.timestamp else "-"
        source = f" {self.source}" if self.source else ""
        return f"{stamp} {self.level.upper()}{source} {self.message}"


@dataclass
class DatabaseContext:
    connection_string: str


@dataclass
class BlobStorageContext:
    base_path: str


@dataclass
class MailContext:
    port: int
    host: str = "localhost"
    web_ui_url: Optional[str] = None


class ApplicationInstance:
    """A running application under test.

    Implementations fire ``before_app_start`` of their configuration from ``start`` and
    ``before_take_snapshot`` from ``take_snapshot``.
    """

    def start(self) -> str:  # pragma: no cover - interface stub
        raise NotImplementedError

    def take_snapshot(self, directory: Path) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def get_log_output(self) -> str:  # pragma: no cover - interface stub
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError


class DatabaseManager:
    def create_database(self) -> DatabaseContext:  # pragma: no cover - interface stub
        raise NotImplementedError

    def take_snapshot(self, directory: Path, use_compression: bool = False) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def restore_snapshot(self, directory: Path) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError


class BlobStorageManager:
    def setup(self) -> BlobStorageContext:  # pragma: no cover - interface stub
        raise NotImplementedError

    def take_snapshot(self, directory: Path) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def restore_snapshot(self, directory: Path) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError


class MailService:
    def start(self) -> MailContext:  # pragma: no cover - interface stub
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError


class BrowserDriver:
    @property
    def url(self) -> str:  # pragma: no cover - interface stub
        raise NotImplementedError

    @property
    def page_source(self) -> str:  # pragma: no cover - interface stub
        raise NotImplementedError

    def navigate(self, url: str) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def evaluate(self, expression: str, arg: Any = None) -> Any:  # pragma: no cover - interface stub
        raise NotImplementedError

    def screenshot(self) -> bytes:  # pragma: no cover - interface stub
        raise NotImplementedError

    def get_and_empty_browser_log(self) -> List[BrowserLogMessage]:  # pragma: no cover - interface stub
        raise NotImplementedError


class AutomationScope:
    """Owns a browser session for one attempt."""

    @property
    def driver(self) -> BrowserDriver:  # pragma: no cover - interface stub
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError


@dataclass
class AttemptResources:
    """Everything one attempt owns and must release on teardown."""

    application: Optional[ApplicationInstance] = None
    database: Optional[DatabaseManager] = None
    blob_storage: Optional[BlobStorageManager] = None
    mail: Optional[MailService] = None
    scope: Optional[AutomationScope] = None
    database_context: Optional[DatabaseContext] = None
    blob_storage_context: Optional[BlobStorageContext] = None
    mail_context: Optional[MailContext] = None
    released: List[str] = field(default_factory=list)

    def release_all(self) -> List[str]:
        """Close every owned resource, returning the names of those whose release failed."""
        failures: List[str] = []
        for name in ("application", "database", "scope", "mail", "blob_storage"):
            resource = getattr(self, name)
            if resource is None:
                continue
            try:
                resource.close()
                self.released.append(name)
            except Exception as exc:
                failures.append(name)
                LOGGER.warning("Releasing %s failed: %s", name, exc, exc_info=True)
            finally:
                setattr(self, name, None)
        return failures


def update_connection_string(app_settings_path: Path, connection_string: str) -> None:
    if not app_settings_path.is_file():
        raise RuntimeError(
            f"The setup snapshot's app settings file wasn't found at {app_settings_path}. "
            "This most possibly means that the setup failed."
        )
    with app_settings_path.open("r", encoding="utf-8") as handle:
        settings = json.load(handle)
    settings["ConnectionString"] = connection_string
    with app_settings_path.open("w", encoding="utf-8") as handle:
        json.dump(settings, handle, indent=2)


def register_database_hooks(
    application: "ApplicationConfiguration",
    manager: DatabaseManager,
    context: DatabaseContext,
    *,
    for_setup: bool = False,
) -> None:
    snapshot_directory = Path(application.snapshot_directory_path)

    def _before_app_start(content_root: Path, arguments: List[str]) -> None:
        if not snapshot_directory.exists():
            return
        manager.restore_snapshot(snapshot_directory)
        update_connection_string(Path(content_root) / application.app_settings_path, context.connection_string)

    application.before_app_start.register("database", _before_app_start)

    if for_setup:

        def _before_take_snapshot(content_root: Path, directory: Path) -> None:
            manager.take_snapshot(Path(directory))

        application.before_take_snapshot.register("database", _before_take_snapshot)


def register_blob_storage_hooks(
    application: "ApplicationConfiguration",
    resources: "ResourceConfiguration",
    manager: BlobStorageManager,
    context: BlobStorageContext,
    *,
    for_setup: bool = False,
) -> None:
    snapshot_directory = Path(application.snapshot_directory_path)

    def _before_app_start(content_root: Path, arguments: List[str]) -> None:
        arguments.extend([f"{MEDIA_BLOB_STORAGE_PREFIX}:BasePath", context.base_path])
        arguments.extend([f"{MEDIA_BLOB_STORAGE_PREFIX}:ConnectionString", resources.blob_connection_string])
        arguments.extend([f"{MEDIA_BLOB_STORAGE_PREFIX}:ContainerName", resources.blob_container_name])
        if snapshot_directory.exists():
            manager.restore_snapshot(snapshot_directory)

    application.before_app_start.register("blob_storage", _before_app_start)

    if for_setup:

        def _before_take_snapshot(content_root: Path, directory: Path) -> None:
            manager.take_snapshot(Path(directory))

        application.before_take_snapshot.register("blob_storage", _before_take_snapshot)


def register_mail_hooks(application: "ApplicationConfiguration", context: MailContext) -> None:
    def _before_app_start(content_root: Path, arguments: List[str]) -> None:
        arguments.extend([f"{SMTP_SETTINGS_PREFIX}:Port", str(context.port)])
        arguments.extend([f"{SMTP_SETTINGS_PREFIX}:Host", context.host])

    application.before_app_start.register("mail", _before_app_start)


def register_ui_testing_hook(application: "ApplicationConfiguration") -> None:
    def _before_app_start(content_root: Path, arguments: List[str]) -> None:
        arguments.extend([IS_UI_TESTING_ARGUMENT, "true"])

    application.before_app_start.register("ui_testing", _before_app_start)


def unregister_snapshot_hooks(application: "ApplicationConfiguration") -> None:
    """Drop the setup-only snapshot hooks, whose managers are about to be closed or snapshotted directly."""
    for key in ("database", "blob_storage"):
        application.before_take_snapshot.unregister(key)
