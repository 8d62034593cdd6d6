from __future__ import annotations

import hashlib
import io
import logging
import re
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional

from PIL import Image

from ui_harness.constants import (
    ACCESSIBILITY_REPORT_FILENAME,
    APP_DUMP_FOLDER,
    ATTEMPT_FOLDER_PREFIX,
    BROWSER_LOG_FILENAME,
    DEBUG_INFORMATION_FOLDER,
    PAGE_SOURCE_FILENAME,
    SCREENSHOT_FILENAME,
    TEST_NAME_FILENAME,
    TEST_OUTPUT_FILENAME,
)
from ui_harness.errors import AccessibilityAssertionError
from ui_harness.services.output import CapturedOutput
from ui_harness.services.resources import AttemptResources, BrowserLogMessage
from ui_harness.templating import render_accessibility_report

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ui_harness.schemas import ExecutorConfiguration, FailureDumpConfiguration
    from ui_harness.services.context import UITestContext

LOGGER = logging.getLogger("ui_harness.dumps")

_UNFRIENDLY_CHARACTERS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def make_file_system_friendly(name: str) -> str:
    cleaned = _UNFRIENDLY_CHARACTERS.sub("_", name).strip().rstrip(".")
    return cleaned or "_"


def shorten_test_name(name: str) -> str:
    """Drop the dotted namespace in front of a parameterized name, e.g. ``a.b.Test(1)`` -> ``Test(1)``."""
    if "(" not in name:
        return name
    head = name[: name.index("(")]
    return name[head.rfind(".") + 1:]


def truncate_with_digest(name: str) -> str:
    """Keep the first 32 characters of a name and append the SHA-256 digest of the whole name."""
    return f"{name[:32]}-{_sha256(name)}"


def hash_parameters(name: str) -> str:
    """Replace the parenthesized parameters of a name with their SHA-256 digest.

    Names without parameters keep a prefix and get the digest of the whole name appended.
    """
    opening = name.find("(")
    closing = name.rfind(")")
    if opening == -1 or closing < opening:
        return truncate_with_digest(name)
    digest = _sha256(name[opening + 1: closing + 1])
    return name[: opening + 1] + digest + name[closing:]


def dump_folder_name(test_name: str, dumps_directory: Path, configuration: "FailureDumpConfiguration") -> str:
    name = test_name
    if configuration.use_short_names:
        name = shorten_test_name(name)
    name = make_file_system_friendly(name)
    root = Path(dumps_directory).resolve()
    if len(str(root / name)) <= configuration.max_path_length:
        return name
    hashed = hash_parameters(name)
    if len(str(root / hashed)) <= configuration.max_path_length:
        return hashed
    return truncate_with_digest(name)


def prepare_dump_root(test_name: str, configuration: "FailureDumpConfiguration", output: Optional[CapturedOutput] = None) -> Path:
    dumps_directory = Path(configuration.dumps_directory_path)
    friendly = make_file_system_friendly(
        shorten_test_name(test_name) if configuration.use_short_names else test_name
    )
    name = dump_folder_name(test_name, dumps_directory, configuration)
    dump_root = dumps_directory / name
    if dump_root.exists():
        shutil.rmtree(dump_root, ignore_errors=True)
    if name != friendly:
        message = (
            "Couldn't create a folder with the same name as the test. A %s file containing the full name (%s) "
            "will be put into the folder to help troubleshooting if the test fails."
        )
        if output is not None:
            output.write_line(message, TEST_NAME_FILENAME, test_name)
        else:
            LOGGER.info(message, TEST_NAME_FILENAME, test_name)
    return dump_root


def attempt_folder(dump_root: Path, attempt_index: int) -> Path:
    return dump_root / f"{ATTEMPT_FOLDER_PREFIX}{attempt_index}"


class FailureDumpWriter:
    """Best-effort capture of diagnostics for a failed attempt. Never raises."""

    def __init__(self, test_name: str, configuration: "ExecutorConfiguration", output: CapturedOutput) -> None:
        self._test_name = test_name
        self._configuration = configuration
        self._output = output

    def _capture(self, label: str, action: Callable[[], None]) -> bool:
        try:
            action()
            return True
        except Exception as exc:
            self._output.write_line("%s failed with the following exception: %r", label, exc)
            LOGGER.debug("%s failed for %s", label, self._test_name, exc_info=True)
            return False

    def write(
        self,
        error: BaseException,
        dump_root: Path,
        attempt_index: int,
        context: Optional["UITestContext"],
        resources: AttemptResources,
        browser_log: Callable[[], List[BrowserLogMessage]],
    ) -> Path:
        dump_settings = self._configuration.failure_dump
        container = attempt_folder(dump_root, attempt_index)
        debug_information = container / DEBUG_INFORMATION_FOLDER

        def _prepare() -> None:
            debug_information.mkdir(parents=True, exist_ok=True)
            (dump_root / TEST_NAME_FILENAME).write_text(self._test_name, encoding="utf-8")

        prepared = self._capture("Creating the failure dump folder", _prepare)

        if prepared and context is not None:
            if dump_settings.capture_app_snapshot:
                self._capture_app_snapshot(container / APP_DUMP_FOLDER, context, resources)
            if dump_settings.capture_screenshot:
                self._capture(
                    "Capturing the screenshot",
                    lambda: self._save_screenshot(context.driver.screenshot(), debug_information / SCREENSHOT_FILENAME),
                )
            if dump_settings.capture_html_source:
                self._capture(
                    "Saving the page source",
                    lambda: (debug_information / PAGE_SOURCE_FILENAME).write_text(
                        context.driver.page_source, encoding="utf-8"
                    ),
                )
            if dump_settings.capture_browser_log:
                self._capture(
                    "Saving the browser log",
                    lambda: (debug_information / BROWSER_LOG_FILENAME).write_text(
                        "".join(f"{message}\n" for message in browser_log()), encoding="utf-8"
                    ),
                )
            if (
                isinstance(error, AccessibilityAssertionError)
                and self._configuration.accessibility.create_report_on_failure
            ):
                self._capture(
                    "Creating the accessibility report",
                    lambda: render_accessibility_report(
                        error.axe_result, debug_information / ACCESSIBILITY_REPORT_FILENAME, title=self._test_name
                    ),
                )

        # Last, so that messages about the captures above are included.
        try:
            self._output.save(debug_information / TEST_OUTPUT_FILENAME)
        except Exception as exc:
            LOGGER.warning("Saving the test output of %s failed: %s", self._test_name, exc)
        return container

    def _capture_app_snapshot(self, app_dump: Path, context: "UITestContext", resources: AttemptResources) -> None:
        if not self._capture("Taking the application snapshot", lambda: context.application.take_snapshot(app_dump)):
            return
        if resources.database is not None:
            self._capture(
                "Taking a database snapshot",
                lambda: resources.database.take_snapshot(app_dump, use_compression=True),
            )
        if resources.blob_storage is not None:
            self._capture(
                "Taking a blob storage snapshot",
                lambda: resources.blob_storage.take_snapshot(app_dump),
            )

    @staticmethod
    def _save_screenshot(data: bytes, path: Path) -> None:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            if image.mode not in ("RGB", "RGBA"):
                image = image.convert("RGBA")
            image.save(path, format="PNG")
