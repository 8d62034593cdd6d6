from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, List, Optional
from urllib.parse import urljoin

from ui_harness.errors import AccessibilityAssertionError, HtmlValidationError
from ui_harness.services.monkey import MonkeyTester
from ui_harness.services.output import CapturedOutput
from ui_harness.services.resources import (
    ApplicationInstance,
    AutomationScope,
    BlobStorageContext,
    BrowserDriver,
    BrowserLogMessage,
    DatabaseContext,
    MailContext,
)
from ui_harness.templating import get_violations, render_accessibility_report

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ui_harness.schemas import ExecutorConfiguration, MonkeyTestingOptions

LOGGER = logging.getLogger("ui_harness.context")


class UITestContext:
    """What a test body gets to work with during one attempt."""

    __test__ = False

    def __init__(
        self,
        test_name: str,
        configuration: "ExecutorConfiguration",
        application: ApplicationInstance,
        scope: AutomationScope,
        base_url: str,
        output: CapturedOutput,
        *,
        database_context: Optional[DatabaseContext] = None,
        blob_storage_context: Optional[BlobStorageContext] = None,
        mail_context: Optional[MailContext] = None,
    ) -> None:
        self.test_name = test_name
        self.configuration = configuration
        self.application = application
        self.scope = scope
        self.base_url = base_url
        self.output = output
        self.database_context = database_context
        self.blob_storage_context = blob_storage_context
        self.mail_context = mail_context
        self._browser_log: List[BrowserLogMessage] = []
        self.last_accessibility_result: Optional[Any] = None

    @property
    def driver(self) -> BrowserDriver:
        return self.scope.driver

    def go_to_relative_url(self, relative_url: str) -> None:
        target = urljoin(self.base_url.rstrip("/") + "/", relative_url.lstrip("/"))
        self.output.write_line("Navigating to %s.", target)
        self.driver.navigate(target)

    def update_historic_browser_log(self) -> List[BrowserLogMessage]:
        """Move the driver's pending console messages into the per-attempt history and return it.

        Drivers hand out each message once, so the history is the only complete record.
        """
        self._browser_log.extend(self.driver.get_and_empty_browser_log())
        return list(self._browser_log)

    @property
    def historic_browser_log(self) -> List[BrowserLogMessage]:
        return list(self._browser_log)

    def run_accessibility_check(self) -> Optional[Any]:
        settings = self.configuration.accessibility
        if settings.checker is None:
            return None
        result = settings.checker(self.driver)
        self.last_accessibility_result = result
        if settings.create_report_always:
            directory = Path(settings.always_created_reports_directory_path)
            name = re.sub(r"[^\w.-]+", "_", self.test_name).strip("_") or "report"
            render_accessibility_report(result, directory / f"{name}.html", title=self.test_name)
        return result

    def assert_accessibility(self) -> None:
        settings = self.configuration.accessibility
        result = self.run_accessibility_check()
        if result is None:
            return
        if settings.assert_result is not None:
            settings.assert_result(result)
            return
        violations = get_violations(result)
        if violations:
            summary = ", ".join(str(item.get("id", "?")) for item in violations)
            raise AccessibilityAssertionError(
                f"Found {len(violations)} accessibility violation(s): {summary}", axe_result=result
            )

    def assert_html_validity(self) -> None:
        validator = self.configuration.html_validation.validator
        if validator is None:
            return
        errors = list(validator(self.driver.page_source) or [])
        if errors:
            raise HtmlValidationError(
                "HTML validation failed:\n" + "\n".join(str(error) for error in errors), errors=errors
            )

    def test_monkey(self, options: Optional["MonkeyTestingOptions"] = None) -> None:
        MonkeyTester(self, options or self.configuration.monkey_testing).test()
