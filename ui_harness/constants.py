from __future__ import annotations

import os
from pathlib import Path

DEFAULT_MAX_RETRY_COUNT = 2
DEFAULT_DUMPS_DIRECTORY = Path(os.environ.get("UI_HARNESS_DUMPS_ROOT", "FailureDumps"))
DEFAULT_RESULTS_PATH = Path(os.environ.get("UI_HARNESS_RESULTS_PATH", "ui_harness_results.json"))
DEFAULT_SNAPSHOT_DIRECTORY = Path("Temp") / "SetupSnapshot"
DEFAULT_ACCESSIBILITY_REPORTS_DIRECTORY = Path("AccessibilityReports")
DEFAULT_APP_SETTINGS_PATH = Path("App_Data") / "Sites" / "Default" / "appsettings.json"

# Conservative default that keeps dump paths usable on platforms without long-path support.
DEFAULT_MAX_PATH_LENGTH = 200

SNAPSHOT_RECORD_FILENAME = "SetupSnapshot.json"
TEST_NAME_FILENAME = "TestName.txt"
ATTEMPT_FOLDER_PREFIX = "Attempt "
APP_DUMP_FOLDER = "AppDump"
DEBUG_INFORMATION_FOLDER = "DebugInformation"
SCREENSHOT_FILENAME = "Screenshot.png"
PAGE_SOURCE_FILENAME = "PageSource.html"
BROWSER_LOG_FILENAME = "BrowserLog.log"
ACCESSIBILITY_REPORT_FILENAME = "AccessibilityReport.html"
TEST_OUTPUT_FILENAME = "TestOutput.log"

ARGUMENT_PREFIX = "--UITesting"
SMTP_SETTINGS_PREFIX = f"{ARGUMENT_PREFIX}_SmtpSettings"
MEDIA_BLOB_STORAGE_PREFIX = f"{ARGUMENT_PREFIX}_MediaBlobStorageOptions"
IS_UI_TESTING_ARGUMENT = f"{ARGUMENT_PREFIX}:IsUITesting"

DEFAULT_PAGE_TEST_TIME_SECONDS = 60.0
DEFAULT_BASE_RANDOM_SEED = 1234
DEFAULT_PAGE_MARKER_POLLING_INTERVAL_SECONDS = 0.2
DEFAULT_GREMLINS_ATTACK_DELAY_MS = 10
DEFAULT_GREMLINS_SPECIES = ["clicker", "toucher", "formFiller", "scroller", "typer"]
DEFAULT_GREMLINS_MOGWAIS = ["alert", "gizmo"]
DEFAULT_VOLATILE_QUERY_PARAMETERS = ["returnUrl"]
