from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional

from pydantic import BaseModel, Field

from ui_harness.constants import (
    DEFAULT_ACCESSIBILITY_REPORTS_DIRECTORY,
    DEFAULT_APP_SETTINGS_PATH,
    DEFAULT_BASE_RANDOM_SEED,
    DEFAULT_DUMPS_DIRECTORY,
    DEFAULT_GREMLINS_ATTACK_DELAY_MS,
    DEFAULT_GREMLINS_MOGWAIS,
    DEFAULT_GREMLINS_SPECIES,
    DEFAULT_MAX_PATH_LENGTH,
    DEFAULT_MAX_RETRY_COUNT,
    DEFAULT_PAGE_MARKER_POLLING_INTERVAL_SECONDS,
    DEFAULT_PAGE_TEST_TIME_SECONDS,
    DEFAULT_SNAPSHOT_DIRECTORY,
    DEFAULT_VOLATILE_QUERY_PARAMETERS,
)
from ui_harness.services.assertions import (
    assert_app_logs_can_contain_warnings,
    assert_browser_log_is_empty,
)
from ui_harness.services.hooks import ResourceHookRegistry
from ui_harness.services.urls import RemoveFragment, RemoveQueryParameters, StartsWithBaseUrl


class ResultStatus(str, Enum):
    passed = "passed"
    failed = "failed"


class TestResult(BaseModel):
    __test__ = False

    name: str
    status: ResultStatus
    attempts: int = Field(default=1, ge=1)
    dump_root: Optional[str] = None
    error: Optional[str] = None
    started_at: str
    completed_at: str

    model_config = {"from_attributes": True}


class DumpAttempt(BaseModel):
    index: int
    files: List[str] = Field(default_factory=list)


class DumpSummary(BaseModel):
    folder: str
    test_name: Optional[str] = None
    attempts: List[DumpAttempt] = Field(default_factory=list)


class FailureDumpConfiguration(BaseModel):
    dumps_directory_path: Path = DEFAULT_DUMPS_DIRECTORY
    use_short_names: bool = True
    max_path_length: int = Field(default=DEFAULT_MAX_PATH_LENGTH, ge=32)
    capture_app_snapshot: bool = True
    capture_screenshot: bool = True
    capture_html_source: bool = True
    capture_browser_log: bool = True


class SetupConfiguration(BaseModel):
    # Receives the execution context and returns the relative URL tests continue from.
    setup_operation: Optional[Callable[..., Any]] = None
    fast_fail_setup: bool = True
    before_setup: Optional[Callable[..., Any]] = None
    fingerprint: Optional[str] = None
    lock_timeout_seconds: Optional[float] = Field(default=3600.0, gt=0)

    model_config = {"arbitrary_types_allowed": True}


class ApplicationConfiguration(BaseModel):
    # (ApplicationConfiguration, CapturedOutput) -> ApplicationInstance
    application_factory: Optional[Callable[..., Any]] = None
    snapshot_directory_path: Path = DEFAULT_SNAPSHOT_DIRECTORY
    app_settings_path: Path = DEFAULT_APP_SETTINGS_PATH
    before_app_start: ResourceHookRegistry = Field(
        default_factory=lambda: ResourceHookRegistry("before_app_start")
    )
    before_take_snapshot: ResourceHookRegistry = Field(
        default_factory=lambda: ResourceHookRegistry("before_take_snapshot")
    )

    model_config = {"arbitrary_types_allowed": True}


class ResourceConfiguration(BaseModel):
    use_database: bool = False
    database_factory: Optional[Callable[[], Any]] = None
    use_blob_storage: bool = False
    blob_storage_factory: Optional[Callable[[], Any]] = None
    blob_connection_string: str = ""
    blob_container_name: str = "media"
    use_mail_service: bool = False
    mail_service_factory: Optional[Callable[[], Any]] = None

    model_config = {"arbitrary_types_allowed": True}


class AccessibilityCheckingConfiguration(BaseModel):
    # driver -> result object exposing ``violations``
    checker: Optional[Callable[[Any], Any]] = None
    # result -> None; raises AccessibilityAssertionError
    assert_result: Optional[Callable[[Any], None]] = None
    create_report_on_failure: bool = True
    create_report_always: bool = False
    always_created_reports_directory_path: Path = DEFAULT_ACCESSIBILITY_REPORTS_DIRECTORY

    model_config = {"arbitrary_types_allowed": True}


class HtmlValidationConfiguration(BaseModel):
    # page source -> list of error messages
    validator: Optional[Callable[[str], List[str]]] = None

    model_config = {"arbitrary_types_allowed": True}


class MonkeyTestingOptions(BaseModel):
    page_test_time_seconds: float = Field(default=DEFAULT_PAGE_TEST_TIME_SECONDS, gt=0)
    base_random_seed: int = DEFAULT_BASE_RANDOM_SEED
    page_marker_polling_interval_seconds: float = Field(
        default=DEFAULT_PAGE_MARKER_POLLING_INTERVAL_SECONDS, gt=0
    )
    gremlins_attack_delay_ms: int = Field(default=DEFAULT_GREMLINS_ATTACK_DELAY_MS, gt=0)
    gremlins_species: List[str] = Field(default_factory=lambda: list(DEFAULT_GREMLINS_SPECIES))
    gremlins_mogwais: List[str] = Field(default_factory=lambda: list(DEFAULT_GREMLINS_MOGWAIS))
    run_accessibility_checking_assertion: bool = True
    run_html_validation_assertion: bool = True
    url_filters: List[Any] = Field(default_factory=lambda: [StartsWithBaseUrl()])
    url_cleaners: List[Any] = Field(
        default_factory=lambda: [RemoveFragment(), RemoveQueryParameters(*DEFAULT_VOLATILE_QUERY_PARAMETERS)]
    )

    model_config = {"arbitrary_types_allowed": True}


class ExecutorConfiguration(BaseModel):
    max_retry_count: int = Field(default=DEFAULT_MAX_RETRY_COUNT, ge=0)
    failure_dump: FailureDumpConfiguration = Field(default_factory=FailureDumpConfiguration)
    setup: SetupConfiguration = Field(default_factory=SetupConfiguration)
    application: ApplicationConfiguration = Field(default_factory=ApplicationConfiguration)
    resources: ResourceConfiguration = Field(default_factory=ResourceConfiguration)
    accessibility: AccessibilityCheckingConfiguration = Field(default_factory=AccessibilityCheckingConfiguration)
    html_validation: HtmlValidationConfiguration = Field(default_factory=HtmlValidationConfiguration)
    monkey_testing: MonkeyTestingOptions = Field(default_factory=MonkeyTestingOptions)
    # (base_url, ExecutorConfiguration, CapturedOutput) -> AutomationScope
    scope_factory: Optional[Callable[..., Any]] = None
    assert_app_logs: Optional[Callable[[Any], None]] = assert_app_logs_can_contain_warnings
    assert_browser_log: Optional[Callable[[List[Any]], None]] = assert_browser_log_is_empty
    result_store: Optional[Any] = None

    model_config = {"arbitrary_types_allowed": True}
