from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from ui_harness.errors import TerminalSetupFailure
from ui_harness.schemas import ExecutorConfiguration, ResultStatus, TestResult
from ui_harness.services.context import UITestContext
from ui_harness.services.dumps import FailureDumpWriter, prepare_dump_root
from ui_harness.services.output import CapturedOutput
from ui_harness.services.resources import (
    AttemptResources,
    BrowserLogMessage,
    register_blob_storage_hooks,
    register_database_hooks,
    register_mail_hooks,
    register_ui_testing_hook,
    unregister_snapshot_hooks,
)
from ui_harness.services.snapshots import (
    SetupSnapshotCoordinator,
    compute_fingerprint,
    get_coordinator,
    snapshot_directory_for,
)

LOGGER = logging.getLogger("ui_harness.executor")


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


@dataclass
class TestManifest:
    __test__ = False

    name: str
    test: Callable[[UITestContext], None]


class OutcomeKind(str, Enum):
    success = "success"
    retryable_failure = "retryable_failure"
    fatal_failure = "fatal_failure"


@dataclass(frozen=True)
class AttemptOutcome:
    kind: OutcomeKind
    cause: Optional[Exception] = None

    @classmethod
    def success(cls) -> "AttemptOutcome":
        return cls(OutcomeKind.success)

    @classmethod
    def retryable(cls, cause: Exception) -> "AttemptOutcome":
        return cls(OutcomeKind.retryable_failure, cause)

    @classmethod
    def fatal(cls, cause: Exception) -> "AttemptOutcome":
        return cls(OutcomeKind.fatal_failure, cause)


@dataclass
class Attempt:
    index: int
    outcome: AttemptOutcome
    dump_folder: Optional[Path] = None
    duration_seconds: float = field(default=0.0)

    @property
    def cause(self) -> Optional[Exception]:
        return self.outcome.cause


def _attempt_configuration(configuration: ExecutorConfiguration, fingerprint: Optional[str]) -> ExecutorConfiguration:
    """Copy ``configuration`` with launch hook registries owned by a single attempt.

    Hooks already registered on the shared configuration are carried over. With a setup
    operation the copy points at the fingerprint's own snapshot directory.
    """
    application = configuration.application
    update = {
        "before_app_start": application.before_app_start.copy(),
        "before_take_snapshot": application.before_take_snapshot.copy(),
    }
    if fingerprint is not None:
        update["snapshot_directory_path"] = snapshot_directory_for(application.snapshot_directory_path, fingerprint)
    return configuration.model_copy(update={"application": application.model_copy(update=update)})


class TestRunExecutor:
    """Runs a single attempt of a UI test and owns every resource that attempt creates."""

    __test__ = False

    def __init__(
        self,
        manifest: TestManifest,
        configuration: ExecutorConfiguration,
        output: CapturedOutput,
        dump_root: Path,
        coordinator: Optional[SetupSnapshotCoordinator] = None,
    ) -> None:
        setup = configuration.setup
        self._manifest = manifest
        self._snapshots_root = Path(configuration.application.snapshot_directory_path)
        self._fingerprint = (
            compute_fingerprint(setup.setup_operation, setup.fingerprint)
            if setup.setup_operation is not None
            else None
        )
        self._configuration = _attempt_configuration(configuration, self._fingerprint)
        self._output = output
        self._dump_root = dump_root
        self._coordinator = coordinator
        self._resources = AttemptResources()
        self._context: Optional[UITestContext] = None
        self._browser_log: Optional[List[BrowserLogMessage]] = None

    @property
    def context(self) -> Optional[UITestContext]:
        return self._context

    @property
    def resources(self) -> AttemptResources:
        return self._resources

    def run_attempt(self, index: int) -> Attempt:
        started = time.monotonic()
        name = self._manifest.name
        self._output.write_line("Starting execution of %s.", name)
        try:
            if self._configuration.setup.setup_operation is not None:
                self._setup()
            if self._context is None:
                self._context = self._create_context()

            self._manifest.test(self._context)

            self._assert_app_logs()
            self._assert_browser_log()
            return Attempt(index, AttemptOutcome.success())
        except TerminalSetupFailure as exc:
            self._output.write_line("The test failed with the following exception: %r", exc)
            return Attempt(index, AttemptOutcome.fatal(exc))
        except Exception as exc:
            self._output.write_line("The test failed with the following exception: %r", exc)
            unregister_snapshot_hooks(self._configuration.application)
            writer = FailureDumpWriter(name, self._configuration, self._output)
            dump_folder = writer.write(
                exc, self._dump_root, index, self._context, self._resources, self._get_browser_log
            )
            return Attempt(index, AttemptOutcome.retryable(exc), dump_folder)
        finally:
            self._output.write_line(
                "Finishing execution of %s, total time: %.3fs", name, time.monotonic() - started
            )

    def teardown(self) -> None:
        unregister_snapshot_hooks(self._configuration.application)
        failures = self._resources.release_all()
        if failures:
            self._output.write_line("Releasing %s failed during teardown.", ", ".join(failures))
        self._context = None

    def _get_browser_log(self) -> List[BrowserLogMessage]:
        if self._browser_log is None:
            if self._context is None:
                return []
            self._browser_log = self._context.update_historic_browser_log()
        return self._browser_log

    def _assert_app_logs(self) -> None:
        assertion = self._configuration.assert_app_logs
        if assertion is None:
            return
        try:
            assertion(self._context.application)
        except Exception:
            self._output.write_line("Application logs:\n%s", self._application_log())
            raise

    def _assert_browser_log(self) -> None:
        assertion = self._configuration.assert_browser_log
        if assertion is None:
            return
        try:
            assertion(self._get_browser_log())
        except Exception:
            messages = self._browser_log or []
            self._output.write_line("Browser logs:\n%s", "\n".join(str(message) for message in messages))
            raise

    def _application_log(self) -> str:
        try:
            return self._context.application.get_log_output() or ""
        except Exception as exc:
            return f"<retrieving the application log failed: {exc!r}>"

    def _setup(self) -> None:
        configuration = self._configuration
        setup = configuration.setup
        coordinator = self._coordinator or get_coordinator()
        fingerprint = self._fingerprint

        def _operation(snapshot_directory: Path) -> str:
            self._output.write_line("Starting setup operation.")
            if setup.before_setup is not None:
                setup.before_setup(configuration)
            # The app has to start with the snapshot hooks in place, so the context is created here too.
            self._context = self._create_context(for_setup=True)
            locator = setup.setup_operation(self._context)
            self._context.application.take_snapshot(snapshot_directory)
            self._output.write_line("Finished setup operation.")
            return locator

        self._output.write_line("Starting waiting for the setup operation.")
        record = coordinator.run_once(
            fingerprint,
            self._snapshots_root,
            _operation,
            max_failures=configuration.max_retry_count if setup.fast_fail_setup else None,
            lock_timeout=setup.lock_timeout_seconds,
        )
        self._output.write_line("Finished waiting for the setup operation.")

        try:
            # Even after a fresh setup every test runs against an app newly started from the snapshot.
            if self._context is not None:
                self._resources.release_all()
                self._context = None
                self._browser_log = None
            self._context = self._create_context()
            self._context.go_to_relative_url(record.locator)
        except Exception:
            coordinator.record_failure(fingerprint)
            raise

    def _create_context(self, *, for_setup: bool = False) -> UITestContext:
        configuration = self._configuration
        resources = configuration.resources
        application_configuration = configuration.application
        owned = self._resources

        if resources.use_database:
            owned.database = resources.database_factory()
            owned.database_context = owned.database.create_database()
            register_database_hooks(
                application_configuration, owned.database, owned.database_context, for_setup=for_setup
            )

        if resources.use_blob_storage:
            owned.blob_storage = resources.blob_storage_factory()
            owned.blob_storage_context = owned.blob_storage.setup()
            register_blob_storage_hooks(
                application_configuration,
                resources,
                owned.blob_storage,
                owned.blob_storage_context,
                for_setup=for_setup,
            )

        if resources.use_mail_service:
            owned.mail = resources.mail_service_factory()
            owned.mail_context = owned.mail.start()
            register_mail_hooks(application_configuration, owned.mail_context)

        register_ui_testing_hook(application_configuration)

        owned.application = application_configuration.application_factory(application_configuration, self._output)
        base_url = owned.application.start()
        owned.scope = configuration.scope_factory(base_url, configuration, self._output)

        return UITestContext(
            self._manifest.name,
            configuration,
            owned.application,
            owned.scope,
            base_url,
            self._output,
            database_context=owned.database_context,
            blob_storage_context=owned.blob_storage_context,
            mail_context=owned.mail_context,
        )


def _validate(manifest: TestManifest, configuration: ExecutorConfiguration) -> None:
    if not manifest.name:
        raise ValueError("You need to specify the name of the test.")
    if configuration.application.application_factory is None:
        raise ValueError("application.application_factory should be provided.")
    if configuration.scope_factory is None:
        raise ValueError("scope_factory should be provided.")
    resources = configuration.resources
    for enabled, factory, label in (
        (resources.use_database, resources.database_factory, "database_factory"),
        (resources.use_blob_storage, resources.blob_storage_factory, "blob_storage_factory"),
        (resources.use_mail_service, resources.mail_service_factory, "mail_service_factory"),
    ):
        if enabled and factory is None:
            raise ValueError(f"resources.{label} should be provided when the resource is enabled.")


def _record_result(
    configuration: ExecutorConfiguration,
    manifest: TestManifest,
    status: ResultStatus,
    attempts: int,
    dump_root: Path,
    started_at: str,
    cause: Optional[Exception] = None,
) -> TestResult:
    result = TestResult(
        name=manifest.name,
        status=status,
        attempts=attempts,
        dump_root=str(dump_root) if status is ResultStatus.failed else None,
        error=repr(cause) if cause is not None else None,
        started_at=started_at,
        completed_at=_utcnow(),
    )
    store = configuration.result_store
    if store is not None:
        try:
            store.record(result)
        except Exception as exc:  # pragma: no cover - store write failure
            LOGGER.warning("Recording the result of %s failed: %s", manifest.name, exc)
    return result


def execute_test(
    manifest: TestManifest,
    configuration: ExecutorConfiguration,
    coordinator: Optional[SetupSnapshotCoordinator] = None,
    output: Optional[CapturedOutput] = None,
) -> TestResult:
    """Run a UI test, retrying up to ``configuration.max_retry_count`` times.

    Every failed attempt leaves an ``Attempt <n>`` dump folder. When the attempts are exhausted,
    or setup fails fast, the error that caused the last failure is re-raised.
    """
    _validate(manifest, configuration)
    output = output or CapturedOutput(manifest.name)
    output.write_line("Starting preparation for %s.", manifest.name)

    if configuration.setup.setup_operation is not None and coordinator is None:
        coordinator = get_coordinator()

    dump_root = prepare_dump_root(manifest.name, configuration.failure_dump, output)

    accessibility = configuration.accessibility
    if accessibility.create_report_always:
        Path(accessibility.always_created_reports_directory_path).mkdir(parents=True, exist_ok=True)

    output.write_line("Finished preparation for %s.", manifest.name)

    started_at = _utcnow()
    max_retry_count = configuration.max_retry_count
    index = 0
    while True:
        executor = TestRunExecutor(manifest, configuration, output, dump_root, coordinator)
        try:
            attempt = executor.run_attempt(index)
        finally:
            executor.teardown()

        outcome = attempt.outcome
        if outcome.kind is OutcomeKind.success:
            return _record_result(configuration, manifest, ResultStatus.passed, index + 1, dump_root, started_at)

        if outcome.kind is OutcomeKind.fatal_failure:
            _record_result(
                configuration, manifest, ResultStatus.failed, index + 1, dump_root, started_at, outcome.cause
            )
            raise outcome.cause

        if index >= max_retry_count:
            output.write_line(
                "The test was attempted %s time(s) and won't be retried anymore. You can see more details on "
                "why it's failing in the failure dump folder: %s",
                index + 1,
                dump_root.resolve(),
            )
            _record_result(
                configuration, manifest, ResultStatus.failed, index + 1, dump_root, started_at, outcome.cause
            )
            raise outcome.cause

        output.write_line(
            "The test was attempted %s time(s). %s more attempt(s) will be made.",
            index + 1,
            max_retry_count - index,
        )
        index += 1
