from __future__ import annotations

import io
import json
import threading
from pathlib import Path
from typing import Any, Dict, List

import pytest
from PIL import Image

from ui_harness.errors import TerminalSetupFailure
from ui_harness.schemas import (
    ApplicationConfiguration,
    ExecutorConfiguration,
    FailureDumpConfiguration,
    ResourceConfiguration,
    ResultStatus,
    SetupConfiguration,
)
from ui_harness.services.executor import TestManifest, execute_test
from ui_harness.services.output import CapturedOutput
from ui_harness.services.resources import (
    ApplicationInstance,
    AutomationScope,
    BrowserDriver,
    BrowserLogMessage,
    DatabaseContext,
    DatabaseManager,
    MailContext,
    MailService,
)
from ui_harness.services.snapshots import SetupSnapshotCoordinator, compute_fingerprint, snapshot_directory_for
from ui_harness.services.storage import ResultStore

BASE_URL = "http://app.test"


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (2, 2)).save(buffer, format="PNG")
    return buffer.getvalue()


class StubDriver(BrowserDriver):
    def __init__(self, recorder: "Recorder") -> None:
        self._url = f"{BASE_URL}/"
        self.visited: List[str] = []
        self.pending_log: List[BrowserLogMessage] = list(recorder.browser_log)

    @property
    def url(self) -> str:
        return self._url

    @property
    def page_source(self) -> str:
        return "<html><body>stub</body></html>"

    def navigate(self, url: str) -> None:
        self._url = url
        self.visited.append(url)

    def evaluate(self, expression: str, arg: Any = None) -> Any:
        return None

    def screenshot(self) -> bytes:
        return _png_bytes()

    def get_and_empty_browser_log(self) -> List[BrowserLogMessage]:
        messages = list(self.pending_log)
        self.pending_log.clear()
        return messages


class StubScope(AutomationScope):
    def __init__(self, recorder: "Recorder", base_url: str) -> None:
        self.base_url = base_url
        self._driver = StubDriver(recorder)
        self.closed = False
        self._fail_close = recorder.fail_scope_close

    @property
    def driver(self) -> StubDriver:
        return self._driver

    def close(self) -> None:
        self.closed = True
        if self._fail_close:
            raise RuntimeError("browser already gone")


class StubApplication(ApplicationInstance):
    def __init__(self, recorder: "Recorder", configuration: ApplicationConfiguration) -> None:
        self._recorder = recorder
        self._configuration = configuration
        self.arguments: List[str] = []
        self.closed = False

    def start(self) -> str:
        self._configuration.before_app_start.fire(self._recorder.content_root, self.arguments)
        return BASE_URL

    def take_snapshot(self, directory: Path) -> None:
        self._configuration.before_take_snapshot.fire(self._recorder.content_root, directory)
        directory.mkdir(parents=True, exist_ok=True)
        (directory / "App_Data.zip").write_text("state", encoding="utf-8")

    def get_log_output(self) -> str:
        return self._recorder.app_log

    def close(self) -> None:
        self.closed = True


class StubDatabaseManager(DatabaseManager):
    def __init__(self, recorder: "Recorder") -> None:
        self._recorder = recorder
        self.closed = False

    def create_database(self) -> DatabaseContext:
        index = len(self._recorder.databases)
        return DatabaseContext(connection_string=f"Server=db{index}")

    def take_snapshot(self, directory: Path, use_compression: bool = False) -> None:
        if self.closed:
            raise RuntimeError("database manager already closed")
        self._recorder.events.append("db-dump" if use_compression else "db-snapshot")

    def restore_snapshot(self, directory: Path) -> None:
        self._recorder.events.append("db-restore")

    def close(self) -> None:
        self.closed = True


class StubMailService(MailService):
    def __init__(self, port: int = 2525) -> None:
        self.port = port
        self.closed = False

    def start(self) -> MailContext:
        return MailContext(port=self.port)

    def close(self) -> None:
        self.closed = True


class Recorder:
    def __init__(self, content_root: Path) -> None:
        self.content_root = content_root
        self.applications: List[StubApplication] = []
        self.scopes: List[StubScope] = []
        self.databases: List[StubDatabaseManager] = []
        self.events: List[str] = []
        self.app_log = ""
        self.browser_log: List[BrowserLogMessage] = []
        self.fail_scope_close = False

    def application_factory(self, configuration: ApplicationConfiguration, output: CapturedOutput) -> StubApplication:
        application = StubApplication(self, configuration)
        self.applications.append(application)
        return application

    def scope_factory(self, base_url: str, configuration: ExecutorConfiguration, output: CapturedOutput) -> StubScope:
        scope = StubScope(self, base_url)
        self.scopes.append(scope)
        return scope

    def database_factory(self) -> StubDatabaseManager:
        manager = StubDatabaseManager(self)
        self.databases.append(manager)
        return manager


@pytest.fixture
def recorder(tmp_path: Path) -> Recorder:
    return Recorder(tmp_path / "app")


def _configuration(tmp_path: Path, recorder: Recorder, **overrides: Any) -> ExecutorConfiguration:
    values: Dict[str, Any] = {
        "max_retry_count": 2,
        "failure_dump": FailureDumpConfiguration(dumps_directory_path=tmp_path / "dumps", max_path_length=4096),
        "application": ApplicationConfiguration(
            application_factory=recorder.application_factory,
            snapshot_directory_path=tmp_path / "snapshot",
        ),
        "scope_factory": recorder.scope_factory,
    }
    values.update(overrides)
    return ExecutorConfiguration(**values)


@pytest.mark.unit
def test_passing_test_runs_once_and_releases_everything(tmp_path: Path, recorder: Recorder) -> None:
    calls: List[str] = []
    configuration = _configuration(tmp_path, recorder)

    result = execute_test(TestManifest("Suite.passes", lambda context: calls.append(context.base_url)), configuration)

    assert calls == [BASE_URL]
    assert result.status is ResultStatus.passed
    assert result.attempts == 1
    assert recorder.applications[0].closed
    assert recorder.scopes[0].closed
    assert not (tmp_path / "dumps" / "Suite.passes").exists()


@pytest.mark.unit
def test_always_failing_test_is_attempted_bound_plus_one_times(tmp_path: Path, recorder: Recorder) -> None:
    error = ValueError("login button missing")
    attempts: List[int] = []

    def _body(context: Any) -> None:
        attempts.append(1)
        raise error

    configuration = _configuration(tmp_path, recorder, max_retry_count=2)
    output = CapturedOutput("Suite.always_fails")

    with pytest.raises(ValueError) as excinfo:
        execute_test(TestManifest("Suite.always_fails", _body), configuration, output=output)

    assert excinfo.value is error
    assert len(attempts) == 3
    dump_root = tmp_path / "dumps" / "Suite.always_fails"
    assert sorted(path.name for path in dump_root.iterdir() if path.is_dir()) == [
        "Attempt 0",
        "Attempt 1",
        "Attempt 2",
    ]
    assert (dump_root / "TestName.txt").read_text(encoding="utf-8") == "Suite.always_fails"
    for index in range(3):
        debug = dump_root / f"Attempt {index}" / "DebugInformation"
        assert (debug / "Screenshot.png").exists()
        assert (debug / "TestOutput.log").exists()
    assert all(application.closed for application in recorder.applications)
    assert len(recorder.applications) == 3
    text = output.text()
    assert "The test was attempted 1 time(s). 2 more attempt(s) will be made." in text
    assert "The test was attempted 2 time(s). 1 more attempt(s) will be made." in text
    assert "The test was attempted 3 time(s) and won't be retried anymore." in text
    assert str(dump_root.resolve()) in text


@pytest.mark.unit
def test_flaky_test_passes_on_retry(tmp_path: Path, recorder: Recorder) -> None:
    attempts: List[int] = []

    def _body(context: Any) -> None:
        attempts.append(1)
        if len(attempts) < 2:
            raise TimeoutError("element not visible yet")

    result = execute_test(TestManifest("Suite.flaky", _body), _configuration(tmp_path, recorder))

    assert result.attempts == 2
    assert (tmp_path / "dumps" / "Suite.flaky" / "Attempt 0").is_dir()
    assert not (tmp_path / "dumps" / "Suite.flaky" / "Attempt 1").exists()


@pytest.mark.unit
def test_app_log_failure_writes_application_log(tmp_path: Path, recorder: Recorder) -> None:
    recorder.app_log = "2024-01-01 10:00:00|ERROR|Startup|Connection refused"
    output = CapturedOutput("Suite.app_log")
    configuration = _configuration(tmp_path, recorder, max_retry_count=0)

    with pytest.raises(AssertionError, match="application log contains errors"):
        execute_test(TestManifest("Suite.app_log", lambda context: None), configuration, output=output)

    text = output.text()
    assert "Application logs:" in text
    assert "Connection refused" in text


@pytest.mark.unit
def test_browser_log_failure_keeps_messages_for_dump(tmp_path: Path, recorder: Recorder) -> None:
    recorder.browser_log = [BrowserLogMessage(level="error", message="Uncaught TypeError: x is undefined")]
    output = CapturedOutput("Suite.browser_log")
    configuration = _configuration(tmp_path, recorder, max_retry_count=0)

    with pytest.raises(AssertionError, match="browser log is not empty"):
        execute_test(TestManifest("Suite.browser_log", lambda context: None), configuration, output=output)

    assert "Browser logs:" in output.text()
    browser_log = tmp_path / "dumps" / "Suite.browser_log" / "Attempt 0" / "DebugInformation" / "BrowserLog.log"
    assert "Uncaught TypeError" in browser_log.read_text(encoding="utf-8")


@pytest.mark.unit
def test_disabled_log_assertions_are_skipped(tmp_path: Path, recorder: Recorder) -> None:
    recorder.app_log = "|ERROR| ignored"
    recorder.browser_log = [BrowserLogMessage(level="error", message="ignored")]
    configuration = _configuration(tmp_path, recorder, assert_app_logs=None, assert_browser_log=None)

    result = execute_test(TestManifest("Suite.no_asserts", lambda context: None), configuration)

    assert result.status is ResultStatus.passed


@pytest.mark.unit
def test_teardown_errors_are_logged_not_raised(tmp_path: Path, recorder: Recorder) -> None:
    recorder.fail_scope_close = True
    mail = StubMailService()
    configuration = _configuration(
        tmp_path,
        recorder,
        resources=ResourceConfiguration(use_mail_service=True, mail_service_factory=lambda: mail),
    )
    output = CapturedOutput("Suite.teardown")

    result = execute_test(TestManifest("Suite.teardown", lambda context: None), configuration, output=output)

    assert result.status is ResultStatus.passed
    assert recorder.applications[0].closed
    assert mail.closed
    assert "Releasing scope failed during teardown." in output.text()


@pytest.mark.unit
def test_setup_runs_once_and_every_test_restarts_from_snapshot(tmp_path: Path, recorder: Recorder) -> None:
    setup_calls: List[str] = []

    def _setup(context: Any) -> str:
        setup_calls.append(context.base_url)
        return "/admin?tab=1"

    coordinator = SetupSnapshotCoordinator()
    configuration = _configuration(tmp_path, recorder, setup=SetupConfiguration(setup_operation=_setup))
    visited: List[str] = []

    for name in ("Suite.first", "Suite.second"):
        execute_test(
            TestManifest(name, lambda context: visited.append(context.driver.url)), configuration, coordinator
        )

    assert len(setup_calls) == 1
    assert visited == [f"{BASE_URL}/admin?tab=1", f"{BASE_URL}/admin?tab=1"]
    # Setup instance, relaunch for the first test, one instance for the second test.
    assert len(recorder.applications) == 3
    assert all(application.closed for application in recorder.applications)
    assert (snapshot_directory_for(tmp_path / "snapshot", compute_fingerprint(_setup)) / "SetupSnapshot.json").exists()
    for application in recorder.applications:
        assert application.arguments.count("--UITesting:IsUITesting") == 1


@pytest.mark.unit
def test_setup_hooks_snapshot_and_restore_database(tmp_path: Path, recorder: Recorder) -> None:
    settings_path = recorder.content_root / "App_Data" / "Sites" / "Default" / "appsettings.json"
    settings_path.parent.mkdir(parents=True)
    settings_path.write_text(json.dumps({"ConnectionString": "setup"}), encoding="utf-8")
    configuration = _configuration(
        tmp_path,
        recorder,
        setup=SetupConfiguration(setup_operation=lambda context: "/"),
        resources=ResourceConfiguration(use_database=True, database_factory=recorder.database_factory),
    )

    execute_test(TestManifest("Suite.database", lambda context: None), configuration, SetupSnapshotCoordinator())

    assert recorder.events == ["db-snapshot", "db-restore"]
    assert json.loads(settings_path.read_text(encoding="utf-8"))["ConnectionString"] == "Server=db2"
    assert all(manager.closed for manager in recorder.databases)


@pytest.mark.unit
def test_failing_setup_fails_fast_for_later_tests(tmp_path: Path, recorder: Recorder) -> None:
    setup_calls: List[int] = []

    def _setup(context: Any) -> str:
        setup_calls.append(1)
        raise RuntimeError("recipe failed")

    coordinator = SetupSnapshotCoordinator()
    configuration = _configuration(
        tmp_path, recorder, max_retry_count=1, setup=SetupConfiguration(setup_operation=_setup)
    )

    with pytest.raises(RuntimeError, match="recipe failed"):
        execute_test(TestManifest("Suite.first", lambda context: None), configuration, coordinator)
    assert len(setup_calls) == 2

    with pytest.raises(TerminalSetupFailure):
        execute_test(TestManifest("Suite.second", lambda context: None), configuration, coordinator)

    assert len(setup_calls) == 2
    assert coordinator.failures.get(compute_fingerprint(_setup)) == 2
    assert not (tmp_path / "dumps" / "Suite.second").exists()


@pytest.mark.unit
def test_fast_fail_disabled_keeps_running_setup(tmp_path: Path, recorder: Recorder) -> None:
    setup_calls: List[int] = []

    def _setup(context: Any) -> str:
        setup_calls.append(1)
        raise RuntimeError("recipe failed")

    coordinator = SetupSnapshotCoordinator()
    for _ in range(5):
        coordinator.record_failure(compute_fingerprint(_setup))
    configuration = _configuration(
        tmp_path,
        recorder,
        max_retry_count=0,
        setup=SetupConfiguration(setup_operation=_setup, fast_fail_setup=False),
    )

    with pytest.raises(RuntimeError):
        execute_test(TestManifest("Suite.no_fast_fail", lambda context: None), configuration, coordinator)

    assert setup_calls == [1]


@pytest.mark.unit
def test_results_are_recorded(tmp_path: Path, recorder: Recorder) -> None:
    store = ResultStore(tmp_path / "results.json")
    configuration = _configuration(tmp_path, recorder, max_retry_count=0, result_store=store)

    execute_test(TestManifest("Suite.ok", lambda context: None), configuration)
    with pytest.raises(KeyError):
        execute_test(TestManifest("Suite.broken", lambda context: {}["missing"]), configuration)

    assert store.get("Suite.ok").status is ResultStatus.passed
    broken = store.get("Suite.broken")
    assert broken.status is ResultStatus.failed
    assert broken.dump_root.endswith("Suite.broken")
    assert "missing" in broken.error


@pytest.mark.unit
def test_manifest_needs_a_name(tmp_path: Path, recorder: Recorder) -> None:
    with pytest.raises(ValueError, match="name of the test"):
        execute_test(TestManifest("", lambda context: None), _configuration(tmp_path, recorder))


@pytest.mark.unit
def test_enabled_resource_needs_a_factory(tmp_path: Path, recorder: Recorder) -> None:
    configuration = _configuration(tmp_path, recorder, resources=ResourceConfiguration(use_database=True))

    with pytest.raises(ValueError, match="database_factory"):
        execute_test(TestManifest("Suite.x", lambda context: None), configuration)


@pytest.mark.unit
def test_keyboard_interrupt_is_not_retried(tmp_path: Path, recorder: Recorder) -> None:
    attempts: List[int] = []

    def _body(context: Any) -> None:
        attempts.append(1)
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        execute_test(TestManifest("Suite.interrupted", _body), _configuration(tmp_path, recorder))

    assert attempts == [1]
    assert recorder.applications[0].closed


@pytest.mark.unit
def test_parallel_runs_sharing_a_configuration_keep_their_own_launch_hooks(tmp_path: Path, recorder: Recorder) -> None:
    both_created = threading.Barrier(2)
    ports_lock = threading.Lock()
    ports = iter(range(3000, 3010))

    def _application_factory(configuration: ApplicationConfiguration, output: CapturedOutput) -> StubApplication:
        application = recorder.application_factory(configuration, output)
        both_created.wait(timeout=5)
        return application

    def _mail_service_factory() -> StubMailService:
        with ports_lock:
            return StubMailService(next(ports))

    configuration = _configuration(
        tmp_path,
        recorder,
        application=ApplicationConfiguration(
            application_factory=_application_factory,
            snapshot_directory_path=tmp_path / "snapshot",
        ),
        resources=ResourceConfiguration(use_mail_service=True, mail_service_factory=_mail_service_factory),
    )
    errors: List[Exception] = []

    def _run(name: str) -> None:
        try:
            execute_test(TestManifest(name, lambda context: None), configuration)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_run, args=(name,)) for name in ("Suite.left", "Suite.right")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert len(recorder.applications) == 2
    ports_seen = []
    for application in recorder.applications:
        assert application.arguments.count("--UITesting:IsUITesting") == 1
        assert application.arguments.count("--UITesting_SmtpSettings:Port") == 1
        ports_seen.append(application.arguments[application.arguments.index("--UITesting_SmtpSettings:Port") + 1])
    assert sorted(ports_seen) == ["3000", "3001"]
    assert len(configuration.application.before_app_start) == 0


@pytest.mark.unit
def test_failed_setup_does_not_leave_snapshot_hooks_for_dumps(tmp_path: Path, recorder: Recorder) -> None:
    def _setup(context: Any) -> str:
        raise RuntimeError("recipe failed before the snapshot")

    configuration = _configuration(
        tmp_path,
        recorder,
        max_retry_count=1,
        setup=SetupConfiguration(setup_operation=_setup),
        resources=ResourceConfiguration(use_database=True, database_factory=recorder.database_factory),
    )

    with pytest.raises(RuntimeError, match="before the snapshot"):
        execute_test(TestManifest("Suite.setup_dump", lambda context: None), configuration, SetupSnapshotCoordinator())

    assert recorder.events == ["db-dump", "db-dump"]
    assert all(manager.closed for manager in recorder.databases)
    assert len(configuration.application.before_take_snapshot) == 0
    test_output = tmp_path / "dumps" / "Suite.setup_dump" / "Attempt 1" / "DebugInformation" / "TestOutput.log"
    assert "database manager already closed" not in test_output.read_text(encoding="utf-8")
