from __future__ import annotations

from typing import Any, Iterable, List

_APP_LOG_FAILURE_MARKERS = ("|ERROR|", "|FATAL|")
_APP_LOG_WARNING_MARKER = "|WARN|"


def _problem_lines(log_output: str, markers: Iterable[str]) -> List[str]:
    markers = tuple(markers)
    return [line for line in log_output.splitlines() if any(marker in line for marker in markers)]


def assert_app_logs_are_empty(application: Any) -> None:
    log_output = application.get_log_output() or ""
    problems = _problem_lines(log_output, _APP_LOG_FAILURE_MARKERS + (_APP_LOG_WARNING_MARKER,))
    if problems:
        raise AssertionError("The application log contains warnings or errors:\n" + "\n".join(problems))


def assert_app_logs_can_contain_warnings(application: Any) -> None:
    log_output = application.get_log_output() or ""
    problems = _problem_lines(log_output, _APP_LOG_FAILURE_MARKERS)
    if problems:
        raise AssertionError("The application log contains errors:\n" + "\n".join(problems))


def assert_browser_log_is_empty(messages: List[Any]) -> None:
    if messages:
        raise AssertionError("The browser log is not empty:\n" + "\n".join(str(message) for message in messages))


def assert_browser_log_has_no_errors(messages: List[Any]) -> None:
    errors = [message for message in messages if str(getattr(message, "level", "")).lower() in {"error", "severe"}]
    if errors:
        raise AssertionError("The browser log contains errors:\n" + "\n".join(str(message) for message in errors))
