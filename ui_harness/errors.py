from __future__ import annotations

from typing import Any, Optional


class HarnessError(Exception):
    """Base class for errors raised by the harness itself."""


class TerminalSetupFailure(HarnessError):
    """Raised instead of running a setup operation that keeps failing.

    Never retried by the executor and never counted as another setup failure.
    """

    def __init__(self, fingerprint: str, failure_count: int, max_failures: int) -> None:
        self.fingerprint = fingerprint
        self.failure_count = failure_count
        self.max_failures = max_failures
        super().__init__(
            f"The setup operation {fingerprint} already failed {failure_count} time(s), more than the "
            f"allowed {max_failures}. Not running it again; fix the setup first."
        )


class AccessibilityAssertionError(AssertionError):
    def __init__(self, message: str, axe_result: Optional[Any] = None) -> None:
        super().__init__(message)
        self.axe_result = axe_result


class HtmlValidationError(AssertionError):
    def __init__(self, message: str, errors: Optional[list] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])
