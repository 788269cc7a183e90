from typing import Optional


class FlowError(Exception):
    """Base exception class for errors raised by the checkout flow."""
    pass


class ConditionTimeoutError(FlowError):
    """A readiness condition was not met before its deadline."""
    def __init__(self, condition: str, elapsed_ms: int, timeout_ms: Optional[int] = None):
        super().__init__(f"Condition '{condition}' not met after {elapsed_ms}ms")
        self.condition = condition
        self.elapsed_ms = elapsed_ms
        self.timeout_ms = timeout_ms


class DeadlineExceededError(ConditionTimeoutError):
    """The overall run deadline elapsed or the caller cancelled the run."""
    def __init__(self, condition: str, elapsed_ms: int, reason: str = "deadline exceeded"):
        super().__init__(condition, elapsed_ms)
        self.reason = reason

    def __str__(self) -> str:
        return f"{self.reason} while waiting for '{self.condition}' ({self.elapsed_ms}ms)"


class ElementNotFoundError(FlowError):
    """An expected element is absent from the page."""
    def __init__(self, selector: str, context: Optional[str] = ""):
        super().__init__(f"No element matches {selector!r}. From: {context}")
        self.selector = selector
        self.context = context


class UnexpectedDriverError(FlowError):
    """Any other failure raised by the browser driver (closed page, crash...)."""
    def __init__(self, kind: str, message: str, context: Optional[str] = ""):
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.message = message
        self.context = context

    def __str__(self) -> str:
        return f"UnexpectedDriverError {self.kind}: {self.message}, From: {self.context}"


class ManifestError(FlowError):
    """A site manifest is missing keys required by the flow."""
    pass
