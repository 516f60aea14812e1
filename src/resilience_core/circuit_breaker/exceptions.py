"""Circuit breaker exceptions.

Callers can distinguish between:
  - A call being rejected because the circuit is open.
  - A call abandoned because it did not settle within the call timeout.
"""

from resilience_core.errors import ResilienceError


class CircuitBreakerError(ResilienceError):
    """Base exception for the circuit breaker package."""


class CircuitOpenError(CircuitBreakerError):
    """Raised when a call is rejected because the circuit is open.

    Attributes:
        breaker_name: Name of the breaker rejecting the call.
        retry_after: Seconds until a half-open probe may be attempted.
        label: Optional caller-supplied description of the rejected call.
    """

    def __init__(
        self,
        breaker_name: str,
        retry_after: float,
        label: str | None = None,
    ) -> None:
        self.breaker_name = breaker_name
        self.retry_after = retry_after
        self.label = label
        target = breaker_name if label is None else f"{breaker_name} ({label})"
        super().__init__(
            f"circuit breaker is open for: {target} retry_after={retry_after:g}s"
        )


class CallTimeoutError(CircuitBreakerError, TimeoutError):
    """Raised when a protected call does not settle within ``call_timeout``.

    Attributes:
        breaker_name: Name of the breaker that abandoned the call.
        timeout: Timeout in seconds that was exceeded.
        label: Optional caller-supplied description of the call.
    """

    def __init__(
        self,
        breaker_name: str,
        timeout: float,
        label: str | None = None,
    ) -> None:
        self.breaker_name = breaker_name
        self.timeout = timeout
        self.label = label
        target = breaker_name if label is None else f"{breaker_name} ({label})"
        super().__init__(f"operation timeout: {target} after {timeout:g}s")
