"""
Named circuit breakers.

A circuit opens after max_errors consecutive errors and closes again on the
next success or once reset_timeout seconds have passed since it opened.
"""

import logging
import time
from typing import Dict

logger = logging.getLogger(__name__)


class CircuitOpenError(RuntimeError):
    """Raised when work is refused because its circuit is open."""

    def __init__(self, circuit: str) -> None:
        super().__init__(f"circuit {circuit!r} is open")
        self.circuit = circuit


class CircuitBreaker:
    """Track consecutive errors per circuit name."""

    def __init__(self, max_errors: int = 3, reset_timeout: float = 5.0) -> None:
        self.max_errors = max(1, max_errors)
        self.reset_timeout = reset_timeout
        self._errors: Dict[str, int] = {}
        # circuit -> monotonic time it opened
        self._opened_at: Dict[str, float] = {}

    def is_open(self, circuit: str) -> bool:
        """True while the circuit is open. An expired circuit is reset here."""
        opened = self._opened_at.get(circuit)
        if opened is None:
            return False
        if time.monotonic() - opened >= self.reset_timeout:
            self._reset(circuit)
            logger.info("CircuitBreaker: %s closed after timeout", circuit)
            return False
        return True

    def record_error(self, circuit: str) -> None:
        """Count an error; open the circuit at max_errors."""
        count = self._errors.get(circuit, 0) + 1
        self._errors[circuit] = count
        if count >= self.max_errors and circuit not in self._opened_at:
            self._opened_at[circuit] = time.monotonic()
            logger.warning(
                "CircuitBreaker: %s opened after %d errors (reset in %.1fs)",
                circuit,
                count,
                self.reset_timeout,
            )

    def record_success(self, circuit: str) -> None:
        """Reset the error count and close the circuit."""
        if circuit in self._opened_at:
            logger.info("CircuitBreaker: %s closed", circuit)
        self._reset(circuit)

    def error_count(self, circuit: str) -> int:
        """Consecutive errors recorded for circuit."""
        return self._errors.get(circuit, 0)

    def _reset(self, circuit: str) -> None:
        self._errors.pop(circuit, None)
        self._opened_at.pop(circuit, None)
