"""
Error taxonomy for the removal engine.
"""


class RemovalError(Exception):
    """Base class for all removal errors."""


class InvalidMaskGeometryError(RemovalError):
    """Stroke produced an empty or degenerate mask. The stroke is a no-op."""


class InvalidCommitError(RemovalError):
    """Commit is structurally invalid (no image loaded, no strokes)."""


class SessionBusyError(RemovalError):
    """A commit is already running for this session."""


class FastPathTimeoutError(RemovalError):
    """Spot removal did not finish inside its time budget."""

    def __init__(self, budget_ms: float, elapsed_ms: float):
        self.budget_ms = budget_ms
        self.elapsed_ms = elapsed_ms
        super().__init__(f"Spot removal timeout exceeded: {elapsed_ms:.0f}ms > {budget_ms:.0f}ms")


class RecoverableRemoteFailure(RemovalError):
    """Remote inpainting failed (network, timeout, malformed payload)."""
