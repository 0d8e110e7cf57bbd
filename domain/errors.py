# domain/errors.py
from typing import Optional


class TriageError(Exception):
    """Base class for all triage engine errors"""


class ProviderError(TriageError):
    """Model provider call failed"""

    transient: bool = False

    def __init__(self, message: str, tier: Optional[str] = None):
        super().__init__(message)
        self.tier = tier


class TransientProviderError(ProviderError):
    """Timeout, rate limit or 5xx - retryable with backoff"""

    transient = True


class PermanentProviderError(ProviderError):
    """Bad request, auth failure, unknown model - fails the attempt immediately"""

    transient = False


class CircuitOpenError(TransientProviderError):
    """Provider circuit breaker is open; call was not attempted"""


class ClassifierError(TriageError):
    """Malformed classifier input; scored as lowest complexity, never raised to callers"""


class OrchestratorPartialFailure(TriageError):
    """Some analyzers timed out or failed; the attempt proceeds with the remainder"""

    def __init__(self, message: str, excluded: Optional[dict] = None):
        super().__init__(message)
        self.excluded = excluded or {}


class ConsensusAmbiguous(TriageError):
    """No majority could be formed; the attempt always routes to human review"""


class StorageError(TriageError):
    """Queue store read/write failed; the attempt aborts without side effects"""


class LeaseLostError(StorageError):
    """Worker tried to finalize an item whose lease it no longer holds"""


class QueueItemNotFoundError(TriageError):
    """Referenced queue item does not exist"""


class InvalidTransitionError(TriageError):
    """Requested status transition is not allowed from the item's current status"""

    def __init__(self, item_id: str, current: str, requested: str):
        super().__init__(f"Cannot move queue item {item_id} from '{current}' to '{requested}'")
        self.item_id = item_id
        self.current = current
        self.requested = requested


class MalformedAnalysisError(TriageError):
    """Model output could not be parsed into a verdict; the analyzer is excluded"""
