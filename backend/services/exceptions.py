"""Error taxonomy for detection and execution.

Only ``ValidationError`` and ``AggregatedExecutionFailure`` (plus the
terminal ``VerificationMismatch``) leave ``OrderExecutionEngine.execute``;
``ProviderError`` is consumed by provider fallback and ``TransportError`` by
retry loops.
"""

from typing import Optional

from models.trading import InvalidTransition, ProviderFailure

__all__ = [
    "ExecutionError",
    "ValidationError",
    "ProviderError",
    "AggregatedExecutionFailure",
    "TransportError",
    "RpcError",
    "VerificationMismatch",
    "InvalidTransition",
]


class ExecutionError(Exception):
    """Base class for every error this service raises on purpose."""


class ValidationError(ExecutionError):
    """Bad input; never retried and no provider is contacted."""


class ProviderError(ExecutionError):
    """One provider failed at ``stage`` (quote, build, sign, submit, verify).

    ``terminal`` marks failures after which no other provider may be tried
    because a transaction may already have landed; ``timed_out`` marks the
    verification-timeout case among them.
    """

    def __init__(self, provider_id: str, stage: str, reason: str, terminal: bool = False, timed_out: bool = False):
        super().__init__(f"{provider_id} {stage} failed: {reason}")
        self.provider_id = provider_id
        self.stage = stage
        self.reason = reason
        self.terminal = terminal
        self.timed_out = timed_out

    def as_failure(self) -> ProviderFailure:
        return ProviderFailure(provider_id=self.provider_id, stage=self.stage, reason=self.reason)


class AggregatedExecutionFailure(ExecutionError):
    """Every provider was tried (or skipped) and none confirmed."""

    def __init__(self, failures: list):
        self.failures: list = list(failures)
        detail = "; ".join(f"{f.provider_id}: {f.reason}" for f in self.failures) or "no provider available"
        super().__init__(f"All execution providers failed ({detail})")

    @property
    def reasons(self) -> dict:
        return {f.provider_id: f.reason for f in self.failures}


class TransportError(ExecutionError):
    """Connection, timeout or stream loss talking to the ledger or a provider."""

    def __init__(self, message: str, endpoint: Optional[str] = None):
        super().__init__(message)
        self.endpoint = endpoint


class RpcError(ExecutionError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, method: str, code: Optional[int], message: str, data=None):
        super().__init__(f"{method}: {message}" + (f" (code {code})" if code is not None else ""))
        self.method = method
        self.code = code
        self.rpc_message = message
        self.data = data


class VerificationMismatch(ExecutionError):
    """The transaction landed without error but the expected balance change is missing."""

    def __init__(self, provider_id: str, signature: str, reason: str):
        super().__init__(f"{provider_id} transaction {signature} confirmed without effect: {reason}")
        self.provider_id = provider_id
        self.signature = signature
        self.reason = reason

    def as_failure(self) -> ProviderFailure:
        return ProviderFailure(provider_id=self.provider_id, stage="verify", reason=self.reason)
