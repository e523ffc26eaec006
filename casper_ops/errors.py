"""
Operation Errors

Error taxonomy shared by the chain client and the lifecycle orchestrator:

- Validation (local, before acceptance): InvalidPayload, InsufficientBalance,
  PreconditionFailed, LockNotElapsed. Never persisted as an operation.
- Connectivity: AllEndpointsUnavailable. Retried by the polling loop.
- Remote application: RemoteError. Terminal immediately.
- Local timeout / cancel: recorded in Operation.error with the
  POLLING_TIMEOUT / CANCELLED prefixes.
"""

from datetime import datetime
from typing import Dict, List, Optional


# Prefixes written into Operation.error so callers can tell
# "we gave up" from "the network rejected it"
POLLING_TIMEOUT = "PollingTimeout"
CANCELLED = "Cancelled"
REMOTE_ERROR = "RemoteError"
EXECUTION_FAILED = "ExecutionFailed"


class OperationError(Exception):
    """Base class for all orchestrator errors"""

    code = "operation_error"

    def to_dict(self) -> Dict:
        return {'error': self.code, 'message': str(self)}


class ValidationError(OperationError):
    """Request rejected before a ledger entry was created"""

    code = "validation_error"


class InvalidPayload(ValidationError):
    code = "invalid_payload"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data['field'] = self.field
        data['reason'] = self.reason
        return data


class InsufficientBalance(ValidationError):
    code = "insufficient_balance"

    def __init__(self, required_motes: int, available_motes: int):
        self.required_motes = required_motes
        self.available_motes = available_motes
        super().__init__(
            f"Insufficient balance. Need {required_motes} motes, have {available_motes} motes"
        )

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data['required_motes'] = str(self.required_motes)
        data['available_motes'] = str(self.available_motes)
        return data


class PreconditionFailed(ValidationError):
    code = "precondition_failed"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class LockNotElapsed(PreconditionFailed):
    code = "lock_not_elapsed"

    def __init__(self, end_date: datetime):
        self.end_date = end_date
        super().__init__(f"Lock period not yet completed (ends {end_date.isoformat()})")


class UnknownOperation(OperationError):
    code = "unknown_operation"

    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"Operation {handle} not found")


class ChainError(OperationError):
    """Failure talking to the remote network"""

    code = "chain_error"


class AllEndpointsUnavailable(ChainError):
    code = "all_endpoints_unavailable"

    def __init__(self, method: str, errors: Optional[List[str]] = None):
        self.method = method
        self.errors = errors or []
        detail = "; ".join(self.errors) if self.errors else "no endpoints configured"
        super().__init__(f"All RPC endpoints failed for {method}: {detail}")


class RemoteError(ChainError):
    """Application-level error reported by the node itself"""

    code = "remote_error"

    def __init__(self, code: int, message: str):
        self.remote_code = code
        self.remote_message = message
        super().__init__(f"RPC error {code}: {message}")

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data['remote_code'] = self.remote_code
        return data
