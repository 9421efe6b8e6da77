"""
Error taxonomy for xchain.

Every error carries a stable ``code`` (used by the HTTP layer and logs) and a
``retryable`` flag so callers can tell "not yet, try later" apart from
"structurally impossible, stop".
"""


class SwapError(Exception):
    """Base class for all swap errors."""
    code = "swap_error"
    retryable = False

    def to_dict(self):
        return {
            "code": self.code,
            "message": str(self),
            "retryable": self.retryable,
        }


class ValidationError(SwapError):
    """Bad input, rejected before any state change."""
    code = "validation_error"


class InvalidSchedule(ValidationError):
    """Timelock offsets violate the stage ordering."""
    code = "invalid_schedule"

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class EscrowNotFound(SwapError):
    code = "escrow_not_found"


class OrderNotFound(SwapError):
    code = "order_not_found"


class AlreadyExists(SwapError):
    code = "already_exists"


class InvalidSecret(SwapError):
    """Secret does not hash to the hashlock. Never retry with the same secret."""
    code = "invalid_secret"


class TimelockNotMet(SwapError):
    """Stage not reached yet. Retry after the gate opens."""
    code = "timelock_not_met"
    retryable = True

    def __init__(self, message, stage=None, available_at=None):
        super().__init__(message)
        self.stage = stage
        self.available_at = available_at

    def to_dict(self):
        data = super().to_dict()
        data["stage"] = self.stage.name if self.stage is not None else None
        data["available_at"] = self.available_at
        return data


class Unauthorized(SwapError):
    code = "unauthorized"


class AlreadyFinalized(SwapError):
    """Record already Withdrawn or Cancelled."""
    code = "already_finalized"


class ChainMismatch(SwapError):
    code = "chain_mismatch"


class LedgerCallError(SwapError):
    """Raised by ledger collaborators when a lock/release call fails."""
    code = "ledger_call_failed"
    retryable = True


class DeploymentFailed(SwapError):
    """Escrow creation failed in the ledger collaborator."""
    code = "deployment_failed"
    retryable = True


class TransferFailed(SwapError):
    """Releasing funds failed in the ledger collaborator."""
    code = "transfer_failed"
    retryable = True


class MonitorTimeout(SwapError):
    """Watch budget exhausted without observing a secret."""
    code = "monitor_timeout"
    retryable = True
