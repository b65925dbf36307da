"""Bridge error taxonomy.

Exceptions raised by the bridge building blocks, and the
:py:class:`FailureReason` values recorded on a failed
:py:class:`~cctp_bridge.record.TransferRecord`.

The coordinator never lets these escape a transfer: they are caught
at each step and folded into the record's ``last_error``.
Only :py:class:`ValidationError` is raised to the caller, synchronously,
before any state machine starts.
"""

import enum


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ValidationError(BridgeError):
    """Bad request shape, unsupported chain pair or invalid amount."""


class ChainRegistryError(ValidationError):
    """The static chain table is inconsistent."""


class ChainNotFound(BridgeError, KeyError):
    """Chain id, domain or name is not in the registry."""

    def __str__(self):
        # KeyError quotes its argument
        return str(self.args[0]) if self.args else ""


class SigningRejected(BridgeError):
    """The signing collaborator declined or failed to sign and broadcast."""


class TransientNetworkError(BridgeError):
    """Transport level failure. Retry within the step's attempt budget."""


class PermanentError(BridgeError):
    """Remote service gave a definitive verdict. Never retry."""


class AttestationRejected(PermanentError):
    """The attestation service reported the message as invalid or expired."""


class ProtocolViolation(BridgeError):
    """On-chain result does not match what CCTP guarantees."""


class TransferTimeout(BridgeError):
    """A bounded wait ran out."""


class CancellationRejected(BridgeError):
    """Cancel was requested when the transfer can no longer be cancelled."""


class TransferNotFound(BridgeError, KeyError):
    """No transfer with the given id."""

    def __str__(self):
        return str(self.args[0]) if self.args else ""


class InvalidTransition(BridgeError):
    """A state change not allowed by the transfer state machine."""


class TransferInProgress(BridgeError):
    """Another thread is already driving this transfer."""


class FailureReason(enum.Enum):
    """Why a transfer ended in ``Failed``.

    Values are stable strings, they are persisted and returned over HTTP.
    """

    #: User or wallet service declined the signature request
    signing_rejected = "signing_rejected"

    #: Sender holds less USDC than the transfer amount, nothing was broadcast
    insufficient_balance = "insufficient_balance"

    #: Network failure that outlived its retry budget
    transient_network_error = "transient_network_error"

    #: Mined burn did not emit ``MessageSent``, or similar inconsistency
    protocol_violation = "protocol_violation"

    #: Burn receipt did not arrive in time
    timeout = "timeout"

    #: Burn transaction was mined but reverted
    burn_reverted = "burn_reverted"

    #: Poll budget exhausted while attestation stayed pending
    attestation_timeout = "attestation_timeout"

    #: Iris reported the message as invalid
    attestation_rejected = "attestation_rejected"

    #: Mint transaction reverted, was not signed, or was not mined in time
    mint_failed = "mint_failed"

    #: Cancelled while waiting for the attestation
    user_cancelled = "user_cancelled"

    #: Unexpected exception inside the coordinator
    internal_error = "internal_error"

    @property
    def retryable(self) -> bool:
        """Whether starting a new transfer later may succeed."""
        return self in _RETRYABLE

    @property
    def hint(self) -> str:
        """Human readable advice shown together with the error message."""
        if self.retryable:
            return "retry later"
        return "do not retry"


_RETRYABLE = frozenset(
    {
        FailureReason.transient_network_error,
        FailureReason.timeout,
        FailureReason.attestation_timeout,
    }
)
