"""Transfer state machine data.

A :py:class:`TransferRecord` is the single source of truth for one
cross-chain transfer. Only :py:class:`~cctp_bridge.coordinator.TransferCoordinator`
mutates it, and only through :py:meth:`TransferRecord.transition` and
:py:meth:`TransferRecord.fail`, which refuse moves not in the
transition table.

.. code-block:: text

    created -> burn_submitted -> burn_confirmed -> attestation_pending
        -> attestation_ready -> mint_submitted -> completed

    any non-terminal state -> failed
"""

import datetime
import enum
import uuid
from dataclasses import dataclass, field, replace

from cctp_bridge.errors import FailureReason, InvalidTransition
from cctp_bridge.transfer import TransferRequest


class TransferState(enum.Enum):
    """Lifecycle state of a transfer."""

    #: Request validated, nothing broadcast yet
    created = "created"

    #: ``depositForBurn()`` broadcast, waiting for it to be mined
    burn_submitted = "burn_submitted"

    #: Burn mined and ``MessageSent`` found, message hash known
    burn_confirmed = "burn_confirmed"

    #: Polling the attestation service
    attestation_pending = "attestation_pending"

    #: Signed attestation received
    attestation_ready = "attestation_ready"

    #: ``receiveMessage()`` broadcast on the destination chain
    mint_submitted = "mint_submitted"

    #: USDC minted on the destination chain
    completed = "completed"

    #: Terminal failure, see :py:attr:`TransferRecord.last_error`
    failed = "failed"

    def is_terminal(self) -> bool:
        return self in (TransferState.completed, TransferState.failed)

    def can_transition_to(self, other: "TransferState") -> bool:
        if self.is_terminal():
            return False
        if other == TransferState.failed:
            return True
        return other in _TRANSITIONS[self]


#: Forward moves of the state machine. ``failed`` is reachable from every non-terminal state.
_TRANSITIONS: dict[TransferState, frozenset[TransferState]] = {
    TransferState.created: frozenset({TransferState.burn_submitted}),
    TransferState.burn_submitted: frozenset({TransferState.burn_confirmed}),
    TransferState.burn_confirmed: frozenset({TransferState.attestation_pending}),
    TransferState.attestation_pending: frozenset({TransferState.attestation_ready}),
    TransferState.attestation_ready: frozenset({TransferState.mint_submitted}),
    TransferState.mint_submitted: frozenset({TransferState.completed}),
    TransferState.completed: frozenset(),
    TransferState.failed: frozenset(),
}


@dataclass(slots=True, frozen=True)
class TransferError:
    """Why a transfer failed."""

    reason: FailureReason
    message: str

    def __str__(self):
        return f"{self.reason.value}: {self.message} ({self.reason.hint})"

    @property
    def retryable(self) -> bool:
        return self.reason.retryable

    def to_dict(self) -> dict:
        return {
            "reason": self.reason.value,
            "message": self.message,
            "retryable": self.reason.retryable,
            "hint": self.reason.hint,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TransferError":
        return cls(reason=FailureReason(data["reason"]), message=data["message"])


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(slots=True)
class TransferRecord:
    """One cross-chain USDC transfer and how far it got."""

    #: The request this transfer executes
    request: TransferRequest

    #: Random unique id
    transfer_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    #: Current state
    state: TransferState = TransferState.created

    #: ``approve()`` tx on the source chain, when the coordinator approves before burning
    approve_tx_hash: str | None = None

    #: ``depositForBurn()`` tx on the source chain
    burn_tx_hash: str | None = None

    #: CCTP message from the ``MessageSent`` event
    message_bytes: bytes | None = None

    #: ``keccak256(message_bytes)``, attestation lookup key
    message_hash: str | None = None

    #: Signature from the attestation service
    attestation_signature: bytes | None = None

    #: ``receiveMessage()`` tx on the destination chain
    mint_tx_hash: str | None = None

    #: Set when :py:attr:`state` is failed
    last_error: TransferError | None = None

    #: Attestation polls made so far
    attempts: int = 0

    created_at: datetime.datetime = field(default_factory=_now)

    updated_at: datetime.datetime = field(default_factory=_now)

    def __repr__(self):
        return f"<TransferRecord {self.transfer_id} {self.state.value} attempts:{self.attempts}>"

    def is_terminal(self) -> bool:
        return self.state.is_terminal()

    def transition(self, new_state: TransferState, **changes):
        """Move to a new state, updating fields in the same step.

        :raises InvalidTransition:
            The move is not in the transition table, or the record is terminal.
        """
        if not self.state.can_transition_to(new_state):
            raise InvalidTransition(f"Transfer {self.transfer_id}: cannot move from {self.state.value} to {new_state.value}")
        for name, value in changes.items():
            setattr(self, name, value)
        self.state = new_state
        self.updated_at = _now()

    def fail(self, reason: FailureReason, message: str):
        """Move to ``failed`` and record why."""
        self.transition(TransferState.failed, last_error=TransferError(reason, message))

    def record_attempt(self):
        """Count one attestation poll without changing state."""
        if self.state != TransferState.attestation_pending:
            raise InvalidTransition(f"Transfer {self.transfer_id}: polls only count in attestation_pending, now {self.state.value}")
        self.attempts += 1
        self.updated_at = _now()

    def snapshot(self) -> "TransferRecord":
        """Copy handed out to callers, so they never share the live record."""
        return replace(self)

    def to_dict(self) -> dict:
        """JSON serialisable form, bytes as ``0x`` hex."""
        return {
            "transfer_id": self.transfer_id,
            "request": self.request.to_dict(),
            "state": self.state.value,
            "approve_tx_hash": self.approve_tx_hash,
            "burn_tx_hash": self.burn_tx_hash,
            "message_bytes": _hex_or_none(self.message_bytes),
            "message_hash": self.message_hash,
            "attestation_signature": _hex_or_none(self.attestation_signature),
            "mint_tx_hash": self.mint_tx_hash,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TransferRecord":
        return cls(
            transfer_id=data["transfer_id"],
            request=TransferRequest.from_dict(data["request"]),
            state=TransferState(data["state"]),
            approve_tx_hash=data.get("approve_tx_hash"),
            burn_tx_hash=data.get("burn_tx_hash"),
            message_bytes=_bytes_or_none(data.get("message_bytes")),
            message_hash=data.get("message_hash"),
            attestation_signature=_bytes_or_none(data.get("attestation_signature")),
            mint_tx_hash=data.get("mint_tx_hash"),
            last_error=TransferError.from_dict(data["last_error"]) if data.get("last_error") else None,
            attempts=int(data.get("attempts", 0)),
            created_at=datetime.datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.datetime.fromisoformat(data["updated_at"]),
        )


def _hex_or_none(value: bytes | None) -> str | None:
    if value is None:
        return None
    return "0x" + value.hex()


def _bytes_or_none(value: str | None) -> bytes | None:
    if value is None:
        return None
    return bytes.fromhex(value.removeprefix("0x"))
