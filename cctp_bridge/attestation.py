"""Circle CCTP attestation service client.

Poll Circle's Iris API for the signed attestation of a burn message.

After ``depositForBurn()`` is mined on the source chain, the ``MessageSent``
event carries the CCTP message. Circle's attestation service signs it once the
burn block reaches finality. The signature is looked up by the message hash,
``keccak256(message)``:

- **404**: message not yet indexed by Circle
- **pending_confirmations**: burn detected, waiting for block finality
- **complete**: attestation signed and ready

Unlike :py:func:`time.sleep` based loops, :py:meth:`AttestationClient.poll`
never waits. It makes exactly one round trip and reports ``pending``;
scheduling the next poll is the caller's job. See
:py:class:`~cctp_bridge.coordinator.TransferCoordinator`.

Example::

    from cctp_bridge.attestation import create_attestation_client
    from cctp_bridge.constants import IRIS_API_SANDBOX_URL

    client = create_attestation_client(IRIS_API_SANDBOX_URL)
    ticket = client.submit("0x...")
    status = client.poll(ticket)
    if status.is_complete:
        print(status.signature.hex())
"""

import enum
import logging
import re
import threading
from dataclasses import dataclass

import requests

from cctp_bridge.constants import (
    ATTESTATION_PENDING_PLACEHOLDER,
    ATTESTATION_STATUS_COMPLETE,
    ATTESTATION_STATUS_PENDING_CONFIRMATIONS,
    DEFAULT_HTTP_TIMEOUT,
)
from cctp_bridge.errors import AttestationRejected, TransientNetworkError, ValidationError
from cctp_bridge.session import CircleSession, create_circle_session

logger = logging.getLogger(__name__)

#: HTTP 404 status code, message not indexed yet
HTTP_NOT_FOUND = 404

#: HTTP status codes with which Iris rejects a message for good
HTTP_REJECTED = frozenset({400, 410})

_MESSAGE_HASH_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


class AttestationState(enum.Enum):
    """Outcome of a single attestation poll."""

    pending = "pending"
    complete = "complete"
    failed = "failed"


@dataclass(slots=True, frozen=True)
class AttestationTicket:
    """Handle for a submitted message hash.

    Equal for equal message hashes, see :py:meth:`AttestationClient.submit`.
    """

    #: ``0x`` prefixed, lowercased message hash
    message_hash: str

    #: Iris URL polled for this message
    url: str


@dataclass(slots=True)
class AttestationStatus:
    """Result of one :py:meth:`AttestationClient.poll` round trip."""

    #: Pending, complete or failed
    state: AttestationState

    #: Attestation signature bytes, set when :py:attr:`state` is complete
    signature: bytes | None = None

    #: Raw Iris status string, ``None`` for HTTP 404
    raw_status: str | None = None

    #: Explanation for a failed state
    error: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.state == AttestationState.complete and self.signature is not None

    @property
    def is_pending(self) -> bool:
        return self.state == AttestationState.pending


def normalise_message_hash(message_hash: str | bytes) -> str:
    """Return a message hash as ``0x`` prefixed lowercase hex.

    :raises ValidationError:
        If the value is not 32 bytes.
    """
    if isinstance(message_hash, (bytes, bytearray)):
        if len(message_hash) != 32:
            raise ValidationError(f"Message hash must be 32 bytes, got {len(message_hash)}")
        return "0x" + bytes(message_hash).hex()

    if not _MESSAGE_HASH_RE.match(message_hash):
        raise ValidationError(f"Not a 32-byte hex message hash: {message_hash!r}")

    return "0x" + message_hash.lower().removeprefix("0x")


class AttestationClient:
    """Thin client over the Iris ``/v1/attestations/{messageHash}`` endpoint.

    Stateless apart from the ticket cache, safe to share between transfers and threads.

    :param session:
        Session from :py:func:`~cctp_bridge.session.create_circle_session`
        pointing at the Iris API.

    :param timeout:
        Upper bound in seconds for one HTTP round trip.
    """

    def __init__(self, session: CircleSession, timeout: float = DEFAULT_HTTP_TIMEOUT):
        self.session = session
        self.timeout = timeout
        self._tickets: dict[str, AttestationTicket] = {}
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<AttestationClient {self.session.api_url}>"

    def submit(self, message_hash: str | bytes) -> AttestationTicket:
        """Register a message hash for attestation polling.

        Idempotent: submitting the same hash again returns an equal ticket
        and causes no side effect. Iris observes burns on its own,
        so no request is made here.

        :raises ValidationError:
            If the message hash is malformed.
        """
        normalised = normalise_message_hash(message_hash)

        with self._lock:
            ticket = self._tickets.get(normalised)
            if ticket is None:
                ticket = AttestationTicket(
                    message_hash=normalised,
                    url=f"{self.session.api_url}/v1/attestations/{normalised}",
                )
                self._tickets[normalised] = ticket
                logger.info("Attestation requested for message %s\n  Iris API: %s", normalised, ticket.url)

        return ticket

    def poll(self, ticket: AttestationTicket) -> AttestationStatus:
        """Check the attestation once.

        Does not block or retry beyond the session's own HTTP retry policy.

        :return:
            Pending, or complete with the signature.

        :raises TransientNetworkError:
            Transport failure, 5xx or unparseable response. Safe to poll again.

        :raises AttestationRejected:
            Iris rejected the message hash. Do not poll again.
        """
        try:
            response = self.session.get(ticket.url, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientNetworkError(f"Attestation poll failed for {ticket.message_hash}: {e}") from e

        if response.status_code == HTTP_NOT_FOUND:
            logger.debug("Attestation not yet indexed (404) for %s", ticket.message_hash)
            return AttestationStatus(state=AttestationState.pending)

        if response.status_code in HTTP_REJECTED:
            raise AttestationRejected(f"Iris rejected message {ticket.message_hash} with HTTP {response.status_code}: {_error_text(response)}")

        try:
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise TransientNetworkError(f"Bad attestation response for {ticket.message_hash}: {e}") from e

        return parse_attestation_response(data, ticket.message_hash)


def parse_attestation_response(data: dict, message_hash: str = "") -> AttestationStatus:
    """Turn an Iris ``/v1/attestations`` JSON body into :py:class:`AttestationStatus`.

    Any status other than ``complete`` with a signature is pending.
    Unknown status strings are logged, not trusted.

    :raises TransientNetworkError:
        The body is not a JSON object, or the attestation is not a hex string.
    """
    if not isinstance(data, dict):
        raise TransientNetworkError(f"Unexpected attestation response for {message_hash}: {data!r:.200}")

    status = data.get("status", "")
    attestation_hex = data.get("attestation")

    if attestation_hex is not None and not isinstance(attestation_hex, str):
        raise TransientNetworkError(f"Malformed attestation for {message_hash}: {attestation_hex!r:.200}")

    if status == ATTESTATION_STATUS_COMPLETE:
        if attestation_hex and attestation_hex != ATTESTATION_PENDING_PLACEHOLDER:
            try:
                signature = bytes.fromhex(attestation_hex.removeprefix("0x"))
            except ValueError as e:
                raise TransientNetworkError(f"Malformed attestation for {message_hash}: {attestation_hex!r}") from e
            if signature:
                return AttestationStatus(state=AttestationState.complete, signature=signature, raw_status=status)

        logger.debug("Attestation for %s reported complete without signature, still pending", message_hash)
        return AttestationStatus(state=AttestationState.pending, raw_status=status)

    if status != ATTESTATION_STATUS_PENDING_CONFIRMATIONS:
        logger.warning("Unknown attestation status %r for %s, treating as pending", status, message_hash)

    return AttestationStatus(state=AttestationState.pending, raw_status=status)


def create_attestation_client(api_url: str, timeout: float = DEFAULT_HTTP_TIMEOUT) -> AttestationClient:
    """Create an :py:class:`AttestationClient` with a rate limited, retrying session."""
    return AttestationClient(create_circle_session(api_url), timeout=timeout)


def _error_text(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get("error") or data.get("message") or data)
    return str(data)


def fetch_attestation_status(message_hash: str | bytes, api_url: str, timeout: float = DEFAULT_HTTP_TIMEOUT) -> AttestationStatus:
    """Check an attestation once without keeping a client around.

    For scripts and debugging. See :py:meth:`AttestationClient.poll` for the errors raised.
    """
    client = create_attestation_client(api_url, timeout=timeout)
    with client.session:
        return client.poll(client.submit(message_hash))
