"""Drive CCTP transfers from burn to mint.

:py:class:`TransferCoordinator` owns the state machine of every transfer:

1. ``created``: optionally ``approve()`` USDC, then broadcast ``depositForBurn()``
2. ``burn_submitted``: wait for the burn receipt, find ``MessageSent``
3. ``burn_confirmed``: submit the message hash to the attestation service
4. ``attestation_pending``: poll until the attestation is signed
5. ``attestation_ready``: broadcast ``receiveMessage()`` on the destination chain
6. ``mint_submitted``: wait for the mint receipt
7. ``completed``, or ``failed`` from any earlier state

Errors never escape a transfer. They are recorded as
:py:attr:`~cctp_bridge.record.TransferRecord.last_error` and callers observe
them by reading the record. The only exception raised to callers of
:py:meth:`TransferCoordinator.initiate` is
:py:class:`~cctp_bridge.errors.ValidationError`.

Each transfer runs in one worker thread. Between attestation polls the worker
sleeps on the transfer's own :py:class:`threading.Event`, which
:py:meth:`TransferCoordinator.cancel` sets, so cancellation takes effect
without waiting for the poll interval to pass.

Example::

    coordinator = TransferCoordinator(
        registry=get_default_registry(),
        attestation_client=create_attestation_client(IRIS_API_SANDBOX_URL),
        signer=signer,
        receipts=receipts,
    )
    record = coordinator.initiate(request)
    coordinator.start(record.transfer_id)
    record = coordinator.wait(record.transfer_id, timeout=3600)
    assert record.state == TransferState.completed, str(record.last_error)
"""

import concurrent.futures
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Mapping

from cctp_bridge.attestation import AttestationClient, AttestationState
from cctp_bridge.chains import ChainRegistry
from cctp_bridge.constants import (
    DEFAULT_MAX_POLL_ATTEMPTS,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_RECEIPT_TIMEOUT,
)
from cctp_bridge.errors import (
    AttestationRejected,
    CancellationRejected,
    FailureReason,
    ProtocolViolation,
    SigningRejected,
    TransferInProgress,
    TransferTimeout,
    TransientNetworkError,
    ValidationError,
)
from cctp_bridge.receipt import ReceiptSource, TokenReader, extract_message_sent, is_receipt_success
from cctp_bridge.record import TransferRecord, TransferState
from cctp_bridge.signer import TransactionSigner
from cctp_bridge.store import MemoryTransferStore, TransferStore
from cctp_bridge.transfer import BridgeTransactionBuilder, TransferRequest, format_usdc_amount, parse_usdc_amount

logger = logging.getLogger(__name__)

#: Called with a record snapshot after every state change
StateChangeCallback = Callable[[TransferRecord], None]


class _Slot:
    """Live record of one transfer and its synchronisation primitives."""

    __slots__ = ("record", "lock", "driver", "wake")

    def __init__(self, record: TransferRecord):
        #: Mutated only while holding :py:attr:`lock`
        self.record = record

        #: Guards record mutation, never held during I/O
        self.lock = threading.Lock()

        #: Held by the single thread driving the state machine
        self.driver = threading.Lock()

        #: Set on cancel or shutdown to cut the poll wait short
        self.wake = threading.Event()


class TransferCoordinator:
    """Run the burn, attest, mint lifecycle of many transfers in parallel.

    :param registry:
        Supported chains.

    :param attestation_client:
        Iris client, shared by all transfers.

    :param signer:
        Signs and broadcasts the approve, burn and mint calls.

    :param receipts:
        Waits for transactions to be mined.

    :param store:
        Where records are persisted. Defaults to memory.

    :param poll_interval:
        Seconds between attestation polls.

    :param max_poll_attempts:
        Attestation poll budget. Transport errors consume an attempt.

    :param receipt_timeout:
        Upper bound in seconds for one receipt wait.

    :param network_retries:
        How many times a receipt wait is tried on transport errors.

    :param retry_delay:
        Seconds between receipt wait retries.

    :param max_workers:
        Transfers driven in parallel by :py:meth:`start`.

    :param approve_before_burn:
        Send USDC ``approve()`` to TokenMessenger before each burn.
        With a ``token_reader``, only when the current allowance is short.

    :param token_reader:
        Reads the sender's USDC balance and allowance before the burn.
        Without one, the burn is broadcast unchecked.

    :param on_state_change:
        Called with a record snapshot after every change, from the driving thread.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        attestation_client: AttestationClient,
        signer: TransactionSigner,
        receipts: ReceiptSource,
        store: TransferStore | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        network_retries: int = 3,
        retry_delay: float = 5.0,
        max_workers: int = 8,
        approve_before_burn: bool = False,
        token_reader: TokenReader | None = None,
        on_state_change: StateChangeCallback | None = None,
    ):
        assert max_poll_attempts > 0, f"Bad poll budget {max_poll_attempts}"
        assert receipt_timeout > 0, "Receipt waits must be bounded"
        assert network_retries > 0

        self.registry = registry
        self.builder = BridgeTransactionBuilder(registry)
        self.attestation_client = attestation_client
        self.signer = signer
        self.receipts = receipts
        self.store = store if store is not None else MemoryTransferStore()
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.receipt_timeout = receipt_timeout
        self.network_retries = network_retries
        self.retry_delay = retry_delay
        self.approve_before_burn = approve_before_burn
        self.token_reader = token_reader
        self.on_state_change = on_state_change

        self._slots: dict[str, _Slot] = {}
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cctp-transfer")

        self._handlers: dict[TransferState, Callable[[TransferRecord], None]] = {
            TransferState.created: self._submit_burn,
            TransferState.burn_submitted: self._confirm_burn,
            TransferState.burn_confirmed: self._request_attestation,
            TransferState.attestation_pending: self._poll_attestation,
            TransferState.attestation_ready: self._submit_mint,
            TransferState.mint_submitted: self._confirm_mint,
        }

    def __repr__(self):
        return f"<TransferCoordinator transfers:{len(self._slots)} store:{self.store}>"

    #
    # Public API
    #

    def initiate(self, request: TransferRequest) -> TransferRecord:
        """Validate a request and create its record in ``created`` state.

        Nothing is broadcast. Call :py:meth:`step`, :py:meth:`run` or :py:meth:`start` next.

        :raises ValidationError:
            Same chain, unknown chain, bad amount or bad address.
        """
        amount = self.builder.validate(request)
        record = TransferRecord(request=request)
        self.store.save(record)
        slot = self._register(record)

        logger.info(
            "Transfer %s created: %d raw USDC from chain %d to chain %d, recipient %s",
            record.transfer_id,
            amount,
            request.source_chain_id,
            request.destination_chain_id,
            request.recipient_address,
        )
        snapshot = slot.record.snapshot()
        self._notify(snapshot)
        return snapshot

    def get(self, transfer_id: str) -> TransferRecord:
        """Current state of a transfer.

        :raises TransferNotFound:
            Unknown transfer id.
        """
        slot = self._slot(transfer_id)
        with slot.lock:
            return slot.record.snapshot()

    def list_transfers(self, state: TransferState | None = None) -> list[TransferRecord]:
        """All persisted transfers, oldest first, optionally filtered by state."""
        records = self.store.list()
        if state is not None:
            records = [r for r in records if r.state == state]
        return records

    def step(self, transfer_id: str) -> TransferRecord:
        """Advance a transfer by one transition, or one attestation poll.

        Terminal records are returned unchanged.

        :raises TransferInProgress:
            Another thread is driving the transfer.
        """
        slot = self._slot(transfer_id)
        if not slot.driver.acquire(blocking=False):
            raise TransferInProgress(f"Transfer {transfer_id} is already being driven")
        try:
            self._step(slot)
            result = self.get(transfer_id)
        finally:
            slot.driver.release()
        self._forget(slot)
        return result

    def run(self, transfer_id: str) -> TransferRecord:
        """Drive a transfer to a terminal state in the calling thread.

        Returns early, with a resumable non-terminal record, if the
        coordinator is shut down meanwhile.

        :raises TransferInProgress:
            Another thread is driving the transfer.
        """
        slot = self._slot(transfer_id)
        if not slot.driver.acquire(blocking=False):
            raise TransferInProgress(f"Transfer {transfer_id} is already being driven")
        try:
            while not self._stopping.is_set():
                handled = self._step(slot)
                if handled is None:
                    break
                with slot.lock:
                    still_polling = slot.record.state == TransferState.attestation_pending
                if handled == TransferState.attestation_pending and still_polling:
                    slot.wake.wait(self.poll_interval)
            result = self.get(transfer_id)
        finally:
            slot.driver.release()
        self._forget(slot)
        return result

    def start(self, transfer_id: str) -> Future:
        """Drive a transfer in the worker pool.

        :return:
            Future resolving to the final record. If the transfer is
            already running, its existing future.
        """
        slot = self._slot(transfer_id)
        with self._lock:
            future = self._futures.get(transfer_id)
            if future is not None and not future.done():
                return future
            future = self._executor.submit(self.run, slot.record.transfer_id)
            self._futures[transfer_id] = future
            return future

    def wait(self, transfer_id: str, timeout: float | None = None) -> TransferRecord:
        """Block until a started transfer finishes.

        :raises TransferTimeout:
            Still running after *timeout* seconds.
        """
        with self._lock:
            future = self._futures.get(transfer_id)
        if future is None:
            return self.get(transfer_id)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as e:
            raise TransferTimeout(f"Transfer {transfer_id} still running after {timeout}s") from e

    def cancel(self, transfer_id: str) -> TransferRecord:
        """Cancel a transfer waiting for its attestation.

        Once the mint is broadcast it cannot be unwound, and before the
        burn is confirmed there is nothing to stop yet.

        :return:
            The record, now failed with ``user_cancelled``.

        :raises CancellationRejected:
            The transfer is not in ``attestation_pending``. The record is not touched.
        """
        slot = self._slot(transfer_id)
        with slot.lock:
            state = slot.record.state
            if state != TransferState.attestation_pending:
                raise CancellationRejected(f"Transfer {transfer_id} is {state.value}, only transfers waiting for attestation can be cancelled")
            slot.record.fail(FailureReason.user_cancelled, f"Cancelled by user after {slot.record.attempts} attestation polls")
            self.store.save(slot.record)
            snapshot = slot.record.snapshot()

        slot.wake.set()
        logger.info("Transfer %s cancelled", transfer_id)
        self._notify(snapshot)

        # A running driver forgets the slot itself when it wakes up
        if slot.driver.acquire(blocking=False):
            try:
                self._forget(slot)
            finally:
                slot.driver.release()
        return snapshot

    def resume(self) -> list[str]:
        """Restart every non-terminal transfer found in the store.

        - ``created``: the burn is requested again, nothing was broadcast before
        - ``burn_submitted``: wait for the recorded burn, never burn twice
        - ``burn_confirmed``, ``attestation_pending``: resubmit the message hash and keep
          polling with the persisted attempt count
        - ``attestation_ready``: broadcast the mint
        - ``mint_submitted``: wait for the recorded mint

        :return:
            Ids of the resumed transfers
        """
        resumed = []
        for record in self.store.list():
            if record.is_terminal():
                continue
            with self._lock:
                if record.transfer_id not in self._slots:
                    self._slots[record.transfer_id] = _Slot(record)
            logger.info("Resuming transfer %s from state %s, %d polls used", record.transfer_id, record.state.value, record.attempts)
            self.start(record.transfer_id)
            resumed.append(record.transfer_id)
        return resumed

    def shutdown(self, wait: bool = True):
        """Stop driving transfers.

        Running transfers stop at their next step and stay resumable.
        """
        self._stopping.set()
        with self._lock:
            slots = list(self._slots.values())
        for slot in slots:
            slot.wake.set()
        self._executor.shutdown(wait=wait)

    #
    # State machine
    #

    def _register(self, record: TransferRecord) -> _Slot:
        with self._lock:
            assert record.transfer_id not in self._slots, f"Duplicate transfer {record.transfer_id}"
            slot = _Slot(record)
            self._slots[record.transfer_id] = slot
            return slot

    def _slot(self, transfer_id: str) -> _Slot:
        with self._lock:
            slot = self._slots.get(transfer_id)
            if slot is not None:
                return slot

        # Written by another process, before a restart, or already finished
        record = self.store.load(transfer_id)
        if record.is_terminal():
            return _Slot(record)
        with self._lock:
            return self._slots.setdefault(transfer_id, _Slot(record))

    def _forget(self, slot: _Slot):
        """Drop a finished transfer from memory. The store keeps the record."""
        with slot.lock:
            if not slot.record.is_terminal():
                return
            transfer_id = slot.record.transfer_id
        with self._lock:
            if self._slots.get(transfer_id) is slot:
                del self._slots[transfer_id]
            self._futures.pop(transfer_id, None)

    def _step(self, slot: _Slot) -> TransferState | None:
        """Run the handler of the current state.

        :return:
            State that was handled, ``None`` if the record is terminal.
        """
        with slot.lock:
            record = slot.record.snapshot()

        if record.is_terminal():
            return None

        handler = self._handlers[record.state]
        try:
            handler(record)
        except Exception as e:
            logger.error("Transfer %s: unexpected error in state %s", record.transfer_id, record.state.value, exc_info=True)
            self._fail(record, FailureReason.internal_error, f"{e.__class__.__name__}: {e}")
        return record.state

    def _update(self, record: TransferRecord, change: Callable[[TransferRecord], None]) -> bool:
        """Apply a change to the live record if it is still in the state the step started from.

        :return:
            ``False`` if the record moved meanwhile, e.g. it was cancelled.
        """
        slot = self._slots[record.transfer_id]
        with slot.lock:
            live = slot.record
            if live.state != record.state:
                logger.info("Transfer %s moved from %s to %s meanwhile, discarding step result", live.transfer_id, record.state.value, live.state.value)
                return False
            change(live)
            self.store.save(live)
            snapshot = live.snapshot()

        self._notify(snapshot)
        return True

    def _fail(self, record: TransferRecord, reason: FailureReason, message: str):
        if self._update(record, lambda r: r.fail(reason, message)):
            logger.warning("Transfer %s failed in state %s: %s: %s (%s)", record.transfer_id, record.state.value, reason.value, message, reason.hint)

    def _notify(self, snapshot: TransferRecord):
        if self.on_state_change is None:
            return
        try:
            self.on_state_change(snapshot)
        except Exception:
            logger.exception("State change callback failed for transfer %s", snapshot.transfer_id)

    def _wait_receipt(self, record: TransferRecord, chain_id: int, tx_hash: str) -> Mapping:
        """Wait for a receipt, retrying transport errors."""
        for attempt in range(1, self.network_retries + 1):
            try:
                return self.receipts.wait_for_receipt(chain_id, tx_hash, self.receipt_timeout)
            except TransientNetworkError as e:
                if attempt == self.network_retries:
                    raise
                logger.warning("Transfer %s: receipt wait for %s failed, attempt %d/%d: %s", record.transfer_id, tx_hash, attempt, self.network_retries, e)
                self._slots[record.transfer_id].wake.wait(self.retry_delay)

        raise AssertionError("Unreachable")

    def _approve(self, record: TransferRecord) -> bool:
        """Approve USDC to TokenMessenger and wait until mined.

        :return:
            ``False`` if the transfer failed.
        """
        request = record.request
        tx_hash = record.approve_tx_hash
        if tx_hash is None and self.token_reader is not None:
            source = self.registry.describe(request.source_chain_id)
            amount = parse_usdc_amount(request.amount)
            allowance = self.token_reader.allowance(source.chain_id, source.usdc_address, request.sender_address, source.burn_contract_address)
            if allowance >= amount:
                logger.info("Transfer %s: USDC allowance %d already covers %d, no approve needed", record.transfer_id, allowance, amount)
                return True

        if tx_hash is None:
            spec = self.builder.build_approve(request)
            tx_hash = self.signer.sign_and_broadcast(spec)
            if not self._update(record, lambda r: setattr(r, "approve_tx_hash", tx_hash)):
                return False
            record.approve_tx_hash = tx_hash

        receipt = self._wait_receipt(record, request.source_chain_id, tx_hash)
        if not is_receipt_success(receipt):
            self._fail(record, FailureReason.burn_reverted, f"USDC approve() reverted, tx {tx_hash}")
            return False

        logger.info("Transfer %s: USDC approved, tx %s", record.transfer_id, tx_hash)
        return True

    def _check_balance(self, record: TransferRecord) -> bool:
        """Refuse to burn more USDC than the sender holds.

        :return:
            ``False`` if the transfer failed.
        """
        request = record.request
        source = self.registry.describe(request.source_chain_id)
        amount = parse_usdc_amount(request.amount)
        balance = self.token_reader.balance_of(source.chain_id, source.usdc_address, request.sender_address)
        if balance < amount:
            self._fail(
                record,
                FailureReason.insufficient_balance,
                f"Insufficient USDC balance on {source.name}: have {format_usdc_amount(balance)}, need {format_usdc_amount(amount)}",
            )
            return False
        return True

    def _submit_burn(self, record: TransferRecord):
        try:
            if self.token_reader is not None and not self._check_balance(record):
                return
            if self.approve_before_burn and not self._approve(record):
                return
            spec = self.builder.build_burn(record.request)
            tx_hash = self.signer.sign_and_broadcast(spec)
        except SigningRejected as e:
            self._fail(record, FailureReason.signing_rejected, str(e))
            return
        except TransientNetworkError as e:
            # Signing needs the user again, never retried automatically
            self._fail(record, FailureReason.transient_network_error, str(e))
            return
        except TransferTimeout as e:
            self._fail(record, FailureReason.timeout, str(e))
            return

        if self._update(record, lambda r: r.transition(TransferState.burn_submitted, burn_tx_hash=tx_hash)):
            logger.info("Transfer %s: burn broadcast, tx %s", record.transfer_id, tx_hash)

    def _confirm_burn(self, record: TransferRecord):
        source = self.registry.describe(record.request.source_chain_id)
        try:
            receipt = self._wait_receipt(record, source.chain_id, record.burn_tx_hash)
        except TransferTimeout as e:
            self._fail(record, FailureReason.timeout, str(e))
            return
        except TransientNetworkError as e:
            self._fail(record, FailureReason.transient_network_error, str(e))
            return

        if not is_receipt_success(receipt):
            self._fail(record, FailureReason.burn_reverted, f"depositForBurn() reverted, tx {record.burn_tx_hash}")
            return

        try:
            message = extract_message_sent(receipt, emitter=source.mint_contract_address)
        except ProtocolViolation as e:
            self._fail(record, FailureReason.protocol_violation, str(e))
            return

        changed = self._update(
            record,
            lambda r: r.transition(
                TransferState.burn_confirmed,
                message_bytes=message.message,
                message_hash=message.message_hash,
            ),
        )
        if changed:
            logger.info("Transfer %s: burn mined, message hash %s", record.transfer_id, message.message_hash)

    def _request_attestation(self, record: TransferRecord):
        try:
            self.attestation_client.submit(record.message_hash)
        except ValidationError as e:
            self._fail(record, FailureReason.protocol_violation, str(e))
            return

        self._update(record, lambda r: r.transition(TransferState.attestation_pending))

    def _poll_attestation(self, record: TransferRecord):
        if record.attempts >= self.max_poll_attempts:
            self._fail(record, FailureReason.attestation_timeout, f"Attestation not ready after {record.attempts} polls")
            return

        attempt = record.attempts + 1
        level = logging.INFO if attempt == 1 else logging.DEBUG
        logger.log(level, "Transfer %s: polling attestation for %s, attempt %d/%d", record.transfer_id, record.message_hash, attempt, self.max_poll_attempts)

        status = None
        try:
            # Idempotent, also restores the ticket after a restart
            ticket = self.attestation_client.submit(record.message_hash)
            status = self.attestation_client.poll(ticket)
        except TransientNetworkError as e:
            logger.warning("Transfer %s: attestation poll %d failed: %s", record.transfer_id, attempt, e)
        except AttestationRejected as e:
            self._fail(record, FailureReason.attestation_rejected, str(e))
            return

        if status is not None and status.is_complete:

            def ready(r: TransferRecord):
                r.record_attempt()
                r.transition(TransferState.attestation_ready, attestation_signature=status.signature)

            if self._update(record, ready):
                logger.info("Transfer %s: attestation ready after %d polls", record.transfer_id, attempt)
            return

        if status is not None and status.state == AttestationState.failed:
            self._fail(record, FailureReason.attestation_rejected, status.error or "Attestation failed")
            return

        if not self._update(record, lambda r: r.record_attempt()):
            return

        if attempt >= self.max_poll_attempts:
            self._fail(record, FailureReason.attestation_timeout, f"Attestation not ready after {attempt} polls")

    def _submit_mint(self, record: TransferRecord):
        try:
            spec = self.builder.build_mint(record.message_bytes, record.attestation_signature, record.request.destination_chain_id)
            tx_hash = self.signer.sign_and_broadcast(spec)
        except (SigningRejected, TransientNetworkError, ValidationError) as e:
            self._fail(record, FailureReason.mint_failed, f"receiveMessage() not broadcast: {e}")
            return

        if self._update(record, lambda r: r.transition(TransferState.mint_submitted, mint_tx_hash=tx_hash)):
            logger.info("Transfer %s: mint broadcast, tx %s", record.transfer_id, tx_hash)

    def _confirm_mint(self, record: TransferRecord):
        try:
            receipt = self._wait_receipt(record, record.request.destination_chain_id, record.mint_tx_hash)
        except (TransferTimeout, TransientNetworkError) as e:
            self._fail(record, FailureReason.mint_failed, f"Mint not confirmed: {e}")
            return

        if not is_receipt_success(receipt):
            self._fail(record, FailureReason.mint_failed, f"receiveMessage() reverted, tx {record.mint_tx_hash}")
            return

        if self._update(record, lambda r: r.transition(TransferState.completed)):
            logger.info("Transfer %s completed, mint tx %s", record.transfer_id, record.mint_tx_hash)
