"""Transfer coordinator state machine.

Drives transfers over a fake chain and a scripted Iris API.
Poll interval is zero, so every test runs instantly.
"""

import pytest
import requests

from cctp_bridge.errors import (
    CancellationRejected,
    FailureReason,
    TransferInProgress,
    TransferNotFound,
    TransferTimeout,
    TransientNetworkError,
    ValidationError,
)
from cctp_bridge.record import TransferState
from cctp_bridge.store import JSONFileTransferStore
from cctp_bridge.transfer import TransferRequest

from fakes import CHAIN_A, MESSAGE, MESSAGE_HASH, RECIPIENT, SENDER, SIGNATURE, FakeIrisSession, complete_body, pending_body


def test_end_to_end_transfer(make_coordinator, chain, transfer_request):
    """Burn, two pending polls, complete attestation, mint."""
    iris = FakeIrisSession([pending_body(), pending_body(), complete_body()])
    coordinator = make_coordinator(iris)

    record = coordinator.initiate(transfer_request)
    assert record.state == TransferState.created

    record = coordinator.run(record.transfer_id)

    assert record.state == TransferState.completed
    assert record.message_hash == MESSAGE_HASH
    assert record.message_bytes == MESSAGE
    assert record.attestation_signature == SIGNATURE
    assert record.burn_tx_hash is not None
    assert record.mint_tx_hash is not None
    assert record.burn_tx_hash != record.mint_tx_hash
    assert record.last_error is None
    assert record.attempts == 3

    assert chain.functions_signed() == ["depositForBurn", "receiveMessage"]
    assert iris.urls == [f"https://iris-api-sandbox.circle.com/v1/attestations/{MESSAGE_HASH}"] * 3

    burn, mint = chain.signed
    assert burn.chain_id == CHAIN_A
    assert burn.args[0] == 10_000_000
    assert mint.chain_id == transfer_request.destination_chain_id
    assert mint.args == (MESSAGE, SIGNATURE)


def test_state_changes_are_reported_in_order(make_coordinator, transfer_request):
    """on_state_change sees every state of the lifecycle."""
    seen = []
    coordinator = make_coordinator(FakeIrisSession([pending_body(), complete_body()]), on_state_change=lambda r: seen.append(r.state))

    record = coordinator.initiate(transfer_request)
    coordinator.run(record.transfer_id)

    deduplicated = [s for i, s in enumerate(seen) if i == 0 or seen[i - 1] != s]
    assert deduplicated == [
        TransferState.created,
        TransferState.burn_submitted,
        TransferState.burn_confirmed,
        TransferState.attestation_pending,
        TransferState.attestation_ready,
        TransferState.mint_submitted,
        TransferState.completed,
    ]


def test_step_advances_one_transition(make_coordinator, transfer_request):
    """step() moves exactly one state, or makes one poll."""
    coordinator = make_coordinator(FakeIrisSession([pending_body(), complete_body()]))
    transfer_id = coordinator.initiate(transfer_request).transfer_id

    assert coordinator.step(transfer_id).state == TransferState.burn_submitted
    assert coordinator.step(transfer_id).state == TransferState.burn_confirmed
    assert coordinator.step(transfer_id).state == TransferState.attestation_pending

    record = coordinator.step(transfer_id)
    assert record.state == TransferState.attestation_pending
    assert record.attempts == 1

    assert coordinator.step(transfer_id).state == TransferState.attestation_ready
    assert coordinator.step(transfer_id).state == TransferState.mint_submitted
    assert coordinator.step(transfer_id).state == TransferState.completed

    # Terminal records do not move
    assert coordinator.step(transfer_id).state == TransferState.completed


def test_validation_happens_before_any_state(make_coordinator, chain):
    """Bad requests are rejected synchronously and leave no record."""
    coordinator = make_coordinator(FakeIrisSession([pending_body()]))

    with pytest.raises(ValidationError):
        coordinator.initiate(TransferRequest(CHAIN_A, CHAIN_A, "1", SENDER, RECIPIENT))

    with pytest.raises(ValidationError):
        coordinator.initiate(TransferRequest(CHAIN_A, 1, "1", SENDER, RECIPIENT))

    with pytest.raises(ValidationError):
        coordinator.initiate(TransferRequest(CHAIN_A, 5042002, "0.0000001", SENDER, RECIPIENT))

    assert coordinator.list_transfers() == []
    assert chain.signed == []


def test_poll_budget_exhausted(make_coordinator, transfer_request):
    """60 pending polls fail the transfer with attestation_timeout and no 61st poll is made."""
    iris = FakeIrisSession([pending_body()])
    coordinator = make_coordinator(iris, max_poll_attempts=60)

    record = coordinator.initiate(transfer_request)
    record = coordinator.run(record.transfer_id)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.attestation_timeout
    assert record.last_error.retryable
    assert record.attempts == 60
    assert len(iris.urls) == 60


def test_not_indexed_counts_as_pending(make_coordinator, transfer_request):
    """HTTP 404 from Iris means the burn is not indexed yet."""
    coordinator = make_coordinator(FakeIrisSession([404, 404, complete_body()]))
    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)
    assert record.state == TransferState.completed
    assert record.attempts == 3


def test_transient_poll_errors_consume_attempts(make_coordinator, transfer_request):
    """Transport errors are retried but use up the poll budget."""
    iris = FakeIrisSession([requests.ConnectionError("reset"), 503, complete_body()])
    coordinator = make_coordinator(iris, max_poll_attempts=3)

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.completed
    assert record.attempts == 3


def test_transient_poll_errors_exhaust_budget(make_coordinator, transfer_request):
    iris = FakeIrisSession([requests.ConnectionError("reset")])
    coordinator = make_coordinator(iris, max_poll_attempts=5)

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.attestation_timeout
    assert len(iris.urls) == 5


@pytest.mark.parametrize(
    "bad_body",
    [
        ["garbage"],
        "garbage",
        {"status": "complete", "attestation": 12345},
        {"status": "complete", "attestation": "0xnothex"},
    ],
)
def test_malformed_attestation_body_consumes_attempt(make_coordinator, transfer_request, bad_body):
    """A body Iris should never send is a transient poll failure, not a bug."""
    iris = FakeIrisSession([bad_body, pending_body(), complete_body()])
    coordinator = make_coordinator(iris)

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.completed
    assert record.last_error is None
    assert record.attempts == 3


def test_malformed_attestation_body_exhausts_budget(make_coordinator, transfer_request):
    iris = FakeIrisSession([["garbage"]])
    coordinator = make_coordinator(iris, max_poll_attempts=4)

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.attestation_timeout
    assert len(iris.urls) == 4


def test_complete_with_empty_attestation_keeps_polling(make_coordinator, transfer_request):
    """``complete`` with a bare ``0x`` attestation has no signature to mint with."""
    iris = FakeIrisSession([{"status": "complete", "attestation": "0x"}, complete_body()])
    coordinator = make_coordinator(iris)

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.completed
    assert record.attestation_signature == SIGNATURE
    assert record.attempts == 2


def test_attestation_rejected(make_coordinator, transfer_request):
    """An explicit rejection from Iris is terminal and not retried."""
    iris = FakeIrisSession([pending_body(), 400])
    coordinator = make_coordinator(iris)

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.attestation_rejected
    assert not record.last_error.retryable
    assert "do not retry" in str(record.last_error)
    assert len(iris.urls) == 2


def test_cancel_during_polling_stops_polls(make_coordinator, transfer_request):
    """Cancelling while waiting for the attestation halts polling."""
    coordinator = None
    transfer_id = None

    def cancel_on_third_poll(call_number: int):
        if call_number == 3:
            cancelled = coordinator.cancel(transfer_id)
            assert cancelled.state == TransferState.failed

    iris = FakeIrisSession([pending_body()], on_get=cancel_on_third_poll)
    coordinator = make_coordinator(iris)
    transfer_id = coordinator.initiate(transfer_request).transfer_id

    record = coordinator.run(transfer_id)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.user_cancelled
    assert len(iris.urls) == 3
    # The answer of the poll in flight is discarded
    assert record.attempts == 2


def test_cancel_wakes_background_transfer(make_coordinator, transfer_request):
    """A transfer sleeping between polls in a worker thread is cancelled at once."""
    iris = FakeIrisSession([pending_body()])
    coordinator = make_coordinator(iris, poll_interval=3600)
    transfer_id = coordinator.initiate(transfer_request).transfer_id

    for _ in range(4):
        coordinator.step(transfer_id)
    assert coordinator.get(transfer_id).state == TransferState.attestation_pending

    future = coordinator.start(transfer_id)
    # Same future when started twice
    assert coordinator.start(transfer_id) is future

    coordinator.cancel(transfer_id)
    record = coordinator.wait(transfer_id, timeout=10)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.user_cancelled


def test_cancel_after_mint_rejected(make_coordinator, transfer_request):
    """Once the mint is broadcast the transfer cannot be cancelled and the record is untouched."""
    coordinator = make_coordinator(FakeIrisSession([complete_body()]))
    transfer_id = coordinator.initiate(transfer_request).transfer_id

    record = coordinator.step(transfer_id)
    while record.state != TransferState.mint_submitted:
        record = coordinator.step(transfer_id)

    before = coordinator.get(transfer_id).to_dict()
    with pytest.raises(CancellationRejected):
        coordinator.cancel(transfer_id)
    assert coordinator.get(transfer_id).to_dict() == before

    record = coordinator.run(transfer_id)
    assert record.state == TransferState.completed

    with pytest.raises(CancellationRejected):
        coordinator.cancel(transfer_id)
    assert coordinator.get(transfer_id).state == TransferState.completed


def test_cancel_before_attestation_rejected(make_coordinator, transfer_request):
    coordinator = make_coordinator(FakeIrisSession([pending_body()]))
    transfer_id = coordinator.initiate(transfer_request).transfer_id
    with pytest.raises(CancellationRejected):
        coordinator.cancel(transfer_id)
    assert coordinator.get(transfer_id).state == TransferState.created


def test_signing_rejected_is_not_retried(make_coordinator, chain, transfer_request, signing_rejected):
    chain.sign_errors["depositForBurn"] = signing_rejected
    coordinator = make_coordinator(FakeIrisSession([complete_body()]))

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.signing_rejected
    assert "declined" in record.last_error.message
    assert record.burn_tx_hash is None
    assert chain.signed == []


def test_burn_without_message_sent(make_coordinator, chain, transfer_request):
    """A mined burn without MessageSent is a protocol violation."""
    chain.emit_message_sent = False
    coordinator = make_coordinator(FakeIrisSession([complete_body()]))

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.protocol_violation
    assert record.burn_tx_hash is not None
    assert record.message_hash is None


def test_burn_reverted(make_coordinator, chain, transfer_request):
    chain.statuses["depositForBurn"] = 0
    coordinator = make_coordinator(FakeIrisSession([complete_body()]))

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.burn_reverted


def test_burn_receipt_timeout(make_coordinator, chain, transfer_request):
    """Receipt waits are bounded and end in a retryable timeout."""
    chain.receipt_errors["depositForBurn"] = TransferTimeout("not mined in 300s")
    coordinator = make_coordinator(FakeIrisSession([complete_body()]))

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.timeout
    assert record.last_error.retryable


def test_burn_receipt_network_errors_retried(make_coordinator, chain, transfer_request):
    chain.receipt_errors["depositForBurn"] = TransientNetworkError("RPC down")
    coordinator = make_coordinator(FakeIrisSession([complete_body()]), network_retries=2)

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.transient_network_error
    # Never burned twice
    assert chain.functions_signed() == ["depositForBurn"]


def test_mint_failures(make_coordinator, chain, transfer_request):
    """Reverted mints fail with mint_failed."""
    chain.statuses["receiveMessage"] = 0
    coordinator = make_coordinator(FakeIrisSession([complete_body()]))

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.mint_failed
    assert record.mint_tx_hash is not None
    assert record.attestation_signature == SIGNATURE


def test_mint_signing_failure(make_coordinator, chain, transfer_request, signing_rejected):
    chain.sign_errors["receiveMessage"] = signing_rejected
    coordinator = make_coordinator(FakeIrisSession([complete_body()]))

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.mint_failed
    assert record.mint_tx_hash is None


def test_unexpected_error_recorded(make_coordinator, chain, transfer_request):
    """Bugs inside a step end up on the record, not in the caller's lap."""
    chain.sign_errors["depositForBurn"] = RuntimeError("boom")
    coordinator = make_coordinator(FakeIrisSession([complete_body()]))

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.internal_error
    assert "boom" in record.last_error.message


def test_approve_before_burn(make_coordinator, chain, transfer_request, registry):
    coordinator = make_coordinator(FakeIrisSession([complete_body()]), approve_before_burn=True)

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.completed
    assert chain.functions_signed() == ["approve", "depositForBurn", "receiveMessage"]
    approve = chain.signed[0]
    source = registry.describe(CHAIN_A)
    assert approve.to.lower() == source.usdc_address.lower()
    assert approve.args[0].lower() == source.burn_contract_address.lower()
    assert approve.args[1] == 10_000_000
    assert record.approve_tx_hash is not None


def test_insufficient_balance_nothing_broadcast(make_coordinator, chain, transfer_request):
    """Burning more than the sender holds is refused before signing anything."""
    chain.usdc_balance = 9_999_999
    coordinator = make_coordinator(FakeIrisSession([complete_body()]), approve_before_burn=True, token_reader=chain)

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.insufficient_balance
    assert not record.last_error.retryable
    assert "Insufficient USDC balance" in record.last_error.message
    assert "9.999999" in record.last_error.message
    assert record.burn_tx_hash is None
    assert record.approve_tx_hash is None
    assert chain.signed == []


def test_exact_balance_is_enough(make_coordinator, chain, transfer_request):
    chain.usdc_balance = 10_000_000
    coordinator = make_coordinator(FakeIrisSession([complete_body()]), token_reader=chain)

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.completed
    assert chain.functions_signed() == ["depositForBurn", "receiveMessage"]


def test_approve_skipped_when_allowance_covers_amount(make_coordinator, chain, transfer_request):
    chain.usdc_allowance = 10_000_000
    coordinator = make_coordinator(FakeIrisSession([complete_body()]), approve_before_burn=True, token_reader=chain)

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.completed
    assert chain.functions_signed() == ["depositForBurn", "receiveMessage"]
    assert record.approve_tx_hash is None


def test_approve_sent_when_allowance_short(make_coordinator, chain, transfer_request):
    chain.usdc_allowance = 9_999_999
    coordinator = make_coordinator(FakeIrisSession([complete_body()]), approve_before_burn=True, token_reader=chain)

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.completed
    assert chain.functions_signed() == ["approve", "depositForBurn", "receiveMessage"]


def test_token_read_failure_nothing_broadcast(make_coordinator, chain, transfer_request):
    chain.read_error = TransientNetworkError("RPC down")
    coordinator = make_coordinator(FakeIrisSession([complete_body()]), approve_before_burn=True, token_reader=chain)

    record = coordinator.run(coordinator.initiate(transfer_request).transfer_id)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.transient_network_error
    assert record.last_error.retryable
    assert chain.signed == []


def test_parallel_transfers(make_coordinator, chain, transfer_request):
    """Independent transfers run in parallel and each gets its own record."""
    coordinator = make_coordinator(FakeIrisSession([pending_body(), complete_body()]), max_workers=4)

    transfer_ids = [coordinator.initiate(transfer_request).transfer_id for _ in range(4)]
    for transfer_id in transfer_ids:
        coordinator.start(transfer_id)

    records = [coordinator.wait(transfer_id, timeout=30) for transfer_id in transfer_ids]

    assert len({r.transfer_id for r in records}) == 4
    assert all(r.state == TransferState.completed for r in records)
    assert len({r.mint_tx_hash for r in records}) == 4
    assert chain.functions_signed().count("depositForBurn") == 4


def test_driving_twice_rejected(make_coordinator, transfer_request):
    """Only one thread drives a transfer at a time."""
    coordinator = None
    transfer_id = None
    errors = []

    def step_from_inside(call_number: int):
        try:
            coordinator.step(transfer_id)
        except TransferInProgress as e:
            errors.append(e)

    coordinator = make_coordinator(FakeIrisSession([complete_body()], on_get=step_from_inside))
    transfer_id = coordinator.initiate(transfer_request).transfer_id
    coordinator.run(transfer_id)

    assert len(errors) == 1


def test_finished_transfers_are_not_kept_in_memory(make_coordinator, transfer_request):
    """Terminal transfers leave the coordinator once driven and are read back from the store."""
    coordinator = make_coordinator(FakeIrisSession([pending_body(), complete_body()]))

    completed_id = coordinator.initiate(transfer_request).transfer_id
    coordinator.run(completed_id)

    started_id = coordinator.initiate(transfer_request).transfer_id
    coordinator.start(started_id)
    coordinator.wait(started_id, timeout=30)

    stepped_id = coordinator.initiate(transfer_request).transfer_id
    record = coordinator.step(stepped_id)
    while not record.is_terminal():
        record = coordinator.step(stepped_id)

    assert coordinator._slots == {}
    assert coordinator._futures == {}
    for transfer_id in (completed_id, started_id, stepped_id):
        assert coordinator.get(transfer_id).state == TransferState.completed
        assert coordinator.wait(transfer_id).state == TransferState.completed
        assert coordinator.step(transfer_id).state == TransferState.completed
    assert coordinator._slots == {}


def test_cancelled_transfer_is_not_kept_in_memory(make_coordinator, transfer_request):
    coordinator = make_coordinator(FakeIrisSession([pending_body()]))
    transfer_id = coordinator.initiate(transfer_request).transfer_id
    for _ in range(4):
        coordinator.step(transfer_id)

    coordinator.cancel(transfer_id)

    assert coordinator._slots == {}
    assert coordinator.get(transfer_id).last_error.reason == FailureReason.user_cancelled


def test_unknown_transfer(make_coordinator):
    coordinator = make_coordinator(FakeIrisSession([pending_body()]))
    with pytest.raises(TransferNotFound):
        coordinator.get("no-such-transfer")


def test_resume_polling_after_restart(make_coordinator, chain, transfer_request, tmp_path):
    """A restarted coordinator continues polling with the persisted attempt count and never burns again."""
    store = JSONFileTransferStore(tmp_path / "transfers.json")

    first = make_coordinator(FakeIrisSession([pending_body()]), store=store)
    transfer_id = first.initiate(transfer_request).transfer_id
    for _ in range(5):
        first.step(transfer_id)
    first.shutdown()

    persisted = store.load(transfer_id)
    assert persisted.state == TransferState.attestation_pending
    assert persisted.attempts == 2

    iris = FakeIrisSession([complete_body()])
    second = make_coordinator(iris, store=store)
    assert second.resume() == [transfer_id]
    record = second.wait(transfer_id, timeout=30)

    assert record.state == TransferState.completed
    assert record.attempts == 3
    assert record.message_hash == MESSAGE_HASH
    assert chain.functions_signed() == ["depositForBurn", "receiveMessage"]
    assert store.load(transfer_id).state == TransferState.completed


def test_resume_waits_for_recorded_burn(make_coordinator, chain, transfer_request, tmp_path):
    """A transfer persisted right after the burn broadcast resumes by waiting for that burn."""
    store = JSONFileTransferStore(tmp_path / "transfers.json")

    first = make_coordinator(FakeIrisSession([complete_body()]), store=store)
    transfer_id = first.initiate(transfer_request).transfer_id
    burn_tx_hash = first.step(transfer_id).burn_tx_hash
    first.shutdown()

    second = make_coordinator(FakeIrisSession([complete_body()]), store=store)
    second.resume()
    record = second.wait(transfer_id, timeout=30)

    assert record.state == TransferState.completed
    assert record.burn_tx_hash == burn_tx_hash
    assert chain.functions_signed().count("depositForBurn") == 1


def test_resume_exhausted_budget(make_coordinator, transfer_request, tmp_path):
    """A transfer that used its poll budget before the restart fails without polling again."""
    store = JSONFileTransferStore(tmp_path / "transfers.json")

    first = make_coordinator(FakeIrisSession([pending_body()]), store=store, max_poll_attempts=60)
    transfer_id = first.initiate(transfer_request).transfer_id
    for _ in range(5):
        first.step(transfer_id)
    first.shutdown()

    iris = FakeIrisSession([complete_body()])
    second = make_coordinator(iris, store=store, max_poll_attempts=2)
    second.resume()
    record = second.wait(transfer_id, timeout=30)

    assert record.state == TransferState.failed
    assert record.last_error.reason == FailureReason.attestation_timeout
    assert iris.urls == []


def test_resume_skips_terminal(make_coordinator, transfer_request):
    coordinator = make_coordinator(FakeIrisSession([complete_body()]))
    transfer_id = coordinator.initiate(transfer_request).transfer_id
    coordinator.run(transfer_id)
    assert coordinator.resume() == []
