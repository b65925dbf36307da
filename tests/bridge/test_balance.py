"""Unified balance across chains."""

import logging
from decimal import Decimal

import pytest
import requests

from cctp_bridge.balance import BalanceAggregator
from cctp_bridge.errors import TransientNetworkError, ValidationError

from fakes import RECIPIENT, FakeGatewaySession, make_response


def test_unified_balance_with_one_broken_chain(registry, caplog):
    """A chain that cannot be read is reported, not mistaken for zero."""
    session = FakeGatewaySession(
        {
            26: "12.5",
            6: requests.ConnectionError("gateway unreachable"),
        }
    )
    aggregator = BalanceAggregator(session, registry)

    with caplog.at_level(logging.WARNING, logger="cctp_bridge.balance"):
        snapshot = aggregator.get_unified_balance(RECIPIENT, [26, 14, 6])

    assert [b.domain for b in snapshot.balances] == [26, 14, 6]
    arc, world, base = snapshot.balances

    assert arc.balance == Decimal("12.5")
    assert arc.chain_name == "Arc Testnet"
    assert arc.ok

    # Missing from the response means empty
    assert world.balance == 0
    assert world.ok

    assert base.balance == 0
    assert not base.ok
    assert "gateway unreachable" in base.error

    assert snapshot.total_usdc == Decimal("12.5")
    assert snapshot.errors == {6: base.error}
    assert "Base Sepolia" in caplog.text

    data = snapshot.to_dict()
    assert data["totalUSDC"] == "12.5"
    assert data["perChainBalances"] == {"26": "12.5", "14": "0", "6": "0"}


def test_default_domains(registry):
    session = FakeGatewaySession({26: "1", 14: "2.25", 6: "0.000001"})
    snapshot = BalanceAggregator(session, registry).get_unified_balance(RECIPIENT)

    assert sorted(body["sources"][0]["domain"] for body in session.bodies) == [6, 14, 26]
    assert all(body["token"] == "USDC" for body in session.bodies)
    assert snapshot.total_usdc == Decimal("3.250001")


def test_bad_requests(registry):
    aggregator = BalanceAggregator(FakeGatewaySession({}), registry)

    with pytest.raises(ValidationError):
        aggregator.get_unified_balance("0xnotanaddress")

    with pytest.raises(ValidationError, match="domain 99"):
        aggregator.get_unified_balance(RECIPIENT, [26, 99])

    assert aggregator.session.bodies == []


def test_gateway_error_status(registry, monkeypatch):
    session = FakeGatewaySession({})
    monkeypatch.setattr(session, "post", lambda url, **kwargs: make_response(503, {"error": "down"}, url))
    aggregator = BalanceAggregator(session, registry)

    with pytest.raises(TransientNetworkError):
        aggregator.fetch_domain_balance(RECIPIENT, 26)


def test_malformed_balance(registry, monkeypatch):
    session = FakeGatewaySession({})
    monkeypatch.setattr(session, "post", lambda url, **kwargs: make_response(200, {"balances": [{"domain": 26, "balance": "lots"}]}, url))
    snapshot = BalanceAggregator(session, registry).get_unified_balance(RECIPIENT, [26])

    assert snapshot.total_usdc == 0
    assert not snapshot.balances[0].ok


@pytest.mark.parametrize("body", [["unexpected"], "unexpected", []])
def test_non_object_response_fails_only_that_chain(registry, monkeypatch, body):
    """A Gateway body that is not a JSON object is a per-chain error, the other chains still add up."""
    session = FakeGatewaySession({14: "3", 6: "4.5"})
    answer = session.post

    def post(url, json=None, **kwargs):
        if json["sources"][0]["domain"] == 26:
            return make_response(200, body, url)
        return answer(url, json=json, **kwargs)

    monkeypatch.setattr(session, "post", post)
    snapshot = BalanceAggregator(session, registry).get_unified_balance(RECIPIENT, [26, 14, 6])

    arc, world, base = snapshot.balances
    assert not arc.ok
    assert arc.balance == 0
    assert "Unexpected Gateway response" in arc.error
    assert world.ok and world.balance == Decimal("3")
    assert base.ok and base.balance == Decimal("4.5")
    assert snapshot.total_usdc == Decimal("7.5")
    assert list(snapshot.errors) == [26]
