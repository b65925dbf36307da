"""
Bridge HTTP API.

Thin FastAPI layer over :py:class:`~cctp_bridge.coordinator.TransferCoordinator`
and :py:class:`~cctp_bridge.balance.BalanceAggregator`:

- POST /bridge/transfer - Burn on the source chain, finish the transfer in the background
- GET /bridge/transfers/{transfer_id} - Transfer status
- POST /bridge/transfers/{transfer_id}/cancel - Cancel while waiting for the attestation
- GET /bridge/balance - Unified USDC balance
- GET /bridge/estimate - Static time and fee estimate
- GET /bridge/info - Supported chains and relayer wallet
- GET /bridge/health - Whether the relayer can sign

Run with uvicorn::

    uvicorn --factory cctp_bridge.api:create_app
"""

import datetime
import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from cctp_bridge.balance import BalanceAggregator
from cctp_bridge.chains import ChainRegistry
from cctp_bridge.config import BridgeConfig
from cctp_bridge.coordinator import TransferCoordinator
from cctp_bridge.errors import BridgeError, CancellationRejected, ChainNotFound, TransferNotFound, ValidationError
from cctp_bridge.record import TransferRecord, TransferState
from cctp_bridge.transfer import TransferRequest, estimate_transfer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bridge", tags=["Bridge"])


class BridgeTransferBody(BaseModel):
    """Request body of POST /bridge/transfer."""

    model_config = ConfigDict(populate_by_name=True)

    from_chain: str = Field(..., alias="fromChain", description="Source chain name, e.g. Base Sepolia")
    to_chain: str = Field(..., alias="toChain", description="Destination chain name")
    amount: str = Field(..., description="USDC amount as a decimal string")
    destination_address: str = Field(..., alias="destinationAddress", description="Recipient on the destination chain")


def get_coordinator(request: Request) -> TransferCoordinator | None:
    """Coordinator, ``None`` when no relayer key is configured."""
    return request.app.state.coordinator


def get_registry(request: Request) -> ChainRegistry:
    return request.app.state.registry


def get_balance_aggregator(request: Request) -> BalanceAggregator:
    return request.app.state.balance_aggregator


def require_coordinator(coordinator: TransferCoordinator | None = Depends(get_coordinator)) -> TransferCoordinator:
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Bridge wallet not configured",
        )
    return coordinator


def serialise_record(record: TransferRecord) -> dict:
    data = record.to_dict()
    # Raw message is large and only useful to relayers
    data.pop("message_bytes")
    return data


@router.post("/transfer", summary="Bridge USDC")
def bridge_transfer(
    body: BridgeTransferBody,
    coordinator: TransferCoordinator | None = Depends(get_coordinator),
    registry: ChainRegistry = Depends(get_registry),
) -> dict:
    """
    Bridge USDC with the relayer wallet.

    Burns synchronously so that the burn transaction hash can be returned,
    then waits for the attestation and mints in the background.
    Failures are reported with ``success: false``.
    """
    if coordinator is None:
        return {
            "success": False,
            "message": "Bridge wallet not configured. Please set BRIDGE_WALLET_PRIVATE_KEY in environment.",
        }

    try:
        source = registry.describe_by_name(body.from_chain)
        dest = registry.describe_by_name(body.to_chain)
    except ChainNotFound:
        return {
            "success": False,
            "message": f"Invalid chain names. Supported chains: {', '.join(c.name for c in registry.list_supported())}",
        }

    request = TransferRequest(
        source_chain_id=source.chain_id,
        destination_chain_id=dest.chain_id,
        amount=body.amount,
        sender_address=coordinator.signer.address,
        recipient_address=body.destination_address,
    )

    try:
        record = coordinator.initiate(request)
        record = coordinator.step(record.transfer_id)
    except ValidationError as e:
        return {"success": False, "message": f"Invalid transfer: {e}"}

    if record.state == TransferState.failed:
        return {
            "success": False,
            "transferId": record.transfer_id,
            "message": f"Bridge failed: {record.last_error}",
        }

    coordinator.start(record.transfer_id)

    return {
        "success": True,
        "transactionHash": record.burn_tx_hash,
        "transferId": record.transfer_id,
        "message": f"Burned {body.amount} USDC on {source.name}, minting on {dest.name} once attested",
    }


@router.get("/transfers/{transfer_id}", summary="Transfer status")
def get_transfer(transfer_id: str, coordinator: TransferCoordinator = Depends(require_coordinator)) -> dict:
    try:
        return serialise_record(coordinator.get(transfer_id))
    except TransferNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/transfers/{transfer_id}/cancel", summary="Cancel transfer")
def cancel_transfer(transfer_id: str, coordinator: TransferCoordinator = Depends(require_coordinator)) -> dict:
    """Only possible while the transfer waits for its attestation."""
    try:
        return serialise_record(coordinator.cancel(transfer_id))
    except TransferNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except CancellationRejected as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get("/balance", summary="Unified USDC balance")
def get_balance(
    address: str = Query(..., description="EVM address"),
    domains: list[int] | None = Query(None, description="CCTP domains, default Arc, World Chain and Base testnets"),
    aggregator: BalanceAggregator = Depends(get_balance_aggregator),
) -> dict:
    try:
        snapshot = aggregator.get_unified_balance(address, domains)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return snapshot.to_dict()


@router.get("/estimate", summary="Transfer estimate")
def get_estimate(
    from_chain: str | None = Query(None, alias="fromChain"),
    to_chain: str | None = Query(None, alias="toChain"),
    amount: str | None = Query(None),
) -> dict:
    return {
        "fromChain": from_chain,
        "toChain": to_chain,
        "amount": amount,
        **estimate_transfer().to_dict(),
    }


def _wallet_info(coordinator: TransferCoordinator | None) -> dict:
    return {
        "address": coordinator.signer.address if coordinator else "Not configured",
        "isConfigured": coordinator is not None,
    }


@router.get("/info", summary="Bridge configuration")
def get_info(
    coordinator: TransferCoordinator | None = Depends(get_coordinator),
    registry: ChainRegistry = Depends(get_registry),
) -> dict:
    return {
        "wallet": _wallet_info(coordinator),
        "chains": [
            {
                "name": chain.name,
                "chainId": chain.chain_id,
                "domain": chain.attestation_domain,
                "usdc": chain.usdc_address,
            }
            for chain in registry.list_supported()
        ],
        "status": "operational",
        "technology": "Circle CCTP",
    }


@router.get("/health", summary="Health check")
def health_check(coordinator: TransferCoordinator | None = Depends(get_coordinator)) -> dict:
    return {
        "status": "healthy" if coordinator else "not_configured",
        "service": "CCTP bridge",
        "wallet": _wallet_info(coordinator),
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }


def create_app(
    config: BridgeConfig | None = None,
    coordinator: TransferCoordinator | None = None,
    balance_aggregator: BalanceAggregator | None = None,
    registry: ChainRegistry | None = None,
) -> FastAPI:
    """Create the bridge API application.

    Components not passed in are built from ``config``, which defaults to
    :py:meth:`BridgeConfig.from_env`. Without ``BRIDGE_WALLET_PRIVATE_KEY``
    the application still serves balances and estimates.

    Non-terminal transfers found in the store are resumed on startup.
    """
    if config is None:
        config = BridgeConfig.from_env()

    if registry is None:
        registry = coordinator.registry if coordinator else config.create_registry()

    if coordinator is None and config.private_key:
        coordinator = config.create_coordinator(registry)

    if balance_aggregator is None:
        balance_aggregator = config.create_balance_aggregator(registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if coordinator is not None:
            resumed = coordinator.resume()
            if resumed:
                logger.info("Resumed %d transfers", len(resumed))
        yield
        if coordinator is not None:
            coordinator.shutdown(wait=False)

    app = FastAPI(title="CCTP bridge", lifespan=lifespan)
    app.state.coordinator = coordinator
    app.state.registry = registry
    app.state.balance_aggregator = balance_aggregator
    app.include_router(router)

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError):
        logger.warning("Bridge error serving %s: %s", request.url.path, exc)
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})

    return app
