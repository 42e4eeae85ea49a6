"""Operational aids: echo, raw debug echo and wallet info.

Not part of the relayer contract; mounted only when diagnostics are enabled.
"""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse
from web3 import Web3

from relayer.api.deps import get_relayer, require_diagnostics
from relayer.core.time import utc_iso
from relayer.schemas.status import (
    DebugResponse,
    EchoResponse,
    FailureResponse,
    GasData,
    InFlightAttempt,
    NetworkInfo,
    ReceivedData,
    WalletInfoResponse,
    WalletStatus,
)
from relayer.services.ledger import LedgerError
from relayer.services.relayer import RelayerService

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_diagnostics)])

TYPICAL_TX_GAS = 300_000

NETWORK_NAMES = {
    1: "homestead",
    11155111: "sepolia",
    137: "matic",
    80001: "maticmum",
    80002: "amoy",
    31337: "hardhat",
}


def network_name(chain_id: int) -> str:
    return NETWORK_NAMES.get(chain_id, "unknown")


@router.get("/echo", response_model=EchoResponse)
async def echo(relayer: RelayerService = Depends(get_relayer)) -> EchoResponse:
    logger.info("Echo endpoint called")
    return EchoResponse(
        message="Relayer service is responding correctly",
        timestamp=utc_iso(),
        address=relayer.ledger.address,
    )


@router.post("/debug", response_model=DebugResponse)
async def debug(request: Request, body: Any = Body(default=None)) -> DebugResponse:
    """Echo the received body and a few headers back to the caller."""
    headers = {
        "content-type": request.headers.get("content-type", "not provided"),
        "user-agent": request.headers.get("user-agent", "not provided"),
        "origin": request.headers.get("origin", "not provided"),
    }
    logger.info("Debug endpoint called with body: %s", body)
    return DebugResponse(
        message="Debug endpoint called successfully",
        receivedData=ReceivedData(body=body, headers=headers),
    )


@router.get(
    "/wallet-info",
    response_model=WalletInfoResponse,
    responses={503: {"model": FailureResponse}},
)
async def wallet_info(relayer: RelayerService = Depends(get_relayer)):
    ledger = relayer.ledger
    try:
        state = await ledger.get_relayer_state()
        chain_id = await ledger.get_chain_id()
        gas_price = await ledger.get_gas_price()
    except LedgerError as e:
        logger.error("Error getting wallet info: %s", e)
        return JSONResponse(
            status_code=503,
            content=FailureResponse(message="Ledger is unreachable").model_dump(),
        )

    typical_cost = gas_price * TYPICAL_TX_GAS
    typical_cost_ether = str(Web3.from_wei(typical_cost, "ether"))
    return WalletInfoResponse(
        address=state.address,
        balance=str(Web3.from_wei(state.balance, "ether")),
        authorized=state.authorized,
        nonce=state.nonce,
        network=NetworkInfo(name=network_name(chain_id), chainId=chain_id),
        gasData=GasData(
            currentGasPrice=str(Web3.from_wei(gas_price, "gwei")),
            typicalTransactionCost=typical_cost_ether,
        ),
        status=WalletStatus(
            initialized=True,
            # at least two typical transactions
            hasEnoughFunds=state.balance > typical_cost * 2,
            minBalance=typical_cost_ether,
        ),
        inFlight=len(relayer.monitor),
        attempts=[InFlightAttempt(**attempt) for attempt in relayer.monitor.snapshot()],
    )
