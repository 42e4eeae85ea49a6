"""Pydantic schemas for relayer status and diagnostics."""

from typing import Any

from pydantic import BaseModel


class StatusResponse(BaseModel):
    success: bool = True
    address: str
    authorized: bool
    balance: str  # native units, decimal string


class FailureResponse(BaseModel):
    success: bool = False
    message: str


class EchoResponse(BaseModel):
    success: bool = True
    message: str
    timestamp: str
    address: str


class NetworkInfo(BaseModel):
    name: str
    chainId: int


class GasData(BaseModel):
    currentGasPrice: str  # gwei
    typicalTransactionCost: str  # native units


class WalletStatus(BaseModel):
    initialized: bool
    hasEnoughFunds: bool
    minBalance: str


class InFlightAttempt(BaseModel):
    requestId: str
    state: str
    pollId: int
    voter: str
    nonce: int
    txHash: str
    replacementTxHash: str | None = None
    polls: int
    submittedAt: float


class WalletInfoResponse(BaseModel):
    success: bool = True
    address: str
    balance: str
    authorized: bool
    nonce: int
    network: NetworkInfo
    gasData: GasData
    status: WalletStatus
    inFlight: int
    attempts: list[InFlightAttempt] = []


class ReceivedData(BaseModel):
    body: Any = None
    headers: dict[str, str]


class DebugResponse(BaseModel):
    success: bool = True
    message: str
    receivedData: ReceivedData
