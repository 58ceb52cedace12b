"""Global enums — must match DB CHECK constraints exactly."""

from enum import Enum


class Network(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    DEVNET = "devnet"


class ReconciliationState(str, Enum):
    """Scheduler run state: IDLE → FETCHING_BATCH → PROCESSING_CHUNK → IDLE."""
    IDLE = "IDLE"
    FETCHING_BATCH = "FETCHING_BATCH"
    PROCESSING_CHUNK = "PROCESSING_CHUNK"
