# fleak/services/ledger_service.py
"""
Calldata builders for the Fleak escrow contract.

Building calldata never touches the network: each call is the 4-byte
Keccak selector of the function signature followed by the ABI-encoded
arguments, returned as a 0x-prefixed hex string the caller's wallet (or
the oracle queue) broadcasts.
"""

import hashlib

from eth_abi import encode
from web3 import Web3

from fleak.errors import InvalidInput

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

STAKE_SIGNATURE = "stake(uint256,address)"
RESOLVE_SIGNATURE = "resolveFlake(uint256,address)"
OPEN_REFUNDS_SIGNATURE = "openRefunds(uint256)"
WITHDRAW_REFUND_SIGNATURE = "withdrawRefund(uint256)"


def to_numeric_id(flake_id):
    """
    Map a Flake id to its on-chain commitment id.

    Uses the first 64 bits of SHA-256(flake_id), so the result always fits
    a uint256 and is the same for every caller.
    """
    digest = hashlib.sha256(flake_id.encode("utf-8")).hexdigest()
    return int(digest[:16], 16)


def normalize_address(address, field="address"):
    if not isinstance(address, str) or not Web3.is_address(address):
        raise InvalidInput(f"Invalid {field}", details={field: address})
    return Web3.to_checksum_address(address)


def _selector(signature):
    return Web3.keccak(text=signature)[:4]


def _encode_call(signature, arg_types, args):
    data = _selector(signature) + encode(arg_types, args)
    return "0x" + data.hex()


def build_stake_calldata(numeric_id, beneficiary):
    beneficiary = normalize_address(beneficiary or ZERO_ADDRESS, "beneficiary")
    return _encode_call(STAKE_SIGNATURE, ["uint256", "address"], [numeric_id, beneficiary])


def build_resolve_calldata(numeric_id, winner_address):
    winner_address = normalize_address(winner_address, "winnerAddress")
    return _encode_call(RESOLVE_SIGNATURE, ["uint256", "address"], [numeric_id, winner_address])


def build_open_refunds_calldata(numeric_id):
    return _encode_call(OPEN_REFUNDS_SIGNATURE, ["uint256"], [numeric_id])


def build_withdraw_refund_calldata(numeric_id):
    return _encode_call(WITHDRAW_REFUND_SIGNATURE, ["uint256"], [numeric_id])
