import hashlib

import pytest
from eth_abi import decode
from web3 import Web3

from fleak.errors import InvalidInput
from fleak.services import ledger_service

WINNER = "0x" + "ab" * 20


def _split(calldata):
    assert calldata.startswith("0x")
    raw = bytes.fromhex(calldata[2:])
    return raw[:4], raw[4:]


def test_numeric_id_is_first_64_bits_of_sha256():
    flake_id = "0b7d1c9e-8d44-4a57-9a57-0f3f2a1d2c11"
    expected = int(hashlib.sha256(flake_id.encode()).hexdigest()[:16], 16)

    assert ledger_service.to_numeric_id(flake_id) == expected
    assert ledger_service.to_numeric_id(flake_id) == expected
    assert 0 <= expected < 2 ** 64


def test_stake_calldata_encodes_id_and_beneficiary():
    selector, args = _split(ledger_service.build_stake_calldata(42, WINNER))

    assert selector == Web3.keccak(text="stake(uint256,address)")[:4]
    numeric_id, beneficiary = decode(["uint256", "address"], args)
    assert numeric_id == 42
    assert beneficiary.lower() == WINNER.lower()


def test_stake_calldata_without_beneficiary_uses_zero_address():
    _, args = _split(ledger_service.build_stake_calldata(7, None))

    _, beneficiary = decode(["uint256", "address"], args)
    assert beneficiary == ledger_service.ZERO_ADDRESS


def test_resolve_calldata_selector_and_length():
    calldata = ledger_service.build_resolve_calldata(2 ** 64 - 1, WINNER)
    selector, args = _split(calldata)

    assert selector == Web3.keccak(text="resolveFlake(uint256,address)")[:4]
    assert len(args) == 64
    assert decode(["uint256", "address"], args)[0] == 2 ** 64 - 1


def test_refund_calldata_single_argument():
    open_selector, open_args = _split(ledger_service.build_open_refunds_calldata(99))
    withdraw_selector, withdraw_args = _split(ledger_service.build_withdraw_refund_calldata(99))

    assert open_selector == Web3.keccak(text="openRefunds(uint256)")[:4]
    assert withdraw_selector == Web3.keccak(text="withdrawRefund(uint256)")[:4]
    assert decode(["uint256"], open_args) == (99,)
    assert open_args == withdraw_args


def test_normalize_address_checksums():
    assert ledger_service.normalize_address(WINNER) == Web3.to_checksum_address(WINNER)


@pytest.mark.parametrize("address", ["", "0x1234", "not-an-address", None, 12])
def test_invalid_address_rejected(address):
    with pytest.raises(InvalidInput):
        ledger_service.normalize_address(address, "winnerAddress")


def test_resolve_calldata_rejects_bad_address():
    with pytest.raises(InvalidInput):
        ledger_service.build_resolve_calldata(1, "0xnothex")
