"""
Account Addressing

SS58 decoding of recipient addresses into the 32-byte account id used in the
beneficiary descriptor.
"""

import hashlib
import re

import base58

from .errors import InvalidAddressError

SS58_CHECKSUM_PREFIX = b"SS58PRE"
ACCOUNT_ID_LENGTH = 32
CHECKSUM_LENGTH = 2

_HEX_ACCOUNT = re.compile(r"^0x[0-9a-fA-F]{64}$")


def _checksum(payload: bytes) -> bytes:
    return hashlib.blake2b(SS58_CHECKSUM_PREFIX + payload, digest_size=64).digest()[:CHECKSUM_LENGTH]


def decode_account_id(address: str) -> bytes:
    """
    Decode an SS58 address (or 0x-prefixed hex public key) to 32 bytes

    Args:
        address: SS58 string or 0x + 64 hex chars

    Returns:
        32-byte account id

    Raises:
        InvalidAddressError: bad alphabet, length, prefix or checksum
    """
    if not address or not isinstance(address, str):
        raise InvalidAddressError("Address is empty")

    address = address.strip()

    if address.startswith('0x'):
        if not _HEX_ACCOUNT.match(address):
            raise InvalidAddressError("Hex account id must be 0x followed by 64 hex characters")
        return bytes.fromhex(address[2:])

    try:
        data = base58.b58decode(address)
    except ValueError as e:
        raise InvalidAddressError(f"Address is not valid base58: {e}") from e

    if not data:
        raise InvalidAddressError("Address decodes to nothing")

    # 0..63 -> one prefix byte, 64..127 -> two
    if data[0] < 64:
        prefix_length = 1
    elif data[0] < 128:
        prefix_length = 2
    else:
        raise InvalidAddressError(f"Invalid SS58 prefix byte: {data[0]}")

    expected_length = prefix_length + ACCOUNT_ID_LENGTH + CHECKSUM_LENGTH
    if len(data) != expected_length:
        raise InvalidAddressError(
            f"SS58 address must decode to {expected_length} bytes, got {len(data)}"
        )

    if _checksum(data[:-CHECKSUM_LENGTH]) != data[-CHECKSUM_LENGTH:]:
        raise InvalidAddressError("SS58 checksum mismatch")

    return data[prefix_length:prefix_length + ACCOUNT_ID_LENGTH]


def encode_address(account_id: bytes, ss58_format: int = 0) -> str:
    """Encode a 32-byte account id as SS58 (format 0 = Polkadot, 42 = generic)"""
    if len(account_id) != ACCOUNT_ID_LENGTH:
        raise InvalidAddressError(f"Account id must be {ACCOUNT_ID_LENGTH} bytes")
    if not 0 <= ss58_format < 16384:
        raise InvalidAddressError(f"SS58 format out of range: {ss58_format}")

    if ss58_format < 64:
        prefix = bytes([ss58_format])
    else:
        prefix = bytes([
            ((ss58_format & 0b0000_0000_1111_1100) >> 2) | 0b0100_0000,
            (ss58_format >> 8) | ((ss58_format & 0b0000_0000_0000_0011) << 6),
        ])

    payload = prefix + account_id
    return base58.b58encode(payload + _checksum(payload)).decode('ascii')


def account_id_hex(address: str) -> str:
    """0x-prefixed hex of the decoded account id"""
    return '0x' + decode_account_id(address).hex()
