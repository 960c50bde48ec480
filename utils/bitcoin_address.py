"""
Bitcoin withdrawal address format validation
"""

import re
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class AddressValidationError(ValueError):
    """Raised when a withdrawal address fails format validation"""
    pass


BITCOIN_ADDRESS_PATTERNS = {
    # P2PKH / P2SH (base58)
    "legacy": re.compile(r"^[13][a-km-zA-HJ-NP-Z1-9]{25,34}$"),
    "testnet_legacy": re.compile(r"^[mn2][a-km-zA-HJ-NP-Z1-9]{25,34}$"),
    # Segwit / taproot (bech32, bech32m)
    "bech32": re.compile(r"^bc1[02-9ac-hj-np-z]{7,87}$"),
    "testnet_bech32": re.compile(r"^tb1[02-9ac-hj-np-z]{7,87}$"),
}


def detect_address_type(address: Optional[str]) -> Optional[str]:
    """Return the matching address family name, or None if the format is unknown"""
    if not address:
        return None

    candidate = address.strip()
    # bech32 addresses are case-insensitive but must not mix case
    if candidate.lower().startswith(("bc1", "tb1")):
        if candidate != candidate.lower() and candidate != candidate.upper():
            return None
        candidate = candidate.lower()

    for address_type, pattern in BITCOIN_ADDRESS_PATTERNS.items():
        if pattern.match(candidate):
            return address_type
    return None


def validate_bitcoin_address(address: Optional[str], allow_testnet: bool = False) -> str:
    """Validate a Bitcoin address format and return it stripped"""
    if not address or not address.strip():
        raise AddressValidationError("Withdrawal address cannot be empty")

    address_type = detect_address_type(address)
    if address_type is None:
        raise AddressValidationError(f"Invalid Bitcoin address format: {address}")

    if address_type.startswith("testnet") and not allow_testnet:
        raise AddressValidationError(f"Testnet address not allowed for withdrawals: {address}")

    return address.strip()


def is_valid_bitcoin_address(address: Optional[str], allow_testnet: bool = False) -> bool:
    """Check if a Bitcoin address is valid without raising exception"""
    try:
        validate_bitcoin_address(address, allow_testnet)
        return True
    except AddressValidationError:
        return False
