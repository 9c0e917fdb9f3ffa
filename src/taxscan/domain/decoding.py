from __future__ import annotations

from dataclasses import dataclass

from eth_utils import is_address, to_normalized_address

from taxscan.domain.errors import InvalidAddressError
from taxscan.domain.models import LogEvent
from taxscan.domain.value_types import Address


# keccak("Transfer(address,address,uint256)")
TRANSFER_T0 = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

# Base mainnet defaults: the VIRTUAL token and the protocol tax wallet
VIRTUAL_ADDRESS = "0x0b3e328455c4059eeb9e3f84b5543f74e24e7e1b"
DEFAULT_TAX_WALLET = "0x32487287c65f11d53bbca89c2472171eb09bf337"


@dataclass(slots=True, frozen=True)
class Transfer:
    token: Address
    sender: Address
    recipient: Address
    amount: int
    block_number: int
    tx_hash: str
    log_index: int


def normalize_address(value: str) -> Address:
    if not isinstance(value, str) or not is_address(value):
        raise InvalidAddressError(f"not an address: {value!r}")
    return Address(to_normalized_address(value))


def address_topic(addr: str) -> str:
    """Left-pad a 20-byte address into a 32-byte indexed topic."""
    return "0x" + "0" * 24 + normalize_address(addr)[2:]


def address_from_topic(topic: str) -> Address:
    h = topic[2:] if topic[:2].lower() == "0x" else topic
    if len(h) != 64:
        raise ValueError(f"topic is not 32 bytes: {topic!r}")
    return Address("0x" + h[-40:].lower())


def _hex_to_bytes(s: str) -> bytes:
    h = s[2:] if s[:2].lower() == "0x" else s
    if len(h) % 2: h = "0" + h
    return bytes.fromhex(h) if h else b""


def _word(b: bytes, i: int) -> bytes:
    return b[i*32:(i+1)*32]


def _u256(w: bytes) -> int:
    return int.from_bytes(w, "big")


def amount_from_data(data_hex: str) -> int:
    """First 32-byte word of the payload as an unsigned int."""
    data = _hex_to_bytes(data_hex)
    if len(data) < 32:
        raise ValueError(f"data payload shorter than one word: {data_hex!r}")
    return _u256(_word(data, 0))


def is_transfer(log: LogEvent) -> bool:
    return log.topic0 == TRANSFER_T0


def decode_transfer(log: LogEvent) -> Transfer | None:
    """ERC-20 Transfer(from, to, value); None when the log is not a well-formed one."""
    if not is_transfer(log) or len(log.topics) < 3:
        return None
    try:
        return Transfer(
            token=log.address,
            sender=address_from_topic(log.topics[1]),
            recipient=address_from_topic(log.topics[2]),
            amount=amount_from_data(log.data_hex),
            block_number=log.block_number,
            tx_hash=log.tx_hash,
            log_index=log.log_index,
        )
    except ValueError:
        return None
