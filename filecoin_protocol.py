"""
Filecoin wire protocol: addresses, canonical CBOR and message CIDs
Reference: https://spec.filecoin.io/appendix/address/
           https://spec.filecoin.io/systems/filecoin_vm/message/

Everything in this module is a pure function of its inputs.  Nothing here
touches key material, the network or the disk.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import re
from base64 import b64decode, b64encode
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import cbor2


# ============================================================
# ERRORS
# ============================================================

class LotusSignError(Exception):
    """Base class for every error raised by lotus-sign."""


class InvalidAddress(LotusSignError, ValueError):
    """Malformed text/binary address or checksum mismatch."""


class SerializationError(LotusSignError, ValueError):
    """Canonical codec rejected malformed or out-of-range input."""


class UnsupportedAddressProtocol(LotusSignError):
    """Signing or verification attempted from a non-signable address."""


# ============================================================
# HASHING
# ============================================================

CHECKSUM_LEN = 4
PAYLOAD_HASH_LEN = 20
BLS_PUBKEY_LEN = 48
MAX_SUBADDRESS_LEN = 54
MAX_ACTOR_ID = 2**63 - 1


def blake2b_hash(data: bytes, size: int = 32) -> bytes:
    """Unkeyed blake2b with a *size*-byte digest (4, 20 or 32 in practice)."""
    return hashlib.blake2b(data, digest_size=size).digest()


def address_checksum(protocol: int, payload: bytes) -> bytes:
    """blake2b-32 over ``protocol-byte || payload``."""
    return blake2b_hash(bytes([protocol]) + payload, CHECKSUM_LEN)


# ============================================================
# VARINT / BASE32
# ============================================================

def encode_uvarint(n: int) -> bytes:
    """Unsigned LEB128 (multiformats uvarint)."""
    if n < 0:
        raise ValueError("uvarint cannot be negative")
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_uvarint(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """Decode a minimally-encoded uvarint; returns ``(value, next_offset)``."""
    value = 0
    shift = 0
    for i in range(offset, min(len(data), offset + 9)):
        byte = data[i]
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            # a trailing zero group means the encoding was padded
            if byte == 0 and i != offset:
                raise ValueError("non-minimal uvarint")
            return value, i + 1
        shift += 7
    raise ValueError("truncated or oversized uvarint")


def base32_encode(data: bytes) -> str:
    """RFC 4648 base32, lowercase, unpadded."""
    return base64.b32encode(data).decode("ascii").lower().rstrip("=")


def base32_decode(text: str) -> bytes:
    """Inverse of :func:`base32_encode`.

    Only the canonical form is accepted: lowercase, unpadded, and with zero
    bits in the unused tail of the last character.
    """
    if not text or not re.fullmatch(r"[a-z2-7]+", text):
        raise ValueError("invalid base32 string")
    padded = text.upper() + "=" * (-len(text) % 8)
    try:
        raw = base64.b32decode(padded)
    except binascii.Error as exc:
        raise ValueError(f"invalid base32 length: {exc}") from exc
    if base32_encode(raw) != text:
        raise ValueError("non-canonical base32 string")
    return raw


# ============================================================
# ADDRESS CODEC
# ============================================================

class Protocol(IntEnum):
    """Address protocol byte (the digit after the network prefix)."""
    ID = 0
    SECP256K1 = 1
    ACTOR = 2
    BLS = 3
    DELEGATED = 4


MAINNET = "f"
TESTNET = "t"
_NETWORKS = (MAINNET, TESTNET)

# Fixed payload sizes; ID and DELEGATED are variable-length.
_PAYLOAD_LEN: Dict[Protocol, int] = {
    Protocol.SECP256K1: PAYLOAD_HASH_LEN,
    Protocol.ACTOR: PAYLOAD_HASH_LEN,
    Protocol.BLS: BLS_PUBKEY_LEN,
}

_MAX_ADDRESS_TEXT = 2 + 20 + 1 + 104


@dataclass(frozen=True)
class Address:
    """
    Typed, checksummed Filecoin address.

    ``network`` only affects the text rendering; two addresses with the same
    protocol and payload compare equal whatever prefix they were parsed from.
    """
    protocol: Protocol
    payload: bytes
    network: str = field(default=MAINNET, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.protocol, Protocol):
            try:
                object.__setattr__(self, "protocol", Protocol(self.protocol))
            except ValueError as exc:
                raise InvalidAddress(f"unknown protocol {self.protocol!r}") from exc
        if self.network not in _NETWORKS:
            raise InvalidAddress(f"invalid network prefix {self.network!r}")
        _validate_payload(self.protocol, bytes(self.payload))
        object.__setattr__(self, "payload", bytes(self.payload))

    # ---- constructors -------------------------------------------------
    @classmethod
    def new_id(cls, actor_id: int, network: str = MAINNET) -> "Address":
        if not 0 <= actor_id <= MAX_ACTOR_ID:
            raise InvalidAddress(f"actor id out of range: {actor_id}")
        return cls(Protocol.ID, encode_uvarint(actor_id), network)

    @classmethod
    def new_secp256k1(cls, pubkey: bytes, network: str = MAINNET) -> "Address":
        """Address of a 65-byte uncompressed secp256k1 public key."""
        if len(pubkey) != 65:
            raise InvalidAddress(
                f"secp256k1 public key must be 65 B uncompressed, got {len(pubkey)}"
            )
        return cls(Protocol.SECP256K1, blake2b_hash(pubkey, PAYLOAD_HASH_LEN), network)

    @classmethod
    def new_actor(cls, data: bytes, network: str = MAINNET) -> "Address":
        return cls(Protocol.ACTOR, blake2b_hash(data, PAYLOAD_HASH_LEN), network)

    @classmethod
    def new_bls(cls, pubkey: bytes, network: str = MAINNET) -> "Address":
        return cls(Protocol.BLS, pubkey, network)

    @classmethod
    def new_delegated(
        cls, namespace: int, subaddress: bytes, network: str = MAINNET,
    ) -> "Address":
        if not 0 <= namespace <= MAX_ACTOR_ID:
            raise InvalidAddress(f"namespace out of range: {namespace}")
        return cls(Protocol.DELEGATED, encode_uvarint(namespace) + subaddress, network)

    @classmethod
    def from_bytes(cls, raw: bytes, network: str = MAINNET) -> "Address":
        """Parse the binary form ``protocol-byte || payload``."""
        if len(raw) < 2:
            raise InvalidAddress("address bytes too short")
        try:
            protocol = Protocol(raw[0])
        except ValueError as exc:
            raise InvalidAddress(f"unknown protocol byte {raw[0]}") from exc
        return cls(protocol, bytes(raw[1:]), network)

    @classmethod
    def from_string(cls, text: str) -> "Address":
        """Parse ``<network><protocol-digit><body>``."""
        if not isinstance(text, str) or not 3 <= len(text) <= _MAX_ADDRESS_TEXT:
            raise InvalidAddress(f"invalid address length: {text!r}")
        network, digit, body = text[0], text[1], text[2:]
        if network not in _NETWORKS:
            raise InvalidAddress(f"invalid network prefix in {text!r}")
        try:
            if not ("0" <= digit <= "9"):
                raise ValueError(digit)
            protocol = Protocol(int(digit))
        except ValueError:
            raise InvalidAddress(f"unknown protocol in {text!r}") from None

        if protocol == Protocol.ID:
            return cls.new_id(_parse_decimal(body, text), network)

        if protocol == Protocol.DELEGATED:
            ns_text, sep, body = body.partition("f")
            if not sep:
                raise InvalidAddress(f"missing namespace separator in {text!r}")
            payload_prefix = encode_uvarint(_parse_decimal(ns_text, text))
        else:
            payload_prefix = b""

        try:
            raw = base32_decode(body)
        except ValueError as exc:
            raise InvalidAddress(f"{exc}: {text!r}") from exc
        if len(raw) < CHECKSUM_LEN:
            raise InvalidAddress(f"address body too short: {text!r}")
        payload = payload_prefix + raw[:-CHECKSUM_LEN]
        checksum = raw[-CHECKSUM_LEN:]
        addr = cls(protocol, payload, network)
        if address_checksum(protocol, payload) != checksum:
            raise InvalidAddress(f"checksum mismatch: {text!r}")
        return addr

    # ---- encoders -----------------------------------------------------
    def to_bytes(self) -> bytes:
        return bytes([self.protocol]) + self.payload

    def encode(self, network: Optional[str] = None) -> str:
        net = network or self.network
        if net not in _NETWORKS:
            raise InvalidAddress(f"invalid network prefix {net!r}")
        prefix = f"{net}{int(self.protocol)}"
        if self.protocol == Protocol.ID:
            return prefix + str(self.actor_id)
        checksum = address_checksum(self.protocol, self.payload)
        if self.protocol == Protocol.DELEGATED:
            namespace, off = decode_uvarint(self.payload)
            body = base32_encode(self.payload[off:] + checksum)
            return f"{prefix}{namespace}f{body}"
        return prefix + base32_encode(self.payload + checksum)

    def __str__(self) -> str:
        return self.encode()

    @property
    def actor_id(self) -> int:
        if self.protocol != Protocol.ID:
            raise InvalidAddress(f"{self} is not an ID address")
        value, _ = decode_uvarint(self.payload)
        return value

    @property
    def is_signable(self) -> bool:
        return self.protocol in (Protocol.SECP256K1, Protocol.BLS)


def _parse_decimal(text: str, original: str) -> int:
    if not text.isdigit() or not text.isascii() or len(text) > 19:
        raise InvalidAddress(f"invalid decimal component in {original!r}")
    if len(text) > 1 and text[0] == "0":
        raise InvalidAddress(f"leading zero in {original!r}")
    value = int(text)
    if value > MAX_ACTOR_ID:
        raise InvalidAddress(f"id out of range in {original!r}")
    return value


def _validate_payload(protocol: Protocol, payload: bytes) -> None:
    if protocol in _PAYLOAD_LEN:
        expected = _PAYLOAD_LEN[protocol]
        if len(payload) != expected:
            raise InvalidAddress(
                f"protocol {protocol.name} payload must be {expected} B, "
                f"got {len(payload)}"
            )
        return
    try:
        value, end = decode_uvarint(payload)
    except ValueError as exc:
        raise InvalidAddress(f"bad {protocol.name} payload: {exc}") from exc
    if value > MAX_ACTOR_ID:
        raise InvalidAddress(f"{protocol.name} id out of range")
    if protocol == Protocol.ID:
        if end != len(payload):
            raise InvalidAddress("trailing bytes after ID payload")
    elif len(payload) - end > MAX_SUBADDRESS_LEN:
        raise InvalidAddress(
            f"delegated sub-address longer than {MAX_SUBADDRESS_LEN} B"
        )


def parse_address(value: Any) -> Address:
    """Accept an :class:`Address` or its text form."""
    if isinstance(value, Address):
        return value
    return Address.from_string(value)


# ============================================================
# BIG INTEGERS
# ============================================================

BIGINT_MAX_BYTES = 128
UINT64_MAX = 2**64 - 1
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


def bigint_to_bytes(value: int) -> bytes:
    """Filecoin BigInt: ``b""`` for zero, else sign byte || minimal magnitude."""
    if value == 0:
        return b""
    magnitude = abs(value)
    raw = magnitude.to_bytes((magnitude.bit_length() + 7) // 8, "big")
    out = (b"\x01" if value < 0 else b"\x00") + raw
    if len(out) > BIGINT_MAX_BYTES:
        raise SerializationError("big integer too large")
    return out


def bigint_from_bytes(raw: bytes) -> int:
    if not raw:
        return 0
    if len(raw) > BIGINT_MAX_BYTES:
        raise SerializationError("big integer too large")
    if raw[0] not in (0, 1):
        raise SerializationError(f"invalid big integer sign byte 0x{raw[0]:02x}")
    if len(raw) == 1 or raw[1] == 0:
        raise SerializationError("non-minimal big integer encoding")
    magnitude = int.from_bytes(raw[1:], "big")
    return -magnitude if raw[0] == 1 else magnitude


# ============================================================
# MESSAGES
# ============================================================

class SigType(IntEnum):
    SECP256K1 = 1
    BLS = 2


SIGNATURE_LEN: Dict[SigType, int] = {
    SigType.SECP256K1: 65,   # r || s || recovery id
    SigType.BLS: 96,         # compressed G2 point
}

MESSAGE_VERSION = 0
METHOD_SEND = 0


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class UnsignedMessage:
    """Filecoin message as it is serialised for hashing and signing."""
    to: Address
    from_: Address
    nonce: int
    value: int
    gas_limit: int
    gas_fee_cap: int
    gas_premium: int
    method: int = METHOD_SEND
    params: bytes = b""
    version: int = MESSAGE_VERSION

    def __post_init__(self) -> None:
        for name in ("to", "from_"):
            if not isinstance(getattr(self, name), Address):
                raise TypeError(f"{name} must be an Address")
        for name in ("version", "nonce", "method"):
            v = getattr(self, name)
            if not _is_int(v) or not 0 <= v <= UINT64_MAX:
                raise ValueError(f"{name} must be a uint64, got {v!r}")
        if not _is_int(self.gas_limit) or not INT64_MIN <= self.gas_limit <= INT64_MAX:
            raise ValueError(f"gas_limit must be an int64, got {self.gas_limit!r}")
        for name in ("value", "gas_fee_cap", "gas_premium"):
            v = getattr(self, name)
            if not _is_int(v):
                raise ValueError(f"{name} must be an integer, got {v!r}")
            if v < 0:
                raise ValueError(f"{name} cannot be negative")
        if not isinstance(self.params, (bytes, bytearray)):
            raise TypeError("params must be bytes")
        object.__setattr__(self, "params", bytes(self.params))

    @property
    def max_fee(self) -> int:
        """Upper bound on what the sender can be charged for gas."""
        return self.gas_limit * self.gas_fee_cap

    @property
    def required_funds(self) -> int:
        return self.value + self.max_fee

    def to_cbor(self) -> bytes:
        return encode_message(self)

    def cid_bytes(self) -> bytes:
        return message_cid_bytes(self)

    def cid(self) -> str:
        return cid_to_string(self.cid_bytes())


@dataclass(frozen=True)
class Signature:
    sig_type: SigType
    data: bytes

    def __post_init__(self) -> None:
        try:
            sig_type = SigType(self.sig_type)
        except ValueError as exc:
            raise SerializationError(f"unknown signature type {self.sig_type!r}") from exc
        object.__setattr__(self, "sig_type", sig_type)
        if len(self.data) != SIGNATURE_LEN[sig_type]:
            raise SerializationError(
                f"{sig_type.name} signature must be {SIGNATURE_LEN[sig_type]} B, "
                f"got {len(self.data)}"
            )
        object.__setattr__(self, "data", bytes(self.data))

    def to_bytes(self) -> bytes:
        return bytes([self.sig_type]) + self.data

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Signature":
        if not raw:
            raise SerializationError("empty signature")
        return cls(raw[0], bytes(raw[1:]))


@dataclass(frozen=True)
class SignedMessage:
    message: UnsignedMessage
    signature: Signature

    def to_cbor(self) -> bytes:
        return encode_signed_message(self)

    def cid(self) -> str:
        """CID under which the chain will index this message.

        BLS messages are aggregated in blocks and keep the unsigned CID.
        """
        if self.signature.sig_type == SigType.BLS:
            return self.message.cid()
        return cid_to_string(cid_bytes_for(self.to_cbor()))


# ============================================================
# CANONICAL CBOR CODEC
# ============================================================

MESSAGE_FIELDS = 10


def _message_tuple(msg: UnsignedMessage) -> List[Any]:
    return [
        msg.version,
        msg.to.to_bytes(),
        msg.from_.to_bytes(),
        msg.nonce,
        bigint_to_bytes(msg.value),
        msg.gas_limit,
        bigint_to_bytes(msg.gas_fee_cap),
        bigint_to_bytes(msg.gas_premium),
        msg.method,
        msg.params,
    ]


def encode_message(msg: UnsignedMessage) -> bytes:
    """
    Serialise as the 10-element CBOR array

        [Version, To, From, Nonce, Value, GasLimit,
         GasFeeCap, GasPremium, Method, Params]
    """
    return cbor2.dumps(_message_tuple(msg))


def encode_signed_message(smsg: SignedMessage) -> bytes:
    return cbor2.dumps([_message_tuple(smsg.message), smsg.signature.to_bytes()])


def _strict_loads(raw: bytes) -> Any:
    """Decode one CBOR item and insist *raw* was its canonical encoding.

    Re-encoding and comparing rejects trailing bytes, indefinite lengths,
    non-minimal integer heads and tagged bignums in one check.
    """
    if not isinstance(raw, (bytes, bytearray)):
        raise SerializationError("CBOR input must be bytes")
    raw = bytes(raw)
    try:
        obj = cbor2.loads(raw)
        canonical = cbor2.dumps(obj)
    except (cbor2.CBORError, ValueError, TypeError, ArithmeticError,
            LookupError, RecursionError, MemoryError) as exc:
        raise SerializationError(f"malformed CBOR: {exc}") from exc
    if canonical != raw:
        raise SerializationError("non-canonical CBOR or trailing bytes")
    return obj


def _field_uint(value: Any, name: str, limit: int = UINT64_MAX) -> int:
    if not _is_int(value) or not 0 <= value <= limit:
        raise SerializationError(f"{name}: expected unsigned integer, got {value!r}")
    return value


def _field_bytes(value: Any, name: str) -> bytes:
    if not isinstance(value, bytes):
        raise SerializationError(f"{name}: expected byte string")
    return value


def _field_address(value: Any, name: str) -> Address:
    try:
        return Address.from_bytes(_field_bytes(value, name))
    except InvalidAddress as exc:
        raise SerializationError(f"{name}: {exc}") from exc


def _field_amount(value: Any, name: str) -> int:
    amount = bigint_from_bytes(_field_bytes(value, name))
    if amount < 0:
        raise SerializationError(f"{name} cannot be negative")
    return amount


def _message_from_tuple(obj: Any) -> UnsignedMessage:
    if not isinstance(obj, list) or len(obj) != MESSAGE_FIELDS:
        raise SerializationError(
            f"message must be a {MESSAGE_FIELDS}-element array"
        )
    gas_limit = obj[5]
    if not _is_int(gas_limit) or not INT64_MIN <= gas_limit <= INT64_MAX:
        raise SerializationError(f"gas_limit out of int64 range: {gas_limit!r}")
    version = _field_uint(obj[0], "version")
    if version != MESSAGE_VERSION:
        raise SerializationError(f"unsupported message version {version}")
    return UnsignedMessage(
        version=version,
        to=_field_address(obj[1], "to"),
        from_=_field_address(obj[2], "from"),
        nonce=_field_uint(obj[3], "nonce"),
        value=_field_amount(obj[4], "value"),
        gas_limit=gas_limit,
        gas_fee_cap=_field_amount(obj[6], "gas_fee_cap"),
        gas_premium=_field_amount(obj[7], "gas_premium"),
        method=_field_uint(obj[8], "method"),
        params=_field_bytes(obj[9], "params"),
    )


def decode_message(raw: bytes) -> UnsignedMessage:
    """Exact inverse of :func:`encode_message`."""
    return _message_from_tuple(_strict_loads(raw))


def decode_signed_message(raw: bytes) -> SignedMessage:
    obj = _strict_loads(raw)
    if not isinstance(obj, list) or len(obj) != 2:
        raise SerializationError("signed message must be a 2-element array")
    message = _message_from_tuple(obj[0])
    signature = Signature.from_bytes(_field_bytes(obj[1], "signature"))
    return SignedMessage(message, signature)


# ============================================================
# CID / DIGEST
# ============================================================

# CIDv1 || dag-cbor (0x71 as uvarint) || blake2b-256 multihash code (0xb220)
# || digest length
_CID_PREFIX = bytes([0x01, 0x71, 0xA0, 0xE4, 0x02, 0x20])


def cid_bytes_for(data: bytes) -> bytes:
    return _CID_PREFIX + blake2b_hash(data, 32)


def message_cid_bytes(msg: UnsignedMessage) -> bytes:
    """Raw CID bytes of the CBOR-encoded message; this is what gets signed."""
    return cid_bytes_for(encode_message(msg))


def cid_to_string(cid: bytes) -> str:
    """Multibase base32 (``b`` prefix) rendering used by Lotus."""
    return "b" + base32_encode(cid)


# ============================================================
# LOTUS JSON
# ============================================================

def message_to_json(msg: UnsignedMessage) -> Dict[str, Any]:
    return {
        "Version": msg.version,
        "To": str(msg.to),
        "From": str(msg.from_),
        "Nonce": msg.nonce,
        "Value": str(msg.value),
        "GasLimit": msg.gas_limit,
        "GasFeeCap": str(msg.gas_fee_cap),
        "GasPremium": str(msg.gas_premium),
        "Method": msg.method,
        "Params": b64encode(msg.params).decode() if msg.params else None,
    }


def signed_message_to_json(smsg: SignedMessage) -> Dict[str, Any]:
    return {
        "Message": message_to_json(smsg.message),
        "Signature": {
            "Type": int(smsg.signature.sig_type),
            "Data": b64encode(smsg.signature.data).decode(),
        },
    }


_UINT_RE = re.compile(r"[0-9]+")


def _json_amount(value: Any, name: str) -> int:
    text = str(value)
    if text.startswith("-") and _UINT_RE.fullmatch(text[1:]):
        raise SerializationError(f"{name} cannot be negative")
    if not _UINT_RE.fullmatch(text):
        raise SerializationError(f"{name}: invalid integer {value!r}")
    return int(text)


def message_from_json(d: Dict[str, Any]) -> UnsignedMessage:
    try:
        params = d.get("Params") or ""
        return UnsignedMessage(
            version=d.get("Version", MESSAGE_VERSION),
            to=Address.from_string(d["To"]),
            from_=Address.from_string(d["From"]),
            nonce=d["Nonce"],
            value=_json_amount(d["Value"], "Value"),
            gas_limit=d["GasLimit"],
            gas_fee_cap=_json_amount(d["GasFeeCap"], "GasFeeCap"),
            gas_premium=_json_amount(d["GasPremium"], "GasPremium"),
            method=d["Method"],
            params=b64decode(params, validate=True),
        )
    except SerializationError:
        raise
    except (KeyError, TypeError, ValueError, binascii.Error) as exc:
        raise SerializationError(f"invalid message JSON: {exc}") from exc


def signed_message_from_json(d: Dict[str, Any]) -> SignedMessage:
    try:
        sig = d["Signature"]
        signature = Signature(sig["Type"], b64decode(sig["Data"], validate=True))
    except (KeyError, TypeError, binascii.Error) as exc:
        raise SerializationError(f"invalid signature JSON: {exc}") from exc
    return SignedMessage(message_from_json(d["Message"]), signature)


# ============================================================
# FIL AMOUNTS
# ============================================================

FIL_DECIMALS = 18
FILECOIN_PRECISION = 10**FIL_DECIMALS

_AMOUNT_RE = re.compile(
    r"^\s*(\d+)(?:\.(\d*))?\s*(fil|attofil|afil)?\s*$", re.IGNORECASE,
)


def parse_fil(text: str) -> int:
    """
    Parse a user amount into attoFIL.

    ``"1.5"`` and ``"1.5 FIL"`` are whole-FIL amounts; ``"5 attoFIL"`` /
    ``"5afil"`` are already in the smallest unit.  Negative amounts are
    rejected.
    """
    m = _AMOUNT_RE.match(text)
    if not m:
        raise ValueError(f"invalid FIL amount: {text!r}")
    whole, frac, unit = m.group(1), m.group(2) or "", (m.group(3) or "fil").lower()
    if unit in ("attofil", "afil"):
        if frac.strip("0"):
            raise ValueError("attoFIL amounts cannot have a fractional part")
        return int(whole)
    if len(frac) > FIL_DECIMALS:
        raise ValueError(f"FIL amounts have at most {FIL_DECIMALS} decimals")
    return int(whole) * FILECOIN_PRECISION + int(frac.ljust(FIL_DECIMALS, "0"))


def format_fil(attofil: int) -> str:
    sign = "-" if attofil < 0 else ""
    whole, frac = divmod(abs(attofil), FILECOIN_PRECISION)
    if not frac:
        return f"{sign}{whole} FIL"
    return f"{sign}{whole}.{str(frac).zfill(FIL_DECIMALS).rstrip('0')} FIL"


# ============================================================
# ACTOR METHODS
# ============================================================

STORAGE_MARKET_ACTOR = Address.new_id(5)


@dataclass(frozen=True)
class MethodTable:
    """
    Method numbers for the actor entry points this wallet can invoke.

    Method numbers move between actor versions, so callers look tables up by
    name instead of hard-coding a number.
    """
    name: str
    miner_withdraw_balance: int
    miner_change_worker_address: int
    miner_confirm_change_worker_address: int
    miner_change_owner_address: int
    market_withdraw_balance: int


DEFAULT_METHOD_TABLE = "builtin-actors"

_METHOD_TABLES: Dict[str, MethodTable] = {}


def register_method_table(table: MethodTable, *, replace: bool = False) -> None:
    if table.name in _METHOD_TABLES and not replace:
        raise ValueError(f"method table {table.name!r} already registered")
    _METHOD_TABLES[table.name] = table


def get_method_table(name: str = DEFAULT_METHOD_TABLE) -> MethodTable:
    try:
        return _METHOD_TABLES[name]
    except KeyError:
        known = ", ".join(sorted(_METHOD_TABLES))
        raise ValueError(f"unknown method table {name!r} (known: {known})") from None


def method_table_names() -> List[str]:
    return sorted(_METHOD_TABLES)


register_method_table(MethodTable(
    name=DEFAULT_METHOD_TABLE,
    miner_withdraw_balance=16,
    miner_change_worker_address=3,
    miner_confirm_change_worker_address=21,
    miner_change_owner_address=23,
    market_withdraw_balance=2,
))


def withdraw_balance_params(amount: int) -> bytes:
    """Miner ``WithdrawBalance``: ``[AmountRequested]``."""
    if amount < 0:
        raise ValueError("withdrawal amount cannot be negative")
    return cbor2.dumps([bigint_to_bytes(amount)])


def market_withdraw_params(provider_or_client: Address, amount: int) -> bytes:
    """Market ``WithdrawBalance``: ``[ProviderOrClientAddress, Amount]``."""
    if amount < 0:
        raise ValueError("withdrawal amount cannot be negative")
    return cbor2.dumps([provider_or_client.to_bytes(), bigint_to_bytes(amount)])


def change_owner_params(new_owner: Address) -> bytes:
    """Miner ``ChangeOwnerAddress`` takes the bare address."""
    return cbor2.dumps(new_owner.to_bytes())


def change_worker_params(
    new_worker: Address, new_control_addresses: Sequence[Address] = (),
) -> bytes:
    """Miner ``ChangeWorkerAddress``: ``[NewWorker, NewControlAddrs]``."""
    return cbor2.dumps([
        new_worker.to_bytes(),
        [a.to_bytes() for a in new_control_addresses],
    ])
