"""
Offline Filecoin Wallet & Local Signer
======================================
- f1 (secp256k1) and f3 (BLS12-381) keys, encrypted at rest
- Canonical CBOR message serialisation and CIDv1 signing digests
- Recoverable ECDSA signatures (65 B) and BLS G2 signatures (96 B)
- Message building against a Lotus node: nonce, gas estimate, balance check
- Miner/market withdrawals and owner/worker changes via a versioned
  actor-method table

Dependencies:
    pip install coincurve pycryptodome py_ecc cbor2 requests

Security Model:
    - Private keys are stored only as AES-256-GCM ciphertext under a key
      derived from the store passphrase with scrypt and a per-record salt.
    - A key is decrypted into a scoped buffer for exactly one sign, export
      or consistency check, and the buffer is zeroed on every exit path.
    - Copies made inside the crypto libraries (coincurve, py_ecc) are out of
      reach of that wipe; this is a software wallet, not an HSM.
    - Nothing here talks to the network except through ``LotusClient``;
      signing itself is fully offline.

Signing Digest:
    The bytes signed are the message CID:
    ``0x01 0x71 0xa0e402 0x20 || blake2b-256(cbor(message))``.
    secp256k1 signs ``blake2b-256(cid)``; BLS signs the CID bytes directly
    with the ``BLS_SIG_BLS12381G2_XMD:SHA-256_SSWU_RO_NUL_`` ciphersuite.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import secrets
import sqlite3
import sys
import threading
import time
import tomllib
from base64 import b64decode, b64encode
from contextlib import closing
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol as TypingProtocol, Sequence, Union

# Symmetric encryption for keys-at-rest
from Crypto.Cipher import AES
from Crypto.Protocol.KDF import scrypt

# secp256k1 (libsecp256k1) and BLS12-381
from coincurve import PrivateKey as _Secp256k1PrivateKey
from coincurve import PublicKey as _Secp256k1PublicKey
from py_ecc.bls import G2Basic as _Bls
from py_ecc.optimized_bls12_381 import curve_order as _BLS_CURVE_ORDER

from filecoin_protocol import (
    DEFAULT_METHOD_TABLE,
    MAINNET,
    STORAGE_MARKET_ACTOR,
    TESTNET,
    Address,
    InvalidAddress,
    LotusSignError,
    MethodTable,
    Protocol,
    SerializationError,
    Signature,
    SignedMessage,
    SigType,
    UnsignedMessage,
    UnsupportedAddressProtocol,
    blake2b_hash,
    change_owner_params,
    change_worker_params,
    decode_signed_message,
    format_fil,
    get_method_table,
    market_withdraw_params,
    message_cid_bytes,
    parse_address,
    parse_fil,
    signed_message_from_json,
    signed_message_to_json,
    withdraw_balance_params,
)
from lotus_rpc import (
    DEFAULT_BACKOFF,
    DEFAULT_ENDPOINT,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    ActorInfo,
    ActorNotFound,
    LotusClient,
    MinerInfo,
    PushError,
    RpcError,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
from logging.handlers import RotatingFileHandler

log = logging.getLogger("lotus_sign")
log.addHandler(logging.NullHandler())


def setup_logging(log_file: str = "lotus_sign.log") -> None:
    """
    Configure logging with rotating file + console.

    Call once at startup; safe to call multiple times (idempotent).
    """
    if getattr(setup_logging, "_done", False):
        return

    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    file_handler = RotatingFileHandler(
        log_file, maxBytes=10 * 1024 * 1024, backupCount=5,
    )
    file_handler.setFormatter(fmt)
    file_handler.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(fmt)
    console_handler.setLevel(logging.WARNING)

    log.addHandler(file_handler)
    log.addHandler(console_handler)
    log.setLevel(logging.INFO)

    setup_logging._done = True  # type: ignore[attr-defined]


# ============================================================
# ERRORS
# ============================================================

class DecryptionFailure(LotusSignError):
    """Wrong passphrase or corrupted record (GCM tag check failed)."""


class InvalidKey(LotusSignError, ValueError):
    """Private key has the wrong length, scheme or scalar range."""


class InsufficientFunds(LotusSignError):
    """Balance below value plus the maximum gas fee."""

    def __init__(self, message: str, *, balance: int, required: int) -> None:
        super().__init__(message)
        self.balance = balance
        self.required = required


class KeyNotFound(LotusSignError, KeyError):
    """No key record stored for the address."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "key not found"


class DuplicateKey(LotusSignError):
    """A record for the address already exists."""



# ============================================================
# AT-REST ENCRYPTION
# ============================================================

SALT_BYTES = 16
NONCE_BYTES = 12
PRIVATE_KEY_BYTES = 32


@dataclass(frozen=True)
class ScryptParams:
    """scrypt cost parameters; stored with every record."""
    n: int = 2**18
    r: int = 8
    p: int = 1

    def __post_init__(self) -> None:
        if self.n < 2 or self.n & (self.n - 1):
            raise ValueError("scrypt N must be a power of two > 1")
        if self.r < 1 or self.p < 1:
            raise ValueError("scrypt r and p must be positive")

    @property
    def label(self) -> str:
        return f"scrypt-N{self.n.bit_length() - 1}-r{self.r}-p{self.p}"


DEFAULT_SCRYPT = ScryptParams()


class SecretBuffer:
    """
    Scoped holder for plaintext key bytes.

    Use as a context manager; the underlying ``bytearray`` is overwritten
    with zeros when the block exits, whether it returns or raises.
    """

    def __init__(self, data: Union[bytes, bytearray]) -> None:
        self._buf = bytearray(data)
        self._wiped = False

    def __enter__(self) -> bytearray:
        if self._wiped:
            raise RuntimeError("secret buffer already wiped")
        return self._buf

    def __exit__(self, *exc_info: Any) -> None:
        self.wipe()

    def __len__(self) -> int:
        return len(self._buf)

    def __repr__(self) -> str:
        return f"SecretBuffer(<{len(self._buf)} bytes, wiped={self._wiped}>)"

    @property
    def wiped(self) -> bool:
        return self._wiped

    def wipe(self) -> None:
        _wipe(self._buf)
        self._wiped = True


def _wipe(buf: bytearray) -> None:
    buf[:] = bytes(len(buf))


@dataclass(frozen=True)
class EncryptedKeyRecord:
    """One encrypted private key, keyed by its address."""
    address: Address
    key_type: str
    ciphertext: bytes
    tag: bytes
    nonce: bytes
    salt: bytes
    kdf: ScryptParams = DEFAULT_SCRYPT
    created_at: float = field(default_factory=time.time)

    def associated_data(self) -> bytes:
        """Binds the ciphertext to its address and scheme."""
        return f"{self.address.encode(MAINNET)}|{self.key_type}".encode()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "v": 1,
            "address": self.address.encode(MAINNET),
            "type": self.key_type,
            "kdf": self.kdf.label,
            "kdf_params": {"n": self.kdf.n, "r": self.kdf.r, "p": self.kdf.p},
            "salt": self.salt.hex(),
            "nonce": self.nonce.hex(),
            "tag": self.tag.hex(),
            "ct": b64encode(self.ciphertext).decode(),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EncryptedKeyRecord":
        try:
            kp = d["kdf_params"]
            return cls(
                address=Address.from_string(d["address"]),
                key_type=d["type"],
                ciphertext=b64decode(d["ct"]),
                tag=bytes.fromhex(d["tag"]),
                nonce=bytes.fromhex(d["nonce"]),
                salt=bytes.fromhex(d["salt"]),
                kdf=ScryptParams(kp["n"], kp["r"], kp["p"]),
                created_at=float(d.get("created_at", 0.0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DecryptionFailure(f"corrupted key record: {exc}") from exc


def _derive_key(passphrase: str, salt: bytes, params: ScryptParams) -> bytes:
    return scrypt(passphrase.encode(), salt, 32, N=params.n, r=params.r, p=params.p)


def encrypt_key(
    secret: Union[bytes, bytearray],
    passphrase: str,
    address: Address,
    key_type: str,
    params: ScryptParams = DEFAULT_SCRYPT,
) -> EncryptedKeyRecord:
    """
    Encrypt raw private-key bytes with AES-256-GCM.

    KDF: scrypt(passphrase, 16-byte random salt) -> 32-byte key.
    A fresh 12-byte nonce is drawn for every record.
    """
    salt = secrets.token_bytes(SALT_BYTES)
    nonce = secrets.token_bytes(NONCE_BYTES)
    record = EncryptedKeyRecord(
        address=address, key_type=key_type, ciphertext=b"", tag=b"",
        nonce=nonce, salt=salt, kdf=params,
    )
    cipher = AES.new(_derive_key(passphrase, salt, params), AES.MODE_GCM, nonce=nonce)
    cipher.update(record.associated_data())
    ct, tag = cipher.encrypt_and_digest(bytes(secret))
    return replace(record, ciphertext=ct, tag=tag)


def decrypt_key(record: EncryptedKeyRecord, passphrase: str) -> SecretBuffer:
    """
    Verify and decrypt *record*; returns a :class:`SecretBuffer`.

    Plaintext is written straight into the buffer; if the tag check fails
    the buffer is zeroed before :class:`DecryptionFailure` is raised.
    """
    key = _derive_key(passphrase, record.salt, record.kdf)
    cipher = AES.new(key, AES.MODE_GCM, nonce=record.nonce)
    cipher.update(record.associated_data())
    buf = bytearray(len(record.ciphertext))
    try:
        cipher.decrypt_and_verify(record.ciphertext, record.tag, output=buf)
    except ValueError as exc:
        _wipe(buf)
        raise DecryptionFailure(
            f"cannot decrypt key for {record.address}: wrong passphrase or "
            f"corrupted record"
        ) from exc
    secret = SecretBuffer(buf)
    _wipe(buf)
    return secret


# ============================================================
# KEYS
# ============================================================

class KeyType(str, Enum):
    """Signature scheme of a stored key (Lotus ``KeyInfo.Type``)."""
    SECP256K1 = "secp256k1"
    BLS = "bls"

    @classmethod
    def parse(cls, value: Union[str, "KeyType"]) -> "KeyType":
        try:
            return cls(str(getattr(value, "value", value)).lower())
        except ValueError:
            raise InvalidKey(f"unknown key type: {value!r}") from None

    @property
    def protocol(self) -> Protocol:
        return Protocol.SECP256K1 if self is KeyType.SECP256K1 else Protocol.BLS


@dataclass
class KeyInfo:
    """Scheme tag + raw 32-byte private scalar, as Lotus exports it.

    secp256k1 scalars are big-endian, BLS scalars little-endian.
    """
    key_type: KeyType
    private_key: bytes

    def __post_init__(self) -> None:
        self.key_type = KeyType.parse(self.key_type)
        if len(self.private_key) != PRIVATE_KEY_BYTES:
            raise InvalidKey(
                f"{self.key_type.value}: private key must be "
                f"{PRIVATE_KEY_BYTES} B, got {len(self.private_key)}"
            )

    def __repr__(self) -> str:
        return f"KeyInfo(key_type={self.key_type.value!r}, private_key=<redacted>)"

    def to_lotus_json(self) -> Dict[str, str]:
        return {
            "Type": self.key_type.value,
            "PrivateKey": b64encode(self.private_key).decode(),
        }

    def to_lotus_hex(self) -> str:
        """``lotus wallet export`` format: hex of the compact JSON."""
        return json.dumps(self.to_lotus_json(), separators=(",", ":")).encode().hex()

    @classmethod
    def from_lotus_json(cls, d: Dict[str, Any]) -> "KeyInfo":
        try:
            return cls(KeyType.parse(d.get("Type", "secp256k1")),
                       b64decode(d["PrivateKey"], validate=True))
        except (KeyError, TypeError, ValueError) as exc:
            if isinstance(exc, InvalidKey):
                raise
            raise InvalidKey(f"invalid Lotus key JSON: {exc}") from exc

    @classmethod
    def from_text(
        cls, text: str, key_type: Optional[Union[str, KeyType]] = None,
    ) -> "KeyInfo":
        """
        Accept raw hex (secp256k1 unless *key_type* says otherwise), Lotus
        hex-encoded JSON (``7b22...``) or plain Lotus JSON.
        """
        text = text.strip()
        if text.startswith("{"):
            return cls.from_lotus_json(_json_object(text))
        try:
            raw = bytes.fromhex(text.removeprefix("0x"))
        except ValueError as exc:
            raise InvalidKey(f"private key is not valid hex: {exc}") from exc
        if raw.startswith(b'{"'):
            return cls.from_lotus_json(_json_object(raw.decode("utf-8", "replace")))
        return cls(KeyType.parse(key_type or KeyType.SECP256K1), raw)


def _json_object(text: str) -> Dict[str, Any]:
    try:
        obj = json.loads(text)
    except ValueError as exc:
        raise InvalidKey(f"invalid key JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise InvalidKey("key JSON must be an object")
    return obj


class Secp256k1Key:
    """
    secp256k1 key backed by libsecp256k1 (via ``coincurve``).

    * ``sign()`` -> 65-byte recoverable signature ``r || s || v``
    * ``address()`` -> f1 address of the uncompressed public key
    """
    key_type = KeyType.SECP256K1

    def __init__(self, secret: Union[bytes, bytearray]) -> None:
        if len(secret) != PRIVATE_KEY_BYTES:
            raise InvalidKey(f"secp256k1 key must be 32 B, got {len(secret)}")
        try:
            self._sk = _Secp256k1PrivateKey(bytes(secret))
        except ValueError as exc:
            raise InvalidKey(f"invalid secp256k1 scalar: {exc}") from exc
        self._pk: bytes = self._sk.public_key.format(compressed=False)

    @property
    def public_key(self) -> bytes:
        """65-byte uncompressed SEC1 public key (0x04 || x || y)."""
        return self._pk

    def address(self, network: str = MAINNET) -> Address:
        return Address.new_secp256k1(self._pk, network)

    def sign(self, cid: bytes) -> Signature:
        digest = blake2b_hash(cid, 32)
        return Signature(SigType.SECP256K1, self._sk.sign_recoverable(digest, hasher=None))


class BlsKey:
    """
    BLS12-381 key (min-pubkey-size: 48 B G1 public key, 96 B G2 signature)
    backed by ``py_ecc``.

    The private scalar is handled little-endian, as Lotus stores it.
    """
    key_type = KeyType.BLS

    def __init__(self, secret: Union[bytes, bytearray]) -> None:
        if len(secret) != PRIVATE_KEY_BYTES:
            raise InvalidKey(f"BLS key must be 32 B, got {len(secret)}")
        scalar = int.from_bytes(bytes(secret), "little")
        if not 0 < scalar < _BLS_CURVE_ORDER:
            raise InvalidKey("BLS scalar out of range")
        self._sk = scalar
        self._pk: bytes = _Bls.SkToPk(scalar)

    @property
    def public_key(self) -> bytes:
        """48-byte compressed G1 public key."""
        return self._pk

    def address(self, network: str = MAINNET) -> Address:
        return Address.new_bls(self._pk, network)

    def sign(self, cid: bytes) -> Signature:
        return Signature(SigType.BLS, _Bls.Sign(self._sk, cid))


SigningKey = Union[Secp256k1Key, BlsKey]


def load_key(key_type: Union[str, KeyType], secret: Union[bytes, bytearray]) -> SigningKey:
    key_type = KeyType.parse(key_type)
    if key_type is KeyType.SECP256K1:
        return Secp256k1Key(secret)
    return BlsKey(secret)


def generate_key_info(key_type: Union[str, KeyType] = KeyType.SECP256K1) -> KeyInfo:
    """Fresh private key from OS entropy."""
    key_type = KeyType.parse(key_type)
    if key_type is KeyType.SECP256K1:
        return KeyInfo(key_type, _Secp256k1PrivateKey().secret)
    scalar = _Bls.KeyGen(secrets.token_bytes(32))
    return KeyInfo(key_type, scalar.to_bytes(PRIVATE_KEY_BYTES, "little"))


# ============================================================
# SIGNATURE ENGINE
# ============================================================

def signing_payload(message: UnsignedMessage) -> bytes:
    """The bytes a signature commits to: the message CID."""
    return message_cid_bytes(message)


def _require_signable(address: Address) -> Protocol:
    protocol = address.protocol
    if protocol == Protocol.SECP256K1 or protocol == Protocol.BLS:
        return protocol
    if protocol in (Protocol.ID, Protocol.ACTOR, Protocol.DELEGATED):
        raise UnsupportedAddressProtocol(
            f"cannot sign or verify for {protocol.name} address {address}"
        )
    raise AssertionError(f"unhandled address protocol {protocol!r}")


def sign_message(
    message: UnsignedMessage, key: SigningKey, *, cid: Optional[bytes] = None,
) -> Signature:
    """
    Sign *message* with *key*, dispatching on the ``from`` protocol.

    The key must own ``message.from_``; a mismatched key is refused rather
    than producing a signature the chain would reject.
    """
    protocol = _require_signable(message.from_)
    if key.key_type.protocol != protocol:
        raise InvalidKey(
            f"{key.key_type.value} key cannot sign for {protocol.name} address"
        )
    if key.address() != message.from_:
        raise InvalidKey(f"key does not match sender {message.from_}")
    payload = cid if cid is not None else signing_payload(message)
    return key.sign(payload)


def recover_address(
    message: UnsignedMessage, signature: Signature, network: str = MAINNET,
) -> Address:
    """Recover the f1 address that produced a secp256k1 *signature*."""
    if signature.sig_type != SigType.SECP256K1:
        raise UnsupportedAddressProtocol("only secp256k1 signatures are recoverable")
    digest = blake2b_hash(signing_payload(message), 32)
    try:
        pub = _Secp256k1PublicKey.from_signature_and_message(
            signature.data, digest, hasher=None,
        )
    except ValueError as exc:
        raise InvalidKey(f"public key recovery failed: {exc}") from exc
    return Address.new_secp256k1(pub.format(compressed=False), network)


def verify_signature(
    message: UnsignedMessage,
    signature: Signature,
    public_key: Optional[bytes] = None,
) -> bool:
    """
    Check *signature* against ``message.from_``.

    secp256k1: the public key is recovered and its address compared.
    BLS: no recovery is possible, so *public_key* (or the key embedded in the
    f3 address) is checked with the pairing equation.
    """
    protocol = _require_signable(message.from_)
    if protocol == Protocol.SECP256K1:
        if signature.sig_type != SigType.SECP256K1:
            return False
        try:
            return recover_address(message, signature) == message.from_
        except InvalidKey:
            return False
    if signature.sig_type != SigType.BLS:
        return False
    pubkey = public_key if public_key is not None else message.from_.payload
    if public_key is not None and Address.new_bls(public_key) != message.from_:
        return False
    try:
        return bool(_Bls.Verify(pubkey, signing_payload(message), signature.data))
    except Exception:
        return False


# ============================================================
# KEY STORES
# ============================================================

def _store_key(address: Address) -> str:
    return address.encode(MAINNET)


@dataclass(frozen=True)
class KeyListing:
    address: Address
    key_type: str
    created_at: float


class KeyStore(TypingProtocol):
    """Persistence contract: exactly one record per address."""

    def put(self, record: EncryptedKeyRecord, *, overwrite: bool = False) -> None: ...

    def get(self, address: Address) -> EncryptedKeyRecord: ...

    def list(self) -> List[KeyListing]: ...

    def delete(self, address: Address) -> None: ...


class MemoryKeyStore:
    """In-process store; used by tests and throwaway sessions."""

    def __init__(self) -> None:
        self._records: Dict[str, EncryptedKeyRecord] = {}
        self._lock = threading.Lock()

    def put(self, record: EncryptedKeyRecord, *, overwrite: bool = False) -> None:
        k = _store_key(record.address)
        with self._lock:
            if k in self._records and not overwrite:
                raise DuplicateKey(f"key already stored for {k}")
            self._records[k] = record

    def get(self, address: Address) -> EncryptedKeyRecord:
        with self._lock:
            try:
                return self._records[_store_key(address)]
            except KeyError:
                raise KeyNotFound(f"key not found: {address}") from None

    def list(self) -> List[KeyListing]:
        with self._lock:
            records = sorted(self._records.values(), key=lambda r: r.created_at)
        return [KeyListing(r.address, r.key_type, r.created_at) for r in records]

    def delete(self, address: Address) -> None:
        with self._lock:
            if self._records.pop(_store_key(address), None) is None:
                raise KeyNotFound(f"key not found: {address}")


class SqliteKeyStore:
    """
    SQLite-backed store (one ``wallet_keys`` row per address).

    A connection is opened per operation so concurrent readers on different
    threads never share one.
    """

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS wallet_keys (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            address TEXT NOT NULL UNIQUE,
            key_type TEXT NOT NULL,
            record TEXT NOT NULL,
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL
        )
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = str(path)
        with self._connect() as conn:
            conn.execute(self._SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=30)

    def put(self, record: EncryptedKeyRecord, *, overwrite: bool = False) -> None:
        k = _store_key(record.address)
        blob = json.dumps(record.to_dict(), separators=(",", ":"))
        now = time.time()
        with closing(self._connect()) as conn, conn:
            if overwrite:
                conn.execute(
                    "INSERT INTO wallet_keys "
                    "(address, key_type, record, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?) "
                    "ON CONFLICT(address) DO UPDATE SET key_type=excluded.key_type, "
                    "record=excluded.record, updated_at=excluded.updated_at",
                    (k, record.key_type, blob, record.created_at, now),
                )
                return
            try:
                conn.execute(
                    "INSERT INTO wallet_keys "
                    "(address, key_type, record, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (k, record.key_type, blob, record.created_at, now),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateKey(f"key already stored for {k}") from exc

    def get(self, address: Address) -> EncryptedKeyRecord:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT record FROM wallet_keys WHERE address = ?",
                (_store_key(address),),
            ).fetchone()
        if row is None:
            raise KeyNotFound(f"key not found: {address}")
        try:
            return EncryptedKeyRecord.from_dict(json.loads(row[0]))
        except ValueError as exc:
            if isinstance(exc, LotusSignError):
                raise
            raise DecryptionFailure(f"corrupted key record for {address}") from exc

    def list(self) -> List[KeyListing]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT address, key_type, created_at FROM wallet_keys ORDER BY id"
            ).fetchall()
        return [KeyListing(Address.from_string(a), t, c) for a, t, c in rows]

    def delete(self, address: Address) -> None:
        with closing(self._connect()) as conn, conn:
            cur = conn.execute(
                "DELETE FROM wallet_keys WHERE address = ?", (_store_key(address),),
            )
        if cur.rowcount == 0:
            raise KeyNotFound(f"key not found: {address}")


# ============================================================
# MESSAGE BUILDER
# ============================================================

class ChainReader(TypingProtocol):
    """The part of the RPC collaborator the builder depends on."""

    def get_nonce(self, address: Address) -> int: ...

    def estimate_gas(self, message: UnsignedMessage) -> Any: ...

    def get_balance(self, address: Address) -> int: ...

    def miner_available_balance(self, miner: Address) -> int: ...


class MessageBuilder:
    """
    Assembles unsigned messages from caller intent plus chain-supplied nonce
    and gas parameters.

    Nonce and gas always come from the chain.  The balance check runs last,
    against the final gas figures, so a message that cannot pay for itself
    never reaches the signer.
    """

    def __init__(self, chain: ChainReader, methods: Optional[MethodTable] = None) -> None:
        self.chain = chain
        self.methods = methods or get_method_table(DEFAULT_METHOD_TABLE)

    def build(
        self,
        from_: Union[Address, str],
        to: Union[Address, str],
        value: int,
        method: int = 0,
        params: bytes = b"",
    ) -> UnsignedMessage:
        sender = parse_address(from_)
        recipient = parse_address(to)
        if value < 0:
            raise ValueError("amount cannot be negative")
        _require_signable(sender)
        draft = UnsignedMessage(
            to=recipient, from_=sender, nonce=0, value=value,
            gas_limit=0, gas_fee_cap=0, gas_premium=0,
            method=method, params=params,
        )
        draft = replace(draft, nonce=self.chain.get_nonce(sender))
        return self._finalize(draft)

    def with_params(self, message: UnsignedMessage, params: bytes) -> UnsignedMessage:
        """Same message with new params; gas is re-estimated for the new shape."""
        if params == message.params:
            return message
        draft = replace(message, params=params, gas_limit=0, gas_fee_cap=0, gas_premium=0)
        return self._finalize(draft)

    def _finalize(self, draft: UnsignedMessage) -> UnsignedMessage:
        est = self.chain.estimate_gas(draft)
        msg = replace(
            draft,
            gas_limit=est.gas_limit,
            gas_fee_cap=est.gas_fee_cap,
            gas_premium=est.gas_premium,
        )
        balance = self.chain.get_balance(msg.from_)
        if balance < msg.required_funds:
            log.warning(
                "Insufficient funds in %s: balance=%d, need=%d (value=%d, max_fee=%d)",
                msg.from_, balance, msg.required_funds, msg.value, msg.max_fee,
            )
            raise InsufficientFunds(
                f"{msg.from_} has {format_fil(balance)}, needs "
                f"{format_fil(msg.required_funds)} (amount + max fee)",
                balance=balance, required=msg.required_funds,
            )
        log.info(
            "Built message %s -> %s: nonce=%d value=%d method=%d gas_limit=%d",
            msg.from_, msg.to, msg.nonce, msg.value, msg.method, msg.gas_limit,
        )
        return msg

    # ---- intents ------------------------------------------------------
    def transfer(
        self, from_: Union[Address, str], to: Union[Address, str], amount: int,
    ) -> UnsignedMessage:
        return self.build(from_, to, amount)

    def miner_withdraw(
        self,
        miner: Union[Address, str],
        owner: Union[Address, str],
        amount: Optional[int] = None,
    ) -> UnsignedMessage:
        """
        Withdraw from a miner's available balance to its owner.

        ``amount=None`` withdraws everything currently available.
        """
        miner = parse_address(miner)
        owner = parse_address(owner)
        _require_signable(owner)
        if amount is not None and amount < 0:
            raise ValueError("withdrawal amount cannot be negative")
        available = self.chain.miner_available_balance(miner)
        if amount is None:
            amount = available
        if amount > available:
            raise InsufficientFunds(
                f"miner {miner} has {format_fil(available)} available, "
                f"requested {format_fil(amount)}",
                balance=available, required=amount,
            )
        return self.build(
            owner, miner, 0,
            self.methods.miner_withdraw_balance, withdraw_balance_params(amount),
        )

    def market_withdraw(
        self,
        address: Union[Address, str],
        from_: Union[Address, str],
        amount: int,
    ) -> UnsignedMessage:
        params = market_withdraw_params(parse_address(address), amount)
        return self.build(
            from_, STORAGE_MARKET_ACTOR, 0, self.methods.market_withdraw_balance, params,
        )

    def change_owner(
        self,
        miner: Union[Address, str],
        new_owner: Union[Address, str],
        from_: Union[Address, str],
    ) -> UnsignedMessage:
        params = change_owner_params(parse_address(new_owner))
        return self.build(from_, miner, 0, self.methods.miner_change_owner_address, params)

    def propose_change_worker(
        self,
        miner: Union[Address, str],
        new_worker: Union[Address, str],
        from_: Union[Address, str],
        control_addresses: Sequence[Union[Address, str]] = (),
    ) -> UnsignedMessage:
        params = change_worker_params(
            parse_address(new_worker), [parse_address(a) for a in control_addresses],
        )
        return self.build(from_, miner, 0, self.methods.miner_change_worker_address, params)

    def confirm_change_worker(
        self, miner: Union[Address, str], from_: Union[Address, str],
    ) -> UnsignedMessage:
        return self.build(from_, miner, 0, self.methods.miner_confirm_change_worker_address)


# ============================================================
# WALLET SERVICE
# ============================================================

class SignState(Enum):
    IDLE = "idle"
    KEY_LOADED = "key_loaded"
    MESSAGE_BUILT = "message_built"
    DIGESTED = "digested"
    SIGNED = "signed"
    EMITTED = "emitted"
    FAILED = "failed"


_NEXT_STATE: Dict[SignState, SignState] = {
    SignState.IDLE: SignState.KEY_LOADED,
    SignState.KEY_LOADED: SignState.MESSAGE_BUILT,
    SignState.MESSAGE_BUILT: SignState.DIGESTED,
    SignState.DIGESTED: SignState.SIGNED,
    SignState.SIGNED: SignState.EMITTED,
}


@dataclass
class SignRequest:
    """Progress of one sign request; transitions only move forward."""
    sender: Address
    state: SignState = SignState.IDLE
    history: List[SignState] = field(default_factory=lambda: [SignState.IDLE])

    @property
    def done(self) -> bool:
        return self.state in (SignState.EMITTED, SignState.FAILED)

    def advance(self, state: SignState) -> None:
        if _NEXT_STATE.get(self.state) is not state:
            raise RuntimeError(f"illegal sign transition {self.state.name} -> {state.name}")
        self.state = state
        self.history.append(state)

    def fail(self) -> None:
        if not self.done:
            self.state = SignState.FAILED
            self.history.append(SignState.FAILED)


class WalletContext:
    """
    Explicit per-store context: the key store, its passphrase and KDF
    parameters, and the locks that guard it.

    Every record in a store is encrypted under the same passphrase; share
    one context per store so the locks actually serialise.

    Per-address locks are created on first use and kept for the life of
    the context, one per address ever signed for. A short-lived CLI
    process touches a handful; a long-running service should expect the
    table to grow with the number of distinct senders.
    """

    def __init__(
        self,
        store: KeyStore,
        passphrase: str,
        kdf: ScryptParams = DEFAULT_SCRYPT,
        network: str = MAINNET,
    ) -> None:
        self.store = store
        self.passphrase = passphrase
        self.kdf = kdf
        self.network = network
        self.write_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._address_locks: Dict[str, threading.Lock] = {}

    def lock_for(self, address: Address) -> threading.Lock:
        k = _store_key(address)
        with self._locks_guard:
            lock = self._address_locks.get(k)
            if lock is None:
                lock = self._address_locks[k] = threading.Lock()
            return lock


@dataclass(frozen=True)
class SendResult:
    signed_message: SignedMessage
    cid: Optional[str] = None


class WalletService:
    """
    Orchestrates key management and the sign pipeline:
    decrypt key -> bind message -> digest -> sign -> emit.

    The only place plaintext key material exists, and only inside a
    ``SecretBuffer`` scope.
    """

    def __init__(
        self,
        context: WalletContext,
        rpc: Optional[LotusClient] = None,
        *,
        methods: Optional[MethodTable] = None,
        builder: Optional[MessageBuilder] = None,
    ) -> None:
        self.ctx = context
        self.rpc = rpc
        if builder is None and rpc is not None:
            builder = MessageBuilder(rpc, methods)
        self.builder = builder

    def _require_rpc(self) -> LotusClient:
        if self.rpc is None:
            raise RpcError("no Lotus endpoint configured")
        return self.rpc

    def _require_builder(self) -> MessageBuilder:
        if self.builder is None:
            raise RpcError("no Lotus endpoint configured")
        return self.builder

    # ---- key management -----------------------------------------------
    def new_key(self, key_type: Union[str, KeyType] = KeyType.SECP256K1) -> Address:
        return self.import_key(generate_key_info(key_type))

    def import_key(self, key_info: KeyInfo, *, overwrite: bool = False) -> Address:
        """Validate, encrypt and store *key_info*; returns its address."""
        with SecretBuffer(key_info.private_key) as secret:
            key = load_key(key_info.key_type, secret)
            address = key.address(self.ctx.network)
            record = encrypt_key(
                secret, self.ctx.passphrase, address, key_info.key_type.value, self.ctx.kdf,
            )
        with self.ctx.write_lock:
            self.ctx.store.put(record, overwrite=overwrite)
        log.info("Key stored: %s (%s)", address, key_info.key_type.value)
        return address

    def import_hex(
        self,
        text: str,
        key_type: Optional[Union[str, KeyType]] = None,
        *,
        overwrite: bool = False,
    ) -> Address:
        return self.import_key(KeyInfo.from_text(text, key_type), overwrite=overwrite)

    def export_key(self, address: Union[Address, str]) -> KeyInfo:
        """Decrypt and return the key; fails unless the passphrase checks out."""
        address = parse_address(address)
        with self.ctx.lock_for(address):
            record = self.ctx.store.get(address)
            with decrypt_key(record, self.ctx.passphrase) as secret:
                key = load_key(record.key_type, secret)
                if key.address() != address:
                    raise InvalidKey(f"stored key does not match {address}")
                info = KeyInfo(KeyType.parse(record.key_type), bytes(secret))
        log.warning("Private key exported for %s", address)
        return info

    def export_hex(self, address: Union[Address, str]) -> str:
        return self.export_key(address).private_key.hex()

    def list_keys(self) -> List[KeyListing]:
        return self.ctx.store.list()

    def delete_key(self, address: Union[Address, str]) -> None:
        address = parse_address(address)
        with self.ctx.lock_for(address), self.ctx.write_lock:
            self.ctx.store.delete(address)
        log.info("Key deleted: %s", address)

    # ---- chain reads --------------------------------------------------
    def balance(self, address: Union[Address, str]) -> int:
        return self._require_rpc().get_balance(parse_address(address))

    def actor_info(self, address: Union[Address, str]) -> ActorInfo:
        return self._require_rpc().get_actor(parse_address(address))

    def miner_info(self, miner: Union[Address, str]) -> MinerInfo:
        return self._require_rpc().miner_info(parse_address(miner))

    def miner_available_balance(self, miner: Union[Address, str]) -> int:
        return self._require_rpc().miner_available_balance(parse_address(miner))

    # ---- signing ------------------------------------------------------
    def sign(
        self, message: UnsignedMessage, request: Optional[SignRequest] = None,
    ) -> SignedMessage:
        """
        Sign *message* with the stored key for ``message.from_``.

        Concurrent signs for one address are serialised; the decrypted key
        is wiped before this returns or raises.
        """
        request = request or SignRequest(message.from_)
        try:
            _require_signable(message.from_)
            with self.ctx.lock_for(message.from_):
                record = self.ctx.store.get(message.from_)
                with decrypt_key(record, self.ctx.passphrase) as secret:
                    key = load_key(record.key_type, secret)
                    request.advance(SignState.KEY_LOADED)

                    if key.address() != message.from_:
                        raise InvalidKey(f"stored key does not match {message.from_}")
                    request.advance(SignState.MESSAGE_BUILT)

                    cid = signing_payload(message)
                    request.advance(SignState.DIGESTED)

                    signature = sign_message(message, key, cid=cid)
                    del key
                    request.advance(SignState.SIGNED)

            signed = SignedMessage(message, signature)
            request.advance(SignState.EMITTED)
        except Exception:
            request.fail()
            raise
        log.info("Signed message %s from %s", signed.cid(), message.from_)
        return signed

    def push(self, signed: SignedMessage) -> str:
        return self._require_rpc().push_message(signed)

    def _sign_and_maybe_push(self, message: UnsignedMessage, push: bool) -> SendResult:
        signed = self.sign(message)
        if not push:
            return SendResult(signed)
        return SendResult(signed, self.push(signed))

    # ---- intents ------------------------------------------------------
    def send(
        self,
        from_: Union[Address, str],
        to: Union[Address, str],
        amount: int,
        *,
        push: bool = True,
    ) -> SendResult:
        message = self._require_builder().transfer(from_, to, amount)
        return self._sign_and_maybe_push(message, push)

    def withdraw(
        self,
        miner: Union[Address, str],
        owner: Union[Address, str],
        amount: Optional[int] = None,
        *,
        push: bool = True,
    ) -> SendResult:
        message = self._require_builder().miner_withdraw(miner, owner, amount)
        return self._sign_and_maybe_push(message, push)

    def market_withdraw(
        self,
        address: Union[Address, str],
        from_: Union[Address, str],
        amount: int,
        *,
        push: bool = True,
    ) -> SendResult:
        message = self._require_builder().market_withdraw(address, from_, amount)
        return self._sign_and_maybe_push(message, push)

    def change_owner(
        self,
        miner: Union[Address, str],
        new_owner: Union[Address, str],
        from_: Union[Address, str],
        *,
        push: bool = True,
    ) -> SendResult:
        message = self._require_builder().change_owner(miner, new_owner, from_)
        return self._sign_and_maybe_push(message, push)

    def propose_change_worker(
        self,
        miner: Union[Address, str],
        new_worker: Union[Address, str],
        from_: Union[Address, str],
        *,
        push: bool = True,
    ) -> SendResult:
        message = self._require_builder().propose_change_worker(miner, new_worker, from_)
        return self._sign_and_maybe_push(message, push)

    def confirm_change_worker(
        self,
        miner: Union[Address, str],
        from_: Union[Address, str],
        *,
        push: bool = True,
    ) -> SendResult:
        message = self._require_builder().confirm_change_worker(miner, from_)
        return self._sign_and_maybe_push(message, push)


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass
class LotusConfig:
    host: str = DEFAULT_ENDPOINT
    token: Optional[str] = None


@dataclass
class DatabaseConfig:
    path: str = "lotus_sign.db"


@dataclass
class WalletConfig:
    password: Optional[str] = None
    network: str = MAINNET
    method_table: str = DEFAULT_METHOD_TABLE
    scrypt_n: int = DEFAULT_SCRYPT.n
    scrypt_r: int = DEFAULT_SCRYPT.r
    scrypt_p: int = DEFAULT_SCRYPT.p


@dataclass
class RpcConfig:
    timeout: float = DEFAULT_TIMEOUT
    retries: int = DEFAULT_RETRIES
    backoff: float = DEFAULT_BACKOFF


@dataclass
class Config:
    """Top-level configuration container."""
    lotus: LotusConfig = field(default_factory=LotusConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    wallet: WalletConfig = field(default_factory=WalletConfig)
    rpc: RpcConfig = field(default_factory=RpcConfig)

    @property
    def scrypt(self) -> ScryptParams:
        return ScryptParams(self.wallet.scrypt_n, self.wallet.scrypt_r, self.wallet.scrypt_p)


def _merge(dc: Any, raw: Dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def load_config(path: Optional[Union[str, Path]] = "config.toml") -> Config:
    """
    Load configuration from a TOML file, then overlay environment variables.

    A missing file yields defaults.  Env-var mapping:
        LOTUS_SIGN_HOST     -> lotus.host
        LOTUS_SIGN_TOKEN    -> lotus.token
        LOTUS_SIGN_DB       -> database.path
        LOTUS_SIGN_PASSWORD -> wallet.password
        LOTUS_SIGN_NETWORK  -> wallet.network
    """
    cfg = Config()

    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("lotus", cfg.lotus),
                ("database", cfg.database),
                ("wallet", cfg.wallet),
                ("rpc", cfg.rpc),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    v = os.environ.get("LOTUS_SIGN_HOST")
    if v:
        cfg.lotus.host = v
    v = os.environ.get("LOTUS_SIGN_TOKEN")
    if v:
        cfg.lotus.token = v
    v = os.environ.get("LOTUS_SIGN_DB")
    if v:
        cfg.database.path = v
    v = os.environ.get("LOTUS_SIGN_PASSWORD")
    if v is not None:
        cfg.wallet.password = v
    v = os.environ.get("LOTUS_SIGN_NETWORK")
    if v:
        cfg.wallet.network = v

    if cfg.wallet.network not in (MAINNET, TESTNET):
        raise ValueError(f"wallet.network must be 'f' or 't', got {cfg.wallet.network!r}")
    get_method_table(cfg.wallet.method_table)
    return cfg


def open_wallet(cfg: Config, passphrase: Optional[str] = None) -> WalletService:
    """Wire a :class:`WalletService` from configuration."""
    if passphrase is None:
        passphrase = cfg.wallet.password
    if passphrase is None:
        passphrase = getpass.getpass("Wallet passphrase: ")
    context = WalletContext(
        SqliteKeyStore(cfg.database.path), passphrase, cfg.scrypt, cfg.wallet.network,
    )
    rpc = LotusClient(
        cfg.lotus.host, cfg.lotus.token,
        timeout=cfg.rpc.timeout, retries=cfg.rpc.retries, backoff=cfg.rpc.backoff,
    )
    return WalletService(context, rpc, methods=get_method_table(cfg.wallet.method_table))


# ============================================================
# COMMAND LINE
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="lotus-sign", description="Filecoin wallet local signing tool",
    )
    p.add_argument("--config", default="config.toml", help="Path to config.toml")
    p.add_argument("--log-file", default=None, help="Also log to this rotating file")
    sub = p.add_subparsers(dest="command", required=True)

    wallet = sub.add_parser("wallet", help="Manage keys").add_subparsers(
        dest="wallet_command", required=True,
    )
    w_new = wallet.add_parser("new", help="Generate a key")
    w_new.add_argument("key_type", nargs="?", default="secp256k1",
                       choices=[t.value for t in KeyType])
    w_imp = wallet.add_parser("import", help="Import a private key")
    w_imp.add_argument("private_key", help="Raw hex or Lotus hex/JSON export")
    w_imp.add_argument("--type", dest="key_type", default=None,
                       choices=[t.value for t in KeyType])
    w_imp.add_argument("--overwrite", action="store_true")
    w_exp = wallet.add_parser("export", help="Print a private key")
    w_exp.add_argument("address")
    w_exp.add_argument("--format", choices=("hex", "lotus"), default="hex")
    wallet.add_parser("list", help="List stored keys")
    w_bal = wallet.add_parser("balance", help="Query a balance")
    w_bal.add_argument("address")
    w_del = wallet.add_parser("delete", help="Delete a stored key")
    w_del.add_argument("address")

    send = sub.add_parser("send", help="Transfer FIL")
    send.add_argument("to")
    send.add_argument("amount", help='e.g. "0.1", "1 FIL", "500 attoFIL"')
    send.add_argument("--from", dest="from_", required=True)
    send.add_argument("--offline", action="store_true",
                      help="Print the signed message instead of pushing it")

    actor = sub.add_parser("actor", help="Actor queries and miner control").add_subparsers(
        dest="actor_command", required=True,
    )
    a_info = actor.add_parser("info", help="Show actor state")
    a_info.add_argument("address")
    a_miner = actor.add_parser("miner-info", help="Show miner owner, worker and balance")
    a_miner.add_argument("miner")
    a_owner = actor.add_parser("set-owner", help="Propose or confirm a new owner")
    a_owner.add_argument("--new-owner", dest="new_owner", required=True)
    a_worker = actor.add_parser("propose-change-worker", help="Propose a new worker key")
    a_worker.add_argument("--new-worker", dest="new_worker", required=True)
    a_confirm = actor.add_parser("confirm-change-worker", help="Confirm a pending worker change")
    for control in (a_owner, a_worker, a_confirm):
        control.add_argument("--miner", required=True)
        control.add_argument("--from", dest="from_", required=True)
        control.add_argument("--really-do-it", dest="really_do_it", action="store_true")
        control.add_argument("--offline", action="store_true")

    wd = sub.add_parser("withdraw", help="Withdraw miner balance to owner")
    wd.add_argument("--miner", required=True)
    wd.add_argument("--amount", default=None, help="Default: all available")
    wd.add_argument("--from", dest="from_", required=True)
    wd.add_argument("--offline", action="store_true")

    mw = sub.add_parser("market-withdraw", help="Withdraw storage market escrow")
    mw.add_argument("--address", required=True)
    mw.add_argument("--amount", required=True)
    mw.add_argument("--from", dest="from_", required=True)
    mw.add_argument("--offline", action="store_true")

    push = sub.add_parser("mpool-push", help="Push a signed message (JSON or CBOR hex)")
    push.add_argument("signed_message")
    return p


def _emit(result: SendResult) -> None:
    if result.cid is not None:
        print(f"Message CID: {result.cid}")
        return
    smsg = result.signed_message
    print(json.dumps(signed_message_to_json(smsg), indent=2))
    print(f"CBOR: {smsg.to_cbor().hex()}")


def _load_signed_message(text: str) -> SignedMessage:
    text = text.strip()
    if text.startswith("{"):
        try:
            return signed_message_from_json(json.loads(text))
        except ValueError as exc:
            raise SerializationError(f"invalid signed message JSON: {exc}") from exc
    try:
        return decode_signed_message(bytes.fromhex(text))
    except ValueError as exc:
        raise SerializationError(f"invalid signed message: {exc}") from exc


def run(args: argparse.Namespace, service: WalletService) -> int:
    cmd = args.command
    if cmd == "wallet":
        wc = args.wallet_command
        if wc == "new":
            print(f"Created: {service.new_key(args.key_type)}")
        elif wc == "import":
            addr = service.import_hex(args.private_key, args.key_type, overwrite=args.overwrite)
            print(f"Imported: {addr}")
        elif wc == "export":
            info = service.export_key(args.address)
            print(info.private_key.hex() if args.format == "hex" else info.to_lotus_hex())
        elif wc == "list":
            print(f"{'Address':<90} {'Type':<10}")
            print("-" * 101)
            for k in service.list_keys():
                print(f"{k.address.encode(service.ctx.network):<90} {k.key_type:<10}")
        elif wc == "balance":
            print(f"{args.address}: {format_fil(service.balance(args.address))}")
        elif wc == "delete":
            service.delete_key(args.address)
            print(f"Deleted: {args.address}")
    elif cmd == "send":
        _emit(service.send(args.from_, args.to, parse_fil(args.amount), push=not args.offline))
    elif cmd == "actor":
        return _run_actor(args, service)
    elif cmd == "withdraw":
        amount = parse_fil(args.amount) if args.amount is not None else None
        _emit(service.withdraw(args.miner, args.from_, amount, push=not args.offline))
    elif cmd == "market-withdraw":
        _emit(service.market_withdraw(
            args.address, args.from_, parse_fil(args.amount), push=not args.offline,
        ))
    elif cmd == "mpool-push":
        print(f"Message CID: {service.push(_load_signed_message(args.signed_message))}")
    return 0


def _run_actor(args: argparse.Namespace, service: WalletService) -> int:
    ac = args.actor_command
    if ac == "info":
        info = service.actor_info(args.address)
        print(f"Actor:   {info.address}")
        print(f"Code:    {info.code}")
        print(f"Nonce:   {info.nonce}")
        print(f"Balance: {format_fil(info.balance)}")
        return 0
    if ac == "miner-info":
        info = service.miner_info(args.miner)
        available = service.miner_available_balance(args.miner)
        print(f"Miner:   {args.miner}")
        print(f"Owner:   {info.owner}")
        print(f"Worker:  {info.worker}")
        print(f"Available Balance: {format_fil(available)}")
        return 0
    if not args.really_do_it:
        print("Pass --really-do-it to actually execute this action", file=sys.stderr)
        return 1
    push = not args.offline
    if ac == "set-owner":
        _emit(service.change_owner(args.miner, args.new_owner, args.from_, push=push))
    elif ac == "propose-change-worker":
        _emit(service.propose_change_worker(args.miner, args.new_worker, args.from_, push=push))
    elif ac == "confirm-change-worker":
        _emit(service.confirm_change_worker(args.miner, args.from_, push=push))
    return 0


def _needs_passphrase(args: argparse.Namespace) -> bool:
    if args.command == "actor":
        return args.actor_command not in ("info", "miner-info")
    if args.command == "mpool-push":
        return False
    if args.command == "wallet":
        return args.wallet_command not in ("list", "balance", "delete")
    return True


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.log_file:
        setup_logging(args.log_file)
    try:
        cfg = load_config(args.config)
        passphrase = None if _needs_passphrase(args) else (cfg.wallet.password or "")
        service = open_wallet(cfg, passphrase)
        return run(args, service)
    except PushError as exc:
        print(f"error: {exc}", file=sys.stderr)
        print("signed message (resubmit with mpool-push):", file=sys.stderr)
        print(json.dumps(signed_message_to_json(exc.signed_message)), file=sys.stderr)
        return 2
    except (LotusSignError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
