"""
Lotus JSON-RPC client
=====================

Thin blocking client for the handful of Lotus full-node methods the signer
needs.  Read methods are idempotent and retried on transport failures with
exponential backoff plus jitter; ``MpoolPush`` is sent exactly once.

Reference: https://lotus.filecoin.io/reference/lotus/
"""

from __future__ import annotations

import itertools
import logging
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from filecoin_protocol import (
    Address,
    LotusSignError,
    SignedMessage,
    UnsignedMessage,
    message_to_json,
    signed_message_to_json,
)

log = logging.getLogger("lotus_sign.rpc")
log.addHandler(logging.NullHandler())

DEFAULT_ENDPOINT = "https://api.node.glif.io/rpc/v0"
DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRIES = 3
DEFAULT_BACKOFF = 0.5

# Always retried. Any other 5xx is retried unless its body is a JSON-RPC error.
_TRANSIENT_STATUS = frozenset({429, 502, 503, 504})

_DIGITS = re.compile(r"[0-9]+")


# ============================================================
# ERRORS
# ============================================================

class RpcError(LotusSignError):
    """Network failure or remote error after retries were exhausted."""

    def __init__(self, message: str, *, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class PushError(RpcError):
    """``MpoolPush`` failed; the exact signed message is kept for resubmission."""

    def __init__(
        self, message: str, signed_message: SignedMessage,
        *, code: Optional[int] = None,
    ) -> None:
        super().__init__(message, code=code)
        self.signed_message = signed_message


class ActorNotFound(LotusSignError):
    """The queried actor does not exist on-chain."""


class _TransientError(Exception):
    """Internal marker for failures the retry loop may absorb."""


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass(frozen=True)
class GasEstimate:
    gas_limit: int
    gas_fee_cap: int
    gas_premium: int


@dataclass(frozen=True)
class ActorInfo:
    address: Address
    code: str
    head: str
    nonce: int
    balance: int


@dataclass(frozen=True)
class MinerInfo:
    owner: str
    worker: str
    control_addresses: List[str] = field(default_factory=list)
    peer_id: Optional[str] = None
    sector_size: int = 0


def _cid(value: Any) -> str:
    if isinstance(value, dict):
        return value.get("/", "")
    return str(value or "")


def _is_not_found(message: str) -> bool:
    text = message.lower()
    return "actor not found" in text or ("not found" in text and "actor" in text)


# ============================================================
# CLIENT
# ============================================================

class LotusClient:
    """
    Lotus full-node API over HTTP JSON-RPC 2.0.

    Args:
        url:      RPC endpoint (``.../rpc/v0`` or ``/rpc/v1``).
        token:    optional API token sent as ``Authorization: Bearer``.
        timeout:  per-request HTTP timeout in seconds.
        retries:  attempts for idempotent reads (1 = no retry).
        backoff:  base delay in seconds; doubles each attempt.
    """

    def __init__(
        self,
        url: str = DEFAULT_ENDPOINT,
        token: Optional[str] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        backoff: float = DEFAULT_BACKOFF,
    ) -> None:
        if retries < 1:
            raise ValueError("retries must be >= 1")
        self.url = url
        self.token = token
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        # shared between threads; next() on a count is atomic
        self._ids = itertools.count(1)

    # ---- transport ----------------------------------------------------
    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _call_once(self, method: str, params: List[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": f"Filecoin.{method}",
            "params": params,
        }
        try:
            resp = requests.post(
                self.url, json=payload, headers=self._headers(),
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise _TransientError(f"{type(exc).__name__}: {exc}") from exc
        except requests.RequestException as exc:
            raise RpcError(f"{method}: request failed: {exc}") from exc

        if resp.status_code in _TRANSIENT_STATUS:
            raise _TransientError(f"HTTP {resp.status_code}")
        server_error = resp.status_code >= 500
        try:
            body = resp.json()
        except ValueError as exc:
            if server_error:
                raise _TransientError(f"HTTP {resp.status_code}") from exc
            raise RpcError(
                f"{method}: HTTP {resp.status_code}, non-JSON response: "
                f"{str(getattr(resp, 'text', ''))[:200]}"
            ) from exc
        if not isinstance(body, dict):
            if server_error:
                raise _TransientError(f"HTTP {resp.status_code}")
            raise RpcError(f"{method}: malformed JSON-RPC response")

        err = body.get("error")
        if err:
            code = err.get("code") if isinstance(err, dict) else None
            text = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            raise RpcError(f"{method}: RPC error {code}: {text}", code=code)
        if server_error:
            raise _TransientError(f"HTTP {resp.status_code}")
        if resp.status_code != 200:
            raise RpcError(
                f"{method}: HTTP {resp.status_code}: "
                f"{str(getattr(resp, 'text', ''))[:200]}"
            )
        return body.get("result")

    def call(self, method: str, params: List[Any], *, idempotent: bool = True) -> Any:
        """
        Invoke ``Filecoin.<method>``.

        Idempotent calls get up to ``self.retries`` attempts for transport
        failures only; remote JSON-RPC errors are never retried.
        """
        attempts = self.retries if idempotent else 1
        last: Optional[_TransientError] = None
        for attempt in range(1, attempts + 1):
            try:
                return self._call_once(method, params)
            except _TransientError as exc:
                last = exc
                if attempt == attempts:
                    break
                delay = self.backoff * (2 ** (attempt - 1))
                delay += random.uniform(0, delay)
                log.warning(
                    "%s attempt %d/%d failed (%s); retrying in %.2fs",
                    method, attempt, attempts, exc, delay,
                )
                time.sleep(delay)
        raise RpcError(f"{method} failed after {attempts} attempt(s): {last}") from last

    # ---- reads --------------------------------------------------------
    def get_nonce(self, address: Address) -> int:
        nonce = self.call("MpoolGetNonce", [str(address)])
        if not isinstance(nonce, int) or nonce < 0:
            raise RpcError(f"MpoolGetNonce returned invalid nonce {nonce!r}")
        return nonce

    def get_balance(self, address: Address) -> int:
        return _parse_amount(self.call("WalletBalance", [str(address)]), "WalletBalance")

    def estimate_gas(self, message: UnsignedMessage) -> GasEstimate:
        result = self.call(
            "GasEstimateMessageGas",
            [message_to_json(message), {"MaxFee": "0"}, None],
        )
        if not isinstance(result, dict):
            raise RpcError("GasEstimateMessageGas returned no message")
        try:
            return GasEstimate(
                gas_limit=int(result["GasLimit"]),
                gas_fee_cap=_parse_amount(result["GasFeeCap"], "GasFeeCap"),
                gas_premium=_parse_amount(result["GasPremium"], "GasPremium"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise RpcError(f"GasEstimateMessageGas: malformed result: {exc}") from exc

    def get_actor(self, address: Address) -> ActorInfo:
        try:
            result = self.call("StateGetActor", [str(address), None])
        except RpcError as exc:
            if _is_not_found(str(exc)):
                raise ActorNotFound(f"actor not found: {address}") from exc
            raise
        if not result:
            raise ActorNotFound(f"actor not found: {address}")
        return ActorInfo(
            address=address,
            code=_cid(result.get("Code")),
            head=_cid(result.get("Head")),
            nonce=int(result.get("Nonce", 0)),
            balance=_parse_amount(result.get("Balance", "0"), "Balance"),
        )

    def miner_info(self, miner: Address) -> MinerInfo:
        try:
            result = self.call("StateMinerInfo", [str(miner), None])
        except RpcError as exc:
            if _is_not_found(str(exc)):
                raise ActorNotFound(f"miner not found: {miner}") from exc
            raise
        if not isinstance(result, dict):
            raise ActorNotFound(f"miner not found: {miner}")
        return MinerInfo(
            owner=result.get("Owner", ""),
            worker=result.get("Worker", ""),
            control_addresses=list(result.get("ControlAddresses") or []),
            peer_id=result.get("PeerId"),
            sector_size=int(result.get("SectorSize") or 0),
        )

    def miner_available_balance(self, miner: Address) -> int:
        return _parse_amount(
            self.call("StateMinerAvailableBalance", [str(miner), None]),
            "StateMinerAvailableBalance",
        )

    # ---- writes -------------------------------------------------------
    def push_message(self, signed: SignedMessage) -> str:
        """
        Submit a signed message; returns the message CID string.

        Never retried: a lost response could otherwise turn into a double
        submission.  On failure the signed message rides on the exception.
        """
        try:
            result = self.call(
                "MpoolPush", [signed_message_to_json(signed)], idempotent=False,
            )
        except RpcError as exc:
            log.error("MpoolPush failed for %s: %s", signed.cid(), exc)
            raise PushError(str(exc), signed, code=exc.code) from exc
        cid = _cid(result)
        log.info("MpoolPush OK: %s", cid)
        return cid


def _parse_amount(value: Any, name: str) -> int:
    text = str(value)
    if text.startswith("-") and _DIGITS.fullmatch(text[1:]):
        raise RpcError(f"{name}: negative amount {value!r}")
    # int() alone would also take "+5", " 5" and "1_000"
    if not _DIGITS.fullmatch(text):
        raise RpcError(f"{name}: invalid amount {value!r}")
    return int(text)
