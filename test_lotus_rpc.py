# Copyright (c) 2026 Emiliano G Solazzi
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.
#
# Commercial licenses available. Contact: emiliano.arlington@gmail.com
import threading

import pytest
import requests
import lotus_rpc
from lotus_rpc import *
from filecoin_protocol import (
    Address, Protocol, Signature, SignedMessage, SigType, UnsignedMessage,
)


_FROM = Address(Protocol.SECP256K1, b"\x11" * 20)
_TO = Address.new_id(1234)


def _message() -> UnsignedMessage:
    return UnsignedMessage(
        to=_TO, from_=_FROM, nonce=5, value=10**17,
        gas_limit=1_000_000, gas_fee_cap=100, gas_premium=10,
    )


class FakeResp:
    def __init__(self, body=None, status_code=200, text=""):
        self._body = body
        self.status_code = status_code
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no JSON")
        return self._body


class Recorder:
    """Stands in for ``requests.post``; replays responses in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def no_sleep(monkeypatch):
    delays = []
    monkeypatch.setattr(lotus_rpc.time, "sleep", delays.append)
    return delays


def _ok(result):
    return FakeResp({"jsonrpc": "2.0", "id": 1, "result": result})


class TestTransport:
    """Request shape, auth header and error mapping."""

    def test_request_shape(self, monkeypatch):
        rec = Recorder(_ok(7))
        monkeypatch.setattr(requests, "post", rec)
        client = LotusClient("http://fake:1234/rpc/v0", token="secret", timeout=5)
        assert client.get_nonce(_FROM) == 7
        call = rec.calls[0]
        assert call["json"]["method"] == "Filecoin.MpoolGetNonce"
        assert call["json"]["params"] == [str(_FROM)]
        assert call["headers"]["Authorization"] == "Bearer secret"
        assert call["timeout"] == 5

    def test_no_token_no_auth_header(self, monkeypatch):
        rec = Recorder(_ok("0"))
        monkeypatch.setattr(requests, "post", rec)
        LotusClient("http://fake").get_balance(_FROM)
        assert "Authorization" not in rec.calls[0]["headers"]

    def test_rpc_error_not_retried(self, monkeypatch, no_sleep):
        rec = Recorder(FakeResp({"error": {"code": 1, "message": "boom"}}))
        monkeypatch.setattr(requests, "post", rec)
        with pytest.raises(RpcError, match="boom") as exc_info:
            LotusClient("http://fake", retries=3).get_nonce(_FROM)
        assert exc_info.value.code == 1
        assert len(rec.calls) == 1
        assert no_sleep == []

    def test_http_error(self, monkeypatch):
        monkeypatch.setattr(requests, "post", Recorder(FakeResp(None, 403, "Forbidden")))
        with pytest.raises(RpcError, match="403"):
            LotusClient("http://fake").get_nonce(_FROM)

    def test_retries_transient_then_succeeds(self, monkeypatch, no_sleep):
        rec = Recorder(
            requests.ConnectionError("refused"),
            FakeResp(None, 503),
            _ok("42"),
        )
        monkeypatch.setattr(requests, "post", rec)
        client = LotusClient("http://fake", retries=3, backoff=0.5)
        assert client.get_balance(_FROM) == 42
        assert len(rec.calls) == 3
        assert len(no_sleep) == 2
        assert 0.5 <= no_sleep[0] <= 1.0
        assert 1.0 <= no_sleep[1] <= 2.0

    def test_retries_exhausted(self, monkeypatch, no_sleep):
        rec = Recorder(*[requests.Timeout("slow")] * 3)
        monkeypatch.setattr(requests, "post", rec)
        with pytest.raises(RpcError, match="after 3 attempt"):
            LotusClient("http://fake", retries=3).get_nonce(_FROM)
        assert len(rec.calls) == 3

    def test_invalid_retries(self):
        with pytest.raises(ValueError):
            LotusClient("http://fake", retries=0)

    def test_retries_internal_server_error(self, monkeypatch, no_sleep):
        rec = Recorder(FakeResp(None, 500, "Internal Server Error"), _ok(9))
        monkeypatch.setattr(requests, "post", rec)
        assert LotusClient("http://fake", retries=2).get_nonce(_FROM) == 9
        assert len(rec.calls) == 2
        assert len(no_sleep) == 1

    def test_server_error_with_rpc_body_not_retried(self, monkeypatch, no_sleep):
        rec = Recorder(FakeResp({"error": {"code": 1, "message": "state lookup"}}, 500))
        monkeypatch.setattr(requests, "post", rec)
        with pytest.raises(RpcError, match="state lookup"):
            LotusClient("http://fake", retries=3).get_nonce(_FROM)
        assert len(rec.calls) == 1
        assert no_sleep == []

    def test_request_ids_unique_across_threads(self, monkeypatch):
        seen = []
        guard = threading.Lock()

        def post(url, json=None, headers=None, timeout=None):
            with guard:
                seen.append(json["id"])
            return _ok(1)

        monkeypatch.setattr(requests, "post", post)
        client = LotusClient("http://fake")

        def worker():
            for _ in range(50):
                client.get_nonce(_FROM)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(seen) == list(range(1, 401))


class TestReads:
    """Result parsing for the read methods."""

    def test_estimate_gas(self, monkeypatch):
        rec = Recorder(_ok({"GasLimit": 1_000_000, "GasFeeCap": "100", "GasPremium": "10"}))
        monkeypatch.setattr(requests, "post", rec)
        est = LotusClient("http://fake").estimate_gas(_message())
        assert est == GasEstimate(1_000_000, 100, 10)
        params = rec.calls[0]["json"]["params"]
        assert params[0]["From"] == str(_FROM)
        assert params[1] == {"MaxFee": "0"}

    def test_estimate_gas_malformed(self, monkeypatch):
        monkeypatch.setattr(requests, "post", Recorder(_ok({"GasLimit": 1})))
        with pytest.raises(RpcError):
            LotusClient("http://fake").estimate_gas(_message())

    def test_invalid_nonce(self, monkeypatch):
        monkeypatch.setattr(requests, "post", Recorder(_ok(-1)))
        with pytest.raises(RpcError):
            LotusClient("http://fake").get_nonce(_FROM)

    @pytest.mark.parametrize("value", ["1_000", " 5", "+5", "-5", "1.0"])
    def test_balance_must_be_plain_digits(self, monkeypatch, value):
        monkeypatch.setattr(requests, "post", Recorder(_ok(value)))
        with pytest.raises(RpcError):
            LotusClient("http://fake").get_balance(_FROM)

    def test_get_actor(self, monkeypatch):
        monkeypatch.setattr(requests, "post", Recorder(_ok({
            "Code": {"/": "bafk2bzaceaccount"},
            "Head": {"/": "bafy2bzacehead"},
            "Nonce": 3,
            "Balance": "1000",
        })))
        info = LotusClient("http://fake").get_actor(_FROM)
        assert info.code == "bafk2bzaceaccount"
        assert info.nonce == 3
        assert info.balance == 1000

    def test_get_actor_not_found(self, monkeypatch):
        monkeypatch.setattr(requests, "post", Recorder(FakeResp({
            "error": {"code": 1, "message": "resolution lookup failed: actor not found"},
        })))
        with pytest.raises(ActorNotFound):
            LotusClient("http://fake").get_actor(_FROM)

    def test_miner_info(self, monkeypatch):
        monkeypatch.setattr(requests, "post", Recorder(_ok({
            "Owner": "f0100", "Worker": "f0101", "ControlAddresses": ["f0102"],
            "PeerId": "12D3Koo", "SectorSize": 34359738368,
        })))
        info = LotusClient("http://fake").miner_info(Address.new_id(1000))
        assert info.owner == "f0100"
        assert info.control_addresses == ["f0102"]
        assert info.sector_size == 34359738368

    def test_miner_available_balance(self, monkeypatch):
        monkeypatch.setattr(requests, "post", Recorder(_ok("5000")))
        assert LotusClient("http://fake").miner_available_balance(Address.new_id(1000)) == 5000


class TestPush:
    """MpoolPush is sent exactly once and keeps the signed message on failure."""

    def _signed(self) -> SignedMessage:
        return SignedMessage(_message(), Signature(SigType.SECP256K1, b"\x01" * 65))

    def test_push_success(self, monkeypatch):
        rec = Recorder(_ok({"/": "bafy2bzacemsg"}))
        monkeypatch.setattr(requests, "post", rec)
        assert LotusClient("http://fake").push_message(self._signed()) == "bafy2bzacemsg"
        assert rec.calls[0]["json"]["params"][0]["Signature"]["Type"] == 1

    def test_push_not_retried(self, monkeypatch, no_sleep):
        rec = Recorder(requests.ConnectionError("reset"), _ok({"/": "never"}))
        monkeypatch.setattr(requests, "post", rec)
        signed = self._signed()
        with pytest.raises(PushError) as exc_info:
            LotusClient("http://fake", retries=5).push_message(signed)
        assert exc_info.value.signed_message == signed
        assert len(rec.calls) == 1
        assert no_sleep == []

    def test_push_rejected(self, monkeypatch):
        monkeypatch.setattr(requests, "post", Recorder(FakeResp({
            "error": {"code": 1, "message": "nonce too low"},
        })))
        with pytest.raises(PushError, match="nonce too low"):
            LotusClient("http://fake").push_message(self._signed())
