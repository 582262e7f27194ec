"""Unit tests for the inscription workflow driver."""

import io
import json
import logging
import sys
from decimal import Decimal
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import core_wallet  # noqa: E402
import inscribe_image as flow  # noqa: E402
import ordinals_api  # noqa: E402


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


CHARGE = {
    "address": "tb1qpaymentaddress",
    "amount": 100000,
    "hosted_checkout_url": "https://pay/o1",
}


class RecordingSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


class ScriptedOrders:
    """Stand-in for get_order returning (or raising) scripted snapshots."""

    def __init__(self, *snapshots):
        self.snapshots = list(snapshots)
        self.calls = []

    def __call__(self, cfg, order_id, timeout=None):
        self.calls.append((order_id, timeout))
        snapshot = self.snapshots.pop(0)
        if isinstance(snapshot, Exception):
            raise snapshot
        return snapshot


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self.ok = status_code < 400
        self.text = json.dumps(body)

    def json(self, **kwargs):
        return json.loads(self.text, **kwargs)


class FakeRPC:
    def __init__(self, confirmations=(0, 1)):
        self.confirmations = list(confirmations)
        self.sent = []

    def getnewaddress(self, label="", address_type="bech32m"):
        return "tb1pinscriptiondestination"

    def sendtoaddress(self, *args):
        self.sent.append(args)
        return "ab" * 32

    def gettransaction(self, txid):
        return {"txid": txid, "confirmations": self.confirmations.pop(0)}

    def getwalletinfo(self):
        return {"balance": Decimal("1")}


@pytest.fixture
def cfg():
    return ordinals_api.OrdinalsBotConfig()


# ---------------------------------------------------------------------------
# Payment-detail polling
# ---------------------------------------------------------------------------


def test_wait_for_payment_fetches_until_complete(monkeypatch, cfg):
    orders = ScriptedOrders(
        {},
        {"charge": None},
        {"charge": {"address": "tb1qpaymentaddress", "amount": 100000}},
        {"charge": {**CHARGE, "amount": 0}},
        {"charge": CHARGE},
    )
    monkeypatch.setattr(flow, "get_order", orders)
    sleep = RecordingSleep()

    details = flow.wait_for_payment(cfg, "o1", sleep=sleep)

    assert len(orders.calls) == 5
    assert sleep.calls == [10, 10, 10, 10]
    assert details.address == "tb1qpaymentaddress"
    assert details.amount_sats == 100000
    assert details.amount_btc == Decimal("0.001")
    assert details.payment_link == "https://pay/o1"


def test_wait_for_payment_api_error_aborts(monkeypatch, cfg):
    error = ordinals_api.OrderAPIError("HTTP 500", status_code=500, response_data={"error": "boom"})
    orders = ScriptedOrders({}, error, {"charge": CHARGE})
    monkeypatch.setattr(flow, "get_order", orders)

    with pytest.raises(ordinals_api.OrderAPIError):
        flow.wait_for_payment(cfg, "o1", sleep=RecordingSleep())
    assert len(orders.calls) == 2


def test_wait_for_payment_attempt_ceiling(monkeypatch, cfg):
    orders = ScriptedOrders({}, {}, {})
    monkeypatch.setattr(flow, "get_order", orders)
    sleep = RecordingSleep()

    with pytest.raises(flow.InscriptionFlowError):
        flow.wait_for_payment(cfg, "o1", max_attempts=3, sleep=sleep)
    assert len(orders.calls) == 3
    assert len(sleep.calls) == 2


# ---------------------------------------------------------------------------
# Reveal polling
# ---------------------------------------------------------------------------


def test_reveal_fails_after_exactly_five_attempts(monkeypatch, cfg):
    error = ordinals_api.OrderAPIError("timed out")
    orders = ScriptedOrders(
        {"state": "waiting-confirmation"},
        error,
        {"state": "queued"},
        error,
        {"state": "queued", "inscriptionId": ""},
        {"inscriptionId": "never-reached"},
    )
    monkeypatch.setattr(flow, "get_order", orders)
    sleep = RecordingSleep()

    with pytest.raises(flow.InscriptionFlowError, match="inscription ID"):
        flow.wait_for_reveal_transaction(cfg, "o1", sleep=sleep)

    assert len(orders.calls) == 5
    assert sleep.calls == [10, 10, 10, 10]


def test_reveal_succeeds_on_fifth_attempt(monkeypatch, cfg):
    error = ordinals_api.OrderAPIError("HTTP 503", status_code=503)
    orders = ScriptedOrders(error, {}, error, {"state": "queued"}, {"inscriptionId": "abci0"})
    monkeypatch.setattr(flow, "get_order", orders)

    assert flow.wait_for_reveal_transaction(cfg, "o1", sleep=RecordingSleep()) == "abci0"
    assert len(orders.calls) == 5


def test_reveal_uses_request_timeout(monkeypatch, cfg):
    orders = ScriptedOrders({"inscriptionId": "abci0"})
    monkeypatch.setattr(flow, "get_order", orders)

    flow.wait_for_reveal_transaction(cfg, "o1", sleep=RecordingSleep())
    assert orders.calls == [("o1", 30)]


def test_reveal_other_errors_propagate(monkeypatch, cfg):
    orders = ScriptedOrders(KeyError("unexpected"))
    monkeypatch.setattr(flow, "get_order", orders)

    with pytest.raises(KeyError):
        flow.wait_for_reveal_transaction(cfg, "o1", sleep=RecordingSleep())


# ---------------------------------------------------------------------------
# Inscription query
# ---------------------------------------------------------------------------


def test_query_inscription_waits_for_indexer(monkeypatch, cfg, caplog):
    monkeypatch.setattr(flow, "get_inscription", lambda _cfg, iid: {"id": iid, "number": 7})
    sleep = RecordingSleep()

    with caplog.at_level(logging.INFO):
        details = flow.query_inscription(cfg, "abci0", sleep=sleep)

    assert details == {"id": "abci0", "number": 7}
    assert sleep.calls == [60]
    assert "https://testnet.ordinalsbot.com/inscription/abci0" in caplog.text


def test_query_inscription_no_retry(monkeypatch, cfg):
    calls = []

    def failing(_cfg, iid):
        calls.append(iid)
        raise ordinals_api.OrderAPIError("HTTP 404", status_code=404, response_data={"error": "not found"})

    monkeypatch.setattr(flow, "get_inscription", failing)

    with pytest.raises(ordinals_api.OrderAPIError):
        flow.query_inscription(cfg, "abci0", sleep=RecordingSleep())
    assert calls == ["abci0"]


# ---------------------------------------------------------------------------
# End-to-end
# ---------------------------------------------------------------------------


def test_inscribe_image_end_to_end(monkeypatch, cfg, tmp_path):
    image = tmp_path / "thefastway.jpg"
    image.write_bytes(b"\xff\xd8\xff\xd9")

    status_polls = [
        {},
        {},
        {"charge": CHARGE},
        {"state": "waiting-confirmation"},
        {"state": "completed", "inscriptionId": "abci0"},
    ]
    requests_made = []

    def fake_request(method, url, **kwargs):
        requests_made.append((method, url))
        if method == "POST" and url.endswith("/order"):
            return FakeResponse(body={"id": "o1"})
        if method == "GET" and url.endswith("/order"):
            assert kwargs["params"] == {"id": "o1"}
            return FakeResponse(body=status_polls.pop(0))
        if method == "GET" and url.endswith("/inscription/abci0"):
            return FakeResponse(body={"id": "abci0", "content_type": "image/jpeg"})
        raise AssertionError(f"unexpected request {method} {url}")

    monkeypatch.setattr(ordinals_api.requests, "request", fake_request)
    rpc = FakeRPC()
    sleep = RecordingSleep()
    bar = core_wallet.ConfirmationProgress(stream=io.StringIO())

    address = core_wallet.get_new_address(rpc)
    result = flow.inscribe_image(rpc, cfg, address, image, sleep=sleep, progress=bar)

    assert rpc.sent == [
        ("tb1qpaymentaddress", "0.00100500", "", "", True, True, None, None, False)
    ]
    assert result.address == "tb1pinscriptiondestination"
    assert result.order_id == "o1"
    assert result.txid == "ab" * 32
    assert result.inscription_id == "abci0"
    assert result.inscription["content_type"] == "image/jpeg"
    assert result.explorer_url == "https://testnet.ordinalsbot.com/inscription/abci0"
    assert status_polls == []
    # two payment polls, one confirmation poll, one reveal poll, indexer delay
    assert sleep.calls == [10, 10, 10, 10, 60]
    assert requests_made[0] == ("POST", "https://testnet-api.ordinalsbot.com/order")


def test_inscribe_image_missing_file_propagates(cfg, tmp_path):
    rpc = FakeRPC()
    with pytest.raises(FileNotFoundError):
        flow.inscribe_image(rpc, cfg, "tb1pdest", tmp_path / "missing.jpg", sleep=RecordingSleep())
    assert rpc.sent == []


def test_main_logs_failure_without_raising(monkeypatch, caplog):
    def no_config():
        raise core_wallet.WalletConfigError("No RPC credentials configured.")

    monkeypatch.setattr(flow.WalletRPCConfig, "from_env", staticmethod(no_config))

    with caplog.at_level(logging.ERROR):
        flow.main()

    assert "An error occurred: No RPC credentials configured." in caplog.text
    assert "Traceback" in caplog.text


def test_main_runs_workflow(monkeypatch, caplog):
    calls = {}
    rpc = FakeRPC()

    monkeypatch.setattr(
        flow.WalletRPCConfig, "from_env", staticmethod(lambda: object())
    )
    monkeypatch.setattr(
        flow.OrdinalsBotConfig, "from_env", staticmethod(ordinals_api.OrdinalsBotConfig)
    )
    monkeypatch.setattr(flow, "BitcoinCoreRPC", lambda _cfg: rpc)

    def fake_inscribe(rpc_arg, api_cfg, address, image_path):
        calls["args"] = (rpc_arg, address, image_path)

    monkeypatch.setattr(flow, "inscribe_image", fake_inscribe)

    with caplog.at_level(logging.INFO):
        flow.main()

    assert calls["args"] == (rpc, "tb1pinscriptiondestination", flow.IMAGE_PATH)
    assert flow.IMAGE_PATH.parts[-2:] == ("images", "thefastway.jpg")
    assert "Image inscribed successfully" in caplog.text
