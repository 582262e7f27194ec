"""
Bitcoin Core wallet operations used by the inscription workflow.

Implements:
- Wallet RPC configuration sourced from the environment / .env
- A minimal JSON-RPC client bound to a single Bitcoin Core wallet
- Fresh receiving address generation
- Invoice payment with replace-by-fee enabled
- Confirmation polling with a console progress indicator

All calls go to the node's wallet endpoint (``/wallet/<name>``); key
material, coin selection and fee estimation stay inside Bitcoin Core.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Literal, TextIO

import requests
from dotenv import load_dotenv

# Load .env from project root
PROJECT_ROOT = Path(__file__).parent
load_dotenv(PROJECT_ROOT / ".env")

logger = logging.getLogger(__name__)

BTCNetwork = Literal["mainnet", "testnet"]

DEFAULT_RPC_PORTS = {"mainnet": 8332, "testnet": 18332}
DEFAULT_WALLET_NAME = "thefastway"

SATS_PER_BTC = Decimal("1e8")

# Flat surcharge added on top of the quoted invoice so the wallet fee
# (subtracted from the amount) does not leave the invoice underpaid.
PAYMENT_FEE_RATE_SAT_PER_VB = 5
PAYMENT_TX_VSIZE = 100
PAYMENT_FEE_SURCHARGE_BTC = (
    Decimal(PAYMENT_FEE_RATE_SAT_PER_VB * PAYMENT_TX_VSIZE) / SATS_PER_BTC
)

CONFIRMATION_POLL_SECONDS = 10


class WalletConfigError(Exception):
    """Missing or invalid wallet RPC configuration."""

    pass


class WalletRPCError(RuntimeError):
    """Error returned by (or while talking to) the Bitcoin Core RPC server."""

    def __init__(
        self,
        message: str,
        code: int | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status


class InsufficientFundsError(WalletRPCError):
    """Wallet balance is below the amount the invoice requires."""

    pass


class ConfirmationTimeoutError(RuntimeError):
    """Payment still unconfirmed after the allowed number of checks."""

    pass


@dataclass
class WalletRPCConfig:
    """
    Connection settings for the Bitcoin Core wallet.

    Values are sourced from environment variables or a .env file:
    - BITCOIN_RPC_HOST: node host (default 127.0.0.1).
    - BITCOIN_RPC_PORT: node RPC port (default 18332 on testnet, 8332 on mainnet).
    - BITCOIN_RPC_USER / BITCOIN_RPC_PASSWORD: RPC credentials (required).
    - BITCOIN_RPC_WALLET: wallet name (default "thefastway").
    - BTC_NETWORK: "testnet" (default) or "mainnet".
    - BITCOIN_RPC_TIMEOUT: per-request timeout in seconds (default 30).
    """

    username: str
    password: str
    host: str = "127.0.0.1"
    port: int = DEFAULT_RPC_PORTS["testnet"]
    wallet: str = DEFAULT_WALLET_NAME
    network: BTCNetwork = "testnet"
    timeout: float = 30.0

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}/wallet/{self.wallet}"

    @classmethod
    def from_env(cls) -> WalletRPCConfig:
        username = os.getenv("BITCOIN_RPC_USER")
        password = os.getenv("BITCOIN_RPC_PASSWORD")
        if not username or not password:
            raise WalletConfigError(
                "No RPC credentials configured. Set BITCOIN_RPC_USER and "
                "BITCOIN_RPC_PASSWORD in your environment or .env file."
            )

        network = _network_from_env()

        port_raw = os.getenv("BITCOIN_RPC_PORT")
        if port_raw and port_raw.strip():
            try:
                port = int(port_raw)
            except ValueError as exc:
                raise WalletConfigError(
                    f"Invalid BITCOIN_RPC_PORT={port_raw!r}. Expected an integer."
                ) from exc
        else:
            port = DEFAULT_RPC_PORTS[network]

        timeout = 30.0
        timeout_raw = os.getenv("BITCOIN_RPC_TIMEOUT")
        if timeout_raw is not None and timeout_raw.strip():
            try:
                timeout = max(1.0, float(timeout_raw))
            except ValueError:
                pass

        return cls(
            username=username,
            password=password,
            host=os.getenv("BITCOIN_RPC_HOST") or "127.0.0.1",
            port=port,
            wallet=os.getenv("BITCOIN_RPC_WALLET") or DEFAULT_WALLET_NAME,
            network=network,
            timeout=timeout,
        )


def _network_from_env() -> BTCNetwork:
    raw_network_env = os.getenv("BTC_NETWORK")
    if not raw_network_env:
        return "testnet"
    raw_network = raw_network_env.strip().lower()
    if raw_network not in {"mainnet", "testnet"}:
        raise WalletConfigError(
            f"Invalid BTC_NETWORK={raw_network_env!r}. Expected 'mainnet' or 'testnet'."
        )
    return "mainnet" if raw_network == "mainnet" else "testnet"


# ---------------------------------------------------------------------------
# JSON-RPC client
# ---------------------------------------------------------------------------


class BitcoinCoreRPC:
    """
    JSON-RPC client bound to one Bitcoin Core wallet.

    Amounts in responses are decoded as Decimal so BTC values never pass
    through binary floats.
    """

    def __init__(
        self, cfg: WalletRPCConfig, session: requests.Session | None = None
    ) -> None:
        self.cfg = cfg
        self.session = session or requests.Session()
        self._request_id = 0

    def call(self, method: str, *params: Any) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "1.0",
            "id": self._request_id,
            "method": method,
            "params": list(params),
        }
        try:
            resp = self.session.post(
                self.cfg.url,
                json=payload,
                auth=(self.cfg.username, self.cfg.password),
                timeout=self.cfg.timeout,
            )
        except requests.RequestException as exc:
            raise WalletRPCError(f"RPC {method} failed: {exc}") from exc

        # Bitcoin Core reports RPC errors as HTTP 500 with a JSON body, but
        # auth failures come back as a bare 401.
        try:
            data = resp.json(parse_float=Decimal)
        except ValueError:
            raise WalletRPCError(
                f"RPC {method} failed: HTTP {resp.status_code} {resp.text.strip()}".strip(),
                http_status=resp.status_code,
            ) from None

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            raise WalletRPCError(
                error.get("message", str(error)),
                code=error.get("code"),
                http_status=resp.status_code,
            )
        if not resp.ok:
            raise WalletRPCError(
                f"RPC {method} failed: HTTP {resp.status_code}",
                http_status=resp.status_code,
            )
        return data.get("result")

    def getnewaddress(self, label: str = "", address_type: str = "bech32m") -> str:
        return self.call("getnewaddress", label, address_type)

    def sendtoaddress(
        self,
        address: str,
        amount: str,
        comment: str = "",
        comment_to: str = "",
        subtract_fee_from_amount: bool = False,
        replaceable: bool | None = None,
        conf_target: int | None = None,
        estimate_mode: str | None = None,
        avoid_reuse: bool | None = None,
    ) -> str:
        return self.call(
            "sendtoaddress",
            address,
            amount,
            comment,
            comment_to,
            subtract_fee_from_amount,
            replaceable,
            conf_target,
            estimate_mode,
            avoid_reuse,
        )

    def gettransaction(self, txid: str) -> dict[str, Any]:
        return self.call("gettransaction", txid)

    def getwalletinfo(self) -> dict[str, Any]:
        return self.call("getwalletinfo")


# ---------------------------------------------------------------------------
# Address acquisition
# ---------------------------------------------------------------------------


def get_new_address(
    rpc: BitcoinCoreRPC, label: str = "", address_type: str = "bech32m"
) -> str:
    """Reserve a fresh receiving address from the wallet keypool."""
    try:
        address = rpc.getnewaddress(label, address_type)
    except Exception as exc:
        logger.error("Error getting new address: %s", exc)
        raise
    logger.info("New address: %s", address)
    return address


# ---------------------------------------------------------------------------
# Payment execution
# ---------------------------------------------------------------------------


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc


def compute_payment_total(amount_btc: Any) -> Decimal:
    """
    Invoice amount plus the fixed fee surcharge.

    Raises ValueError for totals that are not positive finite numbers.
    """
    total = _to_decimal(amount_btc) + PAYMENT_FEE_SURCHARGE_BTC
    if not total.is_finite() or total <= 0:
        raise ValueError(f"Invalid amount: {total} BTC")
    return total


def make_payment(rpc: BitcoinCoreRPC, address: str, amount_btc: Any) -> str:
    """
    Pay ``amount_btc`` (plus surcharge) to ``address`` with RBF enabled.

    When the send fails for lack of funds the wallet balance is fetched
    afterwards and logged. That lookup cannot prevent the failure; it only
    turns the node's error into one naming the shortfall.
    """
    try:
        total = compute_payment_total(amount_btc)
        txid = rpc.sendtoaddress(
            address,
            f"{total:.8f}",
            "",
            "",
            True,
            True,
            None,
            None,
            False,
        )
    except Exception as exc:
        logger.error("Error making payment: %s", exc)
        if isinstance(exc, WalletRPCError) and "Insufficient funds" in str(exc):
            logger.info("Insufficient funds. Checking wallet balance...")
            wallet_info = rpc.getwalletinfo()
            balance = _to_decimal(wallet_info.get("balance", 0))
            logger.info("Wallet balance: %s BTC", balance)

            # Compared against the invoice amount, not the surcharged total.
            required = _to_decimal(amount_btc)
            if balance < required:
                raise InsufficientFundsError(
                    f"Insufficient funds. Required: {required} BTC, "
                    f"Available: {balance} BTC",
                    code=exc.code,
                    http_status=exc.http_status,
                ) from exc
        raise

    logger.info("Payment sent. Transaction ID: %s", txid)
    return txid


# ---------------------------------------------------------------------------
# Confirmation polling
# ---------------------------------------------------------------------------


class ConfirmationProgress:
    """Single-line text progress bar written to a stream (stderr by default)."""

    def __init__(
        self, total: int = 100, width: int = 40, stream: TextIO | None = None
    ) -> None:
        self.total = total
        self.width = width
        self.stream = stream if stream is not None else sys.stderr
        self.value = 0
        self.closed = False

    def start(self) -> None:
        self.value = 0
        self._render()

    def increment(self, step: int = 1) -> None:
        self.update(self.value + step)

    def update(self, value: int) -> None:
        self.value = max(0, min(self.total, value))
        self._render()

    def stop(self) -> None:
        if not self.closed:
            self.stream.write("\n")
            self.stream.flush()
            self.closed = True

    def _render(self) -> None:
        filled = self.width * self.value // self.total if self.total else self.width
        bar = "#" * filled + "-" * (self.width - filled)
        pct = 100 * self.value // self.total if self.total else 100
        self.stream.write(f"\r{bar} {pct}% | {self.value}/{self.total}")
        self.stream.flush()


def wait_for_payment_confirmation(
    rpc: BitcoinCoreRPC,
    txid: str,
    *,
    interval: float = CONFIRMATION_POLL_SECONDS,
    max_attempts: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
    progress: ConfirmationProgress | None = None,
) -> dict[str, Any]:
    """
    Block until ``txid`` has at least one confirmation.

    Unbounded unless ``max_attempts`` is given. The progress bar advances
    once per poll; it does not reflect actual confirmation depth.
    Returns the final ``gettransaction`` result.
    """
    bar = progress or ConfirmationProgress()
    bar.start()
    attempts = 0
    try:
        while True:
            attempts += 1
            try:
                tx = rpc.gettransaction(txid)
            except Exception as exc:
                logger.error("Error checking payment confirmation: %s", exc)
                raise

            if int(tx.get("confirmations", 0) or 0) > 0:
                bar.update(bar.total)
                logger.info("Payment confirmed!")
                return tx

            if max_attempts is not None and attempts >= max_attempts:
                raise ConfirmationTimeoutError(
                    f"Transaction {txid} still unconfirmed after {attempts} checks"
                )
            sleep(interval)
            bar.increment(10)
    finally:
        bar.stop()
