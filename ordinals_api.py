"""
OrdinalsBot order API client.

Implements:
- Order API configuration (network, base URL, timeout, flat fee)
- Inline file payload construction (base64 data URL)
- Order creation, order status lookup and inscription lookup

Orders are created against the hosted OrdinalsBot service, which builds the
commit/reveal transactions itself once its invoice has been paid.
"""

from __future__ import annotations

import base64
import json
import logging
import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import requests
from dotenv import load_dotenv

# Load .env from project root
PROJECT_ROOT = Path(__file__).parent
load_dotenv(PROJECT_ROOT / ".env")

logger = logging.getLogger(__name__)

BTCNetwork = Literal["mainnet", "testnet"]

ORDINALSBOT_API_MAINNET = "https://api.ordinalsbot.com"
ORDINALSBOT_API_TESTNET = "https://testnet-api.ordinalsbot.com"
ORDINALSBOT_EXPLORER_MAINNET = "https://ordinalsbot.com"
ORDINALSBOT_EXPLORER_TESTNET = "https://testnet.ordinalsbot.com"

# Minimum flat fee parameter accepted by the order endpoint.
DEFAULT_ORDER_FEE = 150
DEFAULT_CONTENT_TYPE = "image/jpeg"

JSON_HEADERS = {"Accept": "application/json"}


class OrderAPIError(RuntimeError):
    """Non-success or failed request against the order API."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_data: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data


@dataclass
class OrdinalsBotConfig:
    """
    Settings for the OrdinalsBot API.

    Values are sourced from environment variables or a .env file:
    - BTC_NETWORK: "testnet" (default) or "mainnet"; picks the API host.
    - ORDINALSBOT_API_URL: explicit base URL, overrides the network default.
    - ORDINALSBOT_TIMEOUT: per-request timeout in seconds (default 30).
    - ORDINALSBOT_FEE: flat fee parameter sent with new orders (default 150).
    """

    network: BTCNetwork = "testnet"
    base_url: str = ORDINALSBOT_API_TESTNET
    timeout: float = 30.0
    fee: int = DEFAULT_ORDER_FEE

    @classmethod
    def from_env(cls) -> OrdinalsBotConfig:
        raw_network = (os.getenv("BTC_NETWORK") or "testnet").strip().lower()
        if raw_network not in {"mainnet", "testnet"}:
            raise RuntimeError(
                f"Invalid BTC_NETWORK={raw_network!r}. Expected 'mainnet' or 'testnet'."
            )
        network: BTCNetwork = "mainnet" if raw_network == "mainnet" else "testnet"

        base_url = os.getenv("ORDINALSBOT_API_URL") or _api_url(network)

        timeout = 30.0
        timeout_env = os.getenv("ORDINALSBOT_TIMEOUT")
        if timeout_env is not None and timeout_env.strip():
            try:
                timeout = max(1.0, float(timeout_env))
            except ValueError:
                pass

        fee = DEFAULT_ORDER_FEE
        fee_env = os.getenv("ORDINALSBOT_FEE")
        if fee_env is not None and fee_env.strip():
            try:
                fee = max(1, int(fee_env))
            except ValueError:
                pass

        return cls(
            network=network,
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            fee=fee,
        )

    def explorer_url(self, inscription_id: str) -> str:
        if self.network == "mainnet":
            return f"{ORDINALSBOT_EXPLORER_MAINNET}/inscription/{inscription_id}"
        return f"{ORDINALSBOT_EXPLORER_TESTNET}/inscription/{inscription_id}"


def _api_url(network: BTCNetwork) -> str:
    if network == "mainnet":
        return ORDINALSBOT_API_MAINNET
    return ORDINALSBOT_API_TESTNET


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


def _response_data(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


def log_api_error(context: str, exc: Exception) -> None:
    """Log an API failure and, when there is one, the response body."""
    logger.error("%s: %s", context, exc)
    data = getattr(exc, "response_data", None)
    if data is not None:
        logger.error("Response data: %s", json.dumps(data, default=str))


def _api_request(
    cfg: OrdinalsBotConfig,
    method: str,
    path: str,
    timeout: float | None = None,
    **kwargs: Any,
) -> Any:
    """Send a request to the order API and return the decoded JSON body."""
    url = f"{cfg.base_url}{path}"
    try:
        resp = requests.request(
            method,
            url,
            headers=JSON_HEADERS,
            timeout=timeout if timeout is not None else cfg.timeout,
            **kwargs,
        )
    except requests.RequestException as exc:
        raise OrderAPIError(f"{method} {path} failed: {exc}") from exc

    if not resp.ok:
        data = _response_data(resp)
        raise OrderAPIError(
            f"{method} {path} failed: HTTP {resp.status_code}",
            status_code=resp.status_code,
            response_data=data,
        )
    try:
        return resp.json()
    except ValueError as exc:
        raise OrderAPIError(
            f"{method} {path} returned a non-JSON body",
            status_code=resp.status_code,
            response_data=resp.text,
        ) from exc


# ---------------------------------------------------------------------------
# Order submission
# ---------------------------------------------------------------------------


def build_file_entry(image_path: Path | str) -> dict[str, Any]:
    """
    Read an image and describe it the way the order endpoint expects.

    The content type is guessed from the file extension and falls back to
    image/jpeg. Read errors propagate unchanged.
    """
    path = Path(image_path)
    data = path.read_bytes()
    content_type = mimetypes.guess_type(path.name)[0] or DEFAULT_CONTENT_TYPE
    encoded = base64.b64encode(data).decode("ascii")
    return {
        "name": path.name,
        "size": len(data),
        "type": content_type,
        "dataURL": f"data:{content_type};base64,{encoded}",
    }


def create_order(
    cfg: OrdinalsBotConfig,
    image_path: Path | str,
    receive_address: str,
    fee: int | None = None,
) -> dict[str, Any]:
    """Submit an inscription order for one image; returns the API response."""
    entry = build_file_entry(image_path)
    logger.info("Inscribe Image - Path: %s, Size: %d bytes", image_path, entry["size"])

    body = {
        "files": [entry],
        "receiveAddress": receive_address,
        "fee": fee if fee is not None else cfg.fee,
    }
    try:
        data = _api_request(cfg, "POST", "/order", json=body)
    except OrderAPIError as exc:
        log_api_error("Error creating order", exc)
        raise

    logger.info("Inscription response: %s", json.dumps(data, indent=2))
    if not isinstance(data, dict) or not data.get("id"):
        raise OrderAPIError("Order response did not include an order id", response_data=data)
    return data


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def get_order(
    cfg: OrdinalsBotConfig, order_id: str, timeout: float | None = None
) -> dict[str, Any]:
    """Fetch the current snapshot of an order."""
    data = _api_request(cfg, "GET", "/order", timeout=timeout, params={"id": order_id})
    return data if isinstance(data, dict) else {}


def get_inscription(cfg: OrdinalsBotConfig, inscription_id: str) -> dict[str, Any]:
    """Fetch inscription details by inscription id."""
    return _api_request(cfg, "GET", f"/inscription/{inscription_id}")
