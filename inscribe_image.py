#!/usr/bin/env python3
"""
Inscribe an image through OrdinalsBot, paying from a Bitcoin Core wallet.

Workflow:
1. Reserve a fresh bech32m address in the wallet (inscription destination)
2. Submit the image as an OrdinalsBot order
3. Poll the order until its invoice (address, amount, link) is available
4. Pay the invoice from the wallet with RBF enabled
5. Wait for the payment to confirm
6. Poll the order until the reveal transaction yields an inscription id
7. Give indexers time to catch up, then fetch the inscription once

Every delay goes through an injectable ``sleep`` so the whole sequence can
be driven without real waiting.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable

from core_wallet import (
    SATS_PER_BTC,
    BitcoinCoreRPC,
    ConfirmationProgress,
    WalletRPCConfig,
    get_new_address,
    make_payment,
    wait_for_payment_confirmation,
)
from ordinals_api import (
    OrderAPIError,
    OrdinalsBotConfig,
    create_order,
    get_inscription,
    get_order,
    log_api_error,
)

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent
IMAGE_PATH = PROJECT_ROOT / "images" / "thefastway.jpg"

POLL_INTERVAL_SECONDS = 10
REVEAL_MAX_ATTEMPTS = 5
REVEAL_REQUEST_TIMEOUT = 30
INDEXER_DELAY_SECONDS = 60

Sleep = Callable[[float], None]


class InscriptionFlowError(RuntimeError):
    """A workflow step gave up before the order reached the expected state."""

    pass


@dataclass
class PaymentDetails:
    address: str
    amount_sats: int
    payment_link: str

    @property
    def amount_btc(self) -> Decimal:
        return Decimal(self.amount_sats) / SATS_PER_BTC


@dataclass
class InscriptionResult:
    address: str
    order_id: str
    payment: PaymentDetails
    txid: str
    inscription_id: str
    inscription: dict[str, Any] = field(default_factory=dict)
    explorer_url: str = ""


def _payment_details(order: dict[str, Any]) -> PaymentDetails | None:
    charge = order.get("charge") or {}
    address = charge.get("address")
    amount = charge.get("amount")
    link = charge.get("hosted_checkout_url")
    try:
        amount_sats = int(amount) if amount is not None else 0
    except (TypeError, ValueError):
        amount_sats = 0
    if address and amount_sats > 0 and link:
        return PaymentDetails(address=address, amount_sats=amount_sats, payment_link=link)
    return None


# ---------------------------------------------------------------------------
# Polling steps
# ---------------------------------------------------------------------------


def wait_for_payment(
    api_cfg: OrdinalsBotConfig,
    order_id: str,
    *,
    interval: float = POLL_INTERVAL_SECONDS,
    max_attempts: int | None = None,
    sleep: Sleep = time.sleep,
) -> PaymentDetails:
    """
    Poll an order until its charge carries address, amount and payment link.

    Unbounded unless ``max_attempts`` is given. API errors are not retried.
    """
    attempts = 0
    while True:
        attempts += 1
        try:
            order = get_order(api_cfg, order_id)
        except OrderAPIError as exc:
            log_api_error("Error checking payment status", exc)
            raise

        details = _payment_details(order)
        if details is not None:
            return details

        if max_attempts is not None and attempts >= max_attempts:
            raise InscriptionFlowError(
                f"No payment details for order {order_id} after {attempts} attempts"
            )
        sleep(interval)


def wait_for_reveal_transaction(
    api_cfg: OrdinalsBotConfig,
    order_id: str,
    *,
    interval: float = POLL_INTERVAL_SECONDS,
    max_attempts: int = REVEAL_MAX_ATTEMPTS,
    sleep: Sleep = time.sleep,
) -> str:
    """
    Poll an order until the reveal transaction has produced an inscription id.

    Empty snapshots and API errors both count as failed attempts.
    """
    attempts = 0
    while attempts < max_attempts:
        try:
            order = get_order(api_cfg, order_id, timeout=REVEAL_REQUEST_TIMEOUT)
        except OrderAPIError as exc:
            log_api_error("Error checking reveal transaction", exc)
            attempts += 1
            logger.info("Retrying... (Attempt %d/%d)", attempts, max_attempts)
        else:
            inscription_id = order.get("inscriptionId")
            if inscription_id:
                logger.info("Inscription ID: %s", inscription_id)
                return inscription_id
            attempts += 1
            logger.info(
                "Waiting for reveal transaction... (Order state: %s)", order.get("state")
            )

        if attempts < max_attempts:
            sleep(interval)

    raise InscriptionFlowError("Failed to obtain inscription ID after multiple attempts")


def query_inscription(
    api_cfg: OrdinalsBotConfig,
    inscription_id: str,
    *,
    delay: float = INDEXER_DELAY_SECONDS,
    sleep: Sleep = time.sleep,
) -> dict[str, Any]:
    logger.info("Waiting for the inscription to be indexed...")
    sleep(delay)
    try:
        details = get_inscription(api_cfg, inscription_id)
    except OrderAPIError as exc:
        log_api_error("Error querying inscription", exc)
        raise

    logger.info("Inscription details: %s", json.dumps(details, indent=2))
    logger.info("You can view the inscription at: %s", api_cfg.explorer_url(inscription_id))
    return details


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


def inscribe_image(
    rpc: BitcoinCoreRPC,
    api_cfg: OrdinalsBotConfig,
    address: str,
    image_path: Path | str,
    *,
    sleep: Sleep = time.sleep,
    progress: ConfirmationProgress | None = None,
) -> InscriptionResult:
    try:
        order = create_order(api_cfg, image_path, address)
        order_id = order["id"]

        payment = wait_for_payment(api_cfg, order_id, sleep=sleep)
        logger.info("Payment Address: %s", payment.address)
        logger.info("Amount: %.8f BTC", payment.amount_btc)
        logger.info("Payment Link: %s", payment.payment_link)

        txid = make_payment(rpc, payment.address, payment.amount_btc)
        wait_for_payment_confirmation(rpc, txid, sleep=sleep, progress=progress)

        inscription_id = wait_for_reveal_transaction(api_cfg, order_id, sleep=sleep)
        logger.info("Inscription ID: %s", inscription_id)

        details = query_inscription(api_cfg, inscription_id, sleep=sleep)
    except Exception as exc:
        log_api_error("Error inscribing image", exc)
        raise

    return InscriptionResult(
        address=address,
        order_id=order_id,
        payment=payment,
        txid=txid,
        inscription_id=inscription_id,
        inscription=details,
        explorer_url=api_cfg.explorer_url(inscription_id),
    )


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        wallet_cfg = WalletRPCConfig.from_env()
        api_cfg = OrdinalsBotConfig.from_env()
        rpc = BitcoinCoreRPC(wallet_cfg)

        address = get_new_address(rpc)

        logger.info("Starting inscription process for image: %s", IMAGE_PATH)
        inscribe_image(rpc, api_cfg, address, IMAGE_PATH)

        logger.info("Image inscribed successfully")
    except Exception as exc:  # noqa: BLE001
        logger.exception("An error occurred: %s", exc)


if __name__ == "__main__":
    main()
