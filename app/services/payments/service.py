"""
Payment Service Layer

Crypto checkout and webhook settlement.

Settlement state machine per delivery:
    Received -> SignatureVerified -> OrderLocated -> Settled | Rejected

Idempotency guarantees:
- The payment row is locked (SELECT ... FOR UPDATE) for the whole settlement,
  so concurrent deliveries of one order run one after another.
- The balance is credited only on the transition into a settled status.
  Re-delivery of a settled webhook updates metadata and credits nothing.
- balance_transactions is UNIQUE(source, reference): a second credit for the
  same order is skipped (the status update still commits), e.g. paid -> check -> paid.
- A settled status with a non-positive amount updates metadata only.
"""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import config
import cryptomus_service
import database
from app.core.exceptions import UpstreamUnavailable
from app.core.structured_logger import elapsed_ms, log_event
from app.utils.security import parse_amount, validate_currency
from app.services.payments.exceptions import (
    GatewayError,
    InvalidCheckoutRequestError,
    InvalidWebhookPayloadError,
    MissingSignatureError,
    PaymentServiceError,
    SettlementError,
    SignatureMismatchError,
    UnknownOrderError,
)

logger = logging.getLogger(__name__)

PAYMENT_STATUS_PENDING = "pending"
PAYMENT_TYPE_CRYPTOMUS = "cryptomus"
LEDGER_SOURCE_CRYPTOMUS = "cryptomus"


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass
class SettlementResult:
    """Result of a processed webhook delivery"""
    order_id: str
    status: str
    previous_status: Optional[str]
    credited: bool
    new_balance: Optional[Decimal] = None


def is_settled_status(status: Optional[str]) -> bool:
    return status in config.SETTLED_PAYMENT_STATUSES


# ====================================================================================
# Checkout (Crypto)
# ====================================================================================

async def checkout(
    amount: Any,
    currency: Any,
    username: str,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create a gateway payment and record it as pending.

    Returns:
        Gateway response body (payment url under result.url)

    Raises:
        InvalidCheckoutRequestError: invalid amount or currency
        GatewayError: gateway unreachable or refused (no payment row written)
    """
    value, error = parse_amount(amount)
    if error:
        raise InvalidCheckoutRequestError(error)
    is_valid, error = validate_currency(currency)
    if not is_valid:
        raise InvalidCheckoutRequestError(error)

    order_id = cryptomus_service.generate_order_id()
    with elapsed_ms() as elapsed:
        try:
            response = await cryptomus_service.create_payment(value, currency, order_id)
        except UpstreamUnavailable as e:
            log_event(
                logger, component="payments", operation="checkout", outcome="failed",
                reason=e.code, correlation_id=correlation_id, level="error",
                order_id=order_id, duration_ms=elapsed(),
                message=f"checkout failed: {e} context={getattr(e, 'context', {})}",
            )
            raise GatewayError() from e

        result = response["result"]
        try:
            gateway_amount = Decimal(str(result.get("amount", value)))
        except InvalidOperation:
            gateway_amount = value

        try:
            await database.create_payment(
                order_id=order_id,
                username=username,
                amount=gateway_amount,
                status=PAYMENT_STATUS_PENDING,
                payment_type=PAYMENT_TYPE_CRYPTOMUS,
            )
        except Exception:
            # Gateway invoice exists without a local row; its webhook will be rejected as unknown
            logger.error(f"CHECKOUT_PAYMENT_NOT_SAVED [order_id={order_id}, username={username}]")
            raise

        log_event(
            logger, component="payments", operation="checkout", outcome="success",
            correlation_id=correlation_id, order_id=order_id, duration_ms=elapsed(),
        )
    return response


# ====================================================================================
# Webhook Settlement
# ====================================================================================

def _parse_payload(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidWebhookPayloadError() from e
    if not isinstance(payload, dict):
        raise InvalidWebhookPayloadError()
    return payload


def _parse_webhook_amount(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        raise InvalidWebhookPayloadError("Invalid payload: amount")
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise InvalidWebhookPayloadError("Invalid payload: amount") from e
    if not amount.is_finite() or amount < 0:
        raise InvalidWebhookPayloadError("Invalid payload: amount")
    return amount


async def handle_webhook(
    raw_body: bytes,
    payload: Optional[Dict[str, Any]] = None,
    correlation_id: Optional[str] = None,
) -> SettlementResult:
    """
    Verify and settle one gateway notification.

    Args:
        raw_body: Request body exactly as received (the signature covers these bytes)
        payload: Parsed body, parsed from raw_body when omitted

    Returns:
        SettlementResult once the payment update (and credit, if due) is committed

    Raises:
        MissingSignatureError, InvalidWebhookPayloadError: rejected, nothing written
        SignatureMismatchError, UnknownOrderError: final rejections
        SettlementError: storage failure, the gateway must re-deliver
    """
    if payload is None:
        payload = _parse_payload(raw_body)

    sign = payload.get("sign")
    if not sign:
        log_event(
            logger, component="settlement", operation="handle_webhook", outcome="rejected",
            reason="missing_sign", correlation_id=correlation_id, level="warning",
        )
        raise MissingSignatureError()

    if not cryptomus_service.verify_signature(raw_body, sign):
        log_event(
            logger, component="settlement", operation="handle_webhook", outcome="rejected",
            reason="invalid_sign", correlation_id=correlation_id, level="warning",
        )
        raise SignatureMismatchError()

    order_id = payload.get("order_id")
    if not isinstance(order_id, str) or not order_id:
        raise UnknownOrderError()
    status = payload.get("status")
    if not isinstance(status, str) or not status:
        raise InvalidWebhookPayloadError("Invalid payload: status")
    amount = _parse_webhook_amount(payload.get("amount"))
    network = payload.get("network")
    payer_currency = payload.get("payment_currency") or payload.get("payer_currency")

    with elapsed_ms() as elapsed:
        try:
            async with database.transaction() as conn:
                payment = await database.get_payment_for_update(order_id, conn=conn)
                if payment is None:
                    raise UnknownOrderError()
                previous_status = payment["status"]

                await database.update_payment_from_webhook(
                    order_id, status, amount, network, payer_currency, conn=conn
                )

                new_balance = None
                skip_reason = None
                if is_settled_status(status) and not is_settled_status(previous_status):
                    if amount <= 0:
                        skip_reason = "non_positive_amount"
                    else:
                        # None: the ledger already holds this order
                        new_balance = await database.increase_balance(
                            payment["username"],
                            amount,
                            source=LEDGER_SOURCE_CRYPTOMUS,
                            reference=order_id,
                            conn=conn,
                        )
                        if new_balance is None:
                            skip_reason = "already_credited"
                credited = new_balance is not None
        except PaymentServiceError as e:
            log_event(
                logger, component="settlement", operation="handle_webhook", outcome="rejected",
                reason=e.code, correlation_id=correlation_id, level="warning",
                order_id=order_id, duration_ms=elapsed(),
            )
            raise
        except Exception as e:
            log_event(
                logger, component="settlement", operation="handle_webhook", outcome="failed",
                reason=type(e).__name__, correlation_id=correlation_id, level="error",
                order_id=order_id, duration_ms=elapsed(),
                message=f"settlement failed for order_id={order_id}: {e!r}",
            )
            raise SettlementError() from e

        if skip_reason is not None:
            log_event(
                logger, component="settlement", operation="credit_balance", outcome="skipped",
                reason=skip_reason, correlation_id=correlation_id, level="warning",
                order_id=order_id, amount=str(amount),
            )
        log_event(
            logger, component="settlement", operation="handle_webhook", outcome="success",
            reason="credited" if credited else "metadata_only", correlation_id=correlation_id,
            order_id=order_id, duration_ms=elapsed(),
        )
    return SettlementResult(
        order_id=order_id,
        status=status,
        previous_status=previous_status,
        credited=credited,
        new_balance=new_balance,
    )
