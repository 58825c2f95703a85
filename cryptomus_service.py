"""
Cryptomus payment gateway integration

Checkout requests and webhook signature verification.
Configuration: API key/merchant/routes resolved via config.py only (STAGE_/PROD_ prefixed).

Signature scheme (both directions):
    sign = md5(base64(json_body_without_sign) + api_key).hexdigest()

The digest is computed over bytes, so the bytes signed must be the bytes sent,
and the bytes verified must be the bytes received. Never re-serialize a webhook:
key order, whitespace and escaping ("\\/") would change the digest.
"""
import base64
import hashlib
import hmac
import json
import logging
import re
import secrets
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

import config
from app.core.exceptions import ProviderError, UpstreamUnavailable
from app.utils.retry import retry_async

logger = logging.getLogger(__name__)

ORDER_ID_BYTES = 12
RESPONSE_PREVIEW_LENGTH = 300

# One top-level "sign": "<hex>" member plus the comma that separates it from its neighbour
_SIGN_MEMBER = re.compile(rb'(,\s*)?"sign"\s*:\s*"[^"\\]*"(\s*,)?')


class CryptomusError(UpstreamUnavailable):
    """Base class for Cryptomus API errors"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class CryptomusDisabled(CryptomusError):
    """Cryptomus API key or merchant id is not configured"""


class CryptomusNetworkError(CryptomusError):
    """Timeout or connection failure talking to Cryptomus"""

    def __init__(self, message: str, request_sent: bool, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.request_sent = request_sent


class CryptomusAPIError(CryptomusError, ProviderError):
    """Cryptomus answered with a non-2xx status or an unusable body"""

    code = "provider_error"

    def __init__(self, message: str, status_code: Optional[int] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.status_code = status_code


def is_enabled() -> bool:
    """Check if Cryptomus is configured"""
    return bool(config.CRYPTOMUS_API_KEY and config.CRYPTOMUS_MERCHANT_ID)


# ====================================================================================
# Signatures
# ====================================================================================

def sign_payload(body: bytes, api_key: Optional[str] = None) -> str:
    """md5(base64(body) + api_key) as lowercase hex."""
    api_key = config.CRYPTOMUS_API_KEY if api_key is None else api_key
    encoded = base64.b64encode(body) + api_key.encode()
    return hashlib.md5(encoded).hexdigest()


def strip_sign_field(raw_body: bytes) -> Optional[bytes]:
    """
    Remove the "sign" member from a raw JSON object body, byte for byte.

    Returns:
        Body without the member, or None if "sign" is absent or appears more than once.
    """
    matches = list(_SIGN_MEMBER.finditer(raw_body))
    if len(matches) != 1:
        return None
    match = matches[0]
    # Neighbours on both sides keep exactly one separator
    replacement = b"," if match.group(1) and match.group(2) else b""
    return raw_body[:match.start()] + replacement + raw_body[match.end():]


def verify_signature(raw_body: bytes, sign: Any, api_key: Optional[str] = None) -> bool:
    """
    Verify a webhook signature against the raw received bytes.

    Args:
        raw_body: Request body exactly as received
        sign: "sign" value from the parsed payload
        api_key: Shared secret (defaults to config)

    Returns:
        True if signature is valid
    """
    api_key = config.CRYPTOMUS_API_KEY if api_key is None else api_key
    if not api_key or not isinstance(sign, str) or not sign:
        return False
    unsigned = strip_sign_field(raw_body)
    if unsigned is None:
        return False
    expected = sign_payload(unsigned, api_key)
    return hmac.compare_digest(expected, sign.lower())


def generate_order_id() -> str:
    return secrets.token_hex(ORDER_ID_BYTES)


# ====================================================================================
# Checkout
# ====================================================================================

def _format_amount(amount: Decimal) -> str:
    return format(Decimal(amount).normalize(), "f")


def _not_sent(exc: BaseException) -> bool:
    return isinstance(exc, CryptomusNetworkError) and not exc.request_sent


async def create_payment(amount: Decimal, currency: str, order_id: str) -> Dict[str, Any]:
    """
    Create a payment via Cryptomus API.

    Args:
        amount: Amount in `currency`
        currency: Currency code
        order_id: Locally generated unique order id

    Returns:
        Full gateway response body ({"state": 0, "result": {"url": ..., "order_id": ...}})

    Raises:
        CryptomusDisabled, CryptomusNetworkError, CryptomusAPIError
    """
    if not is_enabled():
        raise CryptomusDisabled("Cryptomus is not configured")

    payload = {
        "amount": _format_amount(amount),
        "currency": currency,
        "order_id": order_id,
        "url_callback": config.CRYPTOMUS_CALLBACK_ROUTE,
        "url_return": config.CRYPTOMUS_RETURN_ROUTE,
    }
    body = json.dumps(payload, separators=(",", ":")).encode()
    headers = {
        "merchant": config.CRYPTOMUS_MERCHANT_ID,
        "sign": sign_payload(body),
        "Content-Type": "application/json",
    }
    url = f"{config.CRYPTOMUS_API_URL.rstrip('/')}/payment"
    context: Dict[str, Any] = {"operation": "create_payment", "url": url, "order_id": order_id}

    async def _make_request() -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=config.CRYPTOMUS_TIMEOUT) as client:
                return await client.post(url, headers=headers, content=body)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            raise CryptomusNetworkError(
                f"Cryptomus unreachable: {type(e).__name__}", request_sent=False, context=dict(context, error=repr(e))
            ) from e
        except httpx.TransportError as e:
            raise CryptomusNetworkError(
                f"Cryptomus network error: {type(e).__name__}", request_sent=True, context=dict(context, error=repr(e))
            ) from e

    try:
        response = await retry_async(
            _make_request,
            retries=1,
            base_delay=0.5,
            max_delay=3.0,
            retry_on=(CryptomusNetworkError,),
            retry_if=_not_sent,
        )
    except CryptomusNetworkError as e:
        logger.error(f"cryptomus create_payment: NETWORK_ERROR {e.context}")
        raise

    context["status"] = response.status_code
    context["response"] = response.text[:RESPONSE_PREVIEW_LENGTH]
    if not response.is_success:
        logger.error(f"cryptomus create_payment: API_ERROR {context}")
        raise CryptomusAPIError(
            f"Cryptomus returned status {response.status_code}", status_code=response.status_code, context=context
        )

    try:
        data = response.json()
    except ValueError as e:
        logger.error(f"cryptomus create_payment: INVALID_JSON {context}")
        raise CryptomusAPIError("Cryptomus returned non-JSON body", response.status_code, context) from e

    result = data.get("result") if isinstance(data, dict) else None
    if not isinstance(result, dict) or not result.get("url"):
        logger.error(f"cryptomus create_payment: MISSING_RESULT {context}")
        raise CryptomusAPIError("Cryptomus response has no payment url", response.status_code, context)

    logger.info(f"cryptomus create_payment: SUCCESS [order_id={order_id}, status={result.get('payment_status')}]")
    return data
