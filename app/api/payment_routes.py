"""
Payment API

POST /payment/checkout-cryptomus   {amount, currency}   -> gateway response body
POST /payment/cryptomus-callback   gateway notification -> {message}

The callback is public and authenticated by its signature. The body is read as
raw bytes once; the same bytes are parsed and verified.
"""
import json

from aiohttp import web

from app.api.auth import get_identity
from app.api.middleware import get_correlation_id, read_json_object
from app.core.exceptions import AuthError
from app.services.payments import InvalidWebhookPayloadError, checkout, handle_webhook

CALLBACK_PATH = "/payment/cryptomus-callback"
CALLBACK_SUCCESS_MESSAGE = "Callback processed successfully"


async def checkout_handler(request: web.Request) -> web.Response:
    identity = get_identity(request)
    username = identity.get("username")
    if not username:
        raise AuthError("Unauthorized")
    body = await read_json_object(request)

    response = await checkout(
        amount=body.get("amount"),
        currency=body.get("currency"),
        username=username,
        correlation_id=get_correlation_id(request),
    )
    return web.json_response(response)


async def cryptomus_callback_handler(request: web.Request) -> web.Response:
    raw_body = await request.read()
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidWebhookPayloadError() from e
    if not isinstance(payload, dict):
        raise InvalidWebhookPayloadError()

    await handle_webhook(raw_body, payload, correlation_id=get_correlation_id(request))
    return web.json_response({"message": CALLBACK_SUCCESS_MESSAGE})


def register_payment_routes(app: web.Application) -> None:
    app.router.add_post("/payment/checkout-cryptomus", checkout_handler)
    app.router.add_post(CALLBACK_PATH, cryptomus_callback_handler)
