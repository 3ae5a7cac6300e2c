"""
Token purchases through Stripe Checkout.

``create_checkout``, ``verify_session`` and ``handle_webhook`` are
transport-agnostic handlers: they take the HTTP method, body and headers a
web framework hands over and return ``(status_code, payload)``. Purchases are
credited once per checkout session whichever of the success redirect and the
webhook arrives first.
"""

import json
import logging
from typing import Any, Dict, Optional, Tuple, Union

from ..config.settings import ConfigurationError, Settings
from ..storage.repository import TokenLedger

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"

Response = Tuple[int, Dict[str, Any]]


def _get_stripe(settings: Settings):
    """Lazy-import the stripe SDK configured with the secret key.

    Raises:
        ConfigurationError: If STRIPE_SECRET_KEY is not set
    """
    secret_key = settings.require_stripe_secret_key()
    import stripe
    stripe.api_key = secret_key
    return stripe


def _parse_body(body: Union[str, bytes, Dict[str, Any], None]) -> Dict[str, Any]:
    if isinstance(body, dict):
        return body
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    data = json.loads(body or "{}")
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _find_or_create_customer(stripe, user_id: str, customer_info: Dict[str, Any]) -> Optional[str]:
    email = customer_info.get("email")
    name = customer_info.get("name") or None
    try:
        customers = stripe.Customer.list(email=email, limit=1)
        if customers["data"]:
            customer_id = customers["data"][0]["id"]
            if name:
                stripe.Customer.modify(customer_id, name=name)
            logger.info("Updated existing customer %s", customer_id)
            return customer_id
        customer = stripe.Customer.create(email=email, name=name, metadata={"userId": user_id})
        logger.info("Created new customer %s", customer["id"])
        return customer["id"]
    except Exception:
        # Checkout still works without a customer record
        logger.exception("Error creating/updating customer for %s", user_id)
        return None


def create_checkout(
    http_method: str,
    body: Union[str, bytes, Dict[str, Any], None],
    settings: Settings
) -> Response:
    """Create a Checkout Session for a token package.

    Args:
        http_method: Request method; only POST is accepted
        body: JSON body with ``priceId``, ``userId`` and optional
            ``customerInfo: {email, name}``
        settings: Environment settings with the allowed price ids

    Returns:
        (status_code, payload); ``{"id": session_id}`` on success
    """
    if http_method.upper() != "POST":
        return 405, {"message": "Method not allowed"}

    try:
        data = _parse_body(body)
    except ValueError:
        return 400, {"message": "Invalid request body"}

    price_id = data.get("priceId")
    user_id = data.get("userId")
    customer_info = data.get("customerInfo") or {}
    if not price_id or not user_id:
        logger.error("Missing parameters: priceId=%s userId=%s", price_id, user_id)
        return 400, {"message": "Missing required parameters"}

    if price_id not in settings.valid_price_ids:
        logger.error("Invalid price ID %s", price_id)
        return 400, {"message": "Invalid price ID"}

    try:
        site_url = settings.require_site_url()
        stripe = _get_stripe(settings)
    except ConfigurationError as e:
        logger.error("Checkout misconfigured: %s", e)
        return 500, {"message": f"Server configuration error: {e.variable} not set"}

    try:
        price = stripe.Price.retrieve(price_id)
        if not price["active"]:
            raise ValueError("Price is not active")
    except Exception:
        logger.exception("Error retrieving price %s from Stripe", price_id)
        return 400, {"message": "Invalid or inactive price ID"}

    customer_id = None
    if customer_info.get("email"):
        customer_id = _find_or_create_customer(stripe, user_id, customer_info)

    session_config: Dict[str, Any] = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": f"{site_url}/profile?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{site_url}/profile",
        "metadata": {
            "userId": user_id,
            "price_id": price_id,
            "customer_name": customer_info.get("name") or "",
            "customer_email": customer_info.get("email") or "",
        },
    }
    if customer_id:
        session_config["customer"] = customer_id
    elif customer_info.get("email"):
        session_config["customer_email"] = customer_info["email"]
        session_config["customer_creation"] = "always"

    try:
        session = stripe.checkout.Session.create(**session_config)
    except Exception as e:
        logger.exception("Stripe error creating checkout session for %s", user_id)
        return 500, {"message": "Failed to create checkout session", "error": str(e)}

    logger.info("Created checkout session %s for %s", session["id"], user_id)
    return 200, {"id": session["id"]}


def _tokens_for_session(stripe, session: Dict[str, Any], settings: Settings) -> Tuple[int, Optional[str]]:
    """Tokens bought in a completed session, from its line items or metadata."""
    price_tokens = settings.price_tokens
    try:
        tokens = 0
        price_id = None
        line_items = stripe.checkout.Session.list_line_items(session["id"])
        for item in line_items["data"]:
            item_price = (item.get("price") or {}).get("id")
            if item_price in price_tokens:
                price_id = price_id or item_price
                tokens += price_tokens[item_price] * (item.get("quantity") or 1)
            else:
                logger.warning("Unknown price ID in line items: %s", item_price)
        return tokens, price_id
    except Exception:
        logger.exception("Error retrieving line items of %s", session["id"])
        price_id = (session.get("metadata") or {}).get("price_id")
        return price_tokens.get(price_id, 0), price_id


def handle_webhook(
    payload: Union[str, bytes],
    signature: str,
    settings: Settings,
    ledger: TokenLedger
) -> Response:
    """Credit tokens for completed checkouts.

    Each checkout session is credited at most once, so Stripe retries are safe.

    Returns:
        (status_code, payload); 400 for a bad signature, 500 when the
        credit could not be written so that Stripe retries
    """
    try:
        secret = settings.require_webhook_secret()
        stripe = _get_stripe(settings)
    except ConfigurationError as e:
        logger.error("Webhook misconfigured: %s", e)
        return 500, {"message": "Webhook secret not configured"}

    try:
        event = stripe.Webhook.construct_event(payload, signature, secret)
    except Exception as e:
        logger.error("Webhook signature verification failed: %s", e)
        return 400, {"message": f"Webhook signature verification failed: {e}"}

    if event["type"] != CHECKOUT_COMPLETED:
        return 200, {"received": True}

    session = event["data"]["object"]
    if session.get("payment_status") != "paid":
        logger.info("Payment of %s not completed: %s", session["id"], session.get("payment_status"))
        return 200, {"message": "Payment not completed, no action taken"}

    user_id = (session.get("metadata") or {}).get("userId")
    if not user_id:
        logger.error("No user ID in metadata of %s", session["id"])
        return 200, {"message": "No user ID found in session metadata"}

    tokens, price_id = _tokens_for_session(stripe, session, settings)
    if tokens <= 0:
        logger.error("Could not determine token amount for %s", session["id"])
        return 200, {"message": "Could not determine token amount to add"}

    try:
        credited = ledger.credit_tokens(user_id, tokens, session["id"], price_id)
    except Exception:
        logger.exception("Error crediting %d tokens to %s", tokens, user_id)
        return 500, {"message": "Failed to update tokens"}

    if not credited:
        return 200, {"received": True, "duplicate": True}
    _award_referral_bonus(ledger, user_id)
    return 200, {"received": True, "tokensAdded": tokens}


def _award_referral_bonus(ledger: TokenLedger, user_id: str) -> None:
    try:
        if ledger.award_referral_purchase_bonus(user_id):
            logger.info("Awarded referral purchase bonus for %s", user_id)
    except Exception:
        # The purchase itself is already credited
        logger.exception("Error awarding referral purchase bonus for %s", user_id)


def verify_session(
    http_method: str,
    session_id: Optional[str],
    settings: Settings,
    ledger: TokenLedger
) -> Response:
    """Credit the tokens of a paid checkout session from the success redirect.

    Args:
        http_method: Request method; only GET is accepted
        session_id: The ``session_id`` query parameter of the success URL
        settings: Environment settings with the Stripe key and price ids
        ledger: Ledger to credit

    Returns:
        (status_code, payload); on success ``tokensAdded``, ``newTotal`` and
        ``alreadyProcessed``, which is True when the webhook got there first
    """
    if http_method.upper() != "GET":
        return 405, {"success": False, "error": "Method not allowed"}
    if not session_id:
        return 400, {"success": False, "error": "Session ID is required"}

    try:
        stripe = _get_stripe(settings)
    except ConfigurationError as e:
        logger.error("Session verification misconfigured: %s", e)
        return 500, {"success": False, "error": f"Server configuration error: {e.variable} not set"}

    try:
        session = stripe.checkout.Session.retrieve(session_id)
    except Exception as e:
        logger.exception("Error retrieving checkout session %s", session_id)
        return 500, {"success": False, "error": f"Verification error: {e}"}

    if session.get("payment_status") != "paid":
        return 400, {
            "success": False,
            "error": "Payment not completed",
            "status": session.get("payment_status"),
        }

    user_id = (session.get("metadata") or {}).get("userId")
    if not user_id:
        logger.error("No user ID in metadata of %s", session["id"])
        return 400, {"success": False, "error": "No user ID found in session metadata"}

    tokens, price_id = _tokens_for_session(stripe, session, settings)
    if tokens <= 0:
        return 400, {"success": False, "error": f"Invalid price ID: {price_id}"}

    try:
        credited = ledger.credit_tokens(user_id, tokens, session["id"], price_id)
        new_total = ledger.get_balance(user_id).tokens
    except Exception as e:
        logger.exception("Error crediting %d tokens to %s", tokens, user_id)
        return 500, {"success": False, "error": f"Failed to update user data: {e}"}

    if credited:
        _award_referral_bonus(ledger, user_id)
    else:
        logger.info("Session %s already processed for %s", session["id"], user_id)
    return 200, {
        "success": True,
        "tokensAdded": tokens,
        "newTotal": new_total,
        "alreadyProcessed": not credited,
    }
