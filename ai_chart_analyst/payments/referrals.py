"""
Referral signups.

New users registering with a referral code earn a signup bonus and credit
their referrer; the referrer earns a second bonus on the new user's first
purchase (see ``checkout``).
"""

import logging
from typing import Any, Dict, Union

from ..storage.repository import (
    REFERRAL_BONUS,
    REFERRAL_SIGNUP_BONUS,
    InvalidReferralCode,
    TokenLedger,
    UserNotFound,
)
from .checkout import Response, _parse_body

logger = logging.getLogger(__name__)


def process_referral(
    http_method: str,
    body: Union[str, bytes, Dict[str, Any], None],
    ledger: TokenLedger
) -> Response:
    """Credit the referral bonuses of a new signup.

    Args:
        http_method: Request method; only POST is accepted
        body: JSON body with ``referralCode``, ``userId`` and optional
            ``userEmail``, ``userName`` and ``authProvider``
        ledger: Ledger to credit

    Returns:
        (status_code, payload); 404 for an unknown code or user
    """
    if http_method.upper() != "POST":
        return 405, {"error": "Method not allowed"}

    try:
        data = _parse_body(body)
    except ValueError:
        return 400, {"success": False, "error": "Invalid request body"}

    referral_code = data.get("referralCode")
    user_id = data.get("userId")
    if not referral_code or not user_id:
        return 400, {
            "success": False,
            "error": "Missing required fields: referralCode and userId are required",
        }

    try:
        credited = ledger.process_referral(
            user_id,
            referral_code,
            email=data.get("userEmail"),
            name=data.get("userName"),
            auth_provider=data.get("authProvider") or "email"
        )
    except (InvalidReferralCode, UserNotFound) as e:
        return 404, {"success": False, "error": str(e)}
    except ValueError as e:
        return 400, {"success": False, "error": str(e)}
    except Exception as e:
        logger.exception("Error processing referral of %s", user_id)
        return 500, {"success": False, "error": "Failed to process referral", "message": str(e)}

    if not credited:
        return 200, {"success": True, "message": "Referral already processed", "alreadyProcessed": True}
    return 200, {
        "success": True,
        "message": "Referral processed successfully",
        "referralTokens": REFERRAL_BONUS,
        "newUserBonus": REFERRAL_SIGNUP_BONUS,
    }
