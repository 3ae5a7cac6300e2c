"""
Stripe token purchases and referral bonuses.
"""

from .checkout import create_checkout, handle_webhook, verify_session
from .referrals import process_referral

__all__ = ["create_checkout", "handle_webhook", "process_referral", "verify_session"]
