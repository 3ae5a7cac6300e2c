"""
Repository pattern for data access.

The token ledger: balance checks, settlement of actual usage, the
append-only usage log under ``users/{uid}/tokenUsage``, purchase credits and
referral bonuses.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core.guardrails import Feature, PreflightResult, check_token_balance
from ..core.pricing import PRICING_TABLE, PricingTable, calculate_token_cost, calculate_usage_cost
from ..core.token_counter import TokenUsage
from .db import RealtimeDatabase, get_database, join_path
from .models import LastTokenUsage, PurchaseRecord, UsageRecord, UserBalance, now_ms

logger = logging.getLogger(__name__)

REFERRAL_BONUS = 1000
REFERRAL_SIGNUP_BONUS = 100
REFERRAL_PURCHASE_BONUS = 2000


class UserNotFound(Exception):
    """Raised when a user has no balance record."""
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class InvalidReferralCode(Exception):
    def __init__(self, referral_code: str):
        self.referral_code = referral_code
        super().__init__(f"Invalid referral code: No user found with code {referral_code}")


@dataclass(frozen=True)
class Settlement:
    """Outcome of charging the actual cost of a completed operation."""
    record_id: Optional[str]
    tokens_charged: int
    balance_after: int
    shortfall: int = 0  # part of the charge the balance could not cover


@dataclass(frozen=True)
class UsageSummary:
    total_tokens_used: int
    feature_breakdown: Dict[str, int]
    model_breakdown: Dict[str, int] = field(default_factory=dict)
    last_usage: Optional[LastTokenUsage] = None


def _feature_value(feature) -> str:
    return feature.value if isinstance(feature, Feature) else str(feature)


class TokenLedger:
    """Repository for user balances and token usage.

    This class provides a higher-level interface to the database paths of
    the billing records, making it easier to work with them in a type-safe
    manner.
    """

    def __init__(self, db: RealtimeDatabase, table: Optional[PricingTable] = None, clock=now_ms):
        """Initialize the ledger.

        Args:
            db: Database holding the ``users`` tree
            table: Pricing table used to price actual usage
            clock: Callable returning epoch milliseconds
        """
        self.db = db
        self.table = table or PRICING_TABLE
        self.clock = clock

    @staticmethod
    def user_path(user_id: str, *parts: str) -> str:
        if not user_id:
            raise ValueError("user_id is required")
        return join_path("users", user_id, *parts)

    def get_balance(self, user_id: str) -> UserBalance:
        """Read the billing fields of a user.

        Raises:
            UserNotFound: If the user has no ``tokens`` field
        """
        tokens = self.db.get(self.user_path(user_id, "tokens"))
        if tokens is None:
            raise UserNotFound(user_id)
        return UserBalance.from_dict({
            "tokens": tokens,
            "totalTokensUsed": self.db.get(self.user_path(user_id, "totalTokensUsed")),
            "lastTokenUsage": self.db.get(self.user_path(user_id, "lastTokenUsage")),
        })

    def ensure_user(self, user_id: str, initial_tokens: int = 0) -> UserBalance:
        """Create the balance record if missing; existing balances are untouched."""
        if initial_tokens < 0:
            raise ValueError("initial_tokens cannot be negative")
        self.db.transaction(
            self.user_path(user_id, "tokens"),
            lambda current: initial_tokens if current is None else None
        )
        return self.get_balance(user_id)

    def charge_for_operation(
        self,
        user_id: str,
        feature: Feature,
        model: str,
        estimated_cost: Optional[int] = None
    ) -> PreflightResult:
        """Check that the balance covers the estimated cost of an operation.

        Nothing is deducted here; :meth:`settle_usage` charges the actual
        cost once the vendor reports usage.

        Args:
            user_id: Authenticated user id
            feature: Feature about to be used
            model: Model about to be called
            estimated_cost: Override for the estimate from the pricing table

        Returns:
            PreflightResult; call ``raise_if_insufficient()`` to gate on it

        Raises:
            UserNotFound: If the user has no balance record
        """
        if estimated_cost is None:
            estimated_cost = calculate_token_cost(
                model, is_analysis=feature != Feature.CHAT, table=self.table
            )
        balance = self.get_balance(user_id)
        result = check_token_balance(balance.tokens, estimated_cost, feature)
        logger.info(
            "Preflight %s for %s on %s: balance=%d required=%d allowed=%s",
            feature.value, user_id, model, balance.tokens, estimated_cost, result.allowed
        )
        return result

    def _new_record(
        self,
        user_id: str,
        tokens_used: int,
        feature: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        metadata: Optional[Dict[str, Any]]
    ) -> UsageRecord:
        return UsageRecord(
            id=self.db.new_key(),
            user_id=user_id,
            tokens_used=tokens_used,
            feature=feature,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            timestamp=self.clock(),
            metadata=metadata or {}
        )

    @staticmethod
    def _usage_updates(current: Dict[str, Any], record: UsageRecord) -> Dict[str, Any]:
        """Writes appending ``record`` and bumping the totals it counts towards."""
        updates: Dict[str, Any] = {join_path("tokenUsage", record.id): record.to_dict()}
        # Users without a balance record get the log entry only
        if current.get("tokens") is not None:
            updates["totalTokensUsed"] = (current.get("totalTokensUsed") or 0) + record.tokens_used
            updates["lastTokenUsage"] = LastTokenUsage(
                record.timestamp, record.tokens_used, record.feature, record.model
            ).to_dict()
        return updates

    def record_token_usage(
        self,
        user_id: str,
        tokens_used: int,
        feature,
        model: Optional[str] = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[str]:
        """Append a usage record and bump the user's usage totals.

        The record and the totals are written in one transaction. Bookkeeping
        failures are logged and swallowed; they never reach the caller that
        already obtained its result.

        Returns:
            The new record id, or None when nothing was recorded
        """
        if not user_id or tokens_used <= 0:
            return None

        feature = _feature_value(feature)
        model = model or "unknown"
        try:
            record = self._new_record(
                user_id, tokens_used, feature, model, input_tokens, output_tokens, metadata
            )
            self.db.multi_transaction(
                self.user_path(user_id),
                ["tokens", "totalTokensUsed"],
                lambda current: self._usage_updates(current, record)
            )
            logger.info("Recorded %d tokens of %s on %s for %s", tokens_used, feature, model, user_id)
            return record.id
        except Exception:
            logger.exception("Error recording token usage for %s", user_id)
            return None

    def settle_usage(
        self,
        user_id: str,
        feature: Feature,
        model: str,
        usage: Optional[TokenUsage],
        estimated_cost: int,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Settlement:
        """Charge the actual cost of a completed operation.

        The cost is recomputed from the vendor-reported usage, or the
        estimate when no usage was reported. The deduction and the usage
        record are written in one transaction; the balance is floored at
        zero and any uncovered remainder is returned as ``shortfall`` and
        noted on the usage record.

        Raises:
            UserNotFound: If the user has no balance record
        """
        cost = calculate_usage_cost(model, usage, self.table) if usage is not None else estimated_cost
        feature_name = _feature_value(feature)
        outcome: Dict[str, Any] = {}

        def deduct(current):
            balance = current["tokens"]
            if balance is None:
                raise UserNotFound(user_id)
            shortfall = max(cost - balance, 0)
            updates: Dict[str, Any] = {}
            record_id = None
            if cost > 0:
                record_metadata = dict(metadata or {})
                record_metadata["estimatedCost"] = estimated_cost
                if shortfall:
                    record_metadata["uncoveredTokens"] = shortfall
                record = self._new_record(
                    user_id, cost, feature_name, model,
                    usage.input_tokens if usage else 0,
                    usage.output_tokens if usage else 0,
                    record_metadata
                )
                updates.update(self._usage_updates(current, record))
                record_id = record.id
            updates["tokens"] = max(balance - cost, 0)
            outcome.update(shortfall=shortfall, record_id=record_id, balance=updates["tokens"])
            return updates

        self.db.multi_transaction(self.user_path(user_id), ["tokens", "totalTokensUsed"], deduct)
        shortfall = outcome["shortfall"]
        if shortfall:
            logger.warning(
                "Balance of %s covered %d of %d tokens for %s", user_id, cost - shortfall, cost, model
            )
        logger.info("Settled %d tokens of %s on %s for %s", cost, feature_name, model, user_id)
        return Settlement(
            record_id=outcome["record_id"],
            tokens_charged=cost,
            balance_after=outcome["balance"],
            shortfall=shortfall
        )

    def credit_tokens(
        self,
        user_id: str,
        amount: int,
        purchase_id: str,
        price_id: Optional[str] = None,
        kind: str = "purchase",
        description: str = ""
    ) -> bool:
        """Credit tokens once per purchase id.

        The ``purchaseHistory`` entry and the balance are written in one
        transaction, so a failed credit leaves the purchase unclaimed and
        safe to retry.

        Returns:
            True if credited, False if this purchase was already credited
        """
        if amount <= 0:
            raise ValueError("amount must be > 0")
        if not purchase_id:
            raise ValueError("purchase_id is required")

        purchase = PurchaseRecord(
            session_id=purchase_id,
            amount=amount,
            price_id=price_id or "",
            timestamp=self.clock(),
            kind=kind,
            description=description
        )
        purchase_key = join_path("purchaseHistory", purchase_id)

        def claim(current):
            if current[purchase_key] is not None:
                return None
            return {purchase_key: purchase.to_dict(), "tokens": (current["tokens"] or 0) + amount}

        result = self.db.multi_transaction(self.user_path(user_id), [purchase_key, "tokens"], claim)
        if not result.committed:
            logger.info("Purchase %s already credited to %s", purchase_id, user_id)
            return False
        logger.info("Credited %d tokens to %s, balance %d", amount, user_id, result.value["tokens"])
        return True

    def find_user_by_referral_code(self, referral_code: str) -> Optional[str]:
        """Id of the user owning ``referral_code``, or None."""
        if not referral_code:
            return None
        matches = self.db.query("users", order_by_child="referralCode", equal_to=referral_code)
        return matches[0][0] if matches else None

    def process_referral(
        self,
        user_id: str,
        referral_code: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        auth_provider: str = "email"
    ) -> bool:
        """Credit the signup bonuses of a referred user and their referrer.

        The referrer gets ``REFERRAL_BONUS`` tokens and a ``referrals`` entry,
        the new user ``REFERRAL_SIGNUP_BONUS`` tokens; both credits and the
        ``referredBy`` link are written in one transaction. A user is only
        ever referred once.

        Returns:
            True if the bonuses were credited, False if already referred

        Raises:
            InvalidReferralCode: If no user owns the code
            UserNotFound: If the referred user has no balance record
            ValueError: If a user tries to refer themselves
        """
        referrer_id = self.find_user_by_referral_code(referral_code)
        if referrer_id is None:
            raise InvalidReferralCode(referral_code)
        if referrer_id == user_id:
            raise ValueError("Users cannot use their own referral code")
        self.get_balance(user_id)

        timestamp = self.clock()
        referrer_bonus = PurchaseRecord(
            session_id=f"referral-{user_id}",
            amount=REFERRAL_BONUS,
            price_id="",
            timestamp=timestamp,
            kind="referral_bonus",
            description="Referral Bonus: Friend signed up using your referral code"
        )
        signup_bonus = PurchaseRecord(
            session_id=f"referral-signup-{user_id}",
            amount=REFERRAL_SIGNUP_BONUS,
            price_id="",
            timestamp=timestamp,
            kind="referral_signup_bonus",
            description="Signup Bonus: Registered with a referral code"
        )
        referred_by = join_path(user_id, "referredBy")

        def link(current):
            if current[referred_by] is not None:
                return None
            return {
                referred_by: referrer_id,
                join_path(user_id, "tokens"): (current[join_path(user_id, "tokens")] or 0) + REFERRAL_SIGNUP_BONUS,
                join_path(user_id, "purchaseHistory", signup_bonus.session_id): signup_bonus.to_dict(),
                join_path(referrer_id, "tokens"): (current[join_path(referrer_id, "tokens")] or 0) + REFERRAL_BONUS,
                join_path(referrer_id, "referralCount"): (current[join_path(referrer_id, "referralCount")] or 0) + 1,
                join_path(referrer_id, "referrals", user_id): {
                    "email": email,
                    "name": name,
                    "joinedAt": timestamp,
                    "authProvider": auth_provider or "email",
                },
                join_path(referrer_id, "purchaseHistory", referrer_bonus.session_id): referrer_bonus.to_dict(),
            }

        result = self.db.multi_transaction(
            "users",
            [
                referred_by,
                join_path(user_id, "tokens"),
                join_path(referrer_id, "tokens"),
                join_path(referrer_id, "referralCount"),
            ],
            link
        )
        if not result.committed:
            logger.info("%s was already referred, no bonus credited", user_id)
            return False
        logger.info("Referral of %s by %s credited", user_id, referrer_id)
        return True

    def award_referral_purchase_bonus(self, user_id: str) -> bool:
        """Credit the referrer of ``user_id`` once, after the user's first purchase.

        Returns:
            True if credited; False if the user was not referred, the
            referrer is gone, or the bonus was already paid
        """
        referrer_id = self.db.get(self.user_path(user_id, "referredBy"))
        if not referrer_id:
            return False
        try:
            self.get_balance(referrer_id)
        except UserNotFound:
            logger.warning("Referrer %s of %s not found, no bonus credited", referrer_id, user_id)
            return False
        return self.credit_tokens(
            referrer_id,
            REFERRAL_PURCHASE_BONUS,
            f"referral-purchase-{user_id}",
            kind="referral_purchase_bonus",
            description="Referral Bonus: Your referred friend made their first purchase"
        )

    def get_purchase_history(self, user_id: str) -> List[PurchaseRecord]:
        """Purchases of a user, newest first."""
        purchases = self.db.get(self.user_path(user_id, "purchaseHistory")) or {}
        records = [PurchaseRecord.from_dict(key, data) for key, data in purchases.items()]
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    def get_token_usage_history(self, user_id: str, limit: int = 50) -> List[UsageRecord]:
        """Get usage records, newest first.

        Args:
            user_id: User to read
            limit: Maximum number of records to return

        Returns:
            List of usage records ordered by timestamp (newest first)
        """
        if not user_id:
            return []
        usage = self.db.get(self.user_path(user_id, "tokenUsage")) or {}
        records = [UsageRecord.from_dict(key, user_id, data) for key, data in usage.items()]
        records.sort(key=lambda r: (r.timestamp, r.id), reverse=True)
        return records[:limit]

    def get_token_usage_summary(self, user_id: str) -> Optional[UsageSummary]:
        """Aggregate usage per feature and per model.

        Returns:
            UsageSummary, or None for an unknown user
        """
        if not user_id:
            return None
        try:
            balance = self.get_balance(user_id)
        except UserNotFound:
            return None

        feature_breakdown = {feature.value: 0 for feature in Feature}
        model_breakdown: Dict[str, int] = {}
        for record in self.get_token_usage_history(user_id, limit=None):
            if record.tokens_used:
                feature_breakdown[record.feature] = feature_breakdown.get(record.feature, 0) + record.tokens_used
                model_breakdown[record.model] = model_breakdown.get(record.model, 0) + record.tokens_used

        return UsageSummary(
            total_tokens_used=balance.total_tokens_used,
            feature_breakdown=feature_breakdown,
            model_breakdown=model_breakdown,
            last_usage=balance.last_token_usage
        )


# Global ledger instance
_default_ledger: Optional[TokenLedger] = None


def get_ledger() -> TokenLedger:
    """Get a ledger bound to the process-wide database.

    This function provides a singleton instance of the TokenLedger.
    """
    global _default_ledger
    if _default_ledger is None:
        _default_ledger = TokenLedger(get_database())
    return _default_ledger
