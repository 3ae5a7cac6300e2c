"""
Data models for storage layer.

Records are stored as JSON objects with camelCase keys; each model converts
to and from that stored shape.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def now_ms() -> int:
    """Current time as epoch milliseconds, the timestamp unit of every record."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one billable operation.

    Append-only under ``users/{uid}/tokenUsage/{id}``. Once written, these
    records are never modified.
    """
    id: str
    user_id: str
    tokens_used: int
    feature: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    timestamp: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "userId": self.user_id,
            "tokensUsed": self.tokens_used,
            "feature": self.feature,
            "model": self.model,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "timestamp": self.timestamp,
        }
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, record_id: str, user_id: str, data: Dict[str, Any]) -> "UsageRecord":
        return cls(
            id=record_id,
            user_id=data.get("userId", user_id),
            tokens_used=data.get("tokensUsed", 0),
            feature=data.get("feature", "unknown"),
            model=data.get("model", "unknown"),
            input_tokens=data.get("inputTokens", 0),
            output_tokens=data.get("outputTokens", 0),
            timestamp=data.get("timestamp", 0),
            metadata=data.get("metadata") or {}
        )


@dataclass(frozen=True)
class LastTokenUsage:
    timestamp: int
    amount: int
    feature: str
    model: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "amount": self.amount,
            "feature": self.feature,
            "model": self.model,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["LastTokenUsage"]:
        if not data:
            return None
        return cls(
            timestamp=data.get("timestamp", 0),
            amount=data.get("amount", 0),
            feature=data.get("feature", "unknown"),
            model=data.get("model", "unknown")
        )


@dataclass(frozen=True)
class UserBalance:
    """The billing fields of a user record."""
    tokens: int
    total_tokens_used: int = 0
    last_token_usage: Optional[LastTokenUsage] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserBalance":
        return cls(
            tokens=data.get("tokens") or 0,
            total_tokens_used=data.get("totalTokensUsed") or 0,
            last_token_usage=LastTokenUsage.from_dict(data.get("lastTokenUsage"))
        )


@dataclass(frozen=True)
class ChatSession:
    id: str
    user_id: str
    status: str  # active | waiting | closed
    started_at: int
    last_message_at: int
    ended_at: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "userId": self.user_id,
            "status": self.status,
            "startedAt": self.started_at,
            "lastMessageAt": self.last_message_at,
        }
        if self.ended_at is not None:
            data["endedAt"] = self.ended_at
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, session_id: str, data: Dict[str, Any]) -> "ChatSession":
        return cls(
            id=data.get("id", session_id),
            user_id=data.get("userId", ""),
            status=data.get("status", "closed"),
            started_at=data.get("startedAt", 0),
            last_message_at=data.get("lastMessageAt", 0),
            ended_at=data.get("endedAt"),
            metadata=data.get("metadata") or {}
        )


@dataclass(frozen=True)
class ChatMessage:
    id: str
    text: str
    sender: str  # user | agent | system
    timestamp: int
    user_id: str
    status: str = "sent"  # sent | delivered | read
    read_by: Dict[str, int] = field(default_factory=dict)

    def is_read_by(self, user_id: str) -> bool:
        return user_id in self.read_by

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "sender": self.sender,
            "timestamp": self.timestamp,
            "userId": self.user_id,
            "status": self.status,
            "metadata": {"readBy": dict(self.read_by)},
        }

    @classmethod
    def from_dict(cls, message_id: str, data: Dict[str, Any]) -> "ChatMessage":
        metadata = data.get("metadata") or {}
        return cls(
            id=data.get("id", message_id),
            text=data.get("text", ""),
            sender=data.get("sender", "user"),
            timestamp=data.get("timestamp", 0),
            user_id=data.get("userId", ""),
            status=data.get("status", "sent"),
            read_by=metadata.get("readBy") or {}
        )


@dataclass(frozen=True)
class PurchaseRecord:
    """A token credit, keyed by its checkout session id or bonus key.

    ``kind`` is ``purchase`` for Stripe checkouts, otherwise one of the
    referral bonus kinds.
    """
    session_id: str
    amount: int
    price_id: str
    timestamp: int
    status: str = "completed"
    kind: str = "purchase"
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "amount": self.amount,
            "priceId": self.price_id,
            "timestamp": self.timestamp,
            "status": self.status,
            "sessionId": self.session_id,
            "type": self.kind,
        }
        if self.description:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, session_id: str, data: Dict[str, Any]) -> "PurchaseRecord":
        return cls(
            session_id=data.get("sessionId", session_id),
            amount=data.get("amount", 0),
            price_id=data.get("priceId", ""),
            timestamp=data.get("timestamp", 0),
            status=data.get("status", "completed"),
            kind=data.get("type", "purchase"),
            description=data.get("description", "")
        )


@dataclass(frozen=True)
class AnalysisRecord:
    """A saved analysis with the chart images it was produced from."""
    id: str
    model: str
    analyses: List[str]
    chart_keys: List[str]
    timestamp: int
    type: str = "analysis"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "model": self.model,
            "analyses": list(self.analyses),
            "chartKeys": list(self.chart_keys),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, record_id: str, data: Dict[str, Any]) -> "AnalysisRecord":
        return cls(
            id=data.get("id", record_id),
            model=data.get("model", "unknown"),
            analyses=list(data.get("analyses") or []),
            chart_keys=list(data.get("chartKeys") or []),
            timestamp=data.get("timestamp", 0),
            type=data.get("type", "analysis")
        )
