"""
Billed chart analysis, chat and EA generation.

Each operation gates on the estimated cost, calls the vendor, then settles
the actual cost against the user's balance. A settlement failure never
takes away content the user already received.
"""

import base64
import logging
import mimetypes
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from ..core.correlation import ChartMeta, CorrelativeAnalysis, analyze_correlation
from ..core.guardrails import Feature, InsufficientTokens
from ..core.parser import TEMPLATE_V1, AnalysisTemplate, TemplateMismatch, validate_template
from ..core.pricing import DEFAULT_MODEL, calculate_token_cost
from ..core.token_counter import TokenUsage
from ..storage.repository import Settlement, TokenLedger
from . import prompts
from .openrouter_client import Completion, OpenRouterClient, VendorError

logger = logging.getLogger(__name__)

ANALYSIS_TIMEOUT = 60.0
CHAT_TIMEOUT = 60.0
EA_TIMEOUT = 30.0

ANALYSIS_NOT_AVAILABLE = "Analysis not available."
_UNAVAILABLE_PHRASES = (
    "No clear patterns are visible",
    "No clear reversal or continuation patterns observed",
)

ImageInput = Union[bytes, str, Path]


@dataclass(frozen=True)
class BilledResult:
    content: str
    settlement: Optional[Settlement] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ComprehensiveAnalysis:
    analyses: List[BilledResult]
    correlation: CorrelativeAnalysis


def to_image_url(image: ImageInput) -> str:
    """Turn raw bytes, a file path or a URL into an ``image_url`` value.

    Raises:
        ValueError: If the image is empty
    """
    if isinstance(image, (bytes, bytearray)):
        if not image:
            raise ValueError("Chart image is empty")
        return "data:image/png;base64," + base64.b64encode(bytes(image)).decode("utf-8")

    if isinstance(image, str) and image.startswith(("http://", "https://", "data:image/")):
        return image

    path = Path(image)
    data = path.read_bytes()
    if not data:
        raise ValueError(f"Chart image {path} is empty")
    mime = mimetypes.guess_type(path.name)[0] or "image/png"
    return f"data:{mime};base64," + base64.b64encode(data).decode("utf-8")


class ChartAnalyst:
    """Runs billed vendor operations on behalf of a user."""

    def __init__(
        self,
        client: OpenRouterClient,
        ledger: TokenLedger,
        template: AnalysisTemplate = TEMPLATE_V1,
        estimates: Optional[Dict[Feature, TokenUsage]] = None
    ):
        self.client = client
        self.ledger = ledger
        self.template = template
        self.estimates = dict(estimates or {})

    def _estimate(self, feature: Feature, model: str) -> int:
        return calculate_token_cost(
            model,
            is_analysis=feature != Feature.CHAT,
            table=self.ledger.table,
            estimate=self.estimates.get(feature)
        )

    def _run_billed(
        self,
        user_id: str,
        feature: Feature,
        model: str,
        messages: List[Dict[str, Any]],
        timeout: float,
        cancel_event: Optional[threading.Event],
        metadata: Optional[Dict[str, Any]] = None,
        validate: bool = False
    ) -> BilledResult:
        estimated = self._estimate(feature, model)
        self.ledger.charge_for_operation(user_id, feature, model, estimated).raise_if_insufficient()

        completion = self.client.complete(
            model, messages, timeout=timeout, cancel_event=cancel_event
        )
        content = completion.content

        if validate:
            if any(phrase in content for phrase in _UNAVAILABLE_PHRASES):
                logger.info("%s found no clear patterns, not charging %s", model, user_id)
                return BilledResult(ANALYSIS_NOT_AVAILABLE)
            validate_template(content, self.template)

        settlement = self._settle(user_id, feature, model, completion, estimated, metadata)
        return BilledResult(content, settlement)

    def _settle(
        self,
        user_id: str,
        feature: Feature,
        model: str,
        completion: Completion,
        estimated: int,
        metadata: Optional[Dict[str, Any]]
    ) -> Optional[Settlement]:
        record_metadata = dict(metadata or {})
        if completion.usage is not None:
            record_metadata["totalTokens"] = completion.usage.total_tokens
        if completion.id:
            record_metadata["requestId"] = completion.id
        try:
            settlement = self.ledger.settle_usage(
                user_id, feature, model, completion.usage, estimated, record_metadata
            )
        except Exception:
            logger.exception("Error settling %s usage for %s", feature.value, user_id)
            return None
        logger.info(
            "Charged %s %d tokens for %s on %s, balance %d",
            user_id, settlement.tokens_charged, feature.value, model, settlement.balance_after
        )
        return settlement

    def analyze_image(
        self,
        user_id: str,
        image: ImageInput,
        model: str = DEFAULT_MODEL,
        custom_prompt: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> BilledResult:
        """Analyze one chart image.

        Args:
            user_id: Authenticated user to bill
            image: PNG bytes, an image file path, or an http(s)/data URL
            model: OpenRouter model id
            custom_prompt: Replaces the default analysis system prompt
            cancel_event: Set it to abandon the request

        Returns:
            BilledResult with the analysis text and the settlement. When the
            model reports no clear patterns the content is
            ``"Analysis not available."`` and nothing is charged.

        Raises:
            InsufficientTokens: If the balance does not cover the estimate
            TemplateMismatch: If required sections are missing from the response
            VendorError: If the vendor call failed
        """
        messages = [
            {"role": "system", "content": custom_prompt or prompts.ANALYSIS_SYSTEM},
            {"role": "user", "content": [
                {"type": "text", "text": prompts.ANALYSIS_USER},
                {"type": "image_url", "image_url": {"url": to_image_url(image)}},
            ]},
        ]
        return self._run_billed(
            user_id, Feature.ANALYSIS, model, messages, ANALYSIS_TIMEOUT, cancel_event,
            metadata={"templateVersion": self.template.version},
            validate=True
        )

    def send_chat_message(
        self,
        user_id: str,
        messages: Union[str, Sequence[Dict[str, Any]]],
        model: str = DEFAULT_MODEL,
        chart_analysis: Optional[str] = None,
        analysis_type: str = "Technical",
        cancel_event: Optional[threading.Event] = None
    ) -> BilledResult:
        """Send a chat turn, optionally grounded on a previous analysis.

        A plain string gets the summary-format system prompt; a message
        list gets a short system prompt unless it already carries one.
        """
        if isinstance(messages, str):
            request = [
                {"role": "system", "content": prompts.chat_system_prompt(chart_analysis, analysis_type)},
                {"role": "user", "content": messages},
            ]
        else:
            request = list(messages)
            if not any(m.get("role") == "system" for m in request):
                request.insert(0, {"role": "system", "content": prompts.chat_system_prompt(chart_analysis)})

        return self._run_billed(
            user_id, Feature.CHAT, model, request, CHAT_TIMEOUT, cancel_event,
            metadata={"hasChartAnalysis": bool(chart_analysis), "analysisType": analysis_type}
        )

    def generate_ea(
        self,
        user_id: str,
        description: str,
        model: str = DEFAULT_MODEL,
        history: Sequence[Dict[str, Any]] = (),
        image: Optional[ImageInput] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> BilledResult:
        """Generate Expert Advisor code for a strategy description.

        Cancelling stops further processing; a charge already settled is
        not refunded.
        """
        if not description or not description.strip():
            raise ValueError("description is required")

        user_content: Any = description
        if image is not None:
            user_content = [
                {"type": "text", "text": description},
                {"type": "image_url", "image_url": {"url": to_image_url(image)}},
            ]
        messages = [{"role": "system", "content": prompts.EA_SYSTEM}]
        messages.extend(history)
        messages.append({"role": "user", "content": user_content})

        return self._run_billed(
            user_id, Feature.EA_GENERATOR, model, messages, EA_TIMEOUT, cancel_event,
            metadata={"hasImage": image is not None}
        )

    def analyze_charts(
        self,
        user_id: str,
        images: Sequence[ImageInput],
        model: str = DEFAULT_MODEL,
        charts: Optional[Sequence[ChartMeta]] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> ComprehensiveAnalysis:
        """Analyze several timeframes of one instrument and correlate them.

        Each chart is billed as its own analysis, but the balance must cover
        the estimate of every chart before the first vendor call. A chart
        that fails afterwards is returned with its ``error`` set; charts
        already settled keep their content.

        Raises:
            ValueError: If fewer than two charts are given
            InsufficientTokens: If the balance does not cover all charts
            TemplateMismatch, VendorError: If every chart failed
        """
        if len(images) < 2:
            raise ValueError("Comprehensive analysis needs at least 2 charts")
        if charts is not None and len(charts) != len(images):
            raise ValueError("charts must describe every image")

        estimated = self._estimate(Feature.ANALYSIS, model)
        self.ledger.charge_for_operation(
            user_id, Feature.ANALYSIS, model, estimated * len(images)
        ).raise_if_insufficient()

        results: List[BilledResult] = []
        errors: List[Exception] = []
        for index, image in enumerate(images):
            try:
                results.append(self.analyze_image(user_id, image, model, cancel_event=cancel_event))
            except (InsufficientTokens, TemplateMismatch, VendorError) as e:
                logger.warning("Chart %d of %d failed for %s: %s", index + 1, len(images), user_id, e)
                errors.append(e)
                results.append(BilledResult("", error=str(e)))
        if len(errors) == len(images):
            raise errors[0]

        # Charts without a usable analysis take no part in the correlation
        usable = [i for i, r in enumerate(results) if r.ok and r.content != ANALYSIS_NOT_AVAILABLE]
        correlation = analyze_correlation(
            [results[i].content for i in usable],
            [charts[i] for i in usable] if charts is not None else None
        )
        return ComprehensiveAnalysis(results, correlation)
