"""
Analysis response parsing.

Turns the free-text analysis produced by the vision model into structured
fields. The model is prompted with a fixed template (see sdk/prompts.py);
the parser scans line by line and tolerates missing sections.

Extraction never raises on odd input. Whether the response honours the
template at all is checked separately by :func:`validate_template`.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

VALID_ACTIONS = ("BUY", "SELL", "HOLD")
DEFAULT_ACTION = "HOLD"
DEFAULT_CONFIDENCE = 75

_PLACEHOLDERS = {"", "not visible", "undefined", "null", "n/a"}

# Markers that open a new section of the template
_SECTION_MARKERS = (
    "MARKET SUMMARY",
    "TECHNICAL ANALYSIS",
    "TECHNICAL INDICATORS",
    "TRADING SIGNAL",
    "Signal Reasoning:",
    "SIGNAL REASONING",
    "Risk Assessment:",
    "RISK ASSESSMENT",
)

_ACTION_LINE = re.compile(r"\baction\s*:(.*)$", re.IGNORECASE)
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")
_SENTENCE_END = re.compile(r"[.!?]\s*$")
_REASONING_HEADER = re.compile(r"Signal Reasoning:|SIGNAL REASONING")
_INTEGER = re.compile(r"-?\d+")


@dataclass(frozen=True)
class AnalysisTemplate:
    """Versioned contract between the analysis prompt and this parser."""
    version: str
    required_sections: Tuple[str, ...]

    def missing_sections(self, text: str) -> List[str]:
        return [section for section in self.required_sections if section not in (text or "")]


TEMPLATE_V1 = AnalysisTemplate(
    version="1",
    required_sections=("MARKET SUMMARY", "TECHNICAL ANALYSIS", "TRADING SIGNAL"),
)


class TemplateMismatch(ValueError):
    """Raised when a response does not follow the analysis template."""
    def __init__(self, missing_sections: Sequence[str], version: str):
        self.missing_sections = list(missing_sections)
        self.version = version
        super().__init__(
            f"The analysis is missing required sections: {', '.join(self.missing_sections)}. "
            "Please try again with a different model or ensure the chart image is clear."
        )


@dataclass(frozen=True)
class IndicatorReading:
    """Values reported for one indicator (RSI, MACD, ...)."""
    value: Optional[str] = None
    signal: Optional[str] = None
    analysis: Optional[str] = None


@dataclass(frozen=True)
class ParsedAnalysis:
    """Structured view of one analysis response."""
    symbol: Optional[str] = None
    timeframe: Optional[str] = None
    current_price: Optional[str] = None
    trend: Optional[str] = None
    signal: Optional[str] = None
    support: List[str] = field(default_factory=list)
    resistance: List[str] = field(default_factory=list)
    price_action: Optional[str] = None
    rsi: Optional[IndicatorReading] = None
    macd: Optional[IndicatorReading] = None


def validate_template(text: str, template: AnalysisTemplate = TEMPLATE_V1) -> str:
    """Check that ``text`` carries every section the template requires.

    Returns:
        The text unchanged

    Raises:
        TemplateMismatch: If any required section header is missing
    """
    missing = template.missing_sections(text)
    if missing:
        raise TemplateMismatch(missing, template.version)
    return text


def _is_decoration(line: str) -> bool:
    """True for emoji-only lines and separators."""
    return not any(ch.isalnum() for ch in line)


def _is_section_header(line: str) -> bool:
    return any(marker in line for marker in _SECTION_MARKERS)


def _clean_value(value: str) -> str:
    value = re.sub(r"[\[\]]", "", value).strip()
    value = re.sub(r"^[-•]\s*", "", value)
    value = value.replace("*", "").strip()
    value = re.sub(r"^[0-9]+\.\s+", "", value)
    return value.strip()


def _is_placeholder(value: str) -> bool:
    return value.strip().lower() in _PLACEHOLDERS


def _extract_symbol(lines: Iterable[str]) -> Optional[str]:
    for line in lines:
        if "symbol:" in line.lower():
            value = _clean_value(line.split(":", 1)[1])
            if not _is_placeholder(value):
                return value
    return None


def _extract_action(lines: Iterable[str]) -> str:
    for line in lines:
        match = _ACTION_LINE.search(line)
        if not match:
            continue
        word = re.match(r"[A-Za-z]+", _clean_value(match.group(1)))
        action = word.group(0).upper() if word else ""
        return action if action in VALID_ACTIONS else DEFAULT_ACTION
    return DEFAULT_ACTION


def _extract_price_movement(lines: List[str]) -> Optional[str]:
    for i, line in enumerate(lines):
        if "TECHNICAL ANALYSIS" not in line:
            continue
        parts = []
        for follow in lines[i + 1:]:
            if _is_section_header(follow):
                break
            stripped = follow.strip()
            if stripped and not _is_decoration(stripped):
                parts.append(_clean_value(stripped))
        movement = " ".join(part for part in parts if part).strip()
        return movement or None
    return None


def _extract_indicator_block(lines: List[str]) -> Optional[str]:
    for i, line in enumerate(lines):
        if "TECHNICAL INDICATORS" not in line:
            continue
        collected = []
        for follow in lines[i + 1:]:
            if "TRADING SIGNAL" in follow:
                break
            stripped = follow.strip()
            if stripped and not _is_decoration(stripped):
                collected.append(stripped)
        return "\n".join(collected).strip() or None
    return None


def _join_points(points: Iterable[str]) -> Optional[str]:
    cleaned = []
    for point in points:
        point = re.sub(r"^[•-]\s*", "", point.strip()).replace("*", "").strip().rstrip(".")
        if len(point) > 10 and point not in cleaned:
            cleaned.append(point)
    if not cleaned:
        return None
    return ". ".join(cleaned) + "."


def _extract_signal_reasoning(text: str, lines: List[str]) -> Optional[str]:
    for i, line in enumerate(lines):
        if not _REASONING_HEADER.search(line):
            continue

        reasoning = []
        support = extract_value(text, "Support Levels")
        resistance = extract_value(text, "Resistance Levels")
        if support and resistance:
            reasoning.append(
                f"Support levels at {support} and resistance at {resistance} "
                "indicate the current trading range."
            )

        initial = _clean_value(_REASONING_HEADER.split(line, maxsplit=1)[1])
        reasoning.extend(chunk.strip() for chunk in _SENTENCE_BOUNDARY.split(initial) if chunk.strip())

        # Accumulate wrapped lines until a sentence ends
        context = ""
        for follow in lines[i + 1:]:
            if "Success Rate:" in follow or "Confidence Level:" in follow:
                break
            stripped = follow.strip()
            if stripped and not _is_decoration(stripped) and len(stripped) > 10:
                context = f"{context} {stripped}"
                if _SENTENCE_END.search(context):
                    reasoning.append(context.strip())
                    context = ""
        if context.strip():
            reasoning.append(context.strip())

        indicators = _extract_indicator_block(lines)
        if indicators:
            for indicator_line in indicators.splitlines():
                if "Analysis:" in indicator_line:
                    note = _clean_value(indicator_line.split("Analysis:", 1)[1])
                    if len(note) > 10:
                        reasoning.append(note)

        return _join_points(reasoning)
    return None


def _extract_generic(lines: Iterable[str], label: str) -> Optional[str]:
    lowered = label.lower()
    for line in lines:
        stripped = line.strip()
        if not stripped or _is_decoration(stripped):
            continue
        if lowered not in stripped.lower():
            continue
        colon = stripped.find(":")
        if colon == -1:
            continue
        value = _clean_value(stripped[colon + 1:])
        if _is_placeholder(value):
            return None
        return value
    return None


def extract_value(text: Optional[str], label: str) -> Optional[str]:
    """Extract a labeled field from an analysis response.

    Scans line by line for the first line whose lowercase form contains
    the lowercase label, and returns the cleaned text after its first
    colon. Some labels are special-cased:

    - ``Symbol``: first non-placeholder ``Symbol:`` line.
    - ``Action``: always one of BUY/SELL/HOLD, HOLD when absent or invalid.
    - ``Price Movement``: the text under the TECHNICAL ANALYSIS header.
    - ``Technical Indicators``: the lines under TECHNICAL INDICATORS up to
      TRADING SIGNAL.
    - ``Technical Analysis``: the signal reasoning, combined with the
      support/resistance range and indicator ``Analysis:`` notes.

    Args:
        text: Raw response text
        label: Field label, e.g. ``"Current Price"``

    Returns:
        The cleaned value, or None when the field is missing or holds a
        placeholder such as ``Not Visible``
    """
    key = (label or "").strip().lower()
    if not text:
        return DEFAULT_ACTION if key == "action" else None

    lines = text.splitlines()
    if key == "symbol":
        return _extract_symbol(lines)
    if key == "action":
        return _extract_action(lines)
    if key == "technical indicators":
        return _extract_indicator_block(lines)
    if key == "price movement":
        movement = _extract_price_movement(lines)
        if movement is not None:
            return movement
    if key == "technical analysis":
        reasoning = _extract_signal_reasoning(text, lines)
        if reasoning is not None:
            return reasoning
    return _extract_generic(lines, key)


def extract_display_value(text: Optional[str], label: str) -> str:
    """Like :func:`extract_value` but returns ``"N/A"`` for missing fields."""
    value = extract_value(text, label)
    return value if value else "N/A"


def extract_indicator(text: Optional[str], name: str) -> Optional[IndicatorReading]:
    """Read the Current Values / Signal / Analysis lines of one indicator block.

    Falls back to inline labels such as ``RSI Signal: Bullish`` when the
    response has no block for the indicator.
    """
    if not text:
        return None
    lines = text.splitlines()
    wanted = name.upper()

    for i, line in enumerate(lines):
        if wanted not in line.upper() or ":" in line or _is_section_header(line):
            continue
        values = {}
        for follow in lines[i + 1:]:
            stripped = follow.strip()
            if not stripped or _is_decoration(stripped):
                continue
            if _is_section_header(stripped) or ":" not in stripped:
                break
            label, _, raw = stripped.partition(":")
            label = label.replace("*", "").strip(" -•").lower()
            value = _clean_value(raw)
            if _is_placeholder(value):
                continue
            if "value" in label:
                values.setdefault("value", value)
            elif label == "signal":
                values.setdefault("signal", value)
            elif label == "analysis":
                values.setdefault("analysis", value)
        if values:
            return IndicatorReading(**values)

    reading = IndicatorReading(
        value=extract_value(text, f"{name} Current Values") or extract_value(text, f"{name} Values"),
        signal=extract_value(text, f"{name} Signal"),
        analysis=extract_value(text, f"{name} Analysis"),
    )
    if reading.value or reading.signal or reading.analysis:
        return reading
    return None


def _split_levels(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [level.strip() for level in value.split(",") if level.strip()]


def parse_analysis(text: Optional[str]) -> ParsedAnalysis:
    """Compose the field extractors into one structured analysis.

    Never raises: any internal failure is logged and yields an empty
    ParsedAnalysis so callers always have something to render.
    """
    try:
        return ParsedAnalysis(
            symbol=extract_value(text, "Symbol") or extract_value(text, "Currency Pair"),
            timeframe=extract_timeframe(text),
            current_price=extract_value(text, "Current Price"),
            trend=extract_value(text, "Market Structure") or extract_value(text, "Trend"),
            signal=extract_value(text, "Action"),
            support=_split_levels(extract_value(text, "Support Levels")),
            resistance=_split_levels(extract_value(text, "Resistance Levels")),
            price_action=extract_value(text, "Price Movement"),
            rsi=extract_indicator(text, "RSI"),
            macd=extract_indicator(text, "MACD"),
        )
    except Exception:
        logger.exception("Failed to parse analysis response")
        return ParsedAnalysis()


def extract_confidence_level(text: Optional[str]) -> int:
    """Read ``Confidence Level: X%`` clamped to [0, 100]; 75 when absent."""
    for line in (text or "").splitlines():
        if "Confidence Level:" not in line:
            continue
        match = _INTEGER.search(line.split("Confidence Level:", 1)[1])
        if match:
            return min(100, max(0, int(match.group(0))))
    return DEFAULT_CONFIDENCE


def extract_timeframe(text: Optional[str]) -> Optional[str]:
    """Return the raw ``Timeframe:`` value, or None for placeholders."""
    for line in (text or "").splitlines():
        stripped = line.strip()
        if "timeframe:" not in stripped.lower():
            continue
        value = _clean_value(re.split(r"timeframe:", stripped, maxsplit=1, flags=re.IGNORECASE)[1])
        if value and not _is_placeholder(value):
            return value
    return None
