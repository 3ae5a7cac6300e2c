"""
Multi-timeframe correlation.

Merges the per-chart analyses of one comprehensive request into a single
signal: trend and signal alignment, consolidated key levels, and an
additive confidence score.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .parser import DEFAULT_ACTION, ParsedAnalysis, parse_analysis

logger = logging.getLogger(__name__)

MIXED = "Mixed"
NEUTRAL = "Neutral"
UNKNOWN = "Unknown"

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


@dataclass(frozen=True)
class ChartMeta:
    """Caller-side metadata for one uploaded chart."""
    url: Optional[str] = None
    symbol: Optional[str] = None
    timeframe: Optional[str] = None


@dataclass(frozen=True)
class KeyLevels:
    support: List[str] = field(default_factory=list)
    resistance: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class TradeSignals:
    primary: str
    confirmation: str
    entry_price: Optional[str]
    take_profit: Optional[str]
    confidence: int


@dataclass(frozen=True)
class CorrelativeAnalysis:
    """Combined view across all timeframes of a request."""
    trend_alignment: str
    signal_alignment: bool
    summary: str
    price_movement: str
    key_levels: KeyLevels
    signals: TradeSignals
    recommendation: str


@dataclass(frozen=True)
class AnalysisSection:
    title: str
    points: List[str]

    def render(self) -> str:
        lines = [self.title] + [f"- {point}" for point in self.points if point]
        return "\n".join(lines)


def _neutral_result(message: str, confirmation: str, confidence: int, movement: str) -> CorrelativeAnalysis:
    return CorrelativeAnalysis(
        trend_alignment=NEUTRAL,
        signal_alignment=False,
        summary=message,
        price_movement=movement,
        key_levels=KeyLevels(),
        signals=TradeSignals(
            primary=DEFAULT_ACTION,
            confirmation=confirmation,
            entry_price=None,
            take_profit=None,
            confidence=confidence
        ),
        recommendation=message
    )


def _level_sort_key(indexed_level: Tuple[int, str]):
    # Levels with a number sort by it; the rest follow in first-seen order
    index, level = indexed_level
    match = _NUMBER.search(level)
    if match:
        return (0, float(match.group(0)), index)
    return (1, 0.0, index)


def consolidate_levels(groups: Sequence[Sequence[str]]) -> List[str]:
    """Union level lists, drop duplicates and sort them ascending."""
    unique = []
    for group in groups:
        for level in group:
            level = level.strip()
            if level and level not in unique:
                unique.append(level)
    return [level for _, level in sorted(enumerate(unique), key=_level_sort_key)]


def compute_confidence(
    signal_alignment: bool,
    trend_alignment: str,
    key_levels: KeyLevels
) -> int:
    """Additive rubric out of 100."""
    score = 0
    if signal_alignment:
        score += 30
    if trend_alignment != MIXED:
        score += 30
    if key_levels.support:
        score += 20
    if key_levels.resistance:
        score += 20
    return min(score, 100)


def _chart_label(parsed: ParsedAnalysis, chart: Optional[ChartMeta]) -> Tuple[str, str]:
    symbol = (chart.symbol if chart else None) or parsed.symbol or "Unknown Symbol"
    timeframe = (chart.timeframe if chart else None) or parsed.timeframe or UNKNOWN
    return symbol, timeframe


def analyze_correlation(
    analyses: Sequence[str],
    charts: Optional[Sequence[ChartMeta]] = None
) -> CorrelativeAnalysis:
    """Correlate the analyses of several charts of the same request.

    Args:
        analyses: Raw analysis texts, one per chart, in upload order
        charts: Optional chart metadata aligned with ``analyses``

    Returns:
        CorrelativeAnalysis. Never raises: empty input yields a neutral
        result with confidence 50, an internal failure a neutral result
        with confidence 0.
    """
    if not analyses:
        return _neutral_result(
            "No analysis data available", "No signals available", 50,
            "No price movement data available"
        )

    try:
        charts = list(charts or [])
        parsed = [parse_analysis(text) for text in analyses]

        trends = [p.trend or UNKNOWN for p in parsed]
        signals = [p.signal or UNKNOWN for p in parsed]

        trend_alignment = trends[0] if all(t == trends[0] for t in trends) else MIXED
        signal_alignment = all(s == signals[0] for s in signals)

        key_levels = KeyLevels(
            support=consolidate_levels([p.support for p in parsed]),
            resistance=consolidate_levels([p.resistance for p in parsed]),
        )

        sections = []
        for i, analysis in enumerate(parsed):
            symbol, timeframe = _chart_label(analysis, charts[i] if i < len(charts) else None)
            sections.append(AnalysisSection(f"{symbol} - {timeframe} Analysis", [
                f"Trend: {analysis.trend or 'Unclear'}",
                f"Signal: {analysis.signal or 'Neutral'}",
                f"Support: {', '.join(analysis.support) or 'None'}",
                f"Resistance: {', '.join(analysis.resistance) or 'None'}",
                f"Price Action: {analysis.price_action or 'No clear patterns'}",
            ]))
        sections.append(AnalysisSection("Key Levels", [
            f"Support: {', '.join(key_levels.support) or 'None'}",
            f"Resistance: {', '.join(key_levels.resistance) or 'None'}",
        ]))
        summary = "\n\n".join(section.render() for section in sections)

        price_movement = " - ".join([
            f"Trend alignment: {trend_alignment}",
            f"Signal consensus: {'Strong' if signal_alignment else 'Mixed'}",
            f"Support levels: {', '.join(key_levels.support) or 'None'}",
            f"Resistance levels: {', '.join(key_levels.resistance) or 'None'}",
        ])

        agreed = signal_alignment and trend_alignment != MIXED
        resistance = key_levels.resistance
        return CorrelativeAnalysis(
            trend_alignment=trend_alignment,
            signal_alignment=signal_alignment,
            summary=summary,
            price_movement=price_movement,
            key_levels=key_levels,
            signals=TradeSignals(
                primary=signals[0] if agreed else DEFAULT_ACTION,
                confirmation=(
                    "Strong confirmation across timeframes" if signal_alignment
                    else "Mixed signals across timeframes"
                ),
                entry_price=resistance[0] if resistance else None,
                take_profit=resistance[1] if len(resistance) > 1 else None,
                confidence=compute_confidence(signal_alignment, trend_alignment, key_levels)
            ),
            recommendation=summary
        )
    except Exception:
        logger.exception("Correlation of %d analyses failed", len(analyses))
        return _neutral_result(
            "Error analyzing charts", "Error in analysis", 0, "Error analyzing price movement"
        )
