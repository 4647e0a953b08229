"""
Finance metric helpers for A-share profit statements.

Statement data comes in as {line item: {report date: value}}. Line item names
changed over accounting-standard revisions ("一、营业收入" became
"一、营业总收入", net profit moved from section 四 to section 五), so each
metric is looked up through a priority-ordered list of candidate names.

A-share reports are cumulative within a fiscal year: the Q3 report holds
Jan 1 - Sep 30. Quarter-over-quarter growth therefore compares isolated
quarters (Q3 cumulative minus H1 cumulative), while year-over-year growth
compares cumulative values of the same report one year apart.
"""
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

# Default line item candidates, most preferred first
REVENUE_ITEMS = ["一、营业总收入", "一、营业收入"]
PROFIT_ITEMS = ["四、净利润", "五、净利润", "四、利润总额"]

DEFAULT_CONCEPTS = {
    "revenue": REVENUE_ITEMS,
    "profit": PROFIT_ITEMS,
}

# Month-day of each report -> quarter index
REPORT_MONTH_DAY = {
    "0331": 1,
    "0630": 2,
    "0930": 3,
    "1231": 4,
}

QUARTER_LABELS = {
    1: "一季报",
    2: "中报",
    3: "三季报",
    4: "年报",
}

_DATE_RE = re.compile(r"^(\d{4})[-/]?(\d{2})[-/]?(\d{2})$")


# ============================================================================
# Report Periods
# ============================================================================

@dataclass(frozen=True, order=True)
class ReportPeriod:
    """A report period: fiscal year plus quarter index (4 = annual report)."""
    year: int
    quarter: int

    def __post_init__(self):
        if self.quarter not in QUARTER_LABELS:
            raise ValueError(f"quarter must be 1-4, got {self.quarter}")

    @classmethod
    def from_date(cls, raw: str) -> "ReportPeriod":
        """
        Parse a report date such as "20150930" or "2015-09-30".

        Raises:
            ValueError: Unparseable date, or not a report end date
        """
        m = _DATE_RE.match(str(raw).strip())
        if not m:
            raise ValueError(f"Unrecognized report date: {raw!r}")
        year, month, day = m.groups()
        quarter = REPORT_MONTH_DAY.get(month + day)
        if quarter is None:
            raise ValueError(f"Not a report period end date: {raw!r}")
        return cls(int(year), quarter)

    @property
    def label(self) -> str:
        return f"{self.year}年{QUARTER_LABELS[self.quarter]}"

    def year_ago(self) -> "ReportPeriod":
        return ReportPeriod(self.year - 1, self.quarter)

    def previous(self) -> "ReportPeriod":
        """Immediately preceding report; Q1 steps back to last year's annual."""
        if self.quarter == 1:
            return ReportPeriod(self.year - 1, 4)
        return ReportPeriod(self.year, self.quarter - 1)


def convert_to_version(raw_date: str) -> str:
    """Report date -> period label, e.g. "20151231" -> "2015年年报"."""
    return ReportPeriod.from_date(raw_date).label


# ============================================================================
# Line Item Resolution
# ============================================================================

def normalize_series(values: Mapping[str, float]) -> Dict[ReportPeriod, float]:
    """Re-key a {report date: value} map by ReportPeriod, dropping bad dates."""
    result = {}
    for raw_date, value in values.items():
        if value is None:
            continue
        try:
            period = ReportPeriod.from_date(raw_date)
            result[period] = float(value)
        except (TypeError, ValueError):
            logger.debug(f"Skipping unusable entry {raw_date!r}: {value!r}")
    return result


def resolve_item_series(
    data: Mapping[str, Mapping[str, float]],
    items: List[str],
) -> Dict[ReportPeriod, float]:
    """
    Resolve a metric through its candidate line item names.

    The first candidate present in data with at least one usable period wins.

    Returns:
        {ReportPeriod: value}, empty when no candidate matched
    """
    for item in items:
        values = data.get(item)
        if not values:
            continue
        series = normalize_series(values)
        if series:
            return series
    return {}


# ============================================================================
# Growth Calculations
# ============================================================================

def compute_growth(current: Optional[float], prior: Optional[float]) -> Optional[str]:
    """
    Growth of current over prior as a signed percentage, e.g. "+20.0%".

    Returns None when either value is missing or prior is zero.
    """
    if current is None or prior is None or prior == 0:
        return None
    pct = (current - prior) / abs(prior) * 100
    return f"{pct:+.1f}%"


def compute_year_growth(series: Mapping[ReportPeriod, float], period: ReportPeriod) -> Optional[str]:
    """Growth against the same report one year earlier."""
    return compute_growth(series.get(period), series.get(period.year_ago()))


def isolate_quarter(series: Mapping[ReportPeriod, float], period: ReportPeriod) -> Optional[float]:
    """Value of the quarter alone, undoing the year-to-date accumulation."""
    cumulative = series.get(period)
    if cumulative is None:
        return None
    if period.quarter == 1:
        return cumulative
    earlier = series.get(ReportPeriod(period.year, period.quarter - 1))
    if earlier is None:
        return None
    return cumulative - earlier


def compute_season_growth(series: Mapping[ReportPeriod, float], period: ReportPeriod) -> Optional[str]:
    """Growth of the isolated quarter against the isolated preceding quarter."""
    return compute_growth(
        isolate_quarter(series, period),
        isolate_quarter(series, period.previous()),
    )


def format_amount(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    return f"{value:.0f}"


# ============================================================================
# Record Assembly
# ============================================================================

def _safe(func, *args) -> Optional[str]:
    try:
        return func(*args)
    except (ArithmeticError, TypeError, ValueError) as e:
        logger.debug(f"{func.__name__} failed: {e}")
        return None


def build_finance_record(
    data: Mapping[str, Mapping[str, float]],
    concepts: Optional[Mapping[str, List[str]]] = None,
) -> Dict[str, Dict[str, str]]:
    """
    Build per-period finance metrics for one stock.

    Args:
        data: Profit statement {line item: {report date: value}}
        concepts: Ordered {metric name: candidate line items}; the first
            metric decides which periods are reported

    Returns:
        {period label: {metric: value, metric_yoy_growth: ..., metric_qoq_growth: ...}},
        newest period first. Fields that cannot be computed are left out.
    """
    if concepts is None:
        concepts = DEFAULT_CONCEPTS
    if not concepts:
        return {}

    series_by_metric = {
        metric: resolve_item_series(data, items) for metric, items in concepts.items()
    }
    primary = next(iter(concepts))
    periods = sorted(series_by_metric[primary], reverse=True)

    finance = {}
    for period in periods:
        record = {}
        for metric, series in series_by_metric.items():
            fields = {
                metric: _safe(format_amount, series.get(period)),
                f"{metric}_yoy_growth": _safe(compute_year_growth, series, period),
                f"{metric}_qoq_growth": _safe(compute_season_growth, series, period),
            }
            record.update({k: v for k, v in fields.items() if v is not None})
        finance[period.label] = record
    return finance
