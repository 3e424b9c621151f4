"""
数据处理层
把上游原始数据行清洗为按日期升序、单位已规范化的汇率序列，
并由相邻数据点推导涨跌幅。
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from fx_service.layers.calculator import Calculator, get_calculator
from fx_service.models.domain import Currency, DailyRate, HistoricalRate, RateSnapshot

logger = logging.getLogger(__name__)


def _parse_rate(raw: Any) -> Optional[Decimal]:
    """解析上游数值字符串（可能带千分位逗号），非正数视为无效"""
    if raw is None:
        return None
    try:
        value = Decimal(str(raw).replace(",", "").strip())
    except InvalidOperation:
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


class ProcessingLayer:
    """数据处理层：清洗 + 单位规范化 + 涨跌幅推导"""

    def __init__(self, calculator: Optional[Calculator] = None):
        self._calc = calculator or get_calculator()

    def normalize_rows(
        self, rows: List[Dict[str, Any]], currency: Currency
    ) -> List[DailyRate]:
        """
        将上游数据行标准化为 DailyRate 列表

        输入行：{"time": "YYYYMMDD", "value": "1,320.50"}
        无法解析的行被丢弃；同一日期重复时保留最后一条；按日期升序
        """
        if not rows:
            return []

        df = pd.DataFrame(rows)
        for col in ("time", "value"):
            if col not in df.columns:
                df[col] = None

        df["date"] = pd.to_datetime(df["time"].astype(str), format="%Y%m%d", errors="coerce")
        df["rate"] = df["value"].map(_parse_rate)

        valid = df.dropna(subset=["date", "rate"])
        dropped = len(df) - len(valid)
        if dropped:
            logger.warning(f"{currency.code} 上游数据有 {dropped} 行无法解析，已丢弃")

        valid = valid.drop_duplicates(subset=["date"], keep="last")
        valid = valid.sort_values("date").reset_index(drop=True)

        return [
            DailyRate(date=ts.date(), rate=currency.normalize(rate))
            for ts, rate in zip(valid["date"], valid["rate"])
        ]

    def with_changes(self, daily_rates: Sequence[DailyRate]) -> List[HistoricalRate]:
        """为升序日汇率序列补充相对前一日的涨跌幅，首个点为 0"""
        points: List[HistoricalRate] = []
        previous: Optional[Decimal] = None
        for item in daily_rates:
            change = (
                self._calc.change_percent(item.rate, previous)
                if previous is not None
                else Decimal("0")
            )
            points.append(HistoricalRate(date=item.date, rate=item.rate, change=change))
            previous = item.rate
        return points

    def snapshots_to_history(self, snapshots: Sequence[RateSnapshot]) -> List[HistoricalRate]:
        """日内快照转为数据点，按时间升序，涨跌幅取相邻快照"""
        ordered = sorted(snapshots, key=lambda s: s.timestamp)
        points: List[HistoricalRate] = []
        previous: Optional[Decimal] = None
        for snap in ordered:
            change = (
                self._calc.change_percent(snap.rate, previous)
                if previous is not None
                else Decimal("0")
            )
            points.append(
                HistoricalRate(
                    date=snap.timestamp.date(),
                    rate=snap.rate,
                    change=change,
                    timestamp=snap.timestamp,
                )
            )
            previous = snap.rate
        return points


# ── 模块级别单例 ──────────────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
