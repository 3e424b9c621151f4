"""服务时区时钟（"今天"按 settings.TZ 计算，存储使用无时区的本地时间）"""

from datetime import date, datetime, time
from zoneinfo import ZoneInfo

from fx_service.config import settings


def now() -> datetime:
    return datetime.now(ZoneInfo(settings.TZ)).replace(tzinfo=None, microsecond=0)


def today() -> date:
    return now().date()


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min)
