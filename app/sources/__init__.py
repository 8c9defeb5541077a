"""
Market data resources, each backed by its own FreshnessCache.
"""
from .calendar import CalendarService
from .day_overview import DayOverviewRequest, DayOverviewService
from .instruments import InstrumentsService
from .macro_data import MacroDataService
from .macro_desk import MacroDeskService
from .news import NewsService
from .reddit import RedditService

__all__ = [
    "CalendarService",
    "DayOverviewRequest",
    "DayOverviewService",
    "InstrumentsService",
    "MacroDataService",
    "MacroDeskService",
    "NewsService",
    "RedditService",
]
