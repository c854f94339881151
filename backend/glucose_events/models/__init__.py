from .enums import AnalysisReason, Classification, EventStatus, Trend
from .glucose import Note, Reading
from .event import AiUsageRecord, AnalysisRecord, Event, EventStats
from .stats import DayStats, GlucoseStats, PeriodComparison, PeriodStats
