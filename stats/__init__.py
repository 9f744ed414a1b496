"""Durable block history and daily statistics."""

from .store import DailyStatsRecord, StatisticsStore

__all__ = ['DailyStatsRecord', 'StatisticsStore']
