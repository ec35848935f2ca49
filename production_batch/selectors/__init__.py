"""Read-only queries over batches, steps and schedules."""

from production_batch.selectors.analytics import ProductionAnalytics
from production_batch.selectors.batch_selector import BatchSelector

__all__ = ["BatchSelector", "ProductionAnalytics"]
