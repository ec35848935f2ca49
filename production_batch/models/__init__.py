"""
production_batch.models -- ORM models for production persistence.

Architecture: production_batch/models. Imports from production_kernel.db only.
"""

from production_batch.models.batch import ProductionBatchModel, ProductionStepModel
from production_batch.models.schedule import ProductionScheduleModel

__all__ = [
    "ProductionBatchModel",
    "ProductionScheduleModel",
    "ProductionStepModel",
]
