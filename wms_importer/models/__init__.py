"""Domain models for the spreadsheet -> PostgreSQL import reconciler.

This package contains the dataclasses shared by the mapping, service and
database layers.
"""

from .config_models import (
    Coercion,
    DatabaseConfig,
    FieldSpec,
    ImportConfig,
    LookupSpec,
    TableProfile,
)
from .error_record import ErrorRecord
from .import_result import (
    BatchOutcome,
    BatchState,
    BatchStatsAccumulator,
    ImportResult,
    ImportStatus,
    RowError,
)
from .row_data import RawRow, TargetRecord

__all__ = [
    # Configuration models
    "Coercion",
    "DatabaseConfig",
    "FieldSpec",
    "ImportConfig",
    "LookupSpec",
    "TableProfile",
    # Processing models
    "RawRow",
    "TargetRecord",
    "ErrorRecord",
    # Result models
    "BatchOutcome",
    "BatchState",
    "BatchStatsAccumulator",
    "ImportResult",
    "ImportStatus",
    "RowError",
]
