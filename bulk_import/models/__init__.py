"""Domain models for the bulk product import pipeline.

This package contains the dataclasses and enums shared by every pipeline stage:
upload sessions, analysed source fields, field mappings, validation errors,
recovery state and import progress / results.
"""

from .catalogue import PRODUCT_FIELDS, DataType, ProductRecord, TargetField
from .mapping import FieldMapping, MappingCacheEntry, MappingResult, MappingStrategy, MappingValidationResult
from .processing_result import ExecutionState, ImportProgress, ImportResult, RecordFailure
from .recovery import AppliedFix, FixRequest, FixResult, RecoverySession
from .session import TRANSITIONS, FileFormat, FileMetadata, ParseStrategy, SessionStatus, UploadSession
from .source_field import FieldStatistics, SourceField
from .validation import AutoFix, Severity, ValidationError, ValidationReport

__all__ = [
    # Target schema
    "PRODUCT_FIELDS",
    "DataType",
    "ProductRecord",
    "TargetField",
    # Session
    "FileFormat",
    "FileMetadata",
    "ParseStrategy",
    "SessionStatus",
    "UploadSession",
    "TRANSITIONS",
    # Analysis / mapping
    "FieldStatistics",
    "SourceField",
    "FieldMapping",
    "MappingCacheEntry",
    "MappingResult",
    "MappingStrategy",
    "MappingValidationResult",
    # Validation / recovery
    "AutoFix",
    "Severity",
    "ValidationError",
    "ValidationReport",
    "AppliedFix",
    "FixRequest",
    "FixResult",
    "RecoverySession",
    # Execution
    "ExecutionState",
    "ImportProgress",
    "ImportResult",
    "RecordFailure",
]
