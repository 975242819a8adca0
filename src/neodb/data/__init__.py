"""Data operations for NeoDB."""

from neodb.data.computed import ComputedFieldsEngine, ExpressionEvaluator
from neodb.data.crud import CrudService
from neodb.data.validation import ValidationEngine

__all__ = [
    "CrudService",
    "ValidationEngine",
    "ComputedFieldsEngine",
    "ExpressionEvaluator",
]
