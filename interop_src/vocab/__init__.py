"""Code tables and the field mapper."""

from .mapper import FieldMapper
from .tables import CodeTable, CodeTriple, Vocabulary, normalize_token

__all__ = [
    "CodeTable",
    "CodeTriple",
    "FieldMapper",
    "Vocabulary",
    "normalize_token",
]
