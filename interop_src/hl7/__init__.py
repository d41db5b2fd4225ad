"""HL7 v2.5.1 segment building and message assembly."""

from .encoding import DEFAULT_DELIMITERS, Delimiters, escape, format_date, format_ts
from .messages import TEMPLATES, MessageTemplate, assemble, get_template, serialize
from .parser import Acknowledgment, parse_ack, segment_ids

__all__ = [
    "Acknowledgment",
    "DEFAULT_DELIMITERS",
    "Delimiters",
    "MessageTemplate",
    "TEMPLATES",
    "assemble",
    "escape",
    "format_date",
    "format_ts",
    "get_template",
    "parse_ack",
    "segment_ids",
    "serialize",
]
