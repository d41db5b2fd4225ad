"""Per-message-type segment templates.

A template is the ordered list of segment and group rules for one message
type. Assembly walks the template, so segment order always comes from the
template and never from the builder code. The same template compiles to a
pattern that validates the segment sequence of a serialized message.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Union

from ..errors import IncompleteEventError
from ..models import MessageType
from ..context import BuildContext
from . import builders as b
from .encoding import DEFAULT_DELIMITERS, SEGMENT_TERMINATOR, Delimiters
from .segments import Segment

ItemSource = Callable[[Any, Any], list]


@dataclass(frozen=True)
class SegmentRule:
    """One segment position in a template.

    ``source`` yields the items of a repeating segment from
    ``(event, group_item)``.
    """
    segment_id: str
    optional: bool = False
    repeating: bool = False
    source: ItemSource | None = None

    def pattern(self) -> str:
        unit = f"{self.segment_id},"
        if self.repeating:
            return f"(?:{unit})*" if self.optional else f"(?:{unit})+"
        return f"(?:{unit})?" if self.optional else unit


@dataclass(frozen=True)
class GroupRule:
    """A repeating group of segments built once per item of ``source``."""
    name: str
    rules: tuple["Rule", ...]
    source: ItemSource
    optional: bool = False

    def pattern(self) -> str:
        inner = "".join(rule.pattern() for rule in self.rules)
        return f"(?:{inner})*" if self.optional else f"(?:{inner})+"


Rule = Union[SegmentRule, GroupRule]


@dataclass(frozen=True)
class MessageTemplate:
    """Ordered segment rules for one message type."""
    message_type: MessageType
    rules: tuple[Rule, ...]

    @property
    def regex(self) -> re.Pattern:
        return re.compile("".join(rule.pattern() for rule in self.rules))

    def conforms(self, segment_ids: list[str]) -> bool:
        """True if a segment-id sequence matches this template."""
        sequence = "".join(f"{sid}," for sid in segment_ids)
        return self.regex.fullmatch(sequence) is not None

    def describe(self) -> str:
        """Human-readable form, e.g. ``MSH EVN PID PV1 [PV2] {OBX} {DG1}``."""
        return " ".join(_describe(rule) for rule in self.rules)


def _describe(rule: Rule) -> str:
    if isinstance(rule, GroupRule):
        inner = " ".join(_describe(r) for r in rule.rules)
        return f"[{{{inner}}}]" if rule.optional else f"{{{inner}}}"
    if rule.repeating:
        return f"[{{{rule.segment_id}}}]" if rule.optional else f"{{{rule.segment_id}}}"
    return f"[{rule.segment_id}]" if rule.optional else rule.segment_id


def _diagnoses(event: Any, scope: Any) -> list:
    return list(event.diagnoses)


def _immunizations(event: Any, scope: Any) -> list:
    items = list(event.immunizations)
    if not items:
        raise IncompleteEventError("RXA", "immunizations")
    return items


def _vaccine_observations(event: Any, scope: Any) -> list:
    return b.vaccine_observations(event, scope)


def _order_results(event: Any, scope: Any) -> list:
    order_id, results = scope
    return list(results)


_ADT_RULES: tuple[Rule, ...] = (
    SegmentRule("MSH"),
    SegmentRule("EVN"),
    SegmentRule("PID"),
    SegmentRule("PV1"),
    SegmentRule("PV2", optional=True),
    SegmentRule("OBX", optional=True, repeating=True, source=b.adt_observations),
    SegmentRule("DG1", optional=True, repeating=True, source=_diagnoses),
)

TEMPLATES: dict[MessageType, MessageTemplate] = {
    MessageType.ADT_A01: MessageTemplate(MessageType.ADT_A01, _ADT_RULES),
    MessageType.ADT_A03: MessageTemplate(MessageType.ADT_A03, _ADT_RULES),
    MessageType.ADT_A04: MessageTemplate(MessageType.ADT_A04, _ADT_RULES),
    MessageType.VXU_V04: MessageTemplate(MessageType.VXU_V04, (
        SegmentRule("MSH"),
        SegmentRule("PID"),
        SegmentRule("PD1", optional=True),
        SegmentRule("NK1", optional=True),
        GroupRule("ORDER", (
            SegmentRule("ORC"),
            SegmentRule("RXA"),
            SegmentRule("RXR", optional=True),
            SegmentRule("OBX", optional=True, repeating=True,
                        source=_vaccine_observations),
        ), source=_immunizations),
    )),
    MessageType.ORU_R01: MessageTemplate(MessageType.ORU_R01, (
        SegmentRule("MSH"),
        SegmentRule("PID"),
        SegmentRule("PV1", optional=True),
        GroupRule("ORDER_OBSERVATION", (
            SegmentRule("OBR"),
            SegmentRule("OBX", repeating=True, source=_order_results),
        ), source=b.result_orders),
    )),
}


def get_template(message_type: MessageType) -> MessageTemplate:
    try:
        return TEMPLATES[message_type]
    except KeyError:
        raise ValueError(f"No HL7 template for {message_type.value}") from None


def assemble(template: MessageTemplate, event: Any, ctx: BuildContext) -> list[Segment]:
    """Build every segment of a message in template order."""
    segments: list[Segment] = []
    _walk(template.rules, event, None, 0, ctx, segments)
    return segments


def _walk(
    rules: tuple[Rule, ...],
    event: Any,
    scope: Any,
    scope_index: int,
    ctx: BuildContext,
    out: list[Segment],
) -> None:
    for rule in rules:
        if isinstance(rule, GroupRule):
            for index, item in enumerate(rule.source(event, scope)):
                _walk(rule.rules, event, item, index, ctx, out)
            continue

        if rule.repeating:
            items = rule.source(event, scope)
            if not items and not rule.optional:
                raise IncompleteEventError(rule.segment_id, f"{rule.segment_id} items")
            for index, item in enumerate(items):
                _emit(b.build_segment(rule.segment_id, event, ctx, item, index), out)
        else:
            segment = b.build_segment(rule.segment_id, event, ctx, scope, scope_index)
            if segment is None and not rule.optional:
                raise IncompleteEventError(rule.segment_id, rule.segment_id)
            _emit(segment, out)


def _emit(segment: Segment | None, out: list[Segment]) -> None:
    if segment is not None:
        out.append(segment)


def serialize(segments: list[Segment], d: Delimiters = DEFAULT_DELIMITERS) -> str:
    """Join encoded segments with the segment terminator."""
    return SEGMENT_TERMINATOR.join(segment.encode(d) for segment in segments)
