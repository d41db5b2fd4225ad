"""Minimal HL7 v2 reading: segment splitting and ACK parsing."""

import re
from dataclasses import dataclass, field

from .encoding import DEFAULT_DELIMITERS, Delimiters, unescape

_SEGMENT_SPLIT = re.compile(r"\r\n|\r|\n")


def split_segments(message: str) -> list[str]:
    """Split a message into segment strings, ignoring blank lines and MLLP framing."""
    message = message.strip("\x0b\x1c\r\n ")
    return [segment for segment in _SEGMENT_SPLIT.split(message) if segment.strip()]


def segment_ids(message: str) -> list[str]:
    """The three-letter id of each segment, in order."""
    return [segment[:3] for segment in split_segments(message)]


def delimiters_from(message: str) -> Delimiters:
    """Read the delimiters declared in MSH-1 and MSH-2."""
    segments = split_segments(message)
    if not segments or not segments[0].startswith("MSH") or len(segments[0]) < 8:
        return DEFAULT_DELIMITERS
    header = segments[0]
    return Delimiters(
        field=header[3],
        component=header[4],
        repetition=header[5],
        escape=header[6],
        subcomponent=header[7],
    )


def get_field(segment: str, seq: int, d: Delimiters = DEFAULT_DELIMITERS) -> str:
    """Raw value of field ``seq`` of a segment ('' if absent).

    MSH is numbered so that MSH-9 is the message type, as in the standard.
    """
    parts = segment.split(d.field)
    index = seq - 1 if segment.startswith("MSH") else seq
    if segment.startswith("MSH") and seq == 1:
        return d.field
    if 0 <= index < len(parts):
        return parts[index]
    return ""


def find_segments(message: str, segment_id: str) -> list[str]:
    return [s for s in split_segments(message) if s.startswith(segment_id)]


@dataclass
class Acknowledgment:
    """A parsed HL7 ACK."""
    ack_code: str
    control_id: str = ""
    text: str = ""
    errors: list[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.ack_code in ("AA", "CA")


def parse_ack(message: str) -> Acknowledgment | None:
    """Parse MSA (and ERR) from an acknowledgment message.

    Returns:
        The Acknowledgment, or None if the message has no MSA segment
    """
    d = delimiters_from(message)
    msa_segments = find_segments(message, "MSA")
    if not msa_segments:
        return None
    msa = msa_segments[0]
    ack = Acknowledgment(
        ack_code=get_field(msa, 1, d).strip(),
        control_id=get_field(msa, 2, d),
        text=unescape(get_field(msa, 3, d), d),
    )
    for err in find_segments(message, "ERR"):
        # ERR-8 user message, falling back to ERR-3 error code
        detail = get_field(err, 8, d) or get_field(err, 3, d)
        if detail:
            ack.errors.append(unescape(detail.replace(d.component, " "), d).strip())
    if ack.text and ack.ack_code not in ("AA", "CA") and not ack.errors:
        ack.errors.append(ack.text)
    return ack
