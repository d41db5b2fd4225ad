"""Transport interface for delivering composed messages."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ..models import Credentials

ACCEPT_CODES = ("AA", "CA")
REJECT_CODES = ("AR", "AE", "CR", "CE")


@dataclass
class TransportResponse:
    """What the receiver said about a delivered message.

    ``ack_code`` is an HL7 acknowledgment code: AA/CA accept, AE/CE error,
    AR/CR reject.
    """
    ack_code: str
    errors: list[str] = field(default_factory=list)
    raw: str = ""

    @property
    def accepted(self) -> bool:
        return self.ack_code in ACCEPT_CODES

    @property
    def error_detail(self) -> str:
        return "; ".join(self.errors) if self.errors else f"ack code {self.ack_code}"


class Transport(ABC):
    """Delivers a payload to a destination endpoint.

    Implementations raise TransportError when delivery itself fails
    (connection, timeout, server error). A receiver that answers with a
    rejection is a TransportResponse, not an error.
    """

    @abstractmethod
    def send(
        self,
        payload: str,
        endpoint: str,
        credentials: Credentials | None = None,
    ) -> TransportResponse:
        """Send one payload and return the receiver's acknowledgment."""
        pass
