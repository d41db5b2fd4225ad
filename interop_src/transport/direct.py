"""DIRECT protocol transport.

DIRECT is secure email between Health Information Service Providers
(HISPs). The payload is attached to a message relayed through our HISP's
SMTP server to the destination's DIRECT address. A successful relay is a
commit accept (CA); the application-level acknowledgment, if any, arrives
later by return message.
"""

import logging
import smtplib
import ssl
import uuid
from dataclasses import dataclass
from datetime import datetime
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from ..errors import TransportError
from ..models import Credentials
from .base import Transport, TransportResponse

logger = logging.getLogger(__name__)


@dataclass
class DirectConfig:
    """HISP connection settings."""

    hisp_smtp_server: str = ""
    hisp_smtp_port: int = 587
    hisp_smtp_username: str = ""
    hisp_smtp_password: str = ""
    hisp_use_tls: bool = True

    sender_direct_address: str = ""  # Our organization's DIRECT address

    # Facility info (for message headers)
    facility_id: str = ""
    facility_name: str = ""

    timeout_seconds: int = 60

    def is_configured(self) -> bool:
        """Check if the HISP relay is configured."""
        return all([
            self.hisp_smtp_server,
            self.hisp_smtp_username,
            self.hisp_smtp_password,
            self.sender_direct_address,
        ])

    def get_missing_config(self) -> list[str]:
        """Get list of missing configuration items."""
        missing = []
        if not self.hisp_smtp_server:
            missing.append("HISP SMTP server")
        if not self.hisp_smtp_username:
            missing.append("HISP SMTP username")
        if not self.hisp_smtp_password:
            missing.append("HISP SMTP password")
        if not self.sender_direct_address:
            missing.append("Sender DIRECT address")
        return missing


class DirectTransport(Transport):
    """Relays payloads to a DIRECT address through the HISP."""

    def __init__(self, config: DirectConfig):
        self.config = config

    def send(
        self,
        payload: str,
        endpoint: str,
        credentials: Credentials | None = None,
    ) -> TransportResponse:
        """Relay one payload to the DIRECT address ``endpoint``.

        Destination credentials, when given, override the HISP login.
        """
        if not self.config.is_configured():
            missing = self.config.get_missing_config()
            raise TransportError(
                endpoint, f"DIRECT not configured: {', '.join(missing)}", retryable=False
            )

        msg = self._create_message(payload, endpoint)
        try:
            with self._get_smtp_connection(credentials) as server:
                server.send_message(msg)
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(f"DIRECT recipient refused: {e}")
            return TransportResponse(ack_code="CR", errors=[f"Recipient refused: {endpoint}"])
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"DIRECT authentication error: {e}")
            raise TransportError(endpoint, f"HISP authentication failed: {e}") from e
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"DIRECT SMTP error: {e}")
            raise TransportError(endpoint, f"SMTP error: {e}") from e

        logger.info(f"DIRECT relay to {endpoint} successful, Message-ID: {msg['Message-ID']}")
        return TransportResponse(ack_code="CA", raw=msg["Message-ID"])

    def _get_smtp_connection(self, credentials: Credentials | None = None) -> smtplib.SMTP:
        """Get an SMTP connection to the HISP server."""
        server = smtplib.SMTP(
            self.config.hisp_smtp_server,
            self.config.hisp_smtp_port,
            timeout=self.config.timeout_seconds,
        )

        if self.config.hisp_use_tls:
            context = ssl.create_default_context()
            server.starttls(context=context)

        if credentials and credentials.username:
            server.login(credentials.username, credentials.password)
        else:
            server.login(self.config.hisp_smtp_username, self.config.hisp_smtp_password)

        return server

    def _create_message(self, payload: str, recipient: str) -> MIMEMultipart:
        """Create the MIME message with the payload attached."""
        is_xml = payload.lstrip().startswith("<")

        msg = MIMEMultipart()
        msg["From"] = self.config.sender_direct_address
        msg["To"] = recipient
        msg["Subject"] = (
            f"Public Health Submission - {self.config.facility_name} ({self.config.facility_id})"
        )
        msg["Message-ID"] = f"<{uuid.uuid4()}@{self.config.sender_direct_address.split('@')[-1]}>"

        body = f"""Public Health Data Submission

Facility: {self.config.facility_name}
Facility ID: {self.config.facility_id}
Document: {"CDA" if is_xml else "HL7 v2"}
Submitted: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}
"""
        msg.attach(MIMEText(body, "plain"))

        if is_xml:
            attachment = MIMEBase("application", "xml")
            filename = "document.xml"
        else:
            attachment = MIMEBase("x-application", "hl7-v2+er7")
            filename = "message.hl7"
        attachment.set_payload(payload.encode("utf-8"))
        encoders.encode_base64(attachment)
        attachment.add_header("Content-Disposition", f"attachment; filename={filename}")
        msg.attach(attachment)

        return msg
