"""HTTPS transport: POST the payload, read an HL7 ACK or JSON acknowledgment."""

import logging

import requests

from ..errors import TransportError
from ..hl7.parser import parse_ack
from ..models import Credentials
from .auth import BackendTokenProvider
from .base import Transport, TransportResponse

logger = logging.getLogger(__name__)

HL7_CONTENT_TYPE = "x-application/hl7-v2+er7"
XML_CONTENT_TYPE = "application/xml"

# Client errors that mean "try again later" rather than "message refused"
RETRYABLE_CLIENT_STATUSES = (408, 429)


class HttpsTransport(Transport):
    """Delivers payloads with an HTTP POST.

    Server errors, timeouts and connection failures raise TransportError so
    the ledger schedules a retry. Any other 4xx is the receiver refusing the
    message and maps to an AR acknowledgment.
    """

    def __init__(self, timeout: int = 30, session: requests.Session | None = None):
        """Initialize the transport.

        Args:
            timeout: Request timeout in seconds
            session: requests Session to use (one is created if None)
        """
        self.timeout = timeout
        self.session = session or requests.Session()
        self._token_providers: dict[tuple[str, str], BackendTokenProvider] = {}

    @staticmethod
    def content_type_for(payload: str) -> str:
        if payload.lstrip().startswith("<"):
            return XML_CONTENT_TYPE
        return HL7_CONTENT_TYPE

    def _auth_headers(self, credentials: Credentials | None) -> tuple[dict[str, str], tuple[str, str] | None]:
        """Headers and basic-auth pair for the given credentials."""
        if credentials is None:
            return {}, None
        if credentials.uses_oauth:
            key = (credentials.client_id, credentials.token_url)
            provider = self._token_providers.get(key)
            if provider is None:
                provider = BackendTokenProvider(credentials, timeout=self.timeout)
                self._token_providers[key] = provider
            return {"Authorization": f"Bearer {provider.get_token()}"}, None
        if credentials.api_key:
            return {"X-API-Key": credentials.api_key}, None
        if credentials.username:
            return {}, (credentials.username, credentials.password)
        return {}, None

    def send(
        self,
        payload: str,
        endpoint: str,
        credentials: Credentials | None = None,
    ) -> TransportResponse:
        headers, auth = self._auth_headers(credentials)
        headers["Content-Type"] = f"{self.content_type_for(payload)}; charset=utf-8"

        try:
            response = self.session.post(
                endpoint,
                data=payload.encode("utf-8"),
                headers=headers,
                auth=auth,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"POST to {endpoint} failed: {e}")
            raise TransportError(endpoint, str(e)) from e

        status = response.status_code
        if status >= 500 or status in RETRYABLE_CLIENT_STATUSES:
            logger.error(f"POST to {endpoint} returned HTTP {status}")
            raise TransportError(endpoint, f"HTTP {status}: {response.text[:200]}")

        if status >= 400:
            logger.warning(f"{endpoint} refused message with HTTP {status}")
            return TransportResponse(
                ack_code="AR",
                errors=[f"HTTP {status}: {response.text[:200]}".rstrip(": ")],
                raw=response.text,
            )

        return self.parse_response(response)

    @staticmethod
    def parse_response(response: requests.Response) -> TransportResponse:
        """Interpret a 2xx response body.

        A JSON body carries ``ackCode`` and ``errors``; an HL7 body is read
        from its MSA segment. An empty or unrecognized body is a commit
        accept (CA): the receiver took the message.
        """
        body = response.text or ""
        content_type = response.headers.get("Content-Type", "")

        if "json" in content_type or body.lstrip().startswith("{"):
            try:
                data = response.json()
            except ValueError:
                data = None
            if isinstance(data, dict):
                errors = data.get("errors") or []
                if isinstance(errors, str):
                    errors = [errors]
                return TransportResponse(
                    ack_code=data.get("ackCode") or "CA",
                    errors=[str(e) for e in errors],
                    raw=body,
                )

        ack = parse_ack(body) if "MSA" in body else None
        if ack is not None:
            return TransportResponse(ack_code=ack.ack_code, errors=ack.errors, raw=body)

        return TransportResponse(ack_code="CA", raw=body)
