"""OAuth 2.0 backend-services authentication for HTTPS destinations."""

import logging
import time
from datetime import datetime, timedelta

import jwt
import requests

from ..errors import TransportError
from ..models import Credentials

logger = logging.getLogger(__name__)


class BackendTokenProvider:
    """Client-credentials flow with a signed JWT assertion (RS384).

    Tokens are cached until a minute before they expire.
    """

    def __init__(self, credentials: Credentials, timeout: int = 30):
        self.client_id = credentials.client_id
        self.token_url = credentials.token_url
        self.timeout = timeout

        self.access_token: str | None = None
        self.token_expires_at: datetime | None = None

        with open(credentials.private_key_path) as f:
            self.private_key = f.read()

    def _build_assertion(self) -> str:
        now = int(time.time())
        claims = {
            "iss": self.client_id,
            "sub": self.client_id,
            "aud": self.token_url,
            "jti": f"{now}-{self.client_id}",
            "exp": now + 300,
        }
        return jwt.encode(claims, self.private_key, algorithm="RS384")

    def get_token(self) -> str:
        """Return a valid access token, requesting a new one if needed.

        Raises:
            TransportError: If the token endpoint cannot be reached or
                refuses the assertion
        """
        if self.access_token and self.token_expires_at:
            if self.token_expires_at > datetime.now():
                return self.access_token

        try:
            response = requests.post(
                self.token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_assertion_type": "urn:ietf:params:oauth:client-assertion-type:jwt-bearer",
                    "client_assertion": self._build_assertion(),
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Token request to {self.token_url} failed: {e}")
            raise TransportError(self.token_url, f"token request failed: {e}") from e

        token_data = response.json()
        self.access_token = token_data["access_token"]
        expires_in = token_data.get("expires_in", 3600)
        self.token_expires_at = datetime.now() + timedelta(seconds=expires_in - 60)
        logger.debug(f"Obtained access token for {self.client_id}, expires in {expires_in}s")
        return self.access_token
