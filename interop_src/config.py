"""Configuration for the public health interop service.

Covers the transmission ledger, the delivery worker, and the public health
destinations messages are sent to. Each destination is configured with an
``<PREFIX>_ENDPOINT`` plus optional transport and credential settings.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

from .models import Credentials, Destination

# Find and load .env file
_env_candidates = [
    Path(__file__).parent.parent / ".env",
    Path(__file__).parent.parent / ".env.template",
]

for env_path in _env_candidates:
    if env_path.exists():
        load_dotenv(env_path)
        break


# Destination registry: (env prefix, destination name, accepted message types)
DESTINATION_PREFIXES = [
    ("IIS", "immunization-registry", ("VXU^V04",)),
    ("SYNDROMIC", "syndromic-surveillance", ("ADT^A01", "ADT^A03", "ADT^A04")),
    ("ECR", "ecr-aims", ("eICR",)),
    ("QRDA", "cms-qrda", ("QRDA-I", "QRDA-III")),
    ("ELR", "state-elr", ("ORU^R01",)),
]


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """Interop service configuration."""

    # --- Database ---
    INTEROP_DB_PATH: str = os.getenv(
        "INTEROP_DB_PATH",
        str(Path.home() / ".aegis" / "interop.db"),
    )

    # --- Code tables ---
    # Versioned JSON code table; the packaged table is used when unset
    CODE_TABLE_PATH: str | None = os.getenv("CODE_TABLE_PATH")

    # --- Retry policy ---
    RETRY_DELAY_MINUTES: int = int(os.getenv("RETRY_DELAY_MINUTES", "15"))
    RETRY_MAX_ATTEMPTS: int = int(os.getenv("RETRY_MAX_ATTEMPTS", "5"))
    # Double the delay per attempt instead of a flat delay
    RETRY_EXPONENTIAL: bool = _env_bool("RETRY_EXPONENTIAL")
    RETRY_MAX_DELAY_MINUTES: int = int(os.getenv("RETRY_MAX_DELAY_MINUTES", "240"))

    # --- Worker ---
    WORKER_BATCH_SIZE: int = int(os.getenv("WORKER_BATCH_SIZE", "50"))
    WORKER_MAX_THREADS: int = int(os.getenv("WORKER_MAX_THREADS", "1"))
    POLL_INTERVAL: int = int(os.getenv("POLL_INTERVAL", "60"))  # seconds
    STALE_IN_FLIGHT_MINUTES: int = int(os.getenv("STALE_IN_FLIGHT_MINUTES", "60"))
    TRANSPORT_TIMEOUT_SECONDS: int = int(os.getenv("TRANSPORT_TIMEOUT_SECONDS", "30"))

    # --- Sender identity ---
    SENDING_APPLICATION: str = os.getenv("SENDING_APPLICATION", "AEGIS")
    FACILITY_ID: str = os.getenv("FACILITY_ID", "")
    FACILITY_NAME: str = os.getenv("FACILITY_NAME", "")

    # --- DIRECT (HISP) ---
    HISP_SMTP_SERVER: str | None = os.getenv("HISP_SMTP_SERVER")
    HISP_SMTP_PORT: int = int(os.getenv("HISP_SMTP_PORT", "587"))
    HISP_SMTP_USERNAME: str | None = os.getenv("HISP_SMTP_USERNAME")
    HISP_SMTP_PASSWORD: str | None = os.getenv("HISP_SMTP_PASSWORD")
    HISP_USE_TLS: bool = _env_bool("HISP_USE_TLS", "true")
    SENDER_DIRECT_ADDRESS: str | None = os.getenv("SENDER_DIRECT_ADDRESS")

    # --- API ---
    API_KEY: str | None = os.getenv("API_KEY")

    @classmethod
    def get_destination(cls, prefix: str) -> Destination | None:
        """Build one destination from its ``<PREFIX>_*`` settings.

        Returns:
            Destination, or None if no endpoint is configured
        """
        for env_prefix, name, message_types in DESTINATION_PREFIXES:
            if env_prefix == prefix:
                break
        else:
            raise ValueError(f"Unknown destination prefix: {prefix}")

        endpoint = os.getenv(f"{prefix}_ENDPOINT")
        if not endpoint:
            return None

        credentials = Credentials(
            username=os.getenv(f"{prefix}_USERNAME", ""),
            password=os.getenv(f"{prefix}_PASSWORD", ""),
            api_key=os.getenv(f"{prefix}_API_KEY", ""),
            client_id=os.getenv(f"{prefix}_CLIENT_ID", ""),
            private_key_path=os.getenv(f"{prefix}_PRIVATE_KEY_PATH", ""),
            token_url=os.getenv(f"{prefix}_TOKEN_URL", ""),
        )
        return Destination(
            name=name,
            endpoint=endpoint,
            transport=os.getenv(f"{prefix}_TRANSPORT", "https").lower(),
            receiving_application=os.getenv(f"{prefix}_RECEIVING_APPLICATION", ""),
            receiving_facility=os.getenv(f"{prefix}_RECEIVING_FACILITY", ""),
            processing_id=os.getenv(f"{prefix}_PROCESSING_ID", "P"),
            credentials=credentials,
            message_types=message_types,
        )

    @classmethod
    def get_destinations(cls) -> dict[str, Destination]:
        """All configured destinations, keyed by name."""
        destinations = {}
        for prefix, name, _ in DESTINATION_PREFIXES:
            destination = cls.get_destination(prefix)
            if destination:
                destinations[name] = destination
        return destinations

    @classmethod
    def is_direct_configured(cls) -> bool:
        """Check if DIRECT delivery through a HISP is configured."""
        return all([
            cls.HISP_SMTP_SERVER,
            cls.HISP_SMTP_USERNAME,
            cls.HISP_SMTP_PASSWORD,
            cls.SENDER_DIRECT_ADDRESS,
        ])

    @classmethod
    def get_direct_config(cls):
        """Get HISP settings for the DIRECT transport."""
        from .transport.direct import DirectConfig
        return DirectConfig(
            hisp_smtp_server=cls.HISP_SMTP_SERVER or "",
            hisp_smtp_port=cls.HISP_SMTP_PORT,
            hisp_smtp_username=cls.HISP_SMTP_USERNAME or "",
            hisp_smtp_password=cls.HISP_SMTP_PASSWORD or "",
            hisp_use_tls=cls.HISP_USE_TLS,
            sender_direct_address=cls.SENDER_DIRECT_ADDRESS or "",
            facility_id=cls.FACILITY_ID,
            facility_name=cls.FACILITY_NAME,
            timeout_seconds=cls.TRANSPORT_TIMEOUT_SECONDS,
        )


# Module-level convenience instance
config = Config()
