"""Flask application factory for the transmission API."""

from flask import Flask

from ..ledger import RetryPolicy, TransmissionLedger


def create_app(config=None):
    """Create and configure the Flask application.

    Args:
        config: Optional configuration object or dict

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)

    # Load configuration
    if config is None:
        from ..config import Config
        config = Config

    if isinstance(config, dict):
        app.config.update(config)
    else:
        app.config.from_object(config)

    app.ledger = TransmissionLedger(
        db_path=app.config.get("INTEROP_DB_PATH"),
        retry_policy=RetryPolicy.from_config(app.config),
    )

    from .routes import transmissions_bp
    app.register_blueprint(transmissions_bp, url_prefix="/api")

    return app
