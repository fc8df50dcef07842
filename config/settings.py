import os
import tempfile


class Settings:
    """Configuration settings for custodian integration and reconciliation."""

    # MongoDB Configuration
    MONGO_URI = os.getenv("MONGO_URI", "mongodb://host.docker.internal:27017")
    DB_NAME = os.getenv("MONGO_DB_NAME", "custodian_integration")
    CONNECTIONS_COLLECTION = os.getenv("CONNECTIONS_COLLECTION", "custodian_connections")
    PROCESSED_FEEDS_COLLECTION = os.getenv("PROCESSED_FEEDS_COLLECTION", "custodian_processed_feeds")
    RECONCILIATION_COLLECTION = os.getenv("RECONCILIATION_COLLECTION", "reconciliation_results")
    ALERTS_COLLECTION = os.getenv("ALERTS_COLLECTION", "custodian_alerts")
    ORDER_SUBMISSIONS_COLLECTION = os.getenv("ORDER_SUBMISSIONS_COLLECTION", "custodian_order_submissions")
    DOCUMENT_RETRIEVALS_COLLECTION = os.getenv("DOCUMENT_RETRIEVALS_COLLECTION", "custodian_document_retrievals")

    # Portfolio-side (internal) records
    PORTFOLIO_POSITIONS_COLLECTION = os.getenv("PORTFOLIO_POSITIONS_COLLECTION", "portfolio_positions")
    PORTFOLIO_TRANSACTIONS_COLLECTION = os.getenv("PORTFOLIO_TRANSACTIONS_COLLECTION", "portfolio_transactions")
    PORTFOLIO_CASH_COLLECTION = os.getenv("PORTFOLIO_CASH_COLLECTION", "portfolio_cash_balances")

    # File transfer
    LOCAL_DOWNLOAD_DIR = os.getenv("LOCAL_DOWNLOAD_DIR", tempfile.gettempdir())
    SFTP_READY_TIMEOUT = int(os.getenv("SFTP_READY_TIMEOUT", "30"))
    SFTP_TEST_TIMEOUT = int(os.getenv("SFTP_TEST_TIMEOUT", "15"))
    MAX_FILES_PER_FEED = int(os.getenv("MAX_FILES_PER_FEED", "5"))

    # REST
    REST_PAGE_SIZE = int(os.getenv("REST_PAGE_SIZE", "1000"))
    REST_PAGE_DELAY_SECONDS = float(os.getenv("REST_PAGE_DELAY_SECONDS", "1.0"))
    ORDER_SUBMISSION_DELAY_SECONDS = float(os.getenv("ORDER_SUBMISSION_DELAY_SECONDS", "2.0"))
    SERVER_ERROR_MAX_RETRIES = int(os.getenv("SERVER_ERROR_MAX_RETRIES", "5"))
    BACKOFF_BASE_SECONDS = float(os.getenv("BACKOFF_BASE_SECONDS", "2.0"))
    BACKOFF_CAP_SECONDS = float(os.getenv("BACKOFF_CAP_SECONDS", "30.0"))
    RATE_LIMIT_DEFAULT_RETRY_AFTER = int(os.getenv("RATE_LIMIT_DEFAULT_RETRY_AFTER", "300"))
    RATE_LIMIT_MAX_RETRIES = int(os.getenv("RATE_LIMIT_MAX_RETRIES", "3"))
    TOKEN_REFRESH_MARGIN_SECONDS = int(os.getenv("TOKEN_REFRESH_MARGIN_SECONDS", "600"))

    # Registry / concurrency
    MAX_PARALLEL_CONNECTIONS = int(os.getenv("MAX_PARALLEL_CONNECTIONS", "4"))
    ERROR_LOG_LIMIT = int(os.getenv("ERROR_LOG_LIMIT", "50"))
    CONNECTION_MAX_RETRIES = int(os.getenv("CONNECTION_MAX_RETRIES", "3"))

    # Reconciliation tolerances
    QUANTITY_TOLERANCE = float(os.getenv("QUANTITY_TOLERANCE", "0.001"))
    PRICE_TOLERANCE_BPS = float(os.getenv("PRICE_TOLERANCE_BPS", "5"))
    MARKET_VALUE_TOLERANCE_BPS = float(os.getenv("MARKET_VALUE_TOLERANCE_BPS", "1"))
    MARKET_VALUE_TOLERANCE_ABS = float(os.getenv("MARKET_VALUE_TOLERANCE_ABS", "0.01"))
    CASH_TOLERANCE = float(os.getenv("CASH_TOLERANCE", "0.01"))

    # Correlation analysis
    CORRELATION_THRESHOLD = float(os.getenv("CORRELATION_THRESHOLD", "0.3"))
    CORRELATION_MIN_SAMPLE_SIZE = int(os.getenv("CORRELATION_MIN_SAMPLE_SIZE", "10"))
    CORRELATION_CACHE_TTL_SECONDS = int(os.getenv("CORRELATION_CACHE_TTL_SECONDS", str(24 * 60 * 60)))
    CORRELATION_CACHE_MAX_PROFILES = int(os.getenv("CORRELATION_CACHE_MAX_PROFILES", "500"))
    CORRELATION_BASELINE_WINDOW = int(os.getenv("CORRELATION_BASELINE_WINDOW", "100"))
    CORRELATION_HISTORY_WINDOW = int(os.getenv("CORRELATION_HISTORY_WINDOW", "100"))
    CORRELATION_MAX_WORKERS = int(os.getenv("CORRELATION_MAX_WORKERS", "4"))

    # Collaborators, as "module:attribute"
    EVENT_PUBLISHER = os.getenv("EVENT_PUBLISHER", "core.events:LoggingEventPublisher")
    FIELD_ENCRYPTOR = os.getenv("FIELD_ENCRYPTOR", "")

    # Scheduled reconciliation
    RECON_CONNECTION_IDS = [c for c in os.getenv("RECON_CONNECTION_IDS", "").split(",") if c]
    RECON_PORTFOLIO_ID = os.getenv("RECON_PORTFOLIO_ID", "")


# Create a singleton instance
settings = Settings()
