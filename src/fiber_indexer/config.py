"""
Indexer configuration management.

This module handles loading and accessing indexer configuration from multiple
sources with a clear priority order:

    1. Environment variables (highest priority) - for containerized deployments
    2. Config file (config/indexer.ini) - for static deployments
    3. Built-in defaults (lowest priority) - sensible fallbacks

Configuration is loaded once at module import time and cached. The
IndexerConfig dataclass provides typed access to all settings.

Usage:
    from fiber_indexer.config import config

    print(config.ledger.ml0_url)
    print(config.pollers.confirmation_interval)

Environment Variable Mapping:
    INDEXER_HOST                   -> server.host
    INDEXER_PORT                   -> server.port
    INDEXER_PRODUCTION             -> security.production
    INDEXER_CORS_ORIGINS           -> security.cors_origins
    INDEXER_DB_PATH                -> database.path
    INDEXER_LOG_LEVEL              -> logging.level
    INDEXER_ML0_URL                -> ledger.ml0_url
    INDEXER_DL1_URL                -> ledger.dl1_url
    INDEXER_CHECKPOINT_URL         -> ledger.checkpoint_url
    INDEXER_METAGRAPH_ID           -> ledger.metagraph_id
    INDEXER_PEERS                  -> ledger.peers
    INDEXER_CALLBACK_URL           -> ledger.callback_url
    INDEXER_CONFIRMATION_INTERVAL  -> pollers.confirmation_interval
    INDEXER_FALLBACK_INTERVAL      -> pollers.fallback_interval
    INDEXER_DELIVERY_MODE          -> materializer.delivery_mode
"""

import configparser
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

# =============================================================================
# PATH CONFIGURATION
# =============================================================================

# Project root directory (contains src/, config/, data/)
PROJECT_ROOT = Path(__file__).parent.parent.parent

# Config file paths
CONFIG_DIR = PROJECT_ROOT / "config"
CONFIG_FILE = CONFIG_DIR / "indexer.ini"
CONFIG_EXAMPLE = CONFIG_DIR / "indexer.example.ini"


# =============================================================================
# CONFIGURATION DATACLASSES
# =============================================================================


@dataclass
class ServerSettings:
    """HTTP server configuration."""

    host: str = "0.0.0.0"  # nosec B104 - intentional for server binding
    port: int = 8080


@dataclass
class SecuritySettings:
    """Security-related configuration."""

    production: bool = False
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    docs_enabled: Literal["auto", "enabled", "disabled"] = "auto"


@dataclass
class DatabaseSettings:
    """Database configuration."""

    path: str = "data/indexer.db"

    @property
    def absolute_path(self) -> Path:
        """Get absolute path to database file."""
        p = Path(self.path)
        if p.is_absolute():
            return p
        return PROJECT_ROOT / p


@dataclass
class LoggingSettings:
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["simple", "detailed", "json"] = "detailed"


@dataclass
class LedgerSettings:
    """Upstream ledger endpoints."""

    ml0_url: str = "http://localhost:9200"
    dl1_url: str = ""  # empty = read the commit index from ml0_url
    checkpoint_url: str = "http://localhost:9000"
    metagraph_id: str = ""
    peers: list[str] = field(default_factory=list)
    callback_url: str = ""  # empty = do not subscribe at startup
    request_timeout: float = 10.0

    @property
    def data_l1_url(self) -> str:
        """Node that serves the on-chain commit index and accepts writes."""
        return self.dl1_url or self.ml0_url

    @property
    def peer_urls(self) -> list[str]:
        """Peers polled by the fallback poller (ML0 when none configured)."""
        return self.peers or [self.ml0_url]


@dataclass
class PollerSettings:
    """Confirmation and fallback poller timing."""

    confirmation_enabled: bool = True
    confirmation_interval: float = 15.0
    checkpoint_batch: int = 25
    fallback_enabled: bool = True
    fallback_interval: float = 60.0
    catchup_window: int = 10
    peer_timeout: float = 5.0


@dataclass
class MaterializerSettings:
    """Materialization worker pool configuration."""

    delivery_mode: Literal["full", "diff"] = "full"
    max_concurrency: int = 4
    queue_size: int = 256
    reprocess_batch: int = 50


@dataclass
class SequencingSettings:
    """Write-path sequence coordination defaults."""

    wait_timeout: float = 60.0
    poll_interval: float = 1.0


@dataclass
class IndexerConfig:
    """
    Complete indexer configuration.

    This is the main configuration object that aggregates all settings sections.
    Access via the module-level `config` singleton.
    """

    server: ServerSettings = field(default_factory=ServerSettings)
    security: SecuritySettings = field(default_factory=SecuritySettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    pollers: PollerSettings = field(default_factory=PollerSettings)
    materializer: MaterializerSettings = field(default_factory=MaterializerSettings)
    sequencing: SequencingSettings = field(default_factory=SequencingSettings)

    @property
    def is_production(self) -> bool:
        """Convenience property for production mode check."""
        return self.security.production

    @property
    def docs_should_be_enabled(self) -> bool:
        """Determine if API docs should be enabled based on settings."""
        if self.security.docs_enabled == "enabled":
            return True
        if self.security.docs_enabled == "disabled":
            return False
        # "auto" - follow production setting
        return not self.is_production


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================


def _parse_bool(value: str) -> bool:
    """Parse a string value to boolean."""
    return value.lower() in ("true", "yes", "1", "on", "enabled")


def _parse_list(value: str) -> list[str]:
    """Parse a comma-separated string to list, stripping whitespace."""
    if not value or value.strip() == "":
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _load_from_ini(parser: configparser.ConfigParser, cfg: IndexerConfig) -> None:
    """Load configuration from parsed INI file into IndexerConfig."""
    # Server section
    if parser.has_section("server"):
        if parser.has_option("server", "host"):
            cfg.server.host = parser.get("server", "host")
        if parser.has_option("server", "port"):
            cfg.server.port = parser.getint("server", "port")

    # Security section
    if parser.has_section("security"):
        if parser.has_option("security", "production"):
            cfg.security.production = _parse_bool(parser.get("security", "production"))
        if parser.has_option("security", "cors_origins"):
            cfg.security.cors_origins = _parse_list(parser.get("security", "cors_origins"))
        if parser.has_option("security", "docs_enabled"):
            val = parser.get("security", "docs_enabled").lower()
            if val in ("auto", "enabled", "disabled"):
                cfg.security.docs_enabled = val  # type: ignore[assignment]

    # Database section
    if parser.has_section("database"):
        if parser.has_option("database", "path"):
            cfg.database.path = parser.get("database", "path")

    # Logging section
    if parser.has_section("logging"):
        if parser.has_option("logging", "level"):
            cfg.logging.level = parser.get("logging", "level").upper()
        if parser.has_option("logging", "format"):
            val = parser.get("logging", "format").lower()
            if val in ("simple", "detailed", "json"):
                cfg.logging.format = val  # type: ignore[assignment]

    # Ledger section
    if parser.has_section("ledger"):
        for key in ("ml0_url", "dl1_url", "checkpoint_url", "metagraph_id", "callback_url"):
            if parser.has_option("ledger", key):
                setattr(cfg.ledger, key, parser.get("ledger", key).strip())
        if parser.has_option("ledger", "peers"):
            cfg.ledger.peers = _parse_list(parser.get("ledger", "peers"))
        if parser.has_option("ledger", "request_timeout"):
            cfg.ledger.request_timeout = parser.getfloat("ledger", "request_timeout")

    # Pollers section
    if parser.has_section("pollers"):
        if parser.has_option("pollers", "confirmation_enabled"):
            cfg.pollers.confirmation_enabled = _parse_bool(
                parser.get("pollers", "confirmation_enabled")
            )
        if parser.has_option("pollers", "confirmation_interval"):
            cfg.pollers.confirmation_interval = parser.getfloat("pollers", "confirmation_interval")
        if parser.has_option("pollers", "checkpoint_batch"):
            cfg.pollers.checkpoint_batch = parser.getint("pollers", "checkpoint_batch")
        if parser.has_option("pollers", "fallback_enabled"):
            cfg.pollers.fallback_enabled = _parse_bool(parser.get("pollers", "fallback_enabled"))
        if parser.has_option("pollers", "fallback_interval"):
            cfg.pollers.fallback_interval = parser.getfloat("pollers", "fallback_interval")
        if parser.has_option("pollers", "catchup_window"):
            cfg.pollers.catchup_window = parser.getint("pollers", "catchup_window")
        if parser.has_option("pollers", "peer_timeout"):
            cfg.pollers.peer_timeout = parser.getfloat("pollers", "peer_timeout")

    # Materializer section
    if parser.has_section("materializer"):
        if parser.has_option("materializer", "delivery_mode"):
            val = parser.get("materializer", "delivery_mode").lower()
            if val in ("full", "diff"):
                cfg.materializer.delivery_mode = val  # type: ignore[assignment]
        if parser.has_option("materializer", "max_concurrency"):
            cfg.materializer.max_concurrency = parser.getint("materializer", "max_concurrency")
        if parser.has_option("materializer", "queue_size"):
            cfg.materializer.queue_size = parser.getint("materializer", "queue_size")
        if parser.has_option("materializer", "reprocess_batch"):
            cfg.materializer.reprocess_batch = parser.getint("materializer", "reprocess_batch")

    # Sequencing section
    if parser.has_section("sequencing"):
        if parser.has_option("sequencing", "wait_timeout"):
            cfg.sequencing.wait_timeout = parser.getfloat("sequencing", "wait_timeout")
        if parser.has_option("sequencing", "poll_interval"):
            cfg.sequencing.poll_interval = parser.getfloat("sequencing", "poll_interval")


def _apply_env_overrides(cfg: IndexerConfig) -> None:
    """Apply environment variable overrides to configuration."""
    # Server settings
    if env_host := os.getenv("INDEXER_HOST"):
        cfg.server.host = env_host
    if env_port := os.getenv("INDEXER_PORT"):
        cfg.server.port = int(env_port)

    # Security settings
    if env_production := os.getenv("INDEXER_PRODUCTION"):
        cfg.security.production = _parse_bool(env_production)
    if env_cors := os.getenv("INDEXER_CORS_ORIGINS"):
        cfg.security.cors_origins = _parse_list(env_cors)

    # Database settings
    if env_db := os.getenv("INDEXER_DB_PATH"):
        cfg.database.path = env_db

    # Logging settings
    if env_log := os.getenv("INDEXER_LOG_LEVEL"):
        cfg.logging.level = env_log.upper()

    # Ledger settings
    if env_ml0 := os.getenv("INDEXER_ML0_URL"):
        cfg.ledger.ml0_url = env_ml0
    if env_dl1 := os.getenv("INDEXER_DL1_URL"):
        cfg.ledger.dl1_url = env_dl1
    if env_checkpoint := os.getenv("INDEXER_CHECKPOINT_URL"):
        cfg.ledger.checkpoint_url = env_checkpoint
    if env_metagraph := os.getenv("INDEXER_METAGRAPH_ID"):
        cfg.ledger.metagraph_id = env_metagraph
    if env_peers := os.getenv("INDEXER_PEERS"):
        cfg.ledger.peers = _parse_list(env_peers)
    if env_callback := os.getenv("INDEXER_CALLBACK_URL"):
        cfg.ledger.callback_url = env_callback

    # Poller settings
    if env_confirm := os.getenv("INDEXER_CONFIRMATION_INTERVAL"):
        cfg.pollers.confirmation_interval = float(env_confirm)
    if env_fallback := os.getenv("INDEXER_FALLBACK_INTERVAL"):
        cfg.pollers.fallback_interval = float(env_fallback)

    # Materializer settings
    if env_mode := os.getenv("INDEXER_DELIVERY_MODE"):
        if env_mode.lower() in ("full", "diff"):
            cfg.materializer.delivery_mode = env_mode.lower()  # type: ignore[assignment]


def load_config() -> IndexerConfig:
    """
    Load configuration from all sources with proper priority.

    Priority (highest wins):
        1. Environment variables
        2. config/indexer.ini
        3. config/indexer.example.ini (fallback for development)
        4. Built-in defaults

    Returns:
        IndexerConfig: Fully populated configuration object.
    """
    cfg = IndexerConfig()

    # Determine which config file to use
    config_file = None
    if CONFIG_FILE.exists():
        config_file = CONFIG_FILE
    elif CONFIG_EXAMPLE.exists():
        # Use example as fallback for development
        config_file = CONFIG_EXAMPLE

    # Load from INI file if available
    if config_file:
        parser = configparser.ConfigParser()
        parser.read(config_file)
        _load_from_ini(parser, cfg)

    # Apply environment variable overrides (highest priority)
    _apply_env_overrides(cfg)

    return cfg


def reload_config() -> "IndexerConfig":
    """
    Reload configuration from disk and environment.

    This updates the module-level `config` singleton. Components that copied
    settings at construction time keep their old values.

    Returns:
        IndexerConfig: The newly loaded configuration.
    """
    global config
    config = load_config()
    return config


# =============================================================================
# MODULE-LEVEL SINGLETON
# =============================================================================

# Load configuration once at module import time
config = load_config()


# =============================================================================
# LOGGING
# =============================================================================

_LOG_FORMATS = {
    "simple": "%(levelname)s %(message)s",
    "detailed": "%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
}


class JsonLogFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(settings: LoggingSettings | None = None) -> None:
    """Install a single root handler using the configured level and format."""
    settings = settings or config.logging
    handler = logging.StreamHandler(sys.stderr)
    if settings.format == "json":
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter(_LOG_FORMATS[settings.format]))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.level)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def get_config_status() -> dict:
    """
    Get configuration status for diagnostics.

    Returns a dictionary with configuration source information,
    useful for debugging and the status endpoint.
    """
    return {
        "config_file_exists": CONFIG_FILE.exists(),
        "config_file_path": str(CONFIG_FILE),
        "using_example": not CONFIG_FILE.exists() and CONFIG_EXAMPLE.exists(),
        "production_mode": config.is_production,
        "metagraph_id_set": bool(config.ledger.metagraph_id),
        "peer_count": len(config.ledger.peer_urls),
        "delivery_mode": config.materializer.delivery_mode,
    }


def print_config_summary() -> None:
    """Print a summary of current configuration to stdout."""
    status = get_config_status()
    print("\n" + "=" * 60)
    print("INDEXER CONFIGURATION")
    print("=" * 60)
    print(f"Config file: {status['config_file_path']}")
    print(f"File exists: {status['config_file_exists']}")
    if status["using_example"]:
        print("WARNING: Using example config (copy to indexer.ini for production)")
    print("-" * 60)
    print(f"Server:       {config.server.host}:{config.server.port}")
    print(f"Database:     {config.database.absolute_path}")
    print(f"ML0:          {config.ledger.ml0_url}")
    print(f"DL1:          {config.ledger.data_l1_url}")
    print(f"Checkpoint:   {config.ledger.checkpoint_url}")
    print(f"Metagraph id: {config.ledger.metagraph_id or '(scan all channels)'}")
    print(f"Peers:        {config.ledger.peer_urls}")
    print(f"Delivery:     {config.materializer.delivery_mode}")
    print(f"Log level:    {config.logging.level}")
    print("=" * 60 + "\n")


# =============================================================================
# TEST HELPERS
# =============================================================================


class use_test_database:
    """
    Context manager for using a temporary test database.

    Usage:
        from fiber_indexer.config import use_test_database

        def test_something(tmp_path):
            with use_test_database(tmp_path / "test.db"):
                init_database()

    Args:
        db_path: Path to the test database file
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.original_path: str | None = None

    def __enter__(self) -> Path:
        """Set up test database path."""
        self.original_path = config.database.path
        config.database.path = str(self.db_path)
        return self.db_path

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Restore original database path."""
        if self.original_path is not None:
            config.database.path = self.original_path
        return None
