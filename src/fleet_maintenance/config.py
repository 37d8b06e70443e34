import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv, find_dotenv

class ConfigError(Exception):
    """Custom exception for configuration errors."""
    pass

logger = logging.getLogger(__name__)

STORE_BACKENDS = ("memory", "json", "firebase")

@dataclass
class AppConfig:
    """Application configuration data."""
    store_backend: str = "json"
    store_path: Path = Path("fleet_store.json")
    firebase_url: Optional[str] = None
    firebase_auth: Optional[str] = None
    firebase_timeout: float = 10.0
    poll_interval: float = 5.0
    actor: str = "system"
    revolving_category: str = "Miscellaneous"

    @classmethod
    def load(cls) -> 'AppConfig':
        """
        Loads configuration from environment variables.

        Loads .env file first, then checks environment variables.
        Raises ConfigError if a value is invalid or a backend requirement is missing.
        """
        dotenv_path = find_dotenv(usecwd=True) # Search in current working directory and upwards
        logger.debug(f"Attempting to load .env file from: {dotenv_path if dotenv_path else 'Not found'}")
        found_dotenv = load_dotenv(dotenv_path=dotenv_path, override=False) # Don't override existing env vars
        logger.debug(f".env file found: {found_dotenv}")

        backend = os.environ.get("FLEET_STORE_BACKEND", "json").strip().lower()
        store_path = os.environ.get("FLEET_STORE_PATH", "fleet_store.json")
        firebase_url = os.environ.get("FLEET_FIREBASE_URL")
        firebase_auth = os.environ.get("FLEET_FIREBASE_AUTH")
        actor = os.environ.get("FLEET_ACTOR", "system")
        revolving_category = os.environ.get("FLEET_REVOLVING_CATEGORY", "Miscellaneous")

        logger.debug(f"FLEET_STORE_BACKEND from env/dotenv: {backend}")
        logger.debug(f"FLEET_STORE_PATH from env/dotenv: {store_path}")
        logger.debug(f"FLEET_FIREBASE_URL from env/dotenv: {firebase_url}")
        logger.debug(f"FLEET_FIREBASE_AUTH from env/dotenv: {'SET' if firebase_auth else 'NOT SET'}") # Avoid logging the token itself

        if backend not in STORE_BACKENDS:
            logger.error(f"Unknown FLEET_STORE_BACKEND '{backend}'")
            raise ConfigError(f"FLEET_STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}, got '{backend}'")
        if backend == "firebase" and not firebase_url:
            logger.error("FLEET_FIREBASE_URL not found in environment variables or .env file")
            raise ConfigError("FLEET_FIREBASE_URL not found in environment variables or .env file")

        firebase_timeout = _positive_float("FLEET_FIREBASE_TIMEOUT", "10")
        poll_interval = _positive_float("FLEET_POLL_INTERVAL", "5")

        config_instance = cls(
            store_backend=backend,
            store_path=Path(store_path),
            firebase_url=firebase_url.rstrip('/') if firebase_url else None,
            firebase_auth=firebase_auth or None,
            firebase_timeout=firebase_timeout,
            poll_interval=poll_interval,
            actor=actor,
            revolving_category=revolving_category,
        )
        logger.info(
            f"AppConfig loaded: backend='{config_instance.store_backend}', "
            f"store path='{config_instance.store_path}', "
            f"Firebase URL='{config_instance.firebase_url}', "
            f"auth is {'SET' if config_instance.firebase_auth else 'NOT SET'}, "
            f"poll interval={config_instance.poll_interval}s"
        )
        return config_instance


def _positive_float(name: str, default: str) -> float:
    raw = os.environ.get(name, default)
    try:
        value = float(raw)
    except ValueError:
        logger.error(f"{name} is not a number: '{raw}'")
        raise ConfigError(f"{name} must be a number, got '{raw}'")
    if value <= 0:
        logger.error(f"{name} must be positive, got {value}")
        raise ConfigError(f"{name} must be positive, got {value}")
    return value
