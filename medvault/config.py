import logging
import os
from dataclasses import dataclass
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class Settings:
    db_url: str = "sqlite:///./medvault.db"
    burn_db_url: str = "sqlite:///./burned_tokens.db"
    store_dir: str = ".medvault"
    burn_registry_url: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_url=os.getenv("MEDVAULT_DB_URL", cls.db_url),
            burn_db_url=os.getenv("MEDVAULT_BURN_DB_URL", cls.burn_db_url),
            store_dir=os.getenv("MEDVAULT_STORE_DIR", cls.store_dir),
            burn_registry_url=os.getenv("MEDVAULT_BURN_REGISTRY_URL") or None,
            log_level=os.getenv("MEDVAULT_LOG_LEVEL", cls.log_level),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
