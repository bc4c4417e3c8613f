"""
Crawler settings, read from the environment (load .env first with python-dotenv).

    DATA_DIR            output root                         ./data
    CONCURRENCY         parallel course fetches             4
    REQUEST_DELAY       base pause before each request (s)  1.0
    MIN_REQUEST_DELAY   floor for the jittered pause (s)    0.25
    SAVE_INTERVAL       new courses between shard saves     10
    MAX_RETRIES         attempts for transient errors       3
    RETRY_BACKOFF       first retry wait (s), doubles       1.0
    RATE_LIMIT_WARNING  rate-limit hits before a warning    5
    REQUEST_TIMEOUT     per-request timeout (s)             15
    TERMS               explicit terms, "2025/fall,2026/spring"
    NUM_TERMS           latest terms to discover if TERMS unset   2
"""

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from etl.terms import Term, parse_terms

log = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"

_ENV_FIELDS = {
    "DATA_DIR": "data_dir",
    "CONCURRENCY": "concurrency",
    "REQUEST_DELAY": "request_delay",
    "MIN_REQUEST_DELAY": "min_request_delay",
    "SAVE_INTERVAL": "save_interval",
    "MAX_RETRIES": "max_retries",
    "RETRY_BACKOFF": "retry_backoff",
    "RATE_LIMIT_WARNING": "rate_limit_warning",
    "REQUEST_TIMEOUT": "request_timeout",
    "TERMS": "terms",
    "NUM_TERMS": "num_terms",
}


class Settings(BaseModel):
    data_dir: Path = DEFAULT_DATA_DIR
    concurrency: int = Field(4, ge=1)
    request_delay: float = Field(1.0, ge=0)
    min_request_delay: float = Field(0.25, ge=0)
    save_interval: int = Field(10, ge=1)
    max_retries: int = Field(3, ge=1)
    retry_backoff: float = Field(1.0, ge=0)
    rate_limit_warning: int = Field(5, ge=0)
    request_timeout: float = Field(15.0, gt=0)
    terms: str | None = None
    num_terms: int = Field(2, ge=1)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        environ = os.environ if environ is None else environ
        values = {
            field: environ[name]
            for name, field in _ENV_FIELDS.items()
            if environ.get(name, "").strip()
        }
        try:
            return cls(**values)
        except ValidationError as exc:
            log.error("Invalid crawler configuration: %s", exc)
            raise

    def explicit_terms(self) -> list[Term] | None:
        if not self.terms:
            return None
        return parse_terms(self.terms)
