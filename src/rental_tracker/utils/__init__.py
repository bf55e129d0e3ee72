from .logging import setup_logging
from .retry import retry_with_backoff
from .text import normalize_area_token, normalize_key_text

__all__ = ["setup_logging", "retry_with_backoff", "normalize_area_token", "normalize_key_text"]
