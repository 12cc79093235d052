from slowapi import Limiter
from slowapi.util import get_remote_address

from edumarket.config import get_settings

settings = get_settings()

# Global limiter instance reused across the app; limits are set per route from settings
limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)
