"""Request rate limiting shared by the application and its routers."""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

SEARCH_RATE_LIMIT = "30/minute"
