from slowapi import Limiter

from esglite.core.settings import get_settings
from esglite.security.client_ip import get_client_ip

# Keyed on the proxy-aware client IP so every user behind the load balancer
# does not share one bucket.
limiter = Limiter(key_func=get_client_ip)


def signin_limit() -> str:
    return get_settings().signin_rate_limit


def captcha_limit() -> str:
    return get_settings().captcha_rate_limit


__all__ = ["limiter", "signin_limit", "captcha_limit"]
