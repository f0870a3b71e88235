"""
Shared slowapi limiter. Routers decorate admission endpoints with
`@limiter.limit(...)`; main.py registers the same instance on app.state.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
