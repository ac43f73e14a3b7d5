"""Rate limiter singleton, shared by main.py and the import endpoint."""
from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
