"""
Utility modules for RelPulse
"""

from .decision_logger import DecisionLogger, Timer
from .redis_client import RedisConnection, get_redis_client

__all__ = [
    'DecisionLogger',
    'Timer',
    'RedisConnection',
    'get_redis_client',
]
