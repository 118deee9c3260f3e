"""Ingesta diferida: cola de logs "fast" y worker en background."""

from .job_queue import InMemoryJobQueue, LogJobQueue, RedisStreamJobQueue
from .models import LogJob, LogWorkerConfig
from .worker import LogWorker

__all__ = [
    "InMemoryJobQueue",
    "LogJobQueue",
    "RedisStreamJobQueue",
    "LogJob",
    "LogWorkerConfig",
    "LogWorker",
]
