from __future__ import annotations
from redis import Redis
from rq import Queue
from app.config import settings

_redis = Redis.from_url(settings.redis_url)
q = Queue("default", connection=_redis)

def get_job_queue() -> Queue:
    return q
