from .base import IdAssigner, acquire_ids
from .redis_counter import RedisCounterIdAssigner
from .snowflake import SnowflakeIdAssigner, decode_snowflake

__all__ = [
    "IdAssigner",
    "RedisCounterIdAssigner",
    "SnowflakeIdAssigner",
    "acquire_ids",
    "decode_snowflake",
]
