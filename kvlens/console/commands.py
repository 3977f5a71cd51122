"""Static command vocabulary and command classification for the console."""

from typing import Optional, Sequence

from ..util.const import TaskKind

# Completion vocabulary; anything else is still passed through to the server.
VOCABULARY = (
    "ACL", "APPEND", "AUTH", "BGSAVE", "BITCOUNT", "BITOP", "BITPOS", "BLMOVE", "BLPOP", "BRPOP",
    "BZPOPMAX", "BZPOPMIN", "CLIENT", "CLUSTER", "COMMAND", "CONFIG", "COPY", "DBSIZE", "DECR",
    "DECRBY", "DEL", "DUMP", "ECHO", "EVAL", "EVALSHA", "EXISTS", "EXPIRE", "EXPIREAT", "EXPIRETIME",
    "FLUSHALL", "FLUSHDB", "GEOADD", "GEODIST", "GEOPOS", "GEOSEARCH", "GET", "GETDEL", "GETEX",
    "GETRANGE", "GETSET", "HDEL", "HELLO", "HEXISTS", "HGET", "HGETALL", "HINCRBY", "HINCRBYFLOAT",
    "HKEYS", "HLEN", "HMGET", "HMSET", "HRANDFIELD", "HSCAN", "HSET", "HSETNX", "HSTRLEN", "HVALS",
    "INCR", "INCRBY", "INCRBYFLOAT", "INFO", "KEYS", "LASTSAVE", "LATENCY", "LINDEX", "LINSERT",
    "LLEN", "LMOVE", "LMPOP", "LPOP", "LPOS", "LPUSH", "LPUSHX", "LRANGE", "LREM", "LSET", "LTRIM",
    "MEMORY", "MGET", "MONITOR", "MSET", "MSETNX", "OBJECT", "PERSIST", "PEXPIRE", "PEXPIREAT",
    "PFADD", "PFCOUNT", "PFMERGE", "PING", "PSETEX", "PSUBSCRIBE", "PTTL", "PUBLISH", "PUBSUB",
    "RANDOMKEY", "RENAME", "RENAMENX", "RESTORE", "ROLE", "RPOP", "RPUSH", "RPUSHX", "SADD", "SAVE",
    "SCAN", "SCARD", "SCRIPT", "SDIFF", "SDIFFSTORE", "SELECT", "SET", "SETEX", "SETNX", "SETRANGE",
    "SINTER", "SINTERCARD", "SINTERSTORE", "SISMEMBER", "SLOWLOG", "SMEMBERS", "SMISMEMBER", "SMOVE",
    "SORT", "SPOP", "SRANDMEMBER", "SREM", "SSCAN", "STRLEN", "SUBSCRIBE", "SUNION", "SUNIONSTORE",
    "TIME", "TOUCH", "TTL", "TYPE", "UNLINK", "WAIT", "XACK", "XADD", "XDEL", "XGROUP", "XINFO",
    "XLEN", "XPENDING", "XRANGE", "XREAD", "XREADGROUP", "XREVRANGE", "XTRIM", "ZADD", "ZCARD",
    "ZCOUNT", "ZINCRBY", "ZINTERSTORE", "ZLEXCOUNT", "ZMSCORE", "ZPOPMAX", "ZPOPMIN", "ZRANDMEMBER",
    "ZRANGE", "ZRANGEBYLEX", "ZRANGEBYSCORE", "ZRANK", "ZREM", "ZREMRANGEBYRANK", "ZREMRANGEBYSCORE",
    "ZREVRANGE", "ZREVRANK", "ZSCAN", "ZSCORE", "ZUNIONSTORE",
)

# Idempotent commands that are safe to retry after a dropped connection.
READ_ONLY = frozenset({
    "BITCOUNT", "BITPOS", "DBSIZE", "DUMP", "ECHO", "EXISTS", "EXPIRETIME", "GEODIST", "GEOPOS",
    "GEOSEARCH", "GET", "GETRANGE", "HEXISTS", "HGET", "HGETALL", "HKEYS", "HLEN", "HMGET",
    "HRANDFIELD", "HSCAN", "HSTRLEN", "HVALS", "INFO", "KEYS", "LASTSAVE", "LINDEX", "LLEN", "LPOS",
    "LRANGE", "MGET", "PFCOUNT", "PING", "PTTL", "RANDOMKEY", "ROLE", "SCAN", "SCARD", "SDIFF",
    "SINTER", "SINTERCARD", "SISMEMBER", "SMEMBERS", "SMISMEMBER", "SRANDMEMBER", "SSCAN", "STRLEN",
    "SUNION", "TIME", "TTL", "TYPE", "XINFO", "XLEN", "XPENDING", "XRANGE", "XREVRANGE", "ZCARD",
    "ZCOUNT", "ZLEXCOUNT", "ZMSCORE", "ZRANDMEMBER", "ZRANGE", "ZRANGEBYLEX", "ZRANGEBYSCORE",
    "ZRANK", "ZREVRANGE", "ZREVRANK", "ZSCAN", "ZSCORE",
})

STREAMING = frozenset({"SUBSCRIBE", "PSUBSCRIBE", "MONITOR"})

# Handled by the session itself, never sent to the server.
LOCAL = frozenset({"CLEAR", "EXIT", "QUIT"})


def command_name(args: Sequence[str]) -> str:
    return args[0].upper() if args else ""


def task_kind(args: Sequence[str]) -> Optional[TaskKind]:
    """How a parsed line runs on the dispatcher; None for local commands."""
    name = command_name(args)
    if name in LOCAL:
        return None
    if name in STREAMING:
        return TaskKind.STREAM
    if name in READ_ONLY:
        return TaskKind.READ
    return TaskKind.WRITE
