"""Redis connection manager for standalone and cluster data sources."""

import asyncio
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

import asyncssh
from redis.asyncio import Redis, ConnectionPool
from redis.asyncio.cluster import RedisCluster
from redis.asyncio.connection import SSLConnection
from redis.exceptions import (ConnectionError as RedisConnectionError,
                              ResponseError, TimeoutError as RedisTimeoutError)

from .streams import StreamHandle, merge_streams, monitor_messages, pubsub_messages
from .tunnel import SshTunnel
from ..config.schema import DataSourceCfg
from ..util.types import Cursor, Result, ErrorInfo
from ..util.logging import log

STREAM_COMMANDS = ("SUBSCRIBE", "PSUBSCRIBE", "MONITOR")


def key_to_str(key: Union[bytes, str]) -> str:
    """Key names round-trip through surrogateescape so binary keys survive."""
    if isinstance(key, bytes):
        return key.decode("utf-8", "surrogateescape")
    return key


def key_to_bytes(key: Union[bytes, str]) -> bytes:
    if isinstance(key, str):
        return key.encode("utf-8", "surrogateescape")
    return key


def error_info(e: BaseException, op: str) -> ErrorInfo:
    """Map a redis-py (or socket) exception onto the dotted error taxonomy."""
    if isinstance(e, RedisTimeoutError) or isinstance(e, asyncio.TimeoutError):
        return ErrorInfo("connection.timeout", str(e) or "timed out", {"op": op})
    if isinstance(e, asyncssh.Error):
        return ErrorInfo("connection.tunnel_failed", e.reason or str(e), {"op": op})
    if isinstance(e, (RedisConnectionError, ConnectionError, OSError)):
        return ErrorInfo("connection.lost", str(e) or "connection lost", {"op": op})
    if isinstance(e, ResponseError):
        return ErrorInfo("protocol.response_error", str(e), {"op": op})
    return ErrorInfo("protocol.error", str(e), {"op": op})


class ConnectionManager:
    """Pooled, mode-aware handle on one data source (standalone or cluster)."""

    def __init__(self, source: DataSourceCfg) -> None:
        self.source = source
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Union[Redis, RedisCluster]] = None
        self._cluster = False
        self._running = False
        self._tunnel: Optional[SshTunnel] = None
        self._forward: Optional[Tuple[str, int]] = None

    @classmethod
    def from_url(cls, url: str, mode: str = "auto") -> "ConnectionManager":
        return cls(DataSourceCfg(url=url, mode=mode))

    @property
    def is_cluster(self) -> bool:
        return self._cluster

    @property
    def connected(self) -> bool:
        return self._running

    def _conn_params(self) -> Dict[str, Any]:
        """Build redis-py connection parameters from the data source."""
        cfg = self.source
        parsed = urlparse(cfg.url)
        params: Dict[str, Any] = {
            "host": parsed.hostname or "localhost",
            "port": parsed.port or 6379,
            "decode_responses": False,  # raw bytes go through the decoder chain
        }
        if self._forward is not None:
            params["host"], params["port"] = self._forward

        # Authentication (explicit config takes precedence over the URL)
        username = cfg.username or parsed.username
        password = cfg.password or parsed.password
        if username:
            params["username"] = username
        if password:
            params["password"] = password

        if cfg.socket_timeout:
            params["socket_timeout"] = cfg.socket_timeout
        if cfg.socket_connect_timeout:
            params["socket_connect_timeout"] = cfg.socket_connect_timeout

        # TLS/SSL configuration
        if cfg.tls or parsed.scheme == "rediss":
            params["ssl_cert_reqs"] = "required" if cfg.verify_cert else "none"
            params["ssl_check_hostname"] = cfg.verify_cert
            if cfg.ca_file:
                params["ssl_ca_certs"] = cfg.ca_file
            if cfg.cert_file and cfg.key_file:
                params["ssl_certfile"] = cfg.cert_file
                params["ssl_keyfile"] = cfg.key_file
        return params

    def _target(self) -> Tuple[str, int]:
        parsed = urlparse(self.source.url)
        return parsed.hostname or "localhost", parsed.port or 6379

    def _db(self) -> int:
        if self.source.db is not None:
            return self.source.db
        path = urlparse(self.source.url).path
        return int(path[1:]) if path and len(path) > 1 else 0

    def _uses_tls(self) -> bool:
        return self.source.tls or urlparse(self.source.url).scheme == "rediss"

    def _standalone(self, host: Optional[str] = None, port: Optional[int] = None,
                    max_connections: Optional[int] = None) -> Redis:
        params = self._conn_params()
        if host is not None:
            params["host"] = host
            params["port"] = port
        else:
            params["db"] = self._db()
        if self._uses_tls():
            params["connection_class"] = SSLConnection
        pool = ConnectionPool(max_connections=max_connections or self.source.max_connections, **params)
        return Redis(connection_pool=pool)

    def _open_cluster(self) -> RedisCluster:
        params = self._conn_params()
        if self._uses_tls():
            params["ssl"] = True
        return RedisCluster(max_connections=self.source.max_connections, **params)

    async def open(self) -> Result[None]:
        """Connect, resolve the topology and verify with PING."""
        try:
            mode = self.source.mode
            if self.source.ssh is not None:
                if mode == "cluster":
                    return _tunnel_unsupported()
                self._tunnel = SshTunnel(self.source.ssh, *self._target())
                self._forward = await self._tunnel.open()

            if mode == "auto":
                probe = self._standalone(max_connections=1)
                try:
                    info = await probe.info("server")
                    mode = "cluster" if info.get("redis_mode") in ("cluster", b"cluster") else "standalone"
                finally:
                    await probe.aclose()
                if mode == "cluster" and self._tunnel is not None:
                    await self._release_client()
                    return _tunnel_unsupported()

            if mode == "cluster":
                self._client = self._open_cluster()
                await self._client.initialize()
                self._cluster = True
            else:
                self._client = self._standalone()
                self._pool = self._client.connection_pool
                self._cluster = False

            await self._client.ping()
            self._running = True
            log("INFO", "connection", "opened", source=self.source.name, url=self.source.url, mode=mode)
            return Result(ok=True)
        except Exception as e:
            log("ERROR", "connection", "open_failed", source=self.source.name, error=str(e))
            await self._release_client()
            return Result(ok=False, error=error_info(e, "open"))

    async def _release_client(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                log("WARN", "connection", "client_close_failed", error=str(e))
        if self._pool is not None:
            await self._pool.disconnect()
        self._client = None
        self._pool = None
        if self._tunnel is not None:
            try:
                await self._tunnel.close()
            except Exception as e:
                log("WARN", "connection", "tunnel_close_failed", error=str(e))
        self._tunnel = None
        self._forward = None

    async def close(self) -> Result[None]:
        """Disconnect and release the pool."""
        try:
            self._running = False
            await self._release_client()
            log("INFO", "connection", "closed", source=self.source.name)
            return Result(ok=True)
        except Exception as e:
            return Result(ok=False, error=ErrorInfo("connection.close_failed", str(e)))

    def _not_connected(self) -> Result[Any]:
        return Result(ok=False, error=ErrorInfo("connection.not_connected", "Not connected"))

    async def execute(self, args: Sequence[Union[str, bytes]]) -> Result[Any]:
        """Run one command and return its reply."""
        if not self._running or self._client is None:
            return self._not_connected()
        if not args:
            return Result(ok=False, error=ErrorInfo("protocol.empty_command", "Empty command"))
        try:
            reply = await self._client.execute_command(*args)
            return Result(ok=True, value=reply)
        except Exception as e:
            return Result(ok=False, error=error_info(e, "execute"))

    async def scan_batch(self, cursor: Cursor, pattern: str, count: int) -> Result[Tuple[Cursor, List[bytes]]]:
        """Fetch one SCAN batch; a returned cursor of 0 means the keyspace is exhausted."""
        if not self._running or self._client is None:
            return self._not_connected()
        try:
            if not self._cluster:
                next_cursor, keys = await self._client.scan(cursor=int(cursor), match=pattern, count=count)
                return Result(ok=True, value=(int(next_cursor), list(keys)))

            # Walk primaries in a stable order; the cursor carries (node index, node cursor).
            nodes = sorted(self._client.get_primaries(), key=lambda n: n.name)
            index, node_cursor = cursor if isinstance(cursor, tuple) else (0, 0)
            if index >= len(nodes):
                return Result(ok=True, value=(0, []))
            reply = await self._client.execute_command(
                "SCAN", node_cursor, "MATCH", pattern, "COUNT", count, target_nodes=nodes[index])
            node_next, keys = _scan_reply(reply)
            if node_next != 0:
                next_cursor: Cursor = (index, node_next)
            elif index + 1 < len(nodes):
                next_cursor = (index + 1, 0)
            else:
                next_cursor = 0
            return Result(ok=True, value=(next_cursor, keys))
        except Exception as e:
            return Result(ok=False, error=error_info(e, "scan"))

    async def open_stream(self, args: Sequence[Union[str, bytes]]) -> Result[StreamHandle]:
        """Open a push stream for SUBSCRIBE, PSUBSCRIBE or MONITOR."""
        if not self._running or self._client is None:
            return self._not_connected()
        command = key_to_str(args[0]).upper() if args else ""
        if command not in STREAM_COMMANDS:
            return Result(ok=False, error=ErrorInfo("protocol.not_streaming", f"{command} is not a streaming command"))
        if command != "MONITOR" and len(args) < 2:
            return Result(ok=False, error=ErrorInfo(
                "protocol.response_error", f"ERR wrong number of arguments for '{command.lower()}' command"))

        stack = AsyncExitStack()
        opened = False
        try:
            if command == "MONITOR":
                messages = await self._open_monitor(stack)
            else:
                messages = await self._open_pubsub(stack, command, list(args[1:]))
            name = " ".join(key_to_str(a) for a in args)
            log("INFO", "connection", "stream_opened", stream=name)
            opened = True
            return Result(ok=True, value=StreamHandle(name, messages, stack.aclose, classify=error_info))
        except Exception as e:
            return Result(ok=False, error=error_info(e, "open_stream"))
        finally:
            # Failure or cancellation mid-open: release whatever was acquired.
            if not opened:
                await _discard(stack)

    def _node_clients(self, stack: AsyncExitStack) -> List[Redis]:
        clients = []
        for node in sorted(self._client.get_primaries(), key=lambda n: n.name):
            client = self._standalone(node.host, node.port, max_connections=1)
            stack.push_async_callback(client.aclose)
            clients.append(client)
        return clients

    async def _open_pubsub(self, stack: AsyncExitStack, command: str, channels: List[str]):
        if self._cluster:
            # Classic pubsub is broadcast cluster-wide; any one primary will do.
            client = self._node_clients(stack)[0]
        else:
            client = self._client
        pubsub = client.pubsub()
        stack.push_async_callback(pubsub.aclose)
        if command == "PSUBSCRIBE":
            await pubsub.psubscribe(*channels)
            stack.push_async_callback(pubsub.punsubscribe)
        else:
            await pubsub.subscribe(*channels)
            stack.push_async_callback(pubsub.unsubscribe)
        return pubsub_messages(pubsub)

    async def _open_monitor(self, stack: AsyncExitStack):
        if not self._cluster:
            monitor = await stack.enter_async_context(self._client.monitor())
            return monitor_messages(monitor)
        sources = []
        for client in self._node_clients(stack):
            monitor = await stack.enter_async_context(client.monitor())
            sources.append(monitor_messages(monitor))
        return merge_streams(sources)


def _tunnel_unsupported() -> Result[None]:
    return Result(ok=False, error=ErrorInfo(
        "config.unsupported", "SSH tunnels are only supported for standalone data sources"))


def _scan_reply(reply: Any) -> Tuple[int, List[bytes]]:
    """Normalize single-node SCAN replies from the cluster client."""
    if isinstance(reply, dict):
        reply = next(iter(reply.values()), (0, []))
    cursor, keys = reply
    if isinstance(cursor, dict):
        cursor = next(iter(cursor.values()), 0)
    return int(cursor), list(keys)


async def _discard(stack: AsyncExitStack) -> None:
    try:
        await stack.aclose()
    except Exception as e:
        log("WARN", "connection", "stream_release_failed", error=str(e))
