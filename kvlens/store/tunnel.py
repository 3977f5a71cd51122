"""SSH local port forward that puts a remote redis behind 127.0.0.1."""

from typing import Any, Dict, Optional, Tuple

import asyncssh

from ..config.schema import SshTunnelCfg
from ..util.logging import log

LOCAL_HOST = "127.0.0.1"


class SshTunnel:
    """One SSH connection carrying one forward to `target_host:target_port`.

    The listener binds an ephemeral port on the loopback interface only.
    """

    def __init__(self, cfg: SshTunnelCfg, target_host: str, target_port: int) -> None:
        self.cfg = cfg
        self.target_host = target_host
        self.target_port = target_port
        self._conn: Optional[asyncssh.SSHClientConnection] = None
        self._listener: Optional[asyncssh.SSHListener] = None

    @property
    def is_open(self) -> bool:
        return self._listener is not None

    @property
    def local_address(self) -> Optional[Tuple[str, int]]:
        if self._listener is None:
            return None
        return LOCAL_HOST, self._listener.get_port()

    def _connect_options(self) -> Dict[str, Any]:
        cfg = self.cfg
        options: Dict[str, Any] = {"port": cfg.port}
        if cfg.username:
            options["username"] = cfg.username
        if cfg.password:
            options["password"] = cfg.password
        if cfg.key_file:
            options["client_keys"] = [cfg.key_file]
            if cfg.passphrase:
                options["passphrase"] = cfg.passphrase
        if not cfg.verify_host:
            options["known_hosts"] = None
        elif cfg.known_hosts:
            options["known_hosts"] = cfg.known_hosts
        return options

    async def open(self) -> Tuple[str, int]:
        """Connect and start forwarding; returns the local (host, port) to dial."""
        if self._listener is not None:
            return self.local_address

        self._conn = await asyncssh.connect(self.cfg.host, **self._connect_options())
        try:
            self._listener = await self._conn.forward_local_port(
                LOCAL_HOST, 0, self.target_host, self.target_port)
        except BaseException:
            await self.close()
            raise

        host, port = self.local_address
        log("INFO", "tunnel", "opened", ssh_host=self.cfg.host, ssh_port=self.cfg.port,
            local=f"{host}:{port}", target=f"{self.target_host}:{self.target_port}")
        return host, port

    async def close(self) -> None:
        """Stop the forward and drop the SSH connection; safe to call twice."""
        listener, self._listener = self._listener, None
        conn, self._conn = self._conn, None
        if listener is not None:
            listener.close()
            await listener.wait_closed()
        if conn is not None:
            conn.close()
            await conn.wait_closed()
            log("INFO", "tunnel", "closed", ssh_host=self.cfg.host)
