from pydantic import BaseModel, Field
from typing import Literal, Optional
from ..util.const import DEFAULTS

class SshTunnelCfg(BaseModel):
    """SSH jump host; redis is reached through a local port forward."""
    host: str = Field(..., min_length=1, description="SSH server host")
    port: int = Field(22, ge=1, le=65535)
    username: Optional[str] = Field(None, description="SSH login (defaults to the local user)")
    password: Optional[str] = Field(None, description="SSH password")
    key_file: Optional[str] = Field(None, description="Private key for public key authentication")
    passphrase: Optional[str] = Field(None, description="Passphrase of key_file")
    known_hosts: Optional[str] = Field(None, description="known_hosts file (defaults to ~/.ssh/known_hosts)")
    verify_host: bool = Field(True, description="Check the server host key")

class DataSourceCfg(BaseModel):
    name: str = Field("default", min_length=1, description="Data source display name")
    url: str = Field("redis://127.0.0.1:6379/0", description="Redis URL")
    mode: Literal["auto", "standalone", "cluster"] = "auto"

    # Authentication
    username: Optional[str] = Field(None, description="Redis username for ACL authentication")
    password: Optional[str] = Field(None, description="Redis password")
    db: Optional[int] = Field(None, ge=0, description="Database index (overrides URL path)")

    # TLS Configuration
    tls: bool = Field(False, description="Enable TLS/SSL connection")
    ca_file: Optional[str] = Field(None, description="Path to CA certificate file")
    cert_file: Optional[str] = Field(None, description="Path to client certificate file")
    key_file: Optional[str] = Field(None, description="Path to client private key file")
    verify_cert: bool = Field(True, description="Verify server certificate")

    # SSH tunnel (standalone only)
    ssh: Optional[SshTunnelCfg] = Field(None, description="Reach redis through an SSH port forward")

    # Connection Settings
    socket_timeout: Optional[float] = Field(None, gt=0, description="Socket timeout in seconds")
    socket_connect_timeout: Optional[float] = Field(None, gt=0, description="Socket connect timeout in seconds")
    max_connections: int = Field(DEFAULTS["MAX_CONNECTIONS"], ge=1, description="Maximum connections in pool")

class AppCfg(BaseModel):
    fps: int = Field(DEFAULTS["FPS"], ge=1, le=120)
    scan_size: int = Field(DEFAULTS["SCAN_SIZE"], ge=1)
    key_delimiter: str = Field(DEFAULTS["KEY_DELIMITER"], min_length=1)
    history_size: int = Field(DEFAULTS["HISTORY_SIZE"], ge=0)
    workers: int = Field(DEFAULTS["WORKERS"], ge=1, le=64)
    retry_limit: int = Field(DEFAULTS["RETRY_LIMIT"], ge=0, le=10)
    retry_backoff_sec: float = Field(DEFAULTS["RETRY_BACKOFF_SEC"], ge=0)
    output_max_lines: int = Field(DEFAULTS["OUTPUT_MAX_LINES"], ge=10)
    inspect_page_size: int = Field(DEFAULTS["INSPECT_PAGE_SIZE"], ge=1)
