"""
Data models for the swarm agent.
"""
import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import List, Dict, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from swarm_agent.retry_backoff import BackOffPolicy
from swarm_agent.security_utils import (
    normalize_url,
    validate_node_name,
    validate_label_tokens,
    SecurityError
)

# Legacy well-known discovery ports, checked in this order
DISCOVERY_PORT_ENV_VARS = ('JENKINS_UDP', 'HUDSON_UDP')
DEFAULT_DISCOVERY_PORT = 33848

NODE_MODES = ('normal', 'exclusive')
DISCOVERY_MODES = ('auto', 'broadcast', 'direct')

# Seconds to wait for a coordinator HTTP response
DEFAULT_HTTP_TIMEOUT = 30.0


class ConfigurationError(Exception):
    """Invalid static configuration, detected before any network activity."""
    pass


@dataclass(frozen=True)
class Candidate:
    """A discovered coordinator and the secret it handed out."""
    url: str
    secret: str


@dataclass(frozen=True)
class Crumb:
    """Anti-CSRF header for a single mutating request."""
    header_name: str
    header_value: str


def default_discovery_port() -> int:
    """Discovery port from the legacy environment variables, else 33848."""
    for env_var in DISCOVERY_PORT_ENV_VARS:
        value = os.getenv(env_var)
        if value:
            try:
                return int(value)
            except ValueError:
                raise ConfigurationError(f"{env_var} is not a port number: {value}")
    return DEFAULT_DISCOVERY_PORT


def default_node_name() -> str:
    """Host name of this machine."""
    try:
        return socket.getfqdn() or socket.gethostname()
    except OSError:
        return socket.gethostname()


class AgentConfig(BaseModel):
    """Agent configuration."""
    class DiscoveryConfig(BaseModel):
        mode: str = Field(
            default="auto",
            description="auto (direct if url is set, else broadcast), broadcast or direct"
        )
        broadcast_address: Optional[str] = Field(
            default=None,
            description="UDP broadcast address (default: 255.255.255.255 or the host of url)"
        )
        port: int = Field(default_factory=default_discovery_port, ge=1, le=65535)
        window: float = Field(
            default=5.0,
            gt=0,
            description="How long to collect broadcast responses (seconds)"
        )

        @field_validator('mode')
        @classmethod
        def validate_mode(cls, v: str) -> str:
            """Validate discovery mode."""
            v = v.lower()
            if v not in DISCOVERY_MODES:
                raise ValueError(
                    f"Invalid discovery mode: {v}. Must be one of: {', '.join(DISCOVERY_MODES)}"
                )
            return v

    class RetryConfig(BaseModel):
        retry: int = Field(
            default=-1,
            ge=-1,
            description="Number of connection attempts before giving up (-1: unlimited)"
        )
        backoff: BackOffPolicy = BackOffPolicy.NONE
        interval: int = Field(default=10, ge=0, description="Base wait between attempts (seconds)")
        max_interval: int = Field(default=60, ge=0, description="Upper bound for the wait (seconds)")
        jitter: bool = False

        @field_validator('backoff', mode='before')
        @classmethod
        def parse_backoff(cls, v):
            """Accept policy names in any case."""
            return BackOffPolicy.parse(v)

    class SecurityConfig(BaseModel):
        """Credentials and TLS settings."""
        username: Optional[str] = None
        # Never read from the configuration file, see main.load_config()
        password: Optional[str] = Field(default=None, exclude=True, repr=False)
        password_env_variable: Optional[str] = None
        password_file: Optional[str] = None
        disable_ssl_verification: bool = False
        ssl_fingerprints: str = Field(
            default="",
            description="Whitespace-separated SHA-256 fingerprints of accepted certificates"
        )

        @model_validator(mode='after')
        def check_exclusive(self):
            """Reject combinations that cannot be honored together."""
            if self.password_env_variable and self.password_file:
                raise ValueError("'password_env_variable' can not be used with 'password_file'")
            if self.disable_ssl_verification and self.ssl_fingerprints.strip():
                raise ValueError("'disable_ssl_verification' can not be used with 'ssl_fingerprints'")
            return self

        def resolve_password(self) -> Optional[str]:
            """
            Find the password from the explicit value, environment or file.

            Raises:
                ConfigurationError: If the configured source is unavailable
            """
            if self.password is not None:
                return self.password

            if self.password_env_variable:
                value = os.getenv(self.password_env_variable)
                if value is None:
                    raise ConfigurationError(
                        f"Environment variable {self.password_env_variable} is not set"
                    )
                return value

            if self.password_file:
                try:
                    return Path(self.password_file).expanduser().read_text(encoding='utf-8').strip()
                except OSError as e:
                    raise ConfigurationError(f"Cannot read password file {self.password_file}: {e}")

            return None

    class TransportConfig(BaseModel):
        command: List[str] = Field(
            default_factory=lambda: [
                "java", "-jar", "agent.jar",
                "-url", "{url}",
                "-name", "{name}",
                "-workDir", "{work_dir}",
                "-headless",
                "-noreconnect",
            ],
            description="Command that runs the execution channel; blocks while connected"
        )
        close_timeout: float = Field(
            default=10.0,
            gt=0,
            description="Seconds to wait for the channel to exit on shutdown before killing it"
        )

    class LoggingConfig(BaseModel):
        level: str = Field(
            default="INFO",
            description="Global log level: DEBUG, INFO, WARNING, ERROR"
        )
        file: Optional[str] = Field(
            default=None,
            description="Optional log file path (in addition to stdout)"
        )
        json_format: bool = Field(
            default=False,
            description="Output logs in JSON format for machine parsing"
        )
        module_levels: Dict[str, str] = Field(
            default_factory=dict,
            description="Per-module log levels, e.g. {'discovery': 'DEBUG'}"
        )

    url: Optional[str] = Field(
        default=None,
        description="Coordinator URL; if set, broadcast discovery is skipped unless discovery.mode is broadcast"
    )
    name: str = Field(default_factory=default_node_name)
    description: Optional[str] = None
    executors: int = Field(default_factory=lambda: os.cpu_count() or 1, ge=1)
    fsroot: str = Field(default=".", description="Directory where the coordinator places files")
    labels: List[str] = Field(default_factory=list)
    labels_file: Optional[str] = Field(
        default=None,
        description="File with space-delimited labels, watched for changes"
    )
    label_watch_interval: float = Field(default=10.0, gt=0)
    mode: str = "normal"
    tool_locations: Dict[str, str] = Field(default_factory=dict)
    environment_variables: Dict[str, str] = Field(default_factory=dict)
    delete_existing_clients: bool = False
    disable_unique_id: bool = False
    no_retry_after_connected: bool = False
    pid_file: Optional[str] = None
    metrics_port: int = Field(
        default=0,
        ge=0,
        le=65535,
        description="Port for the Prometheus metrics endpoint (0: disabled)"
    )

    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        """Normalize the coordinator URL (trailing slash)."""
        if v is None:
            return v
        try:
            return normalize_url(v)
        except SecurityError as e:
            raise ValueError(str(e))

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate node name format."""
        try:
            return validate_node_name(v)
        except SecurityError as e:
            raise ValueError(str(e))

    @field_validator('labels')
    @classmethod
    def validate_labels(cls, v: List[str]) -> List[str]:
        """Flatten whitespace separated entries into single labels."""
        try:
            return validate_label_tokens(v)
        except SecurityError as e:
            raise ValueError(str(e))

    @field_validator('mode')
    @classmethod
    def validate_mode(cls, v: str) -> str:
        """Validate node mode."""
        v = v.lower()
        if v not in NODE_MODES:
            raise ValueError(f"'mode' has an invalid value: '{v}'")
        return v

    @model_validator(mode='after')
    def check_direct_needs_url(self) -> 'AgentConfig':
        """Direct discovery needs a coordinator URL."""
        if self.discovery.mode == 'direct' and not self.url:
            raise ValueError("discovery mode 'direct' requires 'url'")
        return self

    @property
    def has_credentials(self) -> bool:
        """True if both a username and a password are configured."""
        return bool(self.security.username) and self.security.password is not None

    @property
    def fsroot_path(self) -> Path:
        """Absolute remote filesystem root."""
        return Path(self.fsroot).expanduser().absolute()


class AgentConfigFile(BaseModel):
    """Root structure of the agent config file."""
    agent: AgentConfig
