#!/usr/bin/env python3
"""
Swarm Agent - Main entry point.
"""
import os
import sys
import logging
import yaml
import click
import requests
import psutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from swarm_agent.models import AgentConfig, AgentConfigFile, ConfigurationError
from swarm_agent.discovery import DiscoveryResolver
from swarm_agent.registration import RegistrationClient
from swarm_agent.supervisor import ConnectionSupervisor
from swarm_agent.transport import CommandTransport, ExecutionTransport
from swarm_agent.label_watcher import LabelFileWatcher, ProcessRestarter, read_labels_file
from swarm_agent.metrics import start_metrics_server
from swarm_agent.identity import compute_identity_hash
from swarm_agent.trust_policy import TrustConfig, configure_session
from swarm_agent.retry_backoff import RetryError
from swarm_agent.logging_utils import setup_logging, set_correlation_fields
from swarm_agent.security_utils import validate_label_tokens, SecurityError

# Setup logging will be called in cli()
logger = logging.getLogger(__name__)

EXIT_CONFIGURATION_ERROR = 2


def deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge nested dictionaries; values from overrides win.

    Example:
        >>> deep_merge({'retry': {'retry': 3, 'interval': 5}}, {'retry': {'retry': 1}})
        {'retry': {'retry': 1, 'interval': 5}}
    """
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_path: Optional[str], overrides: Optional[Dict[str, Any]] = None) -> AgentConfig:
    """
    Load and validate the agent configuration.

    Args:
        config_path: YAML file with an 'agent' root key, or None
        overrides: Values from the command line, same shape as the 'agent' section

    Returns:
        Validated configuration

    Raises:
        ConfigurationError: If the file is unreadable or the configuration invalid
    """
    data: Dict[str, Any] = {}

    if config_path:
        logger.info(f"Loading configuration from {config_path}")
        try:
            with open(config_path, 'r') as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to read {config_path}: {e}") from e

        if not isinstance(raw, dict) or not isinstance(raw.get('agent'), dict):
            raise ConfigurationError(f"{config_path} has no 'agent' section")

        data = raw['agent']
        security = data.get('security') or {}
        if 'password' in data or 'password' in security:
            raise ConfigurationError(
                "'password' is not allowed in the configuration file; "
                "use 'password_env_variable' or 'password_file'"
            )

    if overrides:
        data = deep_merge(data, overrides)

    try:
        return AgentConfigFile(agent=data).agent
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration:\n{e}") from e


def check_pid_file(pid_file: str) -> None:
    """
    Refuse to start if the PID file names another live process, then write ours.

    Raises:
        ConfigurationError: If another agent is running
    """
    path = Path(pid_file).expanduser()
    if path.exists():
        try:
            old_pid = int(path.read_text().strip())
        except (OSError, ValueError):
            old_pid = None

        # A re-exec keeps the same PID
        if old_pid and old_pid != os.getpid() and psutil.pid_exists(old_pid):
            raise ConfigurationError(
                f"Refusing to start, process {old_pid} from {pid_file} is still running"
            )

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{os.getpid()}\n")
    except OSError as e:
        raise ConfigurationError(f"Cannot write PID file {pid_file}: {e}") from e
    logger.debug(f"Wrote PID {os.getpid()} to {pid_file}")


def remove_pid_file(pid_file: str) -> None:
    path = Path(pid_file).expanduser()
    try:
        if path.exists() and path.read_text().strip() == str(os.getpid()):
            path.unlink()
    except OSError as e:
        logger.warning(f"Failed to remove PID file {pid_file}: {e}")


class Agent:
    """Main agent class."""

    def __init__(
        self,
        config_path: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
        argv: Optional[List[str]] = None,
        extra_labels: Optional[List[str]] = None
    ):
        """
        Initialize agent.

        Args:
            config_path: Path to agent config YAML
            overrides: Command-line values that replace file values
            argv: Command-line arguments, reused for a hard restart
            extra_labels: Labels added on top of the configured ones
        """
        self.config_path = config_path
        self.overrides = overrides or {}
        self.extra_labels = list(extra_labels or [])
        self.argv = list(argv) if argv is not None else sys.argv[1:]
        self.config: Optional[AgentConfig] = None
        self.session: Optional[requests.Session] = None
        self.resolver: Optional[DiscoveryResolver] = None
        self.registration: Optional[RegistrationClient] = None
        self.transport: Optional[ExecutionTransport] = None
        self.supervisor: Optional[ConnectionSupervisor] = None
        self.metrics_server = None
        self._pid_file_written = False

    def load_config(self):
        """Load agent configuration."""
        self.config = load_config(self.config_path, self.overrides)

        if self.extra_labels:
            try:
                self.config.labels = self.config.labels + validate_label_tokens(self.extra_labels)
            except SecurityError as e:
                raise ConfigurationError(str(e)) from e

        logger.info("Configuration loaded successfully")

    def validate_security(self):
        """Resolve credentials; a username needs a password source and vice versa."""
        security = self.config.security
        has_source = bool(
            security.password is not None
            or security.password_env_variable
            or security.password_file
        )

        if security.username and not has_source:
            raise ConfigurationError(
                "'username' requires 'password_env_variable' or 'password_file'"
            )
        if has_source and not security.username:
            raise ConfigurationError("A password source was given without 'username'")

        security.password = security.resolve_password()

        if security.disable_ssl_verification:
            logger.warning("SSL verification is DISABLED - this is insecure for production!")

    def load_labels_file(self):
        """Append the labels file contents to the configured labels."""
        labels_file = self.config.labels_file
        if not labels_file:
            return

        try:
            contents = read_labels_file(labels_file)
        except OSError as e:
            raise ConfigurationError(f"Cannot read labels file {labels_file}: {e}") from e

        try:
            self.config.labels = self.config.labels + validate_label_tokens([contents])
        except SecurityError as e:
            raise ConfigurationError(f"Invalid labels in {labels_file}: {e}") from e

    def prepare_fsroot(self):
        """Make sure the remote filesystem root exists."""
        try:
            self.config.fsroot_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create fsroot {self.config.fsroot}: {e}") from e

    def create_session(self) -> requests.Session:
        """Build the HTTP session shared by every coordinator request."""
        security = self.config.security
        session = requests.Session()

        if self.config.has_credentials:
            # Sent with the first request; the coordinator answers 403, not 401
            session.auth = (security.username, security.password)

        try:
            trust = TrustConfig.from_string(security.ssl_fingerprints)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        return configure_session(session, trust, security.disable_ssl_verification)

    def identity_hash(self) -> str:
        if self.config.disable_unique_id:
            return ""
        return compute_identity_hash(self.config.fsroot_path)

    def start_metrics(self):
        """Start the Prometheus endpoint when a metrics port is configured."""
        port = self.config.metrics_port
        if not port:
            return

        try:
            self.metrics_server, _ = start_metrics_server(port)
        except OSError as e:
            raise ConfigurationError(f"Cannot start metrics endpoint on port {port}: {e}") from e

    def watcher_factory(self):
        """Factory for the label watcher, or None when no labels file is set."""
        if not self.config.labels_file:
            return None

        # The restarted agent registers again and opens its own channel
        restarter = ProcessRestarter(before_restart=self.transport.close)

        def create(candidate, node_name):
            return LabelFileWatcher(
                self.config.labels_file,
                self.registration,
                candidate,
                node_name,
                self.argv,
                restarter=restarter,
                interval=self.config.label_watch_interval
            )

        return create

    def initialize_clients(self):
        """Load configuration and build the HTTP clients, without side effects on disk."""
        self.load_config()
        self.validate_security()
        set_correlation_fields(node_name=self.config.name)

        self.session = self.create_session()
        self.resolver = DiscoveryResolver(self.config, self.session)
        self.registration = RegistrationClient(self.session)
        self.transport = CommandTransport(self.config)

    def initialize(self):
        """Initialize agent components."""
        logger.info("=" * 60)
        logger.info("Swarm agent starting...")
        logger.info("=" * 60)

        self.initialize_clients()
        self.load_labels_file()
        self.prepare_fsroot()

        if self.config.pid_file:
            check_pid_file(self.config.pid_file)
            self._pid_file_written = True

        self.start_metrics()

        self.supervisor = ConnectionSupervisor(
            self.config,
            self.resolver,
            self.registration,
            self.transport,
            watcher_factory=self.watcher_factory(),
            identity_hash=self.identity_hash()
        )

        logger.info("Summary:")
        logger.info(f"  Node name: {self.config.name}")
        logger.info(f"  Coordinator: {self.config.url or '(broadcast discovery)'}")
        logger.info(f"  Executors: {self.config.executors}")
        logger.info(f"  Labels: {' '.join(self.config.labels) or '(none)'}")
        logger.info(f"  Retry: {self.config.retry.retry} ({self.config.retry.backoff.value})")

    def run(self):
        """Run the agent until it exits."""
        try:
            self.initialize()
            self.supervisor.run()
        except KeyboardInterrupt:
            logger.info("Agent stopped by user")
        finally:
            self.shutdown()

    def shutdown(self):
        """Clean shutdown of agent."""
        if self.supervisor is not None:
            self.supervisor.shutdown()
        if self.transport is not None:
            self.transport.close()
        if self.metrics_server is not None:
            self.metrics_server.shutdown()
            self.metrics_server.server_close()
            self.metrics_server = None
        if self.session is not None:
            self.session.close()
        if self._pid_file_written:
            remove_pid_file(self.config.pid_file)
            self._pid_file_written = False


def parse_pairs(values, option: str) -> Dict[str, str]:
    """Parse repeated KEY=VALUE options."""
    result = {}
    for value in values:
        key, sep, item = value.partition('=')
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{value}'", param_hint=option)
        result[key] = item
    return result


def collect_overrides(**options) -> Dict[str, Any]:
    """
    Map command-line options onto the shape of the 'agent' config section.

    Options left at None (or unset flags) do not override anything.
    """
    sections = {
        'retry': 'retry', 'retry_backoff': 'backoff', 'retry_interval': 'interval',
        'max_retry_interval': 'max_interval', 'jitter': 'jitter',
    }
    security_keys = (
        'username', 'password_env_variable', 'password_file',
        'disable_ssl_verification', 'ssl_fingerprints',
    )
    discovery_keys = {'discovery_mode': 'mode', 'broadcast_address': 'broadcast_address'}

    overrides: Dict[str, Any] = {}
    for key, value in options.items():
        if value is None or value is False or value == () or value == {}:
            continue
        if key in sections:
            overrides.setdefault('retry', {})[sections[key]] = value
        elif key in security_keys:
            overrides.setdefault('security', {})[key] = value
        elif key in discovery_keys:
            overrides.setdefault('discovery', {})[discovery_keys[key]] = value
        else:
            overrides[key] = value
    return overrides


@click.group()
@click.option(
    '--config', '-c',
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help='Path to agent configuration file'
)
@click.option(
    '--log-level', '-l',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    help='Override log level from config'
)
@click.pass_context
def cli(ctx, config, log_level):
    """Swarm Agent - registers this machine as a build node with a coordinator."""
    level = "INFO"
    json_format = False
    log_file = None
    module_levels = {}

    if config:
        try:
            with open(config, 'r') as f:
                config_data = yaml.safe_load(f) or {}
            logging_config = (config_data.get('agent') or {}).get('logging') or {}
            level = logging_config.get('level', 'INFO')
            json_format = logging_config.get('json_format', False)
            log_file = logging_config.get('file')
            module_levels = logging_config.get('module_levels', {})
        except (OSError, yaml.YAMLError, AttributeError):
            # Reported properly once the command loads the configuration
            pass

    if log_level:
        level = log_level

    setup_logging(
        level=level,
        json_output=json_format,
        log_file=log_file,
        module_levels=module_levels
    )

    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj.setdefault('argv', sys.argv[1:])


@cli.command()
@click.option('--url', '-u', help='Coordinator URL, e.g. http://server:8080/jenkins/')
@click.option('--name', '-n', help='Node name (default: host name)')
@click.option('--description', '-d', help='Node description')
@click.option('--executors', type=int, help='Number of executors')
@click.option('--fsroot', type=click.Path(file_okay=False), help='Directory where the coordinator places files')
@click.option('--label', 'labels', multiple=True, help='Whitespace-separated labels; may be repeated')
@click.option('--labels-file', type=click.Path(dir_okay=False), help='Labels file, watched for changes')
@click.option('--mode', type=click.Choice(['normal', 'exclusive'], case_sensitive=False), help='Node usage mode')
@click.option('--tool-location', '-t', 'tool_locations', multiple=True, help='Tool location as NAME=PATH; may be repeated')
@click.option('--env', '-e', 'environment_variables', multiple=True, help='Environment variable as KEY=VALUE; may be repeated')
@click.option('--delete-existing-clients', is_flag=True, help='Delete an existing node with the same name')
@click.option('--disable-unique-id', is_flag=True, help='Do not send the machine identity hash')
@click.option('--no-retry-after-connected', is_flag=True, help='Exit when an established connection closes')
@click.option('--retry', type=int, help='Number of attempts before giving up (-1: unlimited)')
@click.option('--retry-backoff', type=click.Choice(['none', 'linear', 'exponential'], case_sensitive=False),
              help='How the wait between attempts grows')
@click.option('--retry-interval', type=int, help='Base wait between attempts in seconds')
@click.option('--max-retry-interval', type=int, help='Upper bound for the wait in seconds')
@click.option('--jitter', is_flag=True, help='Randomize each wait within [0, wait]')
@click.option('--discovery-mode', type=click.Choice(['auto', 'broadcast', 'direct'], case_sensitive=False),
              help='How to find the coordinator')
@click.option('--broadcast-address', help='UDP broadcast address')
@click.option('--username', help='Coordinator user name')
@click.option('--password-env-variable', help='Environment variable holding the password')
@click.option('--password-file', type=click.Path(dir_okay=False), help='File holding the password')
@click.option('--disable-ssl-verification', is_flag=True, help='Accept any TLS certificate')
@click.option('--ssl-fingerprints', help='Whitespace-separated SHA-256 fingerprints of accepted certificates')
@click.option('--pid-file', type=click.Path(dir_okay=False), help='File to write the process ID to')
@click.option('--metrics-port', type=click.IntRange(0, 65535), help='Serve Prometheus metrics on this port (0: disabled)')
@click.pass_context
def run(ctx, labels, tool_locations, environment_variables, **options):
    """Connect to a coordinator and serve as a build node."""
    options['tool_locations'] = parse_pairs(tool_locations, '--tool-location')
    options['environment_variables'] = parse_pairs(environment_variables, '--env')
    overrides = collect_overrides(**options)

    agent = Agent(ctx.obj['config_path'], overrides, argv=ctx.obj['argv'], extra_labels=labels)
    try:
        agent.run()
    except ConfigurationError as e:
        logger.error(f"{e}")
        sys.exit(EXIT_CONFIGURATION_ERROR)


@cli.command()
@click.pass_context
def discover(ctx):
    """Find a coordinator once and print its URL."""
    agent = Agent(ctx.obj['config_path'], argv=ctx.obj['argv'])
    try:
        agent.initialize_clients()
        candidate = agent.resolver.resolve()
    except ConfigurationError as e:
        logger.error(f"{e}")
        sys.exit(EXIT_CONFIGURATION_ERROR)
    except (RetryError, requests.RequestException, OSError) as e:
        logger.error(f"Discovery failed: {e}")
        sys.exit(1)
    finally:
        agent.shutdown()

    click.echo(candidate.url)


@cli.command()
@click.argument('path', required=False, default='.', type=click.Path())
def identity(path):
    """Print the identity hash for PATH (default: current directory)."""
    click.echo(compute_identity_hash(path))


def main():
    """Main entry point."""
    cli(obj={'argv': sys.argv[1:]})


if __name__ == "__main__":
    main()
