#!/usr/bin/env python3
"""k8s-ingress-hosts - Kubernetes Ingress hostnames in your hosts file

Reads every Ingress in the cluster selected by a kubeconfig and maps each rule
host to the address of the cluster API endpoint, inside a managed block of a
hosts file. Runs once by default; with --watch it stays resident and rewrites
the block after every Ingress change.

Managed block format:

    # generated using k8s-ingress-hosts start #
    10.0.0.5 api.dev.local     # api
    10.0.0.5 web.dev.local     # web

    # generated using k8s-ingress-hosts end #

Command line:

    --host-file PATH      Hosts file to manage (default: platform hosts file)
    --write               Rewrite the hosts file (default: print the entries only)
    --watch               Keep running and follow Ingress changes
    --kubeconfig PATH     Kubeconfig to use (default: ~/.kube/config)
    --config PATH         Optional YAML settings file
    --log-level LEVEL     DEBUG, INFO, WARNING, ERROR
    --version             Show version and exit (status 2)

Environment variables:

    K8S_INGRESS_HOSTS_CONFIG   YAML settings file path (same as --config).
                               Example file:
                                 host_file: /etc/hosts
                                 kubeconfig: ~/.kube/dev-cluster
                                 write: true
                                 watch: false
    LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)

Command line flags win over the settings file, which wins over the defaults.
"""

from __future__ import annotations

import argparse
import ipaddress
import logging
import os
import re
import socket
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlparse

import yaml
from kubernetes import client, config
from kubernetes.watch import Watch

PROJECT_NAME = "k8s-ingress-hosts"
PROJECT_URL = "https://github.com/getditto/k8s-ingress-hosts"
VERSION = "0.1.0"

SECTION_START = "# generated using k8s-ingress-hosts start #"
SECTION_END = "# generated using k8s-ingress-hosts end #"

SECTION_RE = re.compile(
    rf"{re.escape(SECTION_START)}(.*){re.escape(SECTION_END)}\n?",
    re.MULTILINE | re.DOTALL,
)

# Spaces between the widest "<address> <domain>" cell and the comment column.
COLUMN_PADDING = 2

CONFIG_ENV_VAR = "K8S_INGRESS_HOSTS_CONFIG"
SETTINGS_KEYS = {"host_file", "kubeconfig", "write", "watch"}

logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class IngressHostsError(Exception):
    """Base class for errors that stop the program."""


class ConfigError(IngressHostsError):
    """Settings file is missing or malformed."""


class ResolveError(IngressHostsError):
    """Cluster endpoint could not be turned into an IP address."""


class HostsFileError(IngressHostsError):
    """Hosts file could not be read or written."""


# =============================================================================
# Logging Setup
# =============================================================================


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# Data Classes
# =============================================================================


class EventType(Enum):
    """Kind of change reported by the Ingress change feed."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class Rule:
    """A hostname declared by an Ingress rule, and the Ingress that owns it."""

    domain: str
    owner: str


@dataclass(frozen=True)
class IngressObject:
    """Ingress name plus the host of each of its rules, in declaration order."""

    name: str
    hosts: Tuple[str, ...] = ()


@dataclass(frozen=True)
class IngressEvent:
    type: EventType
    ingress: IngressObject


@dataclass(frozen=True)
class Settings:
    """Startup configuration after merging flags, settings file and defaults."""

    host_file: str
    kubeconfig: str
    write: bool = False
    watch: bool = False


@dataclass(frozen=True)
class AppContext:
    """Everything the syncer needs, built once at startup."""

    settings: Settings
    address: str


# =============================================================================
# Configuration
# =============================================================================


def home_dir() -> str:
    return os.getenv("HOME") or os.getenv("USERPROFILE") or ""


def default_hosts_file() -> str:
    """Return the hosts file location of the running platform."""
    if os.name == "nt":
        system_root = os.getenv("SystemRoot", r"C:\Windows")
        return os.path.join(system_root, "System32", "drivers", "etc", "hosts")
    return "/etc/hosts"


def default_kubeconfig() -> str:
    return os.path.join(home_dir(), ".kube", "config")


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROJECT_NAME,
        description="Write Kubernetes Ingress hostnames into a managed block of a hosts file.",
    )
    parser.add_argument("--host-file", help="host file location")
    parser.add_argument(
        "--write", action="store_true", default=None, help="rewrite host file?"
    )
    parser.add_argument("--version", action="store_true", help="show version and exit")
    parser.add_argument("--kubeconfig", help="absolute path to the kubeconfig file")
    parser.add_argument(
        "--watch", action="store_true", default=None, help="watch for changes"
    )
    parser.add_argument("--config", help=f"YAML settings file (env: {CONFIG_ENV_VAR})")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR (env: LOG_LEVEL)")
    return parser


def load_settings_file(path: str) -> Dict[str, Any]:
    """Load the optional YAML settings file.

    Args:
        path: Path to the settings file

    Returns:
        Mapping of setting name to raw value (empty for an empty file)
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Failed to read settings file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in settings file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Settings file {path} must contain a mapping, got {type(data).__name__}"
        )

    unknown = sorted(str(key) for key in data if key not in SETTINGS_KEYS)
    if unknown:
        logger.warning(f"Ignoring unknown settings in {path}: {', '.join(unknown)}")
    return data


def load_settings(
    args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """Merge command line flags, the settings file and built-in defaults."""
    environ = os.environ if environ is None else environ
    config_path = args.config or environ.get(CONFIG_ENV_VAR, "").strip()
    file_settings = load_settings_file(config_path) if config_path else {}

    host_file = (
        args.host_file
        or str(file_settings.get("host_file") or "").strip()
        or default_hosts_file()
    )
    kubeconfig = (
        args.kubeconfig
        or str(file_settings.get("kubeconfig") or "").strip()
        or default_kubeconfig()
    )
    write = (
        args.write
        if args.write is not None
        else _parse_bool(file_settings.get("write"), default=False)
    )
    watch = (
        args.watch
        if args.watch is not None
        else _parse_bool(file_settings.get("watch"), default=False)
    )

    return Settings(
        host_file=os.path.expanduser(host_file),
        kubeconfig=os.path.expanduser(kubeconfig),
        write=write,
        watch=watch,
    )


# =============================================================================
# Ingress Source Interface and Implementations
# =============================================================================


class IngressSource(ABC):
    """Abstract source of Ingress objects and their changes."""

    @property
    @abstractmethod
    def endpoint(self) -> str:
        """Return the URL of the cluster API endpoint."""
        pass

    @abstractmethod
    def list_all(self) -> List[IngressObject]:
        """List every Ingress in every namespace."""
        pass

    @abstractmethod
    def watch(self) -> Iterator[IngressEvent]:
        """Yield Ingress changes that happen after the last listing."""
        pass


class KubernetesIngressSource(IngressSource):
    """Ingress source backed by the official Kubernetes Python client."""

    def __init__(self, kubeconfig: str):
        self._kubeconfig = kubeconfig
        self._configuration = client.Configuration()
        config.load_kube_config(
            config_file=kubeconfig, client_configuration=self._configuration
        )
        self._api = client.NetworkingV1Api(client.ApiClient(self._configuration))
        self._resource_version: Optional[str] = None

    @property
    def endpoint(self) -> str:
        return self._configuration.host

    def list_all(self) -> List[IngressObject]:
        ingresses = self._api.list_ingress_for_all_namespaces()
        if ingresses.metadata is not None:
            self._resource_version = ingresses.metadata.resource_version
        items = [_to_ingress_object(item) for item in ingresses.items or []]
        logger.info(f"Found {len(items)} ingress(es) via {self._kubeconfig}")
        return items

    def watch(self) -> Iterator[IngressEvent]:
        kwargs: Dict[str, Any] = {}
        # Without a resource version the server replays every existing Ingress as ADDED.
        if self._resource_version:
            kwargs["resource_version"] = self._resource_version

        for raw in Watch().stream(self._api.list_ingress_for_all_namespaces, **kwargs):
            # ERROR events never get here: Watch.stream raises ApiException for them.
            event_type = raw.get("type")
            try:
                kind = EventType(event_type)
            except ValueError:
                logger.debug(f"Skipping {event_type} watch event")
                continue

            yield IngressEvent(type=kind, ingress=_to_ingress_object(raw["object"]))


def _to_ingress_object(item: Any) -> IngressObject:
    """Convert a V1Ingress into an IngressObject. Rules without a host map to ""."""
    rules = (item.spec.rules if item.spec is not None else None) or []
    return IngressObject(
        name=item.metadata.name,
        hosts=tuple(rule.host or "" for rule in rules),
    )


def create_ingress_source(settings: Settings) -> IngressSource:
    """Factory function to create the Ingress source for the configured cluster."""
    return KubernetesIngressSource(settings.kubeconfig)


# =============================================================================
# Entry Resolver
# =============================================================================


def resolve_entry_address(endpoint: str) -> str:
    """Resolve the cluster API endpoint URL to a single IP address.

    Literal IPs are returned unchanged; hostnames get a forward lookup and the
    first returned address wins.
    """
    try:
        hostname = urlparse(endpoint).hostname
    except ValueError as e:
        raise ResolveError(f"Invalid cluster endpoint '{endpoint}': {e}") from e
    if not hostname:
        raise ResolveError(f"Cluster endpoint '{endpoint}' has no hostname")

    try:
        ipaddress.ip_address(hostname)
        return hostname
    except ValueError:
        pass

    try:
        addr_info = socket.getaddrinfo(hostname, None)
    except socket.gaierror as e:
        raise ResolveError(f"k8s hostname {hostname} not found: {e}") from e
    if not addr_info:
        raise ResolveError(f"k8s hostname {hostname} not found")

    # info[4] is the sockaddr tuple, [0] is the IP address
    return addr_info[0][4][0]


# =============================================================================
# Rule Store
# =============================================================================


class RuleStore:
    """In-memory list of rules; duplicates are allowed."""

    def __init__(self, rules: Optional[Iterable[Rule]] = None):
        self._rules: List[Rule] = list(rules or [])

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self) -> Iterator[Rule]:
        return iter(self._rules)

    def append(self, rule: Rule) -> None:
        self._rules.append(rule)

    def update_owner_domain(self, owner: str, new_domain: str) -> bool:
        """Overwrite the domain of the first rule owned by `owner`."""
        for rule in self._rules:
            if rule.owner == owner:
                rule.domain = new_domain
                return True
        return False

    def remove_owner_domain(self, owner: str, domain: str) -> bool:
        """Remove the first rule matching both owner and domain."""
        for i, rule in enumerate(self._rules):
            if rule.owner == owner and rule.domain == domain:
                del self._rules[i]
                return True
        return False

    def sorted_view(self) -> List[Rule]:
        return sorted(self._rules, key=lambda rule: rule.domain.lower())


# =============================================================================
# Renderer
# =============================================================================


def render_rules(rules: Iterable[Rule], address: str) -> str:
    """Format rules as aligned hosts file lines.

    Each line is "<address> <domain>" padded to a shared comment column,
    followed by "# <owner>". Rules without a domain produce no line.
    """
    rows: List[Tuple[str, str]] = []
    for rule in rules:
        if not rule.domain:
            logger.debug(f"Skipping rule without host from ingress '{rule.owner}'")
            continue
        rows.append((f"{address} {rule.domain}", f"# {rule.owner}"))

    if not rows:
        return ""

    width = max(len(cell) for cell, _ in rows) + COLUMN_PADDING
    return "".join(f"{cell.ljust(width)}{comment}\n" for cell, comment in rows)


# =============================================================================
# Hosts File
# =============================================================================


def build_block(body: str) -> str:
    return f"{SECTION_START}\n{body}\n{SECTION_END}\n"


def apply_block(content: str, body: str) -> str:
    """Replace the managed block in `content` with one wrapping `body`.

    The block is appended when `content` has none. Everything outside the
    block is kept verbatim.
    """
    block = build_block(body)
    new_content, count = SECTION_RE.subn(lambda _: block, content, count=1)
    if count:
        return new_content

    if content and not content.endswith("\n"):
        content += "\n"
    return content + block


class HostsFile:
    def __init__(self, path: str):
        self.path = Path(path)

    def read(self) -> str:
        try:
            with open(self.path, "r", encoding="utf-8", errors="surrogateescape", newline="") as f:
                return f.read()
        except OSError as e:
            raise HostsFileError(f"Failed to read hosts file {self.path}: {e}") from e

    def write(self, content: str) -> None:
        try:
            with open(self.path, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
                f.write(content)
        except OSError as e:
            raise HostsFileError(f"Failed to write hosts file {self.path}: {e}") from e

    def sync(self, body: str) -> None:
        """Rewrite the managed block with `body` and echo it to stdout."""
        self.write(apply_block(self.read(), body))
        logger.debug(f"Updated managed block in {self.path}")
        print(body)


# =============================================================================
# Core Syncer
# =============================================================================


class HostsSyncer:
    def __init__(
        self,
        *,
        ctx: AppContext,
        source: IngressSource,
        store: Optional[RuleStore] = None,
    ):
        self.ctx = ctx
        self.source = source
        self.store = store if store is not None else RuleStore()

    def load_initial(self) -> None:
        for ingress in self.source.list_all():
            for host in ingress.hosts:
                self.store.append(Rule(domain=host, owner=ingress.name))
        logger.debug(f"Loaded {len(self.store)} rule(s) from the initial listing")

    def apply_event(self, event: IngressEvent) -> None:
        ingress = event.ingress

        if event.type == EventType.ADDED:
            logger.info(f"ingress added: {ingress.name}")
            for host in ingress.hosts:
                self.store.append(Rule(domain=host, owner=ingress.name))

        elif event.type == EventType.MODIFIED:
            logger.info(f"ingress modified: {ingress.name}")
            # Only the first rule of a modified Ingress is tracked.
            if not ingress.hosts:
                logger.warning(f"Ingress '{ingress.name}' has no rules; keeping its entries")
                return
            if not self.store.update_owner_domain(ingress.name, ingress.hosts[0]):
                logger.debug(f"No entry owned by '{ingress.name}' to update")

        elif event.type == EventType.DELETED:
            logger.info(f"ingress deleted: {ingress.name}")
            for host in ingress.hosts:
                self.store.remove_owner_domain(ingress.name, host)

    def publish(self, body: str) -> None:
        if not self.ctx.settings.write:
            print(body)
            return
        HostsFile(self.ctx.settings.host_file).sync(body)

    def sync(self) -> str:
        body = render_rules(self.store.sorted_view(), self.ctx.address)
        self.publish(body)
        return body

    def run(self) -> None:
        self.load_initial()
        self.sync()

        if not self.ctx.settings.watch:
            return

        logger.info("watching k8s ingress resources...")
        for event in self.source.watch():
            self.apply_event(event)
            self.sync()
        logger.warning("Ingress watch stream ended")


# =============================================================================
# Main
# =============================================================================


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.version:
        print(f"{PROJECT_NAME}\n url: {PROJECT_URL}\n version: {VERSION}")
        sys.exit(2)

    configure_logging(args.log_level or os.getenv("LOG_LEVEL", "INFO"))

    try:
        settings = load_settings(args)
        logger.info("reading k8s ingress resources...")
        source = create_ingress_source(settings)
        ctx = AppContext(settings=settings, address=resolve_entry_address(source.endpoint))
        logger.info(f"Cluster endpoint {source.endpoint} -> {ctx.address}")
        if settings.write:
            logger.info(f"Managing hosts file: {settings.host_file}")

        HostsSyncer(ctx=ctx, source=source).run()

    except KeyboardInterrupt:
        logger.info("Shutting down...")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=logger.isEnabledFor(logging.DEBUG))
        sys.exit(1)


if __name__ == "__main__":
    main()
