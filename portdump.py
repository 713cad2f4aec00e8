#!/usr/bin/env python3
"""
portdump.py

Multi-port connection capture.

Listens on every configured target (value[/protocol]) and, for each accepted
connection, writes every received byte into its own file under the log
directory. Nothing is parsed or answered; bytes land on disk as they arrive.

Per-connection behavior:
  - An ABSOLUTE deadline is armed at accept time (default 10s). Traffic does
    not refresh it: a connection that keeps sending is still cut at
    accepted_at + deadline.
  - Log file name: <RFC3339 accept time>_<local addr>-<remote addr>, passed
    through a path-safe character filter. Two connections accepted in the
    same second on the same endpoint pair get the same name.
  - If the log file can't be created the connection is still drained
    (bytes discarded) until EOF or the deadline.

Failure policy:
  - Bad targets, unknown protocols, bind/listen failures: fatal, before
    anything is served.
  - Accept errors: fatal for the whole process by default
    (--accept-errors isolate drops only the failing listener).
  - Per-connection errors: logged, only that capture is lost.

Shutdown:
  - On Ctrl+C / SIGTERM: print a notice and exit. In-flight captures are
    not drained.

Usage:
  python3 portdump.py 8080 ssh 2323/tcp4
  python3 portdump.py --logs /var/lib/portdump --host 127.0.0.1 8080
  python3 portdump.py --config portdump.conf
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import json
import logging
import os
import re
import signal
import socket
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, BinaryIO, Dict, List, Optional, Set, Tuple, Union

DEFAULT_LOGS = "logs"
DEFAULT_HOST = "0.0.0.0"
WILDCARD_HOSTS = ("", "0.0.0.0", "::")
DEFAULT_DEADLINE_SEC = 10.0
DEFAULT_CHUNK_SIZE = 32 * 1024

ACCEPT_ERRORS_FATAL = "fatal"
ACCEPT_ERRORS_ISOLATE = "isolate"
ACCEPT_ERROR_POLICIES = (ACCEPT_ERRORS_FATAL, ACCEPT_ERRORS_ISOLATE)


# =============================================================================
# Errors
# =============================================================================

class PortdumpError(Exception):
    """Base for every error that ends the process."""


class ConfigError(PortdumpError):
    pass


class UnsupportedProtocolError(ConfigError):
    pass


class ListenerError(PortdumpError):
    pass


# =============================================================================
# Small utilities
# =============================================================================

def clamp_int(v: Any, default: int, lo: int, hi: int) -> int:
    try:
        iv = int(v)
    except Exception:
        return default
    if iv < lo:
        return lo
    if iv > hi:
        return hi
    return iv


def clamp_float(v: Any, default: float, lo: float, hi: float) -> float:
    try:
        fv = float(v)
    except Exception:
        return default
    if fv != fv:  # NaN
        return default
    return min(max(fv, lo), hi)


def get_path(d: Dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = d
    for part in path.split("."):
        if not isinstance(cur, dict):
            return default
        if part not in cur:
            return default
        cur = cur[part]
    return cur


def first_set(*values: Any) -> Any:
    for v in values:
        if v is not None:
            return v
    return None


def parse_level(s: Any, default: int) -> int:
    if not s:
        return default
    name = str(s).strip().upper()
    level = getattr(logging, name, default)
    return level if isinstance(level, int) else default


# =============================================================================
# "json-ish" loader (unquoted keys, comments, trailing commas)
# =============================================================================

_KEY_RE = re.compile(r'(?m)(^|\s|[{,])([A-Za-z_][A-Za-z0-9_-]*)(\s*):')
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_LINE_COMMENT_RE = re.compile(r"(?m)^\s*(//|#).*$")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)


def _jsonish_to_json(text: str) -> str:
    text = _BLOCK_COMMENT_RE.sub("", text)
    text = _LINE_COMMENT_RE.sub("", text)

    def _repl(m: re.Match) -> str:
        prefix, key, suffix = m.group(1), m.group(2), m.group(3)
        return f'{prefix}"{key}"{suffix}:'

    text = _KEY_RE.sub(_repl, text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    return text


def load_config(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise ConfigError(f"error reading config {path!r}: {e}") from e

    try:
        cfg = json.loads(raw)
    except ValueError:
        norm = _jsonish_to_json(raw)
        try:
            cfg = json.loads(norm)
        except ValueError as e:
            raise ConfigError(f"Config parse error for {path}:\n{e}\n\nNormalized text:\n{norm}") from e

    if not isinstance(cfg, dict):
        raise ConfigError(f"Config {path} must hold an object at the top level")
    return cfg


# =============================================================================
# Targets: value[/protocol] -> PortSpec
# =============================================================================

class Network(str, enum.Enum):
    TCP = "tcp"
    TCP4 = "tcp4"
    TCP6 = "tcp6"
    UDP = "udp"
    UDP4 = "udp4"
    UDP6 = "udp6"

    @property
    def is_stream(self) -> bool:
        return self in (Network.TCP, Network.TCP4, Network.TCP6)

    @property
    def service_proto(self) -> str:
        # protocol column of the services database
        return "tcp" if self.is_stream else "udp"

    @property
    def family(self) -> int:
        if self.value.endswith("4"):
            return socket.AF_INET
        if self.value.endswith("6"):
            return socket.AF_INET6
        return socket.AF_UNSPEC


@dataclass(frozen=True)
class PortSpec:
    port: int
    network: Network = Network.TCP

    def __str__(self) -> str:
        return f"{self.port}/{self.network.value}"


def lookup_port(network: Network, value: str) -> int:
    """
    Numeric literal or a service name known for the network's protocol
    (getservbyname), e.g. ("ssh", tcp) -> 22.
    """
    if not value:
        raise ConfigError("empty port")
    if value.isascii() and value.isdigit():
        port = int(value)
    else:
        try:
            port = socket.getservbyname(value, network.service_proto)
        except OSError as e:
            raise ConfigError(f"unknown port: {e}") from e
    if not 1 <= port <= 65535:
        raise ConfigError(f"port {port} out of range 1..65535")
    return port


def parse_target(token: str) -> PortSpec:
    parts = token.split("/")
    if len(parts) > 2:
        raise ConfigError(f"target {token!r} invalid: expected value[/protocol]")

    value = parts[0].strip()
    proto = parts[1].strip().lower() if len(parts) == 2 else Network.TCP.value

    try:
        network = Network(proto)
    except ValueError:
        raise ConfigError(f'port "{value}" proto "{proto}" invalid: unknown network {proto}') from None

    try:
        port = lookup_port(network, value)
    except ConfigError as e:
        raise ConfigError(f'port "{value}" proto "{proto}" invalid: {e}') from e

    return PortSpec(port=port, network=network)


# =============================================================================
# Log file naming
# =============================================================================

# (lo, hi, replacement); first matching inclusive range wins, None keeps the
# character, anything outside every range is dropped.
PATH_SAFE_RANGES: Tuple[Tuple[str, str, Optional[str]], ...] = (
    (" ", ",", "_"),
    ("-", ".", None),
    ("0", ":", None),
    ("A", "~", None),
)


def path_safe(ch: str) -> str:
    for lo, hi, repl in PATH_SAFE_RANGES:
        if lo <= ch <= hi:
            return ch if repl is None else repl
    return ""


def sanitize_filename(s: str) -> str:
    return "".join(path_safe(ch) for ch in s)


def rfc3339(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.astimezone()
    if ts.utcoffset() == timedelta(0):
        return ts.strftime("%Y-%m-%dT%H:%M:%SZ")
    return ts.isoformat(timespec="seconds")


def format_addr(addr: Any) -> str:
    if isinstance(addr, tuple) and len(addr) >= 2:
        host, port = str(addr[0]), addr[1]
        if ":" in host:
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(addr)


def build_log_name(logs_dir: str, accepted_at: datetime, local_addr: str, remote_addr: str) -> str:
    return os.path.join(logs_dir, sanitize_filename(f"{rfc3339(accepted_at)}_{local_addr}-{remote_addr}"))


# =============================================================================
# Connection capture
# =============================================================================

@dataclass(frozen=True)
class CaptureSettings:
    logs_dir: str
    deadline_sec: float = DEFAULT_DEADLINE_SEC
    chunk_size: int = DEFAULT_CHUNK_SIZE


@dataclass
class CapturedConnection:
    accepted_at: datetime
    local_addr: str
    remote_addr: str
    deadline: float  # event loop clock, never moved once set
    path: str
    received: int = 0

    @classmethod
    def open(
        cls,
        sock: socket.socket,
        settings: CaptureSettings,
        *,
        accepted_at: Optional[datetime] = None,
        accepted_clock: Optional[float] = None,
    ) -> "CapturedConnection":
        """
        Arm the deadline and pin the endpoints; OSError if the socket is
        already gone. accepted_at / accepted_clock are the wall-clock and
        loop-clock instants of the accept, "now" when not given.
        """
        if accepted_at is None:
            accepted_at = datetime.now().astimezone()
        if accepted_clock is None:
            accepted_clock = asyncio.get_running_loop().time()
        deadline = accepted_clock + settings.deadline_sec
        local_addr = format_addr(sock.getsockname())
        remote_addr = format_addr(sock.getpeername())
        return cls(
            accepted_at=accepted_at,
            local_addr=local_addr,
            remote_addr=remote_addr,
            deadline=deadline,
            path=build_log_name(settings.logs_dir, accepted_at, local_addr, remote_addr),
        )

    def remaining(self) -> float:
        return self.deadline - asyncio.get_running_loop().time()


class NullSink:
    """Stands in for a log file that could not be created. Drops everything."""

    def write(self, data: bytes) -> int:
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass


Sink = Union[BinaryIO, NullSink]


async def copy_until_deadline(
    reader: asyncio.StreamReader,
    sink: Sink,
    conn: CapturedConnection,
    chunk_size: int,
) -> None:
    """
    Copy reader -> sink until EOF, counting into conn.received. Raises
    asyncio.TimeoutError once the connection's deadline has passed.
    """
    while True:
        remaining = conn.remaining()
        if remaining <= 0:
            raise asyncio.TimeoutError()
        data = await asyncio.wait_for(reader.read(chunk_size), timeout=remaining)
        if not data:
            return
        sink.write(data)
        sink.flush()
        conn.received += len(data)


async def capture_connection(
    sock: socket.socket,
    settings: CaptureSettings,
    *,
    log: logging.Logger,
    accepted_at: Optional[datetime] = None,
    accepted_clock: Optional[float] = None,
) -> None:
    try:
        conn = CapturedConnection.open(sock, settings, accepted_at=accepted_at, accepted_clock=accepted_clock)
    except OSError as e:
        log.error("error setting connection deadline: %s", e)
        sock.close()
        return

    sink: Sink
    try:
        sink = open(conn.path, "wb")
    except (OSError, ValueError) as e:
        # ValueError: NUL byte in the configured directory
        log.error("error creating logfile %r: %s", conn.path, e)
        sink = NullSink()

    writer: Optional[asyncio.StreamWriter] = None
    try:
        log.info("starting connection, logging to: %s", conn.path)
        reader, writer = await asyncio.open_connection(sock=sock)
        await copy_until_deadline(reader, sink, conn, settings.chunk_size)
    except asyncio.TimeoutError:
        log.info("closing connection %s (%d bytes)", conn.path, conn.received)
    except OSError as e:
        log.error("error copying connection: %s", e)
    finally:
        sink.close()
        if writer is not None:
            writer.close()
        else:
            sock.close()


# =============================================================================
# Listeners
# =============================================================================

@dataclass(frozen=True)
class ListenerResult:
    """Why a listener's accept loop stopped."""

    spec: PortSpec
    error: BaseException


class ListenerManager:
    def __init__(
        self,
        spec: PortSpec,
        *,
        host: str,
        settings: CaptureSettings,
        log: logging.Logger,
    ) -> None:
        if spec.network.is_stream:
            self.family = spec.network.family
        elif spec.network in (Network.UDP, Network.UDP4, Network.UDP6):
            raise UnsupportedProtocolError(
                f"protocol {spec.network.value!r} on port {spec.port} is not a stream protocol; only tcp/tcp4/tcp6 can be captured"
            )
        else:
            raise UnsupportedProtocolError(f"unhandled network {spec.network!r}")

        self.spec = spec
        self.host = host
        self.settings = settings
        self.log = log
        self.address = format_addr((host, spec.port))

        self.accepted = 0
        self.captures: Set[asyncio.Task[None]] = set()
        self._sock: Optional[socket.socket] = None

    @property
    def bound_port(self) -> int:
        if self._sock is None:
            return self.spec.port
        return self._sock.getsockname()[1]

    def _dual_stack_socket(self) -> Optional[Tuple[socket.socket, Any]]:
        """IPv6 wildcard socket that also takes IPv4 clients; None where IPv6 is unavailable."""
        if not socket.has_ipv6:
            return None
        try:
            sock = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
        except OSError:
            return None
        try:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        except OSError:
            sock.close()
            return None
        return sock, ("::", self.spec.port)

    async def _resolve(self) -> Tuple[socket.socket, Any]:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(
                self.host or None,
                self.spec.port,
                family=self.family,
                type=socket.SOCK_STREAM,
                flags=socket.AI_PASSIVE,
            )
        except OSError as e:
            raise ListenerError(f"error resolving tcp address {self.address!r}: {e}") from e
        if not infos:
            raise ListenerError(f"error resolving tcp address {self.address!r}: no addresses")

        af, socktype, proto, _canon, sockaddr = infos[0]
        try:
            return socket.socket(af, socktype, proto), sockaddr
        except OSError as e:
            raise ListenerError(f"error listening on tcp address {self.address!r}: {e}") from e

    async def bind(self) -> None:
        print(f"Listening on {self.spec}", flush=True)

        # plain tcp on an all-interfaces host listens on both address families
        pair = None
        if self.spec.network is Network.TCP and self.host in WILDCARD_HOSTS:
            pair = self._dual_stack_socket()
        if pair is None:
            pair = await self._resolve()

        sock, sockaddr = pair
        af = sock.family
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if af == socket.AF_INET6 and self.spec.network is Network.TCP6:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
            sock.bind(sockaddr)
            sock.listen(socket.SOMAXCONN)
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            raise ListenerError(f"error listening on tcp address {self.address!r}: {e}") from e

        self._sock = sock

    async def serve(self) -> ListenerResult:
        """
        Accept loop. Every connection gets its own capture task; the loop
        never waits on them. An accept error closes this listener and is
        returned, the caller decides how far it reaches.
        """
        if self._sock is None:
            await self.bind()
        assert self._sock is not None
        loop = asyncio.get_running_loop()

        while True:
            try:
                conn, _peer = await loop.sock_accept(self._sock)
            except OSError as e:
                self.close()
                return ListenerResult(self.spec, e)

            accepted_clock = loop.time()
            accepted_at = datetime.now().astimezone()
            self.accepted += 1
            task = asyncio.create_task(
                capture_connection(
                    conn, self.settings, log=self.log, accepted_at=accepted_at, accepted_clock=accepted_clock
                )
            )
            self.captures.add(task)
            task.add_done_callback(self.captures.discard)

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None


# =============================================================================
# Shutdown
# =============================================================================

class ShutdownCoordinator:
    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self) -> None:
        self._stop = asyncio.Event()

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in self.SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.request_stop))

    def request_stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def wait(self) -> None:
        await self._stop.wait()
        print("Shutting down ...", flush=True)
        print("Done.", flush=True)


# =============================================================================
# Service
# =============================================================================

@dataclass(frozen=True)
class Settings:
    targets: Tuple[str, ...]
    logs: str = DEFAULT_LOGS
    host: str = DEFAULT_HOST
    deadline_sec: float = DEFAULT_DEADLINE_SEC
    chunk_size: int = DEFAULT_CHUNK_SIZE
    accept_errors: str = ACCEPT_ERRORS_FATAL

    def capture(self) -> CaptureSettings:
        return CaptureSettings(logs_dir=self.logs, deadline_sec=self.deadline_sec, chunk_size=self.chunk_size)


class Service:
    def __init__(self, settings: Settings, log: logging.Logger) -> None:
        self.settings = settings
        self.log = log

        # every target is resolved before a single socket exists
        self.specs: List[PortSpec] = [parse_target(t) for t in settings.targets]

        capture = settings.capture()
        self.listeners: List[ListenerManager] = [
            ListenerManager(spec, host=settings.host, settings=capture, log=log) for spec in self.specs
        ]
        self.shutdown = ShutdownCoordinator()

    async def start(self) -> None:
        for listener in self.listeners:
            await listener.bind()

    async def run(self) -> int:
        """Serve until a termination signal (0) or a fatal listener failure (1)."""
        self.shutdown.install()
        await self.start()

        serving: Dict[asyncio.Task[ListenerResult], ListenerManager] = {
            asyncio.create_task(listener.serve()): listener for listener in self.listeners
        }
        stop_task = asyncio.create_task(self.shutdown.wait())
        pending: Set[asyncio.Task[Any]] = set(serving) | {stop_task}

        while True:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            if stop_task in done:
                return 0

            for task in done:
                listener = serving.pop(task)
                result = task.result()
                self.log.error(
                    "error accepting connection on tcp address %r: %s", listener.address, result.error
                )
                if self.settings.accept_errors == ACCEPT_ERRORS_FATAL:
                    return 1
                self.log.warning("listener %s closed, %d still serving", result.spec, len(serving))

            if not serving:
                self.log.error("no listeners left")
                return 1


# =============================================================================
# Logging setup
# =============================================================================

def setup_logging_from_config(
    cfg: Dict[str, Any],
    *,
    console_verbosity: Optional[str] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    log = logging.getLogger("portdump")
    log.propagate = False
    log.handlers.clear()
    log.setLevel(logging.DEBUG)  # handlers gate output

    lc = get_path(cfg, "logging", {}) or {}

    console_cfg = lc.get("console", {}) or {}
    file_cfg = lc.get("file", {}) or {}

    console_level = parse_level(first_set(console_verbosity, console_cfg.get("verbosity")), logging.INFO)

    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    log.addHandler(ch)

    if log_file or bool(file_cfg.get("enabled", False)):
        path = str(log_file or file_cfg.get("path", "portdump.log"))
        file_level = parse_level(file_cfg.get("verbosity"), logging.INFO)
        fh = logging.FileHandler(path, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        log.addHandler(fh)

    return log


# =============================================================================
# CLI + entrypoint
# =============================================================================

def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Capture every connection on the given ports into per-connection files")
    p.add_argument("targets", nargs="*", metavar="target", help="port or service name, optionally /tcp, /tcp4, /tcp6")
    p.add_argument("--config", help="Path to JSON (or json-ish) config file")
    p.add_argument("--logs", help=f"directory to store logs (default: {DEFAULT_LOGS})")
    p.add_argument("--host", help=f"binding host (default: {DEFAULT_HOST})")
    p.add_argument("--deadline", type=float, help=f"seconds a connection may live after accept (default: {DEFAULT_DEADLINE_SEC:g})")
    p.add_argument("--chunk-size", type=int, help=f"read size per recv (default: {DEFAULT_CHUNK_SIZE})")
    p.add_argument("--accept-errors", choices=ACCEPT_ERROR_POLICIES,
                   help="fatal: any accept error stops the process (default); isolate: only that listener stops")
    p.add_argument("--verbosity", help="console log level (default: info)")
    p.add_argument("--log-file", help="also write the service log to this file")
    return p


def resolve_settings(args: argparse.Namespace, cfg: Dict[str, Any]) -> Settings:
    """CLI flags win over the config file, the config file over built-in defaults."""
    targets = [t for t in (args.targets or []) if t.strip()]
    if not targets:
        raw = cfg.get("targets") or []
        if isinstance(raw, (str, int)):
            raw = [raw]
        targets = [str(t).strip() for t in raw if str(t).strip()]
    if not targets:
        raise ConfigError("no ports configured")

    accept_errors = str(first_set(args.accept_errors, get_path(cfg, "listen.accept_errors"), ACCEPT_ERRORS_FATAL))
    accept_errors = accept_errors.strip().lower()
    if accept_errors not in ACCEPT_ERROR_POLICIES:
        raise ConfigError(f"accept_errors must be one of {', '.join(ACCEPT_ERROR_POLICIES)}, got {accept_errors!r}")

    return Settings(
        targets=tuple(targets),
        logs=str(first_set(args.logs, cfg.get("logs"), DEFAULT_LOGS)),
        host=str(first_set(args.host, cfg.get("host"), DEFAULT_HOST)),
        deadline_sec=clamp_float(
            first_set(args.deadline, get_path(cfg, "capture.deadline_sec")),
            default=DEFAULT_DEADLINE_SEC, lo=0.001, hi=86400.0,
        ),
        chunk_size=clamp_int(
            first_set(args.chunk_size, get_path(cfg, "capture.chunk_size")),
            default=DEFAULT_CHUNK_SIZE, lo=1, hi=16 * 1024 * 1024,
        ),
        accept_errors=accept_errors,
    )


def ensure_log_dir(path: str) -> None:
    if os.path.exists(path):
        return
    try:
        os.mkdir(path, 0o770)
    except OSError as e:
        raise PortdumpError(f'error creating directory "{path}": {e}') from e


async def amain(args: argparse.Namespace) -> int:
    cfg = load_config(args.config) if args.config else {}
    settings = resolve_settings(args, cfg)
    log = setup_logging_from_config(cfg, console_verbosity=args.verbosity, log_file=args.log_file)

    svc = Service(settings, log)
    ensure_log_dir(settings.logs)
    return await svc.run()


def main(argv: Optional[List[str]] = None) -> None:
    args = build_argparser().parse_args(argv)
    try:
        rc = asyncio.run(amain(args))
    except PortdumpError as e:
        raise SystemExit(str(e)) from e
    except KeyboardInterrupt:
        rc = 130
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
