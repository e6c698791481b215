"""The simulator: a kernel with a TCP-backed serial port and a serial mux.

Two virtual ports are opened on the mux: port 0 echoes what it receives,
port 1 says hello once a second.
"""

from __future__ import annotations

import argparse
import ipaddress
import logging
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from mnemos.kernel import Kernel, KernelSettings
from mnemos.serial_mux import PortHandle, SerialMux, SerialMuxHandle
from mnemos.sim_drivers import Address, Delay, TcpSerial, default_addr

logger = logging.getLogger(__name__)

ENV_FILTER = "MELPOMENE_TRACE"
TRACE = 5
_SEPARATOR = "=" * 40
_TICK_INTERVAL = 0.01

_LEVELS = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": logging.CRITICAL + 1,
}

_KERNEL_READY = threading.Event()


def _parse_level(text: str) -> int:
    try:
        return _LEVELS[text.strip().lower()]
    except KeyError:
        raise ValueError(f"invalid level {text!r}") from None


def _parse_filter(spec: str) -> Tuple[int, Dict[str, int]]:
    default = logging.INFO
    targets: Dict[str, int] = {}
    for part in (piece.strip() for piece in spec.split(",")):
        if not part:
            continue
        if "=" in part:
            target, _, level = part.partition("=")
            target = target.strip()
            if not target:
                raise ValueError(f"missing target in directive {part!r}")
            targets[target] = _parse_level(level)
        elif part.lower() in _LEVELS:
            default = _LEVELS[part.lower()]
        else:
            targets[part] = TRACE
    return default, targets


def _parse_socket_addr(text: str) -> Address:
    host, sep, port_text = text.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {text!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    ipaddress.ip_address(host)
    port = int(port_text)
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port out of range in {text!r}")
    return host, port


@dataclass(frozen=True)
class MelpomeneOptions:
    """Simulator options."""

    serial_addr: Address = field(default_factory=default_addr)


@dataclass(frozen=True)
class TracingOptions:
    """Log filter, written as comma-separated ``level`` or ``target=level`` directives."""

    env_filter: str = "info"

    def __post_init__(self) -> None:
        _parse_filter(self.env_filter)

    @property
    def directives(self) -> Tuple[int, Dict[str, int]]:
        """The default level and the per-target levels."""
        return _parse_filter(self.env_filter)


def _addr_arg(text: str) -> Address:
    try:
        return _parse_socket_addr(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _filter_arg(text: str) -> str:
    try:
        _parse_filter(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc
    return text


def parse_args(argv: Optional[Sequence[str]]) -> Tuple[MelpomeneOptions, TracingOptions]:
    """Parse the command line into simulator and tracing options."""
    parser = argparse.ArgumentParser(prog="melpomene", description="Run the simulated kernel.")
    parser.add_argument(
        "--serial-addr",
        type=_addr_arg,
        default=default_addr(),
        help="address to bind the TCP listener for the simulated serial port",
    )
    tracing = parser.add_argument_group("tracing options")
    tracing.add_argument(
        "--trace",
        type=_filter_arg,
        default=os.environ.get(ENV_FILTER, "info"),
        help=f"log filter (also read from ${ENV_FILTER})",
    )
    args = parser.parse_args(argv)
    return MelpomeneOptions(serial_addr=args.serial_addr), TracingOptions(env_filter=args.trace)


class _UptimeFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        uptime = record.relativeCreated / 1000.0
        return f"{uptime:12.6f}s {record.levelname:>5} {record.name}: {record.getMessage()}"


class _UptimeHandler(logging.StreamHandler):
    pass


def setup_tracing(options: TracingOptions) -> None:
    """Send log records to standard output, filtered by ``options``."""
    logging.addLevelName(TRACE, "TRACE")
    default, targets = options.directives
    root = logging.getLogger()
    for handler in [h for h in root.handlers if isinstance(h, _UptimeHandler)]:
        root.removeHandler(handler)
    handler = _UptimeHandler(sys.stdout)
    handler.setFormatter(_UptimeFormatter())
    root.addHandler(handler)
    root.setLevel(default)
    for target, level in targets.items():
        logging.getLogger(target).setLevel(level)


async def _loopback(port: PortHandle) -> None:
    while True:
        grant = await port.consumer.read_grant()
        data = bytes(grant)
        await port.send(data)
        grant.release(len(data))


async def _hello(port: PortHandle) -> None:
    while True:
        await Delay(1.0)
        await port.send(b"hello\r\n")


async def _initialize(kernel: Kernel, options: MelpomeneOptions) -> None:
    try:
        await Delay(1.0)
        await TcpSerial.register(kernel, options.serial_addr, 4096, 4096)
        await SerialMux.register(kernel, 4, 512)
        mux = await SerialMuxHandle.from_registry(kernel)
        if mux is None:
            raise RuntimeError("serial mux is not registered")
        ports: List[PortHandle] = []
        for port_id in (0, 1):
            port = await mux.open_port(port_id, 1024)
            if port is None:
                raise RuntimeError(f"could not open virtual port {port_id}")
            ports.append(port)
        await kernel.spawn(_loopback(ports[0]))
        await kernel.spawn(_hello(ports[1]))
    except Exception:
        logger.exception("Kernel initialization failed")
        raise


def kernel_entry(options: MelpomeneOptions) -> None:
    """Build the kernel, start its services and tick it forever."""
    settings = KernelSettings(max_drivers=16, k2u_size=4096, u2k_size=4096)
    with Kernel(settings) as kernel:
        kernel.initialize(_initialize(kernel, options))
        while True:
            kernel.tick()
            _KERNEL_READY.set()
            time.sleep(_TICK_INTERVAL)


def run_melpomene(options: MelpomeneOptions) -> None:
    """Run the kernel on its own thread and wait for it to finish."""
    print(_SEPARATOR)
    kernel = threading.Thread(target=kernel_entry, args=(options,), name="Kernel", daemon=True)
    kernel.start()
    logger.info("Kernel started.")

    while not _KERNEL_READY.wait(_TICK_INTERVAL):
        if not kernel.is_alive():
            break
    logger.debug("Kernel initialized.")

    print(_SEPARATOR)
    time.sleep(0.05)
    kernel.join()
    time.sleep(0.05)
    logger.info("Kernel ended.")
    print(_SEPARATOR)
    logger.error("You've met with a terrible fate, haven't you?")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Parse arguments, set up logging and run the simulator."""
    melpomene, tracing = parse_args(argv)
    setup_tracing(tracing)
    try:
        run_melpomene(melpomene)
    except KeyboardInterrupt:
        return 130
    return 0