"""An asyncio kernel core: bounded channels, byte ring queues, a driver registry, a serial multiplexer, timers, a simulator and host-side serial tools."""

__version__ = "0.1.0"