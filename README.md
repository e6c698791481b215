# mnemos

The core of a small asynchronous operating-system kernel, built on `asyncio`,
together with a desktop simulator and two host-side tools that talk to it over
TCP. The package uses only the standard library.

## What is inside

- **Bounded queues**: `mnemos.spitebuf.MpScQueue(capacity)` is a FIFO queue
  whose capacity must be a power of two. It offers `enqueue_sync` and
  `dequeue_sync`, plus the awaitable versions `enqueue_async` and
  `dequeue_async`. `close()` refuses new items, but anything already queued
  can still be drained. A full queue raises `QueueFullError` and a closed one
  raises `QueueClosedError`; both carry the rejected item in `.item`.
  `dequeue_async` raises `DequeueError` once the queue is closed and empty.
- **Kernel channels**: `mnemos.kchannel.KChannel(capacity)` wraps the queue.
  `split()` gives a `KProducer` and a `KConsumer`, and
  `KConsumer.producer()` makes further producers.
- **One-shot replies**: `mnemos.oneshot.Reusable` hands out one live `Sender`
  at a time through `sender()`, and `await receive()` returns its reply.
  - A sender that is discarded without replying (`Sender.discard()`, or
    leaving it as a context manager) makes `receive()` raise
    `NoSenderActiveError`.
  - After `close()`, sends fail with `ChannelClosedError`.
- **Byte ring queues**: `mnemos.bbq.new_spsc_channel(capacity)` returns an
  `SpscProducer` and a `Consumer`.
  - The producer asks for contiguous write grants, which are written like a
    byte buffer and then committed with `GrantW.commit(used)`.
  - The consumer takes read grants and frees them with
    `GrantR.release(used)`.
  - Grant requests can wait (`send_grant_exact`, `send_grant_max`,
    `read_grant`) or return `None` at once (`*_sync`).
  - `SpscProducer.into_mpsc_producer()` gives a shareable `MpscProducer`.
  - `new_bidi_channel(capacity_a, capacity_b)` returns two linked
    `BidiHandle` ends.
- **Driver registry**: `mnemos.registry.Registry(max_items)` stores driver
  services, which are subclasses of `RegisteredDriver` with a `UUID`.
  - `register_konly` registers a service for kernel clients only. `register`
    also makes it reachable from userspace; the driver must then override
    `deserialize_request` and `serialize_response`.
  - `get` returns a `KernelHandle` for sending typed requests, and
    `get_userspace` returns a `UserspaceHandle` whose `process_msg` decodes a
    `UserRequest` and queues it.
  - A service answers through the request's `ReplyTo`, with `reply_konly` or
    `reply`. A `ReplyTo` is a kernel channel, a one-shot sender, or the
    userspace byte queue.
  - `SimpleSerial` is the client of a simple serial port service.
- **Kernel**: `mnemos.kernel.Kernel(KernelSettings(...))` owns the registry,
  a pair of frame rings (`kernel.rings.u2k` and `kernel.rings.k2u`) and a
  private event loop. `initialize(coro)` and `await spawn(coro)` schedule
  tasks. `await with_registry(func)` gives exclusive access to the registry.
  Each `tick()` runs one pass of the scheduler. The kernel is a context
  manager, and `close()` cancels pending tasks.
- **Serial multiplexer**: `mnemos.serial_mux.SerialMux.register(kernel,
  max_ports, max_frame)` takes the simple serial port and splits it into
  numbered virtual ports.
  - `SerialMuxHandle.from_registry(kernel)` returns a handle, and its
    `open_port(port_id, capacity)` returns a `PortHandle`.
  - A `PortHandle` receives on its `consumer` and sends with
    `await send(data)`.
  - Frames are COBS encoded (`mnemos.cobs.encode`, `decode`,
    `max_encoding_length`). Each frame carries a two-byte little-endian port
    number ahead of its payload and ends with a zero byte.
- **Simulated drivers**: in `mnemos.sim_drivers`, `Delay(seconds)` is a
  wall-clock awaitable. `TcpSerial.register(kernel, addr, incoming_size,
  outgoing_size)` backs the simple serial service with a TCP listener. It
  hands the port to the first requester and refuses later ones with
  `AlreadyAssignedPortError`.
- **Timers**: `mnemos.time` provides a manually advanced microsecond `Clock`,
  `Instant`, `Alarm` and the `Chronos` timer wheel. `Chronos` holds 32
  pending alarms by default and raises `TimerOverflowError` beyond that. It
  offers `register`, `poll`, and the awaitables `sleep` and `sleep_until`.
- **Atomic ref-cell**: `mnemos.arfcell.ArfCell` allows many shared borrows
  (`borrow()`) or one exclusive borrow (`borrow_mut()`). On a conflict it
  raises `BorrowError` instead of blocking.

## Installation

```
pip install .
```

With the test dependencies:

```
pip install ".[test]"
pytest
```

## Using the channels

```python
import asyncio

from mnemos.kchannel import KChannel


async def demo():
    producer, consumer = KChannel(4).split()
    await producer.enqueue_async("hello")
    print(await consumer.dequeue_async())


asyncio.run(demo())
```

## The simulator

`mnemos-melpomene` boots the kernel on a background thread and ticks it about
every 10 ms. After a one-second delay it:

1. registers a serial port backed by a TCP listener;
2. puts the serial multiplexer on top of it, with 4 ports and 512-byte
   frames;
3. opens two virtual ports. Port 0 echoes back everything it receives, and
   port 1 sends `hello\r\n` once a second.

```
mnemos-melpomene
mnemos-melpomene --serial-addr 127.0.0.1:9999 --trace debug
```

- `--serial-addr` takes the listening address; the default is
  `127.0.0.1:9999`.
- `--trace` sets the log filter, and falls back to the `MELPOMENE_TRACE`
  environment variable. It takes comma-separated directives such as `info`
  or `mnemos.serial_mux=debug`. The levels are `trace`, `debug`, `info`,
  `warn`, `error` and `off`.

## crowtty

`mnemos-crowtty` connects to the simulator's serial port at `127.0.0.1:9999`.
It exposes virtual port 0 on `127.0.0.1:10000` and virtual port 1 on
`127.0.0.1:10001`. Connect to one with any raw TCP client to talk to that
port.

```
mnemos-crowtty
```

`mnemos.crowtty.encode_chunk` and `decode_chunk` build and parse single link
frames.

## dumbloader

`mnemos-dumbloader` connects to a loader over TCP and serves it a binary
image:

- The image is padded with `0xFF` to a multiple of 256 bytes.
- Each request for an offset is answered with that 256-byte block. Past the
  end, the reply is the image length.
- Unreadable frames and read timeouts get a retry response.
- The tool stops when the loader sends its done request.

Messages are encoded with LEB128 varints and framed with COBS.

```
mnemos-dumbloader 127.0.0.1 9999 image.bin
```

## What it does not do

- There is no userspace runtime. Nothing writes requests into the kernel's
  user-to-kernel ring, and nothing reads its kernel-to-user ring.
- `Kernel.tick()` does not dispatch userspace requests to drivers. If a frame
  is waiting in `rings.u2k`, it raises `RuntimeError`.
- The simulator only runs the kernel side.