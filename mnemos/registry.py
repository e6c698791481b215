"""Driver service registry and the message types exchanged with services.

Services register a channel producer under a UUID. Kernel clients look the
service up and receive a ``KernelHandle`` for sending typed requests;
userspace requests arrive as bytes and are decoded by the driver before
being queued to the service. Each request carries a ``ReplyTo`` that tells
the service how to answer.

A response body is either the driver's response value or an exception
instance standing for the driver's error.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Generic, List, Optional, Tuple, TypeVar
from uuid import UUID

from mnemos.bbq import BidiHandle, MpscProducer
from mnemos.kchannel import KProducer
from mnemos.oneshot import ChannelClosedError, Reusable, ReusableError, Sender
from mnemos.spitebuf import EnqueueError, QueueClosedError, QueueFullError

logger = logging.getLogger(__name__)

P = TypeVar("P")

_U32 = 0xFFFF_FFFF

SERIAL_MUX_UUID = UUID("54c983fa-736f-4223-b90d-c4360a308647")
SIMPLE_SERIAL_PORT_UUID = UUID("f06aac01-2773-4266-8681-583ffe756554")
ALL_KNOWN_UUIDS = (SERIAL_MUX_UUID, SIMPLE_SERIAL_PORT_UUID)


class MessageKind(enum.Enum):
    REQUEST = "request"
    RESPONSE = "response"


@dataclass(frozen=True)
class RequestResponseId:
    """A 31-bit request counter with the message kind in the lowest bit."""

    value: int

    @classmethod
    def new(cls, id: int, kind: MessageKind) -> "RequestResponseId":
        bit = 1 if kind is MessageKind.REQUEST else 0
        return cls(((id << 1) | bit) & _U32)

    @property
    def id(self) -> int:
        return self.value >> 1

    @property
    def kind(self) -> MessageKind:
        return MessageKind.REQUEST if self.value & 1 else MessageKind.RESPONSE


@dataclass
class Envelope(Generic[P]):
    """A message body together with the ids that route it."""

    body: P
    service_id: int
    client_id: int
    request_id: RequestResponseId

    def reply_with(self, body: Any) -> "Envelope[Any]":
        """Build the response envelope for this request, keeping its ids."""
        return Envelope(
            body,
            self.service_id,
            self.client_id,
            RequestResponseId.new(self.request_id.id, MessageKind.RESPONSE),
        )


@dataclass
class Message:
    """A request envelope and the way the service should reply to it."""

    msg: Envelope[Any]
    reply: "ReplyTo"


@dataclass
class UserRequest:
    """A serialized request coming from userspace."""

    uid: UUID
    nonce: int
    req_bytes: bytes


@dataclass
class UserResponse:
    """A serialized reply going to userspace.

    Wire layout: 16 UUID bytes, the nonce as 4 little-endian bytes, a result
    tag (0 for a response, 1 for an error) and the serialized payload.
    """

    uuid: UUID
    nonce: int
    reply: bytes
    ok: bool = True

    def __bytes__(self) -> bytes:
        return (
            self.uuid.bytes
            + (self.nonce & _U32).to_bytes(4, "little")
            + bytes([0 if self.ok else 1])
            + bytes(self.reply)
        )


class RegistrationError(Exception):
    """A driver service could not be registered."""


class UuidAlreadyRegisteredError(RegistrationError):
    """A service with the same UUID is already registered."""


class RegistryFullError(RegistrationError):
    """The registry has no room for another service."""


class ReplyError(Exception):
    """A reply could not be delivered."""


class KOnlyUserspaceResponseError(ReplyError):
    """A kernel-only reply was attempted towards userspace."""


class ReplyChannelClosedError(ReplyError):
    """The channel the reply was meant for has been closed."""


class UserspaceSerializationError(ReplyError):
    """The reply body could not be serialized for userspace."""


class ReplyInternalError(ReplyError):
    """The reply channel was in an unexpected state."""


class UserHandlerError(Exception):
    """A userspace request could not be handed to its service."""


class DeserializationFailedError(UserHandlerError):
    """The request bytes did not decode into the driver's request type."""


class HandlerQueueFullError(UserHandlerError):
    """The service's request queue could not take the request."""


class RegisteredDriver:
    """Base class describing a registerable driver service.

    Subclasses set ``UUID`` and the ``Request``, ``Response`` and ``Error``
    types. Services reachable from userspace also override
    ``deserialize_request`` and ``serialize_response``.
    """

    UUID: ClassVar[UUID]
    Request: ClassVar[Any] = object
    Response: ClassVar[Any] = object
    Error: ClassVar[Any] = Exception

    @classmethod
    def type_id(cls) -> Tuple[Any, Any, Any]:
        """The identity used to check that handles are correctly typed."""
        return (cls.Request, cls.Response, cls.Error)

    @classmethod
    def deserialize_request(cls, data: bytes) -> Any:
        """Decode a userspace request."""
        raise TypeError(f"{cls.__name__} does not accept userspace requests")

    @classmethod
    def serialize_response(cls, response: Any) -> bytes:
        """Encode a response body (a value or an error) for userspace."""
        raise TypeError(f"{cls.__name__} does not produce userspace responses")


def _supports_userspace(driver: type) -> bool:
    base = RegisteredDriver
    return (
        driver.deserialize_request.__func__ is not base.deserialize_request.__func__
        and driver.serialize_response.__func__ is not base.serialize_response.__func__
    )


class _ReplyKind(enum.Enum):
    KCHANNEL = "kchannel"
    ONESHOT = "oneshot"
    USERSPACE = "userspace"


class ReplyTo:
    """How a service should deliver the reply to a request."""

    def __init__(
        self,
        kind: _ReplyKind,
        *,
        producer: Optional[KProducer[Any]] = None,
        sender: Optional[Sender[Any]] = None,
        nonce: int = 0,
        outgoing: Optional[MpscProducer] = None,
        driver: Optional[type] = None,
    ) -> None:
        self._kind = kind
        self._producer = producer
        self._sender = sender
        self._nonce = nonce
        self._outgoing = outgoing
        self._driver = driver

    @classmethod
    def kchannel(cls, producer: KProducer[Any]) -> "ReplyTo":
        """Reply by enqueueing the envelope on a kernel channel."""
        return cls(_ReplyKind.KCHANNEL, producer=producer)

    @classmethod
    def oneshot(cls, sender: Sender[Any]) -> "ReplyTo":
        """Reply once through a one-shot sender."""
        return cls(_ReplyKind.ONESHOT, sender=sender)

    @classmethod
    def userspace(cls, nonce: int, outgoing: MpscProducer) -> "ReplyTo":
        """Reply by serializing into the userspace byte queue."""
        return cls(_ReplyKind.USERSPACE, nonce=nonce, outgoing=outgoing)

    @property
    def nonce(self) -> int:
        return self._nonce

    async def _deliver_kernel(self, envelope: Envelope[Any]) -> None:
        if self._kind is _ReplyKind.KCHANNEL:
            try:
                await self._producer.enqueue_async(envelope)
            except QueueClosedError as exc:
                raise ReplyChannelClosedError("reply channel closed") from exc
            except QueueFullError as exc:
                raise ReplyInternalError("reply channel full") from exc
        else:
            try:
                self._sender.send(envelope)
            except ChannelClosedError as exc:
                raise ReplyChannelClosedError("reply channel closed") from exc
            except ReusableError as exc:
                raise ReplyInternalError(str(exc)) from exc

    async def reply_konly(self, envelope: Envelope[Any]) -> None:
        """Deliver a reply to a kernel client; userspace replies are refused."""
        logger.debug(
            "Replying KOnly service_id=%d client_id=%d response_id=%d",
            envelope.service_id,
            envelope.client_id,
            envelope.request_id.id,
        )
        if self._kind is _ReplyKind.USERSPACE:
            raise KOnlyUserspaceResponseError("cannot reply to userspace")
        await self._deliver_kernel(envelope)

    def _serialize(self, body: Any) -> bytes:
        if self._driver is not None:
            try:
                return bytes(self._driver.serialize_response(body))
            except Exception as exc:
                raise UserspaceSerializationError(str(exc)) from exc
        if isinstance(body, (bytes, bytearray, memoryview)):
            return bytes(body)
        raise UserspaceSerializationError(
            f"cannot serialize {type(body).__name__} without a driver"
        )

    async def reply(self, uuid_source: UUID, envelope: Envelope[Any]) -> None:
        """Deliver a reply to either a kernel or a userspace client."""
        logger.debug(
            "Replying service_id=%d client_id=%d response_id=%d",
            envelope.service_id,
            envelope.client_id,
            envelope.request_id.id,
        )
        if self._kind is not _ReplyKind.USERSPACE:
            await self._deliver_kernel(envelope)
            return
        body = envelope.body
        payload = self._serialize(body)
        data = bytes(
            UserResponse(
                uuid_source, self._nonce, payload, ok=not isinstance(body, BaseException)
            )
        )
        try:
            grant = await self._outgoing.send_grant_exact(len(data))
        except ValueError as exc:
            raise UserspaceSerializationError(str(exc)) from exc
        grant[: len(data)] = data
        grant.commit(len(data))


class KernelHandle:
    """A client's handle for sending typed requests to a service."""

    def __init__(self, producer: KProducer[Message], service_id: int, client_id: int) -> None:
        self._producer = producer
        self._service_id = service_id
        self._client_id = client_id
        self._request_ctr = 0

    @property
    def service_id(self) -> int:
        return self._service_id

    @property
    def client_id(self) -> int:
        return self._client_id

    async def send(self, msg: Any, reply: ReplyTo) -> None:
        """Queue a request to the service, waiting for room if needed."""
        request_id = RequestResponseId.new(self._request_ctr, MessageKind.REQUEST)
        self._request_ctr = (self._request_ctr + 1) & _U32
        envelope = Envelope(msg, self._service_id, self._client_id, request_id)
        await self._producer.enqueue_async(Message(envelope, reply))
        logger.debug(
            "Sent Request service_id=%d client_id=%d request_id=%d",
            self._service_id,
            self._client_id,
            request_id.id,
        )


class UserspaceHandle:
    """Decodes serialized userspace requests and queues them to a service."""

    def __init__(
        self, producer: KProducer[Message], driver: type, service_id: int, client_id: int
    ) -> None:
        self._producer = producer
        self._driver = driver
        self._service_id = service_id
        self._client_id = client_id

    @property
    def service_id(self) -> int:
        return self._service_id

    @property
    def client_id(self) -> int:
        return self._client_id

    def process_msg(self, user_msg: UserRequest, user_ring: MpscProducer) -> None:
        """Decode ``user_msg`` and queue it; replies go to ``user_ring``."""
        try:
            payload = self._driver.deserialize_request(user_msg.req_bytes)
        except Exception as exc:
            raise DeserializationFailedError(str(exc)) from exc
        reply = ReplyTo(
            _ReplyKind.USERSPACE,
            nonce=user_msg.nonce,
            outgoing=user_ring.clone(),
            driver=self._driver,
        )
        envelope = Envelope(
            payload,
            self._service_id,
            self._client_id,
            RequestResponseId.new(user_msg.nonce, MessageKind.REQUEST),
        )
        try:
            self._producer.enqueue_sync(Message(envelope, reply))
        except EnqueueError as exc:
            raise HandlerQueueFullError("service queue cannot take the request") from exc


@dataclass
class _RegistryItem:
    key: UUID
    type_id: Tuple[Any, Any, Any]
    producer: KProducer[Message]
    driver: type
    userspace: bool
    service_id: int


class Registry:
    """The kernel's table of registered driver services."""

    def __init__(self, max_items: int) -> None:
        if max_items < 0:
            raise ValueError(f"max_items must not be negative, got {max_items}")
        self._max_items = max_items
        self._items: List[_RegistryItem] = []
        self._counter = 0

    def __len__(self) -> int:
        return len(self._items)

    def _find(self, driver: type) -> Optional[_RegistryItem]:
        return next((item for item in self._items if item.key == driver.UUID), None)

    def _next_id(self) -> int:
        current = self._counter
        self._counter = (current + 1) & _U32
        return current

    def _insert(self, driver: type, producer: KProducer[Message], userspace: bool) -> None:
        if self._find(driver) is not None:
            raise UuidAlreadyRegisteredError(str(driver.UUID))
        if len(self._items) >= self._max_items:
            raise RegistryFullError(f"registry holds at most {self._max_items} services")
        service_id = self._counter
        self._items.append(
            _RegistryItem(driver.UUID, driver.type_id(), producer, driver, userspace, service_id)
        )
        logger.info(
            "Registered%s uuid=%s service_id=%d",
            "" if userspace else " KOnly",
            driver.UUID,
            service_id,
        )
        self._next_id()

    def register_konly(self, driver: type, producer: KProducer[Message]) -> None:
        """Register a service reachable only from inside the kernel."""
        self._insert(driver, producer, userspace=False)

    def register(self, driver: type, producer: KProducer[Message]) -> None:
        """Register a service reachable from the kernel and from userspace."""
        if not _supports_userspace(driver):
            raise TypeError(f"{driver.__name__} cannot serialize userspace messages")
        self._insert(driver, producer, userspace=True)

    def get(self, driver: type) -> Optional[KernelHandle]:
        """Return a kernel handle for ``driver``, or ``None`` if absent or mistyped."""
        item = self._find(driver)
        if item is None or item.type_id != driver.type_id():
            return None
        client_id = self._next_id()
        logger.info(
            "Got KernelHandle from Registry uuid=%s service_id=%d client_id=%d",
            driver.UUID,
            item.service_id,
            client_id,
        )
        return KernelHandle(item.producer, item.service_id, client_id)

    def get_userspace(self, driver: type) -> Optional[UserspaceHandle]:
        """Return a userspace handle, or ``None`` if absent or kernel-only."""
        item = self._find(driver)
        if item is None:
            return None
        client_id = self._next_id()
        logger.info(
            "Got UserspaceHandle from Registry uuid=%s service_id=%d client_id=%d",
            driver.UUID,
            item.service_id,
            client_id,
        )
        if not item.userspace:
            return None
        return UserspaceHandle(item.producer, item.driver, item.service_id, client_id)


class SimpleSerialRequest(enum.Enum):
    GET_PORT = "get_port"


@dataclass
class SimpleSerialResponse:
    handle: BidiHandle


class AlreadyAssignedPortError(Exception):
    """The serial port has already been handed out."""


class SimpleSerial(RegisteredDriver):
    """Client interface of a simple serial port service."""

    UUID = SIMPLE_SERIAL_PORT_UUID
    Request = SimpleSerialRequest
    Response = SimpleSerialResponse
    Error = AlreadyAssignedPortError

    def __init__(self, handle: KernelHandle, reply: Reusable[Envelope[Any]]) -> None:
        self._handle = handle
        self._reply = reply

    @classmethod
    async def from_registry(cls, kernel: Any) -> Optional["SimpleSerial"]:
        """Look the service up in the kernel's registry."""
        handle = await kernel.with_registry(lambda registry: registry.get(cls))
        if handle is None:
            return None
        return cls(handle, Reusable())

    async def get_port(self) -> Optional[BidiHandle]:
        """Request the serial port; ``None`` if refused or undeliverable."""
        try:
            sender = self._reply.sender()
        except ReusableError:
            return None
        try:
            await self._handle.send(SimpleSerialRequest.GET_PORT, ReplyTo.oneshot(sender))
        except EnqueueError:
            sender.discard()
            return None
        try:
            envelope = await self._reply.receive()
        except ReusableError:
            return None
        body = envelope.body
        if not isinstance(body, SimpleSerialResponse):
            return None
        return body.handle