"""gRPC binding for the RaftKVService contract.

The message classes are built at import time from a descriptor equivalent
to the service's ``raftapi.proto``::

    service RaftKVService {
      rpc Put(PutRequest) returns (PutResponse);
      rpc Get(GetRequest) returns (GetResponse);
      rpc GetCacheHits(Empty) returns (CacheHitsResponse);
      rpc ResetCacheHits(Empty) returns (Empty);
      rpc StreamProposals(stream PutRequest) returns (stream PutResponse);
    }

    message PutRequest        { optional string key = 1; optional string value = 2; }
    message PutResponse       { optional string key = 1; optional string value = 2; }
    message GetRequest        { optional string key = 1; }
    message GetResponse       { optional bool found = 1; optional string value = 2; }
    message CacheHitsResponse { optional uint64 cachehits = 1; }
    message Empty             {}

Key and value fields are declared ``bytes`` here: the wire encoding is
identical to the server's proto2 ``string`` fields and synthesized keys are
arbitrary binary, which a ``string`` field would reject.
"""

import asyncio
from typing import Optional, Tuple

import grpc
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

from .errors import KeyNotFoundError, SetupError

SERVICE_NAME = "raftapi.RaftKVService"

DEFAULT_WINDOW_SIZE = 64 * 1024 * 1024
MAX_MESSAGE_BYTES = 64 * 1024 * 1024


def _build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    fdp = descriptor_pb2.FileDescriptorProto(
        name="raft_bench/raftapi.proto",
        package="raftapi",
        syntax="proto2",
    )
    F = descriptor_pb2.FieldDescriptorProto

    def message(name, *fields):
        msg = fdp.message_type.add(name=name)
        for number, (field_name, field_type) in enumerate(fields, start=1):
            msg.field.add(name=field_name, number=number, type=field_type,
                          label=F.LABEL_OPTIONAL)

    message("PutRequest", ("key", F.TYPE_BYTES), ("value", F.TYPE_BYTES))
    message("PutResponse", ("key", F.TYPE_BYTES), ("value", F.TYPE_BYTES))
    message("GetRequest", ("key", F.TYPE_BYTES))
    message("GetResponse", ("found", F.TYPE_BOOL), ("value", F.TYPE_BYTES))
    message("CacheHitsResponse", ("cachehits", F.TYPE_UINT64))
    message("Empty")
    return fdp


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(_build_file_descriptor().SerializeToString())


def _message_class(name: str):
    return message_factory.GetMessageClass(_POOL.FindMessageTypeByName(f"raftapi.{name}"))


PutRequest = _message_class("PutRequest")
PutResponse = _message_class("PutResponse")
GetRequest = _message_class("GetRequest")
GetResponse = _message_class("GetResponse")
CacheHitsResponse = _message_class("CacheHitsResponse")
Empty = _message_class("Empty")

# method name -> (request class, response class, request streaming, response streaming)
METHODS = {
    "Put": (PutRequest, PutResponse, False, False),
    "Get": (GetRequest, GetResponse, False, False),
    "GetCacheHits": (Empty, CacheHitsResponse, False, False),
    "ResetCacheHits": (Empty, Empty, False, False),
    "StreamProposals": (PutRequest, PutResponse, True, True),
}


def method_path(name: str) -> str:
    return f"/{SERVICE_NAME}/{name}"


def channel_options(window_size: int = DEFAULT_WINDOW_SIZE):
    return [
        # Large initial stream window so HTTP/2 flow control does not
        # masquerade as backend slowness.
        ("grpc.http2.lookahead_bytes", window_size),
        ("grpc.http2.bdp_probe", 0),
        # a private subchannel pool gives every channel its own connection
        ("grpc.use_local_subchannel_pool", 1),
        ("grpc.max_receive_message_length", MAX_MESSAGE_BYTES),
        ("grpc.max_send_message_length", MAX_MESSAGE_BYTES),
        ("grpc.keepalive_time_ms", 120_000),
        ("grpc.keepalive_timeout_ms", 10_000),
        ("grpc.keepalive_permit_without_calls", 0),
    ]


class RaftKVClient:
    """One connection to a raft node plus callables for every RPC."""

    def __init__(self, channel: grpc.aio.Channel, address: str = ""):
        self.channel = channel
        self.address = address
        self._put = self._unary(channel, "Put")
        self._get = self._unary(channel, "Get")
        self._get_cache_hits = self._unary(channel, "GetCacheHits")
        self._reset_cache_hits = self._unary(channel, "ResetCacheHits")
        self._stream_proposals = channel.stream_stream(
            method_path("StreamProposals"),
            request_serializer=PutRequest.SerializeToString,
            response_deserializer=PutResponse.FromString,
        )

    @staticmethod
    def _unary(channel, name):
        request_cls, response_cls, _, _ = METHODS[name]
        return channel.unary_unary(
            method_path(name),
            request_serializer=request_cls.SerializeToString,
            response_deserializer=response_cls.FromString,
        )

    @classmethod
    async def dial(cls, address: str, timeout: float = 2.0,
                   window_size: int = DEFAULT_WINDOW_SIZE) -> "RaftKVClient":
        """Open a channel and block until it is ready or ``timeout`` expires."""
        channel = grpc.aio.insecure_channel(address, options=channel_options(window_size))
        try:
            await asyncio.wait_for(channel.channel_ready(), timeout=timeout)
        except asyncio.TimeoutError as e:
            await channel.close()
            raise SetupError(f"failed to dial {address} within {timeout}s") from e
        except grpc.RpcError as e:
            await channel.close()
            raise SetupError(f"failed to dial {address}: {e}") from e
        return cls(channel, address)

    async def put(self, key: bytes, value: bytes,
                  timeout: Optional[float] = None) -> Tuple[bytes, bytes]:
        resp = await self._put(PutRequest(key=key, value=value), timeout=timeout)
        return resp.key, resp.value

    async def get(self, key: bytes, timeout: Optional[float] = None) -> bytes:
        resp = await self._get(GetRequest(key=key), timeout=timeout)
        if not resp.found:
            raise KeyNotFoundError(key)
        return resp.value

    async def get_cache_hits(self, timeout: Optional[float] = 5.0) -> int:
        resp = await self._get_cache_hits(Empty(), timeout=timeout)
        return resp.cachehits

    async def reset_cache_hits(self, timeout: Optional[float] = 5.0) -> None:
        await self._reset_cache_hits(Empty(), timeout=timeout)

    def open_stream(self) -> grpc.aio.StreamStreamCall:
        """Start a StreamProposals call driven with write/read/done_writing."""
        return self._stream_proposals()

    async def close(self, grace: Optional[float] = None) -> None:
        await self.channel.close(grace)


def add_raft_kv_servicer_to_server(servicer, server) -> None:
    """Register ``servicer`` (an object with one coroutine per RPC) on a server."""
    factories = {
        (False, False): grpc.unary_unary_rpc_method_handler,
        (True, True): grpc.stream_stream_rpc_method_handler,
    }
    handlers = {}
    for name, (request_cls, response_cls, req_stream, resp_stream) in METHODS.items():
        factory = factories[(req_stream, resp_stream)]
        handlers[name] = factory(
            getattr(servicer, name),
            request_deserializer=request_cls.FromString,
            response_serializer=response_cls.SerializeToString,
        )
    server.add_generic_rpc_handlers(
        (grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),))
