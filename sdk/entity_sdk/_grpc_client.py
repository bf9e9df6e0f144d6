"""
Internal gRPC client for the entity service SDK.

This module provides the low-level gRPC communication layer: JSON message
bodies, the tenant metadata key and error translation. It is internal to
the SDK; users should use EntityClient instead.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import grpc
from grpc import aio as grpc_aio

from .errors import ConnectionError, error_from_rpc

logger = logging.getLogger(__name__)

TENANT_METADATA_KEY = "x-tenant-id"
TYPE_SERVICE = "entityservice.v1.EntityTypeService"
DATA_SERVICE = "entityservice.v1.EntityDataService"

Message = Dict[str, Any]


def _encode(message: Message) -> bytes:
    return json.dumps(message, separators=(",", ":")).encode("utf-8")


def _decode(data: bytes) -> Message:
    return json.loads(data) if data else {}


class GrpcClient:
    """Internal gRPC client for the entity service.

    This class manages the channel and issues raw JSON calls. It is an
    internal class - users should use EntityClient instead.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 50061,
        *,
        secure: bool = False,
        credentials: grpc.ChannelCredentials | None = None,
        max_message_size: int = 16 * 1024 * 1024,
    ) -> None:
        """Initialize the gRPC client.

        Args:
            host: Server hostname
            port: Server port
            secure: Whether to use TLS
            credentials: Optional TLS credentials
            max_message_size: Maximum send/receive message size in bytes
        """
        self._host = host
        self._port = port
        self._secure = secure
        self._credentials = credentials
        self._max_message_size = max_message_size
        self._channel: grpc_aio.Channel | None = None

    @property
    def address(self) -> str:
        return f"{self._host}:{self._port}"

    async def connect(self) -> None:
        """Open the channel."""
        if self._channel is not None:
            return

        options = [
            ("grpc.max_send_message_length", self._max_message_size),
            ("grpc.max_receive_message_length", self._max_message_size),
        ]
        if self._secure:
            credentials = self._credentials or grpc.ssl_channel_credentials()
            self._channel = grpc_aio.secure_channel(self.address, credentials, options=options)
        else:
            self._channel = grpc_aio.insecure_channel(self.address, options=options)
        logger.debug(f"Connected to entity service at {self.address}")

    async def close(self) -> None:
        """Close the channel."""
        if self._channel:
            await self._channel.close()
            self._channel = None
            logger.debug("Disconnected from entity service")

    async def __aenter__(self) -> GrpcClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _ensure_connected(self) -> grpc_aio.Channel:
        if self._channel is None:
            raise ConnectionError("Not connected. Call connect() first.", address=self.address)
        return self._channel

    @staticmethod
    def _metadata(tenant_id: Optional[str]) -> tuple:
        # An absent tenant is sent as no metadata at all
        return ((TENANT_METADATA_KEY, tenant_id),) if tenant_id else ()

    async def unary(
        self,
        service: str,
        method: str,
        tenant_id: Optional[str],
        request: Message,
        timeout: Optional[float] = None,
    ) -> Message:
        """Issue a unary call.

        Raises:
            EntityClientError: Subclass matching the server's error kind
        """
        channel = self._ensure_connected()
        call = channel.unary_unary(
            f"/{service}/{method}",
            request_serializer=_encode,
            response_deserializer=_decode,
        )
        try:
            return await call(request, metadata=self._metadata(tenant_id), timeout=timeout)
        except grpc_aio.AioRpcError as e:
            raise error_from_rpc(e, address=self.address) from e

    async def stream(
        self,
        service: str,
        method: str,
        tenant_id: Optional[str],
        request: Message,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[Message]:
        """Issue a server-streaming call and yield decoded messages.

        Closing the iterator early cancels the call.
        """
        channel = self._ensure_connected()
        multicallable = channel.unary_stream(
            f"/{service}/{method}",
            request_serializer=_encode,
            response_deserializer=_decode,
        )
        call = multicallable(request, metadata=self._metadata(tenant_id), timeout=timeout)
        try:
            async for message in call:
                yield message
        except grpc_aio.AioRpcError as e:
            raise error_from_rpc(e, address=self.address) from e
        finally:
            call.cancel()
