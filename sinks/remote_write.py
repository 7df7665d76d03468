"""Prometheus remote-write egress module - encodes and pushes samples via HTTP"""
import asyncio
import logging
from typing import Sequence
from urllib.parse import urlparse

import requests
import snappy
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

from sinks.base import FatalError, RecoverableError, Sample

logger = logging.getLogger(__name__)

REMOTE_WRITE_VERSION = "0.1.0"
DEFAULT_USER_AGENT = "tapmon/0.1.0"


def _build_write_request_class():
    """
    Builds the `prometheus.WriteRequest` message class (remote-write 1.0)
    from a descriptor, so no generated *_pb2 module has to be shipped.
    """
    FieldProto = descriptor_pb2.FieldDescriptorProto
    optional = FieldProto.LABEL_OPTIONAL
    repeated = FieldProto.LABEL_REPEATED

    file_proto = descriptor_pb2.FileDescriptorProto(
        name="prometheus/remote.proto",
        package="prometheus",
        syntax="proto3",
    )

    label = file_proto.message_type.add(name="Label")
    label.field.add(name="name", number=1, type=FieldProto.TYPE_STRING, label=optional)
    label.field.add(name="value", number=2, type=FieldProto.TYPE_STRING, label=optional)

    sample = file_proto.message_type.add(name="Sample")
    sample.field.add(name="value", number=1, type=FieldProto.TYPE_DOUBLE, label=optional)
    sample.field.add(name="timestamp", number=2, type=FieldProto.TYPE_INT64, label=optional)

    series = file_proto.message_type.add(name="TimeSeries")
    series.field.add(
        name="labels", number=1, type=FieldProto.TYPE_MESSAGE,
        label=repeated, type_name=".prometheus.Label"
    )
    series.field.add(
        name="samples", number=2, type=FieldProto.TYPE_MESSAGE,
        label=repeated, type_name=".prometheus.Sample"
    )

    request = file_proto.message_type.add(name="WriteRequest")
    request.field.add(
        name="timeseries", number=1, type=FieldProto.TYPE_MESSAGE,
        label=repeated, type_name=".prometheus.TimeSeries"
    )

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(file_proto.SerializeToString())
    return message_factory.GetMessageClass(pool.FindMessageTypeByName("prometheus.WriteRequest"))


WriteRequest = _build_write_request_class()


def is_valid_endpoint(endpoint: str) -> bool:
    """True if the endpoint is an absolute http(s) URL with a host."""
    try:
        parsed = urlparse(endpoint)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class RemoteWriteSink:
    """
    Prometheus remote-write sink.

    Each batch becomes one snappy-compressed protobuf WriteRequest with a
    single-sample TimeSeries per Sample, in batch order. The blocking POST
    runs in a thread so the event loop keeps draining the intake.

    Status mapping follows Prometheus' own remote-write client:
    429 and 5xx are recoverable, every other error status is fatal.
    """

    def __init__(
        self,
        endpoint: str,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT
    ):
        """
        Initialize remote-write sink.

        Args:
            endpoint: Full URL of the receiver, e.g. https://host/api/v1/write
            username: Basic auth user (optional)
            password: Basic auth password (optional)
            timeout: HTTP request timeout in seconds (default: 30.0)
            user_agent: User-Agent header for requests
        """
        self.endpoint = endpoint
        self.auth = (username, password or "") if username else None
        self.timeout = timeout
        self.headers = {
            "Content-Encoding": "snappy",
            "Content-Type": "application/x-protobuf",
            "User-Agent": user_agent,
            "X-Prometheus-Remote-Write-Version": REMOTE_WRITE_VERSION,
        }

    def encode(self, batch: Sequence[Sample]) -> bytes:
        request = WriteRequest()
        for sample in batch:
            series = request.timeseries.add()
            for name, value in sample.labels():
                series.labels.add(name=name, value=value)
            series.samples.add(value=sample.value, timestamp=sample.timestamp_ms)
        return snappy.compress(request.SerializeToString())

    def _perform_http_request(self, body: bytes) -> None:
        """
        Executes the HTTP POST to the receiver.
        Is ran in a thread to not block the main loop.
        """
        try:
            response = requests.post(
                self.endpoint,
                data=body,
                headers=self.headers,
                auth=self.auth,
                timeout=self.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise RecoverableError(f"RemoteWrite: request failed: {e}") from e
        except requests.RequestException as e:
            raise FatalError(f"RemoteWrite: request failed: {e}") from e

        status = response.status_code
        if status < 400:
            return

        detail = f"HTTP {status}: {response.text.strip()[:256]}"
        if status == 429 or status >= 500:
            raise RecoverableError(f"RemoteWrite: {detail}")
        raise FatalError(f"RemoteWrite: {detail}")

    async def send(self, batch: Sequence[Sample]) -> None:
        """
        Encodes the batch and offloads the POST to a thread.

        Raises:
            RecoverableError: rate limited, server error or connection problem
            FatalError: encoding failure or any other rejected request
        """
        try:
            body = self.encode(batch)
        except Exception as e:
            raise FatalError(f"RemoteWrite: unable to encode {len(batch)} samples: {e}") from e

        logger.debug(f"RemoteWrite: posting {len(batch)} samples ({len(body)} bytes)")
        await asyncio.to_thread(self._perform_http_request, body)
