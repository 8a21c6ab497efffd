"""Remote-write body decoder (snappy-compressed protobuf ``WriteRequest``).

Decoding is pure: the caller decides what to do with the decoded pairs.
The message classes are built at import time from a descriptor equivalent to
``prometheus/prompb/remote.proto``::

    message WriteRequest { repeated TimeSeries timeseries = 1; }
    message TimeSeries   { repeated Label labels = 1; repeated Sample samples = 2; }
    message Label        { string name = 1; string value = 2; }
    message Sample       { double value = 1; int64 timestamp = 2; }
"""
from typing import Iterable, List, Optional, Tuple

import snappy
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError as ProtobufDecodeError

from prommock.errors import DecompressionError, DeserializationError
from prommock.series import LabelSet, Sample

ENCODING_SNAPPY = "snappy"
ENCODING_IDENTITY = "identity"

_PACKAGE = "prometheus"
_Field = descriptor_pb2.FieldDescriptorProto


def _build_messages():
    proto = descriptor_pb2.FileDescriptorProto(
        name="prommock/remote.proto",
        package=_PACKAGE,
        syntax="proto3",
    )

    def add_message(name: str, fields):
        message = proto.message_type.add(name=name)
        for field_name, number, field_type, label, type_name in fields:
            field = message.field.add(name=field_name, number=number, type=field_type, label=label)
            if type_name:
                field.type_name = f".{_PACKAGE}.{type_name}"

    optional = _Field.LABEL_OPTIONAL
    repeated = _Field.LABEL_REPEATED
    add_message("Label", [
        ("name", 1, _Field.TYPE_STRING, optional, None),
        ("value", 2, _Field.TYPE_STRING, optional, None),
    ])
    add_message("Sample", [
        ("value", 1, _Field.TYPE_DOUBLE, optional, None),
        ("timestamp", 2, _Field.TYPE_INT64, optional, None),
    ])
    add_message("TimeSeries", [
        ("labels", 1, _Field.TYPE_MESSAGE, repeated, "Label"),
        ("samples", 2, _Field.TYPE_MESSAGE, repeated, "Sample"),
    ])
    add_message("WriteRequest", [
        ("timeseries", 1, _Field.TYPE_MESSAGE, repeated, "TimeSeries"),
    ])

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(proto.SerializeToString())
    return message_factory.GetMessageClass(pool.FindMessageTypeByName(f"{_PACKAGE}.WriteRequest"))


WriteRequest = _build_messages()


def decompress(body: bytes, encoding: Optional[str] = ENCODING_SNAPPY) -> bytes:
    """Undo the transport compression."""
    encoding = (encoding or ENCODING_SNAPPY).strip().lower()
    if encoding == ENCODING_IDENTITY:
        return bytes(body)
    if encoding != ENCODING_SNAPPY:
        raise DecompressionError(f"unsupported content encoding: {encoding!r}")
    try:
        return bytes(snappy.uncompress(bytes(body)))
    except Exception as e:
        raise DecompressionError(f"corrupt snappy frame: {e}") from e


def deserialize(raw: bytes) -> List[Tuple[LabelSet, Sample]]:
    """Parse a serialized WriteRequest into (LabelSet, Sample) pairs.

    Every entry must carry at least one label (with a non-empty, unique name)
    and at least one sample. One bad entry fails the whole batch.
    """
    request = WriteRequest()
    try:
        request.ParseFromString(raw)
    except ProtobufDecodeError as e:
        raise DeserializationError(f"invalid protobuf: {e}") from e

    pairs: List[Tuple[LabelSet, Sample]] = []
    for index, entry in enumerate(request.timeseries):
        if not entry.labels:
            raise DeserializationError("missing labels", entry_index=index)
        if not entry.samples:
            raise DeserializationError("missing samples", entry_index=index)
        try:
            labels = LabelSet((label.name, label.value) for label in entry.labels)
        except ValueError as e:
            raise DeserializationError(str(e), entry_index=index) from e
        for sample in entry.samples:
            pairs.append((labels, Sample(int(sample.timestamp), float(sample.value))))
    return pairs


def decode(body: bytes, encoding: Optional[str] = ENCODING_SNAPPY) -> List[Tuple[LabelSet, Sample]]:
    """Decompress then deserialize a remote-write body.

    Raises:
        DecompressionError: Corrupt frame or unsupported encoding
        DeserializationError: Malformed write request
    """
    return deserialize(decompress(body, encoding))


def encode(
    series: Iterable[Tuple[LabelSet, Iterable[Sample]]],
    encoding: Optional[str] = ENCODING_SNAPPY,
) -> bytes:
    """Build a remote-write body, e.g. to push synthetic data from a test."""
    request = WriteRequest()
    for labels, samples in series:
        entry = request.timeseries.add()
        for name, value in LabelSet(labels).pairs:
            entry.labels.add(name=name, value=value)
        for sample in samples:
            entry.samples.add(value=sample.value, timestamp=sample.timestamp)
    raw = request.SerializeToString()
    if (encoding or ENCODING_SNAPPY) == ENCODING_IDENTITY:
        return raw
    return bytes(snappy.compress(raw))
