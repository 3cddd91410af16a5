# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Protobuf schema of the upstream chat service.

The message types are declared as a ``FileDescriptorProto`` and loaded into
a private descriptor pool, so no generated ``_pb2`` module is needed. Only
the fields the broker reads or writes are declared; everything else the
upstream sends is kept as unknown fields and ignored.
"""

from typing import Any, Dict, Optional, Sequence

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.json_format import ParseDict, ParseError
from google.protobuf.message import DecodeError, Message

PACKAGE = "aiserver.v1"

_FIELD = descriptor_pb2.FieldDescriptorProto
STRING = _FIELD.TYPE_STRING
INT32 = _FIELD.TYPE_INT32
BOOL = _FIELD.TYPE_BOOL
MESSAGE = _FIELD.TYPE_MESSAGE


def _field(
    name: str,
    number: int,
    field_type: int,
    type_name: Optional[str] = None,
    repeated: bool = False,
) -> descriptor_pb2.FieldDescriptorProto:
    field = descriptor_pb2.FieldDescriptorProto(
        name=name,
        number=number,
        type=field_type,
        label=_FIELD.LABEL_REPEATED if repeated else _FIELD.LABEL_OPTIONAL,
    )
    if type_name:
        field.type_name = f".{PACKAGE}.{type_name}"
    return field


def _message(
    name: str,
    fields: Sequence[descriptor_pb2.FieldDescriptorProto],
    nested: Sequence[descriptor_pb2.DescriptorProto] = (),
) -> descriptor_pb2.DescriptorProto:
    return descriptor_pb2.DescriptorProto(
        name=name, field=list(fields), nested_type=list(nested)
    )


_REQ = "StreamUnifiedChatWithToolsRequest.Request"


def _request_message() -> descriptor_pb2.DescriptorProto:
    chat_message = _message(
        "Message",
        [
            _field("content", 1, STRING),
            _field("role", 2, INT32),
            _field("message_id", 13, STRING),
            _field("chat_mode_enum", 47, INT32),
        ],
    )
    instruction = _message("Instruction", [_field("instruction", 1, STRING)])
    model = _message(
        "Model", [_field("name", 1, STRING), _field("empty", 4, STRING)]
    )
    cursor_setting = _message(
        "CursorSetting",
        [
            _field("name", 1, STRING),
            _field("unknown3", 3, STRING),
            _field("unknown6", 6, MESSAGE, f"{_REQ}.CursorSetting.Unknown6"),
            _field("unknown8", 8, INT32),
            _field("unknown9", 9, INT32),
        ],
        nested=[
            _message(
                "Unknown6",
                [_field("unknown1", 1, STRING), _field("unknown2", 2, STRING)],
            )
        ],
    )
    metadata = _message(
        "Metadata",
        [
            _field("os", 1, STRING),
            _field("arch", 2, STRING),
            _field("version", 3, STRING),
            _field("path", 4, STRING),
            _field("timestamp", 5, STRING),
        ],
    )
    message_id = _message(
        "MessageId",
        [
            _field("message_id", 1, STRING),
            _field("summary_id", 2, STRING),
            _field("role", 3, INT32),
        ],
    )
    request = _message(
        "Request",
        [
            _field("messages", 1, MESSAGE, f"{_REQ}.Message", repeated=True),
            _field("unknown2", 2, INT32),
            _field("instruction", 3, MESSAGE, f"{_REQ}.Instruction"),
            _field("unknown4", 4, INT32),
            _field("model", 5, MESSAGE, f"{_REQ}.Model"),
            _field("web_tool", 8, STRING),
            _field("unknown13", 13, INT32),
            _field("cursor_setting", 15, MESSAGE, f"{_REQ}.CursorSetting"),
            _field("unknown19", 19, INT32),
            _field("conversation_id", 23, STRING),
            _field("metadata", 26, MESSAGE, f"{_REQ}.Metadata"),
            _field("unknown27", 27, INT32),
            _field("message_ids", 30, MESSAGE, f"{_REQ}.MessageId", repeated=True),
            _field("large_context", 35, INT32),
            _field("unknown38", 38, INT32),
            _field("chat_mode_enum", 46, INT32),
            _field("unknown47", 47, STRING),
            _field("unknown48", 48, INT32),
            _field("unknown49", 49, INT32),
            _field("unknown51", 51, INT32),
            _field("unknown53", 53, INT32),
            _field("chat_mode", 54, STRING),
        ],
        nested=[chat_message, instruction, model, cursor_setting, metadata, message_id],
    )
    return _message(
        "StreamUnifiedChatWithToolsRequest",
        [_field("request", 1, MESSAGE, _REQ)],
        nested=[request],
    )


def _response_message() -> descriptor_pb2.DescriptorProto:
    thinking = _message("Thinking", [_field("content", 1, STRING)])
    message = _message(
        "Message",
        [
            _field("content", 1, STRING),
            _field(
                "thinking",
                25,
                MESSAGE,
                "StreamUnifiedChatWithToolsResponse.Message.Thinking",
            ),
        ],
        nested=[thinking],
    )
    return _message(
        "StreamUnifiedChatWithToolsResponse",
        [
            _field(
                "message", 2, MESSAGE, "StreamUnifiedChatWithToolsResponse.Message"
            )
        ],
        nested=[message],
    )


def _available_models_message() -> descriptor_pb2.DescriptorProto:
    model = _message(
        "AvailableModel",
        [_field("name", 1, STRING), _field("default_on", 2, BOOL)],
    )
    return _message(
        "AvailableModelsResponse",
        [
            _field(
                "models",
                2,
                MESSAGE,
                "AvailableModelsResponse.AvailableModel",
                repeated=True,
            )
        ],
        nested=[model],
    )


def _build_pool() -> descriptor_pool.DescriptorPool:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="aiserver/v1/chat.proto", package=PACKAGE, syntax="proto3"
    )
    file_proto.message_type.extend(
        [_request_message(), _response_message(), _available_models_message()]
    )
    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(file_proto.SerializeToString())
    return pool


_pool = _build_pool()


def _message_class(name: str):
    return message_factory.GetMessageClass(
        _pool.FindMessageTypeByName(f"{PACKAGE}.{name}")
    )


StreamUnifiedChatWithToolsRequest = _message_class("StreamUnifiedChatWithToolsRequest")
StreamUnifiedChatWithToolsResponse = _message_class("StreamUnifiedChatWithToolsResponse")
AvailableModelsResponse = _message_class("AvailableModelsResponse")


def build_message(message_class, payload: Dict[str, Any]) -> Message:
    """
    Build a message from a dict, validating it against the schema.

    Raises:
        ValueError: If the payload has unknown fields or wrongly typed values
    """
    try:
        return ParseDict(payload, message_class())
    except (ParseError, TypeError) as e:
        raise ValueError(str(e)) from e


__all__ = [
    "StreamUnifiedChatWithToolsRequest",
    "StreamUnifiedChatWithToolsResponse",
    "AvailableModelsResponse",
    "build_message",
    "DecodeError",
]
