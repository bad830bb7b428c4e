# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Message contract between the control thread and the background inference worker.

Every message is a tagged record (``type`` field). Requests flow control -> worker,
replies flow worker -> control. Each request carries a ``request_id`` which every
reply to it echoes, so that the control side can discard replies to requests it has
already superseded.

Requests:
    ping          -> loadingInProgress*, pong{device} | error
    encodeImage   -> encodeImageDone | error
    decodeMask    -> decodeMaskResult{masks, iou_predictions} | error

Tensors cross the boundary as flat float32 buffers plus shape metadata. Buffers are
copied on construction so neither side can observe the other mutating them.
"""

from typing import Annotated, List, Literal, Optional, Union

import numpy as np
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

from sam2_interactive.errors import ErrorKind


def _as_float_buffer(value) -> np.ndarray:
    return np.array(value, dtype=np.float32, copy=True).reshape(-1)


FloatBuffer = Annotated[np.ndarray, BeforeValidator(_as_float_buffer)]


class _Message(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True, populate_by_name=True)

    request_id: int = Field(0, alias="requestId")

    def to_wire(self) -> dict:
        """Plain-dict form using the wire field names."""
        return self.model_dump(by_alias=True)


class PointPrompt(BaseModel):
    """A click in model input space. ``label`` is 1 for foreground, 0 for background."""

    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    label: int

    @field_validator("label")
    @classmethod
    def _check_label(cls, value: int) -> int:
        if value not in (0, 1):
            raise ValueError(f"point label must be 0 or 1, got {value}")
        return value


class TensorPayload(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    dims: List[int]
    data: FloatBuffer

    @model_validator(mode="after")
    def _check_size(self):
        if int(np.prod(self.dims)) != self.data.size:
            raise ValueError(f"tensor data holds {self.data.size} values, dims {self.dims}")
        return self

    @classmethod
    def from_array(cls, array: np.ndarray) -> "TensorPayload":
        return cls(dims=list(np.shape(array)), data=array)

    def to_array(self) -> np.ndarray:
        return self.data.reshape(self.dims)


# Requests


class PingMessage(_Message):
    type: Literal["ping"] = "ping"


class EncodeImageMessage(_Message):
    type: Literal["encodeImage"] = "encodeImage"
    float_array: FloatBuffer = Field(alias="float32Array")
    shape: List[int]

    @model_validator(mode="after")
    def _check_shape(self):
        if len(self.shape) != 4 or self.shape[:2] != [1, 3]:
            raise ValueError(f"image tensor must be of size 1x3xHxW, got {self.shape}")
        if int(np.prod(self.shape)) != self.float_array.size:
            raise ValueError(
                f"image tensor holds {self.float_array.size} values, shape {self.shape}"
            )
        return self

    @classmethod
    def from_tensor(cls, tensor: np.ndarray, request_id: int = 0) -> "EncodeImageMessage":
        return cls(float_array=tensor, shape=list(tensor.shape), request_id=request_id)

    def to_array(self) -> np.ndarray:
        return self.float_array.reshape(self.shape)


class DecodeMaskMessage(_Message):
    type: Literal["decodeMask"] = "decodeMask"
    points: List[PointPrompt]
    mask_array: Optional[FloatBuffer] = Field(None, alias="maskArray")
    mask_shape: Optional[List[int]] = Field(None, alias="maskShape")

    @model_validator(mode="after")
    def _check_mask(self):
        if (self.mask_array is None) != (self.mask_shape is None):
            raise ValueError("maskArray and maskShape must be given together")
        if self.mask_array is not None and int(np.prod(self.mask_shape)) != self.mask_array.size:
            raise ValueError(
                f"mask holds {self.mask_array.size} values, shape {self.mask_shape}"
            )
        return self

    def mask(self) -> Optional[np.ndarray]:
        if self.mask_array is None:
            return None
        return self.mask_array.reshape(self.mask_shape)


# Replies


class LoadingInProgressReply(_Message):
    type: Literal["loadingInProgress"] = "loadingInProgress"


class PongReply(_Message):
    type: Literal["pong"] = "pong"
    success: bool = True
    device: Optional[str] = None


class EncodeImageDoneReply(_Message):
    type: Literal["encodeImageDone"] = "encodeImageDone"


class DecodeMaskResultReply(_Message):
    type: Literal["decodeMaskResult"] = "decodeMaskResult"
    masks: TensorPayload
    iou_predictions: FloatBuffer

    @model_validator(mode="after")
    def _check_candidates(self):
        dims = self.masks.dims
        if len(dims) != 4 or dims[1] != self.iou_predictions.size:
            raise ValueError(
                f"{self.iou_predictions.size} IOU predictions for masks of dims {dims}"
            )
        return self


class ErrorReply(_Message):
    type: Literal["error"] = "error"
    data: str
    kind: ErrorKind = ErrorKind.INTERNAL


Message = Annotated[
    Union[
        PingMessage,
        EncodeImageMessage,
        DecodeMaskMessage,
        LoadingInProgressReply,
        PongReply,
        EncodeImageDoneReply,
        DecodeMaskResultReply,
        ErrorReply,
    ],
    Field(discriminator="type"),
]

_MESSAGE_ADAPTER = TypeAdapter(Message)


def message_from_wire(payload: dict):
    """Parse a wire dict back into its message class, dispatching on ``type``."""
    return _MESSAGE_ADAPTER.validate_python(payload)
