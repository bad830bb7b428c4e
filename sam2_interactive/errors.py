# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Exception hierarchy for the interactive segmentation pipeline.

Every failure that can cross the worker boundary is mapped onto an ``ErrorKind``
so that the control side can tell a missing model apart from a precondition
violation without parsing free-text messages.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Coarse classification attached to every ``error`` reply."""

    MODEL_UNAVAILABLE = "model_unavailable"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    PRECONDITION = "precondition"
    INVALID_INPUT = "invalid_input"
    INTERNAL = "internal"


class SAM2InteractiveError(Exception):
    """Base class for all errors raised by this package."""

    kind = ErrorKind.INTERNAL


class ModelUnavailableError(SAM2InteractiveError):
    """A model artifact could not be read from cache nor fetched from the network."""

    kind = ErrorKind.MODEL_UNAVAILABLE


class BackendUnavailableError(SAM2InteractiveError):
    """No execution backend in the fallback list could create a session."""

    kind = ErrorKind.BACKEND_UNAVAILABLE


class SessionNotReadyError(SAM2InteractiveError):
    """Inference was requested before the sessions were created."""

    kind = ErrorKind.PRECONDITION


class ImageNotEncodedError(SAM2InteractiveError):
    """Decoding was requested before an image was encoded."""

    kind = ErrorKind.PRECONDITION


class ImageFormatError(SAM2InteractiveError):
    """The source image is corrupt or in an unsupported format."""

    kind = ErrorKind.INVALID_INPUT


def error_kind_for(exc: BaseException) -> ErrorKind:
    """
    Classify an arbitrary exception for an ``error`` reply.

    Package errors carry their own kind; ``ValueError``/``IndexError`` raised by
    input validation are reported as invalid input and everything else is internal.
    """
    if isinstance(exc, SAM2InteractiveError):
        return exc.kind
    if isinstance(exc, (ValueError, IndexError)):
        return ErrorKind.INVALID_INPUT
    return ErrorKind.INTERNAL
