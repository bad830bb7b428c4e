# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Background inference worker.

The worker owns a ``SAM2InferenceBackend`` and runs every call against it on one
dedicated thread. Requests arrive through a bounded inbox queue and are processed
strictly in arrival order by a single consumer loop; replies are pushed onto a
bounded outbox queue that the control thread drains at its own pace. Any exception
raised while handling a request becomes an ``error`` reply carrying the request id.

There is no cancellation: a request runs to completion once dequeued. ``terminate()``
abandons the thread together with both queues, so nothing it produces afterwards is
ever seen by the control side.
"""

import logging
import queue
import threading

from typing import Optional

from sam2_interactive.errors import error_kind_for
from sam2_interactive.inference_backend import SAM2InferenceBackend
from sam2_interactive.protocol import (
    DecodeMaskMessage,
    DecodeMaskResultReply,
    EncodeImageDoneReply,
    EncodeImageMessage,
    ErrorReply,
    LoadingInProgressReply,
    PingMessage,
    PongReply,
    TensorPayload,
)

_SHUTDOWN = object()


class WorkerQueueFullError(RuntimeError):
    """The inbox is full; the control side must not block waiting for room."""


class InferenceWorker:
    def __init__(
        self,
        backend: SAM2InferenceBackend,
        queue_size: int = 8,
        poll_interval: float = 0.1,
        name: str = "SAM2InferenceWorker",
    ) -> None:
        """
        Args:
            backend: Backend handle owned by this worker from now on. It must not be
                used from any other thread.
            queue_size: Capacity of the inbox. The outbox holds four times as many
                replies, since a ping produces several.
            poll_interval: Seconds between stop-flag checks while idle.
            name: Thread name.
        """
        self.backend = backend
        self.poll_interval = poll_interval
        self._inbox: queue.Queue = queue.Queue(maxsize=queue_size)
        self._outbox: queue.Queue = queue.Queue(maxsize=queue_size * 4)
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._handlers = {
            "ping": self._handle_ping,
            "encodeImage": self._handle_encode_image,
            "decodeMask": self._handle_decode_mask,
        }

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> "InferenceWorker":
        if not self._thread.is_alive():
            self._thread.start()
        return self

    def post(self, message) -> None:
        """
        Enqueue a request without blocking.

        Raises:
            WorkerQueueFullError: If the inbox is at capacity.
            RuntimeError: If the worker has been stopped.
        """
        if self._stop_event.is_set():
            raise RuntimeError("Inference worker has been stopped")
        try:
            self._inbox.put_nowait(message)
        except queue.Full as e:
            raise WorkerQueueFullError("Inference worker queue is full") from e

    def get_reply(self, timeout: Optional[float] = 0.0):
        """
        Return the next reply, or None if none arrives within ``timeout`` seconds.

        ``timeout=0`` polls without blocking; ``timeout=None`` waits indefinitely.
        """
        try:
            if timeout == 0:
                return self._outbox.get_nowait()
            return self._outbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def shutdown(self, timeout: float = 5.0) -> None:
        """
        Stop after the requests already queued have been processed.

        Never blocks for longer than ``timeout`` seconds. If the inbox is full the
        worker is stopped after its current request instead, and a worker that has
        already been stopped is left alone.
        """
        if self._stop_event.is_set():
            return
        if self._thread.is_alive():
            try:
                self._inbox.put_nowait(_SHUTDOWN)
            except queue.Full:
                logging.warning("Inference worker queue is full, stopping after current request")
                self._stop_event.set()
            self._thread.join(timeout)
        self._stop_event.set()

    def terminate(self) -> None:
        """
        Stop immediately, dropping queued requests.

        A request already running finishes in the background but its reply is
        discarded. The backend must not be reused by a new worker while that
        request may still be running.
        """
        self._stop_event.set()
        self._inbox = queue.Queue()
        self._outbox = queue.Queue()

    def _run(self) -> None:
        inbox, outbox = self._inbox, self._outbox
        while not self._stop_event.is_set():
            try:
                message = inbox.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            if message is _SHUTDOWN:
                break
            self._dispatch(message, outbox)
        logging.info("Inference worker stopped")

    def _dispatch(self, message, outbox: queue.Queue) -> None:
        request_id = getattr(message, "request_id", 0)
        message_type = getattr(message, "type", None)
        handler = self._handlers.get(message_type)
        try:
            if handler is None:
                raise ValueError(f"Unknown message type: {message_type!r}")
            for reply in handler(message):
                self._reply(outbox, reply)
        except Exception as e:
            logging.error(f"Request {request_id} ({message_type}) failed: {e}")
            self._reply(
                outbox, ErrorReply(request_id=request_id, data=str(e), kind=error_kind_for(e))
            )

    def _reply(self, outbox: queue.Queue, reply) -> None:
        # Wait for room without outliving a stop request
        while not self._stop_event.is_set():
            try:
                outbox.put(reply, timeout=self.poll_interval)
                return
            except queue.Full:
                continue

    def _handle_ping(self, message: PingMessage):
        yield LoadingInProgressReply(request_id=message.request_id)
        self.backend.download_models()
        yield LoadingInProgressReply(request_id=message.request_id)
        device = self.backend.create_sessions()
        yield PongReply(request_id=message.request_id, success=True, device=device)

    def _handle_encode_image(self, message: EncodeImageMessage):
        self.backend.encode(message.to_array())
        yield EncodeImageDoneReply(request_id=message.request_id)

    def _handle_decode_mask(self, message: DecodeMaskMessage):
        result = self.backend.decode(message.points, message.mask())
        yield DecodeMaskResultReply(
            request_id=message.request_id,
            masks=TensorPayload.from_array(result.masks),
            iou_predictions=result.iou_predictions,
        )
