"""
Compressed storage for observation sequences.

Pixel observations dominate the memory of long trajectories. A tape pushes
every frame through a streaming zlib compressor during collection and
decompresses frames one at a time when they are read back for training.
"""

import zlib
from typing import Iterator, List, Tuple

import numpy as np


class CompressedTape:
    """
    Write-once, read-many sequence of equally shaped arrays.

    Frames are appended while the tape is open. Closing flushes the
    compressor; after that the tape can be iterated any number of times.
    Compression is lossless, so frames read back equal the frames written.
    """

    def __init__(
        self,
        frame_shape: Tuple[int, ...],
        dtype=np.int16,
        compression_level: int = 6,
    ):
        self.frame_shape = tuple(frame_shape)
        self.dtype = np.dtype(dtype)
        self._frame_nbytes = int(np.prod(self.frame_shape)) * self.dtype.itemsize
        self._compressor = zlib.compressobj(compression_level)
        self._chunks: List[bytes] = []
        self._length = 0
        self._closed = False

    def __len__(self) -> int:
        return self._length

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def compressed_nbytes(self) -> int:
        return sum(len(c) for c in self._chunks)

    def append(self, frame: np.ndarray) -> None:
        """Compress and append one frame."""
        if self._closed:
            raise RuntimeError("cannot append to a closed tape")
        frame = np.ascontiguousarray(frame, dtype=self.dtype)
        if frame.shape != self.frame_shape:
            raise ValueError(f"expected frame shape {self.frame_shape}, got {frame.shape}")
        data = self._compressor.compress(frame.tobytes())
        if data:
            self._chunks.append(data)
        self._length += 1

    def close(self) -> None:
        """Flush the compressor. Further appends are rejected."""
        if self._closed:
            return
        tail = self._compressor.flush()
        if tail:
            self._chunks.append(tail)
        self._compressor = None
        self._closed = True

    def __iter__(self) -> Iterator[np.ndarray]:
        """Yield frames in order, decompressing incrementally."""
        if not self._closed:
            raise RuntimeError("tape must be closed before reading")
        decompressor = zlib.decompressobj()
        pending = b""
        for chunk in self._chunks:
            pending += decompressor.decompress(chunk)
            while len(pending) >= self._frame_nbytes:
                yield self._to_frame(pending[:self._frame_nbytes])
                pending = pending[self._frame_nbytes:]
        pending += decompressor.flush()
        while len(pending) >= self._frame_nbytes:
            yield self._to_frame(pending[:self._frame_nbytes])
            pending = pending[self._frame_nbytes:]

    def read_all(self) -> np.ndarray:
        """Decompress the whole tape into an array of shape (T, *frame_shape)."""
        out = np.empty((self._length,) + self.frame_shape, dtype=self.dtype)
        for i, frame in enumerate(self):
            out[i] = frame
        return out

    def _to_frame(self, data: bytes) -> np.ndarray:
        return np.frombuffer(data, dtype=self.dtype).reshape(self.frame_shape)
