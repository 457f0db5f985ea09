# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Reusable native handles for the generation loop.

One batch and one default sampler are allocated when the engine is
initialized and lent out to each generation. Requests that do not fit the
preallocated batch, or that need custom sampling, get a dedicated handle
that is freed on release. Allocation failures never raise: the caller gets
``INVALID_HANDLE`` back and decides what to do.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum

from llrt.engine.native import INVALID_HANDLE, NativeLibrary
from llrt.engine.params import SamplingParams

logger = logging.getLogger(__name__)

MIN_BATCH_SIZE = 512


class ResourceKind(Enum):
    BATCH = "batch"
    SAMPLER = "sampler"


@dataclass
class PooledResource:
    handle: int
    kind: ResourceKind
    capacity: int = 0
    in_use: bool = False


def batch_size_for_prompt(prompt_length: int, max_sequence_length: int) -> int:
    """Conservative batch size from a character count (about 4 chars per token)."""
    estimate = max(MIN_BATCH_SIZE, prompt_length // 4 + 100)
    return max(MIN_BATCH_SIZE, min(estimate, max_sequence_length))


class ResourcePool:
    """Lends the preallocated batch and sampler, allocating extras on demand."""

    def __init__(self, native: NativeLibrary):
        self._native = native
        self._lock = threading.Lock()
        self._batch: PooledResource | None = None
        self._sampler: PooledResource | None = None
        # Pooled handles already freed, or waiting for a checked-out user to return them
        self._freed: set[int] = set()
        self._retired: set[int] = set()

    def preallocate(self, batch_size: int) -> None:
        """Allocates the pooled handles; failures fall back to dynamic allocation."""
        with self._lock:
            if self._batch is None:
                handle = self._allocate_batch(batch_size)
                if handle != INVALID_HANDLE:
                    self._batch = PooledResource(handle, ResourceKind.BATCH, batch_size)
                else:
                    logger.warning("Batch preallocation failed, using dynamic allocation")
            if self._sampler is None:
                handle = self._allocate_sampler(None)
                if handle != INVALID_HANDLE:
                    self._sampler = PooledResource(handle, ResourceKind.SAMPLER)
                else:
                    logger.warning("Sampler preallocation failed, using dynamic allocation")

    @property
    def batch(self) -> PooledResource | None:
        return self._batch

    @property
    def sampler(self) -> PooledResource | None:
        return self._sampler

    def acquire_batch(self, required_size: int) -> int:
        with self._lock:
            pooled = self._batch
            if pooled is not None and not pooled.in_use and pooled.capacity >= required_size:
                pooled.in_use = True
                logger.debug("Reusing pooled batch %d (capacity %d)", pooled.handle, pooled.capacity)
                return pooled.handle
        logger.debug("Allocating dynamic batch of %d", required_size)
        return self._allocate_batch(required_size)

    def release_batch(self, handle: int) -> None:
        self._release(handle, self._batch, self._native.free_batch)

    def acquire_sampler(self, params: SamplingParams | None) -> int:
        """``None`` asks for default sampling, which may reuse the pooled sampler."""
        if params is None:
            with self._lock:
                pooled = self._sampler
                if pooled is not None and not pooled.in_use:
                    pooled.in_use = True
                    return pooled.handle
        return self._allocate_sampler(params)

    def release_sampler(self, handle: int) -> None:
        self._release(handle, self._sampler, self._native.free_sampler)

    def release_all(self) -> None:
        """
        Frees the pooled handles. Safe to call more than once.

        A handle still checked out by a generation is retired instead: it is
        freed when that generation returns it, never here.
        """
        to_free = []
        with self._lock:
            batch, self._batch = self._batch, None
            sampler, self._sampler = self._sampler, None
            for pooled, free in (
                (batch, self._native.free_batch),
                (sampler, self._native.free_sampler),
            ):
                if pooled is None:
                    continue
                if pooled.in_use:
                    logger.warning(
                        "Pooled %s %d still checked out, freeing it on return",
                        pooled.kind.value,
                        pooled.handle,
                    )
                    self._retired.add(pooled.handle)
                else:
                    self._freed.add(pooled.handle)
                    to_free.append((free, pooled.handle))
        for free, handle in to_free:
            free(handle)

    def _release(self, handle: int, pooled: PooledResource | None, free) -> None:
        if handle == INVALID_HANDLE:
            logger.warning("Ignoring release of invalid handle")
            return
        with self._lock:
            if pooled is not None and pooled.handle == handle:
                pooled.in_use = False
                return
            if handle in self._freed:
                logger.warning("Ignoring release of already freed handle %d", handle)
                return
            if handle in self._retired:
                self._retired.discard(handle)
                self._freed.add(handle)
                logger.debug("Freeing retired pooled handle %d", handle)
        free(handle)

    def _allocate_batch(self, size: int) -> int:
        try:
            return self._native.create_batch(size)
        except Exception as e:
            logger.warning("Batch allocation of %d failed: %s", size, e)
            return INVALID_HANDLE

    def _allocate_sampler(self, params: SamplingParams | None) -> int:
        try:
            return self._native.create_sampler(params)
        except Exception as e:
            logger.warning("Sampler allocation failed: %s", e)
            return INVALID_HANDLE
