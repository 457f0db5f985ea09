# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Native surface implemented on llama-cpp-python's low-level bindings.

Every ctypes pointer stays inside this module behind an integer handle.
Symbol names that moved between llama.cpp releases are resolved in order
of preference.
"""

import codecs
import ctypes
import itertools
import logging
import os
import sys
import threading
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from pathlib import Path

import llama_cpp

from llrt.engine.native import (
    INVALID_HANDLE,
    TRUNCATION_NOTICE,
    DecodePosition,
    DecodeStep,
    NativeLibrary,
    StepStatus,
    get_should_stop,
)
from llrt.engine.params import SamplingParams
from llrt.exceptions import GenerationError

logger = logging.getLogger(__name__)


@contextmanager
def _suppress_stderr():
    """Temporarily suppresses stderr (to silence Metal/CUDA logs)."""
    stderr_fd = sys.stderr.fileno()
    saved_fd = os.dup(stderr_fd)
    try:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, stderr_fd)
        os.close(devnull)
        yield
    finally:
        os.dup2(saved_fd, stderr_fd)
        os.close(saved_fd)


def _symbol(*names: str):
    for name in names:
        fn = getattr(llama_cpp, name, None)
        if fn is not None:
            return fn
    raise AttributeError(f"llama_cpp exposes none of: {', '.join(names)}")


class _HandleTable:
    def __init__(self):
        self._objects: dict[int, object] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add(self, obj) -> int:
        with self._lock:
            handle = next(self._ids)
            self._objects[handle] = obj
            return handle

    def get(self, handle: int):
        with self._lock:
            return self._objects.get(handle)

    def pop(self, handle: int):
        with self._lock:
            return self._objects.pop(handle, None)


@dataclass
class _Batch:
    struct: object
    capacity: int


@dataclass
class _Context:
    ptr: object
    model: object
    vocab: object
    n_ctx: int
    n_batch: int
    decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )


_backend_lock = threading.Lock()
_backend_ready = False


class LlamaCppNative(NativeLibrary):
    """llama.cpp implementation of the native surface."""

    def __init__(self, verbose: bool = False):
        self._verbose = verbose
        self._models = _HandleTable()
        self._contexts = _HandleTable()
        self._batches = _HandleTable()
        self._samplers = _HandleTable()

    def backend_init(self) -> None:
        global _backend_ready
        with _backend_lock:
            if _backend_ready:
                return
            llama_cpp.llama_backend_init()
            _backend_ready = True
            logger.debug("llama.cpp backend initialized")

    def load_model(self, path: Path, gpu_layers: int) -> int:
        params = llama_cpp.llama_model_default_params()
        params.n_gpu_layers = gpu_layers
        load = _symbol("llama_model_load_from_file", "llama_load_model_from_file")
        quiet = nullcontext if self._verbose else _suppress_stderr
        with quiet():
            model = load(str(path).encode("utf-8"), params)
        if not model:
            logger.error("llama.cpp could not load %s", path)
            return INVALID_HANDLE
        return self._models.add(model)

    def create_context(self, model: int, ctx_size: int, threads: int, gpu_layers: int) -> int:
        model_ptr = self._models.get(model)
        if model_ptr is None:
            return INVALID_HANDLE
        params = llama_cpp.llama_context_default_params()
        params.n_ctx = ctx_size
        params.n_batch = ctx_size
        params.n_threads = threads
        params.n_threads_batch = threads
        params.offload_kqv = gpu_layers != 0
        init = _symbol("llama_init_from_model", "llama_new_context_with_model")
        quiet = nullcontext if self._verbose else _suppress_stderr
        with quiet():
            ctx = init(model_ptr, params)
        if not ctx:
            return INVALID_HANDLE
        get_vocab = getattr(llama_cpp, "llama_model_get_vocab", None)
        vocab = get_vocab(model_ptr) if get_vocab is not None else model_ptr
        return self._contexts.add(
            _Context(
                ptr=ctx,
                model=model_ptr,
                vocab=vocab,
                n_ctx=int(llama_cpp.llama_n_ctx(ctx)),
                n_batch=int(llama_cpp.llama_n_batch(ctx)),
            )
        )

    def create_batch(self, size: int) -> int:
        if size <= 0:
            return INVALID_HANDLE
        batch = llama_cpp.llama_batch_init(size, 0, 1)
        if not batch.token:
            return INVALID_HANDLE
        return self._batches.add(_Batch(batch, size))

    def create_sampler(self, params: SamplingParams | None = None) -> int:
        chain = llama_cpp.llama_sampler_chain_init(llama_cpp.llama_sampler_chain_default_params())
        if not chain:
            return INVALID_HANDLE
        add = llama_cpp.llama_sampler_chain_add
        if params is None:
            add(chain, llama_cpp.llama_sampler_init_greedy())
            return self._samplers.add(chain)

        if params.repeat_penalty != 1.0:
            add(chain, llama_cpp.llama_sampler_init_penalties(64, params.repeat_penalty, 0.0, 0.0))
        if params.top_k > 0:
            add(chain, llama_cpp.llama_sampler_init_top_k(params.top_k))
        if 0.0 < params.top_p < 1.0:
            add(chain, llama_cpp.llama_sampler_init_top_p(params.top_p, 1))
        if params.temperature > 0:
            seed = params.seed if params.seed >= 0 else llama_cpp.LLAMA_DEFAULT_SEED
            add(chain, llama_cpp.llama_sampler_init_temp(params.temperature))
            add(chain, llama_cpp.llama_sampler_init_dist(seed))
        else:
            add(chain, llama_cpp.llama_sampler_init_greedy())
        return self._samplers.add(chain)

    def prime(self, context: int, batch: int, prompt: str, max_tokens: int) -> int:
        ctx = self._contexts.get(context)
        b = self._batches.get(batch)
        if ctx is None or b is None:
            return -1

        max_input = ctx.n_ctx - max_tokens
        if max_input <= 0:
            logger.error("max_tokens=%d leaves no room in n_ctx=%d", max_tokens, ctx.n_ctx)
            return -1
        tokens = self._tokenize(ctx, prompt)
        if len(tokens) > max_input:
            logger.info("Prompt truncated from %d to %d tokens", len(tokens), max_input)
            tokens = tokens[:max_input]
        if not tokens or len(tokens) > min(ctx.n_batch, b.capacity):
            logger.error("Prompt of %d tokens does not fit the batch", len(tokens))
            return -1

        self._fill_batch(b.struct, tokens, 0)
        if llama_cpp.llama_decode(ctx.ptr, b.struct) != 0:
            return -1
        ctx.decoder.reset()
        return len(tokens)

    def decode_step(
        self,
        context: int,
        batch: int,
        sampler: int,
        max_tokens: int,
        position: DecodePosition,
    ) -> DecodeStep:
        if get_should_stop():
            return DecodeStep(StepStatus.STOPPED)

        ctx = self._contexts.get(context)
        b = self._batches.get(batch)
        chain = self._samplers.get(sampler)
        if ctx is None or b is None or chain is None:
            raise GenerationError("Invalid native handle in decode step")

        token = llama_cpp.llama_sampler_sample(chain, ctx.ptr, -1)
        is_eog = bool(_symbol("llama_vocab_is_eog", "llama_token_is_eog")(ctx.vocab, token))
        at_limit = position.generated >= max_tokens or position.current >= ctx.n_ctx
        if is_eog or at_limit:
            if at_limit and not is_eog and not position.truncation_sent:
                position.truncation_sent = True
                return DecodeStep(StepStatus.TRUNCATED, TRUNCATION_NOTICE)
            return DecodeStep(StepStatus.END)

        text = ctx.decoder.decode(self._piece(ctx, token))

        self._fill_batch(b.struct, [token], position.current)
        position.current += 1
        if get_should_stop():
            return DecodeStep(StepStatus.STOPPED)
        if llama_cpp.llama_decode(ctx.ptr, b.struct) != 0:
            raise GenerationError("llama_decode failed")

        if not text:
            return DecodeStep(StepStatus.PENDING)
        return DecodeStep(StepStatus.TOKEN, text)

    def kv_cache_clear(self, context: int) -> bool:
        ctx = self._contexts.get(context)
        if ctx is None:
            return False
        clear = getattr(llama_cpp, "llama_kv_self_clear", None) or getattr(
            llama_cpp, "llama_kv_cache_clear", None
        )
        if clear is not None:
            clear(ctx.ptr)
        else:
            llama_cpp.llama_memory_clear(llama_cpp.llama_get_memory(ctx.ptr), True)
        ctx.decoder.reset()
        return True

    def free_batch(self, batch: int) -> None:
        b = self._batches.pop(batch)
        if b is not None:
            llama_cpp.llama_batch_free(b.struct)

    def free_sampler(self, sampler: int) -> None:
        chain = self._samplers.pop(sampler)
        if chain is not None:
            llama_cpp.llama_sampler_free(chain)

    def free_context(self, context: int) -> None:
        ctx = self._contexts.pop(context)
        if ctx is not None:
            llama_cpp.llama_free(ctx.ptr)

    def free_model(self, model: int) -> None:
        ptr = self._models.pop(model)
        if ptr is not None:
            _symbol("llama_model_free", "llama_free_model")(ptr)

    def model_size(self, model: int) -> int:
        ptr = self._models.get(model)
        if ptr is None:
            return 0
        return int(llama_cpp.llama_model_size(ptr))

    def _tokenize(self, ctx: _Context, prompt: str) -> list[int]:
        text = prompt.encode("utf-8")
        n_max = len(text) + 2
        buf = (ctypes.c_int32 * n_max)()
        n = llama_cpp.llama_tokenize(ctx.vocab, text, len(text), buf, n_max, True, True)
        if n < 0:
            n_max = -n
            buf = (ctypes.c_int32 * n_max)()
            n = llama_cpp.llama_tokenize(ctx.vocab, text, len(text), buf, n_max, True, True)
        return list(buf[:n])

    def _piece(self, ctx: _Context, token: int) -> bytes:
        buf = ctypes.create_string_buffer(64)
        n = llama_cpp.llama_token_to_piece(ctx.vocab, token, buf, len(buf), 0, False)
        if n < 0:
            buf = ctypes.create_string_buffer(-n)
            n = llama_cpp.llama_token_to_piece(ctx.vocab, token, buf, len(buf), 0, False)
        return buf.raw[:n]

    @staticmethod
    def _fill_batch(batch, tokens: list[int], start: int) -> None:
        for i, token in enumerate(tokens):
            batch.token[i] = token
            batch.pos[i] = start + i
            batch.n_seq_id[i] = 1
            batch.seq_id[i][0] = 0
            batch.logits[i] = False
        batch.logits[len(tokens) - 1] = True
        batch.n_tokens = len(tokens)
