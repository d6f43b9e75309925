"""
Generator module - Staged model loading and streaming token generation

Responsibilities:
- Run one inference request as a state machine (load, ingest, generate)
- Stream cumulative text through the request callback
- Honor cooperative cancellation before and during generation
- Release native resources in reverse acquisition order on every exit path
- Measure TTFT and throughput
"""

import dataclasses
import logging
from contextlib import ExitStack
from dataclasses import dataclass
from enum import Enum
from time import perf_counter
from typing import Any, Dict, List, Optional, Tuple

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from benchmark_utils import BenchmarkAwareLogger
from config_loader import Config, get_config
from errors import (
    AllocationError,
    ContextInitError,
    ContextSizeExceeded,
    DecodeError,
    InferenceRuntimeError,
    InvalidInputError,
    RequestCancelled,
    SamplingError,
    TokenizerError,
    UnhandledInternalError,
)
from models.loader import (
    ModelHandle,
    apply_platform_policy,
    load_full,
    release_memory,
    verify_model_file,
)
from models.request import InferenceCallback, InferenceRequest
from models.tokenizer import IncrementalDetokenizer, eos_text
from models.vision_loader import (
    ImageEmbedding,
    VisionEncoderAdapter,
    prompt_contains_image,
    remove_all_images_from_prompt,
)
from validators import validate_inference_params

logger = logging.getLogger(__name__)

MISSING_INPUT_MESSAGE = "Missing required input parameters (model_path and input are required)"


class SessionState(str, Enum):
    IDLE = "idle"
    VOCAB_ONLY_LOAD = "vocab_only_load"
    FULL_LOAD = "full_load"
    CONTEXT_INIT = "context_init"
    MULTIMODAL_EMBED = "multimodal_embed"
    PROMPT_INGEST = "prompt_ingest"
    TOKEN_GEN = "token_gen"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED})


@dataclass(frozen=True)
class SamplerParams:
    """Sampler chain: min-p -> temperature -> seeded categorical draw"""

    min_p: float
    temperature: float
    seed: int


def build_sampler_params(request: InferenceRequest, config: Optional[Config] = None) -> SamplerParams:
    """
    Map request fields to the sampler chain

    min-p is parameterized by 1 - top_p; the seed falls back to the configured
    default. Frequency and repeat penalties are not part of the chain.
    """
    config = config or get_config()
    seed = request.seed if request.seed is not None else config.default_seed
    return SamplerParams(min_p=request.min_p, temperature=request.temperature, seed=seed)


class SafeCallback:
    """
    Wraps a caller callback so that a request sees exactly one done=True call

    Exceptions raised by the caller's callback are logged and swallowed so
    they cannot break the generation loop or the queue worker. Calls after
    the terminal one are dropped.
    """

    def __init__(self, callback: InferenceCallback, request_id: int):
        self._callback = callback
        self.request_id = request_id
        self.done = False
        self.calls = 0

    def __call__(self, text: str, done: bool) -> None:
        if self.done:
            logger.warning(f"Dropping callback after completion (request_id={self.request_id})")
            return
        if done:
            self.done = True
        self.calls += 1
        try:
            self._callback(text, done)
        except Exception:
            logger.exception(f"Inference callback raised (request_id={self.request_id})")


class GenerationSession:
    """
    One request's walk through load, ingest and generation.

    The session is owned by the thread that calls run(); every callback it
    makes happens on that thread.
    """

    def __init__(
        self,
        request: InferenceRequest,
        callback: InferenceCallback,
        *,
        engine: Any = None,
        cache: Any = None,
        registry: Any = None,
        gate: Any = None,
        config: Optional[Config] = None,
    ):
        if engine is None:
            from models.engine import get_engine

            engine = get_engine()
        if cache is None:
            from model_cache import get_model_cache

            cache = get_model_cache()
        if registry is None or gate is None:
            from inference_queue import get_inference_queue

            queue = get_inference_queue()
            registry = registry or queue.registry
            gate = gate or queue.load_gate

        self.request = request
        self.callback = callback if isinstance(callback, SafeCallback) else SafeCallback(callback, request.request_id)
        self.engine = engine
        self.cache = cache
        self.registry = registry
        self.gate = gate
        self.config = config or get_config()
        self.log = BenchmarkAwareLogger(f"session:{request.request_id}", sink=request.log_sink)
        self.vision = VisionEncoderAdapter(engine, self.log)

        self.state = SessionState.IDLE
        self.n_past = 0
        self.n_ctx = 0
        self._threads = max(1, request.num_threads)
        self.token_list: List[int] = []
        self.image_embeddings: List[ImageEmbedding] = []
        self.result = ""
        self.tokens_generated = 0
        self.stats: Dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def run(self) -> SessionState:
        """Execute the request; always ends with exactly one done=True callback"""
        final_text = ""
        try:
            with ExitStack() as stack:
                self._route_engine_logs(stack)
                self._execute(stack)
            final_text = self.result
        except RequestCancelled:
            self.state = SessionState.CANCELLED
            final_text = self.result
        except InferenceRuntimeError as exc:
            self.state = SessionState.FAILED
            self.log.error(exc.message)
            final_text = f"Error: {exc.message}"
        except MemoryError as exc:
            self.state = SessionState.FAILED
            err = AllocationError(str(exc) or "out of memory", self.request.model_path)
            self.log.error(err.message)
            final_text = f"Error: {err.message}"
        except Exception as exc:
            self.state = SessionState.FAILED
            logger.exception(f"Unhandled error in request {self.request.request_id}")
            final_text = UnhandledInternalError.wrap(exc, self.request.model_path).message

        if self.state not in TERMINAL_STATES:
            self.state = SessionState.COMPLETED
        self.callback(final_text, True)
        return self.state

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _route_engine_logs(self, stack: ExitStack) -> None:
        if self.request.log_sink is not None or self.config.verbose:
            self.engine.set_log_sink(self.log.raw)
            stack.callback(self.engine.set_log_sink, None)

    def _validate(self) -> None:
        request = self.request
        if not request.model_path or not request.input:
            raise InvalidInputError(MISSING_INPUT_MESSAGE)
        fields = {f.name: getattr(request, f.name) for f in dataclasses.fields(request)}
        try:
            validate_inference_params(fields)
        except ValueError as exc:
            raise InvalidInputError(str(exc)) from exc
        if request.penalty_freq != 0.0 or request.penalty_repeat != 1.0:
            self.log.debug(
                "Penalties are accepted but not applied",
                penalty_freq=request.penalty_freq,
                penalty_repeat=request.penalty_repeat,
            )

    def _execute(self, stack: ExitStack) -> None:
        request = self.request
        self._validate()

        with self.gate.hold(request.model_path):
            model, ctx, sampler, eos = self._load(stack)

        prompt = request.input
        if prompt_contains_image(prompt):
            if request.mmproj_path:
                self.state = SessionState.MULTIMODAL_EMBED
                self.image_embeddings = self.vision.embed_prompt_images(
                    request.mmproj_path, prompt, self._threads
                )
                for emb in self.image_embeddings:
                    stack.callback(emb.free)
            else:
                self.log.warning(
                    "Prompt contains images, but no mmproj_path was given. Images will be ignored."
                )
            prompt = remove_all_images_from_prompt(prompt, "")

        self.state = SessionState.PROMPT_INGEST
        self._ingest(model, ctx, prompt)

        if self.registry.is_cancelled(request.request_id):
            self.registry.discard(request.request_id)
            self.log.info("Cancelled before generation")
            raise RequestCancelled(request.request_id)

        # Start signal
        self.callback("", False)

        self.state = SessionState.TOKEN_GEN
        self._generate(model, ctx, sampler, eos)

    def _load(self, stack: ExitStack) -> Tuple[Any, Any, Any, str]:
        request = self.request
        path = request.model_path
        load_start = perf_counter()

        version = verify_model_file(path, detailed_check=True)
        self.log.info("Model file verified", path=path, gguf_version=version)
        release_memory(self.config.get_memory_release_delay_seconds())

        # Stage 1: vocabulary-only probe (cached)
        self.state = SessionState.VOCAB_ONLY_LOAD
        with self.cache.lease(path) as probe:
            eos = eos_text(probe, request.eos_token)
        self.log.debug("Vocabulary probe complete", eos=repr(eos))
        release_memory(self.config.get_memory_release_delay_seconds())

        # Stage 2: full load
        self.state = SessionState.FULL_LOAD
        n_gpu_layers, self._threads = apply_platform_policy(request.num_gpu_layers, request.num_threads)
        handle: ModelHandle = load_full(self.engine, path, n_gpu_layers)
        stack.callback(handle.release)
        model = handle.model

        self.state = SessionState.CONTEXT_INIT
        try:
            ctx = self.engine.new_context(
                model,
                n_ctx=request.context_size,
                n_batch=request.context_size,
                n_threads=self._threads,
            )
        except MemoryError:
            raise
        except Exception as exc:
            raise ContextInitError(path, str(exc)) from exc
        if ctx is None:
            raise ContextInitError(path, "engine returned no context")
        stack.callback(self.engine.free_context, ctx)
        self.n_ctx = self.engine.n_ctx(ctx)

        params = build_sampler_params(request, self.config)
        try:
            sampler = self.engine.new_sampler(
                min_p=params.min_p, temperature=params.temperature, seed=params.seed
            )
        except MemoryError:
            raise
        except Exception as exc:
            raise SamplingError(path, f"cannot build sampler chain: {exc}") from exc
        stack.callback(self.engine.free_sampler, sampler)

        self.stats["load_ms"] = (perf_counter() - load_start) * 1000
        self.log.info(
            "Model ready",
            n_ctx=self.n_ctx,
            n_gpu_layers=n_gpu_layers,
            n_threads=self._threads,
            load_ms=f"{self.stats['load_ms']:.1f}",
        )
        return model, ctx, sampler, eos

    def _tokenize(self, model: Any, text: str, add_bos: bool) -> List[int]:
        try:
            tokens = self.engine.tokenize(model, text, add_bos=add_bos, parse_special=True)
        except MemoryError:
            raise
        except Exception as exc:
            raise TokenizerError(self.request.model_path, str(exc)) from exc
        if tokens is None:
            raise TokenizerError(self.request.model_path, "engine returned no tokens")
        return list(tokens)

    def _decode(self, ctx: Any, tokens: List[int]) -> None:
        try:
            self.engine.decode(ctx, tokens, self.n_past)
        except MemoryError:
            raise
        except Exception as exc:
            raise DecodeError(self.request.model_path, str(exc)) from exc
        self.n_past += len(tokens)

    def _ingest(self, model: Any, ctx: Any, prompt: str) -> None:
        """Plan every segment, check the context budget, then commit"""
        request = self.request
        bos_pending = self.engine.add_bos(model)
        segments: List[Tuple[str, Any]] = []
        planned = 0

        multiple = len(self.image_embeddings) > 1
        for k, emb in enumerate(self.image_embeddings, start=1):
            if multiple:
                preamble = self._tokenize(model, f"Attached Image #{k}:\n", add_bos=bos_pending)
            elif bos_pending:
                preamble = [self.engine.token_bos(model)]
            else:
                preamble = []
            bos_pending = False
            if preamble:
                segments.append(("tokens", preamble))
                planned += len(preamble)
            segments.append(("image", emb))
            planned += emb.n_image_pos

        prompt_tokens = self._tokenize(model, prompt, add_bos=bos_pending)
        planned += len(prompt_tokens)
        if planned == 0:
            raise TokenizerError(request.model_path, "prompt produced no tokens")

        if planned + request.max_tokens > self.n_ctx:
            raise ContextSizeExceeded(request.model_path, planned, request.max_tokens, self.n_ctx)

        self.token_list = prompt_tokens
        for kind, value in segments:
            if kind == "tokens":
                self._decode(ctx, value)
                continue
            self.log.info(f"Adding image #{value.index + 1} to context")
            try:
                self.n_past = self.engine.eval_image_embed(ctx, value.embed, self.n_ctx, self.n_past)
            except RuntimeError as exc:
                self.log.warning(
                    f"Unable to add image #{value.index + 1} to context, continuing without it: {exc}"
                )
            value.free()

        if prompt_tokens:
            self._decode(ctx, prompt_tokens)
        self.stats["prompt_tokens"] = self.n_past
        self.log.info("Prompt ingested", n_past=self.n_past, n_ctx=self.n_ctx)

    def _stop_strings(self, eos: str) -> List[str]:
        if not self.config.stop_strings_enabled:
            return []
        return [s for s in [eos, *self.config.extra_stop_strings] if s]

    def _generate(self, model: Any, ctx: Any, sampler: Any, eos: str) -> None:
        request = self.request
        engine = self.engine
        eos_id = engine.token_eos(model)
        stop_strings = self._stop_strings(eos)
        detok = IncrementalDetokenizer()
        interval = self.config.get_throughput_log_interval_seconds()

        start = perf_counter()
        last_log = start
        first_token_at: Optional[float] = None

        while True:
            if self.registry.is_cancelled(request.request_id):
                self.registry.discard(request.request_id)
                self.state = SessionState.CANCELLED
                self.log.info("Cancelled during generation", tokens=self.tokens_generated)
                break
            if self.tokens_generated >= request.max_tokens:
                break

            try:
                token = engine.sample(sampler, ctx)
            except MemoryError:
                raise
            except Exception as exc:
                raise SamplingError(request.model_path, str(exc)) from exc

            if token == eos_id or engine.is_eog(model, token):
                break
            if self.n_past + 1 > self.n_ctx:
                self.log.warning("Context is full, stopping generation", n_past=self.n_past)
                break

            self.result += detok.feed(engine.token_to_piece(model, token, special=True))
            if first_token_at is None:
                first_token_at = perf_counter()
            self.callback(self.result, False)

            self._decode(ctx, [token])
            self.token_list.append(token)
            self.tokens_generated += 1

            if stop_strings and any(self.result.endswith(s) for s in stop_strings):
                self.log.debug("Stop string reached")
                break

            now = perf_counter()
            if now - last_log >= interval:
                rate = self.tokens_generated / (now - start)
                self.log.info(f"Throughput: {rate:.2f} tokens/sec", tokens=self.tokens_generated)
                last_log = now

        self.result += detok.flush()

        elapsed = perf_counter() - start
        self.stats["tokens_generated"] = self.tokens_generated
        self.stats["ttft_ms"] = (first_token_at - start) * 1000 if first_token_at else None
        self.stats["tokens_per_second"] = self.tokens_generated / elapsed if elapsed > 0 else 0.0
        self.log.info(
            "Generation finished",
            tokens=self.tokens_generated,
            tps=f"{self.stats['tokens_per_second']:.2f}",
        )


def run_inference_sync(
    request: InferenceRequest,
    callback: InferenceCallback,
    **kwargs: Any,
) -> SessionState:
    """Run one request on the calling thread (no queue)"""
    return GenerationSession(request, callback, **kwargs).run()


def collect_inference(request: InferenceRequest, **kwargs: Any) -> Tuple[str, List[Tuple[str, bool]]]:
    """Run a request synchronously and return (final_text, every callback call)"""
    calls: List[Tuple[str, bool]] = []

    def _record(text: str, done: bool) -> None:
        calls.append((text, done))

    run_inference_sync(request, _record, **kwargs)
    return calls[-1][0], calls
