"""
npu-router :: Model Session

One loaded model: backend handle + tokenizer + sampling parameters +
generation state. Autoregressive loop, one token per forward pass:

    prompt = template(system, user)
    ids, mask = tokenizer.encode(prompt)
    repeat up to max_tokens:
        check cancellation / deadline
        logits = backend.forward(ids, mask)      # last position only
        token = sample_token(logits, params, state)
        if token == EOS: stop
        ids.append(token); mask.append(1)
    return decode(generated).strip()

A session serves one generation at a time. Concurrent callers queue on the
session lock; with a busy timeout configured, a caller that waits too long
gets ModelBusyError instead.

INL - 2025
"""

import time
import threading
from typing import List, Optional
from dataclasses import dataclass

import torch

from npu_router.core.backend import InferenceBackend, load_backend
from npu_router.core.chat_template import ChatTemplate, render_action_prompt
from npu_router.core.config import ModelConfig
from npu_router.core.exceptions import (
    GenerationCancelled,
    InferenceError,
    ModelBusyError,
    ModelUnavailableError,
)
from npu_router.core.logging import get_logger
from npu_router.core.sampling import GenerationState, SamplingParams, sample_token
from npu_router.core.tokenizer import VocabTokenizer, load_tokenizer

logger = get_logger("npu_router.session")


@dataclass
class GenerationResult:
    """Result of one generate call."""
    text: str
    token_ids: List[int]
    prompt_tokens: int
    finish_reason: str = "length"  # "stop" (EOS) or "length" (max_tokens)
    elapsed_ms: float = 0.0

    @property
    def num_tokens(self) -> int:
        return len(self.token_ids)


class ModelSession:
    """
    Exclusive handle to one model plus everything needed to generate with it.

    Built by `from_config` (lazy or eager load) or directly around any
    InferenceBackend. `close()` releases the backend; a closed session
    refuses to generate.
    """

    def __init__(
        self,
        name: str,
        config: ModelConfig,
        backend: InferenceBackend,
        tokenizer: VocabTokenizer,
        params: Optional[SamplingParams] = None,
        template: Optional[ChatTemplate] = None,
        seed: Optional[int] = None,
        busy_timeout_s: Optional[float] = None,
    ):
        self.name = name
        self.config = config
        self.backend = backend
        self.tokenizer = tokenizer
        self.params = params or config.sampling_params()
        self.template = template or ChatTemplate(system_prompt=config.system_prompt or None)
        self.state = GenerationState()
        self.busy_timeout_s = busy_timeout_s

        self.generator = torch.Generator()
        if seed is not None:
            self.generator.manual_seed(seed)
        else:
            self.generator.seed()

        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_config(
        cls,
        name: str,
        config: ModelConfig,
        seed: Optional[int] = None,
        busy_timeout_s: Optional[float] = None,
    ) -> "ModelSession":
        """
        Construct a session from static configuration.

        Raises ConfigurationError when the weights cannot be opened.
        The tokenizer never fails (degenerate vocabulary at worst).
        """
        backend = load_backend(config.path, config.device)
        tokenizer = load_tokenizer(config.tokenizer_path, config.path)
        if tokenizer.is_degenerate:
            logger.warning(f"{name}: tokenizer has no vocabulary, output will be empty")
        return cls(name, config, backend, tokenizer, seed=seed, busy_timeout_s=busy_timeout_s)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def set_sampling_params(self, params: SamplingParams):
        """Replace decoding parameters wholesale; takes effect on the next generate."""
        error = params.validate()
        if error:
            raise ValueError(error)
        self.params = params

    def generate(
        self,
        prompt: str,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Generate a reply to `prompt`. See generate_result."""
        return self.generate_result(
            prompt,
            cancel_event=cancel_event,
            deadline=deadline,
            system_prompt=system_prompt,
            max_tokens=max_tokens,
        ).text

    def generate_action(
        self,
        prompt: str,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> str:
        """Generate with the action instruction prompt; the reply should be one action JSON."""
        return self.generate_action_result(prompt, cancel_event=cancel_event, deadline=deadline).text

    def generate_action_result(
        self,
        prompt: str,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> GenerationResult:
        return self.generate_result(
            render_action_prompt(prompt),
            cancel_event=cancel_event,
            deadline=deadline,
        )

    def generate_result(
        self,
        prompt: str,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:
        """
        Run the autoregressive loop.

        Args:
            prompt: user text (wrapped in the chat template)
            cancel_event: set from another thread to abort between steps
            deadline: absolute time.monotonic() after which generation aborts
            system_prompt: override the configured system prompt for this call
            max_tokens: override the configured token budget for this call

        Raises:
            GenerationCancelled: cancel_event set or deadline passed
            InferenceError: the backend forward pass failed
            ModelBusyError: busy timeout elapsed while waiting for the session
            ModelUnavailableError: session already closed
        """
        self._acquire(deadline)
        try:
            if self._closed:
                raise ModelUnavailableError(self.name, "session closed")
            return self._run(prompt, cancel_event, deadline, system_prompt, max_tokens)
        finally:
            self._lock.release()

    def _acquire(self, deadline: Optional[float]):
        timeout = self.busy_timeout_s
        if deadline is not None:
            remaining = max(0.0, deadline - time.monotonic())
            timeout = remaining if timeout is None else min(timeout, remaining)

        if timeout is None:
            self._lock.acquire()
            return

        start = time.monotonic()
        if not self._lock.acquire(timeout=timeout):
            waited = time.monotonic() - start
            if deadline is not None and time.monotonic() >= deadline:
                raise GenerationCancelled("timeout", model=self.name)
            raise ModelBusyError(self.name, waited)

    def _run(
        self,
        prompt: str,
        cancel_event: Optional[threading.Event],
        deadline: Optional[float],
        system_prompt: Optional[str],
        max_tokens: Optional[int],
    ) -> GenerationResult:
        start = time.perf_counter()
        params = self.params
        budget = max_tokens if max_tokens is not None else self.config.max_tokens
        eos_id = self.tokenizer.eos_token_id

        self.state.reset()
        full_prompt = self.template.apply(prompt, system_prompt=system_prompt)
        input_ids, attention_mask = self.tokenizer.encode(full_prompt)
        prompt_tokens = len(input_ids)

        generated: List[int] = []
        finish_reason = "length"

        for _ in range(budget):
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelled("cancelled", model=self.name)
            if deadline is not None and time.monotonic() >= deadline:
                raise GenerationCancelled("timeout", model=self.name)

            ids_tensor = torch.tensor([input_ids], dtype=torch.long)
            mask_tensor = torch.tensor([attention_mask], dtype=torch.long)
            try:
                with torch.no_grad():
                    logits = self.backend.forward(ids_tensor, mask_tensor)
            except Exception as e:
                raise InferenceError(f"{self.name}: forward pass failed: {e}") from e

            last_logits = logits.reshape(-1, logits.shape[-1])[-1]
            token_id = sample_token(last_logits, params, self.state, generator=self.generator)
            del ids_tensor, mask_tensor, logits, last_logits

            if token_id == eos_id:
                finish_reason = "stop"
                break
            generated.append(token_id)
            input_ids.append(token_id)
            attention_mask.append(1)

        text = self.tokenizer.decode(generated).strip()
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.debug(
            f"{self.name}: {len(generated)} tokens in {elapsed_ms:.0f}ms ({finish_reason})"
        )
        return GenerationResult(
            text=text,
            token_ids=generated,
            prompt_tokens=prompt_tokens,
            finish_reason=finish_reason,
            elapsed_ms=elapsed_ms,
        )

    def close(self):
        """Release the backend. Waits for an in-progress generation. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.backend.close()
            self.state.reset()
        logger.debug(f"{self.name}: session closed")
