"""
npu-router :: Router

One utterance in, one response out:

  1. detect_intent(text)      keyword groups, first match wins:
                              vision → code → action → context → simple
  2. model_for_intent(intent) closed mapping onto the five model names
  3. pool.ensure_loaded(name) lazy construction (failures → unsuccessful response)
  4. pool.lease(name)         borrow the session, eviction waits for us
  5. generate                 Action intent: action JSON → executor

The router owns its pool, memory manager and metrics; nothing is global.

INL - 2025
"""

import abc
import time
import threading
from enum import Enum
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from npu_router.core.action_parser import parse_action
from npu_router.core.config import RouterConfig, ModelConfig, PHI, LLAMA, QWEN, VISION, CODER, WHISPER
from npu_router.core.exceptions import ActionParseError, DispatchError, ModelUnavailableError
from npu_router.core.logging import RequestLogger, get_logger
from npu_router.core.metrics import RouterMetrics
from npu_router.engine.memory import MemoryManager
from npu_router.engine.pool import ModelPool, SlotState
from npu_router.engine.session import ModelSession

logger = get_logger("npu_router.router")


# =========================================================================
# Intents
# =========================================================================

class Intent(Enum):
    SIMPLE = "simple"
    ACTION = "action"
    CONTEXT = "context"
    VISION = "vision"
    CODE = "code"


# Checked in this order; trailing spaces are significant ("go ", "lê ").
INTENT_KEYWORDS = (
    (Intent.VISION, ("tela", "vendo", "olha", "mostra", "screenshot", "imagem", "o que tem")),
    (Intent.CODE, (
        "código", "codigo", "função", "funcao", "bug", "erro", "programa",
        "script", "python", "go ", "javascript",
    )),
    (Intent.ACTION, (
        "abre", "abra", "fecha", "feche", "envia", "manda", "lê ", "ler ",
        "email", "chrome", "navegador", "volume", "brilho",
    )),
    (Intent.CONTEXT, ("explica", "conte", "história", "como funciona", "por que", "porque")),
)


def detect_intent(text: str) -> Intent:
    """Case-insensitive substring classification. No match → SIMPLE."""
    lower = text.lower()
    for intent, keywords in INTENT_KEYWORDS:
        if any(kw in lower for kw in keywords):
            return intent
    return Intent.SIMPLE


def model_for_intent(intent: Intent) -> str:
    if intent == Intent.SIMPLE:
        return PHI
    if intent == Intent.ACTION:
        return QWEN
    if intent == Intent.CONTEXT:
        return LLAMA
    if intent == Intent.VISION:
        return VISION
    if intent == Intent.CODE:
        return CODER
    raise ValueError(f"Unknown intent: {intent!r}")


# =========================================================================
# Code sub-tasks
# =========================================================================

CODE_TASK_KEYWORDS = (
    ("generate", ("cria", "gera", "escreve", "faz")),
    ("fix", ("corrige", "fix", "erro", "bug")),
    ("explain", ("explica", "como funciona", "o que")),
    ("review", ("revisa", "review", "analisa")),
)

CODE_SYSTEM_PROMPTS = {
    "generate": (
        "Você é um assistente especializado em programação.\n"
        "Gere código limpo, bem documentado e funcional.\n"
        "Responda APENAS com o código, sem explicações adicionais."
    ),
    "fix": (
        "Você é um assistente especializado em debugging.\n"
        "Analise o código, identifique o problema e corrija.\n"
        "Mostre o código corrigido e explique brevemente o que estava errado."
    ),
    "explain": (
        "Você é um professor de programação.\n"
        "Explique o código de forma clara e didática em português.\n"
        "Use exemplos quando apropriado."
    ),
    "review": (
        "Você é um revisor de código experiente.\n"
        "Analise o código e forneça feedback sobre:\n"
        "- Possíveis bugs\n"
        "- Performance\n"
        "- Boas práticas\n"
        "- Sugestões de melhoria"
    ),
    "general": (
        "Você é um assistente de programação.\n"
        "Ajude com qualquer tarefa relacionada a código."
    ),
}


def detect_code_task(text: str) -> str:
    lower = text.lower()
    for task, keywords in CODE_TASK_KEYWORDS:
        if any(kw in lower for kw in keywords):
            return task
    return "general"


# =========================================================================
# Collaborators
# =========================================================================

class Transcriber(abc.ABC):
    """Speech-to-text. Owns the persistent "whisper" model."""

    @abc.abstractmethod
    def transcribe(self, audio: Any) -> str:
        ...

    def close(self):
        pass


class ActionExecutor(abc.ABC):
    """Runs a structured action on the host."""

    @abc.abstractmethod
    def execute(self, descriptor: Dict[str, Any]) -> Tuple[str, bool]:
        """descriptor is exactly {"action": str, "params": dict}. Returns (text, success)."""
        ...


class DryRunExecutor(ActionExecutor):
    """Reports the action without touching the host."""

    def execute(self, descriptor: Dict[str, Any]) -> Tuple[str, bool]:
        params = ", ".join(f"{k}={v}" for k, v in descriptor.get("params", {}).items())
        return f"[dry-run] {descriptor['action']}({params})", True


# =========================================================================
# Router
# =========================================================================

ACTION_FAILURE_PREFIX = "Desculpe, não consegui executar: "


@dataclass
class Response:
    text: str = ""
    action: Optional[Dict[str, Any]] = None
    success: bool = False
    intent: Optional[Intent] = None
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "action": self.action,
            "success": self.success,
            "intent": self.intent.value if self.intent else None,
            "model": self.model,
        }


class Router:
    """
    Intent classification, dispatch and model lifecycle.

    Lifecycle:
        router = Router(config)
        router.start()       # eager load_all, or preload the default model
        router.process("abre o chrome")
        router.close()       # stop eviction thread, close every session
    """

    def __init__(
        self,
        config: Optional[RouterConfig] = None,
        session_factory: Optional[Callable[[str, ModelConfig], ModelSession]] = None,
        executor: Optional[ActionExecutor] = None,
        transcriber: Optional[Transcriber] = None,
        metrics: Optional[RouterMetrics] = None,
    ):
        self.config = config or RouterConfig.default()
        self.executor = executor or DryRunExecutor()
        self.transcriber = transcriber
        self.metrics = metrics or RouterMetrics()

        if session_factory is None:
            session_factory = self._default_factory

        self.pool = ModelPool(
            self.config.models,
            factory=session_factory,
            retry_base_s=self.config.retry_base_s,
            retry_max_s=self.config.retry_max_s,
            metrics=self.metrics,
        )
        memory = self.config.memory
        self.memory = MemoryManager(
            self.pool,
            ttl_s=memory.unload_after_s,
            persistent=memory.persistent,
            tick_interval_s=memory.tick_interval_s,
        )
        self._started = False

    def _default_factory(self, name: str, config: ModelConfig) -> ModelSession:
        return ModelSession.from_config(
            name, config,
            seed=self.config.seed,
            busy_timeout_s=self.config.busy_timeout_s,
        )

    # =====================================================================
    # Lifecycle
    # =====================================================================

    def start(self):
        """
        Load models and start the eviction thread.

        Eager mode raises ModelLoadError if any model fails. Lazy mode
        preloads only the default model and raises if that fails.
        """
        if self.config.load_all:
            self.pool.load_all()
            for name in self.pool.names:
                self.memory.touch(name)
        else:
            default = self.config.default_model
            if not self.pool.ensure_loaded(default):
                state = self.pool.describe()[default]
                raise ModelUnavailableError(default, state.get("last_error") or "load failed")
            self.memory.touch(default)

        self.memory.start()
        self._started = True
        logger.info(f"Router ready ({len(self.pool.loaded_names())} model(s) loaded)")

    def close(self):
        """Stop the eviction thread and close every session."""
        self.memory.stop()
        self.pool.close()
        if self.transcriber is not None:
            self.transcriber.close()
        self._started = False
        logger.info("Router closed")

    def __enter__(self) -> "Router":
        self.start()
        return self

    def __exit__(self, *exc):
        self.close()

    # =====================================================================
    # Processing
    # =====================================================================

    def detect_intent(self, text: str) -> Intent:
        return detect_intent(text)

    def model_for_intent(self, intent: Intent) -> str:
        return model_for_intent(intent)

    def process(
        self,
        transcript: str,
        cancel_event: Optional[threading.Event] = None,
        timeout_s: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> Response:
        """
        Route one utterance and generate the reply.

        Dispatch problems (model unavailable or busy) and action failures
        come back as Response(success=False). Generation errors
        (InferenceError, GenerationCancelled) propagate.
        """
        rlog = RequestLogger(request_id, logger)
        if not transcript or not transcript.strip():
            return Response()

        intent = detect_intent(transcript)
        name = model_for_intent(intent)
        rlog.bind(intent=intent.value, model=name)
        rlog.info(f"Processing: {transcript!r}")
        self.metrics.on_request(intent.value)

        deadline = time.monotonic() + timeout_s if timeout_s is not None else None

        # Marked as used before loading so an idle sweep vetoes eviction
        # between ensure_loaded and lease.
        self.memory.touch(name)
        for attempt in range(2):
            if not self.pool.ensure_loaded(name):
                self.metrics.on_request_failed(intent.value)
                rlog.warning(f"{name} unavailable")
                return Response(
                    text=f"Modelo {name} indisponível no momento.",
                    success=False, intent=intent, model=name,
                )
            try:
                response = self._dispatch(name, intent, transcript, cancel_event, deadline, rlog)
                break
            except ModelUnavailableError as e:
                if attempt == 0 and self.pool.state(name) == SlotState.UNLOADED:
                    rlog.info(f"{name} unloaded before dispatch, reloading")
                    continue
                self.metrics.on_request_failed(intent.value)
                rlog.warning(str(e))
                return Response(text=str(e), success=False, intent=intent, model=name)
            except DispatchError as e:
                self.metrics.on_request_failed(intent.value)
                rlog.warning(str(e))
                return Response(text=str(e), success=False, intent=intent, model=name)

        response.intent = intent
        response.model = name
        if not response.success:
            self.metrics.on_request_failed(intent.value)
        rlog.info(f"Reply ({rlog.elapsed_ms():.0f}ms): {response.text!r}")
        return response

    def _dispatch(
        self,
        name: str,
        intent: Intent,
        transcript: str,
        cancel_event: Optional[threading.Event],
        deadline: Optional[float],
        rlog: RequestLogger,
    ) -> Response:
        """Lease the session and generate. Raises DispatchError when the slot is gone."""
        with self.pool.lease(name) as session:
            self.memory.touch(name)
            start = time.perf_counter()
            if intent == Intent.ACTION:
                result = session.generate_action_result(transcript, cancel_event=cancel_event, deadline=deadline)
                response = self._run_action(result.text, rlog)
            elif intent == Intent.CODE:
                task = detect_code_task(transcript)
                rlog.debug(f"Code task: {task}")
                result = session.generate_result(
                    transcript, cancel_event=cancel_event, deadline=deadline,
                    system_prompt=CODE_SYSTEM_PROMPTS[task],
                )
                response = Response(text=result.text, success=True)
            else:
                result = session.generate_result(transcript, cancel_event=cancel_event, deadline=deadline)
                response = Response(text=result.text, success=True)
            self.metrics.on_generation(name, start, result.num_tokens)
            self.memory.touch(name)
        return response

    def _run_action(self, raw: str, rlog: RequestLogger) -> Response:
        try:
            descriptor = parse_action(raw).to_dict()
        except ActionParseError as e:
            rlog.warning(f"Action parse failed: {e}")
            return Response(text=ACTION_FAILURE_PREFIX + str(e), success=False)

        try:
            text, ok = self.executor.execute(descriptor)
        except Exception as e:
            rlog.error(f"Action {descriptor['action']} failed: {e}", exc_info=True)
            return Response(text=ACTION_FAILURE_PREFIX + str(e), action=descriptor, success=False)

        if not ok:
            return Response(text=ACTION_FAILURE_PREFIX + text, action=descriptor, success=False)
        return Response(text=text, action=descriptor, success=True)

    def process_audio(self, audio: Any, **kwargs) -> Response:
        """Transcribe, then process. Empty transcription → empty response."""
        if self.transcriber is None:
            raise ModelUnavailableError(WHISPER, "no transcriber configured")
        text = self.transcriber.transcribe(audio)
        if not text or not text.strip():
            return Response()
        return self.process(text, **kwargs)

    # =====================================================================
    # Maintenance
    # =====================================================================

    def load(self, name: str) -> bool:
        ok = self.pool.ensure_loaded(name)
        if ok:
            self.memory.touch(name)
        return ok

    def unload(self, name: str) -> bool:
        evicted = self.pool.evict(name)
        if evicted:
            self.memory.forget(name)
        return evicted

    def set_persistent(self, name: str, persistent: bool):
        self.memory.set_persistent(name, persistent)

    def set_ttl(self, seconds: float):
        self.memory.set_ttl(seconds)

    def models(self) -> Dict[str, Dict]:
        models = self.pool.describe()
        for name, info in models.items():
            info["persistent"] = self.memory.is_persistent(name)
        return models

    def stats(self) -> Dict:
        stats = self.memory.stats()
        if self.transcriber is not None:
            stats["loaded_models"] = [WHISPER] + stats["loaded_models"]
            stats["total_loaded"] += 1
        failed = {
            name: info["last_error"]
            for name, info in self.pool.describe().items()
            if "last_error" in info
        }
        if failed:
            stats["failed_models"] = failed
        return stats
