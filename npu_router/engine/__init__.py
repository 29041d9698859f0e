"""
npu-router :: Engine

  - session: one model, autoregressive generation
  - pool: lazily loaded sessions with explicit slot states
  - memory: idle eviction thread
  - router: intent → model dispatch
"""

from npu_router.engine.session import ModelSession, GenerationResult
from npu_router.engine.pool import ModelPool, SlotState, ReadWriteLock
from npu_router.engine.memory import MemoryManager
from npu_router.engine.router import (
    Router, Response, Intent, detect_intent, model_for_intent,
    Transcriber, ActionExecutor, DryRunExecutor,
)
