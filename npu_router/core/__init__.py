"""
npu-router :: Core

Generic building blocks, not tied to routing policy.
  - tokenizer: text ↔ ids over a vocabulary table
  - sampling: next-token selection over logits
  - chat_template: prompt framing
  - action_parser: action JSON extraction
  - backend: opaque forward pass
  - config: model / memory / router settings
"""

from npu_router.core.config import ModelConfig, MemoryConfig, RouterConfig
from npu_router.core.tokenizer import VocabTokenizer, load_tokenizer
from npu_router.core.sampling import SamplingParams, GenerationState, sample_token
from npu_router.core.backend import InferenceBackend, CallableBackend, load_backend
from npu_router.core.action_parser import ActionDescriptor, parse_action
