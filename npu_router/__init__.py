"""
npu-router: Multi-model inference router for local language models.

One utterance in, one model out:

  Intent:      keyword classification (vision → code → action → context → simple)
  Dispatch:    intent → model name → lazily loaded session
  Generation:  token-by-token sampling (temperature, top-k, top-p, repetition penalty)
  Memory:      idle sessions evicted after a TTL, persistent models never

INL - 2025
"""

__version__ = "0.1.0"
