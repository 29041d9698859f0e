"""
npu-router :: Test Utilities

Tests for:
  - Chat template rendering
  - Action prompt rendering
  - Action JSON extraction
  - Configuration defaults, merging and validation
  - Structured logging formatters

Run:
    pytest tests/test_utils.py -v

INL - 2025
"""

import json
import logging
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from npu_router.core.action_parser import ActionDescriptor, parse_action
from npu_router.core.chat_template import (
    AVAILABLE_ACTIONS,
    DEFAULT_SYSTEM_PROMPT,
    ChatTemplate,
    render_action_prompt,
)
from npu_router.core.config import MemoryConfig, ModelConfig, RouterConfig
from npu_router.core.exceptions import ActionParseError, ConfigurationError, ModelLoadError
from npu_router.core.logging import HumanFormatter, JSONFormatter, RequestLogger, get_logger


# =========================================================================
# Templates
# =========================================================================

class TestChatTemplate:
    def test_default_layout(self):
        text = ChatTemplate().apply("oi")
        assert text == (
            f"<|system|>\n{DEFAULT_SYSTEM_PROMPT}\n<|end|>\n"
            "<|user|>\noi\n<|end|>\n"
            "<|assistant|>\n"
        )

    def test_configured_system_prompt(self):
        text = ChatTemplate(system_prompt="Seja breve.").apply("oi")
        assert text.startswith("<|system|>\nSeja breve.\n")

    def test_per_call_override(self):
        tmpl = ChatTemplate(system_prompt="A")
        assert "\nB\n" in tmpl.apply("oi", system_prompt="B")
        assert "\nA\n" in tmpl.apply("oi")

    def test_from_file(self, tmp_path):
        path = tmp_path / "chat.jinja"
        path.write_text("[{{ system }}] {{ prompt }}", encoding="utf-8")
        assert ChatTemplate.from_file(str(path), system_prompt="S").apply("P") == "[S] P"

    def test_action_prompt(self):
        text = render_action_prompt("abre o chrome")
        assert text.endswith("Comando: abre o chrome\n\nJSON:")
        assert '- open_app: abre aplicativo {"app": "nome"}' in text
        for action in AVAILABLE_ACTIONS:
            assert f"- {action}:" in text

    def test_action_prompt_custom_actions(self):
        text = render_action_prompt("x", actions={"lock_screen": {}})
        assert "- lock_screen: lock_screen {}" in text
        assert "open_app" not in text


# =========================================================================
# Action parsing
# =========================================================================

class TestActionParser:
    def test_plain_json(self):
        d = parse_action('{"action": "open_app", "params": {"app": "chrome"}}')
        assert d.to_dict() == {"action": "open_app", "params": {"app": "chrome"}}

    def test_surrounding_prose(self):
        d = parse_action('Claro! {"action": "volume", "params": {"level": 30}} pronto.')
        assert d.action == "volume"
        assert d.params == {"level": 30}

    def test_action_tags(self):
        d = parse_action('<action>{"action": "screenshot", "params": {}}</action>')
        assert d.to_dict() == {"action": "screenshot", "params": {}}

    def test_braces_inside_strings(self):
        d = parse_action('Aqui: {"action": "type_text", "params": {"text": "a } b {"}} ok')
        assert d.params == {"text": "a } b {"}

    def test_skips_objects_without_action(self):
        d = parse_action('{"note": 1} {"action": "read_email"}')
        assert d.to_dict() == {"action": "read_email", "params": {}}

    def test_null_params(self):
        assert parse_action('{"action": "screenshot", "params": null}').params == {}

    @pytest.mark.parametrize("text", [
        "",
        "não sei",
        '{"action": "", "params": {}}',
        '{"action": "open_app", "params": ["chrome"]}',
        '{"action": 3}',
        '["open_app"]',
    ])
    def test_rejects(self, text):
        with pytest.raises(ActionParseError):
            parse_action(text)

    def test_parse_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_action("nada")

    def test_to_json_keeps_unicode(self):
        d = ActionDescriptor("type_text", {"text": "ação"})
        assert json.loads(d.to_json()) == {"action": "type_text", "params": {"text": "ação"}}
        assert "ação" in d.to_json()


# =========================================================================
# Configuration
# =========================================================================

class TestConfig:
    def test_defaults(self):
        config = RouterConfig.default("/models")
        assert set(config.models) == {"phi", "llama", "qwen", "vision", "coder"}
        phi = config.models["phi"]
        assert (phi.name, phi.max_tokens, phi.temperature) == ("phi-3.5-mini", 512, 0.7)
        assert phi.path == os.path.join("/models", "phi-3.5-mini.pt")
        assert config.models["llama"].max_tokens == 1024
        assert config.models["qwen"].temperature == 0.3
        assert config.models["vision"].max_tokens == 256
        assert (config.models["coder"].max_tokens, config.models["coder"].temperature) == (1024, 0.2)
        assert config.memory.unload_after_s == 300
        assert config.memory.tick_interval_s == 30
        assert config.memory.persistent == ["whisper", "phi"]
        assert config.load_all is False
        assert config.validate() is None

    def test_sampling_params_from_temperature(self):
        coder = RouterConfig.default().models["coder"].sampling_params()
        assert (coder.temperature, coder.top_k, coder.top_p) == (0.2, 10, 0.5)

    def test_from_dict_merges_over_defaults(self):
        config = RouterConfig.from_dict({
            "model_dir": "/m",
            "models": {"qwen": {"max_tokens": 64, "bogus": 1}},
            "memory": {"unload_after_s": 60, "persistent": ["phi"]},
            "load_all": True,
            "seed": 7,
        })
        qwen = config.models["qwen"]
        assert qwen.max_tokens == 64
        assert qwen.path == os.path.join("/m", "qwen-2.5-3b.pt")
        assert config.memory.unload_after_s == 60
        assert config.memory.persistent == ["phi"]
        assert config.load_all is True
        assert config.seed == 7

    def test_from_dict_new_model(self):
        config = RouterConfig.from_dict({"models": {"extra": {"name": "x", "path": "/x.pt"}}})
        assert config.models["extra"].path == "/x.pt"

    @pytest.mark.parametrize("data", [
        {"default_model": "missing"},
        {"models": {"phi": {"max_tokens": 0}}},
        {"models": {"phi": {"temperature": -1}}},
        {"models": {"phi": "not an object"}},
        {"memory": {"unload_after_s": 0}},
        {"retry_base_s": 10, "retry_max_s": 1},
    ])
    def test_from_dict_rejects(self, data):
        with pytest.raises(ConfigurationError):
            RouterConfig.from_dict(data)

    def test_from_json(self, tmp_path):
        path = tmp_path / "router.json"
        path.write_text(json.dumps({"models": {"phi": {"path": "/p.pt"}}}), encoding="utf-8")
        assert RouterConfig.from_json(str(path)).models["phi"].path == "/p.pt"

    def test_from_json_missing(self, tmp_path):
        with pytest.raises(ConfigurationError):
            RouterConfig.from_json(str(tmp_path / "none.json"))

    def test_check_files(self, tmp_path):
        weights = tmp_path / "m.pt"
        weights.write_bytes(b"x")
        assert ModelConfig("m", str(weights)).check_files() == []
        problems = ModelConfig("m", str(tmp_path / "gone.pt"), tokenizer_path=str(tmp_path / "t.json")).check_files()
        assert len(problems) == 2

    def test_memory_defaults_not_shared(self):
        a, b = MemoryConfig(), MemoryConfig()
        a.persistent.append("llama")
        assert b.persistent == ["whisper", "phi"]

    def test_model_load_error_collects(self):
        err = ModelLoadError({"llama": "boom", "qwen": "gone"})
        assert err.errors == {"llama": "boom", "qwen": "gone"}
        assert "2 model(s)" in str(err)
        assert isinstance(err, ConfigurationError)


# =========================================================================
# Logging
# =========================================================================

class TestLogging:
    def _record(self, **extra):
        record = logging.LogRecord("npu_router.test", logging.INFO, __file__, 1, "hello", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_context(self):
        line = JSONFormatter().format(self._record(request_id="abc", intent="action", extra_data={"n": 1}))
        data = json.loads(line)
        assert data["message"] == "hello"
        assert data["request_id"] == "abc"
        assert data["intent"] == "action"
        assert data["n"] == 1

    def test_human_formatter_tags(self):
        line = HumanFormatter(use_color=False).format(self._record(request_id="abc", model="qwen"))
        assert "hello" in line
        assert "[req=abc model=qwen]" in line

    def test_get_logger_prefixes(self):
        assert get_logger("pool").name == "npu_router.pool"
        assert get_logger("npu_router.pool").name == "npu_router.pool"

    def test_request_logger_binds_context(self):
        records = []

        class Collect(logging.Handler):
            def emit(self, record):
                records.append(record)

        logger = get_logger("npu_router.test")
        handler = Collect()
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        try:
            RequestLogger("req1", logger).bind(intent="simple", model=None).info("routed")
        finally:
            logger.removeHandler(handler)

        record = records[-1]
        assert record.request_id == "req1"
        assert record.intent == "simple"
        assert not hasattr(record, "model")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
