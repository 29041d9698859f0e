"""
npu-router :: Prompt Templates

Jinja2 templates that frame a user utterance for a local chat model:
  - chat prompt:   <|system|> ... <|end|> <|user|> ... <|end|> <|assistant|>
  - action prompt: instructions that make the model answer with a single
                   {"action": ..., "params": {...}} JSON object

INL - 2025
"""

import json
from typing import Dict, List, Optional

from jinja2 import Template


DEFAULT_SYSTEM_PROMPT = (
    "Você é um assistente IA útil que responde em português brasileiro de forma concisa."
)

CHAT_TEMPLATE = (
    "<|system|>\n{{ system }}\n<|end|>\n"
    "<|user|>\n{{ prompt }}\n<|end|>\n"
    "<|assistant|>\n"
)

# Actions the executor understands: name → example params
AVAILABLE_ACTIONS: Dict[str, Dict] = {
    "open_app": {"app": "nome"},
    "open_url": {"url": "endereco"},
    "type_text": {"text": "texto"},
    "read_email": {},
    "send_email": {"to": "email", "subject": "assunto", "body": "corpo"},
    "volume": {"level": 50},
    "screenshot": {},
}

ACTION_DESCRIPTIONS = {
    "open_app": "abre aplicativo",
    "open_url": "abre URL",
    "type_text": "digita texto",
    "read_email": "lê emails",
    "send_email": "envia email",
    "volume": "ajusta volume",
    "screenshot": "captura tela",
}

ACTION_TEMPLATE = (
    "Você é um assistente que executa ações no computador.\n"
    "Dado o comando do usuário, retorne APENAS o JSON da ação, sem explicações.\n"
    "\n"
    "Formato:\n"
    '{"action": "tipo_acao", "params": {"param1": "valor1"}}\n'
    "\n"
    "Ações disponíveis:\n"
    "{% for action in actions %}"
    "- {{ action.name }}: {{ action.description }} {{ action.example }}\n"
    "{% endfor %}"
    "\n"
    "Comando: {{ prompt }}\n"
    "\n"
    "JSON:"
)


class ChatTemplate:
    """
    Chat template renderer.

    Wraps a user prompt with the model's system prompt using a Jinja2 template.
    """

    def __init__(self, template_str: str = CHAT_TEMPLATE, system_prompt: Optional[str] = None):
        self.template = Template(template_str, keep_trailing_newline=True)
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT

    def apply(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        """Render a single-turn prompt string."""
        return self.template.render(
            system=system_prompt or self.system_prompt,
            prompt=prompt,
        )

    @staticmethod
    def from_file(path: str, system_prompt: Optional[str] = None) -> "ChatTemplate":
        """Load template from a .jinja file."""
        with open(path, "r", encoding="utf-8") as f:
            return ChatTemplate(f.read(), system_prompt=system_prompt)


def _action_rows(actions: Dict[str, Dict]) -> List[Dict[str, str]]:
    return [
        {
            "name": name,
            "description": ACTION_DESCRIPTIONS.get(name, name),
            "example": json.dumps(example, ensure_ascii=False),
        }
        for name, example in actions.items()
    ]


def render_action_prompt(prompt: str, actions: Optional[Dict[str, Dict]] = None) -> str:
    """Instruction prompt asking for a single action JSON object."""
    return Template(ACTION_TEMPLATE).render(
        prompt=prompt,
        actions=_action_rows(actions or AVAILABLE_ACTIONS),
    )
