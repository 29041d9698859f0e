"""
npu-router :: Tokenizer

Vocabulary-table tokenizer: text ↔ integer ids.

The vocabulary is external data, loaded once:
  - flat JSON map {piece: id}
  - HuggingFace tokenizer.json (vocabulary read via the tokenizers library)

A missing or unreadable vocabulary is not fatal: the tokenizer keeps working
with only the four special ids, and decoding then yields empty text.

INL - 2025
"""

import json
import os
from typing import Dict, List, Optional, Tuple

from npu_router.core.logging import get_logger

logger = get_logger("npu_router.tokenizer")

PAD_TOKEN_ID = 0
BOS_TOKEN_ID = 1
EOS_TOKEN_ID = 2
UNK_TOKEN_ID = 3

SPECIAL_PIECES = {
    "pad": ("<pad>", PAD_TOKEN_ID),
    "bos": ("<s>", BOS_TOKEN_ID),
    "eos": ("</s>", EOS_TOKEN_ID),
    "unk": ("<unk>", UNK_TOKEN_ID),
}


def load_vocab(path: str) -> Dict[str, int]:
    """
    Read a vocabulary table from disk.

    Raises OSError / ValueError on unreadable input; callers decide how to degrade.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict) and "model" in data and isinstance(data["model"], dict):
        # HuggingFace tokenizer.json
        from tokenizers import Tokenizer

        try:
            hf_tokenizer = Tokenizer.from_file(path)
        except Exception as e:  # tokenizers raises a bare Exception on bad files
            raise ValueError(f"invalid tokenizer.json: {e}") from e
        return dict(hf_tokenizer.get_vocab(with_added_tokens=True))

    if not isinstance(data, dict):
        raise ValueError(f"vocabulary must be a JSON object, got {type(data).__name__}")

    vocab = {}
    for piece, token_id in data.items():
        if not isinstance(token_id, int) or isinstance(token_id, bool):
            raise ValueError(f"id for {piece!r} is not an integer")
        vocab[piece] = token_id
    return vocab


class VocabTokenizer:
    """
    Greedy longest-match tokenizer over a vocabulary table.

    Input:  text (str)
    Output: (token ids, attention mask): BOS first, every position attended

    A vocabulary of single symbols behaves exactly character by character.
    """

    def __init__(self, vocab_path: Optional[str] = None, vocab: Optional[Dict[str, int]] = None):
        self.vocab_path = vocab_path
        self.vocab: Dict[str, int] = {}

        if vocab is not None:
            self.vocab = dict(vocab)
        elif vocab_path:
            try:
                self.vocab = load_vocab(vocab_path)
                logger.debug(f"Vocabulary loaded: {vocab_path} ({len(self.vocab)} entries)")
            except (OSError, ValueError) as e:
                logger.warning(f"Vocabulary unavailable at {vocab_path} ({e}); using special ids only")
        else:
            logger.warning("No vocabulary configured; using special ids only")

        self.pad_token_id = self.vocab.get(SPECIAL_PIECES["pad"][0], PAD_TOKEN_ID)
        self.bos_token_id = self.vocab.get(SPECIAL_PIECES["bos"][0], BOS_TOKEN_ID)
        self.eos_token_id = self.vocab.get(SPECIAL_PIECES["eos"][0], EOS_TOKEN_ID)
        self.unk_token_id = self.vocab.get(SPECIAL_PIECES["unk"][0], UNK_TOKEN_ID)

        special_pieces = {piece for piece, _ in SPECIAL_PIECES.values()}
        self._pieces = {p: i for p, i in self.vocab.items() if p and p not in special_pieces}
        self._max_piece_len = max((len(p) for p in self._pieces), default=0)
        self._id_to_piece = {i: p for p, i in self.vocab.items()}
        self._skip_ids = {self.bos_token_id, self.eos_token_id, self.pad_token_id}

    @property
    def is_degenerate(self) -> bool:
        """True when only the special ids are known."""
        return not self._pieces

    @property
    def vocab_size(self) -> int:
        ids = list(self._id_to_piece) + [
            self.pad_token_id, self.bos_token_id, self.eos_token_id, self.unk_token_id,
        ]
        return max(ids) + 1

    def encode(self, text: str) -> Tuple[List[int], List[int]]:
        """Text → (ids, attention mask). Unknown symbols map to the UNK id."""
        ids = [self.bos_token_id]
        pos = 0
        n = len(text)
        while pos < n:
            token_id = None
            for length in range(min(self._max_piece_len, n - pos), 0, -1):
                token_id = self._pieces.get(text[pos:pos + length])
                if token_id is not None:
                    pos += length
                    break
            if token_id is None:
                token_id = self.unk_token_id
                pos += 1
            ids.append(token_id)
        return ids, [1] * len(ids)

    def decode(self, token_ids: List[int]) -> str:
        """Ids → text. BOS/EOS/PAD are skipped, unmapped ids contribute nothing."""
        parts = []
        for token_id in token_ids:
            if token_id in self._skip_ids:
                continue
            piece = self._id_to_piece.get(token_id)
            if piece is not None:
                parts.append(piece)
        return "".join(parts)


def load_tokenizer(tokenizer_path: Optional[str], model_path: Optional[str] = None) -> VocabTokenizer:
    """
    Build the tokenizer for a model.

    Uses the configured path, else looks for vocab.json / tokenizer.json next
    to the model weights.
    """
    if not tokenizer_path and model_path:
        model_dir = model_path if os.path.isdir(model_path) else os.path.dirname(model_path)
        for name in ("vocab.json", "tokenizer.json"):
            candidate = os.path.join(model_dir, name)
            if os.path.exists(candidate):
                tokenizer_path = candidate
                break
    return VocabTokenizer(tokenizer_path)
