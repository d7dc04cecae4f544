from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

EOS_TOKEN = "</s>"
TARGET_PAD = -1


class Dictionary:
    """Token <-> index mapping for acoustic-model targets.

    The tokens file holds one token per line (extra whitespace-separated columns are
    ignored). The EOS token is always appended so the sequence criterion can terminate
    hypotheses.
    """

    def __init__(self, tokens: Iterable[str], word_separator: str = "|") -> None:
        self._entries: List[str] = []
        self._index: Dict[str, int] = {}
        for token in tokens:
            self.add_entry(token)
        self.add_entry(EOS_TOKEN)
        self.word_separator = word_separator

    @classmethod
    def from_file(cls, path: str | Path, word_separator: str = "|") -> "Dictionary":
        path = Path(path)
        if not str(path) or not path.is_file():
            raise FileNotFoundError(f"Invalid dictionary filepath specified: '{path}'")
        tokens: List[str] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            fields = line.strip().split()
            if fields:
                tokens.append(fields[0])
        return cls(tokens, word_separator=word_separator)

    def add_entry(self, token: str) -> int:
        if token in self._index:
            return self._index[token]
        idx = len(self._entries)
        self._entries.append(token)
        self._index[token] = idx
        return idx

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, token: str) -> bool:
        return token in self._index

    @property
    def eos_index(self) -> int:
        return self._index[EOS_TOKEN]

    def index(self, token: str) -> int:
        try:
            return self._index[token]
        except KeyError:
            raise KeyError(f"Unknown token '{token}'") from None

    def entry(self, idx: int) -> str:
        return self._entries[idx]

    def encode(self, tokens: Sequence[str]) -> List[int]:
        return [self.index(t) for t in tokens]

    def encode_transcript(self, transcript: str) -> List[int]:
        """Letter-level encoding: spaces become the word separator."""
        words = transcript.strip().split()
        tokens: List[str] = []
        for i, word in enumerate(words):
            if i > 0:
                tokens.append(self.word_separator)
            tokens.extend(list(word))
        return self.encode(tokens)

    def to_words(self, path: Sequence[int]) -> List[str]:
        text = "".join(
            self.entry(int(i)) for i in path if 0 <= int(i) < len(self) and int(i) != self.eos_index
        )
        return [w for w in text.split(self.word_separator) if w]

    def to_text(self, path: Sequence[int]) -> str:
        return " ".join(self.to_words(path))


def load_dictionary(tokens_dir: str, tokens: str, word_separator: str = "|") -> Dictionary:
    path: Optional[Path] = Path(tokens_dir) / tokens if tokens_dir else Path(tokens)
    return Dictionary.from_file(path, word_separator=word_separator)
