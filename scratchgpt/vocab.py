"""
Word-Level Vocabulary

Maps word tokens to integer ids and back. Text is split on whitespace and
every ASCII punctuation character becomes a token of its own, so "Hi, there!"
tokenizes to ["Hi", ",", "there", "!"].

Ids 0-3 are reserved for the special tokens in a fixed order; every other
token gets the next id in the order it is first seen in the corpus. Building
twice from the same corpus therefore produces identical ids.

Classes:
    Vocabulary: Immutable bijection between tokens and ids
    VocabularyStats: Summary numbers reported at startup

Functions:
    tokenize: Split raw text into word and punctuation tokens
"""

import logging
import string
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from scratchgpt.errors import InvalidId, UnknownToken

logger = logging.getLogger(__name__)

PAD_TOKEN = "<pad>"
UNK_TOKEN = "<unk>"
BOS_TOKEN = "<s>"
EOS_TOKEN = "</s>"
SPECIAL_TOKENS = (PAD_TOKEN, UNK_TOKEN, BOS_TOKEN, EOS_TOKEN)

_PUNCTUATION = frozenset(string.punctuation)


def tokenize(text: str) -> List[str]:
    """
    Split text into tokens.

    Whitespace separates words; each ASCII punctuation character inside a word
    is split off as a separate token. Special tokens such as "</s>" pass
    through whole.

    Example:
        >>> tokenize("User: How are you?")
        ['User', ':', 'How', 'are', 'you', '?']
    """
    tokens = []
    for word in text.split():
        if word in SPECIAL_TOKENS:
            tokens.append(word)
            continue
        current = []
        for char in word:
            if char in _PUNCTUATION:
                if current:
                    tokens.append("".join(current))
                    current = []
                tokens.append(char)
            else:
                current.append(char)
        if current:
            tokens.append("".join(current))
    return tokens


@dataclass(frozen=True)
class VocabularyStats:
    total_words: int
    has_eos_token: bool
    has_unk_token: bool


class Vocabulary:
    """
    Bidirectional token <-> id mapping.

    The mappings are read-only once constructed; a Vocabulary never changes
    size after the model that uses it has been built.

    Example:
        vocab = Vocabulary.build(["hello world", "hello there"])
        vocab.encode("hello")      # 4
        vocab.decode(4)            # "hello"
        vocab.encode_text("hello you", add_eos=True)  # [4, 1, 3]
    """

    def __init__(self, words: Sequence[str]):
        """
        Args:
            words: Tokens in id order. Reserved tokens missing from the list
                are put in front, in their fixed order.

        Raises:
            ValueError: If a token appears twice
        """
        ordered = [token for token in SPECIAL_TOKENS if token not in words]
        ordered.extend(words)

        seen = set()
        duplicates = set()
        for word in ordered:
            if word in seen:
                duplicates.add(word)
            seen.add(word)
        if duplicates:
            duplicates = sorted(duplicates)
            raise ValueError(f"Duplicate tokens in vocabulary: {duplicates[:10]}")

        self._words: Tuple[str, ...] = tuple(ordered)
        self._encode: Mapping[str, int] = MappingProxyType(
            {word: index for index, word in enumerate(self._words)}
        )

    @classmethod
    def build(cls, corpus: Iterable[str]) -> "Vocabulary":
        """
        Build a vocabulary from texts, reserved tokens first.

        Args:
            corpus: Iterable of raw text strings

        Returns:
            Vocabulary with tokens in first-seen order
        """
        words = list(SPECIAL_TOKENS)
        seen = set(words)
        for text in corpus:
            for token in tokenize(text):
                if token not in seen:
                    seen.add(token)
                    words.append(token)
        vocab = cls(words)
        logger.debug("Built vocabulary with %d tokens", vocab.size())
        return vocab

    # Reserved ids

    @property
    def pad_id(self) -> int:
        return self._encode[PAD_TOKEN]

    @property
    def unk_id(self) -> int:
        return self._encode[UNK_TOKEN]

    @property
    def bos_id(self) -> int:
        return self._encode[BOS_TOKEN]

    @property
    def eos_id(self) -> int:
        return self._encode[EOS_TOKEN]

    @property
    def words(self) -> Tuple[str, ...]:
        return self._words

    # Lookups

    def encode(self, token: str) -> Optional[int]:
        return self._encode.get(token)

    def encode_or_error(self, token: str) -> int:
        """Raises UnknownToken if the token is not in the vocabulary."""
        token_id = self._encode.get(token)
        if token_id is None:
            raise UnknownToken(token)
        return token_id

    def decode(self, token_id: int) -> Optional[str]:
        if 0 <= token_id < len(self._words):
            return self._words[token_id]
        return None

    def decode_or_error(self, token_id: int) -> str:
        """Raises InvalidId if the id is outside [0, size)."""
        token = self.decode(token_id)
        if token is None:
            raise InvalidId(token_id, len(self._words))
        return token

    def encode_text(self, text: str, add_eos: bool = False) -> List[int]:
        """
        Tokenize and encode text; unknown tokens map to the <unk> id.

        Args:
            text: Raw text
            add_eos: Append the </s> id at the end
        """
        unk_id = self.unk_id
        ids = [self._encode.get(token, unk_id) for token in tokenize(text)]
        if add_eos:
            ids.append(self.eos_id)
        return ids

    def decode_ids(self, token_ids: Iterable[int], skip_special: bool = True) -> str:
        """
        Decode ids to space-joined text.

        Raises:
            InvalidId: On an id outside the vocabulary
        """
        tokens = []
        for token_id in token_ids:
            token = self.decode_or_error(int(token_id))
            if skip_special and token in SPECIAL_TOKENS:
                continue
            tokens.append(token)
        return " ".join(tokens)

    def size(self) -> int:
        return len(self._words)

    def contains(self, token: str) -> bool:
        return token in self._encode

    def statistics(self) -> VocabularyStats:
        return VocabularyStats(
            total_words=self.size(),
            has_eos_token=self.contains(EOS_TOKEN),
            has_unk_token=self.contains(UNK_TOKEN),
        )

    def to_list(self) -> List[str]:
        return list(self._words)

    def __len__(self) -> int:
        return len(self._words)

    def __contains__(self, token: object) -> bool:
        return token in self._encode

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Vocabulary):
            return NotImplemented
        return self._words == other._words

    def __hash__(self) -> int:
        return hash(self._words)

    def __repr__(self) -> str:
        return f"Vocabulary(size={self.size()})"
