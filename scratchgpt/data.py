"""
Training Data

Loads the two text corpora (pretraining statements and instruction-tuning
conversations) and turns texts into next-token training examples.

Data formats:
    json: a single JSON array of strings
    csv: no header; the fields of each row are joined with "," into one text

Classes:
    TrainingExample: One (input ids, target ids) pair
    Dataset: The pretraining and chat corpora

Functions:
    load_texts: Read one corpus file
    build_examples: Encode texts and cut them into fixed-size windows
    example_order: Per-epoch visiting order, fixed or seeded shuffle
"""

import csv
import json
import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from scratchgpt.errors import DataLoadError
from scratchgpt.vocab import Vocabulary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrainingExample:
    """
    Next-token pair: target_ids[t] is the token that follows input_ids[t].

    Attributes:
        input_ids: Tokens fed to the model
        target_ids: The same window shifted left by one
    """

    input_ids: Tuple[int, ...]
    target_ids: Tuple[int, ...]

    def __post_init__(self):
        if len(self.input_ids) == 0 or len(self.input_ids) != len(self.target_ids):
            raise ValueError(
                f"input_ids and target_ids must be non-empty and equal length, got "
                f"{len(self.input_ids)} and {len(self.target_ids)}"
            )

    def __len__(self) -> int:
        return len(self.input_ids)


def _load_json(path: str) -> List[str]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as error:
        raise DataLoadError(f"Failed to read JSON file {path}: {error}") from error
    except json.JSONDecodeError as error:
        raise DataLoadError(f"Failed to parse JSON file {path}: {error}") from error

    if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
        raise DataLoadError(f"{path} must contain a JSON array of strings")
    return data


def _load_csv(path: str) -> List[str]:
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            return [",".join(row) for row in csv.reader(f) if row]
    except OSError as error:
        raise DataLoadError(f"Failed to read CSV file {path}: {error}") from error
    except csv.Error as error:
        raise DataLoadError(f"Failed to parse CSV file {path}: {error}") from error


def load_texts(path: str, data_format: str = "json") -> List[str]:
    """
    Read one corpus file.

    Raises:
        DataLoadError: Missing file, unparseable content or unknown format
    """
    if data_format == "json":
        texts = _load_json(path)
    elif data_format == "csv":
        texts = _load_csv(path)
    else:
        raise DataLoadError(f"Unknown data format {data_format!r}")
    logger.debug("Loaded %d samples from %s", len(texts), path)
    return texts


@dataclass
class Dataset:
    """Pretraining texts and instruction-tuning (chat) texts."""

    pretraining: List[str]
    chat: List[str]

    @classmethod
    def load(cls, pretraining_path: str, chat_path: str, data_format: str = "json") -> "Dataset":
        dataset = cls(
            pretraining=load_texts(pretraining_path, data_format),
            chat=load_texts(chat_path, data_format),
        )
        dataset.validate()
        logger.info(
            "Dataset loaded: %d pre-training samples, %d chat samples",
            len(dataset.pretraining),
            len(dataset.chat),
        )
        return dataset

    def total_samples(self) -> int:
        return len(self.pretraining) + len(self.chat)

    def all_texts(self) -> List[str]:
        return self.pretraining + self.chat

    def validate(self) -> None:
        """
        Raises:
            DataLoadError: If both corpora are empty
        """
        if not self.pretraining and not self.chat:
            raise DataLoadError("Dataset contains no samples")
        empty_count = sum(1 for text in self.all_texts() if not text.strip())
        if empty_count:
            logger.warning("Dataset contains %d empty strings", empty_count)


def build_examples(
    texts: Sequence[str], vocab: Vocabulary, max_seq_len: int
) -> List[TrainingExample]:
    """
    Encode texts (with a trailing </s>) and cut them into training examples.

    Each text becomes windows of max_seq_len + 1 tokens taken with stride
    max_seq_len, so consecutive windows share one token and every next-token
    pair appears exactly once. The last window may be shorter.

    Texts with fewer than two tokens have no next-token pair and are skipped.
    """
    if max_seq_len <= 0:
        raise ValueError("max_seq_len must be > 0")

    examples = []
    skipped = 0
    for text in texts:
        ids = vocab.encode_text(text, add_eos=True)
        if len(ids) < 2:
            skipped += 1
            continue
        for start in range(0, len(ids) - 1, max_seq_len):
            window = ids[start : start + max_seq_len + 1]
            examples.append(
                TrainingExample(input_ids=tuple(window[:-1]), target_ids=tuple(window[1:]))
            )
    if skipped:
        logger.warning("Skipped %d texts too short to form a training example", skipped)
    return examples


def example_order(
    num_examples: int, shuffle: bool = False, seed: int = 0, epoch: int = 1
) -> List[int]:
    """
    Indices in the order examples are visited during one epoch.

    Without shuffling this is always 0..n-1. With shuffling the permutation
    depends only on (seed, epoch), so a run can be reproduced exactly.
    """
    if not shuffle:
        return list(range(num_examples))
    rng = np.random.default_rng((seed, epoch))
    return [int(index) for index in rng.permutation(num_examples)]
