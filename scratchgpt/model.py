"""
Decoder-Only Language Model

Assembles the full next-token predictor from the building blocks and adds the
training objective.

Architecture Overview:
    Token IDs (sequence_length,)
           |
    [Embedding] token vectors + position offsets
           |
    [Transformer Block] x N   (pre-norm: LN -> attention -> residual,
           |                              LN -> feed-forward -> residual)
    [LayerNorm]
           |
    [Output Projection] -> logits (sequence_length, vocab_size)

Backward walks the same chain in reverse. Every layer accumulates into its own
gradient buffers, so zero_gradients() must be called before each example.

Reference:
    - "Improving Language Understanding by Generative Pre-Training" (Radford et al., 2018)
    - "Language Models are Unsupervised Multitask Learners" (GPT-2, Radford et al., 2019)

Classes:
    OutputProjection: Final linear map from hidden states to vocabulary logits
    LanguageModel: Complete model with forward, backward and generation

Functions:
    cross_entropy_loss: Mean next-token cross-entropy
    cross_entropy_loss_backward: Its gradient with respect to the logits
"""

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

from scratchgpt.activations import ActivationKind, log_softmax, softmax
from scratchgpt.config import ModelConfig
from scratchgpt.errors import ConfigurationError, NumericInstability, ShapeMismatch
from scratchgpt.layers import Embedding, LayerNorm, Linear, PositionalKind
from scratchgpt.transformer import TransformerStack
from scratchgpt.vocab import Vocabulary

logger = logging.getLogger(__name__)


class OutputProjection:
    """
    Language-model head: hidden states (seq, dim) -> logits (seq, vocab_size).

    Kept separate from the token embedding (no weight tying).
    """

    def __init__(
        self,
        embedding_dimension: int,
        vocabulary_size: int,
        rng: Optional[np.random.Generator] = None,
    ):
        self.embedding_dimension = embedding_dimension
        self.vocabulary_size = vocabulary_size
        self.linear = Linear(embedding_dimension, vocabulary_size, rng=rng)

    def forward(self, hidden_states: np.ndarray) -> np.ndarray:
        return self.linear.forward(hidden_states)

    def backward(self, upstream_gradient: np.ndarray) -> np.ndarray:
        return self.linear.backward(upstream_gradient)

    def zero_gradients(self) -> None:
        self.linear.zero_gradients()

    def get_parameters(self) -> Dict[str, np.ndarray]:
        return self.linear.get_parameters()

    def get_gradients(self) -> Dict[str, np.ndarray]:
        return self.linear.get_gradients()


def _valid_positions(targets: np.ndarray, ignore_index: Optional[int]) -> np.ndarray:
    if ignore_index is None:
        return np.ones(targets.shape[0], dtype=bool)
    return targets != ignore_index


def _check_loss_inputs(logits: np.ndarray, targets: np.ndarray, where: str) -> None:
    if logits.ndim != 2 or targets.shape != (logits.shape[0],):
        raise ShapeMismatch(where, (targets.shape[0], "vocab_size"), logits.shape)


def cross_entropy_loss(
    logits: np.ndarray, targets: np.ndarray, ignore_index: Optional[int] = None
) -> float:
    """
    Mean cross-entropy between the predicted distributions and the targets.

        loss = -mean_t log_softmax(logits_t)[target_t]

    log_softmax works on max-shifted logits, so logit gaps of 1e6 still give a
    finite loss (no log(0)).

    Args:
        logits: (sequence_length, vocab_size)
        targets: Target ids, shape (sequence_length,)
        ignore_index: Positions whose target equals this id are left out

    Returns:
        Loss averaged over the valid positions; 0.0 when none are valid

    Raises:
        ShapeMismatch: If logits and targets disagree on sequence length
        NumericInstability: If the loss is NaN or infinite
    """
    targets = np.asarray(targets)
    _check_loss_inputs(logits, targets, "cross_entropy_loss")

    valid = _valid_positions(targets, ignore_index)
    num_valid = int(np.sum(valid))
    if num_valid == 0:
        return 0.0

    log_probs = log_softmax(logits[valid], axis=-1)
    picked = log_probs[np.arange(num_valid), targets[valid]]
    loss = float(-np.sum(picked) / num_valid)

    if not np.isfinite(loss):
        raise NumericInstability(f"Cross-entropy loss is not finite ({loss})")
    return loss


def cross_entropy_loss_backward(
    logits: np.ndarray, targets: np.ndarray, ignore_index: Optional[int] = None
) -> np.ndarray:
    """
    Gradient of cross_entropy_loss with respect to the logits.

        d_loss/d_logits = (softmax(logits) - one_hot(targets)) / num_valid

    Ignored positions get a zero row.

    Returns:
        Array with the same shape as logits
    """
    targets = np.asarray(targets)
    _check_loss_inputs(logits, targets, "cross_entropy_loss_backward")

    valid = _valid_positions(targets, ignore_index)
    num_valid = int(np.sum(valid))
    grad = np.zeros_like(logits)
    if num_valid == 0:
        return grad

    rows = np.flatnonzero(valid)
    grad[rows] = softmax(logits[rows], axis=-1)
    grad[rows, targets[rows]] -= 1.0
    return grad / num_valid


class LanguageModel:
    """
    Decoder-only transformer language model.

    Processes one token sequence at a time: forward() maps ids of shape
    (sequence_length,) to logits of shape (sequence_length, vocab_size), where
    row t scores the token that follows position t.

    Parameter names are stable and prefixed by component:
        embedding.token_table, transformer.block_0_attn_query_weight, ...,
        final_layer_norm.gamma, output_projection.weight

    Example:
        config = ModelConfig(vocab_size=50, embedding_dim=32, num_heads=4)
        model = LanguageModel(config)
        logits = model.forward([2, 7, 9])
        loss = cross_entropy_loss(logits, np.array([7, 9, 3]))
        model.zero_gradients()
        grads = model.backward(cross_entropy_loss_backward(logits, np.array([7, 9, 3])))

    Attributes:
        config: The ModelConfig the model was built from
        embedding, transformer, final_layer_norm, output_projection: Components
    """

    def __init__(self, config: ModelConfig, rng: Optional[np.random.Generator] = None):
        """
        Args:
            config: Model hyperparameters; vocab_size must already be set
            rng: Random generator for initialization (default: seeded from config.seed)

        Raises:
            ConfigurationError: On an inconsistent configuration
        """
        if config.vocab_size <= 0:
            raise ConfigurationError("vocab_size must be set before building the model")
        if config.num_heads <= 0 or config.embedding_dim % config.num_heads != 0:
            raise ConfigurationError(
                f"embedding_dim ({config.embedding_dim}) must be divisible by "
                f"num_heads ({config.num_heads})"
            )
        try:
            activation = ActivationKind.parse(config.activation)
            positional = PositionalKind.parse(config.positional_encoding)
        except ValueError as error:
            raise ConfigurationError(str(error)) from None

        self.config = config
        rng = rng if rng is not None else np.random.default_rng(config.seed)

        self.embedding = Embedding(
            vocabulary_size=config.vocab_size,
            embedding_dimension=config.embedding_dim,
            max_sequence_length=config.max_seq_len,
            positional=positional,
            rng=rng,
        )
        self.transformer = TransformerStack(
            num_blocks=config.num_blocks,
            embedding_dimension=config.embedding_dim,
            num_heads=config.num_heads,
            ffn_hidden_dimension=config.hidden_dim,
            activation=activation,
            layer_norm_epsilon=config.layer_norm_epsilon,
            rng=rng,
        )
        self.final_layer_norm = LayerNorm(config.embedding_dim, config.layer_norm_epsilon)
        self.output_projection = OutputProjection(
            config.embedding_dim, config.vocab_size, rng=rng
        )

    def _components(self) -> Dict[str, object]:
        return {
            "embedding.": self.embedding,
            "transformer.": self.transformer,
            "final_layer_norm.": self.final_layer_norm,
            "output_projection.": self.output_projection,
        }

    def forward(self, token_ids: Sequence[int]) -> np.ndarray:
        """
        Args:
            token_ids: 1..max_seq_len token ids

        Returns:
            Logits, shape (sequence_length, vocab_size)

        Raises:
            ShapeMismatch: Empty or over-long sequence
            InvalidId: Id outside the vocabulary
        """
        hidden_states = self.embedding.forward(np.asarray(token_ids))
        hidden_states = self.transformer.forward(hidden_states)
        hidden_states = self.final_layer_norm.forward(hidden_states)
        return self.output_projection.forward(hidden_states)

    def backward(self, grad_logits: np.ndarray) -> Dict[str, np.ndarray]:
        """
        Backpropagate d_loss/d_logits through every layer.

        Returns:
            The accumulated gradients, keyed like get_parameters()
        """
        grad_hidden = self.output_projection.backward(grad_logits)
        grad_hidden = self.final_layer_norm.backward(grad_hidden)
        grad_hidden = self.transformer.backward(grad_hidden)
        self.embedding.backward(grad_hidden)
        return self.get_gradients()

    def zero_gradients(self) -> None:
        for component in self._components().values():
            component.zero_gradients()

    def get_parameters(self) -> Dict[str, np.ndarray]:
        """Live parameter arrays; the optimizer updates them in place."""
        params = {}
        for prefix, component in self._components().items():
            params.update({f"{prefix}{k}": v for k, v in component.get_parameters().items()})
        return params

    def get_gradients(self) -> Dict[str, np.ndarray]:
        grads = {}
        for prefix, component in self._components().items():
            grads.update({f"{prefix}{k}": v for k, v in component.get_gradients().items()})
        return grads

    def set_parameters(self, params: Dict[str, np.ndarray]) -> None:
        """
        Copy values into the existing parameter arrays.

        Arrays are overwritten in place, so references held by the optimizer
        stay valid. Names not given keep their current values.

        Raises:
            KeyError: Unknown parameter name
            ShapeMismatch: Array of the wrong shape
        """
        current = self.get_parameters()
        for name, value in params.items():
            if name not in current:
                raise KeyError(f"Unknown parameter: {name}")
            value = np.asarray(value)
            if value.shape != current[name].shape:
                raise ShapeMismatch(f"set_parameters[{name}]", current[name].shape, value.shape)
        for name, value in params.items():
            np.copyto(current[name], value)

    def count_parameters(self) -> int:
        return sum(param.size for param in self.get_parameters().values())

    def describe(self) -> List[str]:
        """One line per layer with its parameter count, for startup output."""
        config = self.config
        lines = [
            f"Embedding ({config.vocab_size} x {config.embedding_dim}, "
            f"{self.embedding.positional.value} positions): "
            f"{sum(p.size for p in self.embedding.get_parameters().values()):,}"
        ]
        for index, block in enumerate(self.transformer.blocks):
            lines.append(
                f"TransformerBlock {index} ({config.num_heads} heads, "
                f"ffn {config.embedding_dim}->{config.hidden_dim}): "
                f"{sum(p.size for p in block.get_parameters().values()):,}"
            )
        lines.append(f"LayerNorm ({config.embedding_dim}): {2 * config.embedding_dim:,}")
        lines.append(
            f"OutputProjection ({config.embedding_dim} -> {config.vocab_size}): "
            f"{sum(p.size for p in self.output_projection.get_parameters().values()):,}"
        )
        lines.append(f"Total parameters: {self.count_parameters():,}")
        return lines

    def generate(
        self,
        prompt_ids: Sequence[int],
        max_new_tokens: int,
        temperature: float = 0.0,
        top_k: Optional[int] = None,
        rng: Optional[np.random.Generator] = None,
        stop_id: Optional[int] = None,
    ) -> List[int]:
        """
        Extend the prompt one token at a time.

        When the sequence grows past max_seq_len only the most recent
        max_seq_len tokens are fed back in.

        Args:
            prompt_ids: Starting ids (at least one)
            max_new_tokens: Upper bound on tokens to add
            temperature: 0 picks the argmax; > 0 samples from softmax(logits / T)
            top_k: When sampling, restrict to the k highest-scoring tokens
            rng: Generator used for sampling
            stop_id: Stop after producing this id (it is included in the output)

        Returns:
            Prompt ids followed by the generated ids
        """
        if temperature < 0:
            raise ValueError("temperature must be >= 0")
        rng = rng if rng is not None else np.random.default_rng()
        generated = [int(token_id) for token_id in prompt_ids]
        max_len = self.config.max_seq_len

        for _ in range(max_new_tokens):
            logits = self.forward(generated[-max_len:])[-1]

            if temperature == 0.0:
                next_id = int(np.argmax(logits))
            else:
                scaled = logits / temperature
                if top_k is not None and 0 < top_k < scaled.shape[0]:
                    cutoff = np.sort(scaled)[-top_k]
                    scaled = np.where(scaled < cutoff, -np.inf, scaled)
                probs = softmax(scaled)
                next_id = int(rng.choice(probs.shape[0], p=probs))

            generated.append(next_id)
            if stop_id is not None and next_id == stop_id:
                break
        return generated

    def predict(
        self, text: str, vocab: Vocabulary, max_new_tokens: Optional[int] = None
    ) -> str:
        """
        Greedy continuation of text, decoded back to a string.

        Generation stops at </s> or when the sequence reaches max_seq_len.
        Unknown words in the prompt map to <unk>.
        """
        prompt_ids = vocab.encode_text(text)
        if not prompt_ids:
            return ""
        budget = self.config.max_seq_len - len(prompt_ids)
        if max_new_tokens is not None:
            budget = min(budget, max_new_tokens)
        if budget <= 0:
            return ""

        generated = self.generate(prompt_ids, budget, stop_id=vocab.eos_id)
        return vocab.decode_ids(generated[len(prompt_ids):])
