"""
Small Decoder-Only Language Model in NumPy

A transformer language model trained from scratch with hand-written forward
and backward passes: word-level vocabulary, causal multi-head attention,
pre-norm transformer blocks, Adam, checkpoints and a two-phase training loop
(pretraining on statements, then instruction tuning on conversations).

Modules:
    errors: Exception hierarchy
    config: Hyperparameter dataclasses with JSON, TOML and environment loading
    vocab: Word-level tokenizer and vocabulary
    activations: Softmax, GELU, ReLU and their gradients
    layers: Linear, LayerNorm, Embedding with positional encoding
    attention: Causal multi-head self-attention
    transformer: Feed-forward network, transformer block and stack
    model: Language model, output projection and cross-entropy loss
    optimizer: Adam and global-norm gradient clipping
    metrics: Rolling window of training metrics
    data: Corpus loading and training-example construction
    checkpoint: Snapshot persistence and checkpoint directory management
    trainer: Training loop
    dashboard: Per-epoch loss, accuracy and gradient-norm panel
    log: Logging setup for the command line
    cli: Command-line entry point

Reference:
    "Attention Is All You Need" (Vaswani et al., 2017)
    https://arxiv.org/abs/1706.03762
"""

import logging as _logging

__version__ = "1.0.0"

_logging.getLogger(__name__).addHandler(_logging.NullHandler())
