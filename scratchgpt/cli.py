"""
Command-line entry point.

USAGE:
    # Train from scratch on the bundled data, then chat
    scratchgpt --train

    # Custom configuration (JSON or TOML) and data
    scratchgpt -c config.toml --pretraining-data my_facts.json -o runs/

    # Chat with a saved model (no training)
    scratchgpt -k checkpoints/checkpoint_instruction_tuning_epoch_0100.npz

    # Resume training from a checkpoint
    scratchgpt -k checkpoints/checkpoint_pretraining_epoch_0050.npz --train

    # Show a loss / accuracy / gradient-norm panel after every epoch
    scratchgpt --train --visualize

WHAT THIS SCRIPT DOES:
    1. Loads and validates configuration (config file, SCRATCHGPT_* variables, flags)
    2. Loads the pretraining and chat corpora and builds the vocabulary
       (or takes vocabulary and architecture from the checkpoint)
    3. Pretrains, then instruction-tunes, with a progress bar per phase.
       A checkpoint's phase resumes at the epoch after the one it recorded;
       pretraining is skipped when resuming instruction tuning.
    4. Drops into an interactive prompt ("exit", Ctrl-D or Ctrl-C to quit)

Ctrl-C during training stops after the current example and writes an
"interrupted" checkpoint to the output directory.
"""

import argparse
import logging
import os
import signal
import sys
from typing import List, Optional

from tqdm import tqdm

from scratchgpt import __version__
from scratchgpt.checkpoint import CheckpointManager, load_checkpoint, save_checkpoint
from scratchgpt.config import Config, ModelConfig
from scratchgpt.dashboard import TrainingDashboard
from scratchgpt.data import Dataset, build_examples
from scratchgpt.errors import ScratchGPTError
from scratchgpt.log import configure_logging
from scratchgpt.metrics import Metrics
from scratchgpt.model import LanguageModel
from scratchgpt.optimizer import Adam
from scratchgpt.trainer import INSTRUCTION_TUNING, PRETRAINING, Trainer
from scratchgpt.vocab import Vocabulary

logger = logging.getLogger(__name__)

SAMPLE_PROMPT = "User: How do mountains form?"
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scratchgpt",
        description="Train and chat with a small transformer language model written in NumPy",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "-c", "--config", metavar="FILE", help="Configuration file (.toml, otherwise JSON)"
    )
    parser.add_argument(
        "-t", "--train", action="store_true",
        help="Train even when a checkpoint is given (always on without one)",
    )
    parser.add_argument("-k", "--checkpoint", metavar="FILE", help="Load model from checkpoint")
    parser.add_argument("-l", "--log-level", default="info", help="Logging level")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines")
    parser.add_argument("--pretraining-data", metavar="FILE", help="Pretraining corpus")
    parser.add_argument("--chat-training-data", metavar="FILE", help="Instruction-tuning corpus")
    parser.add_argument("-o", "--output", metavar="DIR", help="Checkpoint directory")
    parser.add_argument(
        "-v", "--visualize", action="store_true",
        help="Print a loss, accuracy and gradient-norm panel after every epoch",
    )
    parser.add_argument(
        "--no-interactive", action="store_true", help="Exit after training instead of prompting"
    )
    parser.add_argument(
        "--max-new-tokens", type=int, default=None,
        help="Cap on generated tokens per reply (default: up to max_seq_len)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def load_config(args: argparse.Namespace) -> Config:
    base = Config.from_file(args.config) if args.config else None
    config = Config.from_env(base=base)

    if args.pretraining_data:
        config.data.pretraining_data = args.pretraining_data
    if args.chat_training_data:
        config.data.chat_training_data = args.chat_training_data
    if args.output:
        config.output.checkpoint_dir = args.output
    config.output.log_level = args.log_level

    config.validate()
    return config


def run_phase(
    trainer: Trainer,
    examples,
    epochs: int,
    learning_rate: float,
    phase: str,
    config: Config,
    resume=None,
):
    """Train one phase behind a tqdm bar (one tick per epoch)."""
    with tqdm(
        total=epochs,
        initial=min(resume.epoch, epochs) if resume is not None else 0,
        desc=phase.replace("_", " ").capitalize(),
        unit="epoch",
        disable=not config.output.show_progress,
    ) as progress:

        def on_epoch(report):
            progress.update(1)
            progress.set_postfix(loss=f"{report.mean_loss:.4f}")

        trainer.add_epoch_callback(on_epoch)
        try:
            return trainer.train(
                examples,
                epochs=epochs,
                learning_rate=learning_rate,
                phase=phase,
                shuffle=config.training.shuffle,
                seed=config.training.shuffle_seed,
                resume=resume,
            )
        finally:
            trainer.remove_epoch_callback(on_epoch)


def interactive_loop(
    model: LanguageModel, vocab: Vocabulary, max_new_tokens: Optional[int]
) -> None:
    print("\n--- Interactive Mode ---")
    print("Type a prompt and press Enter to generate text.")
    print("Type 'exit' to quit.")
    while True:
        try:
            text = input("\nEnter prompt: ")
        except EOFError:
            logger.info("EOF reached, exiting")
            break
        except KeyboardInterrupt:
            print("\nExiting interactive mode.")
            break
        text = text.strip()
        if text.lower() == "exit":
            print("Exiting interactive mode.")
            break
        if not text:
            continue
        reply = model.predict(f"User: {text}", vocab, max_new_tokens=max_new_tokens)
        print(f"Model output: {reply}")


def run(args: argparse.Namespace) -> int:
    config = load_config(args)
    logger.info("scratchgpt %s starting", __version__)

    checkpoint = load_checkpoint(args.checkpoint) if args.checkpoint else None
    training = args.train or checkpoint is None

    dataset = None
    if training or not checkpoint.vocabulary:
        dataset = Dataset.load(
            config.data.pretraining_data, config.data.chat_training_data, config.data.format
        )
        logger.info("Dataset loaded: %d total samples", dataset.total_samples())

    if checkpoint is not None and checkpoint.vocabulary:
        vocab = Vocabulary(checkpoint.vocabulary)
        if checkpoint.config and "model" in checkpoint.config:
            config.model = ModelConfig(**checkpoint.config["model"])
    else:
        vocab = Vocabulary.build(dataset.all_texts())
    config.model.vocab_size = vocab.size()
    config.validate()
    logger.info("Vocabulary has %d tokens", vocab.size())

    model = LanguageModel(config.model)
    optimizer = Adam(
        learning_rate=config.training.pretraining_lr,
        beta1=config.training.beta1,
        beta2=config.training.beta2,
        epsilon=config.training.adam_epsilon,
        weight_decay=config.training.weight_decay,
    )
    manager = None
    if config.training.checkpoint_enabled:
        manager = CheckpointManager(
            config.output.checkpoint_dir,
            keep_best=True,
            max_checkpoints=config.training.keep_checkpoints,
            interval=config.training.checkpoint_interval,
        )
    trainer = Trainer(
        model,
        optimizer,
        metrics=Metrics(config.training.metrics_window),
        checkpoint_manager=manager,
        gradient_clip=config.training.gradient_clip,
        checkpoint_metadata={"config": config.to_dict(), "vocabulary": vocab.to_list()},
    )
    resume = trainer.restore(checkpoint) if checkpoint is not None else None
    if args.visualize:
        trainer.add_epoch_callback(TrainingDashboard(trainer.metrics).on_epoch)

    print("\n=== MODEL INFORMATION ===")
    for line in model.describe():
        print(line)
    stats = vocab.statistics()
    print(f"Vocabulary: {stats.total_words} tokens")

    print("\n=== BEFORE TRAINING ===" if training else "\n=== LOADED MODEL ===")
    print(f"Input: {SAMPLE_PROMPT}")
    print(f"Output: {model.predict(SAMPLE_PROMPT, vocab, max_new_tokens=args.max_new_tokens)}")

    if training:
        resume_phase = resume.phase if resume is not None else None
        phases = [
            (PRETRAINING, dataset.pretraining, config.training.pretraining_epochs,
             config.training.pretraining_lr),
            (INSTRUCTION_TUNING, dataset.chat, config.training.finetuning_epochs,
             config.training.finetuning_lr),
        ]
        previous_handler = signal.signal(
            signal.SIGINT, lambda signum, frame: trainer.request_stop()
        )
        try:
            for phase, texts, epochs, learning_rate in phases:
                if resume_phase == INSTRUCTION_TUNING and phase == PRETRAINING:
                    logger.info("Checkpoint is past pretraining; skipping that phase")
                    continue
                phase_resume = resume if resume_phase == phase else None
                print(f"\n=== {phase.replace('_', ' ').upper()} ===")
                examples = build_examples(texts, vocab, config.model.max_seq_len)
                session = run_phase(
                    trainer, examples, epochs, learning_rate, phase, config, resume=phase_resume
                )
                if session.stopped:
                    path = os.path.join(config.output.checkpoint_dir, f"interrupted_{phase}.npz")
                    save_checkpoint(trainer.snapshot(session), path)
                    print(f"\nTraining interrupted; checkpoint saved to {path}")
                    return EXIT_INTERRUPTED
        finally:
            signal.signal(signal.SIGINT, previous_handler)

        print("\n=== AFTER TRAINING ===")
        print(f"Input: {SAMPLE_PROMPT}")
        print(f"Output: {model.predict(SAMPLE_PROMPT, vocab, max_new_tokens=args.max_new_tokens)}")
        logger.info("Training completed successfully")

    if not args.no_interactive:
        interactive_loop(model, vocab, args.max_new_tokens)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        configure_logging(args.log_level, json_format=args.json_logs)
    except ValueError as error:
        print(f"error: {error}", file=sys.stderr)
        return 2
    try:
        return run(args)
    except ScratchGPTError as error:
        logger.error("%s", error)
        return 1


if __name__ == "__main__":
    sys.exit(main())
