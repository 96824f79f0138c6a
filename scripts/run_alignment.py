#!/usr/bin/env python3
"""Align single-cell feature tables across conditions and save the outputs.

Usage:
    python scripts/run_alignment.py --condition NAME=PATH --condition NAME=PATH [options]

Examples:
    # Align two conditions on their raw features, decode, no wandb
    python scripts/run_alignment.py \\
        --condition young=data/young.parquet --condition old=data/old.parquet \\
        --cell-id-col cell_id --label-col cell_type --decode --no-wandb

    # Train on a joint CCA representation, decode back to features
    python scripts/run_alignment.py \\
        --condition young=data/young.csv --condition old=data/old.csv \\
        --joint cca --joint-dims 20 --decode --steps 2000 --no-early-stopping

    # Use SLURM for large runs
    srun -p 24 --gpus=1 --mem=64gb --time=04:00:00 \\
        conda run -n scpaired python scripts/run_alignment.py ...
"""

import argparse
import os
from pathlib import Path

import numpy as np
import pandas as pd
import torch

from scpaired.analysis import differential, evaluate_embedding
from scpaired.data import DEFAULT_REPRESENTATION, DatasetRegistry
from scpaired.embeddings import JOINT_METHODS, EmbeddingStore, FeatureSpaceReducer
from scpaired.models import ARCHITECTURES, AlignmentConfig, AlignmentTrainer, WandbConfig

OUTPUT_DIR = Path("outputs/alignment")


def read_table(path: Path) -> pd.DataFrame:
    """Read a CSV or parquet cell table."""
    if path.suffix == ".parquet":
        return pd.read_parquet(path)
    return pd.read_csv(path)


def split_table(
    df: pd.DataFrame, cell_id_col: str | None, label_col: str | None
) -> tuple[list[str], pd.DataFrame, np.ndarray | None]:
    """Split a table into cell ids, numeric features, and labels."""
    cell_ids = df[cell_id_col].astype(str).tolist() if cell_id_col else df.index.astype(str).tolist()
    labels = df[label_col].to_numpy() if label_col else None

    drop = [c for c in (cell_id_col, label_col) if c]
    features = df.drop(columns=drop).select_dtypes(include=[np.number])
    return cell_ids, features, labels


def parse_condition(value: str) -> tuple[str, Path]:
    if "=" not in value:
        raise argparse.ArgumentTypeError(f"Expected NAME=PATH, got {value!r}")
    name, path = value.split("=", 1)
    return name, Path(path)


def main():
    parser = argparse.ArgumentParser(
        description="Align single-cell features across conditions",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    # Data arguments
    parser.add_argument(
        "--condition",
        type=parse_condition,
        action="append",
        required=True,
        help="Condition table as NAME=PATH (CSV or parquet); repeat per condition",
    )
    parser.add_argument(
        "--cell-id-col",
        type=str,
        default=None,
        help="Column with cell ids (default: table index)",
    )
    parser.add_argument(
        "--label-col",
        type=str,
        default=None,
        help="Column with cell labels, used for evaluation only",
    )

    # Representation arguments
    parser.add_argument(
        "--joint",
        type=str,
        default=None,
        choices=list(JOINT_METHODS),
        help="Train on a joint representation instead of raw features",
    )
    parser.add_argument(
        "--joint-dims",
        type=int,
        default=50,
        help="Dimensions of the joint representation",
    )

    # Model / training arguments
    parser.add_argument(
        "--architecture",
        type=str,
        default="medium",
        choices=list(ARCHITECTURES),
        help="Network size preset",
    )
    parser.add_argument("--latent-dim", type=int, default=32, help="Latent dimension")
    parser.add_argument("--steps", type=int, default=1000, help="Encoder steps")
    parser.add_argument(
        "--decoder-steps", type=int, default=None, help="Decoder steps (default: --steps)"
    )
    parser.add_argument("--batch-size", type=int, default=128, help="Cells per condition per step")
    parser.add_argument("--lr", type=float, default=1e-3, help="Learning rate")
    parser.add_argument("--dropout", type=float, default=0.1, help="Dropout rate")
    parser.add_argument(
        "--mmd-weight", type=float, default=1.0, help="Weight of the latent MMD term"
    )
    parser.add_argument(
        "--decode",
        action="store_true",
        help="Train decoders and produce cross-projections into feature space",
    )
    parser.add_argument(
        "--no-early-stopping",
        action="store_true",
        help="Disable early stopping (recommended for reduced inputs)",
    )
    parser.add_argument("--patience", type=int, default=5, help="Early stopping patience")
    parser.add_argument("--log-every", type=int, default=100, help="Print every N steps")
    parser.add_argument(
        "--top-k",
        type=int,
        default=20,
        help="Most variable differential features to report per condition pair",
    )

    # Wandb arguments
    parser.add_argument(
        "--wandb-project",
        type=str,
        default="scpaired-alignment",
        help="Weights & Biases project name",
    )
    parser.add_argument(
        "--wandb-entity",
        type=str,
        default=os.environ.get("WANDB_ENTITY"),
        help="Weights & Biases entity (team/username). Uses WANDB_ENTITY env var if set.",
    )
    parser.add_argument(
        "--wandb-tags",
        type=str,
        nargs="*",
        default=[],
        help="Wandb run tags",
    )
    parser.add_argument(
        "--no-wandb",
        action="store_true",
        help="Disable Weights & Biases logging",
    )

    # Output arguments
    parser.add_argument("--output-dir", type=Path, default=OUTPUT_DIR, help="Output directory")
    parser.add_argument("--name", type=str, default=None, help="Experiment name")

    # Misc
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument(
        "--device",
        type=str,
        default="cuda" if torch.cuda.is_available() else "cpu",
        help="Device to use",
    )

    args = parser.parse_args()

    encoder_repr = args.joint or DEFAULT_REPRESENTATION
    exp_name = args.name or f"aligned_{encoder_repr}"
    output_dir = args.output_dir / exp_name
    output_dir.mkdir(parents=True, exist_ok=True)

    print("=" * 70)
    print(f"ALIGNMENT: {exp_name}")
    print("=" * 70)
    print(f"Conditions: {[name for name, _ in args.condition]}")
    print(f"Encoder input: {encoder_repr}")
    print(f"Architecture: {args.architecture} {ARCHITECTURES[args.architecture]}")
    print(f"Latent dim: {args.latent_dim}")
    print(f"Decode: {args.decode}")
    print(f"Device: {args.device}")
    print(f"Output: {output_dir}")
    print(f"Wandb: {'disabled' if args.no_wandb else args.wandb_project}")
    print()

    # Load data
    print("Loading data...")
    registry = DatasetRegistry()
    for name, path in args.condition:
        cell_ids, features, labels = split_table(read_table(path), args.cell_id_col, args.label_col)
        registry.register(name, cell_ids, features, labels=labels)
        print(f"  {name}: {len(cell_ids):,} cells x {features.shape[1]} features")
    print()

    if args.joint:
        reducer = FeatureSpaceReducer(registry, random_state=args.seed)
        reducer.compute_joint_representation(
            args.joint, method=args.joint, target_dims=args.joint_dims
        )
        print()

    config = AlignmentConfig(
        steps=args.steps,
        decoder_steps=args.decoder_steps,
        batch_size=args.batch_size,
        learning_rate=args.lr,
        architecture=args.architecture,
        latent_dim=args.latent_dim,
        dropout=args.dropout,
        mmd_weight=args.mmd_weight,
        run_decoder=args.decode,
        early_stopping=not args.no_early_stopping,
        early_stopping_patience=args.patience,
        log_every=args.log_every,
        seed=args.seed,
        device=args.device,
        wandb=WandbConfig(
            enabled=not args.no_wandb,
            project=args.wandb_project,
            entity=args.wandb_entity,
            name=exp_name,
            tags=[encoder_repr, args.architecture, f"latent={args.latent_dim}"] + args.wandb_tags,
            notes=f"Aligning {len(registry)} conditions ({registry.n_cells:,} cells)",
        ),
    )

    # Train
    store = EmbeddingStore()
    trainer = AlignmentTrainer(registry, store)
    model = trainer.train(
        encoder_repr,
        decoder_repr=DEFAULT_REPRESENTATION if args.decode else None,
        config=config,
    )

    # Save
    store.save(output_dir / "store")
    model.save(output_dir / "model.pt")
    model.history.save(output_dir / "history.json")

    metrics = evaluate_embedding(store.get(model.tag), seed=args.seed)
    metrics.to_csv(output_dir / "metrics.csv", index=False)
    print()
    print(metrics.to_string(index=False))

    if args.decode:
        conditions = registry.conditions
        top_k = min(args.top_k, len(registry.feature_names))
        for i, a in enumerate(conditions):
            for b in conditions[i + 1 :]:
                signal = differential(store, a, b, model.tag)
                signal.to_frame().to_parquet(output_dir / f"differential_{a}_vs_{b}.parquet")
                print(f"\nTop {top_k} variable features ({b} - {a}):")
                for feature in signal.top_features(top_k):
                    print(f"  {feature}")

    print("\nAlignment complete!")
    print(f"  Converged: {model.converged}")
    print(f"  Output saved to: {output_dir}")


if __name__ == "__main__":
    main()
