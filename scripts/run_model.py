#!/usr/bin/env python3
"""
Model Runner
============

Three modes:
  1. train:     Fit a model on settled seasons and make it current.
  2. backtest:  Replay a model over settled seasons and save the report.
  3. predict:   Score a date's schedule through a provider adapter.

Examples:
  # Train an NBA moneyline ensemble on two seasons
  python3 scripts/run_model.py train --sport nba --market moneyline \\
      --seasons 2024 2025 --ensemble

  # Backtest a pinned version
  python3 scripts/run_model.py backtest --sport nba --market total \\
      --seasons 2025 --run-id 20251101_120000_a1b2c3

  # Predict (provider given as module:Class)
  python3 scripts/run_model.py predict --sport nba --market spread \\
      --date 20251118 --provider mypkg.espn:NbaProvider
"""

import argparse
import importlib
import json
import logging
import sys

from config.settings import get_settings
from src.data.store import GameStore
from src.modeling.artifacts import ArtifactStore
from src.modeling.backtest import Backtester, BacktestReportStore
from src.modeling.errors import NoDataError
from src.modeling.predictor import Predictor
from src.modeling.trainer import Trainer

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

MARKETS = ["moneyline", "spread", "total"]


def load_provider(spec: str, timeout: float, max_retries: int):
    """Instantiate a provider from "package.module:ClassName"."""
    module_name, _, class_name = spec.partition(":")
    if not class_name:
        raise ValueError(f"Provider must be given as module:Class, got {spec!r}")
    provider_cls = getattr(importlib.import_module(module_name), class_name)
    return provider_cls(timeout=timeout, max_retries=max_retries)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Train, backtest and score outcome models",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db-path", type=str, help="SQLite database (default from settings)")
    sub = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--sport", required=True)
    common.add_argument("--market", required=True, choices=MARKETS)

    p_train = sub.add_parser("train", parents=[common], help="Fit a new model version")
    p_train.add_argument("--seasons", type=int, nargs="+", required=True)
    p_train.add_argument("--ensemble", action="store_true", help="Moneyline base + market blend")
    p_train.add_argument("--calibration", choices=["isotonic", "platt", "none"])
    p_train.add_argument("--no-promote", action="store_true", help="Do not make this version current")

    p_backtest = sub.add_parser("backtest", parents=[common], help="Backtest a model version")
    p_backtest.add_argument("--seasons", type=int, nargs="+", required=True)
    p_backtest.add_argument("--run-id", type=str)
    p_backtest.add_argument("--no-save", action="store_true")

    p_predict = sub.add_parser("predict", parents=[common], help="Score a date's games")
    p_predict.add_argument("--date", required=True, help="YYYYMMDD or YYYY-MM-DD")
    p_predict.add_argument("--provider", required=True, help="module:Class provider adapter")
    p_predict.add_argument("--run-id", type=str)

    args = parser.parse_args(argv)

    settings = get_settings()
    errors = settings.validate()
    if errors:
        for error in errors:
            logger.error(f"Invalid setting: {error}")
        return 1

    with GameStore(args.db_path or settings.db_path) as store:
        artifact_store = ArtifactStore(settings.artifact_dir, registry=store)

        if args.command == "train":
            trainer = Trainer(store, artifact_store, settings)
            try:
                result = trainer.train(
                    args.sport,
                    args.market,
                    args.seasons,
                    ensemble=args.ensemble,
                    calibration_method=args.calibration,
                    make_current=not args.no_promote,
                )
            except NoDataError as e:
                logger.error(f"Training failed: {e}")
                return 1
            print(f"Trained {args.sport}/{args.market} run {result.artifact.run_id}")
            print(f"  {result.n_train} train / {result.n_validation} held out")
            print(json.dumps(result.metrics.get("validation", {}), indent=2))
            return 0

        if args.command == "backtest":
            report = Backtester(store, artifact_store, settings).run(
                args.sport, args.market, args.seasons, run_id=args.run_id
            )
            if not args.no_save and not report.skipped:
                BacktestReportStore(settings.backtest_dir).save(report)
            print(report.coverage)
            for b in report.calibration:
                print(
                    f"{b.label:<9} | pred {b.predicted * 100:5.1f}% | actual {b.actual * 100:5.1f}% "
                    f"| n={b.count:<4} | ROI {b.roi:+.1f}%"
                )
            print(f"ECE {report.overall_ece * 100:.2f}%  ROI {report.overall_roi:+.2f}%")
            return 1 if report.skipped else 0

        provider = load_provider(args.provider, settings.fetch_timeout_seconds, settings.max_retries)
        predictor = Predictor(provider, store, artifact_store, settings)
        result = predictor.predict(args.sport, args.market, args.date, run_id=args.run_id)
        if not result.available:
            logger.warning(f"Model unavailable: {result.reason}")
        print(json.dumps({
            "status": result.status,
            "run_id": result.run_id,
            "coverage": result.coverage,
            "probabilities": result.probabilities,
            "skipped": result.skipped,
        }, indent=2))
        return 0 if result.available else 1


if __name__ == "__main__":
    sys.exit(main())
